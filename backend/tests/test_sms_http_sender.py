from __future__ import annotations

import http.client
import io
import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from event_reminders.sms import (
    HttpSmsSender,
    ProviderSendRequest,
    StubSmsSender,
    format_phone_for_provider,
    is_provider_success,
    is_valid_provider_phone,
    mask_phone_number,
)


def _make_payload(*, destination: str = "233241234567") -> ProviderSendRequest:
    return ProviderSendRequest(
        api_key="frog-key-abc123",
        username="frog-user",
        sender_id="ORGSUITE",
        destination=destination,
        message="Reminder: Choir Practice",
        message_id="EVT_msg-1_member-1_1765400000000",
    )


def _make_sender(*, send_url: str = "https://frog.test/api/v3/sms/send") -> HttpSmsSender:
    return HttpSmsSender(send_url=send_url, timeout_seconds=30)


def _mock_response(body: object, status: int = 200, content_type: str = "application/json") -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.headers = {"Content-Type": content_type}
    raw = body if isinstance(body, str) else json.dumps(body)
    response.read.return_value = raw.encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("0241234567", "233241234567"),
        ("+233 24 123 4567", "233241234567"),
        ("241234567", "233241234567"),
        ("233241234567", "233241234567"),
    ],
)
def test_format_phone_for_provider(raw: str, expected: str) -> None:
    formatted = format_phone_for_provider(raw)
    assert formatted == expected
    assert is_valid_provider_phone(formatted)


def test_invalid_phone_numbers_are_rejected() -> None:
    assert format_phone_for_provider(None) == ""
    assert not is_valid_provider_phone(format_phone_for_provider("12345"))
    assert not is_valid_provider_phone(format_phone_for_provider("0241234567890"))


def test_mask_phone_number_keeps_last_four_digits() -> None:
    assert mask_phone_number("233241234567") == "***4567"
    assert mask_phone_number("12") == "***"


@pytest.mark.parametrize(
    "body",
    [
        {"status": "SUCCESS"},
        {"success": True},
        {"message": "Message accepted for delivery"},
        {"message": "Processing"},
        {"message": "", "error": {"message": "Sent to network"}},
        {"data": {"id": "abc"}},
    ],
)
def test_provider_success_fixtures(body: dict) -> None:
    assert is_provider_success(True, body) is True


@pytest.mark.parametrize(
    "body",
    [
        {"status": "error", "message": "Insufficient balance"},
        {"data": {"id": "abc"}, "error": "quota"},
        {},
        None,
        "accepted",
    ],
)
def test_provider_failure_fixtures(body: object) -> None:
    assert is_provider_success(True, body) is False


def test_http_error_status_is_never_success() -> None:
    assert is_provider_success(False, {"status": "success"}) is False


@patch("event_reminders.sms.urllib.request.urlopen")
def test_http_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"status": "ACCEPTED", "message": "Accepted for processing"})
    sender = _make_sender()

    result = sender.send_sms(_make_payload())

    assert result.status == "sent"
    assert result.provider_message_id == "EVT_msg-1_member-1_1765400000000"
    assert result.attempted_at.tzinfo == timezone.utc
    assert result.error_code is None

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://frog.test/api/v3/sms/send"
    assert request_arg.get_header("Api-key") == "frog-key-abc123"
    assert request_arg.get_header("Username") == "frog-user"
    assert mock_urlopen.call_args.kwargs["timeout"] == 30

    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["senderid"] == "ORGSUITE"
    assert sent_body["destinations"] == [
        {
            "destination": "233241234567",
            "message": "Reminder: Choir Practice",
            "msgid": "EVT_msg-1_member-1_1765400000000",
            "smstype": "text",
        }
    ]


@patch("event_reminders.sms.urllib.request.urlopen")
def test_http_sender_failure_payload(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"status": "error", "message": "Invalid sender id"})

    result = _make_sender().send_sms(_make_payload())

    assert result.status == "failed"
    assert result.error_category == "api"
    assert result.error_code == "send_failure"
    assert result.error_message == "Invalid sender id"


@patch("event_reminders.sms.urllib.request.urlopen")
def test_http_sender_non_json_response(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response("<html>gateway</html>", content_type="text/html")

    result = _make_sender().send_sms(_make_payload())

    assert result.status == "failed"
    assert result.error_code == "unexpected_content_type"
    assert result.raw_response == "<html>gateway</html>"


@patch("event_reminders.sms.urllib.request.urlopen")
def test_http_sender_unparseable_json(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response("{not json")

    result = _make_sender().send_sms(_make_payload())

    assert result.status == "failed"
    assert result.error_code == "response_parse_error"


@patch("event_reminders.sms.urllib.request.urlopen")
def test_http_sender_http_401(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://frog.test/api/v3/sms/send",
        code=401,
        msg="Unauthorized",
        hdrs={"Content-Type": "application/json"},  # type: ignore[arg-type]
        fp=io.BytesIO(b'{"error": {"message": "Invalid API key"}}'),
    )

    result = _make_sender().send_sms(_make_payload())

    assert result.status == "failed"
    assert result.error_category == "api"
    assert result.error_code == "http_401"
    assert result.error_message == "Invalid API key"


@patch("event_reminders.sms.urllib.request.urlopen")
def test_http_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")

    result = _make_sender().send_sms(_make_payload())

    assert result.status == "failed"
    assert result.error_category == "network"
    assert result.error_code == "network_error"
    assert "Connection refused" in (result.error_message or "")


@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("reset by peer"),
        http.client.RemoteDisconnected("Remote end closed connection without response"),
    ],
)
def test_http_sender_dropped_connection(error: Exception) -> None:
    with patch("event_reminders.sms.urllib.request.urlopen", side_effect=error):
        result = _make_sender().send_sms(_make_payload())

    assert result.status == "failed"
    assert result.error_category == "network"
    assert result.error_code == "network_error"
    assert str(error) in (result.error_message or "")


@patch("event_reminders.sms.urllib.request.urlopen")
def test_http_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _make_sender().send_sms(_make_payload())

    assert result.status == "failed"
    assert result.error_category == "network"
    assert result.error_code == "timeout"
    assert "timed out" in (result.error_message or "")


@patch("event_reminders.sms.urllib.request.urlopen")
def test_http_sender_wrapped_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError(socket.timeout("timed out"))

    result = _make_sender().send_sms(_make_payload())

    assert result.error_code == "timeout"


def test_http_sender_username_falls_back_to_api_key() -> None:
    payload = ProviderSendRequest(
        api_key="only-key",
        username="",
        sender_id="ORGSUITE",
        destination="233241234567",
        message="hi",
        message_id="EVT_1",
    )
    with patch("event_reminders.sms.urllib.request.urlopen") as mock_urlopen:
        mock_urlopen.return_value = _mock_response({"success": True})
        _make_sender().send_sms(payload)
        request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.get_header("Username") == "only-key"


def test_http_sender_empty_send_url() -> None:
    with pytest.raises(ValueError, match="send_url must not be empty"):
        HttpSmsSender(send_url="  ")


def test_http_sender_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="timeout_seconds must be positive"):
        HttpSmsSender(send_url="https://frog.test/send", timeout_seconds=0)


def test_stub_sender_records_and_fails_on_demand() -> None:
    sender = StubSmsSender(enabled=True, failing_destinations={"233200000000"})
    assert sender.send_sms(_make_payload()).status == "sent"
    failed = sender.send_sms(_make_payload(destination="233200000000"))
    assert failed.status == "failed"
    assert failed.error_code == "stub_delivery_failed"
    assert [p.destination for p in sender.sent] == ["233241234567"]

    disabled = StubSmsSender(enabled=False).send_sms(_make_payload())
    assert disabled.error_code == "sms_disabled"
