from __future__ import annotations

import http.client
import json
import logging
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

from .config import Settings

logger = logging.getLogger(__name__)

ProviderResultStatus = Literal["sent", "failed"]
ProviderErrorCategory = Literal["network", "api"]

SUBSCRIBER_DIGITS = 9
_ACCEPTED_MARKERS = ("accepted", "processing", "sent")
_RAW_RESPONSE_LIMIT = 2000


def format_phone_for_provider(phone: str | None, country_code: str = "233") -> str:
    """Normalize a member phone number to the provider's ``<cc><subscriber>`` form."""
    if not phone:
        return ""
    formatted = re.sub(r"\s+", "", phone)
    if formatted.startswith("+"):
        formatted = formatted[1:]
    if formatted.startswith("0"):
        formatted = country_code + formatted[1:]
    if not formatted.startswith(country_code):
        formatted = country_code + formatted.lstrip("0")
    return formatted


def is_valid_provider_phone(formatted: str, country_code: str = "233") -> bool:
    return re.fullmatch(rf"{re.escape(country_code)}\d{{{SUBSCRIBER_DIGITS}}}", formatted) is not None


def mask_phone_number(phone: str | None) -> str:
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "***"


@dataclass(frozen=True)
class ProviderSendRequest:
    api_key: str
    username: str
    sender_id: str
    destination: str
    message: str
    message_id: str


@dataclass(frozen=True)
class ProviderSendResult:
    status: ProviderResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_category: ProviderErrorCategory | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw_response: str | None = None


class SmsSender(Protocol):
    def send_sms(self, payload: ProviderSendRequest) -> ProviderSendResult: ...


def is_provider_success(http_ok: bool, body: object) -> bool:
    """Best-effort reading of the provider's informal success contract.

    A reply counts as delivered when the HTTP status is OK and the body
    carries an explicit success flag, an "accepted"/"processing"/"sent"
    message, or a data payload without an error field.
    """
    if not http_ok or not isinstance(body, dict):
        return False
    status = body.get("status")
    if isinstance(status, str) and status.strip().lower() == "success":
        return True
    if body.get("success") is True:
        return True
    error = body.get("error")
    message = body.get("message")
    if not (isinstance(message, str) and message) and isinstance(error, dict):
        message = error.get("message")
    if isinstance(message, str) and any(marker in message.lower() for marker in _ACCEPTED_MARKERS):
        return True
    return bool(body.get("data")) and not error


def provider_error_text(body: object, status_code: int) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    return f"HTTP {status_code}"


class StubSmsSender:
    """Deterministic sender for local runs and tests; never touches the network."""

    def __init__(self, *, enabled: bool, failing_destinations: set[str] | None = None) -> None:
        self._enabled = enabled
        self._failing_destinations = frozenset(failing_destinations or ())
        self.sent: list[ProviderSendRequest] = []

    def send_sms(self, payload: ProviderSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_category="api",
                error_code="sms_disabled",
                error_message="SMS live delivery is disabled",
            )
        if payload.destination in self._failing_destinations:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_category="api",
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for destination",
            )
        self.sent.append(payload)
        return ProviderSendResult(status="sent", attempted_at=attempted_at, provider_message_id=payload.message_id)


class _SmsSendError(Exception):
    """Internal error raised when the provider HTTP request cannot complete."""

    def __init__(self, category: ProviderErrorCategory, error_code: str, message: str, raw: str | None = None) -> None:
        super().__init__(message)
        self.category = category
        self.error_code = error_code
        self.message = message
        self.raw = raw


class HttpSmsSender:
    """SMS sender for the Wigal FROG v3 API."""

    def __init__(self, *, send_url: str, timeout_seconds: int = 30) -> None:
        stripped_url = send_url.strip()
        if not stripped_url:
            raise ValueError("send_url must not be empty")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._send_url = stripped_url
        self._timeout_seconds = timeout_seconds

    def send_sms(self, payload: ProviderSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)
        request_body = {
            "senderid": payload.sender_id,
            "destinations": [
                {
                    "destination": payload.destination,
                    "message": payload.message,
                    "msgid": payload.message_id,
                    "smstype": "text",
                }
            ],
        }
        masked = mask_phone_number(payload.destination)
        try:
            http_ok, status_code, body, raw = self._post(
                request_body,
                api_key=payload.api_key,
                username=payload.username or payload.api_key,
            )
        except _SmsSendError as exc:
            logger.error("sms send to %s failed: %s", masked, exc.message)
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_category=exc.category,
                error_code=exc.error_code,
                error_message=exc.message,
                raw_response=exc.raw,
            )

        logger.debug("sms provider response for %s: status=%s body=%s", masked, status_code, raw)
        if is_provider_success(http_ok, body):
            return ProviderSendResult(
                status="sent",
                attempted_at=attempted_at,
                provider_message_id=payload.message_id,
                raw_response=raw,
            )
        return ProviderSendResult(
            status="failed",
            attempted_at=attempted_at,
            error_category="api",
            error_code=f"http_{status_code}" if not http_ok else "send_failure",
            error_message=provider_error_text(body, status_code),
            raw_response=raw,
        )

    def _post(self, body: dict[str, object], *, api_key: str, username: str) -> tuple[bool, int, object, str]:
        """POST to the provider and return ``(http_ok, status, parsed_body, raw_text)``."""
        request = urllib.request.Request(
            self._send_url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "API-KEY": api_key,
                "USERNAME": username,
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                status_code = int(response.status)
                content_type = response.headers.get("Content-Type") or ""
                raw = response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            status_code = int(exc.code)
            content_type = exc.headers.get("Content-Type", "") if exc.headers else ""
            raw = exc.read().decode("utf-8", errors="replace") if exc.fp is not None else ""
            return False, status_code, _parse_body(content_type, raw), raw[:_RAW_RESPONSE_LIMIT]
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise _SmsSendError("network", "timeout", f"Request timed out: {exc.reason}") from exc
            raise _SmsSendError("network", "network_error", f"Network error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _SmsSendError("network", "timeout", f"Request timed out: {exc}") from exc
        except (http.client.HTTPException, OSError) as exc:
            raise _SmsSendError("network", "network_error", f"Network error: {exc}") from exc

        http_ok = 200 <= status_code < 300
        if "application/json" not in content_type.lower():
            raise _SmsSendError(
                "api",
                "unexpected_content_type",
                f"Unexpected content type: {content_type or 'none'}. Response: {raw[:200]}",
                raw[:_RAW_RESPONSE_LIMIT],
            )
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise _SmsSendError(
                "api",
                "response_parse_error",
                f"Error parsing response: {exc}. Response: {raw[:200]}",
                raw[:_RAW_RESPONSE_LIMIT],
            ) from exc
        return http_ok, status_code, parsed, raw[:_RAW_RESPONSE_LIMIT]


def _parse_body(content_type: str, raw: str) -> object:
    if "application/json" not in content_type.lower():
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def create_sms_sender(settings: Settings) -> SmsSender:
    if settings.sms_sender_type == "http":
        return HttpSmsSender(send_url=settings.sms_send_url, timeout_seconds=settings.sms_timeout_seconds)
    return StubSmsSender(enabled=settings.sms_stub_enabled)
