from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from event_reminders.dispatch import ReminderDispatcher, occurrence_lock_key
from event_reminders.models import DueOccurrence, ReminderEvent
from event_reminders.reporting import RunReporter
from event_reminders.sms import ProviderSendRequest, ProviderSendResult, StubSmsSender
from event_reminders.store import StoreError

from factories import MEMBER_1, MEMBER_2, MEMBER_3, ORG_A

FIXED_NOW = datetime(2025, 12, 11, 6, 0, tzinfo=timezone.utc)


class _ExplodingSender:
    def __init__(self, explode_for: str) -> None:
        self._explode_for = explode_for
        self.calls: list[ProviderSendRequest] = []

    def send_sms(self, payload: ProviderSendRequest) -> ProviderSendResult:
        self.calls.append(payload)
        if payload.destination == self._explode_for:
            raise ConnectionResetError("connection reset by peer")
        return ProviderSendResult(status="sent", attempted_at=FIXED_NOW, provider_message_id=payload.message_id)


def _event(**overrides) -> ReminderEvent:
    values = {
        "id": "evt-1",
        "organization_id": ORG_A,
        "name": "Harvest Thanksgiving",
        "event_date": date(2025, 12, 12),
        "location": "Main Auditorium",
        "reminder_enabled": True,
        "reminder_send_time": "day_before",
        "reminder_recipient_type": "all_members",
    }
    values.update(overrides)
    return ReminderEvent(**values)


def _occurrence() -> DueOccurrence:
    return DueOccurrence(event_id="evt-1", occurrence_date=date(2025, 12, 12), lead_policy="day_before")


def _dispatcher(store, sender, settings) -> ReminderDispatcher:
    return ReminderDispatcher(store, sender, settings, clock=lambda: FIXED_NOW)


def test_dispatch_sends_personalized_messages_and_writes_sent_log(store, seed, settings, sender) -> None:
    config = seed.api_config()
    seed.template("tpl-1", "Hello {FirstName}, see you at {EventName} on {EventDate}.")
    members = [seed.member(MEMBER_1, first_name="Ama"), seed.member(MEMBER_2, first_name="Kofi", phone_number="+233 20 555 0101")]

    outcome = _dispatcher(store, sender, settings).dispatch(
        _event(reminder_template_id="tpl-1"), _occurrence(), members, config
    )

    assert outcome.state == "sent"
    assert (outcome.sent, outcome.failed) == (2, 0)
    assert [p.message for p in sender.sent] == [
        "Hello Ama, see you at Harvest Thanksgiving on Friday, December 12, 2025.",
        "Hello Kofi, see you at Harvest Thanksgiving on Friday, December 12, 2025.",
    ]
    assert sender.sent[1].destination == "233205550101"
    assert sender.sent[0].message_id == f"EVT_{outcome.message_id}_{MEMBER_1}_{int(FIXED_NOW.timestamp() * 1000)}"

    [message] = store.list_messages(ORG_A)
    assert message.status == "Sent"
    assert message.recipient_count == 2
    assert message.recipient_type == "group"
    assert message.cost == 0.2
    assert message.message_name == "Event Reminder - Harvest Thanksgiving - 2025-12-12"
    assert message.template_id == "tpl-1"
    assert message.api_configuration_id == config.config_id
    assert [r.status for r in store.list_message_recipients(message.message_id)] == ["Sent", "Sent"]

    [log] = store.list_sent_logs("evt-1")
    assert log.recipient_count == 2
    assert log.reminder_send_time == "day_before"


def test_template_from_another_org_falls_back_to_custom_text(store, seed, settings, sender) -> None:
    config = seed.api_config()
    seed.template("tpl-foreign", "Foreign template", org_id="0b000000-0000-4000-8000-00000000000b")
    members = [seed.member(MEMBER_1)]

    _dispatcher(store, sender, settings).dispatch(
        _event(reminder_template_id="tpl-foreign", reminder_message_text="Custom {first_name}"),
        _occurrence(),
        members,
        config,
    )

    assert [p.message for p in sender.sent] == ["Custom Ama"]
    assert store.list_messages(ORG_A)[0].recipient_type == "individual"


def test_partial_failure_still_writes_sent_log(store, seed, settings) -> None:
    config = seed.api_config()
    members = [
        seed.member(MEMBER_1, phone_number="0241111111"),
        seed.member(MEMBER_2, phone_number="0242222222"),
        seed.member(MEMBER_3, phone_number="0243333333"),
    ]
    sender = StubSmsSender(enabled=True, failing_destinations={"233242222222"})
    reporter = RunReporter(None, None)

    outcome = _dispatcher(store, sender, settings).dispatch(_event(), _occurrence(), members, config, reporter=reporter)

    assert outcome.state == "partially_sent"
    assert (outcome.sent, outcome.failed) == (2, 1)
    [message] = store.list_messages(ORG_A)
    assert message.status == "Sending"
    assert message.error_message == "1 recipients failed"
    statuses = {r.recipient_id: r.status for r in store.list_message_recipients(message.message_id)}
    assert statuses == {MEMBER_1: "Sent", MEMBER_2: "Failed", MEMBER_3: "Sent"}
    assert store.list_sent_logs("evt-1")[0].recipient_count == 2
    assert [entry.code for entry in reporter.diagnostic_entries] == ["stub_delivery_failed"]


def test_invalid_phone_counts_as_failure_without_provider_call(store, seed, settings, sender) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1, phone_number="12345"), seed.member(MEMBER_2)]

    outcome = _dispatcher(store, sender, settings).dispatch(_event(), _occurrence(), members, config)

    assert (outcome.sent, outcome.failed) == (1, 1)
    assert len(sender.sent) == 1
    [message] = store.list_messages(ORG_A)
    assert [r.recipient_id for r in store.list_message_recipients(message.message_id)] == [MEMBER_2]


def test_total_failure_marks_message_failed_and_skips_sent_log(store, seed, settings) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1)]
    sender = StubSmsSender(enabled=False)

    outcome = _dispatcher(store, sender, settings).dispatch(_event(), _occurrence(), members, config)

    assert outcome.state == "failed"
    assert outcome.failed == 1
    [message] = store.list_messages(ORG_A)
    assert message.status == "Failed"
    assert store.list_sent_logs() == []


def test_unexpected_sender_exception_is_contained(store, seed, settings) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1, phone_number="0241111111"), seed.member(MEMBER_2, phone_number="0242222222")]
    sender = _ExplodingSender(explode_for="233241111111")
    reporter = RunReporter(None, None)

    outcome = _dispatcher(store, sender, settings).dispatch(_event(), _occurrence(), members, config, reporter=reporter)

    assert (outcome.sent, outcome.failed) == (1, 1)
    assert len(sender.calls) == 2
    assert reporter.diagnostic_entries[0].code == "recipient_processing_error"
    [message] = store.list_messages(ORG_A)
    rows = {r.recipient_id: (r.status, r.error_message) for r in store.list_message_recipients(message.message_id)}
    assert rows[MEMBER_1] == ("Failed", "connection reset by peer")
    assert rows[MEMBER_2] == ("Sent", None)
    assert message.status == "Sending"
    assert len(store.list_sent_logs("evt-1")) == 1


def test_existing_sent_log_makes_dispatch_a_no_op(store, seed, settings, sender) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1)]
    dispatcher = _dispatcher(store, sender, settings)

    first = dispatcher.dispatch(_event(), _occurrence(), members, config)
    second = dispatcher.dispatch(_event(), _occurrence(), members, config)

    assert first.state == "sent"
    assert second.state == "already_sent"
    assert len(sender.sent) == 1
    assert len(store.list_messages(ORG_A)) == 1
    assert len(store.list_sent_logs()) == 1


def test_held_lock_reports_in_flight_without_sending(store, seed, settings, sender) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1)]
    assert store.try_acquire_occurrence_lock(occurrence_lock_key(_occurrence()), now=FIXED_NOW, ttl_seconds=900)

    outcome = _dispatcher(store, sender, settings).dispatch(_event(), _occurrence(), members, config)

    assert outcome.state == "in_flight"
    assert sender.sent == []
    assert store.list_messages() == []


def test_stale_lock_is_taken_over(store, seed, settings, sender) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1)]
    key = occurrence_lock_key(_occurrence())
    assert store.try_acquire_occurrence_lock(key, now=FIXED_NOW - timedelta(hours=1), ttl_seconds=900)

    outcome = _dispatcher(store, sender, settings).dispatch(_event(), _occurrence(), members, config)

    assert outcome.state == "sent"
    assert store.try_acquire_occurrence_lock(key, now=FIXED_NOW, ttl_seconds=900)


def test_lock_is_released_after_dispatch(store, seed, settings, sender) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1)]

    _dispatcher(store, sender, settings).dispatch(_event(), _occurrence(), members, config)

    assert store.try_acquire_occurrence_lock(occurrence_lock_key(_occurrence()), now=FIXED_NOW, ttl_seconds=900)


def test_message_insert_failure_counts_every_recipient(store, seed, settings, sender, monkeypatch) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1), seed.member(MEMBER_2)]
    reporter = RunReporter(None, None)

    def _boom(**kwargs):
        raise StoreError("create_message", "insert rejected")

    monkeypatch.setattr(store, "create_message", _boom)

    outcome = _dispatcher(store, sender, settings).dispatch(_event(), _occurrence(), members, config, reporter=reporter)

    assert outcome.state == "failed"
    assert reporter.errors == 2
    assert reporter.counted_entries[0].code == "insert_failure"
    assert sender.sent == []


def _failing(operation: str):
    def _raise(*args, **kwargs):
        raise StoreError(operation, "db down")

    return _raise


def test_message_status_failure_after_delivery_keeps_sent_log(store, seed, settings, sender, monkeypatch) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1, phone_number="0241111111"), seed.member(MEMBER_2, phone_number="0242222222")]
    reporter = RunReporter(None, None)
    dispatcher = _dispatcher(store, sender, settings)
    monkeypatch.setattr(store, "update_message_status", _failing("update_message_status"))

    first = dispatcher.dispatch(_event(), _occurrence(), members, config, reporter=reporter)
    second = dispatcher.dispatch(_event(), _occurrence(), members, config)

    assert (first.state, first.sent) == ("sent", 2)
    assert second.state == "already_sent"
    assert len(sender.sent) == 2
    assert len(store.list_sent_logs("evt-1")) == 1
    assert reporter.errors == 0
    assert [entry.code for entry in reporter.diagnostic_entries] == ["update_failure"]
    assert reporter.diagnostic_entries[0].category == "database"


def test_recipient_status_failure_after_delivery_still_counts_as_sent(store, seed, settings, sender, monkeypatch) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1)]
    reporter = RunReporter(None, None)
    dispatcher = _dispatcher(store, sender, settings)
    monkeypatch.setattr(store, "update_message_recipient_status", _failing("update_message_recipient_status"))

    first = dispatcher.dispatch(_event(), _occurrence(), members, config, reporter=reporter)
    second = dispatcher.dispatch(_event(), _occurrence(), members, config)

    assert (first.state, first.sent, first.failed) == ("sent", 1, 0)
    assert second.state == "already_sent"
    assert len(sender.sent) == 1
    assert store.list_messages(ORG_A)[0].status == "Sent"
    [log] = store.list_sent_logs("evt-1")
    assert log.recipient_count == 1
    assert [entry.code for entry in reporter.diagnostic_entries] == ["update_failure"]


def test_sent_log_write_failure_is_recorded_after_delivery(store, seed, settings, sender, monkeypatch) -> None:
    config = seed.api_config()
    members = [seed.member(MEMBER_1), seed.member(MEMBER_2, phone_number="0242222222")]
    reporter = RunReporter(None, None)
    monkeypatch.setattr(store, "create_sent_log", _failing("create_sent_log"))

    outcome = _dispatcher(store, sender, settings).dispatch(_event(), _occurrence(), members, config, reporter=reporter)

    assert (outcome.state, outcome.sent) == ("sent", 2)
    assert len(sender.sent) == 2
    assert store.list_sent_logs() == []
    assert store.list_messages(ORG_A)[0].status == "Sent"
    assert reporter.errors == 0
    [entry] = reporter.diagnostic_entries
    assert (entry.category, entry.code) == ("database", "insert_failure")
    assert entry.context["step"] == "create_sent_log"
