from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Literal, Sequence

from .config import Settings
from .messaging import event_placeholders, member_placeholders, personalize, resolve_event_message_body
from .models import DueOccurrence, ReminderEvent
from .reporting import RunReporter
from .sms import (
    ProviderSendRequest,
    SmsSender,
    format_phone_for_provider,
    is_valid_provider_phone,
    mask_phone_number,
)
from .store import ApiConfigurationRecord, DuplicateSentLogError, MemberRecord, ReminderStore, StoreError

logger = logging.getLogger(__name__)

DispatchState = Literal["already_sent", "in_flight", "sent", "partially_sent", "failed"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DispatchOutcome:
    state: DispatchState
    sent: int = 0
    failed: int = 0
    message_id: str | None = None

    @property
    def attempted(self) -> bool:
        return self.state not in {"already_sent", "in_flight"}


def occurrence_lock_key(occurrence: DueOccurrence) -> str:
    return f"event_reminder:{occurrence.event_id}:{occurrence.occurrence_date.isoformat()}:{occurrence.lead_policy}"


def message_name_for(event: ReminderEvent, occurrence: DueOccurrence) -> str:
    return f"Event Reminder - {event.name} - {occurrence.occurrence_date.isoformat()}"


class ReminderDispatcher:
    """Sends one reminder occurrence to its resolved recipients exactly once."""

    def __init__(
        self,
        store: ReminderStore,
        sender: SmsSender,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._store = store
        self._sender = sender
        self._settings = settings
        self._clock = clock

    def dispatch(
        self,
        event: ReminderEvent,
        occurrence: DueOccurrence,
        recipients: Sequence[MemberRecord],
        api_config: ApiConfigurationRecord,
        *,
        reporter: RunReporter | None = None,
    ) -> DispatchOutcome:
        reporter = reporter or RunReporter(None, None)
        lock_key = occurrence_lock_key(occurrence)
        try:
            acquired = self._store.try_acquire_occurrence_lock(
                lock_key,
                now=self._clock(),
                ttl_seconds=self._settings.reminder_lock_ttl_seconds,
            )
        except StoreError as exc:
            logger.error("event %s: could not acquire dispatch lock %s: %s", event.id, lock_key, exc)
            reporter.record(
                "database",
                "lock_failure",
                f"Error acquiring dispatch lock: {exc}",
                event_id=event.id,
                context={"step": "acquire_lock", "lock_key": lock_key},
            )
            return DispatchOutcome(state="failed")
        if not acquired:
            logger.info("event %s: occurrence %s is being dispatched elsewhere", event.id, occurrence.occurrence_date)
            return DispatchOutcome(state="in_flight")

        try:
            return self._dispatch_locked(event, occurrence, recipients, api_config, reporter)
        finally:
            try:
                self._store.release_occurrence_lock(lock_key)
            except StoreError:
                logger.exception("event %s: failed to release dispatch lock %s", event.id, lock_key)

    def _dispatch_locked(
        self,
        event: ReminderEvent,
        occurrence: DueOccurrence,
        recipients: Sequence[MemberRecord],
        api_config: ApiConfigurationRecord,
        reporter: RunReporter,
    ) -> DispatchOutcome:
        occurrence_date = occurrence.occurrence_date
        try:
            if self._store.has_sent_log(event.id, occurrence_date, occurrence.lead_policy):
                logger.info(
                    "event %s: reminder already sent for %s (%s), skipping",
                    event.id,
                    occurrence_date.isoformat(),
                    occurrence.lead_policy,
                )
                return DispatchOutcome(state="already_sent")
        except StoreError as exc:
            logger.error("event %s: sent log check failed: %s", event.id, exc)
            reporter.record(
                "database",
                "query_failure",
                f"Error checking sent log: {exc}",
                event_id=event.id,
                context={"step": "check_sent_log", "occurrence_date": occurrence_date},
                counted=False,
            )

        def load_template(template_id: str) -> str | None:
            try:
                return self._store.get_template_message(event.organization_id, template_id)
            except StoreError as exc:
                logger.warning("event %s: template %s lookup failed: %s", event.id, template_id, exc)
                reporter.record(
                    "database",
                    "query_failure",
                    f"Error fetching template: {exc}",
                    event_id=event.id,
                    context={"step": "fetch_template", "template_id": template_id},
                    counted=False,
                )
                return None

        body, source = resolve_event_message_body(event, occurrence_date, load_template=load_template)
        logger.info("event %s: using %s message body", event.id, source)

        count = len(recipients)
        try:
            message = self._store.create_message(
                organization_id=event.organization_id,
                message_name=message_name_for(event, occurrence),
                message_text=body,
                recipient_type="individual" if count == 1 else "group",
                recipient_count=count,
                template_id=event.reminder_template_id,
                api_configuration_id=api_config.config_id,
                cost=round(count * self._settings.sms_cost_per_message, 2),
            )
        except StoreError as exc:
            logger.error("event %s: could not create message: %s", event.id, exc)
            reporter.record(
                "database",
                "insert_failure",
                f"Error creating message: {exc}",
                event_id=event.id,
                context={"step": "create_message", "organization_id": event.organization_id},
                weight=count,
            )
            return DispatchOutcome(state="failed")

        placeholders = event_placeholders(event, occurrence_date)
        sent = 0
        failed = 0
        for member in recipients:
            try:
                if self._send_one(event, message.message_id, member, body, placeholders, api_config, reporter):
                    sent += 1
                else:
                    failed += 1
            except Exception as exc:
                logger.exception("event %s: unexpected error for recipient %s", event.id, member.member_id)
                reporter.record(
                    "unknown",
                    "recipient_processing_error",
                    f"Error processing recipient {member.member_id}: {exc}",
                    event_id=event.id,
                    context={"step": "process_recipient", "recipient_id": member.member_id},
                    counted=False,
                )
                failed += 1

        return self._finish(event, occurrence, message.message_id, sent=sent, failed=failed, reporter=reporter)

    def _send_one(
        self,
        event: ReminderEvent,
        message_id: str,
        member: MemberRecord,
        body: str,
        placeholders: dict[str, str],
        api_config: ApiConfigurationRecord,
        reporter: RunReporter,
    ) -> bool:
        country_code = self._settings.sms_country_code
        formatted = format_phone_for_provider(member.phone_number, country_code)
        if not is_valid_provider_phone(formatted, country_code):
            logger.warning(
                "event %s: invalid phone for member %s (%s)",
                event.id,
                member.member_id,
                mask_phone_number(member.phone_number),
            )
            reporter.record(
                "validation",
                "invalid_phone_number",
                f"Invalid phone number for member {member.member_id}",
                event_id=event.id,
                context={"step": "validate_phone", "recipient_id": member.member_id, "phone": mask_phone_number(formatted)},
                counted=False,
            )
            return False

        text = personalize(body, {**placeholders, **member_placeholders(member.first_name, member.last_name)})
        try:
            row = self._store.create_message_recipient(
                message_id=message_id,
                recipient_id=member.member_id,
                phone_number=formatted,
                recipient_name=f"{member.first_name} {member.last_name}".strip(),
                personalized_message=text,
                cost=self._settings.sms_cost_per_message,
            )
        except StoreError as exc:
            logger.error("event %s: could not create recipient row for %s: %s", event.id, member.member_id, exc)
            reporter.record(
                "database",
                "insert_failure",
                f"Error creating recipient: {exc}",
                event_id=event.id,
                context={"step": "create_recipient", "message_id": message_id, "recipient_id": member.member_id},
                counted=False,
            )
            return False

        attempted_ms = int(self._clock().timestamp() * 1000)
        try:
            result = self._sender.send_sms(
                ProviderSendRequest(
                    api_key=api_config.api_key,
                    username=api_config.username or api_config.api_key,
                    sender_id=api_config.sender_id,
                    destination=formatted,
                    message=text,
                    message_id=f"EVT_{message_id}_{member.member_id}_{attempted_ms}",
                )
            )
        except Exception as exc:
            logger.exception("event %s: sender raised for recipient %s", event.id, member.member_id)
            self._set_recipient_status(
                event, row.recipient_row_id, reporter, status="Failed", error_message=str(exc) or type(exc).__name__
            )
            reporter.record(
                "unknown",
                "recipient_processing_error",
                f"Error processing recipient {member.member_id}: {exc}",
                event_id=event.id,
                context={"step": "send_sms", "message_id": message_id, "recipient_id": member.member_id},
                counted=False,
            )
            return False

        if result.status == "sent":
            self._set_recipient_status(event, row.recipient_row_id, reporter, status="Sent", sent_at=result.attempted_at)
            return True

        error_text = result.error_message or "send failed"
        self._set_recipient_status(event, row.recipient_row_id, reporter, status="Failed", error_message=error_text)
        reporter.record(
            result.error_category or "api",
            result.error_code or "send_failure",
            error_text,
            event_id=event.id,
            context={
                "step": "send_sms",
                "message_id": message_id,
                "recipient_id": member.member_id,
                "phone": mask_phone_number(formatted),
                "api_response": result.raw_response,
            },
            counted=False,
        )
        return False

    def _set_recipient_status(
        self,
        event: ReminderEvent,
        recipient_row_id: str,
        reporter: RunReporter,
        *,
        status: str,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None:
        try:
            self._store.update_message_recipient_status(
                recipient_row_id, status=status, sent_at=sent_at, error_message=error_message
            )
        except StoreError as exc:
            logger.error("event %s: could not mark recipient row %s %s: %s", event.id, recipient_row_id, status, exc)
            reporter.record(
                "database",
                "update_failure",
                f"Error updating recipient status: {exc}",
                event_id=event.id,
                context={"step": "update_recipient", "recipient_row_id": recipient_row_id, "status": status},
                counted=False,
            )

    def _set_message_status(
        self,
        event: ReminderEvent,
        message_id: str,
        reporter: RunReporter,
        *,
        status: str,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None:
        try:
            self._store.update_message_status(message_id, status=status, sent_at=sent_at, error_message=error_message)
        except StoreError as exc:
            logger.error("event %s: could not mark message %s %s: %s", event.id, message_id, status, exc)
            reporter.record(
                "database",
                "update_failure",
                f"Error updating message status: {exc}",
                event_id=event.id,
                context={"step": "update_message", "message_id": message_id, "status": status},
                counted=False,
            )

    def _finish(
        self,
        event: ReminderEvent,
        occurrence: DueOccurrence,
        message_id: str,
        *,
        sent: int,
        failed: int,
        reporter: RunReporter,
    ) -> DispatchOutcome:
        finished_at = self._clock()
        failure_text = f"{failed} recipients failed" if failed else None
        if sent == 0:
            self._set_message_status(event, message_id, reporter, status="Failed", error_message=failure_text)
            logger.info("event %s: occurrence %s failed for all recipients", event.id, occurrence.occurrence_date)
            return DispatchOutcome(state="failed", failed=failed, message_id=message_id)

        # Sent log is written before the status update.
        try:
            self._store.create_sent_log(
                event_id=event.id,
                occurrence_date=occurrence.occurrence_date,
                reminder_send_time=occurrence.lead_policy,
                message_id=message_id,
                recipient_count=sent,
            )
        except DuplicateSentLogError:
            logger.warning("event %s: sent log for %s was written concurrently", event.id, occurrence.occurrence_date)
        except StoreError as exc:
            logger.error("event %s: could not write sent log: %s", event.id, exc)
            reporter.record(
                "database",
                "insert_failure",
                f"Error writing sent log: {exc}",
                event_id=event.id,
                context={"step": "create_sent_log", "message_id": message_id, "occurrence_date": occurrence.occurrence_date},
                counted=False,
            )
        self._set_message_status(
            event,
            message_id,
            reporter,
            status="Sent" if failed == 0 else "Sending",
            sent_at=finished_at if failed == 0 else None,
            error_message=failure_text,
        )
        logger.info("event %s: occurrence %s processed: %d sent, %d failed", event.id, occurrence.occurrence_date, sent, failed)
        return DispatchOutcome(
            state="sent" if failed == 0 else "partially_sent",
            sent=sent,
            failed=failed,
            message_id=message_id,
        )
