from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

from .config import Settings
from .models import RecurringRunResponse, RunStatus
from .reminder_runs import ReminderRunSetupError
from .reporting import RunReporter
from .sms import (
    ProviderSendRequest,
    SmsSender,
    format_phone_for_provider,
    is_valid_provider_phone,
    mask_phone_number,
)
from .store import ApiConfigurationRecord, MessageRecipientRecord, MessageRecord, ReminderStore, StoreError

logger = logging.getLogger(__name__)

RECURRING_JOB_NAME = "process_recurring_messages"
RECURRING_FETCH_LIMIT = 100

# Days since the last send, [start, end). The slack absorbs missed daily runs
# and month/year length differences.
RECURRENCE_WINDOWS: dict[str, tuple[int, int]] = {
    "weekly": (7, 14),
    "monthly": (28, 35),
    "yearly": (365, 375),
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def last_sent_date(message: MessageRecord) -> date:
    moment = message.sent_at or message.created_at
    return moment.astimezone(timezone.utc).date()


def recurrence_due(frequency: str | None, last_sent: date, today: date) -> bool:
    """True when ``today`` falls inside the send window for ``frequency``.

    Unknown frequencies are never due.
    """
    window = RECURRENCE_WINDOWS.get((frequency or "").strip().lower())
    if window is None:
        return False
    elapsed = (today - last_sent).days
    return window[0] <= elapsed < window[1]


def recurrence_expired(end_date: date | None, today: date) -> bool:
    # The end date itself is still a valid send day.
    return end_date is not None and today > end_date


@dataclass(frozen=True)
class RecurringRunReport:
    message: str
    run_date: date
    sent: int
    errors: int
    processed: int
    messages_processed: int
    skipped: int
    total: int
    duration_ms: int
    status: RunStatus
    log_id: str | None = None

    def to_response(self) -> RecurringRunResponse:
        return RecurringRunResponse(
            message=self.message,
            sent=self.sent,
            errors=self.errors,
            processed=self.processed,
            messages_processed=self.messages_processed,
            skipped=self.skipped,
            total=self.total,
            run_date=self.run_date,
            duration_ms=self.duration_ms,
            status=self.status,
        )


class RecurringMessageJob:
    """Re-sends recurring organization messages whose interval has elapsed.

    Each re-send is a new ``(Recurring)`` message that inherits the recurrence
    settings; the source row stops recurring once the copy is created, so a
    message never fans out into parallel chains. If the copy reaches nobody,
    recurrence is handed back to the source and the next daily run retries.
    """

    def __init__(
        self,
        *,
        store: ReminderStore,
        sender: SmsSender,
        settings: Settings,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._store = store
        self._sender = sender
        self._settings = settings
        self._clock = clock

    def run(self, today: date | None = None) -> RecurringRunReport:
        started_at = self._clock()
        started = time.perf_counter()
        run_date = today or started_at.astimezone(timezone.utc).date()
        logger.info("recurring message run starting for %s", run_date.isoformat())

        log_id: str | None = None
        try:
            log_id = self._store.create_execution_log(job_name=RECURRING_JOB_NAME, started_at=started_at).log_id
        except StoreError:
            logger.exception("could not create execution log; continuing without one")
        reporter = RunReporter(self._store, log_id, sample_limit=self._settings.run_error_sample_limit)

        try:
            candidates = self._store.list_recurring_messages(limit=RECURRING_FETCH_LIMIT)
        except StoreError as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.exception("recurring run could not load recurring messages")
            reporter.fail(completed_at=self._clock(), duration_ms=duration_ms, exc=exc)
            raise ReminderRunSetupError(f"Failed to fetch recurring messages: {exc}", duration_ms=duration_ms) from exc

        resent = 0
        for message in candidates:
            try:
                if self._process_message(message, run_date, reporter):
                    resent += 1
            except Exception as exc:
                logger.exception("message %s: recurring processing failed", message.message_id)
                reporter.record(
                    "unknown",
                    "message_processing_error",
                    f"Error processing recurring message {message.message_id}: {exc}",
                    context={
                        "step": "process_message",
                        "organization_id": message.organization_id,
                        "message_id": message.message_id,
                    },
                )

        duration_ms = int((time.perf_counter() - started) * 1000)
        totals = reporter.totals()
        report = RecurringRunReport(
            message="Recurring messages processed" if candidates else "No recurring messages to process",
            run_date=run_date,
            sent=totals.sent,
            errors=totals.errors,
            processed=totals.processed,
            messages_processed=resent,
            skipped=len(candidates) - resent,
            total=len(candidates),
            duration_ms=duration_ms,
            status=totals.status,
            log_id=log_id,
        )
        reporter.finalize(
            completed_at=self._clock(),
            duration_ms=duration_ms,
            execution_details={"messages_found": len(candidates), "date": run_date.isoformat()},
            response_data=report.to_response().model_dump(mode="json", by_alias=True),
        )
        logger.info(
            "recurring message run finished: status=%s resent=%d skipped=%d sent=%d errors=%d",
            report.status,
            report.messages_processed,
            report.skipped,
            report.sent,
            report.errors,
        )
        return report

    def _process_message(self, message: MessageRecord, run_date: date, reporter: RunReporter) -> bool:
        message_id = message.message_id
        org_id = message.organization_id
        context = {"organization_id": org_id, "message_id": message_id}

        if recurrence_expired(message.recurrence_end_date, run_date):
            logger.info("message %s: recurrence ended on %s, disabling", message_id, message.recurrence_end_date)
            try:
                self._store.set_message_recurring(message_id, False)
            except StoreError as exc:
                logger.error("message %s: could not disable recurrence: %s", message_id, exc)
                reporter.record(
                    "database",
                    "update_failure",
                    f"Error disabling recurrence: {exc}",
                    context={"step": "disable_recurrence", **context},
                    counted=False,
                )
            return False

        if not recurrence_due(message.recurrence_frequency, last_sent_date(message), run_date):
            return False

        try:
            config = (
                self._store.get_api_configuration(org_id, message.api_configuration_id)
                if message.api_configuration_id
                else None
            )
        except StoreError as exc:
            logger.error("message %s: api configuration lookup failed: %s", message_id, exc)
            reporter.record(
                "database",
                "query_failure",
                f"Error fetching API configuration: {exc}",
                context={"step": "fetch_api_config", **context},
            )
            return False
        if config is None or not config.api_key or not config.sender_id:
            logger.error("message %s: no active api configuration in org %s", message_id, org_id)
            reporter.record(
                "validation",
                "missing_api_config",
                f"API config not found for message {message_id} in org {org_id}",
                context={"step": "fetch_api_config", **context},
            )
            return False

        try:
            recipients = [
                row
                for row in self._store.list_message_recipients(message_id)
                if row.status == "Sent" and row.phone_number
            ]
        except StoreError as exc:
            logger.error("message %s: recipient lookup failed: %s", message_id, exc)
            reporter.record(
                "database",
                "query_failure",
                f"Error fetching original recipients: {exc}",
                context={"step": "fetch_recipients", **context},
            )
            return False
        if not recipients:
            logger.info("message %s: no delivered recipients to repeat, skipping", message_id)
            return False

        try:
            copy = self._store.create_message(
                organization_id=org_id,
                message_name=f"{message.message_name} (Recurring)",
                message_text=message.message_text,
                recipient_type=message.recipient_type,
                recipient_count=message.recipient_count,
                template_id=message.template_id,
                api_configuration_id=message.api_configuration_id,
                cost=message.cost,
                is_recurring=True,
                recurrence_frequency=message.recurrence_frequency,
                recurrence_end_date=message.recurrence_end_date,
            )
        except StoreError as exc:
            logger.error("message %s: could not create recurrence: %s", message_id, exc)
            reporter.record(
                "database",
                "insert_failure",
                f"Error creating new message for recurrence: {exc}",
                context={"step": "create_message", **context},
                weight=len(recipients),
            )
            return False

        try:
            self._store.set_message_recurring(message_id, False)
        except StoreError as exc:
            logger.error("message %s: could not hand recurrence to %s: %s", message_id, copy.message_id, exc)
            reporter.record(
                "database",
                "update_failure",
                f"Error handing recurrence to the new message: {exc}",
                context={"step": "transfer_recurrence", "new_message_id": copy.message_id, **context},
            )
            self._set_message_status(copy.message_id, reporter, status="Failed", error_message=str(exc))
            self._set_recurring(copy.message_id, False, reporter)
            return False

        reporter.add_processed(len(recipients))
        sent = 0
        failed = 0
        for recipient in recipients:
            try:
                delivered = self._send_one(message, copy.message_id, recipient, config, reporter)
            except Exception as exc:
                logger.exception("message %s: unexpected error for recipient %s", copy.message_id, recipient.recipient_id)
                reporter.record(
                    "unknown",
                    "recipient_processing_error",
                    f"Error processing recipient {recipient.recipient_id}: {exc}",
                    context={"step": "process_recipient", "recipient_id": recipient.recipient_id, **context},
                    counted=False,
                )
                delivered = False
            if delivered:
                sent += 1
            else:
                failed += 1
        reporter.add_send_results(copy.message_id, sent=sent, failed=failed)

        failure_text = f"{failed} recipients failed" if failed else None
        if sent == 0:
            self._set_message_status(copy.message_id, reporter, status="Failed", error_message=failure_text)
            self._set_recurring(copy.message_id, False, reporter)
            self._set_recurring(message_id, True, reporter)
            logger.info("message %s: recurrence failed for all recipients", message_id)
            return False

        self._set_message_status(copy.message_id, reporter, status="Sent", sent_at=self._clock(), error_message=failure_text)
        logger.info("message %s: recurrence %s sent to %d, %d failed", message_id, copy.message_id, sent, failed)
        return True

    def _send_one(
        self,
        source: MessageRecord,
        message_id: str,
        recipient: MessageRecipientRecord,
        config: ApiConfigurationRecord,
        reporter: RunReporter,
    ) -> bool:
        country_code = self._settings.sms_country_code
        formatted = format_phone_for_provider(recipient.phone_number, country_code)
        if not is_valid_provider_phone(formatted, country_code):
            logger.warning("message %s: invalid phone %s", message_id, mask_phone_number(recipient.phone_number))
            reporter.record(
                "validation",
                "invalid_phone_number",
                f"Invalid phone number for recipient {recipient.recipient_id}",
                context={"step": "validate_phone", "message_id": message_id, "recipient_id": recipient.recipient_id},
                counted=False,
            )
            return False

        text = recipient.personalized_message or source.message_text
        try:
            row = self._store.create_message_recipient(
                message_id=message_id,
                recipient_id=recipient.recipient_id,
                phone_number=formatted,
                recipient_name=recipient.recipient_name,
                personalized_message=text,
                cost=recipient.cost,
            )
        except StoreError as exc:
            logger.error("message %s: could not create recipient row for %s: %s", message_id, recipient.recipient_id, exc)
            reporter.record(
                "database",
                "insert_failure",
                f"Error creating recipient: {exc}",
                context={"step": "create_recipient", "message_id": message_id, "recipient_id": recipient.recipient_id},
                counted=False,
            )
            return False

        attempted_ms = int(self._clock().timestamp() * 1000)
        try:
            result = self._sender.send_sms(
                ProviderSendRequest(
                    api_key=config.api_key,
                    username=config.username or config.api_key,
                    sender_id=config.sender_id,
                    destination=formatted,
                    message=text,
                    message_id=f"MSG_{message_id}_{row.recipient_row_id}_{attempted_ms}",
                )
            )
        except Exception as exc:
            logger.exception("message %s: sender raised for recipient %s", message_id, recipient.recipient_id)
            self._set_recipient_status(
                row.recipient_row_id, reporter, status="Failed", error_message=str(exc) or type(exc).__name__
            )
            reporter.record(
                "unknown",
                "recipient_processing_error",
                f"Error processing recipient {recipient.recipient_id}: {exc}",
                context={"step": "send_sms", "message_id": message_id, "recipient_id": recipient.recipient_id},
                counted=False,
            )
            return False

        if result.status == "sent":
            self._set_recipient_status(row.recipient_row_id, reporter, status="Sent", sent_at=result.attempted_at)
            return True

        error_text = result.error_message or "Failed to send"
        self._set_recipient_status(row.recipient_row_id, reporter, status="Failed", error_message=error_text)
        reporter.record(
            result.error_category or "api",
            result.error_code or "send_failure",
            error_text,
            context={
                "step": "send_sms",
                "message_id": message_id,
                "recipient_id": recipient.recipient_id,
                "phone": mask_phone_number(formatted),
                "api_response": result.raw_response,
            },
            counted=False,
        )
        return False

    def _set_recipient_status(
        self,
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
            logger.error("recipient row %s: could not mark %s: %s", recipient_row_id, status, exc)
            reporter.record(
                "database",
                "update_failure",
                f"Error updating recipient status: {exc}",
                context={"step": "update_recipient", "recipient_row_id": recipient_row_id, "status": status},
                counted=False,
            )

    def _set_message_status(
        self,
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
            logger.error("message %s: could not mark %s: %s", message_id, status, exc)
            reporter.record(
                "database",
                "update_failure",
                f"Error updating message status: {exc}",
                context={"step": "update_message", "message_id": message_id, "status": status},
                counted=False,
            )

    def _set_recurring(self, message_id: str, is_recurring: bool, reporter: RunReporter) -> None:
        try:
            self._store.set_message_recurring(message_id, is_recurring)
        except StoreError as exc:
            logger.error("message %s: could not set recurrence to %s: %s", message_id, is_recurring, exc)
            reporter.record(
                "database",
                "update_failure",
                f"Error updating recurrence: {exc}",
                context={"step": "update_recurrence", "message_id": message_id, "is_recurring": is_recurring},
                counted=False,
            )
