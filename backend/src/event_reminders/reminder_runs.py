from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError

from .config import Settings
from .dispatch import ReminderDispatcher
from .models import ReminderEvent, ReminderRunResponse, RunStatus
from .recipients import RecipientResolver, ResolutionFailure
from .recurrence import due_occurrences
from .reporting import RunErrorEntry, RunReporter
from .sms import SmsSender
from .store import ReminderStore, StoreError

logger = logging.getLogger(__name__)

EVENT_REMINDER_JOB_NAME = "process_event_reminders"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ReminderRunSetupError(RuntimeError):
    """A run could not start: the store is unreachable or misconfigured."""

    def __init__(self, message: str, *, duration_ms: int = 0) -> None:
        super().__init__(message)
        self.duration_ms = duration_ms


@dataclass(frozen=True)
class ReminderRunReport:
    message: str
    run_date: date
    sent: int
    errors: int
    processed: int
    events_processed: int
    events_found: int
    duration_ms: int
    status: RunStatus
    log_id: str | None = None
    sampled_errors: tuple[RunErrorEntry, ...] = ()

    def to_response(self) -> ReminderRunResponse:
        return ReminderRunResponse(
            message=self.message,
            sent=self.sent,
            errors=self.errors,
            processed=self.processed,
            events_processed=self.events_processed,
            run_date=self.run_date,
            duration_ms=self.duration_ms,
            status=self.status,
        )


def record_failure(reporter: RunReporter, failure: ResolutionFailure) -> None:
    entry = failure.entry
    reporter.record(
        entry.category,
        entry.code,
        entry.message,
        event_id=entry.event_id,
        context=entry.context,
        counted=failure.counted,
    )


class EventReminderScheduler:
    """Daily pipeline: load events, match due occurrences, resolve recipients, dispatch, report."""

    def __init__(
        self,
        *,
        store: ReminderStore,
        sender: SmsSender,
        settings: Settings,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._resolver = RecipientResolver(store)
        self._dispatcher = ReminderDispatcher(store, sender, settings, clock=clock)

    def run(self, today: date | None = None) -> ReminderRunReport:
        started_at = self._clock()
        started = time.perf_counter()
        run_date = today or started_at.astimezone(timezone.utc).date()
        logger.info("event reminder run starting for %s", run_date.isoformat())

        log_id: str | None = None
        try:
            log_id = self._store.create_execution_log(job_name=EVENT_REMINDER_JOB_NAME, started_at=started_at).log_id
        except StoreError:
            logger.exception("could not create execution log; continuing without one")
        reporter = RunReporter(self._store, log_id, sample_limit=self._settings.run_error_sample_limit)

        try:
            rows = self._store.list_reminder_events()
        except StoreError as exc:
            duration_ms = _elapsed_ms(started)
            logger.exception("event reminder run could not load events")
            reporter.fail(completed_at=self._clock(), duration_ms=duration_ms, exc=exc)
            raise ReminderRunSetupError(f"Error fetching events: {exc}", duration_ms=duration_ms) from exc

        logger.info("found %d event(s) with reminders enabled", len(rows))
        for row in rows:
            event_id = str(row.get("id", "")) or None
            try:
                self._process_row(row, run_date, reporter)
            except Exception as exc:
                logger.exception("event %s: processing failed", event_id)
                reporter.record(
                    "unknown",
                    "event_processing_error",
                    f"Error processing event {event_id}: {exc}",
                    event_id=event_id,
                    context={
                        "step": "process_event",
                        "organization_id": row.get("organization_id"),
                        "event_name": row.get("name"),
                    },
                )

        duration_ms = _elapsed_ms(started)
        message = "Event reminders processed" if rows else "No events with reminders enabled"
        totals = reporter.totals()
        report = ReminderRunReport(
            message=message,
            run_date=run_date,
            sent=totals.sent,
            errors=totals.errors,
            processed=totals.processed,
            events_processed=totals.events_processed,
            events_found=len(rows),
            duration_ms=duration_ms,
            status=totals.status,
            log_id=log_id,
            sampled_errors=totals.sampled_errors,
        )
        reporter.finalize(
            completed_at=self._clock(),
            duration_ms=duration_ms,
            execution_details={
                "events_found": len(rows),
                "events_processed": totals.events_processed,
                "date": run_date.isoformat(),
            },
            response_data=report.to_response().model_dump(mode="json", by_alias=True),
        )
        logger.info(
            "event reminder run finished: status=%s sent=%d errors=%d processed=%d events=%d",
            report.status,
            report.sent,
            report.errors,
            report.processed,
            report.events_processed,
        )
        return report

    def _process_row(self, row: dict[str, Any], run_date: date, reporter: RunReporter) -> None:
        try:
            event = ReminderEvent.model_validate(row)
        except ValidationError as exc:
            event_id = str(row.get("id", "")) or None
            logger.warning("event %s: invalid reminder definition: %s", event_id, exc.errors(include_url=False))
            reporter.record(
                "validation",
                "invalid_event_definition",
                f"Invalid reminder settings for event {event_id}: {exc.error_count()} validation error(s)",
                event_id=event_id,
                context={
                    "step": "validate_event",
                    "organization_id": row.get("organization_id"),
                    "errors": [error["msg"] for error in exc.errors(include_url=False)],
                },
            )
            return

        occurrences = due_occurrences(event, run_date)
        logger.info("event %s (%s): %d occurrence(s) due", event.id, event.name, len(occurrences))
        if not occurrences:
            reporter.record(
                "validation",
                "no_matching_occurrences",
                _no_occurrence_reason(event, run_date),
                event_id=event.id,
                context={
                    "step": "check_occurrences",
                    "organization_id": event.organization_id,
                    "event_date": event.event_date,
                    "reminder_send_time": event.reminder_send_time,
                    "today": run_date,
                },
                counted=False,
            )
            return

        api = self._resolver.resolve_api_configuration(event)
        if api.failure is not None or api.config is None:
            if api.failure is not None:
                record_failure(reporter, api.failure)
            return

        resolution = self._resolver.resolve(event)
        if resolution.failure is not None:
            record_failure(reporter, resolution.failure)
            return
        logger.info("event %s: %d recipient(s) resolved", event.id, len(resolution.recipients))

        for occurrence in occurrences:
            outcome = self._dispatcher.dispatch(
                event,
                occurrence,
                resolution.recipients,
                api.config,
                reporter=reporter,
            )
            if not outcome.attempted:
                continue
            reporter.add_processed(len(resolution.recipients))
            reporter.add_send_results(event.id, sent=outcome.sent, failed=outcome.failed)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _no_occurrence_reason(event: ReminderEvent, run_date: date) -> str:
    if event.is_recurring:
        return "No recurring occurrences match today's date for reminder timing."
    if event.reminder_send_time == "day_before":
        return (
            f"Event date ({event.event_date.isoformat()}) doesn't match reminder timing: "
            f"for day_before, today ({run_date.isoformat()}) must be one day before the event date."
        )
    return (
        f"Event date ({event.event_date.isoformat()}) doesn't match reminder timing: "
        f"for day_of, the event date must be today ({run_date.isoformat()})."
    )
