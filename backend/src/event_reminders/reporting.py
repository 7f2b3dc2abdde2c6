from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from .models import ErrorCategory, RunErrorEntryModel, RunStatus
from .store import ReminderStore, StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunErrorEntry:
    category: ErrorCategory
    code: str
    message: str
    event_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_model(self) -> RunErrorEntryModel:
        return RunErrorEntryModel(
            event_id=self.event_id,
            category=self.category,
            code=self.code,
            message=self.message,
            context=self.context,
        )

    def as_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {"category": self.category, "code": self.code, "error": self.message}
        if self.event_id is not None:
            summary["eventId"] = self.event_id
        return summary


def compute_run_status(*, sent: int, errors: int) -> RunStatus:
    if errors > 0 and sent == 0:
        return "failed"
    if errors > 0:
        return "partial"
    return "success"


@dataclass(frozen=True)
class RunTotals:
    sent: int
    errors: int
    processed: int
    events_processed: int
    status: RunStatus
    sampled_errors: tuple[RunErrorEntry, ...]
    total_error_entries: int


class RunReporter:
    """Accumulates counts and structured errors for one scheduled run.

    Counted entries contribute to ``errors`` and to the sampled error list;
    diagnostic entries are only persisted as error-detail rows. Persisting a
    row is best effort.
    """

    def __init__(self, store: ReminderStore | None, log_id: str | None, *, sample_limit: int = 10) -> None:
        self._store = store
        self._log_id = log_id
        self._sample_limit = max(1, sample_limit)
        self.sent = 0
        self.errors = 0
        self.processed = 0
        self._succeeded_keys: list[str] = []
        self._counted: list[RunErrorEntry] = []
        self._diagnostics: list[RunErrorEntry] = []

    @property
    def log_id(self) -> str | None:
        return self._log_id

    @property
    def counted_entries(self) -> list[RunErrorEntry]:
        return list(self._counted)

    @property
    def diagnostic_entries(self) -> list[RunErrorEntry]:
        return list(self._diagnostics)

    @property
    def events_processed(self) -> int:
        return len(self._succeeded_keys)

    def record(
        self,
        category: ErrorCategory,
        code: str,
        message: str,
        *,
        event_id: str | None = None,
        context: dict[str, Any] | None = None,
        counted: bool = True,
        weight: int = 1,
    ) -> RunErrorEntry:
        entry = RunErrorEntry(
            category=category,
            code=code,
            message=message,
            event_id=event_id,
            context=dict(context or {}),
        )
        if counted:
            self._counted.append(entry)
            self.errors += weight
        else:
            self._diagnostics.append(entry)
        self._persist(entry)
        return entry

    def add_processed(self, count: int) -> None:
        self.processed += count

    def add_send_results(self, key: str, *, sent: int, failed: int) -> None:
        self.sent += sent
        self.errors += failed
        if sent > 0 and key not in self._succeeded_keys:
            self._succeeded_keys.append(key)

    def status(self) -> RunStatus:
        return compute_run_status(sent=self.sent, errors=self.errors)

    def totals(self) -> RunTotals:
        return RunTotals(
            sent=self.sent,
            errors=self.errors,
            processed=self.processed,
            events_processed=self.events_processed,
            status=self.status(),
            sampled_errors=tuple(self._counted[: self._sample_limit]),
            total_error_entries=len(self._counted),
        )

    def finalize(
        self,
        *,
        completed_at: datetime,
        duration_ms: int,
        execution_details: dict[str, Any],
        response_data: dict[str, Any],
    ) -> RunTotals:
        totals = self.totals()
        if self._store is None or self._log_id is None:
            return totals
        sample = [entry.as_summary() for entry in totals.sampled_errors]
        try:
            self._store.finish_execution_log(
                self._log_id,
                status=totals.status,
                completed_at=completed_at,
                duration_ms=duration_ms,
                total_processed=totals.processed,
                total_success=totals.sent,
                total_errors=totals.errors,
                error_message=json.dumps(sample) if sample else None,
                error_details={"errors": sample, "total_errors": totals.total_error_entries} if sample else None,
                execution_details=execution_details,
                response_data=response_data,
            )
        except StoreError:
            logger.exception("failed to finalize execution log %s", self._log_id)
        return totals

    def fail(self, *, completed_at: datetime, duration_ms: int, exc: BaseException) -> None:
        if self._store is None or self._log_id is None:
            return
        message = str(exc) or type(exc).__name__
        try:
            self._store.finish_execution_log(
                self._log_id,
                status="failed",
                completed_at=completed_at,
                duration_ms=duration_ms,
                total_processed=self.processed,
                total_success=self.sent,
                total_errors=max(self.errors, 1),
                error_message=message,
                error_details={"error_type": type(exc).__name__, "error_message": message},
                execution_details=None,
                response_data=None,
            )
        except StoreError:
            logger.exception("failed to mark execution log %s as failed", self._log_id)

    def _persist(self, entry: RunErrorEntry) -> None:
        if self._store is None or self._log_id is None:
            return
        context = dict(entry.context)
        if entry.event_id is not None:
            context.setdefault("event_id", entry.event_id)
        try:
            self._store.add_error_detail(
                self._log_id,
                category=entry.category,
                code=entry.code,
                message=entry.message,
                context=_jsonable(context),
            )
        except StoreError:
            logger.warning("could not persist run error %s/%s for log %s", entry.category, entry.code, self._log_id)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
