from __future__ import annotations

import logging
import time
from datetime import date

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse

from .birthdays import BIRTHDAY_JOB_NAME, BirthdayMessageJob
from .config import get_settings
from .models import (
    BirthdayRunResponse,
    ErrorDetailListResponse,
    ErrorDetailResponse,
    ExecutionLogResponse,
    ReminderRunRequest,
    RecurringRunResponse,
    ReminderRunResponse,
    RunErrorEntryModel,
)
from .recurring_messages import RECURRING_JOB_NAME, RecurringMessageJob
from .reminder_runs import EVENT_REMINDER_JOB_NAME, EventReminderScheduler, ReminderRunSetupError
from .sms import SmsSender, create_sms_sender
from .store import ExecutionLogRecord, ReminderStore, StoreError, create_reminder_store

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])

# Created on first use so a misconfigured backend surfaces as a failed run, not a failed import.
reminder_store: ReminderStore | None = None
sms_sender: SmsSender | None = None


def _active_store() -> ReminderStore:
    global reminder_store
    if reminder_store is None:
        try:
            reminder_store = create_reminder_store(_settings)
        except Exception as exc:
            logger.exception("could not create reminder store (%s)", _settings.reminder_store_backend)
            raise ReminderRunSetupError(f"Reminder store unavailable: {exc}") from exc
    return reminder_store


def _active_sender() -> SmsSender:
    global sms_sender
    if sms_sender is None:
        try:
            sms_sender = create_sms_sender(_settings)
        except ValueError as exc:
            logger.exception("could not create sms sender (%s)", _settings.sms_sender_type)
            raise ReminderRunSetupError(f"SMS sender misconfigured: {exc}") from exc
    return sms_sender


def reset_runtime_state_for_tests() -> None:
    global reminder_store, sms_sender
    reminder_store = None
    sms_sender = None


def _resolve_today(payload: ReminderRunRequest | None) -> date | None:
    if payload is None or payload.today is None:
        return None
    if not _settings.reminder_allow_today_override:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="today override is disabled; set REMINDER_ALLOW_TODAY_OVERRIDE=true to enable it",
        )
    return payload.today


def _setup_failure(exc: ReminderRunSetupError, started: float) -> JSONResponse:
    duration_ms = exc.duration_ms or int((time.perf_counter() - started) * 1000)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": str(exc), "duration_ms": duration_ms},
    )


@router.post("/events/run", response_model=ReminderRunResponse)
def run_event_reminders(payload: ReminderRunRequest | None = None):
    started = time.perf_counter()
    today = _resolve_today(payload)
    try:
        scheduler = EventReminderScheduler(store=_active_store(), sender=_active_sender(), settings=_settings)
        report = scheduler.run(today=today)
    except ReminderRunSetupError as exc:
        return _setup_failure(exc, started)
    return report.to_response()


@router.post("/birthdays/run", response_model=BirthdayRunResponse)
def run_birthday_messages(payload: ReminderRunRequest | None = None):
    started = time.perf_counter()
    today = _resolve_today(payload)
    try:
        job = BirthdayMessageJob(store=_active_store(), sender=_active_sender(), settings=_settings)
        report = job.run(today=today)
    except ReminderRunSetupError as exc:
        return _setup_failure(exc, started)
    return report.to_response()


@router.post("/recurring/run", response_model=RecurringRunResponse)
def run_recurring_messages(payload: ReminderRunRequest | None = None):
    started = time.perf_counter()
    today = _resolve_today(payload)
    try:
        job = RecurringMessageJob(store=_active_store(), sender=_active_sender(), settings=_settings)
        report = job.run(today=today)
    except ReminderRunSetupError as exc:
        return _setup_failure(exc, started)
    return report.to_response()


def _execution_log_response(record: ExecutionLogRecord) -> ExecutionLogResponse:
    sampled = (record.error_details or {}).get("errors")
    errors = [
        RunErrorEntryModel(
            event_id=item.get("eventId"),
            category=item.get("category", "unknown"),
            code=item.get("code", "unknown"),
            message=item.get("error", ""),
        )
        for item in sampled or []
        if isinstance(item, dict)
    ]
    return ExecutionLogResponse(
        log_id=record.log_id,
        job_name=record.job_name,
        status=record.status,
        started_at=record.started_at,
        completed_at=record.completed_at,
        duration_ms=record.duration_ms,
        total_processed=record.total_processed,
        total_success=record.total_success,
        total_errors=record.total_errors,
        error_message=record.error_message,
        errors=errors,
        execution_details=record.execution_details or {},
    )


@router.get("/runs/latest", response_model=ExecutionLogResponse)
def get_latest_run(job_name: str = EVENT_REMINDER_JOB_NAME) -> ExecutionLogResponse:
    if job_name not in {EVENT_REMINDER_JOB_NAME, BIRTHDAY_JOB_NAME, RECURRING_JOB_NAME}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"unknown job_name: {job_name}")
    try:
        record = _active_store().get_latest_execution_log(job_name)
    except (ReminderRunSetupError, StoreError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"no runs recorded for {job_name}")
    return _execution_log_response(record)


@router.get("/runs/{log_id}/errors", response_model=ErrorDetailListResponse)
def list_run_errors(log_id: str) -> ErrorDetailListResponse:
    try:
        rows = _active_store().list_error_details(log_id)
    except (ReminderRunSetupError, StoreError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ErrorDetailListResponse(
        items=[
            ErrorDetailResponse(
                error_id=row.error_id,
                log_id=row.log_id,
                category=row.category,
                code=row.code,
                message=row.message,
                context=row.context,
                occurred_at=row.occurred_at,
            )
            for row in rows
        ]
    )
