from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import Any, Iterable, Mapping, Protocol

from .config import Settings


class StoreError(Exception):
    """Raised when a read or write against the relational store fails."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(message)
        self.operation = operation


class DuplicateSentLogError(StoreError):
    """Raised when a sent-log row already exists for an occurrence."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class MemberRecord:
    member_id: str
    organization_id: str
    first_name: str
    last_name: str
    phone_number: str | None
    membership_status: str = "active"
    groups: tuple[str, ...] = ()
    date_of_birth: date | None = None


@dataclass(frozen=True)
class GroupRecord:
    group_id: str
    organization_id: str
    name: str
    status: str = "Active"


@dataclass(frozen=True)
class ApiConfigurationRecord:
    config_id: str
    organization_id: str
    api_key: str
    username: str | None
    sender_id: str
    is_active: bool = True


@dataclass(frozen=True)
class TemplateRecord:
    template_id: str
    organization_id: str
    name: str
    message: str


@dataclass(frozen=True)
class NotificationSettingsRecord:
    organization_id: str
    birthday_messages_enabled: bool
    birthday_template_id: str | None = None


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    organization_id: str
    message_name: str
    message_text: str
    recipient_type: str
    recipient_count: int
    status: str
    template_id: str | None
    api_configuration_id: str | None
    cost: float
    error_message: str | None
    sent_at: datetime | None
    created_at: datetime
    is_recurring: bool = False
    recurrence_frequency: str | None = None
    recurrence_end_date: date | None = None


@dataclass(frozen=True)
class MessageRecipientRecord:
    recipient_row_id: str
    message_id: str
    recipient_type: str
    recipient_id: str
    phone_number: str
    recipient_name: str
    personalized_message: str
    status: str
    cost: float
    error_message: str | None
    sent_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class SentLogRecord:
    log_id: str
    event_id: str
    occurrence_date: date
    reminder_send_time: str
    message_id: str | None
    recipient_count: int
    sent_at: datetime


@dataclass(frozen=True)
class ExecutionLogRecord:
    log_id: str
    job_name: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    total_processed: int = 0
    total_success: int = 0
    total_errors: int = 0
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    execution_details: dict[str, Any] | None = None
    response_data: dict[str, Any] | None = None


@dataclass(frozen=True)
class ErrorDetailRecord:
    error_id: str
    log_id: str
    category: str
    code: str
    message: str
    context: dict[str, Any]
    occurred_at: datetime


class ReminderStore(Protocol):
    def list_reminder_events(self) -> list[dict[str, Any]]: ...

    def get_active_api_configuration(self, organization_id: str) -> ApiConfigurationRecord | None: ...

    def get_api_configuration(self, organization_id: str, config_id: str) -> ApiConfigurationRecord | None: ...

    def list_members_with_phone(
        self,
        organization_id: str,
        *,
        member_ids: Iterable[str] | None = None,
        group_names: Iterable[str] | None = None,
        membership_status: str | None = None,
    ) -> list[MemberRecord]: ...

    def list_active_groups(self, organization_id: str, group_ids: Iterable[str]) -> list[GroupRecord]: ...

    def get_template_message(self, organization_id: str, template_id: str) -> str | None: ...

    def list_birthday_settings(self) -> list[NotificationSettingsRecord]: ...

    def has_sent_log(self, event_id: str, occurrence_date: date, reminder_send_time: str) -> bool: ...

    def create_sent_log(
        self,
        *,
        event_id: str,
        occurrence_date: date,
        reminder_send_time: str,
        message_id: str | None,
        recipient_count: int,
    ) -> SentLogRecord: ...

    def list_sent_logs(self, event_id: str | None = None) -> list[SentLogRecord]: ...

    def try_acquire_occurrence_lock(self, lock_key: str, *, now: datetime, ttl_seconds: int) -> bool: ...

    def release_occurrence_lock(self, lock_key: str) -> None: ...

    def create_message(
        self,
        *,
        organization_id: str,
        message_name: str,
        message_text: str,
        recipient_type: str,
        recipient_count: int,
        template_id: str | None,
        api_configuration_id: str | None,
        cost: float,
        is_recurring: bool = False,
        recurrence_frequency: str | None = None,
        recurrence_end_date: date | None = None,
    ) -> MessageRecord: ...

    def update_message_status(
        self,
        message_id: str,
        *,
        status: str,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None: ...

    def list_messages(self, organization_id: str | None = None) -> list[MessageRecord]: ...

    def list_recurring_messages(self, *, limit: int) -> list[MessageRecord]: ...

    def set_message_recurring(self, message_id: str, is_recurring: bool) -> None: ...

    def create_message_recipient(
        self,
        *,
        message_id: str,
        recipient_id: str,
        phone_number: str,
        recipient_name: str,
        personalized_message: str,
        cost: float,
    ) -> MessageRecipientRecord: ...

    def update_message_recipient_status(
        self,
        recipient_row_id: str,
        *,
        status: str,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None: ...

    def list_message_recipients(self, message_id: str) -> list[MessageRecipientRecord]: ...

    def create_execution_log(self, *, job_name: str, started_at: datetime) -> ExecutionLogRecord: ...

    def finish_execution_log(
        self,
        log_id: str,
        *,
        status: str,
        completed_at: datetime,
        duration_ms: int,
        total_processed: int,
        total_success: int,
        total_errors: int,
        error_message: str | None,
        error_details: dict[str, Any] | None,
        execution_details: dict[str, Any] | None,
        response_data: dict[str, Any] | None,
    ) -> None: ...

    def get_latest_execution_log(self, job_name: str) -> ExecutionLogRecord | None: ...

    def add_error_detail(
        self,
        log_id: str,
        *,
        category: str,
        code: str,
        message: str,
        context: dict[str, Any],
    ) -> ErrorDetailRecord: ...

    def list_error_details(self, log_id: str) -> list[ErrorDetailRecord]: ...


def _normalize_id(value: object) -> str:
    return str(value).strip().lower()


def _has_phone(member: MemberRecord) -> bool:
    return bool(member.phone_number and member.phone_number.strip())


class InMemoryReminderStore:
    """Thread-safe in-memory stand-in for the hosted relational store."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._events: dict[str, dict[str, Any]] = {}
        self._members: dict[str, MemberRecord] = {}
        self._groups: dict[str, GroupRecord] = {}
        self._api_configs: dict[str, ApiConfigurationRecord] = {}
        self._templates: dict[str, TemplateRecord] = {}
        self._notification_settings: dict[str, NotificationSettingsRecord] = {}
        self._messages: dict[str, MessageRecord] = {}
        self._message_recipients: dict[str, MessageRecipientRecord] = {}
        self._sent_logs: dict[tuple[str, date, str], SentLogRecord] = {}
        self._occurrence_locks: dict[str, datetime] = {}
        self._execution_logs: dict[str, ExecutionLogRecord] = {}
        self._error_details: dict[str, list[ErrorDetailRecord]] = {}

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._members.clear()
            self._groups.clear()
            self._api_configs.clear()
            self._templates.clear()
            self._notification_settings.clear()
            self._messages.clear()
            self._message_recipients.clear()
            self._sent_logs.clear()
            self._occurrence_locks.clear()
            self._execution_logs.clear()
            self._error_details.clear()

    # Seeding; the dashboards own these tables in production.

    def upsert_event(self, row: Mapping[str, Any]) -> None:
        event_id = str(row["id"])
        with self._lock:
            self._events[event_id] = copy.deepcopy(dict(row))

    def add_member(self, member: MemberRecord) -> None:
        with self._lock:
            self._members[_normalize_id(member.member_id)] = member

    def add_group(self, group: GroupRecord) -> None:
        with self._lock:
            self._groups[_normalize_id(group.group_id)] = group

    def add_api_configuration(self, config: ApiConfigurationRecord) -> None:
        with self._lock:
            self._api_configs[config.config_id] = config

    def add_template(self, template: TemplateRecord) -> None:
        with self._lock:
            self._templates[template.template_id] = template

    def set_notification_settings(self, settings: NotificationSettingsRecord) -> None:
        with self._lock:
            self._notification_settings[settings.organization_id] = settings

    # Reads

    def list_reminder_events(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                copy.deepcopy(row)
                for _, row in sorted(self._events.items())
                if row.get("reminder_enabled") is True
                and row.get("reminder_send_time") is not None
                and row.get("reminder_recipient_type") is not None
            ]
        return rows

    def get_active_api_configuration(self, organization_id: str) -> ApiConfigurationRecord | None:
        with self._lock:
            for config in self._api_configs.values():
                if config.organization_id == organization_id and config.is_active:
                    return config
        return None

    def get_api_configuration(self, organization_id: str, config_id: str) -> ApiConfigurationRecord | None:
        with self._lock:
            config = self._api_configs.get(config_id)
        if config is None or config.organization_id != organization_id or not config.is_active:
            return None
        return config

    def list_members_with_phone(
        self,
        organization_id: str,
        *,
        member_ids: Iterable[str] | None = None,
        group_names: Iterable[str] | None = None,
        membership_status: str | None = None,
    ) -> list[MemberRecord]:
        wanted_ids = {_normalize_id(value) for value in member_ids} if member_ids is not None else None
        wanted_groups = set(group_names) if group_names is not None else None
        with self._lock:
            members = list(self._members.values())
        result: list[MemberRecord] = []
        for member in members:
            if member.organization_id != organization_id or not _has_phone(member):
                continue
            if wanted_ids is not None and _normalize_id(member.member_id) not in wanted_ids:
                continue
            if wanted_groups is not None and not wanted_groups.intersection(member.groups):
                continue
            if membership_status is not None and member.membership_status != membership_status:
                continue
            result.append(member)
        return sorted(result, key=lambda value: (value.last_name, value.first_name, value.member_id))

    def list_active_groups(self, organization_id: str, group_ids: Iterable[str]) -> list[GroupRecord]:
        wanted = {_normalize_id(value) for value in group_ids}
        with self._lock:
            return [
                group
                for key, group in sorted(self._groups.items())
                if key in wanted and group.organization_id == organization_id and group.status == "Active"
            ]

    def get_template_message(self, organization_id: str, template_id: str) -> str | None:
        with self._lock:
            template = self._templates.get(template_id)
        if template is None or template.organization_id != organization_id:
            return None
        return template.message

    def list_birthday_settings(self) -> list[NotificationSettingsRecord]:
        with self._lock:
            return [
                value
                for _, value in sorted(self._notification_settings.items())
                if value.birthday_messages_enabled
            ]

    # Idempotency

    def has_sent_log(self, event_id: str, occurrence_date: date, reminder_send_time: str) -> bool:
        with self._lock:
            return (event_id, occurrence_date, reminder_send_time) in self._sent_logs

    def create_sent_log(
        self,
        *,
        event_id: str,
        occurrence_date: date,
        reminder_send_time: str,
        message_id: str | None,
        recipient_count: int,
    ) -> SentLogRecord:
        key = (event_id, occurrence_date, reminder_send_time)
        with self._lock:
            if key in self._sent_logs:
                raise DuplicateSentLogError(
                    "create_sent_log",
                    f"sent log already exists for {event_id} {occurrence_date.isoformat()} {reminder_send_time}",
                )
            record = SentLogRecord(
                log_id=_new_id(),
                event_id=event_id,
                occurrence_date=occurrence_date,
                reminder_send_time=reminder_send_time,
                message_id=message_id,
                recipient_count=recipient_count,
                sent_at=_now_utc(),
            )
            self._sent_logs[key] = record
        return record

    def list_sent_logs(self, event_id: str | None = None) -> list[SentLogRecord]:
        with self._lock:
            rows = list(self._sent_logs.values())
        if event_id is not None:
            rows = [row for row in rows if row.event_id == event_id]
        return sorted(rows, key=lambda value: (value.occurrence_date, value.sent_at))

    def try_acquire_occurrence_lock(self, lock_key: str, *, now: datetime, ttl_seconds: int) -> bool:
        with self._lock:
            acquired_at = self._occurrence_locks.get(lock_key)
            if acquired_at is not None and now - acquired_at < timedelta(seconds=ttl_seconds):
                return False
            self._occurrence_locks[lock_key] = now
            return True

    def release_occurrence_lock(self, lock_key: str) -> None:
        with self._lock:
            self._occurrence_locks.pop(lock_key, None)

    # Messages

    def create_message(
        self,
        *,
        organization_id: str,
        message_name: str,
        message_text: str,
        recipient_type: str,
        recipient_count: int,
        template_id: str | None,
        api_configuration_id: str | None,
        cost: float,
        is_recurring: bool = False,
        recurrence_frequency: str | None = None,
        recurrence_end_date: date | None = None,
    ) -> MessageRecord:
        record = MessageRecord(
            message_id=_new_id(),
            organization_id=organization_id,
            message_name=message_name,
            message_text=message_text,
            recipient_type=recipient_type,
            recipient_count=recipient_count,
            status="Sending",
            template_id=template_id,
            api_configuration_id=api_configuration_id,
            cost=cost,
            error_message=None,
            sent_at=None,
            created_at=_now_utc(),
            is_recurring=is_recurring,
            recurrence_frequency=recurrence_frequency,
            recurrence_end_date=recurrence_end_date,
        )
        with self._lock:
            self._messages[record.message_id] = record
        return record

    def update_message_status(
        self,
        message_id: str,
        *,
        status: str,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            row = self._messages.get(message_id)
            if row is None:
                return
            self._messages[message_id] = replace(
                row,
                status=status,
                sent_at=sent_at if sent_at is not None else row.sent_at,
                error_message=error_message if error_message is not None else row.error_message,
            )

    def list_messages(self, organization_id: str | None = None) -> list[MessageRecord]:
        with self._lock:
            rows = list(self._messages.values())
        if organization_id is not None:
            rows = [row for row in rows if row.organization_id == organization_id]
        return sorted(rows, key=lambda value: value.created_at)

    def list_recurring_messages(self, *, limit: int) -> list[MessageRecord]:
        with self._lock:
            rows = [row for row in self._messages.values() if row.is_recurring and row.status == "Sent"]
        return sorted(rows, key=lambda value: value.created_at)[:limit]

    def set_message_recurring(self, message_id: str, is_recurring: bool) -> None:
        with self._lock:
            row = self._messages.get(message_id)
            if row is not None:
                self._messages[message_id] = replace(row, is_recurring=is_recurring)

    def create_message_recipient(
        self,
        *,
        message_id: str,
        recipient_id: str,
        phone_number: str,
        recipient_name: str,
        personalized_message: str,
        cost: float,
    ) -> MessageRecipientRecord:
        with self._lock:
            if message_id not in self._messages:
                raise StoreError("create_message_recipient", f"unknown message_id: {message_id}")
            record = MessageRecipientRecord(
                recipient_row_id=_new_id(),
                message_id=message_id,
                recipient_type="member",
                recipient_id=recipient_id,
                phone_number=phone_number,
                recipient_name=recipient_name,
                personalized_message=personalized_message,
                status="Pending",
                cost=cost,
                error_message=None,
                sent_at=None,
                created_at=_now_utc(),
            )
            self._message_recipients[record.recipient_row_id] = record
        return record

    def update_message_recipient_status(
        self,
        recipient_row_id: str,
        *,
        status: str,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            row = self._message_recipients.get(recipient_row_id)
            if row is None:
                return
            self._message_recipients[recipient_row_id] = replace(
                row,
                status=status,
                sent_at=sent_at if sent_at is not None else row.sent_at,
                error_message=error_message if error_message is not None else row.error_message,
            )

    def list_message_recipients(self, message_id: str) -> list[MessageRecipientRecord]:
        with self._lock:
            rows = [row for row in self._message_recipients.values() if row.message_id == message_id]
        return sorted(rows, key=lambda value: value.created_at)

    # Execution logs

    def create_execution_log(self, *, job_name: str, started_at: datetime) -> ExecutionLogRecord:
        record = ExecutionLogRecord(log_id=_new_id(), job_name=job_name, status="running", started_at=started_at)
        with self._lock:
            self._execution_logs[record.log_id] = record
            self._error_details[record.log_id] = []
        return record

    def finish_execution_log(
        self,
        log_id: str,
        *,
        status: str,
        completed_at: datetime,
        duration_ms: int,
        total_processed: int,
        total_success: int,
        total_errors: int,
        error_message: str | None,
        error_details: dict[str, Any] | None,
        execution_details: dict[str, Any] | None,
        response_data: dict[str, Any] | None,
    ) -> None:
        with self._lock:
            row = self._execution_logs.get(log_id)
            if row is None:
                return
            self._execution_logs[log_id] = replace(
                row,
                status=status,
                completed_at=completed_at,
                duration_ms=duration_ms,
                total_processed=total_processed,
                total_success=total_success,
                total_errors=total_errors,
                error_message=error_message,
                error_details=copy.deepcopy(error_details),
                execution_details=copy.deepcopy(execution_details),
                response_data=copy.deepcopy(response_data),
            )

    def get_latest_execution_log(self, job_name: str) -> ExecutionLogRecord | None:
        with self._lock:
            rows = [row for row in self._execution_logs.values() if row.job_name == job_name]
        if not rows:
            return None
        return max(rows, key=lambda value: value.started_at)

    def add_error_detail(
        self,
        log_id: str,
        *,
        category: str,
        code: str,
        message: str,
        context: dict[str, Any],
    ) -> ErrorDetailRecord:
        record = ErrorDetailRecord(
            error_id=_new_id(),
            log_id=log_id,
            category=category,
            code=code,
            message=message,
            context=copy.deepcopy(context),
            occurred_at=_now_utc(),
        )
        with self._lock:
            if log_id not in self._execution_logs:
                raise StoreError("add_error_detail", f"unknown execution log: {log_id}")
            self._error_details[log_id].append(record)
        return record

    def list_error_details(self, log_id: str) -> list[ErrorDetailRecord]:
        with self._lock:
            return list(self._error_details.get(log_id, []))


def create_reminder_store(settings: Settings) -> ReminderStore:
    backend = settings.reminder_store_backend.strip().lower()
    if backend == "postgres":
        from .store_sqlalchemy import SqlAlchemyReminderStore

        return SqlAlchemyReminderStore(settings.database_url)
    if backend == "inmemory":
        return InMemoryReminderStore()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {settings.reminder_store_backend}")
