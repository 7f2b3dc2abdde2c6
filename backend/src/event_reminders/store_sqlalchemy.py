from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Iterator, Mapping

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .store import (
    ApiConfigurationRecord,
    DuplicateSentLogError,
    ErrorDetailRecord,
    ExecutionLogRecord,
    GroupRecord,
    MemberRecord,
    MessageRecipientRecord,
    MessageRecord,
    NotificationSettingsRecord,
    SentLogRecord,
    StoreError,
    TemplateRecord,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump_json(value: object) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def _load_json(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


class ReminderStoreBase(DeclarativeBase):
    pass


class _EventRow(ReminderStoreBase):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    event_time: Mapped[str | None] = mapped_column(String(32), nullable=True)
    location: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurrence_frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reminder_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_send_time: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reminder_recipient_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reminder_recipient_ids_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminder_template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reminder_message_text: Mapped[str | None] = mapped_column(Text, nullable=True)


class _MemberRow(ReminderStoreBase):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    membership_status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    groups_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)


class _GroupRow(ReminderStoreBase):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Active")


class _ApiConfigurationRow(ReminderStoreBase):
    __tablename__ = "messaging_api_configurations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    api_key: Mapped[str] = mapped_column(String(256), nullable=False)
    username: Mapped[str | None] = mapped_column(String(256), nullable=True)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _TemplateRow(ReminderStoreBase):
    __tablename__ = "messaging_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)


class _NotificationSettingsRow(ReminderStoreBase):
    __tablename__ = "notification_settings"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    birthday_messages_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    birthday_template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class _MessageRow(ReminderStoreBase):
    __tablename__ = "messaging_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    message_name: Mapped[str] = mapped_column(String(512), nullable=False)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    api_configuration_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurrence_frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    recurrence_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)


class _MessageRecipientRow(ReminderStoreBase):
    __tablename__ = "messaging_message_recipients"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    message_id: Mapped[str] = mapped_column(String(64), ForeignKey("messaging_messages.id"), nullable=False, index=True)
    recipient_type: Mapped[str] = mapped_column(String(32), nullable=False, default="member")
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_name: Mapped[str] = mapped_column(String(256), nullable=False)
    personalized_message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SentLogRow(ReminderStoreBase):
    __tablename__ = "event_reminder_sent_logs"
    __table_args__ = (
        UniqueConstraint("event_id", "occurrence_date", "reminder_send_time", name="uq_event_reminder_sent_logs_occurrence"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    occurrence_date: Mapped[date] = mapped_column(Date, nullable=False)
    reminder_send_time: Mapped[str] = mapped_column(String(16), nullable=False)
    message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recipient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DispatchLockRow(ReminderStoreBase):
    __tablename__ = "event_reminder_dispatch_locks"

    lock_key: Mapped[str] = mapped_column(String(256), primary_key=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ExecutionLogRow(ReminderStoreBase):
    __tablename__ = "cron_job_execution_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_success: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_details_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_data_json: Mapped[str | None] = mapped_column(Text, nullable=True)


class _ErrorDetailRow(ReminderStoreBase):
    __tablename__ = "cron_job_error_details"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    log_id: Mapped[str] = mapped_column(String(64), ForeignKey("cron_job_execution_logs.id", ondelete="CASCADE"), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    code: Mapped[str] = mapped_column(String(128), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _member_record(row: _MemberRow) -> MemberRecord:
    return MemberRecord(
        member_id=row.id,
        organization_id=row.organization_id,
        first_name=row.first_name,
        last_name=row.last_name,
        phone_number=row.phone_number,
        membership_status=row.membership_status,
        groups=tuple(_load_json(row.groups_json) or ()),
        date_of_birth=row.date_of_birth,
    )


def _message_record(row: _MessageRow) -> MessageRecord:
    return MessageRecord(
        message_id=row.id,
        organization_id=row.organization_id,
        message_name=row.message_name,
        message_text=row.message_text,
        recipient_type=row.recipient_type,
        recipient_count=row.recipient_count,
        status=row.status,
        template_id=row.template_id,
        api_configuration_id=row.api_configuration_id,
        cost=row.cost,
        error_message=row.error_message,
        sent_at=_coerce_utc(row.sent_at),
        created_at=_coerce_utc(row.created_at),
        is_recurring=row.is_recurring,
        recurrence_frequency=row.recurrence_frequency,
        recurrence_end_date=row.recurrence_end_date,
    )


def _recipient_record(row: _MessageRecipientRow) -> MessageRecipientRecord:
    return MessageRecipientRecord(
        recipient_row_id=row.id,
        message_id=row.message_id,
        recipient_type=row.recipient_type,
        recipient_id=row.recipient_id,
        phone_number=row.phone_number,
        recipient_name=row.recipient_name,
        personalized_message=row.personalized_message,
        status=row.status,
        cost=row.cost,
        error_message=row.error_message,
        sent_at=_coerce_utc(row.sent_at),
        created_at=_coerce_utc(row.created_at),
    )


def _sent_log_record(row: _SentLogRow) -> SentLogRecord:
    return SentLogRecord(
        log_id=row.id,
        event_id=row.event_id,
        occurrence_date=row.occurrence_date,
        reminder_send_time=row.reminder_send_time,
        message_id=row.message_id,
        recipient_count=row.recipient_count,
        sent_at=_coerce_utc(row.sent_at),
    )


def _execution_log_record(row: _ExecutionLogRow) -> ExecutionLogRecord:
    return ExecutionLogRecord(
        log_id=row.id,
        job_name=row.job_name,
        status=row.status,
        started_at=_coerce_utc(row.started_at),
        completed_at=_coerce_utc(row.completed_at),
        duration_ms=row.duration_ms,
        total_processed=row.total_processed,
        total_success=row.total_success,
        total_errors=row.total_errors,
        error_message=row.error_message,
        error_details=_load_json(row.error_details_json),
        execution_details=_load_json(row.execution_details_json),
        response_data=_load_json(row.response_data_json),
    )


def _error_detail_record(row: _ErrorDetailRow) -> ErrorDetailRecord:
    return ErrorDetailRecord(
        error_id=row.id,
        log_id=row.log_id,
        category=row.category,
        code=row.code,
        message=row.message,
        context=_load_json(row.context_json) or {},
        occurred_at=_coerce_utc(row.occurred_at),
    )


class SqlAlchemyReminderStore:
    """Relational store backed by SQLAlchemy.

    Array columns of the hosted schema (recipient ids, member groups) are kept
    as JSON text so the same mapping runs against SQLite in tests.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderStoreBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            raise StoreError(operation, f"{operation} failed: {exc}") from exc

    def reset(self) -> None:
        with self._guard("reset"), self._session() as session:
            with session.begin():
                for table in reversed(ReminderStoreBase.metadata.sorted_tables):
                    session.execute(table.delete())

    # Seeding

    def upsert_event(self, row: Mapping[str, Any]) -> None:
        values = dict(row)
        raw_ids = values.pop("reminder_recipient_ids", None)
        values["reminder_recipient_ids_json"] = _dump_json(raw_ids)
        for key in ("event_date", "end_date"):
            if isinstance(values.get(key), str):
                values[key] = date.fromisoformat(values[key])
        values["id"] = str(values["id"])
        with self._guard("upsert_event"), self._session() as session:
            with session.begin():
                session.merge(_EventRow(**values))

    def add_member(self, member: MemberRecord) -> None:
        with self._guard("add_member"), self._session() as session:
            with session.begin():
                session.merge(
                    _MemberRow(
                        id=member.member_id,
                        organization_id=member.organization_id,
                        first_name=member.first_name,
                        last_name=member.last_name,
                        phone_number=member.phone_number,
                        membership_status=member.membership_status,
                        groups_json=json.dumps(list(member.groups)),
                        date_of_birth=member.date_of_birth,
                    )
                )

    def add_group(self, group: GroupRecord) -> None:
        with self._guard("add_group"), self._session() as session:
            with session.begin():
                session.merge(
                    _GroupRow(id=group.group_id, organization_id=group.organization_id, name=group.name, status=group.status)
                )

    def add_api_configuration(self, config: ApiConfigurationRecord) -> None:
        with self._guard("add_api_configuration"), self._session() as session:
            with session.begin():
                session.merge(
                    _ApiConfigurationRow(
                        id=config.config_id,
                        organization_id=config.organization_id,
                        api_key=config.api_key,
                        username=config.username,
                        sender_id=config.sender_id,
                        is_active=config.is_active,
                    )
                )

    def add_template(self, template: TemplateRecord) -> None:
        with self._guard("add_template"), self._session() as session:
            with session.begin():
                session.merge(
                    _TemplateRow(
                        id=template.template_id,
                        organization_id=template.organization_id,
                        name=template.name,
                        message=template.message,
                    )
                )

    def set_notification_settings(self, settings: NotificationSettingsRecord) -> None:
        with self._guard("set_notification_settings"), self._session() as session:
            with session.begin():
                session.merge(
                    _NotificationSettingsRow(
                        organization_id=settings.organization_id,
                        birthday_messages_enabled=settings.birthday_messages_enabled,
                        birthday_template_id=settings.birthday_template_id,
                    )
                )

    # Reads

    def list_reminder_events(self) -> list[dict[str, Any]]:
        with self._guard("list_reminder_events"), self._session() as session:
            rows = session.scalars(
                select(_EventRow)
                .where(
                    _EventRow.reminder_enabled.is_(True),
                    _EventRow.reminder_send_time.is_not(None),
                    _EventRow.reminder_recipient_type.is_not(None),
                )
                .order_by(_EventRow.id)
            ).all()
            return [
                {
                    "id": row.id,
                    "organization_id": row.organization_id,
                    "name": row.name,
                    "description": row.description,
                    "event_date": row.event_date,
                    "end_date": row.end_date,
                    "event_time": row.event_time,
                    "location": row.location,
                    "is_recurring": row.is_recurring,
                    "recurrence_frequency": row.recurrence_frequency,
                    "reminder_enabled": row.reminder_enabled,
                    "reminder_send_time": row.reminder_send_time,
                    "reminder_recipient_type": row.reminder_recipient_type,
                    "reminder_recipient_ids": _load_json(row.reminder_recipient_ids_json),
                    "reminder_template_id": row.reminder_template_id,
                    "reminder_message_text": row.reminder_message_text,
                }
                for row in rows
            ]

    def get_active_api_configuration(self, organization_id: str) -> ApiConfigurationRecord | None:
        with self._guard("get_active_api_configuration"), self._session() as session:
            row = session.scalars(
                select(_ApiConfigurationRow)
                .where(_ApiConfigurationRow.organization_id == organization_id, _ApiConfigurationRow.is_active.is_(True))
                .order_by(_ApiConfigurationRow.id)
                .limit(1)
            ).first()
            if row is None:
                return None
            return ApiConfigurationRecord(
                config_id=row.id,
                organization_id=row.organization_id,
                api_key=row.api_key,
                username=row.username,
                sender_id=row.sender_id,
                is_active=row.is_active,
            )

    def get_api_configuration(self, organization_id: str, config_id: str) -> ApiConfigurationRecord | None:
        with self._guard("get_api_configuration"), self._session() as session:
            row = session.get(_ApiConfigurationRow, config_id)
            if row is None or row.organization_id != organization_id or not row.is_active:
                return None
            return ApiConfigurationRecord(
                config_id=row.id,
                organization_id=row.organization_id,
                api_key=row.api_key,
                username=row.username,
                sender_id=row.sender_id,
                is_active=row.is_active,
            )

    def list_members_with_phone(
        self,
        organization_id: str,
        *,
        member_ids: Iterable[str] | None = None,
        group_names: Iterable[str] | None = None,
        membership_status: str | None = None,
    ) -> list[MemberRecord]:
        stmt = select(_MemberRow).where(
            _MemberRow.organization_id == organization_id,
            _MemberRow.phone_number.is_not(None),
            func.trim(_MemberRow.phone_number) != "",
        )
        if member_ids is not None:
            stmt = stmt.where(_MemberRow.id.in_([str(value).lower() for value in member_ids]))
        if membership_status is not None:
            stmt = stmt.where(_MemberRow.membership_status == membership_status)
        stmt = stmt.order_by(_MemberRow.last_name, _MemberRow.first_name, _MemberRow.id)
        with self._guard("list_members_with_phone"), self._session() as session:
            members = [_member_record(row) for row in session.scalars(stmt).all()]
        if group_names is None:
            return members
        wanted = set(group_names)
        # Group membership is an array column; overlap is evaluated here.
        return [member for member in members if wanted.intersection(member.groups)]

    def list_active_groups(self, organization_id: str, group_ids: Iterable[str]) -> list[GroupRecord]:
        ids = [str(value).lower() for value in group_ids]
        if not ids:
            return []
        with self._guard("list_active_groups"), self._session() as session:
            rows = session.scalars(
                select(_GroupRow)
                .where(_GroupRow.organization_id == organization_id, _GroupRow.status == "Active", _GroupRow.id.in_(ids))
                .order_by(_GroupRow.id)
            ).all()
            return [
                GroupRecord(group_id=row.id, organization_id=row.organization_id, name=row.name, status=row.status)
                for row in rows
            ]

    def get_template_message(self, organization_id: str, template_id: str) -> str | None:
        with self._guard("get_template_message"), self._session() as session:
            row = session.get(_TemplateRow, template_id)
            if row is None or row.organization_id != organization_id:
                return None
            return row.message

    def list_birthday_settings(self) -> list[NotificationSettingsRecord]:
        with self._guard("list_birthday_settings"), self._session() as session:
            rows = session.scalars(
                select(_NotificationSettingsRow)
                .where(_NotificationSettingsRow.birthday_messages_enabled.is_(True))
                .order_by(_NotificationSettingsRow.organization_id)
            ).all()
            return [
                NotificationSettingsRecord(
                    organization_id=row.organization_id,
                    birthday_messages_enabled=row.birthday_messages_enabled,
                    birthday_template_id=row.birthday_template_id,
                )
                for row in rows
            ]

    # Idempotency

    def has_sent_log(self, event_id: str, occurrence_date: date, reminder_send_time: str) -> bool:
        with self._guard("has_sent_log"), self._session() as session:
            row = session.scalars(
                select(_SentLogRow.id).where(
                    _SentLogRow.event_id == event_id,
                    _SentLogRow.occurrence_date == occurrence_date,
                    _SentLogRow.reminder_send_time == reminder_send_time,
                )
            ).first()
            return row is not None

    def create_sent_log(
        self,
        *,
        event_id: str,
        occurrence_date: date,
        reminder_send_time: str,
        message_id: str | None,
        recipient_count: int,
    ) -> SentLogRecord:
        row = _SentLogRow(
            id=str(uuid.uuid4()),
            event_id=event_id,
            occurrence_date=occurrence_date,
            reminder_send_time=reminder_send_time,
            message_id=message_id,
            recipient_count=recipient_count,
            sent_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            raise DuplicateSentLogError(
                "create_sent_log",
                f"sent log already exists for {event_id} {occurrence_date.isoformat()} {reminder_send_time}",
            ) from exc
        except SQLAlchemyError as exc:
            raise StoreError("create_sent_log", f"create_sent_log failed: {exc}") from exc
        return _sent_log_record(row)

    def list_sent_logs(self, event_id: str | None = None) -> list[SentLogRecord]:
        stmt = select(_SentLogRow).order_by(_SentLogRow.occurrence_date, _SentLogRow.sent_at)
        if event_id is not None:
            stmt = stmt.where(_SentLogRow.event_id == event_id)
        with self._guard("list_sent_logs"), self._session() as session:
            return [_sent_log_record(row) for row in session.scalars(stmt).all()]

    def try_acquire_occurrence_lock(self, lock_key: str, *, now: datetime, ttl_seconds: int) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    session.add(_DispatchLockRow(lock_key=lock_key, acquired_at=now))
            return True
        except IntegrityError:
            pass
        except SQLAlchemyError as exc:
            raise StoreError("try_acquire_occurrence_lock", f"try_acquire_occurrence_lock failed: {exc}") from exc

        # Held already: take it over only once the holder is past the TTL.
        with self._guard("try_acquire_occurrence_lock"), self._session() as session:
            with session.begin():
                existing = session.get(_DispatchLockRow, lock_key)
                if existing is None:
                    session.add(_DispatchLockRow(lock_key=lock_key, acquired_at=now))
                    return True
                if now - _coerce_utc(existing.acquired_at) < timedelta(seconds=ttl_seconds):
                    return False
                result = session.execute(
                    update(_DispatchLockRow)
                    .where(_DispatchLockRow.lock_key == lock_key, _DispatchLockRow.acquired_at == existing.acquired_at)
                    .values(acquired_at=now)
                )
                return result.rowcount == 1

    def release_occurrence_lock(self, lock_key: str) -> None:
        with self._guard("release_occurrence_lock"), self._session() as session:
            with session.begin():
                session.execute(delete(_DispatchLockRow).where(_DispatchLockRow.lock_key == lock_key))

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
        row = _MessageRow(
            id=str(uuid.uuid4()),
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
        with self._guard("create_message"), self._session() as session:
            with session.begin():
                session.add(row)
        return _message_record(row)

    def update_message_status(
        self,
        message_id: str,
        *,
        status: str,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._guard("update_message_status"), self._session() as session:
            with session.begin():
                row = session.get(_MessageRow, message_id)
                if row is None:
                    return
                row.status = status
                if sent_at is not None:
                    row.sent_at = sent_at
                if error_message is not None:
                    row.error_message = error_message

    def list_messages(self, organization_id: str | None = None) -> list[MessageRecord]:
        stmt = select(_MessageRow).order_by(_MessageRow.created_at)
        if organization_id is not None:
            stmt = stmt.where(_MessageRow.organization_id == organization_id)
        with self._guard("list_messages"), self._session() as session:
            return [_message_record(row) for row in session.scalars(stmt).all()]

    def list_recurring_messages(self, *, limit: int) -> list[MessageRecord]:
        stmt = (
            select(_MessageRow)
            .where(_MessageRow.is_recurring.is_(True), _MessageRow.status == "Sent")
            .order_by(_MessageRow.created_at)
            .limit(limit)
        )
        with self._guard("list_recurring_messages"), self._session() as session:
            return [_message_record(row) for row in session.scalars(stmt).all()]

    def set_message_recurring(self, message_id: str, is_recurring: bool) -> None:
        with self._guard("set_message_recurring"), self._session() as session:
            with session.begin():
                session.execute(update(_MessageRow).where(_MessageRow.id == message_id).values(is_recurring=is_recurring))

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
        row = _MessageRecipientRow(
            id=str(uuid.uuid4()),
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
        with self._guard("create_message_recipient"), self._session() as session:
            with session.begin():
                session.add(row)
        return _recipient_record(row)

    def update_message_recipient_status(
        self,
        recipient_row_id: str,
        *,
        status: str,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._guard("update_message_recipient_status"), self._session() as session:
            with session.begin():
                row = session.get(_MessageRecipientRow, recipient_row_id)
                if row is None:
                    return
                row.status = status
                if sent_at is not None:
                    row.sent_at = sent_at
                if error_message is not None:
                    row.error_message = error_message

    def list_message_recipients(self, message_id: str) -> list[MessageRecipientRecord]:
        with self._guard("list_message_recipients"), self._session() as session:
            rows = session.scalars(
                select(_MessageRecipientRow)
                .where(_MessageRecipientRow.message_id == message_id)
                .order_by(_MessageRecipientRow.created_at)
            ).all()
            return [_recipient_record(row) for row in rows]

    # Execution logs

    def create_execution_log(self, *, job_name: str, started_at: datetime) -> ExecutionLogRecord:
        row = _ExecutionLogRow(
            id=str(uuid.uuid4()),
            job_name=job_name,
            status="running",
            started_at=started_at,
            total_processed=0,
            total_success=0,
            total_errors=0,
        )
        with self._guard("create_execution_log"), self._session() as session:
            with session.begin():
                session.add(row)
        return _execution_log_record(row)

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
        with self._guard("finish_execution_log"), self._session() as session:
            with session.begin():
                row = session.get(_ExecutionLogRow, log_id)
                if row is None:
                    return
                row.status = status
                row.completed_at = completed_at
                row.duration_ms = duration_ms
                row.total_processed = total_processed
                row.total_success = total_success
                row.total_errors = total_errors
                row.error_message = error_message
                row.error_details_json = _dump_json(error_details)
                row.execution_details_json = _dump_json(execution_details)
                row.response_data_json = _dump_json(response_data)

    def get_latest_execution_log(self, job_name: str) -> ExecutionLogRecord | None:
        with self._guard("get_latest_execution_log"), self._session() as session:
            row = session.scalars(
                select(_ExecutionLogRow)
                .where(_ExecutionLogRow.job_name == job_name)
                .order_by(_ExecutionLogRow.started_at.desc())
                .limit(1)
            ).first()
            if row is None:
                return None
            return _execution_log_record(row)

    def add_error_detail(
        self,
        log_id: str,
        *,
        category: str,
        code: str,
        message: str,
        context: dict[str, Any],
    ) -> ErrorDetailRecord:
        row = _ErrorDetailRow(
            id=str(uuid.uuid4()),
            log_id=log_id,
            category=category,
            code=code,
            message=message,
            context_json=_dump_json(context) or "{}",
            occurred_at=_now_utc(),
        )
        with self._guard("add_error_detail"), self._session() as session:
            with session.begin():
                if session.get(_ExecutionLogRow, log_id) is None:
                    raise StoreError("add_error_detail", f"unknown execution log: {log_id}")
                session.add(row)
        return _error_detail_record(row)

    def list_error_details(self, log_id: str) -> list[ErrorDetailRecord]:
        with self._guard("list_error_details"), self._session() as session:
            rows = session.scalars(
                select(_ErrorDetailRow).where(_ErrorDetailRow.log_id == log_id).order_by(_ErrorDetailRow.occurred_at)
            ).all()
            return [_error_detail_record(row) for row in rows]
