from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

LeadTimePolicy = Literal["day_before", "day_of"]
RecurrenceFrequency = Literal["daily", "weekly", "monthly", "yearly"]
RecipientType = Literal["all_members", "groups", "selected_members"]
MessageStatus = Literal["Sending", "Sent", "Failed"]
MessageRecipientStatus = Literal["Pending", "Sent", "Failed"]
RunStatus = Literal["running", "success", "partial", "failed"]
ErrorCategory = Literal["validation", "database", "network", "api", "unknown"]

LEAD_TIME_OFFSETS: dict[str, timedelta] = {
    "day_before": timedelta(days=1),
    "day_of": timedelta(days=0),
}
RECURRENCE_FREQUENCIES = frozenset({"daily", "weekly", "monthly", "yearly"})

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


class ReminderEvent(BaseModel):
    """An organization event as loaded from the events table.

    ``reminder_recipient_ids`` stays a loose list of strings here; entries are
    parsed into UUIDs (and malformed ones dropped) when recipients are resolved.
    """

    id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    name: str
    description: str | None = None
    event_date: date
    end_date: date | None = None
    event_time: str | None = None
    location: str | None = None
    is_recurring: bool = False
    recurrence_frequency: str | None = None
    reminder_enabled: bool = False
    reminder_send_time: LeadTimePolicy | None = None
    reminder_recipient_type: RecipientType | None = None
    reminder_recipient_ids: list[str] = Field(default_factory=list)
    reminder_template_id: str | None = None
    reminder_message_text: str | None = None

    @field_validator("reminder_recipient_ids", mode="before")
    @classmethod
    def _coerce_recipient_ids(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, (list, tuple, set, frozenset)):
            return [str(item) for item in value]
        return [str(value)]

    @field_validator("recurrence_frequency")
    @classmethod
    def _normalize_frequency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @model_validator(mode="after")
    def _validate_reminder_settings(self) -> ReminderEvent:
        if self.reminder_enabled:
            if self.reminder_send_time is None:
                raise ValueError("reminder_send_time is required when reminder_enabled is true")
            if self.reminder_recipient_type is None:
                raise ValueError("reminder_recipient_type is required when reminder_enabled is true")
        if self.reminder_recipient_type in {"groups", "selected_members"} and not self.reminder_recipient_ids:
            raise ValueError(
                f"reminder_recipient_ids cannot be empty for recipient type {self.reminder_recipient_type}"
            )
        if self.is_recurring and self.end_date is not None and self.end_date < self.event_date:
            raise ValueError("end_date must be on or after event_date")
        return self


@dataclass(frozen=True)
class DueOccurrence:
    event_id: str
    occurrence_date: date
    lead_policy: LeadTimePolicy


@dataclass(frozen=True)
class AllMembers:
    pass


@dataclass(frozen=True)
class GroupRecipients:
    group_ids: frozenset[UUID]


@dataclass(frozen=True)
class SelectedMembers:
    member_ids: frozenset[UUID]


RecipientSelector = Union[AllMembers, GroupRecipients, SelectedMembers]


def parse_identifier(raw: object) -> UUID | None:
    text = str(raw).strip()
    if not _UUID_RE.match(text):
        return None
    return UUID(text)


def parse_recipient_ids(raw_ids: list[str]) -> tuple[frozenset[UUID], list[str]]:
    """Split raw recipient ids into well-formed UUIDs and the dropped entries."""
    valid: set[UUID] = set()
    dropped: list[str] = []
    for raw in raw_ids:
        parsed = parse_identifier(raw)
        if parsed is None:
            dropped.append(raw)
            continue
        valid.add(parsed)
    return frozenset(valid), dropped


def parse_recipient_selector(event: ReminderEvent) -> tuple[RecipientSelector, list[str]]:
    recipient_type = event.reminder_recipient_type
    if recipient_type == "all_members":
        return AllMembers(), []
    ids, dropped = parse_recipient_ids(event.reminder_recipient_ids)
    if recipient_type == "groups":
        return GroupRecipients(group_ids=ids), dropped
    if recipient_type == "selected_members":
        return SelectedMembers(member_ids=ids), dropped
    raise ValueError(f"unsupported reminder_recipient_type: {recipient_type}")


class ReminderRunRequest(BaseModel):
    today: date | None = None


class ReminderRunResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    sent: int = 0
    errors: int = 0
    processed: int = 0
    events_processed: int = Field(default=0, alias="eventsProcessed")
    run_date: date = Field(alias="date")
    duration_ms: int = 0
    status: RunStatus


class BirthdayRunResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    sent: int = 0
    errors: int = 0
    processed: int = 0
    organizations_processed: int = Field(default=0, alias="organizationsProcessed")
    run_date: date = Field(alias="date")
    duration_ms: int = 0
    status: RunStatus


class RecurringRunResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    sent: int = 0
    errors: int = 0
    processed: int = 0
    messages_processed: int = Field(default=0, alias="messagesProcessed")
    skipped: int = 0
    total: int = 0
    run_date: date = Field(alias="date")
    duration_ms: int = 0
    status: RunStatus


class RunErrorEntryModel(BaseModel):
    event_id: str | None = None
    category: ErrorCategory
    code: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class ExecutionLogResponse(BaseModel):
    log_id: str
    job_name: str
    status: RunStatus
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    total_processed: int = 0
    total_success: int = 0
    total_errors: int = 0
    error_message: str | None = None
    errors: list[RunErrorEntryModel] = Field(default_factory=list)
    execution_details: dict[str, Any] = Field(default_factory=dict)


class ErrorDetailResponse(BaseModel):
    error_id: str
    log_id: str
    category: ErrorCategory
    code: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime


class ErrorDetailListResponse(BaseModel):
    items: list[ErrorDetailResponse]
