from __future__ import annotations

import re
from datetime import date
from typing import Callable

from .models import ReminderEvent

DEFAULT_BIRTHDAY_TEMPLATE = (
    "Happy Birthday {FirstName}! Wishing you a blessed day filled with joy and happiness. God bless you!"
)


def format_long_date(value: date) -> str:
    """``Friday, December 12, 2025`` (en-US long form, locale independent)."""
    return f"{value:%A}, {value:%B} {value.day}, {value.year}"


def default_event_message(event: ReminderEvent, occurrence_date: date) -> str:
    lines = [f"Reminder: {event.name}"]
    if event.description:
        lines.append(event.description)
    lines.append(f"Date: {format_long_date(occurrence_date)}")
    if event.event_time:
        lines.append(f"Time: {event.event_time}")
    if event.location:
        lines.append(f"Location: {event.location}")
    return "\n".join(lines) + "\n\nWe look forward to seeing you there!"


def _replace_placeholder(text: str, name: str, value: str) -> str:
    pattern = re.compile(r"\{" + re.escape(name) + r"\}", re.IGNORECASE)
    return pattern.sub(lambda _match: value, text)


def personalize(template: str, values: dict[str, str]) -> str:
    text = template
    for name, value in values.items():
        text = _replace_placeholder(text, name, value)
    return text


def member_placeholders(first_name: str | None, last_name: str | None) -> dict[str, str]:
    return {
        "FirstName": first_name or "",
        "LastName": last_name or "",
        "first_name": first_name or "",
        "last_name": last_name or "",
    }


def event_placeholders(event: ReminderEvent, occurrence_date: date) -> dict[str, str]:
    return {
        "EventName": event.name,
        "EventDate": format_long_date(occurrence_date),
        "EventTime": event.event_time or "",
        "Location": event.location or "",
        "Description": event.description or "",
    }


def resolve_event_message_body(
    event: ReminderEvent,
    occurrence_date: date,
    *,
    load_template: Callable[[str], str | None],
) -> tuple[str, str]:
    """Pick the reminder body and report where it came from.

    Order: the organization's template, then the event's literal text, then a
    generated default. ``load_template`` returns ``None`` for a missing or
    unreadable template.
    """
    if event.reminder_template_id:
        template_text = load_template(event.reminder_template_id)
        if template_text:
            return template_text, "template"
    if event.reminder_message_text:
        return event.reminder_message_text, "custom"
    return default_event_message(event, occurrence_date), "default"
