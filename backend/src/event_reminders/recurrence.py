from __future__ import annotations

import calendar
from datetime import date, timedelta

from .models import LEAD_TIME_OFFSETS, DueOccurrence, ReminderEvent


def _clamped(year: int, month: int, day: int) -> date:
    _, last_day = calendar.monthrange(year, month)
    return date(year, month, min(day, last_day))


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def next_occurrence(anchor: date, frequency: str, reference: date) -> date | None:
    """Return the first occurrence on or after ``reference``.

    The bound is inclusive: a ``reference`` that is itself an occurrence date
    is returned unchanged. Callers that want the following instance pass
    ``reference + timedelta(days=1)``.

    Monthly and yearly occurrences always clamp from the anchor's own day, so
    a Jan 31 anchor yields Feb 28 (or 29) and then Mar 31 again.
    Returns ``None`` for an unrecognized frequency.
    """
    normalized = (frequency or "").strip().lower()
    if normalized not in {"daily", "weekly", "monthly", "yearly"}:
        return None
    if anchor > reference:
        return anchor

    if normalized == "daily":
        return reference

    if normalized == "weekly":
        days_ahead = (anchor.weekday() - reference.weekday()) % 7
        return reference + timedelta(days=days_ahead)

    if normalized == "monthly":
        candidate = _clamped(reference.year, reference.month, anchor.day)
        if candidate < reference:
            year, month = _add_months(reference.year, reference.month, 1)
            candidate = _clamped(year, month, anchor.day)
        return candidate

    candidate = _clamped(reference.year, anchor.month, anchor.day)
    if candidate < reference:
        candidate = _clamped(reference.year + 1, anchor.month, anchor.day)
    return candidate


def reminder_target_date(lead_policy: str, today: date) -> date:
    return today + LEAD_TIME_OFFSETS[lead_policy]


def due_occurrences(event: ReminderEvent, today: date) -> list[DueOccurrence]:
    """Occurrences of ``event`` whose reminder must be sent on ``today``.

    At most one entry: an event carries a single lead-time policy.
    """
    policy = event.reminder_send_time
    if not event.reminder_enabled or policy is None:
        return []

    target = reminder_target_date(policy, today)
    if not event.is_recurring:
        if event.event_date == target:
            return [DueOccurrence(event_id=event.id, occurrence_date=target, lead_policy=policy)]
        return []

    if not event.recurrence_frequency:
        return []
    occurrence = next_occurrence(event.event_date, event.recurrence_frequency, target)
    if occurrence is None or occurrence != target:
        return []
    if event.end_date is not None and occurrence > event.end_date:
        return []
    return [DueOccurrence(event_id=event.id, occurrence_date=occurrence, lead_policy=policy)]
