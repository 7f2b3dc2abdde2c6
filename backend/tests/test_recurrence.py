from __future__ import annotations

from datetime import date, timedelta

import pytest

from event_reminders.models import ReminderEvent
from event_reminders.recurrence import due_occurrences, next_occurrence


def _event(**overrides) -> ReminderEvent:
    values = {
        "id": "evt-1",
        "organization_id": "org-1",
        "name": "Choir Practice",
        "event_date": date(2025, 12, 12),
        "reminder_enabled": True,
        "reminder_send_time": "day_before",
        "reminder_recipient_type": "all_members",
    }
    values.update(overrides)
    return ReminderEvent(**values)


def test_future_anchor_is_its_own_next_occurrence() -> None:
    assert next_occurrence(date(2026, 1, 5), "weekly", date(2025, 12, 1)) == date(2026, 1, 5)


def test_daily_returns_reference() -> None:
    assert next_occurrence(date(2025, 1, 1), "daily", date(2025, 6, 9)) == date(2025, 6, 9)


def test_weekly_lands_on_anchor_weekday_inclusive() -> None:
    monday = date(2025, 12, 1)
    assert next_occurrence(monday, "weekly", date(2025, 12, 8)) == date(2025, 12, 8)
    assert next_occurrence(monday, "weekly", date(2025, 12, 9)) == date(2025, 12, 15)
    assert next_occurrence(monday, "WEEKLY", date(2025, 12, 7)) == date(2025, 12, 8)


def test_monthly_clamps_to_month_end_and_recovers() -> None:
    anchor = date(2025, 1, 31)
    assert next_occurrence(anchor, "monthly", date(2025, 2, 15)) == date(2025, 2, 28)
    assert next_occurrence(date(2024, 1, 31), "monthly", date(2024, 2, 15)) == date(2024, 2, 29)
    assert next_occurrence(anchor, "monthly", date(2025, 3, 1)) == date(2025, 3, 31)
    assert next_occurrence(anchor, "monthly", date(2025, 4, 1)) == date(2025, 4, 30)


def test_monthly_rolls_into_next_year() -> None:
    assert next_occurrence(date(2025, 1, 15), "monthly", date(2025, 12, 16)) == date(2026, 1, 15)


def test_yearly_leap_day_clamps_in_common_years() -> None:
    anchor = date(2024, 2, 29)
    assert next_occurrence(anchor, "yearly", date(2024, 3, 1)) == date(2025, 2, 28)
    assert next_occurrence(anchor, "yearly", date(2025, 3, 1)) == date(2026, 2, 28)
    assert next_occurrence(anchor, "yearly", date(2027, 3, 1)) == date(2028, 2, 29)


def test_unknown_frequency_has_no_occurrence() -> None:
    assert next_occurrence(date(2025, 1, 1), "fortnightly", date(2025, 2, 1)) is None
    assert next_occurrence(date(2025, 1, 1), "", date(2025, 2, 1)) is None


@pytest.mark.parametrize("frequency", ["daily", "weekly", "monthly", "yearly"])
def test_repeated_application_never_goes_backwards(frequency: str) -> None:
    anchor = date(2024, 1, 31)
    reference = date(2024, 1, 1)
    for _ in range(40):
        occurrence = next_occurrence(anchor, frequency, reference)
        assert occurrence is not None
        assert occurrence >= reference
        reference = occurrence + timedelta(days=1)


def test_day_before_is_due_only_the_day_before() -> None:
    event = _event(reminder_send_time="day_before")
    assert [o.occurrence_date for o in due_occurrences(event, date(2025, 12, 11))] == [date(2025, 12, 12)]
    assert due_occurrences(event, date(2025, 12, 12)) == []
    assert due_occurrences(event, date(2025, 12, 10)) == []


def test_day_of_is_due_only_on_the_day() -> None:
    event = _event(reminder_send_time="day_of")
    due = due_occurrences(event, date(2025, 12, 12))
    assert len(due) == 1
    assert due[0].occurrence_date == date(2025, 12, 12)
    assert due[0].lead_policy == "day_of"
    assert due_occurrences(event, date(2025, 12, 11)) == []


def test_weekly_day_before_fires_on_sunday_for_monday_event() -> None:
    event = _event(event_date=date(2025, 12, 1), is_recurring=True, recurrence_frequency="weekly")
    due = due_occurrences(event, date(2025, 12, 7))
    assert [o.occurrence_date for o in due] == [date(2025, 12, 8)]
    assert due_occurrences(event, date(2025, 12, 8)) == []


def test_weekly_day_of_fires_on_the_weekday() -> None:
    event = _event(
        event_date=date(2025, 12, 1),
        is_recurring=True,
        recurrence_frequency="weekly",
        reminder_send_time="day_of",
    )
    assert [o.occurrence_date for o in due_occurrences(event, date(2025, 12, 15))] == [date(2025, 12, 15)]


def test_daily_day_before_fires_every_day() -> None:
    event = _event(event_date=date(2025, 1, 1), is_recurring=True, recurrence_frequency="daily")
    assert [o.occurrence_date for o in due_occurrences(event, date(2025, 3, 3))] == [date(2025, 3, 4)]


def test_recurring_occurrence_after_end_date_is_not_due() -> None:
    event = _event(
        event_date=date(2025, 12, 1),
        end_date=date(2025, 12, 10),
        is_recurring=True,
        recurrence_frequency="weekly",
    )
    assert [o.occurrence_date for o in due_occurrences(event, date(2025, 12, 7))] == [date(2025, 12, 8)]
    assert due_occurrences(event, date(2025, 12, 14)) == []


def test_recurring_event_without_frequency_is_never_due() -> None:
    event = _event(is_recurring=True, recurrence_frequency=None)
    assert due_occurrences(event, date(2025, 12, 11)) == []


def test_disabled_reminders_are_never_due() -> None:
    event = _event(reminder_enabled=False, reminder_send_time=None, reminder_recipient_type=None)
    assert due_occurrences(event, date(2025, 12, 11)) == []
