from __future__ import annotations

from datetime import date
from uuid import UUID

import pytest
from pydantic import ValidationError

from event_reminders.models import (
    AllMembers,
    GroupRecipients,
    ReminderEvent,
    SelectedMembers,
    parse_recipient_selector,
)
from event_reminders.recipients import RecipientResolver
from event_reminders.store import StoreError

from factories import GROUP_CHOIR, GROUP_YOUTH, MEMBER_1, MEMBER_2, MEMBER_3, MEMBER_B1, ORG_A, ORG_B


def _event(**overrides) -> ReminderEvent:
    values = {
        "id": "evt-1",
        "organization_id": ORG_A,
        "name": "Choir Practice",
        "event_date": date(2025, 12, 12),
        "reminder_enabled": True,
        "reminder_send_time": "day_before",
        "reminder_recipient_type": "all_members",
    }
    values.update(overrides)
    return ReminderEvent(**values)


def test_enabled_event_requires_policy_and_recipient_type() -> None:
    with pytest.raises(ValidationError):
        ReminderEvent(
            id="evt-1",
            organization_id=ORG_A,
            name="x",
            event_date=date(2025, 1, 1),
            reminder_enabled=True,
            reminder_recipient_type="all_members",
        )


def test_selected_members_requires_ids() -> None:
    with pytest.raises(ValidationError):
        _event(reminder_recipient_type="selected_members", reminder_recipient_ids=[])


def test_scalar_recipient_id_is_coerced_to_list() -> None:
    event = _event(reminder_recipient_type="selected_members", reminder_recipient_ids=MEMBER_1)
    assert event.reminder_recipient_ids == [MEMBER_1]


def test_selector_parsing_drops_malformed_ids() -> None:
    event = _event(reminder_recipient_type="selected_members", reminder_recipient_ids=["not-a-uuid", MEMBER_1])
    selector, dropped = parse_recipient_selector(event)
    assert selector == SelectedMembers(member_ids=frozenset({UUID(MEMBER_1)}))
    assert dropped == ["not-a-uuid"]

    groups, _ = parse_recipient_selector(_event(reminder_recipient_type="groups", reminder_recipient_ids=[GROUP_CHOIR]))
    assert isinstance(groups, GroupRecipients)
    assert isinstance(parse_recipient_selector(_event())[0], AllMembers)


def test_all_members_includes_every_status_with_phone(store, seed) -> None:
    seed.member(MEMBER_1, membership_status="active")
    seed.member(MEMBER_2, membership_status="inactive", first_name="Kofi")
    seed.member(MEMBER_3, phone_number=None)
    seed.member(MEMBER_B1, org_id=ORG_B)

    resolution = RecipientResolver(store).resolve(_event())

    assert resolution.failure is None
    assert sorted(m.member_id for m in resolution.recipients) == [MEMBER_1, MEMBER_2]


def test_selected_members_proceeds_with_valid_ids(store, seed) -> None:
    seed.member(MEMBER_1)
    seed.member(MEMBER_2)
    event = _event(reminder_recipient_type="selected_members", reminder_recipient_ids=["not-a-uuid", MEMBER_1])

    resolution = RecipientResolver(store).resolve(event)

    assert resolution.failure is None
    assert [m.member_id for m in resolution.recipients] == [MEMBER_1]
    assert resolution.dropped_ids == ("not-a-uuid",)


def test_selected_members_all_invalid_is_a_counted_failure(store, seed) -> None:
    seed.member(MEMBER_1)
    event = _event(reminder_recipient_type="selected_members", reminder_recipient_ids=["bogus", "123"])

    resolution = RecipientResolver(store).resolve(event)

    assert resolution.recipients == ()
    assert resolution.failure is not None
    assert resolution.failure.entry.code == "invalid_recipient_ids"
    assert resolution.failure.counted is True


def test_selected_members_from_other_org_are_not_returned(store, seed) -> None:
    seed.member(MEMBER_B1, org_id=ORG_B)
    event = _event(reminder_recipient_type="selected_members", reminder_recipient_ids=[MEMBER_B1])

    resolution = RecipientResolver(store).resolve(event)

    assert resolution.recipients == ()
    assert resolution.failure is not None
    assert resolution.failure.entry.code == "no_recipients_found"
    assert resolution.failure.counted is False


def test_groups_resolve_members_by_group_name(store, seed) -> None:
    seed.group(GROUP_CHOIR, "Choir")
    seed.group(GROUP_YOUTH, "Youth", status="Inactive")
    seed.member(MEMBER_1, groups=("Choir",))
    seed.member(MEMBER_2, groups=("Youth",))
    seed.member(MEMBER_3, groups=("Choir", "Ushers"))
    seed.member(MEMBER_B1, org_id=ORG_B, groups=("Choir",))
    event = _event(reminder_recipient_type="groups", reminder_recipient_ids=[GROUP_CHOIR, GROUP_YOUTH])

    resolution = RecipientResolver(store).resolve(event)

    assert resolution.failure is None
    assert sorted(m.member_id for m in resolution.recipients) == [MEMBER_1, MEMBER_3]


def test_groups_of_another_org_are_not_found(store, seed) -> None:
    seed.group(GROUP_CHOIR, "Choir", org_id=ORG_B)
    event = _event(reminder_recipient_type="groups", reminder_recipient_ids=[GROUP_CHOIR])

    resolution = RecipientResolver(store).resolve(event)

    assert resolution.failure is not None
    assert resolution.failure.entry.code == "no_groups_found"
    assert resolution.failure.counted is True


def test_groups_with_only_malformed_ids_is_logged_not_counted(store) -> None:
    event = _event(reminder_recipient_type="groups", reminder_recipient_ids=["choir"])

    resolution = RecipientResolver(store).resolve(event)

    assert resolution.failure is not None
    assert resolution.failure.entry.code == "invalid_recipient_ids"
    assert resolution.failure.counted is False


def test_api_configuration_missing_and_invalid(store, seed) -> None:
    resolver = RecipientResolver(store)
    missing = resolver.resolve_api_configuration(_event())
    assert missing.failure is not None
    assert missing.failure.entry.code == "missing_api_config"

    seed.api_config(sender_id="")
    invalid = resolver.resolve_api_configuration(_event())
    assert invalid.failure is not None
    assert invalid.failure.entry.code == "invalid_api_config"


def test_api_configuration_of_other_org_is_ignored(store, seed) -> None:
    seed.api_config(org_id=ORG_B)
    resolution = RecipientResolver(store).resolve_api_configuration(_event())
    assert resolution.config is None
    assert resolution.failure is not None


def test_store_errors_map_to_database_failures(store, monkeypatch) -> None:
    def _boom(*args, **kwargs):
        raise StoreError("list_members_with_phone", "connection reset")

    monkeypatch.setattr(store, "list_members_with_phone", _boom)

    resolution = RecipientResolver(store).resolve(_event())

    assert resolution.failure is not None
    assert resolution.failure.entry.category == "database"
    assert resolution.failure.entry.code == "query_failure"
