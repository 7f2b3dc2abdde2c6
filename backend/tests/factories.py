from __future__ import annotations

from datetime import date, datetime
from typing import Any

from event_reminders.store import (
    ApiConfigurationRecord,
    GroupRecord,
    MemberRecord,
    MessageRecord,
    TemplateRecord,
)

ORG_A = "0a000000-0000-4000-8000-00000000000a"
ORG_B = "0b000000-0000-4000-8000-00000000000b"

MEMBER_1 = "11111111-1111-1111-1111-111111111111"
MEMBER_2 = "22222222-2222-2222-2222-222222222222"
MEMBER_3 = "33333333-3333-3333-3333-333333333333"
MEMBER_B1 = "b1b1b1b1-0000-4000-8000-000000000001"

GROUP_CHOIR = "c0c0c0c0-0000-4000-8000-000000000001"
GROUP_YOUTH = "c0c0c0c0-0000-4000-8000-000000000002"


class Seeder:
    def __init__(self, store: Any) -> None:
        self.store = store

    def api_config(self, org_id: str = ORG_A, **overrides: Any) -> ApiConfigurationRecord:
        values = {
            "config_id": f"cfg-{org_id[:2]}",
            "organization_id": org_id,
            "api_key": "frog-key",
            "username": "frog-user",
            "sender_id": "ORGSUITE",
            "is_active": True,
        }
        values.update(overrides)
        config = ApiConfigurationRecord(**values)
        self.store.add_api_configuration(config)
        return config

    def member(
        self,
        member_id: str,
        *,
        org_id: str = ORG_A,
        first_name: str = "Ama",
        last_name: str = "Mensah",
        phone_number: str | None = "024 123 4567",
        membership_status: str = "active",
        groups: tuple[str, ...] = (),
        date_of_birth: date | None = None,
    ) -> MemberRecord:
        member = MemberRecord(
            member_id=member_id,
            organization_id=org_id,
            first_name=first_name,
            last_name=last_name,
            phone_number=phone_number,
            membership_status=membership_status,
            groups=groups,
            date_of_birth=date_of_birth,
        )
        self.store.add_member(member)
        return member

    def group(self, group_id: str, name: str, *, org_id: str = ORG_A, status: str = "Active") -> GroupRecord:
        group = GroupRecord(group_id=group_id, organization_id=org_id, name=name, status=status)
        self.store.add_group(group)
        return group

    def template(self, template_id: str, message: str, *, org_id: str = ORG_A) -> TemplateRecord:
        template = TemplateRecord(template_id=template_id, organization_id=org_id, name=template_id, message=message)
        self.store.add_template(template)
        return template

    def event(self, event_id: str = "evt-001", **overrides: Any) -> dict[str, Any]:
        row: dict[str, Any] = {
            "id": event_id,
            "organization_id": ORG_A,
            "name": "Sunday Service",
            "description": None,
            "event_date": date(2025, 12, 12),
            "end_date": None,
            "event_time": "09:00",
            "location": "Main Hall",
            "is_recurring": False,
            "recurrence_frequency": None,
            "reminder_enabled": True,
            "reminder_send_time": "day_before",
            "reminder_recipient_type": "all_members",
            "reminder_recipient_ids": None,
            "reminder_template_id": None,
            "reminder_message_text": None,
        }
        row.update(overrides)
        self.store.upsert_event(row)
        return row

    def recurring_message(
        self,
        *,
        sent_at: datetime,
        frequency: str = "Weekly",
        end_date: date | None = None,
        org_id: str = ORG_A,
        config_id: str | None = None,
        recipients: tuple[tuple[str, str], ...] = ((MEMBER_1, "233241111111"), (MEMBER_2, "233242222222")),
        text: str = "Choir practice is on Thursday at 6pm.",
    ) -> MessageRecord:
        """A delivered recurring message with one ``Sent`` row per ``(member_id, phone)``."""
        message = self.store.create_message(
            organization_id=org_id,
            message_name="Weekly Choir Notice",
            message_text=text,
            recipient_type="group",
            recipient_count=len(recipients),
            template_id=None,
            api_configuration_id=config_id or f"cfg-{org_id[:2]}",
            cost=round(0.1 * len(recipients), 2),
            is_recurring=True,
            recurrence_frequency=frequency,
            recurrence_end_date=end_date,
        )
        for member_id, phone in recipients:
            row = self.store.create_message_recipient(
                message_id=message.message_id,
                recipient_id=member_id,
                phone_number=phone,
                recipient_name="Ama Mensah",
                personalized_message=text,
                cost=0.1,
            )
            self.store.update_message_recipient_status(row.recipient_row_id, status="Sent", sent_at=sent_at)
        self.store.update_message_status(message.message_id, status="Sent", sent_at=sent_at)
        return message
