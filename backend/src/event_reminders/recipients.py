from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import AllMembers, GroupRecipients, ReminderEvent, SelectedMembers, parse_recipient_selector
from .reporting import RunErrorEntry
from .store import ApiConfigurationRecord, MemberRecord, ReminderStore, StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionFailure:
    entry: RunErrorEntry
    counted: bool = True


@dataclass(frozen=True)
class RecipientResolution:
    recipients: tuple[MemberRecord, ...] = ()
    dropped_ids: tuple[str, ...] = ()
    failure: ResolutionFailure | None = None


@dataclass(frozen=True)
class ApiConfigurationResolution:
    config: ApiConfigurationRecord | None = None
    failure: ResolutionFailure | None = None


def _step_context(event: ReminderEvent, step: str) -> dict[str, object]:
    return {"step": step, "organization_id": event.organization_id, "event_id": event.id}


def _failure(
    event: ReminderEvent,
    category: str,
    code: str,
    message: str,
    context: dict[str, object],
    *,
    counted: bool = True,
) -> ResolutionFailure:
    return ResolutionFailure(
        entry=RunErrorEntry(category=category, code=code, message=message, event_id=event.id, context=context),
        counted=counted,
    )


class RecipientResolver:
    """Turns an event's recipient selector into members of its own organization."""

    def __init__(self, store: ReminderStore) -> None:
        self._store = store

    def resolve_api_configuration(self, event: ReminderEvent) -> ApiConfigurationResolution:
        org_id = event.organization_id
        try:
            config = self._store.get_active_api_configuration(org_id)
        except StoreError as exc:
            logger.error("event %s: api configuration lookup failed: %s", event.id, exc)
            return ApiConfigurationResolution(
                failure=_failure(event, "database", "query_failure", str(exc), _step_context(event, "fetch_api_config"))
            )
        if config is None:
            logger.error("event %s: no active api configuration for organization %s", event.id, org_id)
            return ApiConfigurationResolution(
                failure=_failure(
                    event,
                    "validation",
                    "missing_api_config",
                    f"No active API config for org {org_id}",
                    _step_context(event, "fetch_api_config"),
                )
            )
        if not config.api_key or not config.sender_id:
            logger.error("event %s: api configuration %s lacks api_key or sender_id", event.id, config.config_id)
            return ApiConfigurationResolution(
                failure=_failure(
                    event,
                    "validation",
                    "invalid_api_config",
                    f"Invalid API config for org {org_id}: missing api_key or sender_id",
                    _step_context(event, "validate_api_config"),
                )
            )
        return ApiConfigurationResolution(config=config)

    def resolve(self, event: ReminderEvent) -> RecipientResolution:
        selector, dropped = parse_recipient_selector(event)
        if dropped:
            logger.warning("event %s: dropped %d malformed recipient id(s): %s", event.id, len(dropped), dropped)

        if isinstance(selector, AllMembers):
            resolution = self._load(event, "fetch_members", {})
        elif isinstance(selector, GroupRecipients):
            resolution = self._resolve_groups(event, selector, dropped)
        elif isinstance(selector, SelectedMembers):
            resolution = self._resolve_selected(event, selector, dropped)
        else:
            raise TypeError(f"unsupported recipient selector: {selector!r}")

        if resolution.failure is None and not resolution.recipients:
            logger.info("event %s: no recipients with a phone number", event.id)
            resolution = RecipientResolution(
                dropped_ids=tuple(dropped),
                failure=_failure(
                    event,
                    "validation",
                    "no_recipients_found",
                    _no_recipient_reason(event),
                    {
                        "step": "fetch_recipients",
                        "organization_id": event.organization_id,
                        "event_id": event.id,
                        "recipient_type": event.reminder_recipient_type,
                        "recipient_ids": list(event.reminder_recipient_ids),
                    },
                    counted=False,
                ),
            )
        return resolution

    def _resolve_groups(self, event: ReminderEvent, selector: GroupRecipients, dropped: list[str]) -> RecipientResolution:
        if not selector.group_ids:
            logger.warning("event %s: no valid group ids among %s", event.id, event.reminder_recipient_ids)
            return RecipientResolution(
                dropped_ids=tuple(dropped),
                failure=_failure(
                    event,
                    "validation",
                    "invalid_recipient_ids",
                    f"No valid group IDs specified ({len(dropped)} invalid ID(s) filtered out)",
                    {
                        "step": "validate_group_ids",
                        "organization_id": event.organization_id,
                        "event_id": event.id,
                        "invalid_ids": dropped,
                    },
                    counted=False,
                ),
            )
        group_ids = sorted(str(value) for value in selector.group_ids)
        try:
            groups = self._store.list_active_groups(event.organization_id, group_ids)
        except StoreError as exc:
            logger.error("event %s: group lookup failed: %s", event.id, exc)
            return RecipientResolution(
                dropped_ids=tuple(dropped),
                failure=_failure(
                    event,
                    "database",
                    "query_failure",
                    f"Error fetching groups: {exc}",
                    {"step": "fetch_groups", "organization_id": event.organization_id, "event_id": event.id, "group_ids": group_ids},
                ),
            )
        if not groups:
            logger.error("event %s: no active groups found for %s", event.id, group_ids)
            return RecipientResolution(
                dropped_ids=tuple(dropped),
                failure=_failure(
                    event,
                    "validation",
                    "no_groups_found",
                    f"No active groups found in org {event.organization_id} for {len(group_ids)} group id(s)",
                    {"step": "fetch_groups", "organization_id": event.organization_id, "event_id": event.id, "group_ids": group_ids},
                ),
            )
        group_names = sorted({group.name for group in groups})
        logger.info("event %s: resolved groups %s", event.id, ", ".join(group_names))
        resolution = self._load(event, "fetch_group_members", {"group_names": group_names}, group_names=group_names)
        return RecipientResolution(recipients=resolution.recipients, dropped_ids=tuple(dropped), failure=resolution.failure)

    def _resolve_selected(self, event: ReminderEvent, selector: SelectedMembers, dropped: list[str]) -> RecipientResolution:
        if not selector.member_ids:
            message = (
                f"No valid member UUIDs found. {len(dropped)} invalid ID(s) were filtered out. "
                "Please re-select members in the event settings."
            )
            logger.error("event %s: %s", event.id, message)
            return RecipientResolution(
                dropped_ids=tuple(dropped),
                failure=_failure(
                    event,
                    "validation",
                    "invalid_recipient_ids",
                    message,
                    {
                        "step": "validate_member_ids",
                        "organization_id": event.organization_id,
                        "event_id": event.id,
                        "invalid_ids": dropped,
                        "total_invalid": len(dropped),
                    },
                ),
            )
        member_ids = sorted(str(value) for value in selector.member_ids)
        resolution = self._load(event, "fetch_selected_members", {"member_ids": member_ids}, member_ids=member_ids)
        return RecipientResolution(recipients=resolution.recipients, dropped_ids=tuple(dropped), failure=resolution.failure)

    def _load(
        self,
        event: ReminderEvent,
        step: str,
        context: dict[str, object],
        *,
        member_ids: list[str] | None = None,
        group_names: list[str] | None = None,
    ) -> RecipientResolution:
        try:
            members = self._store.list_members_with_phone(
                event.organization_id,
                member_ids=member_ids,
                group_names=group_names,
            )
        except StoreError as exc:
            logger.error("event %s: member lookup (%s) failed: %s", event.id, step, exc)
            return RecipientResolution(
                failure=_failure(
                    event,
                    "database",
                    "query_failure",
                    f"Error fetching members: {exc}",
                    {"step": step, "organization_id": event.organization_id, "event_id": event.id, **context},
                )
            )
        return RecipientResolution(recipients=tuple(members))


def _no_recipient_reason(event: ReminderEvent) -> str:
    if event.reminder_recipient_type == "selected_members":
        return "No valid member UUIDs found or members don't have phone numbers"
    if event.reminder_recipient_type == "groups":
        return "No members found in selected groups or members don't have phone numbers"
    return "No members found in organization or members don't have phone numbers"
