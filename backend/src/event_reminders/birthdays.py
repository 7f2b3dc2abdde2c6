from __future__ import annotations

import calendar
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

from .config import Settings
from .messaging import DEFAULT_BIRTHDAY_TEMPLATE, member_placeholders, personalize
from .models import BirthdayRunResponse, RunStatus
from .reminder_runs import ReminderRunSetupError
from .reporting import RunReporter
from .sms import (
    ProviderSendRequest,
    SmsSender,
    format_phone_for_provider,
    is_valid_provider_phone,
    mask_phone_number,
)
from .store import ApiConfigurationRecord, MemberRecord, NotificationSettingsRecord, ReminderStore, StoreError

logger = logging.getLogger(__name__)

BIRTHDAY_JOB_NAME = "process_birthday_messages"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def is_birthday(date_of_birth: date, today: date) -> bool:
    """Month/day match; Feb 29 birthdays fall on Feb 28 in non-leap years."""
    if (date_of_birth.month, date_of_birth.day) == (today.month, today.day):
        return True
    return (
        date_of_birth.month == 2
        and date_of_birth.day == 29
        and today.month == 2
        and today.day == 28
        and not calendar.isleap(today.year)
    )


@dataclass(frozen=True)
class BirthdayRunReport:
    message: str
    run_date: date
    sent: int
    errors: int
    processed: int
    organizations_processed: int
    duration_ms: int
    status: RunStatus
    log_id: str | None = None

    def to_response(self) -> BirthdayRunResponse:
        return BirthdayRunResponse(
            message=self.message,
            sent=self.sent,
            errors=self.errors,
            processed=self.processed,
            organizations_processed=self.organizations_processed,
            run_date=self.run_date,
            duration_ms=self.duration_ms,
            status=self.status,
        )


class BirthdayMessageJob:
    def __init__(
        self,
        *,
        store: ReminderStore,
        sender: SmsSender,
        settings: Settings,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._store = store
        self._sender = sender
        self._settings = settings
        self._clock = clock

    def run(self, today: date | None = None) -> BirthdayRunReport:
        started_at = self._clock()
        started = time.perf_counter()
        run_date = today or started_at.astimezone(timezone.utc).date()
        logger.info("birthday message run starting for %s", run_date.isoformat())

        log_id: str | None = None
        try:
            log_id = self._store.create_execution_log(job_name=BIRTHDAY_JOB_NAME, started_at=started_at).log_id
        except StoreError:
            logger.exception("could not create execution log; continuing without one")
        reporter = RunReporter(self._store, log_id, sample_limit=self._settings.run_error_sample_limit)

        try:
            enabled = self._store.list_birthday_settings()
        except StoreError as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.exception("birthday run could not load notification settings")
            reporter.fail(completed_at=self._clock(), duration_ms=duration_ms, exc=exc)
            raise ReminderRunSetupError(f"Error fetching notification settings: {exc}", duration_ms=duration_ms) from exc

        for org_settings in enabled:
            try:
                self._process_organization(org_settings, run_date, reporter)
            except Exception as exc:
                logger.exception("organization %s: birthday processing failed", org_settings.organization_id)
                reporter.record(
                    "unknown",
                    "organization_processing_error",
                    f"Error processing organization {org_settings.organization_id}: {exc}",
                    context={"step": "process_organization", "organization_id": org_settings.organization_id},
                )

        duration_ms = int((time.perf_counter() - started) * 1000)
        totals = reporter.totals()
        report = BirthdayRunReport(
            message="Birthday messages processed" if enabled else "No organizations with birthday messages enabled",
            run_date=run_date,
            sent=totals.sent,
            errors=totals.errors,
            processed=totals.processed,
            organizations_processed=len(enabled),
            duration_ms=duration_ms,
            status=totals.status,
            log_id=log_id,
        )
        reporter.finalize(
            completed_at=self._clock(),
            duration_ms=duration_ms,
            execution_details={"organizations_found": len(enabled), "date": run_date.isoformat()},
            response_data=report.to_response().model_dump(mode="json", by_alias=True),
        )
        logger.info("birthday message run finished: status=%s sent=%d errors=%d", report.status, report.sent, report.errors)
        return report

    def _process_organization(
        self,
        org_settings: NotificationSettingsRecord,
        run_date: date,
        reporter: RunReporter,
    ) -> None:
        org_id = org_settings.organization_id
        try:
            members = self._store.list_members_with_phone(org_id, membership_status="active")
        except StoreError as exc:
            logger.error("organization %s: member lookup failed: %s", org_id, exc)
            reporter.record(
                "database",
                "query_failure",
                f"Error fetching members: {exc}",
                context={"step": "fetch_members", "organization_id": org_id},
            )
            return

        celebrants = [m for m in members if m.date_of_birth is not None and is_birthday(m.date_of_birth, run_date)]
        if not celebrants:
            return
        logger.info("organization %s: %d birthday(s) today", org_id, len(celebrants))

        try:
            config = self._store.get_active_api_configuration(org_id)
        except StoreError as exc:
            logger.error("organization %s: api configuration lookup failed: %s", org_id, exc)
            reporter.record(
                "database",
                "query_failure",
                f"Error fetching API configuration: {exc}",
                context={"step": "fetch_api_config", "organization_id": org_id},
            )
            return
        if config is None or not config.api_key or not config.sender_id:
            logger.error("organization %s: no usable api configuration, skipping birthdays", org_id)
            reporter.record(
                "validation",
                "missing_api_config",
                f"No active API config for org {org_id}",
                context={"step": "fetch_api_config", "organization_id": org_id},
            )
            return

        template = None
        if org_settings.birthday_template_id:
            try:
                template = self._store.get_template_message(org_id, org_settings.birthday_template_id)
            except StoreError as exc:
                logger.warning("organization %s: birthday template lookup failed: %s", org_id, exc)
        template = template or DEFAULT_BIRTHDAY_TEMPLATE

        for member in celebrants:
            reporter.add_processed(1)
            try:
                delivered = self._greet(member, template, config, org_settings.birthday_template_id, reporter)
            except Exception as exc:
                logger.exception("organization %s: birthday for member %s failed", org_id, member.member_id)
                reporter.record(
                    "unknown",
                    "recipient_processing_error",
                    f"Error processing birthday for member {member.member_id}: {exc}",
                    context={"step": "process_recipient", "organization_id": org_id, "recipient_id": member.member_id},
                    counted=False,
                )
                delivered = False
            reporter.add_send_results(org_id, sent=1 if delivered else 0, failed=0 if delivered else 1)

    def _greet(
        self,
        member: MemberRecord,
        template: str,
        config: ApiConfigurationRecord,
        template_id: str | None,
        reporter: RunReporter,
    ) -> bool:
        country_code = self._settings.sms_country_code
        text = personalize(template, member_placeholders(member.first_name, member.last_name))
        formatted = format_phone_for_provider(member.phone_number, country_code)
        if not is_valid_provider_phone(formatted, country_code):
            logger.warning("member %s: invalid phone %s", member.member_id, mask_phone_number(member.phone_number))
            reporter.record(
                "validation",
                "invalid_phone_number",
                f"Invalid phone number for member {member.member_id}",
                context={"step": "validate_phone", "organization_id": member.organization_id, "recipient_id": member.member_id},
                counted=False,
            )
            return False

        name = f"{member.first_name} {member.last_name}".strip()
        cost = self._settings.sms_cost_per_message
        message = self._store.create_message(
            organization_id=member.organization_id,
            message_name=f"Birthday Message - {name}",
            message_text=text,
            recipient_type="individual",
            recipient_count=1,
            template_id=template_id,
            api_configuration_id=config.config_id,
            cost=cost,
        )
        row = self._store.create_message_recipient(
            message_id=message.message_id,
            recipient_id=member.member_id,
            phone_number=formatted,
            recipient_name=name,
            personalized_message=text,
            cost=cost,
        )
        attempted_ms = int(self._clock().timestamp() * 1000)
        result = self._sender.send_sms(
            ProviderSendRequest(
                api_key=config.api_key,
                username=config.username or config.api_key,
                sender_id=config.sender_id,
                destination=formatted,
                message=text,
                message_id=f"BDAY_{message.message_id}_{member.member_id}_{attempted_ms}",
            )
        )
        if result.status == "sent":
            self._store.update_message_status(message.message_id, status="Sent", sent_at=result.attempted_at)
            self._store.update_message_recipient_status(row.recipient_row_id, status="Sent", sent_at=result.attempted_at)
            return True

        error_text = result.error_message or "Failed to send SMS"
        self._store.update_message_status(message.message_id, status="Failed", error_message=error_text)
        self._store.update_message_recipient_status(row.recipient_row_id, status="Failed", error_message=error_text)
        reporter.record(
            result.error_category or "api",
            result.error_code or "send_failure",
            error_text,
            context={
                "step": "send_sms",
                "organization_id": member.organization_id,
                "message_id": message.message_id,
                "recipient_id": member.member_id,
            },
            counted=False,
        )
        return False
