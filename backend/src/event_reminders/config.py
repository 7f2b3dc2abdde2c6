from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_csv(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "OrgSuite Event Reminders"
    api_prefix: str = "/api/v1"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    # Outbound SMS provider (Wigal FROG by default).
    sms_sender_type: str = "stub"
    sms_stub_enabled: bool = True
    sms_api_base_url: str = "https://frogapi.wigal.com.gh"
    sms_send_path: str = "/api/v3/sms/send"
    sms_timeout_seconds: int = 30
    sms_country_code: str = "233"
    sms_cost_per_message: float = 0.10
    run_error_sample_limit: int = 10
    reminder_allow_today_override: bool = False
    reminder_lock_ttl_seconds: int = 900
    runtime_config_guard_mode: str = "warn"
    cors_allow_origins: tuple[str, ...] = ("*",)

    @property
    def sms_send_url(self) -> str:
        return f"{self.sms_api_base_url.strip().rstrip('/')}/{self.sms_send_path.strip().lstrip('/')}"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDERS_APP_NAME", "OrgSuite Event Reminders"),
        api_prefix=os.getenv("REMINDERS_API_PREFIX", "/api/v1"),
        reminder_store_backend=_normalize_mode(
            os.getenv("REMINDER_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        sms_sender_type=_normalize_mode(
            os.getenv("SMS_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        sms_stub_enabled=_as_bool(os.getenv("SMS_STUB_ENABLED"), True),
        sms_api_base_url=os.getenv("SMS_API_BASE_URL", "https://frogapi.wigal.com.gh"),
        sms_send_path=os.getenv("SMS_SEND_PATH", "/api/v3/sms/send"),
        sms_timeout_seconds=_as_int(os.getenv("SMS_TIMEOUT_SECONDS"), 30),
        sms_country_code=os.getenv("SMS_COUNTRY_CODE", "233").strip() or "233",
        sms_cost_per_message=_as_float(os.getenv("SMS_COST_PER_MESSAGE"), 0.10),
        run_error_sample_limit=_as_int(os.getenv("RUN_ERROR_SAMPLE_LIMIT"), 10),
        reminder_allow_today_override=_as_bool(os.getenv("REMINDER_ALLOW_TODAY_OVERRIDE"), False),
        reminder_lock_ttl_seconds=_as_int(os.getenv("REMINDER_LOCK_TTL_SECONDS"), 900),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        cors_allow_origins=_as_csv(os.getenv("REMINDERS_CORS_ORIGINS"), ("*",)),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.reminder_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    if settings.sms_sender_type == "http" and not settings.sms_api_base_url.strip():
        issues.append("SMS_API_BASE_URL is required when SMS_SENDER_TYPE=http")
    if settings.sms_timeout_seconds <= 0:
        issues.append("SMS_TIMEOUT_SECONDS must be a positive number of seconds")
    if not settings.sms_country_code.isdigit():
        issues.append("SMS_COUNTRY_CODE must contain digits only")
    if settings.run_error_sample_limit < 1:
        issues.append("RUN_ERROR_SAMPLE_LIMIT must be at least 1")
    return tuple(issues)
