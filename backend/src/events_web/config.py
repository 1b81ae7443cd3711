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


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Events Messaging Backend"
    api_prefix: str = "/api/v1"
    # WhatsApp Cloud API.
    wa_api_base: str = "https://graph.facebook.com"
    wa_api_version: str = "v22.0"
    wa_token: str = ""
    wa_phone_number_id: str = ""
    wa_webhook_verify_token: str = ""
    wa_app_secret: str = ""
    wa_webhook_signature_mode: str = "log_only"
    wa_sender_type: str = "stub"
    wa_timeout_seconds: float = 30.0
    wa_max_retries: int = 3
    wa_retry_base_seconds: float = 1.0
    wa_retry_max_seconds: float = 60.0
    wa_rate_limit_multiplier: float = 3.0
    wa_template_language: str = "en"
    wa_invite_template: str = "event_invitation"
    wa_booking_confirmation_template: str = "booking_confirmation"
    default_country_code: str = "91"
    display_timezone: str = "Asia/Kolkata"
    invite_send_delay_seconds: float = 1.0
    # Reminder scheduler.
    reminder_scheduler_enabled: bool = False
    reminder_tick_seconds: float = 60.0
    reminder_12h_window_hours: float = 12.0
    reminder_3h_window_hours: float = 3.0
    reminder_12h_template: str = "your_event_schedule"
    reminder_3h_template: str = "event_starting_soon"
    # Persistence and admin access.
    store_backend: str = "inmemory"
    database_url: str = ""
    admin_api_key: str = ""
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("EVENTS_APP_NAME", "Events Messaging Backend"),
        api_prefix=os.getenv("EVENTS_API_PREFIX", "/api/v1"),
        wa_api_base=os.getenv("WA_API_BASE", "https://graph.facebook.com"),
        wa_api_version=os.getenv("WA_API_VERSION", "v22.0"),
        wa_token=os.getenv("WA_TOKEN", ""),
        wa_phone_number_id=os.getenv("WA_PHONE_NUMBER_ID", ""),
        wa_webhook_verify_token=os.getenv("WA_WEBHOOK_VERIFY_TOKEN", ""),
        wa_app_secret=os.getenv("WA_APP_SECRET", ""),
        wa_webhook_signature_mode=_normalize_mode(
            os.getenv("WA_WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        wa_sender_type=_normalize_mode(
            os.getenv("WA_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        wa_timeout_seconds=_as_float(os.getenv("WA_TIMEOUT_SECONDS"), 30.0),
        wa_max_retries=_as_int(os.getenv("WA_MAX_RETRIES"), 3),
        wa_retry_base_seconds=_as_float(os.getenv("WA_RETRY_BASE_SECONDS"), 1.0),
        wa_retry_max_seconds=_as_float(os.getenv("WA_RETRY_MAX_SECONDS"), 60.0),
        wa_rate_limit_multiplier=_as_float(os.getenv("WA_RATE_LIMIT_MULTIPLIER"), 3.0),
        wa_template_language=os.getenv("WA_TEMPLATE_LANGUAGE", "en"),
        wa_invite_template=os.getenv("WA_INVITE_TEMPLATE", "event_invitation"),
        wa_booking_confirmation_template=os.getenv("WA_BOOKING_CONFIRMATION_TEMPLATE", "booking_confirmation"),
        default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "91").strip().lstrip("+") or "91",
        display_timezone=os.getenv("DISPLAY_TIMEZONE", "Asia/Kolkata"),
        invite_send_delay_seconds=_as_float(os.getenv("INVITE_SEND_DELAY_SECONDS"), 1.0),
        reminder_scheduler_enabled=_as_bool(os.getenv("REMINDER_SCHEDULER_ENABLED"), False),
        reminder_tick_seconds=_as_float(os.getenv("REMINDER_TICK_SECONDS"), 60.0),
        reminder_12h_window_hours=_as_float(os.getenv("REMINDER_12H_WINDOW_HOURS"), 12.0),
        reminder_3h_window_hours=_as_float(os.getenv("REMINDER_3H_WINDOW_HOURS"), 3.0),
        reminder_12h_template=os.getenv("REMINDER_12H_TEMPLATE", "your_event_schedule"),
        reminder_3h_template=os.getenv("REMINDER_3H_TEMPLATE", "event_starting_soon"),
        store_backend=os.getenv("STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        admin_api_key=os.getenv("ADMIN_API_KEY", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def missing_send_credentials(settings: Settings) -> tuple[str, ...]:
    """Values without which the live sender cannot deliver anything."""
    if settings.wa_sender_type != "http":
        return ()
    missing: list[str] = []
    if not settings.wa_token.strip():
        missing.append("WA_TOKEN")
    if not settings.wa_phone_number_id.strip():
        missing.append("WA_PHONE_NUMBER_ID")
    return tuple(missing)


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.admin_api_key, defaults={"dev-admin-key", "admin"}):
        issues.append("ADMIN_API_KEY is empty or uses a placeholder value")
    if _is_placeholder(settings.wa_webhook_verify_token, defaults={"verify-token", "dev-verify-token"}):
        issues.append("WA_WEBHOOK_VERIFY_TOKEN is empty or uses a placeholder value")
    if settings.wa_webhook_signature_mode == "enforce" and not settings.wa_app_secret.strip():
        issues.append("WA_APP_SECRET is required when WA_WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when STORE_BACKEND=postgres")
    return tuple(issues)
