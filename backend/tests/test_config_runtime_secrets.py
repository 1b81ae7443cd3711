from __future__ import annotations

import os

from events_web.config import get_settings, missing_send_credentials, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_stub_sender_and_graph_api() -> None:
    keys = ("WA_SENDER_TYPE", "WA_API_BASE", "WA_API_VERSION", "WA_WEBHOOK_SIGNATURE_MODE", "DEFAULT_COUNTRY_CODE")
    previous = {key: _set_env(key, None) for key in keys}
    try:
        settings = get_settings()
        assert settings.wa_sender_type == "stub"
        assert settings.wa_api_base == "https://graph.facebook.com"
        assert settings.wa_api_version == "v22.0"
        assert settings.wa_webhook_signature_mode == "log_only"
        assert settings.default_country_code == "91"
        assert missing_send_credentials(settings) == ()
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_invalid_numeric_and_mode_values_fall_back_to_defaults() -> None:
    previous = {
        "WA_MAX_RETRIES": _set_env("WA_MAX_RETRIES", "several"),
        "REMINDER_TICK_SECONDS": _set_env("REMINDER_TICK_SECONDS", "soon"),
        "WA_SENDER_TYPE": _set_env("WA_SENDER_TYPE", "carrier-pigeon"),
        "DEFAULT_COUNTRY_CODE": _set_env("DEFAULT_COUNTRY_CODE", "+44"),
    }
    try:
        settings = get_settings()
        assert settings.wa_max_retries == 3
        assert settings.reminder_tick_seconds == 60.0
        assert settings.wa_sender_type == "stub"
        assert settings.default_country_code == "44"
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_http_sender_reports_each_missing_credential() -> None:
    previous = {
        "WA_SENDER_TYPE": _set_env("WA_SENDER_TYPE", "http"),
        "WA_TOKEN": _set_env("WA_TOKEN", "  "),
        "WA_PHONE_NUMBER_ID": _set_env("WA_PHONE_NUMBER_ID", None),
    }
    try:
        assert missing_send_credentials(get_settings()) == ("WA_TOKEN", "WA_PHONE_NUMBER_ID")
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_enforced_signature_requires_app_secret() -> None:
    previous = {
        "ADMIN_API_KEY": _set_env("ADMIN_API_KEY", "prod-admin-key-001"),
        "WA_WEBHOOK_VERIFY_TOKEN": _set_env("WA_WEBHOOK_VERIFY_TOKEN", "prod-verify-token-001"),
        "WA_WEBHOOK_SIGNATURE_MODE": _set_env("WA_WEBHOOK_SIGNATURE_MODE", "enforce"),
        "WA_APP_SECRET": _set_env("WA_APP_SECRET", None),
        "STORE_BACKEND": _set_env("STORE_BACKEND", None),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert issues == ("WA_APP_SECRET is required when WA_WEBHOOK_SIGNATURE_MODE=enforce",)
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_placeholder_secrets_are_reported() -> None:
    previous = {
        "ADMIN_API_KEY": _set_env("ADMIN_API_KEY", "dev-admin-key"),
        "WA_WEBHOOK_VERIFY_TOKEN": _set_env("WA_WEBHOOK_VERIFY_TOKEN", "CHANGEME"),
        "WA_WEBHOOK_SIGNATURE_MODE": _set_env("WA_WEBHOOK_SIGNATURE_MODE", "off"),
        "STORE_BACKEND": _set_env("STORE_BACKEND", "postgres"),
        "DATABASE_URL": _set_env("DATABASE_URL", None),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert any("ADMIN_API_KEY" in issue for issue in issues)
        assert any("WA_WEBHOOK_VERIFY_TOKEN" in issue for issue in issues)
        assert any("DATABASE_URL" in issue for issue in issues)
    finally:
        for key, value in previous.items():
            _restore_env(key, value)
