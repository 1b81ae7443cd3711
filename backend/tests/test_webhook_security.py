from __future__ import annotations

from dataclasses import replace

from events_web.config import Settings
from events_web.webhook_security import sign_webhook_body, verify_whatsapp_signature

BODY = b'{"object":"whatsapp_business_account","entry":[]}'
SETTINGS = Settings(wa_app_secret="app-secret-xyz", wa_webhook_signature_mode="enforce")


def test_valid_signature_is_verified_case_insensitively() -> None:
    signature = sign_webhook_body("app-secret-xyz", BODY)

    result = verify_whatsapp_signature(
        settings=SETTINGS,
        body=BODY,
        headers={"x-hub-signature-256": signature.upper().replace("SHA256=", "sha256=")},
    )

    assert result.verified is True
    assert result.reason is None


def test_signature_failures_report_reason() -> None:
    signature = sign_webhook_body("app-secret-xyz", BODY)

    missing = verify_whatsapp_signature(settings=SETTINGS, body=BODY, headers={})
    malformed = verify_whatsapp_signature(
        settings=SETTINGS, body=BODY, headers={"X-Hub-Signature-256": signature.removeprefix("sha256=")}
    )
    tampered = verify_whatsapp_signature(
        settings=SETTINGS, body=BODY + b" ", headers={"X-Hub-Signature-256": signature}
    )
    no_secret = verify_whatsapp_signature(
        settings=replace(SETTINGS, wa_app_secret=""), body=BODY, headers={"X-Hub-Signature-256": signature}
    )

    assert (missing.verified, missing.reason) == (False, "signature_missing")
    assert malformed.reason == "signature_invalid"
    assert tampered.reason == "signature_mismatch"
    assert no_secret.reason == "app_secret_missing"


def test_signature_mode_off_skips_verification() -> None:
    result = verify_whatsapp_signature(
        settings=replace(SETTINGS, wa_webhook_signature_mode="off", wa_app_secret=""),
        body=BODY,
        headers={},
    )

    assert result.verified is True
