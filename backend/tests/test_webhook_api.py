from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from events_web import api as api_module
from events_web.main import create_app
from events_web.webhook_security import sign_webhook_body
from events_web.whatsapp import ProviderError, StubWhatsAppSender

PREFIX = "/api/v1"
ADMIN_HEADERS = {"Authorization": "Bearer test-admin-key"}


def _client(*, signature_mode: str = "off", sender: StubWhatsAppSender | None = None) -> TestClient:
    os.environ["ADMIN_API_KEY"] = "test-admin-key"
    os.environ["WA_WEBHOOK_VERIFY_TOKEN"] = "verify-me-123"
    os.environ["WA_APP_SECRET"] = "app-secret-xyz"
    os.environ["WA_WEBHOOK_SIGNATURE_MODE"] = signature_mode
    os.environ["WA_SENDER_TYPE"] = "stub"
    os.environ["INVITE_SEND_DELAY_SECONDS"] = "0"
    os.environ["REMINDER_SCHEDULER_ENABLED"] = "false"
    os.environ["RUNTIME_SECRET_GUARD_MODE"] = "off"
    from events_web.config import get_settings

    api_module._settings = get_settings()
    api_module.whatsapp_sender = sender or StubWhatsAppSender()
    api_module.reset_runtime_state_for_tests()
    return TestClient(create_app())


def _webhook_payload(value: dict) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA-1", "changes": [{"field": "messages", "value": value}]}],
    }


def _create_event(client: TestClient, *, starts_at: datetime | None = None) -> str:
    response = client.post(
        f"{PREFIX}/events",
        headers=ADMIN_HEADERS,
        json={
            "name": "Annual Gala",
            "starts_at": (starts_at or datetime.now(timezone.utc) + timedelta(days=7)).isoformat(),
            "venue": "Town Hall",
            "food": "both",
        },
    )
    assert response.status_code == 201
    return response.json()["event_id"]


def test_webhook_verification_returns_challenge() -> None:
    client = _client()

    response = client.get(
        f"{PREFIX}/whatsapp/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me-123", "hub.challenge": "1158201444"},
    )

    assert response.status_code == 200
    assert response.text == "1158201444"


def test_webhook_verification_rejects_wrong_token_or_mode() -> None:
    client = _client()

    wrong_token = client.get(
        f"{PREFIX}/whatsapp/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
    )
    wrong_mode = client.get(
        f"{PREFIX}/whatsapp/webhook",
        params={"hub.mode": "unsubscribe", "hub.verify_token": "verify-me-123", "hub.challenge": "1"},
    )

    assert wrong_token.status_code == 403
    assert wrong_mode.status_code == 403


def test_webhook_always_acknowledges() -> None:
    client = _client()

    garbage = client.post(
        f"{PREFIX}/whatsapp/webhook",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    unknown = client.post(f"{PREFIX}/whatsapp/webhook", json=_webhook_payload({"messages": [{"type": "sticker"}]}))
    stranger = client.post(
        f"{PREFIX}/whatsapp/webhook",
        json=_webhook_payload(
            {"messages": [{"from": "14155550134", "id": "wamid.Z", "button": {"text": "Yes", "payload": "y"}}]}
        ),
    )

    for response in (garbage, unknown, stranger):
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


def test_annual_gala_invite_and_yes_reply_end_to_end() -> None:
    client = _client()
    event_id = _create_event(client)

    created = client.post(
        f"{PREFIX}/events/{event_id}/participants",
        headers=ADMIN_HEADERS,
        json={"participants": [{"name": "Asha", "phone_number": "9123456789"}]},
    )
    assert created.status_code == 201
    body = created.json()
    participant = body["participants"][0]
    assert participant["phone_number"] == "+919123456789"
    assert body["invites_scheduled"] == 1

    stats = client.get(f"{PREFIX}/whatsapp/tokens/stats", headers=ADMIN_HEADERS).json()
    assert stats == {"processed": 0, "unprocessed": 1, "total": 1}
    sent = client.post(
        f"{PREFIX}/whatsapp/send-template",
        headers=ADMIN_HEADERS,
        json={
            "to": "9123456789",
            "template_name": "event_invitation",
            "participant_id": participant["participant_id"],
            "event_id": event_id,
        },
    )
    assert sent.status_code == 200
    message_id = sent.json()["provider_message_id"]

    reply = {
        "messaging_product": "whatsapp",
        "contacts": [{"profile": {"name": "Asha"}, "wa_id": "919123456789"}],
        "messages": [
            {
                "from": "919123456789",
                "id": "wamid.REPLY-1",
                "type": "button",
                "context": {"id": message_id},
                "button": {"text": "Yes", "payload": "yes"},
            }
        ],
    }
    first = client.post(f"{PREFIX}/whatsapp/webhook", json=_webhook_payload(reply))
    second = client.post(f"{PREFIX}/whatsapp/webhook", json=_webhook_payload(reply))
    assert first.status_code == 200
    assert second.status_code == 200

    stored = client.get(
        f"{PREFIX}/events/{event_id}/participants/{participant['participant_id']}",
        headers=ADMIN_HEADERS,
    ).json()
    assert stored["attending"] == "Yes"
    token = api_module.token_repo.get_by_message_id(message_id)
    assert token is not None and token.processed is True
    assert client.get(f"{PREFIX}/whatsapp/tokens/stats", headers=ADMIN_HEADERS).json()["processed"] == 1


def test_button_reply_with_stored_token_updates_attendance() -> None:
    client = _client()
    event_id = _create_event(client)
    participant_id = client.post(
        f"{PREFIX}/events/{event_id}/participants",
        headers=ADMIN_HEADERS,
        json={"participants": [{"name": "Asha", "phone_number": "9123456789"}], "send_invites": False},
    ).json()["participants"][0]["participant_id"]

    from events_web.message_tokens import new_message_token

    api_module.token_repo.put(
        new_message_token(
            message_id="wamid.ABC",
            participant_id=participant_id,
            event_id=event_id,
            phone_number="+919123456789",
            template_name="event_invitation",
        )
    )
    response = client.post(
        f"{PREFIX}/whatsapp/webhook",
        json=_webhook_payload(
            {
                "messages": [
                    {
                        "from": "919123456789",
                        "id": "wamid.IN-1",
                        "context": {"id": "wamid.ABC"},
                        "button": {"text": "Yes", "payload": "yes"},
                    }
                ]
            }
        ),
    )

    assert response.status_code == 200
    assert api_module.directory_repo.get_participant(participant_id).attending == "Yes"
    assert api_module.token_repo.get_by_message_id("wamid.ABC").processed is True


def test_enforced_signature_rejects_forged_body() -> None:
    client = _client(signature_mode="enforce")
    body = json.dumps(_webhook_payload({"statuses": []})).encode("utf-8")

    forged = client.post(
        f"{PREFIX}/whatsapp/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=deadbeef"},
    )
    signed = client.post(
        f"{PREFIX}/whatsapp/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Hub-Signature-256": sign_webhook_body("app-secret-xyz", body),
        },
    )

    assert forged.status_code == 401
    assert signed.status_code == 200


def test_send_template_maps_errors_to_http_status() -> None:
    sender = StubWhatsAppSender(
        failures={"+919000000001": ProviderError(code="132001", message="template missing", category="permanent")}
    )
    client = _client(sender=sender)

    invalid = client.post(
        f"{PREFIX}/whatsapp/send-template",
        headers=ADMIN_HEADERS,
        json={"to": "12", "template_name": "event_invitation"},
    )
    provider = client.post(
        f"{PREFIX}/whatsapp/send-template",
        headers=ADMIN_HEADERS,
        json={"to": "9000000001", "template_name": "event_invitation"},
    )
    unpaired = client.post(
        f"{PREFIX}/whatsapp/send-template",
        headers=ADMIN_HEADERS,
        json={"to": "9123456789", "template_name": "event_invitation", "participant_id": "par_1"},
    )

    assert invalid.status_code == 400
    assert provider.status_code == 502
    assert provider.json()["detail"]["code"] == "132001"
    assert unpaired.status_code == 422


def test_admin_endpoints_require_api_key() -> None:
    client = _client()

    missing = client.get(f"{PREFIX}/whatsapp/tokens/stats")
    wrong = client.get(f"{PREFIX}/whatsapp/tokens/stats", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401


def test_participants_with_invalid_phone_are_stored_without_invite() -> None:
    sender = StubWhatsAppSender()
    client = _client(sender=sender)
    event_id = _create_event(client)

    response = client.post(
        f"{PREFIX}/events/{event_id}/participants",
        headers=ADMIN_HEADERS,
        json={"participants": [{"name": "Ravi", "phone_number": "12-34"}, {"name": "Meera"}]},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["invalid_phone_count"] == 1
    assert body["invites_scheduled"] == 0
    assert [item["phone_valid"] for item in body["participants"]] == [False, False]
    assert body["participants"][0]["phone_number"] == "12-34"
    assert sender.sent == []


def test_participants_for_unknown_event_return_404() -> None:
    client = _client()

    response = client.post(
        f"{PREFIX}/events/evt_missing/participants",
        headers=ADMIN_HEADERS,
        json={"participants": [{"name": "Asha", "phone_number": "9123456789"}]},
    )

    assert response.status_code == 404


def test_reminders_run_once_reports_tiers() -> None:
    sender = StubWhatsAppSender()
    client = _client(sender=sender)
    event_id = _create_event(client, starts_at=datetime.now(timezone.utc) + timedelta(hours=6))
    client.post(
        f"{PREFIX}/events/{event_id}/participants",
        headers=ADMIN_HEADERS,
        json={"participants": [{"name": "Asha", "phone_number": "9123456789"}], "send_invites": False},
    )

    first = client.post(f"{PREFIX}/reminders/run/once", headers=ADMIN_HEADERS)
    second = client.post(f"{PREFIX}/reminders/run/once", headers=ADMIN_HEADERS)

    assert first.status_code == 200
    assert [(tier["tier"], tier["sent"]) for tier in first.json()["tiers"]] == [("12h", 1), ("3h", 0)]
    assert second.json()["sent"] == 0
    assert len(sender.sent) == 1


def test_webhook_correlation_runs_off_the_event_loop() -> None:
    client = _client()
    calls_on_event_loop: list[bool] = []

    class _RecordingCorrelator:
        def handle_batch(self, batch):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                calls_on_event_loop.append(False)
            else:
                calls_on_event_loop.append(True)
            return []

    original = api_module._correlator
    api_module._correlator = _RecordingCorrelator
    try:
        response = client.post(
            f"{PREFIX}/whatsapp/webhook",
            json=_webhook_payload({"statuses": [{"id": "wamid.A", "status": "sent", "recipient_id": "919123456789"}]}),
        )
    finally:
        api_module._correlator = original

    assert response.status_code == 200
    assert calls_on_event_loop == [False]


def test_send_template_defaults_to_configured_language() -> None:
    sender = StubWhatsAppSender()
    client = _client(sender=sender)

    response = client.post(
        f"{PREFIX}/whatsapp/send-template",
        headers=ADMIN_HEADERS,
        json={"to": "9123456789", "template_name": "event_invitation"},
    )
    explicit = client.post(
        f"{PREFIX}/whatsapp/send-template",
        headers=ADMIN_HEADERS,
        json={"to": "9123456789", "template_name": "event_invitation", "language_code": "hi"},
    )

    assert response.status_code == 200
    assert explicit.status_code == 200
    assert [message.language_code for message in sender.sent] == [api_module._settings.wa_template_language, "hi"]
