from __future__ import annotations

import hmac
import json
import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from fastapi.concurrency import run_in_threadpool

from .config import get_settings
from .correlation import ResponseCorrelator
from .directory import (
    EventNotFoundError,
    ParticipantNotFoundError,
    ParticipantRecord,
    create_event_directory_repository,
)
from .message_tokens import create_message_token_repository
from .models import (
    EventCreateRequest,
    EventResponse,
    ParticipantBatchRequest,
    ParticipantBatchResponse,
    ParticipantResponse,
    ReminderRunOnceResponse,
    ReminderTierResult,
    SendTemplateRequest,
    SendTemplateResponse,
    TokenStatsResponse,
    WebhookAckResponse,
)
from .notifications import InviteDispatcher, NotificationService
from .phone import PhoneNumberError, is_valid_phone_number, mask_phone_number, normalize_phone_number
from .reminders import ReminderScheduler, default_reminder_tiers
from .webhook_events import classify_change_value, iter_change_values
from .webhook_security import verify_whatsapp_signature
from .whatsapp import (
    ProviderError,
    TemplateMessage,
    TemplateValidationError,
    WhatsAppSender,
    create_whatsapp_sender,
)

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["events"])
token_repo = create_message_token_repository(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
directory_repo = create_event_directory_repository(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
# Built on first use so a misconfigured live sender fails in create_app, not at import.
whatsapp_sender: WhatsAppSender | None = None
reminder_scheduler: ReminderScheduler | None = None


def _active_sender() -> WhatsAppSender:
    global whatsapp_sender
    if whatsapp_sender is None:
        whatsapp_sender = create_whatsapp_sender(_settings)
    return whatsapp_sender


def _notifications() -> NotificationService:
    return NotificationService(sender=_active_sender(), tokens=token_repo)


def _correlator() -> ResponseCorrelator:
    return ResponseCorrelator(
        tokens=token_repo,
        directory=directory_repo,
        default_country_code=_settings.default_country_code,
        booking_confirmation_template=_settings.wa_booking_confirmation_template,
    )


def _invite_dispatcher() -> InviteDispatcher:
    return InviteDispatcher(
        notifications=_notifications(),
        directory=directory_repo,
        template_name=_settings.wa_invite_template,
        language_code=_settings.wa_template_language,
        timezone_name=_settings.display_timezone,
        delay_seconds=_settings.invite_send_delay_seconds,
    )


def get_reminder_scheduler() -> ReminderScheduler:
    global reminder_scheduler
    if reminder_scheduler is None:
        reminder_scheduler = ReminderScheduler(
            directory=directory_repo,
            notifications=_notifications(),
            tiers=default_reminder_tiers(_settings),
            tick_seconds=_settings.reminder_tick_seconds,
            language_code=_settings.wa_template_language,
            timezone_name=_settings.display_timezone,
        )
    return reminder_scheduler


def reset_runtime_state_for_tests() -> None:
    global reminder_scheduler
    token_repo.reset()
    directory_repo.reset()
    reminder_scheduler = None


def _require_admin(request: Request) -> None:
    expected = _settings.admin_api_key.strip()
    if not expected:
        raise HTTPException(503, "admin api key not configured")
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "admin api key required")
    if not hmac.compare_digest(token, expected):
        raise HTTPException(401, "invalid admin api key")


def _participant_response(record: ParticipantRecord) -> ParticipantResponse:
    return ParticipantResponse(
        participant_id=record.participant_id,
        event_id=record.event_id,
        name=record.name,
        phone_number=record.phone_number,
        phone_valid=is_valid_phone_number(record.phone_number, _settings.default_country_code),
        attending=record.attending,
        reminder_12h_sent_at=record.reminder_12h_sent_at,
        reminder_3h_sent_at=record.reminder_3h_sent_at,
    )


# ---------------------------------------------------------------------------
# Provider webhook
# ---------------------------------------------------------------------------


@router.get("/whatsapp/webhook", response_class=PlainTextResponse)
def verify_whatsapp_webhook(request: Request) -> PlainTextResponse:
    mode = request.query_params.get("hub.mode")
    token = request.query_params.get("hub.verify_token")
    challenge = request.query_params.get("hub.challenge", "")
    expected = _settings.wa_webhook_verify_token.strip()
    if mode == "subscribe" and expected and token is not None and hmac.compare_digest(token, expected):
        logger.info("whatsapp webhook verified")
        return PlainTextResponse(challenge)
    logger.warning("whatsapp webhook verification rejected (mode=%s)", mode)
    raise HTTPException(status_code=403, detail="webhook verification failed")


def _process_webhook_payload(payload: dict) -> None:
    correlator = _correlator()
    for value in iter_change_values(payload):
        correlator.handle_batch(classify_change_value(value))


@router.post("/whatsapp/webhook", response_model=WebhookAckResponse)
async def receive_whatsapp_webhook(request: Request) -> WebhookAckResponse:
    body = await request.body()
    verification = verify_whatsapp_signature(settings=_settings, body=body, headers=request.headers)
    if not verification.verified:
        if _settings.wa_webhook_signature_mode == "enforce":
            raise HTTPException(401, f"invalid webhook signature: {verification.reason}")
        logger.warning("whatsapp webhook signature not verified: %s", verification.reason)

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("whatsapp webhook body is not valid JSON (%d bytes)", len(body))
        return WebhookAckResponse()
    if not isinstance(payload, dict):
        logger.warning("whatsapp webhook body is not an object")
        return WebhookAckResponse()

    try:
        await run_in_threadpool(_process_webhook_payload, payload)
    except Exception:
        logger.exception("whatsapp webhook processing failed")
    return WebhookAckResponse()


# ---------------------------------------------------------------------------
# Outbound messaging (admin)
# ---------------------------------------------------------------------------


@router.post("/whatsapp/send-template", response_model=SendTemplateResponse)
async def send_whatsapp_template(payload: SendTemplateRequest, request: Request) -> SendTemplateResponse:
    _require_admin(request)
    message = TemplateMessage(
        to=payload.to,
        template_name=payload.template_name,
        language_code=payload.language_code or _settings.wa_template_language,
        components=tuple(payload.components),
    )
    try:
        result = await _notifications().send_template(
            message,
            participant_id=payload.participant_id,
            event_id=payload.event_id,
        )
    except TemplateValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(
            status_code=502,
            detail={"code": exc.code, "category": exc.category, "message": exc.message},
        ) from exc
    return SendTemplateResponse(
        provider_message_id=result.provider_message_id,
        recipient=result.recipient,
        wa_id=result.wa_id,
        token_stored=payload.participant_id is not None,
    )


@router.get("/whatsapp/tokens/stats", response_model=TokenStatsResponse)
def get_token_stats(request: Request) -> TokenStatsResponse:
    _require_admin(request)
    stats = token_repo.stats()
    return TokenStatsResponse(processed=stats.processed, unprocessed=stats.unprocessed, total=stats.total)


# ---------------------------------------------------------------------------
# Events and participants (admin)
# ---------------------------------------------------------------------------


@router.post("/events", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
def create_event(payload: EventCreateRequest, request: Request) -> EventResponse:
    _require_admin(request)
    record = directory_repo.create_event(
        name=payload.name,
        starts_at=payload.starts_at,
        venue=payload.venue,
        food=payload.food,
        active=payload.active,
    )
    return EventResponse(
        event_id=record.event_id,
        name=record.name,
        starts_at=record.starts_at,
        venue=record.venue,
        food=record.food,
        active=record.active,
        created_at=record.created_at,
    )


@router.post(
    "/events/{event_id}/participants",
    response_model=ParticipantBatchResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_participants(
    event_id: str,
    payload: ParticipantBatchRequest,
    request: Request,
    background_tasks: BackgroundTasks,
) -> ParticipantBatchResponse:
    _require_admin(request)
    try:
        directory_repo.get_event(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"event not found: {event_id}") from exc

    created: list[ParticipantRecord] = []
    invite_ids: list[str] = []
    invalid_phone_count = 0
    for item in payload.participants:
        phone = item.phone_number.strip() if item.phone_number else None
        phone_valid = False
        if phone:
            try:
                phone = normalize_phone_number(phone, _settings.default_country_code)
                phone_valid = True
            except PhoneNumberError as exc:
                invalid_phone_count += 1
                logger.warning(
                    "participant %s has an invalid phone %s (%s); stored as given",
                    item.name,
                    mask_phone_number(phone),
                    exc.reason,
                )
        record = directory_repo.add_participant(
            event_id=event_id,
            name=item.name.strip(),
            phone_number=phone,
            category=item.category,
            city=item.city,
            remarks=item.remarks,
        )
        created.append(record)
        if phone_valid:
            invite_ids.append(record.participant_id)

    if payload.send_invites and invite_ids:
        background_tasks.add_task(_invite_dispatcher().dispatch_invites, event_id, invite_ids)

    return ParticipantBatchResponse(
        event_id=event_id,
        participants=[_participant_response(record) for record in created],
        invalid_phone_count=invalid_phone_count,
        invites_scheduled=len(invite_ids) if payload.send_invites else 0,
    )


@router.get("/events/{event_id}/participants/{participant_id}", response_model=ParticipantResponse)
def get_participant(event_id: str, participant_id: str, request: Request) -> ParticipantResponse:
    _require_admin(request)
    try:
        record = directory_repo.get_participant(participant_id)
    except ParticipantNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"participant not found: {participant_id}") from exc
    if record.event_id != event_id:
        raise HTTPException(status_code=404, detail=f"participant not found: {participant_id}")
    return _participant_response(record)


# ---------------------------------------------------------------------------
# Reminders (admin)
# ---------------------------------------------------------------------------


@router.post("/reminders/run/once", response_model=ReminderRunOnceResponse)
async def run_reminders_once(request: Request) -> ReminderRunOnceResponse:
    _require_admin(request)
    summary = await get_reminder_scheduler().tick()
    if summary is None:
        raise HTTPException(status_code=409, detail="a reminder tick is already running")
    return ReminderRunOnceResponse(
        started_at=summary.started_at,
        sent=summary.sent,
        tiers=[
            ReminderTierResult(
                tier=item.tier,
                events=item.events,
                sent=item.sent,
                failed=item.failed,
                blocked=item.blocked,
            )
            for item in summary.tiers
        ],
    )
