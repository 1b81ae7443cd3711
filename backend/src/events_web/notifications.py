from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .directory import EventDirectoryRepository, EventNotFoundError, EventRecord, ParticipantNotFoundError
from .message_tokens import MessageTokenRepository, new_message_token
from .phone import mask_phone_number
from .retry_policy import SleepFn
from .templates import build_invite_message
from .whatsapp import (
    ProviderBlockedError,
    ProviderError,
    SendResult,
    TemplateMessage,
    TemplateValidationError,
    WhatsAppSender,
)

logger = logging.getLogger(__name__)


class NotificationService:
    """Sends one template and remembers which participant it was for."""

    def __init__(self, *, sender: WhatsAppSender, tokens: MessageTokenRepository) -> None:
        self._sender = sender
        self._tokens = tokens

    @property
    def sender(self) -> WhatsAppSender:
        return self._sender

    async def send_template(
        self,
        message: TemplateMessage,
        *,
        participant_id: str | None = None,
        event_id: str | None = None,
    ) -> SendResult:
        result = await self._sender.send_template(message)
        if participant_id and event_id:
            await asyncio.to_thread(
                self._tokens.put,
                new_message_token(
                    message_id=result.provider_message_id,
                    participant_id=participant_id,
                    event_id=event_id,
                    phone_number=result.recipient,
                    template_name=message.template_name,
                ),
            )
        return result


@dataclass(frozen=True)
class InviteBatchSummary:
    event_id: str
    sent: int
    failed: int
    skipped: int


class InviteDispatcher:
    def __init__(
        self,
        *,
        notifications: NotificationService,
        directory: EventDirectoryRepository,
        template_name: str,
        language_code: str = "en",
        timezone_name: str = "Asia/Kolkata",
        delay_seconds: float = 1.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._notifications = notifications
        self._directory = directory
        self._template_name = template_name
        self._language_code = language_code
        self._timezone_name = timezone_name
        self._delay_seconds = max(0.0, delay_seconds)
        self._sleep = sleep

    async def dispatch_invites(self, event_id: str, participant_ids: list[str]) -> InviteBatchSummary:
        try:
            event = await asyncio.to_thread(self._directory.get_event, event_id)
        except EventNotFoundError:
            logger.error("invite batch skipped: event %s not found", event_id)
            return InviteBatchSummary(event_id=event_id, sent=0, failed=0, skipped=len(participant_ids))

        sent = failed = skipped = 0
        for index, participant_id in enumerate(participant_ids):
            if index and self._delay_seconds:
                await self._sleep(self._delay_seconds)
            outcome = await self._invite_one(event, participant_id)
            if outcome == "sent":
                sent += 1
            elif outcome == "skipped":
                skipped += 1
            else:
                failed += 1

        summary = InviteBatchSummary(event_id=event_id, sent=sent, failed=failed, skipped=skipped)
        logger.info(
            "invite batch for event %s finished: sent=%d failed=%d skipped=%d",
            event_id,
            summary.sent,
            summary.failed,
            summary.skipped,
        )
        return summary

    async def _invite_one(self, event: EventRecord, participant_id: str) -> str:
        masked = "***"
        try:
            participant = await asyncio.to_thread(self._directory.get_participant, participant_id)
            if not (participant.phone_number or "").strip():
                logger.info("invite skipped: participant %s has no phone number", participant_id)
                return "skipped"

            masked = mask_phone_number(participant.phone_number)
            message = build_invite_message(
                participant=participant,
                event=event,
                template_name=self._template_name,
                language_code=self._language_code,
                timezone_name=self._timezone_name,
            )
            result = await self._notifications.send_template(
                message,
                participant_id=participant.participant_id,
                event_id=event.event_id,
            )
        except ParticipantNotFoundError:
            logger.warning("invite skipped: participant %s not found", participant_id)
            return "skipped"
        except TemplateValidationError as exc:
            logger.warning(
                "invite to participant %s (%s) is invalid: %s",
                participant_id,
                masked,
                exc,
                extra={"participant_id": participant_id},
            )
            return "failed"
        except ProviderError as exc:
            log = logger.critical if isinstance(exc, ProviderBlockedError) else logger.error
            log(
                "invite to participant %s (%s) failed: %s",
                participant_id,
                masked,
                exc,
                extra={"participant_id": participant_id, "provider_code": exc.code},
            )
            return "failed"
        except Exception:
            logger.exception(
                "invite to participant %s (%s) raised unexpectedly",
                participant_id,
                masked,
                extra={"participant_id": participant_id},
            )
            return "failed"

        logger.info(
            "invite sent to participant %s (%s) as %s",
            participant_id,
            masked,
            result.provider_message_id,
        )
        return "sent"
