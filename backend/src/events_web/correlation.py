from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from .directory import EventDirectoryRepository
from .message_tokens import MessageTokenRecord, MessageTokenRepository, new_message_token
from .phone import mask_phone_number, normalize_inbound_phone, phone_lookup_variants
from .webhook_events import (
    ButtonReply,
    InteractiveButtonReply,
    InteractiveListReply,
    StatusUpdate,
    TextMessage,
    Unrecognized,
    WebhookBatch,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

AttendanceDecision = Literal["Yes", "No"]
CorrelationAction = Literal[
    "attendance_updated",
    "duplicate",
    "unmatched",
    "no_decision",
    "logged",
    "status_logged",
    "provisional_token_created",
    "status_unmatched",
    "ignored",
    "error",
]


@dataclass(frozen=True)
class CorrelationOutcome:
    message_id: str | None
    action: CorrelationAction
    participant_id: str | None = None
    event_id: str | None = None
    attending: AttendanceDecision | None = None


@dataclass(frozen=True)
class _ReplyTarget:
    participant_id: str
    event_id: str
    token: MessageTokenRecord | None


def decide_attendance(*values: str) -> AttendanceDecision | None:
    """Case-insensitive containment; a "yes" anywhere wins over a "no"."""
    lowered = [value.lower() for value in values if value]
    if any("yes" in value for value in lowered):
        return "Yes"
    if any("no" in value for value in lowered):
        return "No"
    return None


class ResponseCorrelator:
    def __init__(
        self,
        *,
        tokens: MessageTokenRepository,
        directory: EventDirectoryRepository,
        default_country_code: str = "91",
        booking_confirmation_template: str = "booking_confirmation",
    ) -> None:
        self._tokens = tokens
        self._directory = directory
        self._default_country_code = default_country_code
        self._booking_confirmation_template = booking_confirmation_template

    def handle_batch(self, batch: WebhookBatch) -> list[CorrelationOutcome]:
        outcomes: list[CorrelationOutcome] = []
        for event in batch.events:
            try:
                outcomes.append(self.handle_event(event, batch_has_messages=batch.has_message_events))
            except Exception:
                # Provider callbacks are acknowledged regardless, so failures stay in the log.
                logger.exception("failed to correlate webhook item %s", type(event).__name__)
                outcomes.append(CorrelationOutcome(message_id=getattr(event, "message_id", None), action="error"))
        return outcomes

    def handle_event(self, event: WebhookEvent, *, batch_has_messages: bool = False) -> CorrelationOutcome:
        if isinstance(event, ButtonReply):
            return self._handle_reply(
                message_id=event.message_id,
                phone=event.phone,
                context_message_id=event.context_message_id,
                reply_values=(event.button_text, event.button_payload),
                kind="button",
            )
        if isinstance(event, InteractiveButtonReply):
            return self._handle_reply(
                message_id=event.message_id,
                phone=event.phone,
                context_message_id=event.context_message_id,
                reply_values=(event.button_title, event.button_id),
                kind="interactive_button",
            )
        if isinstance(event, StatusUpdate):
            return self._handle_status(event, batch_has_messages=batch_has_messages)
        if isinstance(event, InteractiveListReply):
            logger.info(
                "list reply %s from %s: %s (%s)",
                event.message_id,
                mask_phone_number(event.phone),
                event.item_title,
                event.item_id,
            )
            return CorrelationOutcome(message_id=event.message_id, action="logged")
        if isinstance(event, TextMessage):
            logger.info(
                "text message %s from %s (%d chars)",
                event.message_id,
                mask_phone_number(event.phone),
                len(event.body),
            )
            return CorrelationOutcome(message_id=event.message_id, action="logged")
        if isinstance(event, Unrecognized):
            return CorrelationOutcome(message_id=None, action="ignored")
        raise TypeError(f"unsupported webhook event: {type(event).__name__}")

    def _find_token(self, context_message_id: str | None, phone: str) -> MessageTokenRecord | None:
        if context_message_id:
            token = self._tokens.get_by_message_id(context_message_id)
            if token is not None and not token.processed:
                return token
        return self._tokens.get_latest_unprocessed_by_phone(phone)

    def _find_target(self, context_message_id: str | None, phone: str, raw_phone: str) -> _ReplyTarget | None:
        token = self._find_token(context_message_id, phone)
        if token is not None:
            return _ReplyTarget(participant_id=token.participant_id, event_id=token.event_id, token=token)
        participants = self._directory.find_participants_by_phone(
            phone_lookup_variants(raw_phone, self._default_country_code)
        )
        if not participants:
            return None
        latest = participants[0]
        return _ReplyTarget(participant_id=latest.participant_id, event_id=latest.event_id, token=None)

    def _handle_reply(
        self,
        *,
        message_id: str,
        phone: str,
        context_message_id: str | None,
        reply_values: tuple[str, str],
        kind: str,
    ) -> CorrelationOutcome:
        if self._tokens.has_inbound_receipt(message_id):
            logger.info("skipping redelivered %s reply %s", kind, message_id)
            return CorrelationOutcome(message_id=message_id, action="duplicate")

        normalized_phone = normalize_inbound_phone(phone)
        outcome = self._apply_reply(
            message_id=message_id,
            normalized_phone=normalized_phone,
            raw_phone=phone,
            context_message_id=context_message_id,
            reply_values=reply_values,
        )
        self._tokens.record_inbound_receipt(message_id, kind=kind)
        return outcome

    def _apply_reply(
        self,
        *,
        message_id: str,
        normalized_phone: str,
        raw_phone: str,
        context_message_id: str | None,
        reply_values: tuple[str, str],
    ) -> CorrelationOutcome:
        masked = mask_phone_number(normalized_phone)
        target = self._find_target(context_message_id, normalized_phone, raw_phone)
        if target is None:
            logger.warning(
                "no token or participant matches reply %s from %s",
                message_id,
                masked,
                extra={"context_message_id": context_message_id},
            )
            return CorrelationOutcome(message_id=message_id, action="unmatched")

        attending = decide_attendance(*reply_values)
        if attending is None:
            logger.warning(
                "reply %s from %s is neither yes nor no: %r",
                message_id,
                masked,
                reply_values,
                extra={"participant_id": target.participant_id},
            )
            return CorrelationOutcome(
                message_id=message_id,
                action="no_decision",
                participant_id=target.participant_id,
                event_id=target.event_id,
            )

        updated = self._directory.update_attendance(target.participant_id, target.event_id, attending)
        if not updated:
            logger.warning(
                "participant %s for event %s no longer exists; reply %s dropped",
                target.participant_id,
                target.event_id,
                message_id,
            )
            return CorrelationOutcome(
                message_id=message_id,
                action="unmatched",
                participant_id=target.participant_id,
                event_id=target.event_id,
            )

        if target.token is not None:
            if target.token.template_name == self._booking_confirmation_template:
                self._tokens.delete(target.token.message_id)
            else:
                self._tokens.mark_processed(target.token.message_id)

        logger.info(
            "participant %s marked attending=%s from reply %s",
            target.participant_id,
            attending,
            message_id,
            extra={"participant_id": target.participant_id, "event_id": target.event_id, "phone": masked},
        )
        return CorrelationOutcome(
            message_id=message_id,
            action="attendance_updated",
            participant_id=target.participant_id,
            event_id=target.event_id,
            attending=attending,
        )

    def _handle_status(self, event: StatusUpdate, *, batch_has_messages: bool) -> CorrelationOutcome:
        masked = mask_phone_number(event.phone)
        token = self._tokens.get_by_message_id(event.message_id)
        if token is not None:
            if event.status == "failed":
                logger.error(
                    "message %s to participant %s failed: %s",
                    event.message_id,
                    token.participant_id,
                    list(event.error_details),
                    extra={"participant_id": token.participant_id, "event_id": token.event_id, "phone": masked},
                )
            else:
                logger.info(
                    "message %s to participant %s is %s",
                    event.message_id,
                    token.participant_id,
                    event.status,
                    extra={"participant_id": token.participant_id, "event_id": token.event_id},
                )
            return CorrelationOutcome(
                message_id=event.message_id,
                action="status_logged",
                participant_id=token.participant_id,
                event_id=token.event_id,
            )

        if event.status == "failed":
            logger.error(
                "message %s to %s failed: %s",
                event.message_id,
                masked,
                list(event.error_details),
            )
            return CorrelationOutcome(message_id=event.message_id, action="status_unmatched")

        if batch_has_messages or not event.phone:
            return CorrelationOutcome(message_id=event.message_id, action="status_unmatched")

        participants = self._directory.find_participants_by_phone(
            phone_lookup_variants(event.phone, self._default_country_code)
        )
        if not participants:
            logger.info("status %s for unknown message %s to %s", event.status, event.message_id, masked)
            return CorrelationOutcome(message_id=event.message_id, action="status_unmatched")

        latest = participants[0]
        self._tokens.put(
            new_message_token(
                message_id=event.message_id,
                participant_id=latest.participant_id,
                event_id=latest.event_id,
                phone_number=normalize_inbound_phone(event.phone),
                template_name=None,
            )
        )
        logger.info(
            "created provisional token %s for participant %s from %s status",
            event.message_id,
            latest.participant_id,
            event.status,
        )
        return CorrelationOutcome(
            message_id=event.message_id,
            action="provisional_token_created",
            participant_id=latest.participant_id,
            event_id=latest.event_id,
        )
