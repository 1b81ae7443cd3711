from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal, Union

logger = logging.getLogger(__name__)

DeliveryStatus = Literal["sent", "delivered", "read", "failed"]
_DELIVERY_STATUSES = {"sent", "delivered", "read", "failed"}


@dataclass(frozen=True)
class StatusUpdate:
    message_id: str
    phone: str
    status: DeliveryStatus
    error_details: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class ButtonReply:
    message_id: str
    phone: str
    button_text: str
    button_payload: str
    context_message_id: str | None = None


@dataclass(frozen=True)
class InteractiveButtonReply:
    message_id: str
    phone: str
    button_id: str
    button_title: str
    context_message_id: str | None = None


@dataclass(frozen=True)
class InteractiveListReply:
    message_id: str
    phone: str
    item_id: str
    item_title: str


@dataclass(frozen=True)
class TextMessage:
    message_id: str
    phone: str
    body: str


@dataclass(frozen=True)
class Unrecognized:
    reason: str
    raw: dict[str, Any] = field(default_factory=dict)


WebhookEvent = Union[
    StatusUpdate,
    ButtonReply,
    InteractiveButtonReply,
    InteractiveListReply,
    TextMessage,
    Unrecognized,
]

MESSAGE_EVENT_TYPES = (ButtonReply, InteractiveButtonReply, InteractiveListReply, TextMessage)


@dataclass(frozen=True)
class WebhookBatch:
    events: tuple[WebhookEvent, ...]

    @property
    def has_message_events(self) -> bool:
        return any(isinstance(event, MESSAGE_EVENT_TYPES) for event in self.events)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def iter_change_values(payload: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Yield each ``entry[].changes[].value`` record of a webhook body."""
    for entry in _as_list(_as_dict(payload).get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            value = _as_dict(change).get("value")
            if isinstance(value, dict):
                yield value


def classify_message(message: dict[str, Any]) -> WebhookEvent:
    message_id = _text(message.get("id"))
    phone = _text(message.get("from"))
    if not message_id or not phone:
        return Unrecognized(reason="message_missing_id_or_sender", raw=message)

    context_id = _text(_as_dict(message.get("context")).get("id")) or None

    button = message.get("button")
    if isinstance(button, dict):
        return ButtonReply(
            message_id=message_id,
            phone=phone,
            button_text=_text(button.get("text")),
            button_payload=_text(button.get("payload")),
            context_message_id=context_id,
        )

    interactive = _as_dict(message.get("interactive"))
    button_reply = interactive.get("button_reply")
    if isinstance(button_reply, dict):
        return InteractiveButtonReply(
            message_id=message_id,
            phone=phone,
            button_id=_text(button_reply.get("id")),
            button_title=_text(button_reply.get("title")),
            context_message_id=context_id,
        )
    list_reply = interactive.get("list_reply")
    if isinstance(list_reply, dict):
        return InteractiveListReply(
            message_id=message_id,
            phone=phone,
            item_id=_text(list_reply.get("id")),
            item_title=_text(list_reply.get("title")),
        )

    text = message.get("text")
    if isinstance(text, dict):
        return TextMessage(message_id=message_id, phone=phone, body=_text(text.get("body")))

    return Unrecognized(reason=f"unsupported_message_type:{_text(message.get('type')) or 'unknown'}", raw=message)


def classify_status(status: dict[str, Any]) -> WebhookEvent:
    message_id = _text(status.get("id"))
    state = _text(status.get("status")).lower()
    if not message_id:
        return Unrecognized(reason="status_missing_id", raw=status)
    if state not in _DELIVERY_STATUSES:
        return Unrecognized(reason=f"unsupported_status:{state or 'unknown'}", raw=status)
    errors = tuple(item for item in _as_list(status.get("errors")) if isinstance(item, dict))
    return StatusUpdate(
        message_id=message_id,
        phone=_text(status.get("recipient_id")),
        status=state,  # type: ignore[arg-type]
        error_details=errors,
    )


def classify_change_value(value: dict[str, Any]) -> WebhookBatch:
    events: list[WebhookEvent] = []
    for message in _as_list(value.get("messages")):
        if not isinstance(message, dict):
            events.append(Unrecognized(reason="message_not_an_object"))
            continue
        events.append(classify_message(message))
    for status in _as_list(value.get("statuses")):
        if not isinstance(status, dict):
            events.append(Unrecognized(reason="status_not_an_object"))
            continue
        events.append(classify_status(status))
    if not events:
        events.append(Unrecognized(reason="no_messages_or_statuses", raw=value))
    for event in events:
        if isinstance(event, Unrecognized):
            logger.info("dropping unrecognized webhook item: %s", event.reason)
    return WebhookBatch(events=tuple(events))
