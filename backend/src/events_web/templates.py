from __future__ import annotations

from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from .directory import EventRecord, ParticipantRecord
from .whatsapp import TemplateMessage, TemplateValidationError

MAX_NAME_LENGTH = 60
MAX_EVENT_NAME_LENGTH = 100
MAX_VENUE_LENGTH = 100


def format_event_date(value: datetime, timezone_name: str = "Asia/Kolkata") -> str:
    local = value.astimezone(ZoneInfo(timezone_name))
    return f"{local.day} {local.strftime('%b %Y')}"


def format_event_time(value: datetime, timezone_name: str = "Asia/Kolkata") -> str:
    local = value.astimezone(ZoneInfo(timezone_name))
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def body_component(*values: str) -> dict[str, Any]:
    return {
        "type": "body",
        "parameters": [{"type": "text", "text": value} for value in values],
    }


def _required_text(value: str | None, field_name: str, limit: int) -> str:
    text = (value or "").strip()
    if not text:
        raise TemplateValidationError(f"{field_name} is required for this template")
    return text[:limit]


def build_invite_message(
    *,
    participant: ParticipantRecord,
    event: EventRecord,
    template_name: str,
    language_code: str,
    timezone_name: str,
) -> TemplateMessage:
    return TemplateMessage(
        to=participant.phone_number or "",
        template_name=template_name,
        language_code=language_code,
        components=(
            body_component(
                _required_text(participant.name, "participant name", MAX_NAME_LENGTH),
                _required_text(event.name, "event name", MAX_EVENT_NAME_LENGTH),
                format_event_date(event.starts_at, timezone_name),
                (event.venue or "TBA").strip()[:MAX_VENUE_LENGTH] or "TBA",
            ),
        ),
    )


def build_reminder_message(
    *,
    participant: ParticipantRecord,
    event: EventRecord,
    template_name: str,
    language_code: str,
    timezone_name: str,
    include_venue: bool,
) -> TemplateMessage:
    """Reminder body: name, event name, date, and for the closing tier time and venue."""
    values = [
        _required_text(participant.name, "participant name", MAX_NAME_LENGTH),
        _required_text(event.name, "event name", MAX_EVENT_NAME_LENGTH),
        format_event_date(event.starts_at, timezone_name),
    ]
    if include_venue:
        values.append(format_event_time(event.starts_at, timezone_name))
        values.append(_required_text(event.venue, "event venue", MAX_VENUE_LENGTH))
    return TemplateMessage(
        to=participant.phone_number or "",
        template_name=template_name,
        language_code=language_code,
        components=(body_component(*values),),
    )
