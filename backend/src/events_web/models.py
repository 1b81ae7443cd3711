from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

FoodPreference = Literal["veg", "non-veg", "both"]
ReminderTierLabel = Literal["12h", "3h"]


class EventCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    starts_at: datetime
    venue: str | None = Field(default=None, max_length=255)
    food: FoodPreference | None = None
    active: bool = True

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("name cannot be blank")
        return normalized

    @field_validator("starts_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class EventResponse(BaseModel):
    event_id: str
    name: str
    starts_at: datetime
    venue: str | None
    food: str | None
    active: bool
    created_at: datetime


class ParticipantInput(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    phone_number: str | None = Field(default=None, max_length=32)
    category: str | None = Field(default=None, max_length=100)
    city: str | None = Field(default=None, max_length=100)
    remarks: str | None = None


class ParticipantBatchRequest(BaseModel):
    participants: list[ParticipantInput] = Field(min_length=1, max_length=500)
    send_invites: bool = True


class ParticipantResponse(BaseModel):
    participant_id: str
    event_id: str
    name: str
    phone_number: str | None
    phone_valid: bool
    attending: str | None
    reminder_12h_sent_at: datetime | None
    reminder_3h_sent_at: datetime | None


class ParticipantBatchResponse(BaseModel):
    event_id: str
    participants: list[ParticipantResponse]
    invalid_phone_count: int
    invites_scheduled: int


class SendTemplateRequest(BaseModel):
    to: str = Field(min_length=1, max_length=32)
    template_name: str = Field(min_length=1, max_length=100)
    language_code: str | None = Field(default=None, min_length=2, max_length=16)
    components: list[dict[str, Any]] = Field(default_factory=list)
    participant_id: str | None = Field(default=None, min_length=1, max_length=64)
    event_id: str | None = Field(default=None, min_length=1, max_length=64)

    @model_validator(mode="after")
    def _validate_correlation_ids(self) -> SendTemplateRequest:
        if (self.participant_id is None) != (self.event_id is None):
            raise ValueError("participant_id and event_id must be provided together")
        return self


class SendTemplateResponse(BaseModel):
    provider_message_id: str
    recipient: str
    wa_id: str | None = None
    token_stored: bool


class WebhookAckResponse(BaseModel):
    status: Literal["ok"] = "ok"


class ReminderTierResult(BaseModel):
    tier: ReminderTierLabel
    events: int
    sent: int
    failed: int
    blocked: int


class ReminderRunOnceResponse(BaseModel):
    started_at: datetime
    sent: int
    tiers: list[ReminderTierResult]


class TokenStatsResponse(BaseModel):
    processed: int
    unprocessed: int
    total: int
