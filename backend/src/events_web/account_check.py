from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

ACCOUNT_FIELDS = ("display_phone_number", "verified_name", "quality_rating", "messaging_limit_tier")
LOW_MESSAGING_TIERS = frozenset({"TIER_50", "TIER_250"})


@dataclass(frozen=True)
class AccountHealth:
    display_phone_number: str | None
    verified_name: str | None
    quality_rating: str | None
    messaging_limit_tier: str | None
    problems: tuple[str, ...]

    @property
    def healthy(self) -> bool:
        return not self.problems


def assess_account_status(data: dict[str, Any]) -> AccountHealth:
    """Flag account states where sends are accepted but never delivered."""
    verified_name = data.get("verified_name") or None
    quality_rating = data.get("quality_rating") or None
    tier = data.get("messaging_limit_tier") or None

    problems: list[str] = []
    if verified_name is None:
        problems.append("no verified business name; the app may not be fully verified")
    if tier in LOW_MESSAGING_TIERS:
        problems.append(f"low messaging limit tier {tier}; template delivery may be restricted")
    if quality_rating == "RED":
        problems.append("quality rating is RED; messaging is limited")
    elif quality_rating == "YELLOW":
        problems.append("quality rating is YELLOW")

    return AccountHealth(
        display_phone_number=data.get("display_phone_number") or None,
        verified_name=verified_name,
        quality_rating=quality_rating,
        messaging_limit_tier=tier,
        problems=tuple(problems),
    )


async def fetch_account_status(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AccountHealth:
    if not settings.wa_token.strip() or not settings.wa_phone_number_id.strip():
        raise ValueError("WA_TOKEN and WA_PHONE_NUMBER_ID are required for the account check")

    url = f"{settings.wa_api_base.rstrip('/')}/{settings.wa_api_version}/{settings.wa_phone_number_id}"
    async with httpx.AsyncClient(timeout=settings.wa_timeout_seconds, transport=transport) as client:
        response = await client.get(
            url,
            params={"fields": ",".join(ACCOUNT_FIELDS)},
            headers={"Authorization": f"Bearer {settings.wa_token}"},
        )
    response.raise_for_status()
    health = assess_account_status(response.json())
    logger.info(
        "whatsapp account %s tier=%s quality=%s problems=%d",
        health.display_phone_number,
        health.messaging_limit_tier,
        health.quality_rating,
        len(health.problems),
    )
    return health
