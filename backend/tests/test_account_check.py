from __future__ import annotations

import httpx
import pytest

from events_web.account_check import assess_account_status, fetch_account_status
from events_web.config import Settings


def test_verified_account_is_healthy() -> None:
    health = assess_account_status(
        {
            "display_phone_number": "+91 91234 56789",
            "verified_name": "Annual Gala Desk",
            "quality_rating": "GREEN",
            "messaging_limit_tier": "TIER_1K",
        }
    )

    assert health.healthy is True
    assert health.problems == ()


def test_unverified_low_tier_account_reports_problems() -> None:
    health = assess_account_status({"quality_rating": "RED", "messaging_limit_tier": "TIER_250"})

    assert health.healthy is False
    assert len(health.problems) == 3
    assert any("TIER_250" in problem for problem in health.problems)


@pytest.mark.asyncio
async def test_fetch_requests_account_fields_with_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"verified_name": "Desk", "messaging_limit_tier": "TIER_50"})

    settings = Settings(wa_token="EAAG-token", wa_phone_number_id="42")
    health = await fetch_account_status(settings, transport=httpx.MockTransport(handler))

    request = seen[0]
    assert request.url.path == "/v22.0/42"
    assert request.url.params["fields"] == "display_phone_number,verified_name,quality_rating,messaging_limit_tier"
    assert request.headers["Authorization"] == "Bearer EAAG-token"
    assert health.messaging_limit_tier == "TIER_50"
    assert health.healthy is False


@pytest.mark.asyncio
async def test_fetch_requires_credentials() -> None:
    with pytest.raises(ValueError):
        await fetch_account_status(Settings())
