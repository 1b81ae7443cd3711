from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .config import Settings
from .directory import EventDirectoryRepository, EventRecord, ParticipantRecord, ReminderTierName
from .notifications import NotificationService
from .phone import mask_phone_number
from .retry_policy import SleepFn
from .templates import build_reminder_message
from .whatsapp import ProviderBlockedError, ProviderError, TemplateValidationError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReminderTier:
    name: ReminderTierName
    window: timedelta
    template_name: str
    include_venue: bool = False


@dataclass(frozen=True)
class ReminderTierSummary:
    tier: ReminderTierName
    events: int
    sent: int
    failed: int
    blocked: int


@dataclass(frozen=True)
class ReminderTickSummary:
    started_at: datetime
    tiers: tuple[ReminderTierSummary, ...]

    @property
    def sent(self) -> int:
        return sum(item.sent for item in self.tiers)


def default_reminder_tiers(settings: Settings) -> tuple[ReminderTier, ...]:
    return (
        ReminderTier(
            name="12h",
            window=timedelta(hours=settings.reminder_12h_window_hours),
            template_name=settings.reminder_12h_template,
        ),
        ReminderTier(
            name="3h",
            window=timedelta(hours=settings.reminder_3h_window_hours),
            template_name=settings.reminder_3h_template,
            include_venue=True,
        ),
    )


class ReminderScheduler:
    """Periodic, idempotent reminder sends for events starting soon.

    A participant's per-tier sent timestamp is the only guard against a
    repeat send, and it is written only after the provider returned a
    message id. Ticks never overlap: the loop awaits each tick before
    sleeping and a manual trigger during a running tick is skipped.
    """

    def __init__(
        self,
        *,
        directory: EventDirectoryRepository,
        notifications: NotificationService,
        tiers: tuple[ReminderTier, ...],
        tick_seconds: float = 60.0,
        language_code: str = "en",
        timezone_name: str = "Asia/Kolkata",
        clock: Clock = _now_utc,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._directory = directory
        self._notifications = notifications
        self._tiers = tiers
        self._tick_seconds = max(0.0, tick_seconds)
        self._language_code = language_code
        self._timezone_name = timezone_name
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("reminder scheduler started (tick every %ss)", self._tick_seconds)

    async def stop(self) -> None:
        self._running = False
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("reminder scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("reminder tick failed")
            if not self._running:
                break
            await self._sleep(self._tick_seconds)

    async def tick(self) -> ReminderTickSummary | None:
        if self._lock.locked():
            logger.warning("reminder tick skipped: previous tick still running")
            return None
        async with self._lock:
            started_at = self._clock()
            summaries = []
            for tier in self._tiers:
                summaries.append(await self._run_tier(tier))
            self.tick_count += 1
            return ReminderTickSummary(started_at=started_at, tiers=tuple(summaries))

    async def _run_tier(self, tier: ReminderTier) -> ReminderTierSummary:
        now = self._clock()
        events = await asyncio.to_thread(self._directory.list_events_starting_between, now, now + tier.window)
        sent = failed = blocked = 0
        for event in events:
            try:
                participants = await asyncio.to_thread(
                    self._directory.list_participants_pending_reminder, event.event_id, tier.name
                )
            except Exception:
                logger.exception("could not load %s reminder participants for event %s", tier.name, event.event_id)
                continue
            for participant in participants:
                outcome = await self._send_one(tier, event, participant)
                if outcome == "sent":
                    sent += 1
                elif outcome == "blocked":
                    blocked += 1
                else:
                    failed += 1
        if events:
            logger.info(
                "%s reminders: events=%d sent=%d failed=%d blocked=%d",
                tier.name,
                len(events),
                sent,
                failed,
                blocked,
            )
        return ReminderTierSummary(tier=tier.name, events=len(events), sent=sent, failed=failed, blocked=blocked)

    async def _send_one(self, tier: ReminderTier, event: EventRecord, participant: ParticipantRecord) -> str:
        context = {
            "participant_id": participant.participant_id,
            "event_id": event.event_id,
            "phone": mask_phone_number(participant.phone_number),
            "tier": tier.name,
        }
        try:
            message = build_reminder_message(
                participant=participant,
                event=event,
                template_name=tier.template_name,
                language_code=self._language_code,
                timezone_name=self._timezone_name,
                include_venue=tier.include_venue,
            )
            result = await self._notifications.send_template(
                message,
                participant_id=participant.participant_id,
                event_id=event.event_id,
            )
        except ProviderBlockedError as exc:
            logger.critical(
                "%s reminder to participant %s blocked by provider: %s",
                tier.name,
                participant.participant_id,
                exc,
                extra={**context, "provider_code": exc.code},
            )
            return "blocked"
        except ProviderError as exc:
            logger.error(
                "%s reminder to participant %s failed: %s",
                tier.name,
                participant.participant_id,
                exc,
                extra={**context, "provider_code": exc.code},
            )
            return "failed"
        except TemplateValidationError as exc:
            logger.warning(
                "%s reminder to participant %s skipped: %s",
                tier.name,
                participant.participant_id,
                exc,
                extra=context,
            )
            return "failed"
        except Exception:
            logger.exception(
                "%s reminder to participant %s raised unexpectedly",
                tier.name,
                participant.participant_id,
                extra=context,
            )
            return "failed"

        if not result.provider_message_id:
            logger.error("%s reminder to participant %s returned no message id", tier.name, participant.participant_id)
            return "failed"
        try:
            await asyncio.to_thread(
                self._directory.mark_reminder_sent, participant.participant_id, tier.name, self._clock()
            )
        except Exception:
            logger.exception(
                "%s reminder to participant %s sent as %s but the sent time was not saved",
                tier.name,
                participant.participant_id,
                result.provider_message_id,
                extra=context,
            )
            return "failed"
        return "sent"
