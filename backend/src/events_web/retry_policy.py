from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def _never(_: BaseException) -> bool:
    return False


class RetryPolicy:
    """Bounded exponential backoff shared by every outbound provider call.

    ``should_retry`` decides which failures are worth another attempt and
    ``is_rate_limited`` selects failures that get the extra backoff multiplier.
    Delay after failed attempt ``n`` is ``base * 2 ** (n - 1)``, multiplied for
    rate limits and capped at ``max_delay_seconds``.
    """

    def __init__(
        self,
        *,
        should_retry: Callable[[BaseException], bool],
        is_rate_limited: Callable[[BaseException], bool] = _never,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
        rate_limit_multiplier: float = 3.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self._should_retry = should_retry
        self._is_rate_limited = is_rate_limited
        self.max_retries = max_retries
        self.base_delay_seconds = max(0.0, base_delay_seconds)
        self.max_delay_seconds = max(0.0, max_delay_seconds)
        self.rate_limit_multiplier = max(1.0, rate_limit_multiplier)
        self._sleep = sleep

    def delay_for(self, attempt_number: int, error: BaseException | None) -> float:
        delay = self.base_delay_seconds * (2 ** max(0, attempt_number - 1))
        if error is not None and self._is_rate_limited(error):
            delay *= self.rate_limit_multiplier
        return min(delay, self.max_delay_seconds)

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self.delay_for(retry_state.attempt_number, error)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retrying provider call after attempt %s: %s",
            retry_state.attempt_number,
            error,
            extra={"attempt": retry_state.attempt_number},
        )

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(self._should_retry),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await operation()
        return result
