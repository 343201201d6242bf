"""API quota tracking for calls to the remote repository host."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import BaseModel

if TYPE_CHECKING:
    from script_orchestrator.config import RateLimitConfig

logger = logging.getLogger(__name__)


class RateLimitState(BaseModel):
    """Snapshot of the remote API quota."""

    remaining: int
    ceiling: int
    reset_at: datetime

    @property
    def remaining_percentage(self) -> float:
        """Percentage of the quota still available."""
        return self.remaining / self.ceiling * 100 if self.ceiling > 0 else 0.0


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class RateLimiter:
    """Blocks callers when the remaining quota drops to the safety margin.

    One instance is shared by every client that talks to the same host.
    State is guarded by a lock that is only held for the check/decrement,
    never across a sleep.

    Usage:
        limiter = RateLimiter(safety_margin=10)
        await limiter.reserve()
        response = await http.get(...)
        limiter.update_from_headers(response.headers)
    """

    def __init__(
        self,
        safety_margin: int = 10,
        ceiling: int = 5000,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the limiter.

        Args:
            safety_margin: Calls kept in reserve; reserve() waits once remaining <= margin.
            ceiling: Assumed quota until the server reports one.
            clock: Returns the current UTC time.
            sleep: Coroutine used to wait for the reset time.
        """
        self._margin = safety_margin
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._remaining = ceiling
        self._ceiling = ceiling
        self._reset_at = clock() + timedelta(hours=1)

    @classmethod
    def from_config(
        cls,
        config: RateLimitConfig,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> RateLimiter:
        """Build a limiter from the ``rate_limit`` configuration section."""
        return cls(safety_margin=config.safety_margin, ceiling=config.default_ceiling, clock=clock, sleep=sleep)

    @property
    def safety_margin(self) -> int:
        return self._margin

    def _try_acquire(self) -> float:
        """Decrement the quota if allowed; otherwise return seconds to wait."""
        with self._lock:
            now = self._clock()
            if self._remaining <= self._margin and now >= self._reset_at:
                # Window rolled over without fresh headers; assume it refilled
                self._remaining = self._ceiling
                self._reset_at = now + timedelta(hours=1)
            if self._remaining > self._margin:
                self._remaining -= 1
                return 0.0
            return max((self._reset_at - now).total_seconds(), 0.0)

    async def reserve(self) -> None:
        """Wait until a call may be made, then consume one unit of quota."""
        while True:
            wait_seconds = self._try_acquire()
            if wait_seconds <= 0:
                return
            logger.warning(
                "Rate limit reached (%d remaining, margin %d). Waiting %.1fs for reset",
                self._remaining,
                self._margin,
                wait_seconds,
            )
            await self._sleep(wait_seconds)

    def update(self, remaining: int, ceiling: int, reset_at: datetime) -> None:
        """Resynchronize from the server's authoritative values."""
        with self._lock:
            self._remaining = max(remaining, 0)
            self._ceiling = max(ceiling, 1)
            self._reset_at = reset_at
        logger.debug("Rate limit updated: %d/%d, resets at %s", remaining, ceiling, reset_at.isoformat())

    def update_from_headers(self, headers: Mapping[str, str]) -> bool:
        """Update from ``X-RateLimit-*`` response headers.

        Returns:
            True if the headers carried rate limit information.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        remaining = lowered.get("x-ratelimit-remaining")
        ceiling = lowered.get("x-ratelimit-limit")
        reset = lowered.get("x-ratelimit-reset")
        if remaining is None or ceiling is None or reset is None:
            return False
        try:
            reset_at = datetime.fromtimestamp(int(reset), tz=UTC)
            self.update(int(remaining), int(ceiling), reset_at)
        except ValueError:
            logger.warning("Ignoring malformed rate limit headers: %s/%s/%s", remaining, ceiling, reset)
            return False
        return True

    def exhaust(self) -> None:
        """Mark the quota as used up until the current reset time."""
        with self._lock:
            self._remaining = 0

    def status(self) -> RateLimitState:
        """Return a snapshot of the current quota."""
        with self._lock:
            return RateLimitState(remaining=self._remaining, ceiling=self._ceiling, reset_at=self._reset_at)

    def is_approaching_limit(self) -> bool:
        """Consider it approaching if less than 20% of the quota remains."""
        return self.status().remaining_percentage < 20.0
