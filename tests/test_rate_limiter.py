"""Tests for the API quota tracker."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

from script_orchestrator.config import RateLimitConfig
from script_orchestrator.github.rate_limiter import RateLimiter, RateLimitState

if TYPE_CHECKING:
    from conftest import FakeClock


def _limiter(clock: FakeClock, margin: int = 10, ceiling: int = 5000) -> RateLimiter:
    return RateLimiter(safety_margin=margin, ceiling=ceiling, clock=clock, sleep=clock.sleep)


class TestReserve:
    def test_reserve_decrements_remaining(self, clock: FakeClock) -> None:
        limiter = _limiter(clock, ceiling=100)
        asyncio.run(limiter.reserve())
        assert limiter.status().remaining == 99
        assert clock.sleeps == []

    def test_blocks_until_reset_when_at_margin(self, clock: FakeClock) -> None:
        """update(1, 5000, T) with margin 10 makes the next reserve wait until T."""
        limiter = _limiter(clock)
        reset_at = clock.now + timedelta(seconds=30)
        limiter.update(1, 5000, reset_at)

        asyncio.run(limiter.reserve())

        assert clock.sleeps == [30.0]
        assert clock.now >= reset_at
        # Window assumed refilled, then one unit consumed
        assert limiter.status().remaining == 4999

    def test_calls_above_margin_pass_without_waiting(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        limiter.update(15, 5000, clock.now + timedelta(minutes=10))

        async def burst() -> None:
            await asyncio.gather(*(limiter.reserve() for _ in range(5)))

        asyncio.run(burst())
        assert clock.sleeps == []
        assert limiter.status().remaining == 10

    def test_exhaust_forces_wait(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        limiter.update(4000, 5000, clock.now + timedelta(seconds=12))
        limiter.exhaust()

        asyncio.run(limiter.reserve())
        assert clock.sleeps == [12.0]


class TestUpdateFromHeaders:
    def test_parses_rate_limit_headers(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        reset_epoch = int(clock.now.timestamp()) + 600
        updated = limiter.update_from_headers(
            {
                "X-RateLimit-Remaining": "4321",
                "X-RateLimit-Limit": "5000",
                "X-RateLimit-Reset": str(reset_epoch),
            }
        )
        state = limiter.status()
        assert updated is True
        assert state.remaining == 4321
        assert state.ceiling == 5000
        assert int(state.reset_at.timestamp()) == reset_epoch

    def test_missing_headers_leave_state(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        before = limiter.status()
        assert limiter.update_from_headers({"content-type": "application/json"}) is False
        assert limiter.status() == before

    def test_malformed_headers_ignored(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        headers = {"x-ratelimit-remaining": "many", "x-ratelimit-limit": "5000", "x-ratelimit-reset": "0"}
        assert limiter.update_from_headers(headers) is False
        assert limiter.status().remaining == 5000


class TestStatus:
    def test_remaining_percentage(self, clock: FakeClock) -> None:
        state = RateLimitState(remaining=250, ceiling=1000, reset_at=clock.now)
        assert state.remaining_percentage == 25.0

    def test_approaching_limit_below_twenty_percent(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        limiter.update(999, 5000, clock.now)
        assert limiter.is_approaching_limit() is True
        limiter.update(1000, 5000, clock.now)
        assert limiter.is_approaching_limit() is False


class TestFromConfig:
    def test_margin_and_ceiling_come_from_config(self, clock: FakeClock) -> None:
        config = RateLimitConfig(safety_margin=3, default_ceiling=5)
        limiter = RateLimiter.from_config(config, clock=clock, sleep=clock.sleep)

        assert limiter.safety_margin == 3
        assert limiter.status().ceiling == 5
        asyncio.run(limiter.reserve())
        asyncio.run(limiter.reserve())
        assert clock.sleeps == []
        # remaining 3 is at the margin, so the next call waits for the reset
        asyncio.run(limiter.reserve())
        assert len(clock.sleeps) == 1
