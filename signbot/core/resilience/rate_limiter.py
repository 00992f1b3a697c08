"""
Fixed-Window Rate Limiter with a Cardinality Guard

Per-key (client IP or phone number) request counting for admission control.

Algorithm (per key):
1. No window, or the window is older than ``window_seconds``: start a new
   window with count 1 (allowed, remaining = limit - 1)
2. Otherwise increment the count; allowed while count <= limit
3. ``reset_after`` = window_start + window_seconds - now

Memory protection:
- At most ``max_entries`` keys are tracked. A new key arriving at capacity
  triggers an eviction sweep of expired windows. If the map is still full
  the new key is rejected (fail closed) instead of growing without bound.
- A background task sweeps expired windows every ``sweep_interval``.

``check_and_consume`` never awaits, so its read-decide-write sequence is
atomic under asyncio. Counters are per instance.
"""

import asyncio
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from signbot.core.config.settings import Settings
from signbot.core.logging.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of ``RateLimiter.check_and_consume``."""

    allowed: bool
    remaining: int
    reset_after: float
    limit: int


@dataclass
class RateWindow:
    window_start: float
    count: int


class RateLimiter:
    """
    Bounded fixed-window rate limiter.

    Args:
        limit: Requests admitted per window
        window_seconds: Window length
        max_entries: Maximum number of tracked keys
        sweep_interval: Seconds between background sweeps
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        limit: int = 100,
        window_seconds: float = 60.0,
        max_entries: int = 10000,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1 or max_entries < 1:
            raise ValueError("limit and max_entries must be >= 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._sweep_task: asyncio.Task | None = None
        self._rejected_requests = 0
        self._rejected_new_keys = 0

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.monotonic) -> "RateLimiter":
        rl = settings.rate_limit
        return cls(
            limit=rl.RATE_LIMIT_REQUESTS,
            window_seconds=rl.RATE_LIMIT_WINDOW_SECONDS,
            max_entries=rl.RATE_LIMIT_MAX_ENTRIES,
            sweep_interval=rl.RATE_LIMIT_SWEEP_INTERVAL,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._windows)

    def check_and_consume(self, key: str) -> RateLimitDecision:
        """
        Count one request for ``key`` and decide whether it is admitted.

        STAGE-3.1: Admission check
        """
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now - window.window_start >= self.window_seconds:
            if window is None and len(self._windows) >= self.max_entries:
                self.sweep(now)
                if len(self._windows) >= self.max_entries:
                    self._rejected_new_keys += 1
                    self._rejected_requests += 1
                    logger.warning(
                        "Rate limiter at capacity, rejecting new key",
                        stage="3.1",
                        tracked_keys=len(self._windows),
                        max_entries=self.max_entries,
                    )
                    return RateLimitDecision(
                        allowed=False, remaining=0, reset_after=self.window_seconds, limit=self.limit
                    )
            self._windows[key] = RateWindow(window_start=now, count=1)
            return RateLimitDecision(
                allowed=True, remaining=self.limit - 1, reset_after=self.window_seconds, limit=self.limit
            )

        window.count += 1
        allowed = window.count <= self.limit
        if not allowed:
            self._rejected_requests += 1
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, self.limit - window.count),
            reset_after=window.window_start + self.window_seconds - now,
            limit=self.limit,
        )

    def sweep(self, now: float | None = None) -> int:
        """
        Drop expired windows.

        STAGE-3.2: Eviction sweep

        Returns:
            Number of windows removed
        """
        now = self._clock() if now is None else now
        expired = [
            key for key, window in self._windows.items()
            if now - window.window_start >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)

    def get_stats(self) -> dict[str, Any]:
        return {
            "limit": self.limit,
            "window_seconds": self.window_seconds,
            "tracked_keys": len(self._windows),
            "max_entries": self.max_entries,
            "rejected_requests": self._rejected_requests,
            "rejected_new_keys": self._rejected_new_keys,
            "sweeper_running": self._sweep_task is not None and not self._sweep_task.done(),
        }

    async def start(self) -> None:
        """Start the background sweep task (idempotent)."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Rate limit sweeper started", stage="3.3", interval=self.sweep_interval)

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None
        logger.info("Rate limit sweeper stopped", stage="3.3")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug(
                    "Rate limit windows evicted",
                    stage="3.2",
                    removed=removed,
                    tracked_keys=len(self._windows),
                )
