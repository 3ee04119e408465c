import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import QuotaExceededError

DAY_SECONDS = 86_400.0

logger = logging.getLogger("ghl_mcp.rate_limits")


class RateLimitWait(Exception):
    """Short window is full. Internal signal; acquire() waits it out."""

    def __init__(self, reset_in_seconds: float) -> None:
        super().__init__(f"Rate limit window full, resets in {reset_in_seconds:.3f}s")
        self.reset_in_seconds = reset_in_seconds


@dataclass
class LimitBucket:
    limit: int
    window_seconds: float
    count: int = 0
    window_start: float = field(default_factory=time.monotonic)

    def elapsed(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds

    def reset_if_elapsed(self, now: float) -> None:
        if self.elapsed(now):
            self.window_start = now
            self.count = 0

    def current_count(self, now: float) -> int:
        return 0 if self.elapsed(now) else self.count

    def reset_in(self, now: float) -> float:
        return max(0.0, self.window_seconds - (now - self.window_start))


class DualWindowRateLimiter:
    """
    Admission control for one location's credentials.

    Two counters: a short rolling window (burst cap) and a daily cap. A full
    short window suspends the caller until it resets; a full day fails with
    QuotaExceededError. Counters only ever reset as a whole.
    """

    def __init__(
        self,
        max_per_window: int = 100,
        window_seconds: float = 10.0,
        max_per_day: int = 200_000,
        safety_margin: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._safety_margin = float(safety_margin)
        now = clock()
        self._window = LimitBucket(limit=int(max_per_window), window_seconds=float(window_seconds), window_start=now)
        self._day = LimitBucket(limit=int(max_per_day), window_seconds=DAY_SECONDS, window_start=now)
        # Counter mutation happens without awaiting, so a plain lock also
        # covers callers on other threads.
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "DualWindowRateLimiter":
        cfg = config or {}
        return cls(
            max_per_window=int(cfg.get("max_per_window", 100)),
            window_seconds=float(cfg.get("window_seconds", 10.0)),
            max_per_day=int(cfg.get("max_per_day", 200_000)),
            **kwargs,
        )

    def _try_acquire(self) -> None:
        with self._lock:
            now = self._clock()
            self._day.reset_if_elapsed(now)
            if self._day.count >= self._day.limit:
                raise QuotaExceededError(self._day.limit)
            self._window.reset_if_elapsed(now)
            if self._window.count >= self._window.limit:
                raise RateLimitWait(self._window.reset_in(now) + self._safety_margin)
            self._window.count += 1
            self._day.count += 1

    async def acquire(self) -> None:
        while True:
            try:
                self._try_acquire()
                return
            except RateLimitWait as wait:
                delay = wait.reset_in_seconds
            logger.info(
                f"Rate limit window full, waiting {delay * 1000:.0f}ms",
                extra={"wait_ms": round(delay * 1000)},
            )
            await self._sleep(delay)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            now = self._clock()
            window_count = self._window.current_count(now)
            day_count = self._day.current_count(now)
            return {
                "window_remaining": self._window.limit - window_count,
                "day_remaining": self._day.limit - day_count,
                "day_count": day_count,
            }
