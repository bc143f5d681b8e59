"""Rolling per-channel minute/hour request counters."""

from __future__ import annotations

import time
from collections.abc import Callable

from faultline.core.types import RateLimits

MINUTE_SECS = 60.0
HOUR_SECS = 3600.0


class WindowCounter:
    """A counter that resets itself once its window has elapsed."""

    def __init__(self, window_secs: float, limit: int) -> None:
        self.window_secs = window_secs
        self.limit = limit
        self.count = 0
        self.reset_at = 0.0

    def _roll(self, now: float) -> None:
        if now >= self.reset_at:
            self.count = 0
            self.reset_at = now + self.window_secs

    def available(self, now: float) -> bool:
        self._roll(now)
        return self.count < self.limit

    def increment(self, now: float) -> None:
        self._roll(now)
        self.count += 1


class ChannelRateLimiter:
    """Minute and hour limits for one channel.

    ``allow()`` only checks; a send is counted with ``record()`` once it
    succeeds. Windows reset lazily on the next check after they expire.
    """

    def __init__(self, limits: RateLimits, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._minute = WindowCounter(MINUTE_SECS, limits.requests_per_minute)
        self._hour = WindowCounter(HOUR_SECS, limits.requests_per_hour)

    def allow(self) -> bool:
        now = self._clock()
        minute_ok = self._minute.available(now)
        hour_ok = self._hour.available(now)
        return minute_ok and hour_ok

    def record(self) -> None:
        now = self._clock()
        self._minute.increment(now)
        self._hour.increment(now)

    @property
    def minute_count(self) -> int:
        return self._minute.count

    @property
    def hour_count(self) -> int:
        return self._hour.count
