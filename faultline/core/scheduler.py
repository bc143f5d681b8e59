"""Periodic background work and one-shot timers on the asyncio loop."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

PeriodicFn = Callable[[], Awaitable[Any] | Any]


class PeriodicTask:
    """Runs *fn* every *interval_secs* until stopped.

    Failures are logged and the loop keeps going.

    Usage::

        sweep = PeriodicTask("retry_sweep", 30.0, service.process_retry_queue)
        await sweep.start()
        # ...
        await sweep.stop()
    """

    def __init__(
        self,
        name: str,
        interval_secs: float,
        fn: PeriodicFn,
        run_immediately: bool = False,
    ) -> None:
        self._name = name
        self._interval_secs = interval_secs
        self._fn = fn
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._runs = 0
        self._errors = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._running

    @property
    def runs(self) -> int:
        return self._runs

    @property
    def errors(self) -> int:
        return self._errors

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self._name)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> None:
        """Invoke *fn* once with the loop's error isolation."""
        try:
            result = self._fn()
            if asyncio.iscoroutine(result):
                await result
            self._runs += 1
        except asyncio.CancelledError:
            raise
        except Exception:
            self._errors += 1
            logger.exception("periodic_task_error", task=self._name, errors=self._errors)

    # ── Internal loop ───────────────────────────────────────────

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval_secs)
        while self._running:
            await self.run_once()
            await asyncio.sleep(self._interval_secs)


class TimerRegistry:
    """Keyed one-shot timers: at most one pending callback per key.

    Scheduling a key replaces its pending timer; ``cancel`` drops it.
    The callback runs with its own timer already deregistered, so it may
    schedule the same key again.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._timers: dict[str, asyncio.Task[None]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._timers

    def __len__(self) -> int:
        return len(self._timers)

    def schedule(
        self,
        key: str,
        delay_secs: float,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        self.cancel(key)
        self._timers[key] = asyncio.get_running_loop().create_task(
            self._fire(key, max(0.0, delay_secs), callback),
        )

    def cancel(self, key: str) -> bool:
        task = self._timers.pop(key, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._timers):
            self.cancel(key)

    async def _fire(
        self,
        key: str,
        delay_secs: float,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            await asyncio.sleep(delay_secs)
        except asyncio.CancelledError:
            return
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        try:
            await callback()
        except Exception:
            logger.exception("timer_callback_error", registry=self._name, key=key)
