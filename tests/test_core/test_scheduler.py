"""Tests for faultline/core/scheduler.py: periodic tasks and keyed timers."""

from __future__ import annotations

import asyncio

from faultline.core.scheduler import PeriodicTask, TimerRegistry


class TestPeriodicTask:
    async def test_run_once_counts_runs(self) -> None:
        calls: list[int] = []

        async def work() -> None:
            calls.append(1)

        task = PeriodicTask("work", 60.0, work)
        await task.run_once()
        await task.run_once()
        assert task.runs == 2
        assert len(calls) == 2

    async def test_errors_are_swallowed_and_counted(self) -> None:
        def broken() -> None:
            raise RuntimeError("sweep failed")

        task = PeriodicTask("broken", 60.0, broken)
        await task.run_once()
        assert task.errors == 1
        assert task.runs == 0

    async def test_loop_keeps_running_after_failure(self) -> None:
        calls: list[int] = []

        def flaky() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run fails")

        task = PeriodicTask("flaky", 0.01, flaky, run_immediately=True)
        await task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        assert len(calls) >= 2
        assert task.errors == 1
        assert not task.running

    async def test_start_is_idempotent(self) -> None:
        task = PeriodicTask("idle", 60.0, lambda: None)
        await task.start()
        await task.start()
        assert task.running
        await task.stop()
        assert not task.running


class TestTimerRegistry:
    async def test_fires_once_and_deregisters(self) -> None:
        timers = TimerRegistry("test")
        fired: list[str] = []

        async def cb() -> None:
            fired.append("a")

        timers.schedule("a", 0.01, cb)
        assert "a" in timers
        await asyncio.sleep(0.05)

        assert fired == ["a"]
        assert "a" not in timers
        assert len(timers) == 0

    async def test_reschedule_replaces_pending(self) -> None:
        timers = TimerRegistry("test")
        fired: list[str] = []

        async def first() -> None:
            fired.append("first")

        async def second() -> None:
            fired.append("second")

        timers.schedule("k", 0.01, first)
        timers.schedule("k", 0.01, second)
        await asyncio.sleep(0.05)
        assert fired == ["second"]

    async def test_cancel(self) -> None:
        timers = TimerRegistry("test")
        fired: list[str] = []

        async def cb() -> None:
            fired.append("x")

        timers.schedule("x", 0.01, cb)
        assert timers.cancel("x") is True
        assert timers.cancel("x") is False
        await asyncio.sleep(0.03)
        assert fired == []

    async def test_callback_may_reschedule_itself(self) -> None:
        timers = TimerRegistry("test")
        fired: list[int] = []

        async def cb() -> None:
            fired.append(1)
            if len(fired) < 3:
                timers.schedule("loop", 0.0, cb)

        timers.schedule("loop", 0.0, cb)
        await asyncio.sleep(0.05)
        assert len(fired) == 3

    async def test_cancel_all(self) -> None:
        timers = TimerRegistry("test")

        async def cb() -> None:
            pass

        timers.schedule("a", 10, cb)
        timers.schedule("b", 10, cb)
        timers.cancel_all()
        assert len(timers) == 0
