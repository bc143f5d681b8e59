"""Tests for faultline/core/bus.py: ordering, isolation, background delivery."""

from __future__ import annotations

import asyncio

from faultline.core.bus import EventBus, Signal


class TestPublish:
    async def test_subscribers_called_in_order(self) -> None:
        bus = EventBus()
        calls: list[str] = []

        async def first(payload: object) -> None:
            calls.append(f"first:{payload}")

        def second(payload: object) -> None:
            calls.append(f"second:{payload}")

        bus.subscribe(Signal.ALERT_CREATED, first)
        bus.subscribe(Signal.ALERT_CREATED, second)
        await bus.publish(Signal.ALERT_CREATED, "a1")

        assert calls == ["first:a1", "second:a1"]

    async def test_failing_subscriber_is_isolated(self) -> None:
        bus = EventBus()
        received: list[object] = []

        async def broken(payload: object) -> None:
            raise RuntimeError("boom")

        async def healthy(payload: object) -> None:
            received.append(payload)

        bus.subscribe(Signal.ERROR_CAPTURED, broken)
        bus.subscribe(Signal.ERROR_CAPTURED, healthy)

        # Must not raise to the publisher.
        await bus.publish(Signal.ERROR_CAPTURED, 42)
        assert received == [42]

    async def test_unsubscribe(self) -> None:
        bus = EventBus()
        received: list[object] = []

        async def handler(payload: object) -> None:
            received.append(payload)

        bus.subscribe(Signal.ALERT_RESOLVED, handler)
        bus.unsubscribe(Signal.ALERT_RESOLVED, handler)
        bus.unsubscribe(Signal.ALERT_RESOLVED, handler)  # unknown is ignored
        await bus.publish(Signal.ALERT_RESOLVED, "x")

        assert received == []
        assert bus.subscriber_count(Signal.ALERT_RESOLVED) == 0

    async def test_other_signals_not_delivered(self) -> None:
        bus = EventBus()
        received: list[object] = []
        bus.subscribe(Signal.ALERT_CREATED, received.append)
        await bus.publish(Signal.ALERT_RESOLVED, "x")
        assert received == []


class TestPublishNowait:
    async def test_no_subscribers_returns_none(self) -> None:
        bus = EventBus()
        assert bus.publish_nowait(Signal.NEW_ERROR_GROUP, "g") is None

    async def test_drain_waits_for_delivery(self) -> None:
        bus = EventBus()
        received: list[object] = []

        async def slow(payload: object) -> None:
            await asyncio.sleep(0.01)
            received.append(payload)

        bus.subscribe(Signal.NEW_ERROR_GROUP, slow)
        task = bus.publish_nowait(Signal.NEW_ERROR_GROUP, "g1")
        assert task is not None
        assert received == []

        await bus.drain()
        assert received == ["g1"]

    async def test_failing_background_subscriber_does_not_break_drain(self) -> None:
        bus = EventBus()

        async def broken(payload: object) -> None:
            raise ValueError("bad")

        bus.subscribe(Signal.ERROR_ALERT, broken)
        bus.publish_nowait(Signal.ERROR_ALERT, None)
        await bus.drain()
