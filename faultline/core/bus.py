"""In-process publish/subscribe bus connecting the pipeline components."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

# Type alias for bus subscribers
SignalCallback = Callable[[Any], Awaitable[None] | None]


class Signal(StrEnum):
    """Every signal published on the bus."""

    ERROR_CAPTURED = "error_captured"
    NEW_ERROR_GROUP = "new_error_group"
    ERROR_GROUP_UPDATED = "error_group_updated"
    ERROR_GROUP_ASSIGNED = "error_group_assigned"
    BREADCRUMB_ADDED = "breadcrumb_added"
    ERROR_ALERT = "error_alert"
    ALERT_CREATED = "alert_created"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_RESOLVED = "alert_resolved"
    ALERT_SUPPRESSED = "alert_suppressed"
    ALERT_ESCALATED = "alert_escalated"
    ESCALATION_REQUESTED = "escalation_requested"
    ESCALATION_STARTED = "escalation_started"
    ESCALATION_TRIGGERED = "escalation_triggered"
    ESCALATION_STOPPED = "escalation_stopped"
    ESCALATION_COMPLETED = "escalation_completed"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_DELIVERED = "notification_delivered"
    NOTIFICATION_FAILED = "notification_failed"
    METRICS_UPDATED = "metrics_updated"


class EventBus:
    """Routes signals to subscribers.

    - ``publish()`` awaits every subscriber in registration order.
    - ``publish_nowait()`` dispatches on a background task so the caller
      never waits on slow subscribers; ``drain()`` waits for those tasks.
    - A failing subscriber is logged and never prevents delivery to the
      others or propagates to the publisher.

    Usage::

        bus = EventBus()
        bus.subscribe(Signal.ALERT_CREATED, on_alert_created)
        await bus.publish(Signal.ALERT_CREATED, alert)
    """

    def __init__(self) -> None:
        self._subscribers: dict[Signal, list[SignalCallback]] = defaultdict(list)
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, signal: Signal, callback: SignalCallback) -> None:
        """Register *callback* for *signal*."""
        self._subscribers[signal].append(callback)

    def unsubscribe(self, signal: Signal, callback: SignalCallback) -> None:
        """Remove *callback*; unknown callbacks are ignored."""
        callbacks = self._subscribers.get(signal, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def subscriber_count(self, signal: Signal) -> int:
        return len(self._subscribers.get(signal, []))

    async def publish(self, signal: Signal, payload: Any = None) -> None:
        """Deliver *payload* to every subscriber of *signal*."""
        for cb in list(self._subscribers.get(signal, [])):
            try:
                result = cb(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "signal_callback_error",
                    signal=signal.value,
                    callback=getattr(cb, "__qualname__", repr(cb)),
                )

    def publish_nowait(self, signal: Signal, payload: Any = None) -> asyncio.Task[None] | None:
        """Schedule delivery without waiting. Returns None if nobody listens."""
        if not self._subscribers.get(signal):
            return None
        task = asyncio.get_running_loop().create_task(self.publish(signal, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait until every ``publish_nowait`` delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        """Drop all subscribers (outstanding deliveries still complete)."""
        self._subscribers.clear()
