"""Tests for faultline/tracker/tracker.py: capture, grouping, built-in alerts."""

from __future__ import annotations

import pytest

from faultline.core.bus import EventBus, Signal
from faultline.core.config import TrackerConfig
from faultline.core.exceptions import PersistenceError, ValidationError
from faultline.core.types import (
    AlertSeverity,
    AlertSpec,
    ErrorFilter,
    ErrorGroup,
    ErrorLevel,
    GroupStatus,
)
from faultline.storage.memory import MemoryErrorStore
from faultline.tracker.tracker import ErrorTracker

STACK_A = """Traceback (most recent call last):
  File "app/handlers.py", line 12, in handle
  File "app/client.py", line 40, in fetch
  File "app/session.py", line 7, in get
"""
STACK_B = STACK_A.replace("line 12", "line 13").replace("line 7", "line 70")


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class Recorder:
    """Collects payloads published on the bus."""

    def __init__(self, bus: EventBus, *signals: Signal) -> None:
        self.payloads: dict[Signal, list[object]] = {s: [] for s in signals}
        for s in signals:
            bus.subscribe(s, self.payloads[s].append)

    def __getitem__(self, signal: Signal) -> list[object]:
        return self.payloads[signal]


class GroupWriteFailingStore(MemoryErrorStore):
    """Accepts events but rejects every group write."""

    async def update_error_group(self, group: ErrorGroup) -> None:
        raise PersistenceError("group table unavailable")


def _tracker(**cfg: object) -> tuple[ErrorTracker, MemoryErrorStore, EventBus, FakeClock]:
    clock = FakeClock()
    store = MemoryErrorStore(clock)
    bus = EventBus()
    tracker = ErrorTracker(store, bus, TrackerConfig(**cfg), clock)  # type: ignore[arg-type]
    return tracker, store, bus, clock


# ── Capture & grouping ─────────────────────────────────────────


class TestCapture:
    async def test_capture_stores_event(self) -> None:
        tracker, store, bus, _ = _tracker()
        error_id = await tracker.capture_error(ValueError("bad input"))
        await bus.drain()

        event = await store.get_error(error_id)
        assert event is not None
        assert event.type == "ValueError"
        assert event.message == "bad input"
        assert event.context.environment == "development"
        assert tracker.get_recent_errors()[0].id == error_id

    async def test_line_number_changes_group_together(self) -> None:
        tracker, store, _, _ = _tracker()
        await tracker.capture_error("timeout", stack_trace=STACK_A, error_type="TimeoutError")
        await tracker.capture_error("timeout", stack_trace=STACK_B, error_type="TimeoutError")

        groups = await store.get_error_groups()
        assert len(groups) == 1
        assert groups[0].count == 2

    async def test_message_change_creates_new_group(self) -> None:
        tracker, store, _, _ = _tracker()
        first = await tracker.capture_error("timeout after 5s", error_type="TimeoutError")
        second = await tracker.capture_error("timeout after 9s", error_type="TimeoutError")

        a = await store.get_error(first)
        b = await store.get_error(second)
        assert a is not None and b is not None
        assert a.fingerprint != b.fingerprint
        assert len(await store.get_error_groups()) == 2

    async def test_store_failure_propagates(self) -> None:
        tracker, store, bus, _ = _tracker()
        captured = Recorder(bus, Signal.ERROR_CAPTURED)
        store.available = False

        with pytest.raises(PersistenceError):
            await tracker.capture_error("boom")
        await bus.drain()

        assert tracker.get_recent_errors() == []
        assert captured[Signal.ERROR_CAPTURED] == []

    async def test_group_write_failure_rolls_back_event(self) -> None:
        clock = FakeClock()
        store = GroupWriteFailingStore(clock)
        bus = EventBus()
        tracker = ErrorTracker(store, bus, TrackerConfig(), clock)
        captured = Recorder(bus, Signal.ERROR_CAPTURED)

        with pytest.raises(PersistenceError):
            await tracker.capture_error("boom")
        await bus.drain()

        events, total = await store.search_errors(ErrorFilter())
        assert total == 0
        assert events == []
        assert await store.get_error_groups() == []
        assert tracker.get_recent_errors() == []
        assert captured[Signal.ERROR_CAPTURED] == []

    async def test_signals_published(self) -> None:
        tracker, _, bus, _ = _tracker()
        rec = Recorder(bus, Signal.ERROR_CAPTURED, Signal.NEW_ERROR_GROUP, Signal.ERROR_GROUP_UPDATED)

        await tracker.capture_error("boom")
        await tracker.capture_error("boom")
        await bus.drain()

        assert len(rec[Signal.ERROR_CAPTURED]) == 2
        assert len(rec[Signal.NEW_ERROR_GROUP]) == 1
        assert isinstance(rec[Signal.NEW_ERROR_GROUP][0], ErrorGroup)
        assert len(rec[Signal.ERROR_GROUP_UPDATED]) == 1

    async def test_breadcrumbs_attached_newest_first(self) -> None:
        tracker, store, _, clock = _tracker(breadcrumbs_per_event=2)
        tracker.add_breadcrumb("http", "GET /a")
        clock.advance(1)
        tracker.add_breadcrumb("http", "GET /b")
        clock.advance(1)
        tracker.add_breadcrumb("db", "SELECT 1")

        error_id = await tracker.capture_error("boom")
        event = await store.get_error(error_id)
        assert event is not None
        assert [c.message for c in event.breadcrumbs] == ["SELECT 1", "GET /b"]
        assert len(tracker.get_breadcrumbs()) == 3

    async def test_search_passthrough(self) -> None:
        tracker, _, _, _ = _tracker()
        await tracker.capture_error("disk full", level=ErrorLevel.CRITICAL)
        await tracker.capture_error("cache miss", level=ErrorLevel.WARNING)

        events, total = await tracker.search_errors(ErrorFilter(level=ErrorLevel.CRITICAL))
        assert total == 1
        assert events[0].message == "disk full"


# ── Built-in alerts ────────────────────────────────────────────


class TestBuiltInAlerts:
    async def test_critical_error_raises_critical_alert(self) -> None:
        tracker, _, bus, _ = _tracker()
        rec = Recorder(bus, Signal.ERROR_ALERT)

        await tracker.capture_error("db gone", level=ErrorLevel.FATAL)
        await bus.drain()

        severities = [spec.severity for spec in rec[Signal.ERROR_ALERT]]  # type: ignore[attr-defined]
        assert AlertSeverity.CRITICAL in severities
        assert AlertSeverity.MEDIUM in severities  # also a new group

    async def test_repeat_error_raises_no_new_group_alert(self) -> None:
        tracker, _, bus, _ = _tracker()
        rec = Recorder(bus, Signal.ERROR_ALERT)

        await tracker.capture_error("boom")
        await tracker.capture_error("boom")
        await bus.drain()

        assert len(rec[Signal.ERROR_ALERT]) == 1

    async def test_rate_spike(self) -> None:
        tracker, _, bus, clock = _tracker(spike_window_secs=60.0, spike_multiplier=5.0)
        rec = Recorder(bus, Signal.ERROR_ALERT)

        await tracker.capture_error("background noise")
        clock.advance(90)
        for i in range(6):
            await tracker.capture_error("burst")
        await bus.drain()

        spikes = [
            s for s in rec[Signal.ERROR_ALERT]
            if isinstance(s, AlertSpec) and s.severity == AlertSeverity.HIGH
        ]
        assert len(spikes) == 1
        assert spikes[0].source == "error_tracker"

    async def test_failing_check_is_isolated(self) -> None:
        tracker, store, bus, _ = _tracker()
        rec = Recorder(bus, Signal.ERROR_ALERT)

        def broken(event: object) -> None:
            raise RuntimeError("check failed")

        tracker._critical_alert = broken  # type: ignore[method-assign]
        error_id = await tracker.capture_error("boom", level=ErrorLevel.CRITICAL)
        await bus.drain()

        assert await store.get_error(error_id) is not None
        # The new-group check still ran.
        assert len(rec[Signal.ERROR_ALERT]) == 1

    async def test_alerts_disabled(self) -> None:
        tracker, _, bus, _ = _tracker(real_time_alerts=False)
        rec = Recorder(bus, Signal.ERROR_ALERT)
        await tracker.capture_error("boom", level=ErrorLevel.FATAL)
        await bus.drain()
        assert rec[Signal.ERROR_ALERT] == []


# ── Group lifecycle & housekeeping ─────────────────────────────


class TestGroupLifecycle:
    async def test_resolve_group(self) -> None:
        tracker, store, bus, clock = _tracker()
        rec = Recorder(bus, Signal.ERROR_GROUP_UPDATED)
        error_id = await tracker.capture_error("boom")
        event = await store.get_error(error_id)
        assert event is not None

        group = await tracker.update_error_group_status(
            event.fingerprint, GroupStatus.RESOLVED, resolved_by="alice", resolution="patched"
        )
        await bus.drain()

        assert group.status == GroupStatus.RESOLVED
        assert group.resolved_at == clock.now
        stored = await tracker.get_error_group(event.fingerprint)
        assert stored is not None
        assert stored.resolved_by == "alice"
        assert any(getattr(u, "status", None) == GroupStatus.RESOLVED for u in rec[Signal.ERROR_GROUP_UPDATED])

    async def test_unknown_group_raises(self) -> None:
        tracker, _, _, _ = _tracker()
        with pytest.raises(ValidationError):
            await tracker.assign_error_group("nope", "bob")

    async def test_assign_group(self) -> None:
        tracker, store, _, _ = _tracker()
        error_id = await tracker.capture_error("boom")
        event = await store.get_error(error_id)
        assert event is not None
        group = await tracker.assign_error_group(event.fingerprint, "bob")
        assert group.assigned_to == "bob"

    async def test_cleanup_prunes_buffers(self) -> None:
        tracker, _, _, clock = _tracker(retention_days=1)
        await tracker.capture_error("old")
        tracker.add_breadcrumb("nav", "old crumb")
        clock.advance(2 * 86400)
        await tracker.capture_error("new")

        removed = await tracker.cleanup()
        assert removed == 1
        assert [e.message for e in tracker.get_recent_errors()] == ["new"]
        assert tracker.get_breadcrumbs() == []

    async def test_stats_and_analytics(self) -> None:
        tracker, _, bus, _ = _tracker()
        rec = Recorder(bus, Signal.METRICS_UPDATED)
        await tracker.capture_error("boom", level=ErrorLevel.CRITICAL)

        stats = tracker.get_stats()
        assert stats["captured"] == 1
        assert stats["error_groups"] == 1

        analytics = await tracker.refresh_analytics()
        assert analytics.total_errors == 1
        assert 0.0 <= analytics.health_score <= 100.0
        assert rec[Signal.METRICS_UPDATED] == [analytics]
