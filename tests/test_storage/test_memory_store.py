"""Tests for faultline/storage/memory.py: copies, search, trends, retention."""

from __future__ import annotations

import pytest

from faultline.core.exceptions import PersistenceError
from faultline.core.types import (
    Alert,
    AlertFilter,
    AlertSeverity,
    AlertStatus,
    AlertType,
    ErrorEvent,
    ErrorFilter,
    ErrorGroup,
    ErrorLevel,
    EscalationInstance,
    EscalationStatus,
)
from faultline.storage.memory import MemoryAlertStore, MemoryErrorStore

DAY = 86400.0


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _event(**kw: object) -> ErrorEvent:
    defaults: dict[str, object] = {
        "fingerprint": "fp1",
        "timestamp": 1_700_000_000.0,
        "message": "connection refused",
        "type": "ConnectionError",
    }
    defaults.update(kw)
    return ErrorEvent(**defaults)  # type: ignore[arg-type]


def _alert(**kw: object) -> Alert:
    defaults: dict[str, object] = {
        "type": AlertType.ERROR,
        "severity": AlertSeverity.HIGH,
        "title": "DB down",
        "message": "connection refused",
        "fingerprint": "afp",
        "timestamp": 1_700_000_000.0,
    }
    defaults.update(kw)
    return Alert(**defaults)  # type: ignore[arg-type]


# ── Error store ────────────────────────────────────────────────


class TestMemoryErrorStore:
    async def test_reads_return_copies(self) -> None:
        store = MemoryErrorStore()
        event = _event()
        await store.store_error(event)

        fetched = await store.get_error(event.id)
        assert fetched is not None
        assert fetched == event
        assert fetched is not event
        fetched.metadata.tags.append("mutated")

        again = await store.get_error(event.id)
        assert again is not None
        assert again.metadata.tags == event.metadata.tags

    async def test_group_reads_return_copies(self) -> None:
        store = MemoryErrorStore()
        group = ErrorGroup(
            fingerprint="fp1",
            title="t",
            message="m",
            type="E",
            level=ErrorLevel.ERROR,
            first_seen=1.0,
            last_seen=1.0,
        )
        await store.update_error_group(group)

        fetched = await store.get_error_group("fp1")
        assert fetched is not None
        fetched.count = 99
        fetched.tags.append("mutated")

        again = await store.get_error_group("fp1")
        assert again is not None
        assert again.count == 1
        assert again.tags == []

    async def test_delete_error(self) -> None:
        store = MemoryErrorStore()
        event = _event()
        await store.store_error(event)

        await store.delete_error(event.id)
        await store.delete_error(event.id)

        assert await store.get_error(event.id) is None

    async def test_group_upsert_by_fingerprint(self) -> None:
        store = MemoryErrorStore()
        group = ErrorGroup(
            fingerprint="fp1",
            title="t",
            message="m",
            type="E",
            level=ErrorLevel.ERROR,
            first_seen=1.0,
            last_seen=1.0,
        )
        await store.update_error_group(group)
        group.count = 5
        await store.update_error_group(group)

        stored = await store.get_error_group("fp1")
        assert stored is not None
        assert stored.count == 5
        assert len(await store.get_error_groups()) == 1

    async def test_search_filters_sorts_and_paginates(self) -> None:
        store = MemoryErrorStore()
        for i in range(5):
            await store.store_error(_event(timestamp=1000.0 + i, message=f"timeout {i}"))
        await store.store_error(_event(timestamp=2000.0, message="disk full", type="OSError"))

        page, total = await store.search_errors(ErrorFilter(text="timeout", limit=2, offset=1))
        assert total == 5
        assert [e.timestamp for e in page] == [1003.0, 1002.0]

        by_type, total = await store.search_errors(ErrorFilter(type="OSError"))
        assert total == 1
        assert by_type[0].message == "disk full"

    async def test_trends_bucket_by_granularity(self) -> None:
        store = MemoryErrorStore()
        await store.store_error(_event(timestamp=3600.0 * 10 + 5, level=ErrorLevel.ERROR))
        await store.store_error(_event(timestamp=3600.0 * 10 + 50, level=ErrorLevel.WARNING))
        await store.store_error(_event(timestamp=3600.0 * 11 + 1, level=ErrorLevel.ERROR))

        points = await store.get_error_trends(0.0, 3600.0 * 12, "hour")
        assert [p.count for p in points] == [2, 1]
        assert points[0].timestamp == 36000.0
        assert points[0].levels == {"error": 1, "warning": 1}

    async def test_unknown_granularity_rejected(self) -> None:
        store = MemoryErrorStore()
        with pytest.raises(ValueError):
            await store.get_error_trends(0.0, 1.0, "fortnight")

    async def test_cleanup_drops_old_events(self) -> None:
        clock = FakeClock()
        store = MemoryErrorStore(clock)
        await store.store_error(_event(timestamp=clock.now - 40 * DAY))
        await store.store_error(_event(timestamp=clock.now - DAY))

        assert await store.cleanup(30) == 1
        remaining, total = await store.search_errors(ErrorFilter())
        assert total == 1

    async def test_unavailable_raises_persistence_error(self) -> None:
        store = MemoryErrorStore()
        store.available = False
        with pytest.raises(PersistenceError):
            await store.store_error(_event())


# ── Alert store ────────────────────────────────────────────────


class TestMemoryAlertStore:
    async def test_write_counters(self) -> None:
        store = MemoryAlertStore()
        alert = _alert()
        await store.store_alert(alert)
        await store.update_alert(alert)
        await store.update_alert(alert)
        assert store.writes["store_alert"] == 1
        assert store.writes["update_alert"] == 2

    async def test_search_alerts_by_status(self) -> None:
        store = MemoryAlertStore()
        await store.store_alert(_alert(status=AlertStatus.OPEN))
        await store.store_alert(_alert(status=AlertStatus.RESOLVED))

        page, total = await store.search_alerts(AlertFilter(status=AlertStatus.RESOLVED))
        assert total == 1
        assert page[0].status == AlertStatus.RESOLVED

    async def test_escalations_filtered_by_status(self) -> None:
        store = MemoryAlertStore()
        active = EscalationInstance(alert_id="a1", rule_id="r", max_level=2, started_at=0.0)
        done = EscalationInstance(
            alert_id="a2",
            rule_id="r",
            max_level=2,
            started_at=0.0,
            status=EscalationStatus.COMPLETED,
        )
        await store.save_escalation(active)
        await store.save_escalation(done)

        live = await store.get_escalations([EscalationStatus.ACTIVE, EscalationStatus.PAUSED])
        assert [i.alert_id for i in live] == ["a1"]
        assert len(await store.get_escalations()) == 2

    async def test_cleanup_drops_expired_suppressions(self) -> None:
        clock = FakeClock()
        store = MemoryAlertStore(clock)
        await store.save_suppression("old", clock.now - 1)
        await store.save_suppression("live", clock.now + 60)
        await store.store_alert(_alert(timestamp=clock.now - 100 * DAY))

        assert await store.cleanup(90) == 1
        assert await store.get_suppressions() == {"live": clock.now + 60}
