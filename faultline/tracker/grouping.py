"""Aggregation of error events into deduplicated ErrorGroups."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from faultline.core.exceptions import ValidationError
from faultline.core.types import (
    DayBucket,
    ErrorEvent,
    ErrorGroup,
    ErrorLevel,
    GroupSeverity,
    GroupStatistics,
    HourBucket,
    Trend,
)
from faultline.storage.base import ErrorStore
from faultline.tracker.fingerprint import extract_frames, frame_location

logger = structlog.get_logger(__name__)

MAX_DAY_BUCKETS = 30
TREND_UP_RATIO = 1.5
TREND_DOWN_RATIO = 0.5


_SEVERITY_RANK: dict[GroupSeverity, int] = {
    GroupSeverity.LOW: 1,
    GroupSeverity.MEDIUM: 2,
    GroupSeverity.HIGH: 3,
    GroupSeverity.CRITICAL: 4,
}


# ── Pure helpers ────────────────────────────────────────────────


def group_title(event: ErrorEvent) -> str:
    """Human title: type, where it happened, and the first frame."""
    title = event.type
    where = event.context.workflow_name or event.context.node_name
    if where:
        title += f" in {where}"
    if event.stack_trace:
        frames = extract_frames(event.stack_trace, limit=1)
        loc = frame_location(frames[0]) if frames else None
        if loc:
            title += f" at {loc}"
    return title


def compute_severity(event: ErrorEvent) -> GroupSeverity:
    if event.level in (ErrorLevel.FATAL, ErrorLevel.CRITICAL):
        return GroupSeverity.CRITICAL
    if event.level == ErrorLevel.ERROR:
        if event.context.workflow_id or event.context.node_id:
            return GroupSeverity.HIGH
        return GroupSeverity.MEDIUM
    return GroupSeverity.LOW


def classify_trend(days: list[DayBucket]) -> Trend:
    """Compare the mean of the newest 3 day buckets with the previous 3."""
    recent = days[:3]
    older = days[3:6]
    if not recent or not older:
        return Trend.STABLE
    recent_avg = sum(d.count for d in recent) / len(recent)
    older_avg = sum(d.count for d in older) / len(older)
    if recent_avg > older_avg * TREND_UP_RATIO:
        return Trend.INCREASING
    if recent_avg < older_avg * TREND_DOWN_RATIO:
        return Trend.DECREASING
    return Trend.STABLE


def record_occurrence(stats: GroupStatistics, timestamp: float) -> None:
    """Bump the UTC day/hour buckets for *timestamp* and reclassify the trend."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    date = dt.strftime("%Y-%m-%d")

    day = next((d for d in stats.occurrences_by_day if d.date == date), None)
    if day is None:
        day = DayBucket(date=date)
        stats.occurrences_by_day.append(day)
        stats.occurrences_by_day.sort(key=lambda d: d.date, reverse=True)
        del stats.occurrences_by_day[MAX_DAY_BUCKETS:]
    day.count += 1

    hour = next((h for h in stats.occurrences_by_hour if h.hour == dt.hour), None)
    if hour is None:
        hour = HourBucket(hour=dt.hour)
        stats.occurrences_by_hour.append(hour)
        stats.occurrences_by_hour.sort(key=lambda h: h.hour)
    hour.count += 1

    stats.trend = classify_trend(stats.occurrences_by_day)


def new_group(event: ErrorEvent) -> ErrorGroup:
    """Seed a group from the first occurrence of a fingerprint."""
    group = ErrorGroup(
        fingerprint=event.fingerprint,
        title=group_title(event),
        message=event.message,
        type=event.type,
        level=event.level,
        first_seen=event.timestamp,
        last_seen=event.timestamp,
        count=1,
        user_ids=[event.context.user_id] if event.context.user_id else [],
        tags=list(dict.fromkeys(event.metadata.tags)),
        environments=[event.context.environment],
        platforms=[event.context.platform] if event.context.platform else [],
        affected_workflows=[event.context.workflow_id] if event.context.workflow_id else [],
        statistics=GroupStatistics(severity=compute_severity(event)),
        samples=[event],
    )
    record_occurrence(group.statistics, event.timestamp)
    return group


def _add_unique(items: list[str], value: str | None) -> None:
    if value and value not in items:
        items.append(value)


def apply_occurrence(group: ErrorGroup, event: ErrorEvent, max_samples: int = 10) -> None:
    """Fold a repeat occurrence into *group* in place."""
    # Concurrent producers may deliver events out of order.
    group.last_seen = max(group.last_seen, event.timestamp)
    group.first_seen = min(group.first_seen, event.timestamp)
    group.count += 1

    _add_unique(group.user_ids, event.context.user_id)
    _add_unique(group.environments, event.context.environment)
    _add_unique(group.platforms, event.context.platform)
    _add_unique(group.affected_workflows, event.context.workflow_id)
    for tag in event.metadata.tags:
        _add_unique(group.tags, tag)

    if event.level.rank > group.level.rank:
        group.level = event.level
    severity = compute_severity(event)
    if _SEVERITY_RANK[severity] > _SEVERITY_RANK[group.statistics.severity]:
        group.statistics.severity = severity

    group.samples.insert(0, event)
    del group.samples[max_samples:]

    record_occurrence(group.statistics, event.timestamp)


# ── Grouper ─────────────────────────────────────────────────────


class ErrorGrouper:
    """Owns the in-memory group index and serialises updates per fingerprint.

    Every read-modify-write on a group runs under that fingerprint's lock,
    so two concurrent first occurrences create exactly one group.
    Lookups hit memory first and fall back to the store.
    """

    def __init__(self, store: ErrorStore, max_samples: int = 10) -> None:
        self._store = store
        self._max_samples = max_samples
        self._groups: dict[str, ErrorGroup] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._groups)

    def cached(self, fingerprint: str) -> ErrorGroup | None:
        return self._groups.get(fingerprint)

    def cached_groups(self) -> list[ErrorGroup]:
        return list(self._groups.values())

    def _lock(self, fingerprint: str) -> asyncio.Lock:
        lock = self._locks.get(fingerprint)
        if lock is None:
            lock = self._locks[fingerprint] = asyncio.Lock()
        return lock

    async def _load(self, fingerprint: str) -> ErrorGroup | None:
        group = self._groups.get(fingerprint)
        if group is None:
            group = await self._store.get_error_group(fingerprint)
        return group

    async def add(self, event: ErrorEvent) -> tuple[ErrorGroup, bool]:
        """Group *event*. Returns ``(group, created)``."""
        async with self._lock(event.fingerprint):
            existing = await self._load(event.fingerprint)
            if existing is None:
                group = new_group(event)
            else:
                group = existing.model_copy(deep=True)
                apply_occurrence(group, event, self._max_samples)
            await self._store.update_error_group(group)
            self._groups[group.fingerprint] = group
            return group.model_copy(deep=True), existing is None

    async def update(
        self,
        fingerprint: str,
        mutate: Callable[[ErrorGroup], None],
    ) -> ErrorGroup:
        """Apply *mutate* to a stored group and persist it.

        Raises:
            ValidationError: No group exists for *fingerprint*.
        """
        async with self._lock(fingerprint):
            existing = await self._load(fingerprint)
            if existing is None:
                raise ValidationError(f"Error group not found: {fingerprint}")
            group = existing.model_copy(deep=True)
            mutate(group)
            await self._store.update_error_group(group)
            self._groups[fingerprint] = group
            return group.model_copy(deep=True)

    def evict_before(self, cutoff: float) -> int:
        """Drop cached groups last seen before *cutoff*. Returns evicted count."""
        stale = [fp for fp, g in self._groups.items() if g.last_seen < cutoff]
        for fp in stale:
            del self._groups[fp]
            lock = self._locks.get(fp)
            if lock is not None and not lock.locked():
                del self._locks[fp]
        if stale:
            logger.debug("error_groups_evicted", count=len(stale))
        return len(stale)
