"""Aggregate error analytics and the 0-100 health score."""

from __future__ import annotations

from collections import Counter

from pydantic import BaseModel, Field

from faultline.core.types import (
    ErrorEvent,
    ErrorGroup,
    GroupSeverity,
    GroupStatus,
    Trend,
)

FIVE_MINUTES = 300.0
ONE_HOUR = 3600.0
ONE_DAY = 86400.0
TOP_GROUPS = 10


class TimeBucket(BaseModel):
    timestamp: float
    count: int = 0


class ErrorAnalytics(BaseModel):
    """Aggregate report over one time range. Durations in seconds."""

    start: float
    end: float
    total_errors: int = 0
    error_rate_per_min: float = 0.0
    new_errors: int = 0
    resolved_errors: int = 0
    top_error_groups: list[ErrorGroup] = Field(default_factory=list)
    errors_by_level: dict[str, int] = Field(default_factory=dict)
    errors_by_type: dict[str, int] = Field(default_factory=dict)
    errors_by_workflow: dict[str, int] = Field(default_factory=dict)
    errors_by_time: list[TimeBucket] = Field(default_factory=list)
    mttr_secs: float = 0.0
    mtbf_secs: float = 0.0
    health_score: float = 100.0


def health_score(groups: list[ErrorGroup], total_errors: int) -> float:
    """Start at 100 and subtract penalties, clamped to [0, 100].

    - up to 30 for raw error volume (0.1 per error)
    - 10 per open critical group
    - up to 20 for open groups (2 each)
    - 5 per open group trending upward
    """
    score = 100.0
    score -= min(30.0, total_errors * 0.1)

    open_groups = [g for g in groups if g.status == GroupStatus.OPEN]
    critical = sum(1 for g in open_groups if g.statistics.severity == GroupSeverity.CRITICAL)
    rising = sum(1 for g in open_groups if g.statistics.trend == Trend.INCREASING)

    score -= critical * 10.0
    score -= min(20.0, len(open_groups) * 2.0)
    score -= rising * 5.0
    return max(0.0, min(100.0, score))


def bucket_events(events: list[ErrorEvent], start: float, end: float) -> list[TimeBucket]:
    """Histogram over [start, end]: 5-minute buckets up to a day, hourly beyond."""
    size = ONE_HOUR if end - start > ONE_DAY else FIVE_MINUTES
    counts: dict[float, int] = {}
    t = start
    while t <= end:
        counts[(t // size) * size] = 0
        t += size
    for event in events:
        key = (event.timestamp // size) * size
        counts[key] = counts.get(key, 0) + 1
    return [TimeBucket(timestamp=k, count=counts[k]) for k in sorted(counts)]


def mean_time_to_resolution(groups: list[ErrorGroup]) -> float:
    spans = [
        g.resolved_at - g.first_seen
        for g in groups
        if g.status == GroupStatus.RESOLVED and g.resolved_at is not None
    ]
    return sum(spans) / len(spans) if spans else 0.0


def mean_time_between_failures(events: list[ErrorEvent]) -> float:
    stamps = sorted(e.timestamp for e in events)
    if len(stamps) < 2:
        return 0.0
    gaps = [b - a for a, b in zip(stamps, stamps[1:])]
    return sum(gaps) / len(gaps)


def compute_analytics(
    events: list[ErrorEvent],
    groups: list[ErrorGroup],
    start: float,
    end: float,
) -> ErrorAnalytics:
    """Build the analytics report for events in [start, end] and all known groups."""
    minutes = max((end - start) / 60.0, 1.0)
    by_workflow = Counter(e.context.workflow_id for e in events if e.context.workflow_id)

    return ErrorAnalytics(
        start=start,
        end=end,
        total_errors=len(events),
        error_rate_per_min=len(events) / minutes,
        new_errors=sum(1 for g in groups if g.first_seen >= start),
        resolved_errors=sum(1 for g in groups if g.status == GroupStatus.RESOLVED),
        top_error_groups=sorted(groups, key=lambda g: g.count, reverse=True)[:TOP_GROUPS],
        errors_by_level=dict(Counter(e.level.value for e in events)),
        errors_by_type=dict(Counter(e.type for e in events)),
        errors_by_workflow=dict(by_workflow),
        errors_by_time=bucket_events(events, start, end),
        mttr_secs=mean_time_to_resolution(groups),
        mtbf_secs=mean_time_between_failures(events),
        health_score=health_score(groups, len(events)),
    )
