"""Alerting metrics over a time range."""

from __future__ import annotations

from collections import Counter

from pydantic import BaseModel, Field

from faultline.core.types import Alert, AlertStatus, NotificationStatus

HOUR_SECS = 3600.0
TOP_SOURCES = 10


class FrequencyBucket(BaseModel):
    timestamp: float
    count: int = 0


class SourceCount(BaseModel):
    source: str
    count: int


class ChannelDeliveryCounts(BaseModel):
    sent: int = 0
    delivered: int = 0
    failed: int = 0


class NotificationStats(BaseModel):
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    by_channel: dict[str, ChannelDeliveryCounts] = Field(default_factory=dict)


class AlertMetrics(BaseModel):
    """Aggregate alerting report. Latencies in seconds, rates in [0, 1]."""

    total_alerts: int = 0
    alerts_by_type: dict[str, int] = Field(default_factory=dict)
    alerts_by_severity: dict[str, int] = Field(default_factory=dict)
    alerts_by_status: dict[str, int] = Field(default_factory=dict)
    avg_acknowledgment_secs: float = 0.0
    avg_resolution_secs: float = 0.0
    alert_frequency: list[FrequencyBucket] = Field(default_factory=list)
    top_alert_sources: list[SourceCount] = Field(default_factory=list)
    escalation_rate: float = 0.0
    suppression_rate: float = 0.0
    notification_stats: NotificationStats = Field(default_factory=NotificationStats)


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def calculate_metrics(alerts: list[Alert]) -> AlertMetrics:
    total = len(alerts)
    if total == 0:
        return AlertMetrics()

    ack_latency = [
        a.acknowledgment.acknowledged_at - a.timestamp for a in alerts if a.acknowledgment
    ]
    res_latency = [a.resolution.resolved_at - a.timestamp for a in alerts if a.resolution]

    hourly: Counter[float] = Counter((a.timestamp // HOUR_SECS) * HOUR_SECS for a in alerts)
    sources = Counter(a.source for a in alerts)

    stats = NotificationStats()
    for alert in alerts:
        for record in alert.notifications:
            counts = stats.by_channel.setdefault(record.channel.value, ChannelDeliveryCounts())
            if record.status == NotificationStatus.SENT:
                stats.sent += 1
                counts.sent += 1
            elif record.status == NotificationStatus.DELIVERED:
                stats.delivered += 1
                counts.delivered += 1
            elif record.status == NotificationStatus.FAILED:
                stats.failed += 1
                counts.failed += 1

    return AlertMetrics(
        total_alerts=total,
        alerts_by_type=dict(Counter(a.type.value for a in alerts)),
        alerts_by_severity=dict(Counter(a.severity.value for a in alerts)),
        alerts_by_status=dict(Counter(a.status.value for a in alerts)),
        avg_acknowledgment_secs=_mean(ack_latency),
        avg_resolution_secs=_mean(res_latency),
        alert_frequency=[
            FrequencyBucket(timestamp=ts, count=hourly[ts]) for ts in sorted(hourly)
        ],
        top_alert_sources=[
            SourceCount(source=s, count=c) for s, c in sources.most_common(TOP_SOURCES)
        ],
        escalation_rate=sum(1 for a in alerts if a.escalation.level > 0) / total,
        suppression_rate=sum(1 for a in alerts if a.status == AlertStatus.SUPPRESSED) / total,
        notification_stats=stats,
    )
