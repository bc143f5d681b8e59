"""Tests for faultline/alerts/metrics.py."""

from __future__ import annotations

from faultline.alerts.metrics import calculate_metrics
from faultline.core.types import (
    Acknowledgment,
    Alert,
    AlertEscalation,
    AlertSeverity,
    AlertStatus,
    AlertType,
    ChannelType,
    NotificationRecord,
    NotificationStatus,
    Resolution,
)


def _alert(**kw: object) -> Alert:
    defaults: dict[str, object] = {
        "type": AlertType.ERROR,
        "severity": AlertSeverity.HIGH,
        "title": "t",
        "message": "m",
        "fingerprint": "fp",
        "timestamp": 3600.0,
    }
    defaults.update(kw)
    return Alert(**defaults)  # type: ignore[arg-type]


class TestCalculateMetrics:
    def test_empty(self) -> None:
        metrics = calculate_metrics([])
        assert metrics.total_alerts == 0
        assert metrics.escalation_rate == 0.0

    def test_aggregates(self) -> None:
        alerts = [
            _alert(
                status=AlertStatus.ACKNOWLEDGED,
                acknowledgment=Acknowledgment(acknowledged_by="a", acknowledged_at=3660.0),
                escalation=AlertEscalation(level=1, max_level=3),
                notifications=[
                    NotificationRecord(
                        id="n1",
                        channel=ChannelType.EMAIL,
                        recipient="a@x",
                        sent_at=3600.0,
                        status=NotificationStatus.SENT,
                    ),
                    NotificationRecord(
                        id="n2",
                        channel=ChannelType.CHAT,
                        recipient="#ops",
                        sent_at=3600.0,
                        status=NotificationStatus.FAILED,
                    ),
                ],
            ),
            _alert(
                status=AlertStatus.RESOLVED,
                source="api",
                timestamp=7300.0,
                resolution=Resolution(resolved_by="b", resolved_at=7600.0, resolution="fixed"),
            ),
            _alert(status=AlertStatus.SUPPRESSED, severity=AlertSeverity.LOW, timestamp=7400.0),
            _alert(timestamp=7500.0),
        ]
        metrics = calculate_metrics(alerts)

        assert metrics.total_alerts == 4
        assert metrics.alerts_by_severity == {"high": 3, "low": 1}
        assert metrics.alerts_by_status["suppressed"] == 1
        assert metrics.avg_acknowledgment_secs == 60.0
        assert metrics.avg_resolution_secs == 300.0
        assert [(b.timestamp, b.count) for b in metrics.alert_frequency] == [(3600.0, 1), (7200.0, 3)]
        assert metrics.top_alert_sources[0].source == "system"
        assert metrics.escalation_rate == 0.25
        assert metrics.suppression_rate == 0.25
        assert metrics.notification_stats.sent == 1
        assert metrics.notification_stats.failed == 1
        assert metrics.notification_stats.by_channel["chat"].failed == 1
