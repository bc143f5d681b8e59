"""Alert creation, rule evaluation, lifecycle and metrics."""

from faultline.alerts.conditions import evaluate_condition, resolve_field, within_schedule
from faultline.alerts.manager import AlertManager, alert_fingerprint, max_escalation_level
from faultline.alerts.metrics import AlertMetrics, calculate_metrics

__all__ = [
    "AlertManager",
    "AlertMetrics",
    "alert_fingerprint",
    "calculate_metrics",
    "evaluate_condition",
    "max_escalation_level",
    "resolve_field",
    "within_schedule",
]
