"""Durable store contracts consumed by the pipeline.

Implementations must treat every write as an idempotent upsert keyed by
fingerprint or id, and raise ``PersistenceError`` when the backend is
unavailable.
"""

from __future__ import annotations

import abc
from collections.abc import Iterable

from faultline.core.types import (
    Alert,
    AlertFilter,
    AlertRule,
    ErrorEvent,
    ErrorFilter,
    ErrorGroup,
    EscalationInstance,
    EscalationRule,
    EscalationStatus,
    NotificationResult,
    NotificationStatus,
    TrendPoint,
)


class ErrorStore(abc.ABC):
    """Persistence for error events and error groups."""

    @abc.abstractmethod
    async def store_error(self, event: ErrorEvent) -> None:
        """Persist one error occurrence."""

    @abc.abstractmethod
    async def delete_error(self, error_id: str) -> None:
        """Remove one stored occurrence. Unknown ids are ignored."""

    @abc.abstractmethod
    async def get_error(self, error_id: str) -> ErrorEvent | None: ...

    @abc.abstractmethod
    async def get_error_group(self, fingerprint: str) -> ErrorGroup | None: ...

    @abc.abstractmethod
    async def update_error_group(self, group: ErrorGroup) -> None:
        """Upsert *group* keyed by fingerprint."""

    @abc.abstractmethod
    async def get_error_groups(self, limit: int = 100, offset: int = 0) -> list[ErrorGroup]: ...

    @abc.abstractmethod
    async def get_errors_in_range(self, start: float, end: float) -> list[ErrorEvent]: ...

    @abc.abstractmethod
    async def search_errors(self, query: ErrorFilter) -> tuple[list[ErrorEvent], int]:
        """Return one page of matching events and the total match count."""

    @abc.abstractmethod
    async def get_error_trends(
        self,
        start: float,
        end: float,
        granularity: str = "hour",
    ) -> list[TrendPoint]: ...

    @abc.abstractmethod
    async def cleanup(self, retention_days: int) -> int:
        """Drop events older than the retention window. Returns rows removed."""


class AlertStore(abc.ABC):
    """Persistence for alerts, rules, escalations, notifications and suppressions."""

    # ── Alerts ──────────────────────────────────────────────────

    @abc.abstractmethod
    async def store_alert(self, alert: Alert) -> None: ...

    @abc.abstractmethod
    async def update_alert(self, alert: Alert) -> None: ...

    @abc.abstractmethod
    async def get_alert(self, alert_id: str) -> Alert | None: ...

    @abc.abstractmethod
    async def search_alerts(self, query: AlertFilter) -> tuple[list[Alert], int]: ...

    @abc.abstractmethod
    async def get_alerts_in_range(self, start: float, end: float) -> list[Alert]: ...

    # ── Alert rules ─────────────────────────────────────────────

    @abc.abstractmethod
    async def store_alert_rule(self, rule: AlertRule) -> None: ...

    @abc.abstractmethod
    async def update_alert_rule(self, rule: AlertRule) -> None: ...

    @abc.abstractmethod
    async def get_alert_rule(self, rule_id: str) -> AlertRule | None: ...

    @abc.abstractmethod
    async def get_all_alert_rules(self) -> list[AlertRule]: ...

    @abc.abstractmethod
    async def delete_alert_rule(self, rule_id: str) -> None: ...

    # ── Escalations ─────────────────────────────────────────────

    @abc.abstractmethod
    async def save_escalation_rule(self, rule: EscalationRule) -> None: ...

    @abc.abstractmethod
    async def delete_escalation_rule(self, rule_id: str) -> None: ...

    @abc.abstractmethod
    async def get_escalation_rules(self) -> list[EscalationRule]: ...

    @abc.abstractmethod
    async def save_escalation(self, instance: EscalationInstance) -> None: ...

    @abc.abstractmethod
    async def get_escalations(
        self,
        statuses: Iterable[EscalationStatus] | None = None,
    ) -> list[EscalationInstance]: ...

    # ── Notifications ───────────────────────────────────────────

    @abc.abstractmethod
    async def save_notification(self, result: NotificationResult) -> None: ...

    @abc.abstractmethod
    async def get_notifications(
        self,
        statuses: Iterable[NotificationStatus] | None = None,
    ) -> list[NotificationResult]: ...

    # ── Suppressions ────────────────────────────────────────────

    @abc.abstractmethod
    async def save_suppression(self, fingerprint: str, until: float) -> None: ...

    @abc.abstractmethod
    async def get_suppressions(self) -> dict[str, float]: ...

    @abc.abstractmethod
    async def cleanup(self, retention_days: int) -> int:
        """Drop alerts older than the retention window. Returns rows removed."""
