"""In-memory store implementations.

Used by tests and by the default entrypoint. Every write stores a deep
copy and every read returns one, so callers observe the same isolation a
real database gives them.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable, Iterable

from faultline.core.exceptions import PersistenceError
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
from faultline.storage.base import AlertStore, ErrorStore

_GRANULARITY_SECS: dict[str, float] = {
    "minute": 60.0,
    "hour": 3600.0,
    "day": 86400.0,
}

_DAY_SECS = 86400.0


def _bucket_size(granularity: str) -> float:
    try:
        return _GRANULARITY_SECS[granularity]
    except KeyError:
        raise ValueError(f"Unsupported granularity: {granularity}") from None


class MemoryErrorStore(ErrorStore):
    """Dict-backed ``ErrorStore``."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._events: dict[str, ErrorEvent] = {}
        self._groups: dict[str, ErrorGroup] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise PersistenceError("error store unavailable")

    async def store_error(self, event: ErrorEvent) -> None:
        self._check()
        self._events[event.id] = event.model_copy(deep=True)

    async def delete_error(self, error_id: str) -> None:
        self._check()
        self._events.pop(error_id, None)

    async def get_error(self, error_id: str) -> ErrorEvent | None:
        self._check()
        event = self._events.get(error_id)
        return event.model_copy(deep=True) if event else None

    async def get_error_group(self, fingerprint: str) -> ErrorGroup | None:
        self._check()
        group = self._groups.get(fingerprint)
        return group.model_copy(deep=True) if group else None

    async def update_error_group(self, group: ErrorGroup) -> None:
        self._check()
        self._groups[group.fingerprint] = group.model_copy(deep=True)

    async def get_error_groups(self, limit: int = 100, offset: int = 0) -> list[ErrorGroup]:
        self._check()
        groups = sorted(self._groups.values(), key=lambda g: g.last_seen, reverse=True)
        return [g.model_copy(deep=True) for g in groups[offset:offset + limit]]

    async def get_errors_in_range(self, start: float, end: float) -> list[ErrorEvent]:
        self._check()
        events = [e for e in self._events.values() if start <= e.timestamp <= end]
        events.sort(key=lambda e: e.timestamp)
        return [e.model_copy(deep=True) for e in events]

    async def search_errors(self, query: ErrorFilter) -> tuple[list[ErrorEvent], int]:
        self._check()
        matches = [e for e in self._events.values() if _error_matches(e, query)]
        matches.sort(key=lambda e: e.timestamp, reverse=True)
        page = matches[query.offset:query.offset + query.limit]
        return [e.model_copy(deep=True) for e in page], len(matches)

    async def get_error_trends(
        self,
        start: float,
        end: float,
        granularity: str = "hour",
    ) -> list[TrendPoint]:
        self._check()
        size = _bucket_size(granularity)
        points: dict[float, TrendPoint] = {}
        for event in self._events.values():
            if not start <= event.timestamp <= end:
                continue
            bucket = (event.timestamp // size) * size
            point = points.setdefault(bucket, TrendPoint(timestamp=bucket))
            point.count += 1
            point.levels[event.level.value] = point.levels.get(event.level.value, 0) + 1
        return [points[k] for k in sorted(points)]

    async def cleanup(self, retention_days: int) -> int:
        self._check()
        cutoff = self._clock() - retention_days * _DAY_SECS
        stale = [eid for eid, e in self._events.items() if e.timestamp < cutoff]
        for eid in stale:
            del self._events[eid]
        return len(stale)


def _error_matches(event: ErrorEvent, query: ErrorFilter) -> bool:
    if query.text:
        needle = query.text.lower()
        if needle not in event.message.lower() and needle not in event.type.lower():
            return False
    if query.level is not None and event.level != query.level:
        return False
    if query.type is not None and event.type != query.type:
        return False
    if query.workflow_id is not None and event.context.workflow_id != query.workflow_id:
        return False
    if query.user_id is not None and event.context.user_id != query.user_id:
        return False
    if query.start_time is not None and event.timestamp < query.start_time:
        return False
    if query.end_time is not None and event.timestamp > query.end_time:
        return False
    return True


class MemoryAlertStore(AlertStore):
    """Dict-backed ``AlertStore``."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._alerts: dict[str, Alert] = {}
        self._rules: dict[str, AlertRule] = {}
        self._escalation_rules: dict[str, EscalationRule] = {}
        self._escalations: dict[str, EscalationInstance] = {}
        self._notifications: dict[str, NotificationResult] = {}
        self._suppressions: dict[str, float] = {}
        self.writes: dict[str, int] = defaultdict(int)
        self.available = True

    def _check(self, op: str | None = None) -> None:
        if not self.available:
            raise PersistenceError("alert store unavailable")
        if op is not None:
            self.writes[op] += 1

    # ── Alerts ──────────────────────────────────────────────────

    async def store_alert(self, alert: Alert) -> None:
        self._check("store_alert")
        self._alerts[alert.id] = alert.model_copy(deep=True)

    async def update_alert(self, alert: Alert) -> None:
        self._check("update_alert")
        self._alerts[alert.id] = alert.model_copy(deep=True)

    async def get_alert(self, alert_id: str) -> Alert | None:
        self._check()
        alert = self._alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert else None

    async def search_alerts(self, query: AlertFilter) -> tuple[list[Alert], int]:
        self._check()
        matches = [a for a in self._alerts.values() if _alert_matches(a, query)]
        matches.sort(key=lambda a: a.timestamp, reverse=True)
        page = matches[query.offset:query.offset + query.limit]
        return [a.model_copy(deep=True) for a in page], len(matches)

    async def get_alerts_in_range(self, start: float, end: float) -> list[Alert]:
        self._check()
        alerts = [a for a in self._alerts.values() if start <= a.timestamp <= end]
        alerts.sort(key=lambda a: a.timestamp)
        return [a.model_copy(deep=True) for a in alerts]

    # ── Alert rules ─────────────────────────────────────────────

    async def store_alert_rule(self, rule: AlertRule) -> None:
        self._check("store_alert_rule")
        self._rules[rule.id] = rule.model_copy(deep=True)

    async def update_alert_rule(self, rule: AlertRule) -> None:
        self._check("update_alert_rule")
        self._rules[rule.id] = rule.model_copy(deep=True)

    async def get_alert_rule(self, rule_id: str) -> AlertRule | None:
        self._check()
        rule = self._rules.get(rule_id)
        return rule.model_copy(deep=True) if rule else None

    async def get_all_alert_rules(self) -> list[AlertRule]:
        self._check()
        return [r.model_copy(deep=True) for r in self._rules.values()]

    async def delete_alert_rule(self, rule_id: str) -> None:
        self._check("delete_alert_rule")
        self._rules.pop(rule_id, None)

    # ── Escalations ─────────────────────────────────────────────

    async def save_escalation_rule(self, rule: EscalationRule) -> None:
        self._check("save_escalation_rule")
        self._escalation_rules[rule.id] = rule.model_copy(deep=True)

    async def delete_escalation_rule(self, rule_id: str) -> None:
        self._check("delete_escalation_rule")
        self._escalation_rules.pop(rule_id, None)

    async def get_escalation_rules(self) -> list[EscalationRule]:
        self._check()
        return [r.model_copy(deep=True) for r in self._escalation_rules.values()]

    async def save_escalation(self, instance: EscalationInstance) -> None:
        self._check("save_escalation")
        self._escalations[instance.id] = instance.model_copy(deep=True)

    async def get_escalations(
        self,
        statuses: Iterable[EscalationStatus] | None = None,
    ) -> list[EscalationInstance]:
        self._check()
        wanted = set(statuses) if statuses is not None else None
        return [
            i.model_copy(deep=True)
            for i in self._escalations.values()
            if wanted is None or i.status in wanted
        ]

    # ── Notifications ───────────────────────────────────────────

    async def save_notification(self, result: NotificationResult) -> None:
        self._check("save_notification")
        self._notifications[result.id] = result.model_copy(deep=True)

    async def get_notifications(
        self,
        statuses: Iterable[NotificationStatus] | None = None,
    ) -> list[NotificationResult]:
        self._check()
        wanted = set(statuses) if statuses is not None else None
        return [
            n.model_copy(deep=True)
            for n in self._notifications.values()
            if wanted is None or n.status in wanted
        ]

    # ── Suppressions ────────────────────────────────────────────

    async def save_suppression(self, fingerprint: str, until: float) -> None:
        self._check("save_suppression")
        self._suppressions[fingerprint] = until

    async def get_suppressions(self) -> dict[str, float]:
        self._check()
        return dict(self._suppressions)

    async def cleanup(self, retention_days: int) -> int:
        self._check()
        now = self._clock()
        cutoff = now - retention_days * _DAY_SECS
        stale = [aid for aid, a in self._alerts.items() if a.timestamp < cutoff]
        for aid in stale:
            del self._alerts[aid]
        for fp in [fp for fp, until in self._suppressions.items() if until <= now]:
            del self._suppressions[fp]
        return len(stale)


def _alert_matches(alert: Alert, query: AlertFilter) -> bool:
    if query.type is not None and alert.type != query.type:
        return False
    if query.severity is not None and alert.severity != query.severity:
        return False
    if query.status is not None and alert.status != query.status:
        return False
    if query.source is not None and alert.source != query.source:
        return False
    if query.start_time is not None and alert.timestamp < query.start_time:
        return False
    if query.end_time is not None and alert.timestamp > query.end_time:
        return False
    return True
