"""Alert creation, rule evaluation, lifecycle and metrics."""

from __future__ import annotations

import asyncio
import hashlib
import os
import time
from collections.abc import Callable

import structlog
from pydantic import BaseModel

from faultline.alerts.conditions import rule_applies
from faultline.alerts.metrics import AlertMetrics, calculate_metrics
from faultline.core.bus import EventBus, Signal
from faultline.core.config import AlertsConfig
from faultline.core.exceptions import (
    ConfigurationError,
    InvalidStateError,
    PersistenceError,
    ValidationError,
)
from faultline.core.scheduler import PeriodicTask, TimerRegistry
from faultline.core.types import (
    Acknowledgment,
    ActionType,
    Alert,
    AlertAction,
    AlertContext,
    AlertEscalation,
    AlertFilter,
    AlertLifecycleEvent,
    AlertRule,
    AlertSeverity,
    AlertSpec,
    AlertStatus,
    ChannelType,
    EscalationRequest,
    EscalationSignal,
    NotificationRecord,
    NotificationRequest,
    NotificationResult,
    Resolution,
)
from faultline.notify.service import NotificationService
from faultline.storage.base import AlertStore

logger = structlog.get_logger(__name__)

_DAY_SECS = 86400.0

_MAX_LEVEL_BY_SEVERITY: dict[AlertSeverity, int] = {
    AlertSeverity.LOW: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.HIGH: 3,
    AlertSeverity.CRITICAL: 4,
}


def alert_fingerprint(spec: AlertSpec) -> str:
    """md5 of ``type|title|source`` plus workflow/node ids found in metadata."""
    parts = [spec.type.value, spec.title, spec.source]
    for key in ("workflow_id", "node_id"):
        value = spec.metadata.get(key)
        if value:
            parts.append(str(value))
    return hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()[:16]


def max_escalation_level(severity: AlertSeverity) -> int:
    return _MAX_LEVEL_BY_SEVERITY.get(severity, 1)


class ThrottleWindow(BaseModel):
    count: int = 0
    window_start: float


class AlertManager:
    """Owns alerts, alert rules, suppressions and throttle windows.

    ``create_alert`` runs, in order: suppression checks, rule actions,
    per-rule throttling, then persistence and initial notifications.
    Suppressed and throttled alerts return their id without being stored.

    Bus subscriptions:
        error_alert → create_alert
        escalation_triggered → record level, notify, publish alert_escalated
        notification_sent / delivered / failed → update the attempt log
    """

    def __init__(
        self,
        store: AlertStore,
        bus: EventBus,
        notifier: NotificationService | None = None,
        config: AlertsConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._notifier = notifier
        self._config = config or AlertsConfig()
        self._clock = clock

        self._alerts: dict[str, Alert] = {}
        self._rules: dict[str, AlertRule] = {}
        self._suppressions: dict[str, float] = {}
        self._throttle: dict[str, ThrottleWindow] = {}
        self._delayed = TimerRegistry("alert_delayed_notify")

        self._tasks = [
            PeriodicTask("alert_cleanup", self._config.cleanup_interval_secs, self.cleanup),
            PeriodicTask(
                "alert_cache_cleanup",
                self._config.cache_cleanup_interval_secs,
                self.cleanup_caches,
            ),
            PeriodicTask(
                "alert_metrics",
                self._config.metrics_interval_secs,
                self.refresh_metrics,
            ),
        ]

        bus.subscribe(Signal.ERROR_ALERT, self._on_error_alert)
        bus.subscribe(Signal.ESCALATION_TRIGGERED, self._on_escalation_triggered)
        bus.subscribe(Signal.NOTIFICATION_SENT, self._on_notification_update)
        bus.subscribe(Signal.NOTIFICATION_DELIVERED, self._on_notification_update)
        bus.subscribe(Signal.NOTIFICATION_FAILED, self._on_notification_update)

    # ── Alert creation ──────────────────────────────────────────

    async def create_alert(self, spec: AlertSpec) -> str:
        """Create an alert from *spec* and return its id.

        Raises:
            PersistenceError: The store rejected the alert.
        """
        now = self._clock()
        alert = self._build_alert(spec, now)
        log = logger.bind(alert_id=alert.id, fingerprint=alert.fingerprint)

        if self._is_suppressed(alert, now):
            log.debug("alert_suppressed_on_create")
            return alert.id

        applicable = [r for r in self._rules.values() if rule_applies(r, alert, now)]
        escalations: list[float] = []
        for rule in applicable:
            await self._execute_actions(alert, rule, escalations)

        if self._is_throttled(alert, applicable, now):
            log.debug("alert_throttled")
            return alert.id

        try:
            await self._store.store_alert(alert)
        except PersistenceError:
            log.error("alert_store_failed", title=alert.title)
            raise
        self._alerts[alert.id] = alert

        await self._notify_recipients(alert)
        await self._bus.publish(Signal.ALERT_CREATED, alert.model_copy(deep=True))
        for delay in escalations:
            await self._bus.publish(
                Signal.ESCALATION_REQUESTED,
                EscalationRequest(alert_id=alert.id, delay_secs=delay),
            )

        log.info(
            "alert_created",
            type=alert.type.value,
            severity=alert.severity.value,
            title=alert.title,
        )
        return alert.id

    def _build_alert(self, spec: AlertSpec, now: float) -> Alert:
        return Alert(
            type=spec.type,
            severity=spec.severity,
            title=spec.title,
            message=spec.message,
            source=spec.source,
            fingerprint=alert_fingerprint(spec),
            timestamp=now,
            metadata=dict(spec.metadata),
            context=AlertContext(**{"service": self._config.service, **spec.context}),
            recipients=spec.recipients.model_copy(deep=True),
            escalation=AlertEscalation(max_level=max_escalation_level(spec.severity)),
        )

    def _is_suppressed(self, alert: Alert, now: float) -> bool:
        until = self._suppressions.get(alert.fingerprint)
        if until is not None and now < until:
            return True

        if not self._config.permanent_rule_suppression:
            return False
        # Any applicable rule with a configured suppress duration blocks the
        # alert outright, whatever that duration is.
        for rule in self._rules.values():
            if not rule_applies(rule, alert, now):
                continue
            if any(
                a.type == ActionType.SUPPRESS and a.config.get("suppress_for_secs")
                for a in rule.actions
            ):
                return True
        return False

    def _is_throttled(self, alert: Alert, rules: list[AlertRule], now: float) -> bool:
        for rule in rules:
            if rule.throttle is None:
                continue
            key = f"{rule.id}:{alert.fingerprint}"
            window = self._throttle.get(key)
            if window is None or now - window.window_start > rule.throttle.window_secs:
                window = ThrottleWindow(window_start=now)
                self._throttle[key] = window
            window.count += 1
            if window.count > rule.throttle.max_alerts:
                return True
        return False

    # ── Rule actions ────────────────────────────────────────────

    async def _execute_actions(
        self,
        alert: Alert,
        rule: AlertRule,
        escalations: list[float],
    ) -> None:
        for action in rule.actions:
            try:
                await self._execute_action(alert, rule, action, escalations)
            except Exception:
                logger.exception(
                    "rule_action_failed",
                    rule_id=rule.id,
                    action=action.type.value,
                    alert_id=alert.id,
                )

    async def _execute_action(
        self,
        alert: Alert,
        rule: AlertRule,
        action: AlertAction,
        escalations: list[float],
    ) -> None:
        cfg = action.config
        if action.type == ActionType.NOTIFY:
            users = list(cfg.get("users", []))
            channels = list(cfg.get("channels", []))
            delay = float(cfg.get("delay_secs", 0))
            if delay > 0:
                self._schedule_delayed_notify(alert, rule, users, channels, delay)
            else:
                await self._send(alert, users, ChannelType.EMAIL)
                await self._send(alert, channels, ChannelType.CHAT)

        elif action.type == ActionType.ESCALATE:
            # Published once the alert is persisted.
            escalations.append(float(cfg.get("delay_secs", 0)))

        elif action.type == ActionType.SUPPRESS:
            duration = float(cfg.get("suppress_for_secs", self._config.default_suppress_secs))
            until = self._clock() + duration
            self._suppressions[alert.fingerprint] = until
            await self._store.save_suppression(alert.fingerprint, until)

        elif action.type == ActionType.WEBHOOK:
            url = cfg.get("webhook_url")
            if not url:
                logger.warning("webhook_action_missing_url", rule_id=rule.id)
                return
            await self._send(alert, [url], ChannelType.WEBHOOK, endpoint=url)

        elif action.type == ActionType.SCRIPT:
            await self._run_script(alert, cfg.get("script_path"), cfg.get("args", []))

    def _schedule_delayed_notify(
        self,
        alert: Alert,
        rule: AlertRule,
        users: list[str],
        channels: list[str],
        delay: float,
    ) -> None:
        snapshot = alert.model_copy(deep=True)

        async def fire() -> None:
            current = self._alerts.get(snapshot.id)
            target = current if current is not None else snapshot
            await self._send(target, users, ChannelType.EMAIL)
            await self._send(target, channels, ChannelType.CHAT)
            if current is not None:
                await self._store.update_alert(current)

        self._delayed.schedule(f"{alert.id}:{rule.id}", delay, fire)

    async def _run_script(self, alert: Alert, script_path: str | None, args: list[str]) -> None:
        if not script_path:
            logger.warning("script_action_missing_path", alert_id=alert.id)
            return
        env = {
            **os.environ,
            "ALERT_ID": alert.id,
            "ALERT_TYPE": alert.type.value,
            "ALERT_SEVERITY": alert.severity.value,
            "ALERT_TITLE": alert.title,
            "ALERT_MESSAGE": alert.message,
            "ALERT_SOURCE": alert.source,
            "ALERT_FINGERPRINT": alert.fingerprint,
        }
        process = await asyncio.create_subprocess_exec(
            script_path,
            *[str(a) for a in args],
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self._config.script_timeout_secs,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("script_action_timeout", alert_id=alert.id, script=script_path)
            return

        if process.returncode != 0:
            logger.warning(
                "script_action_failed",
                alert_id=alert.id,
                script=script_path,
                returncode=process.returncode,
                stderr=stderr.decode(errors="replace")[-200:],
            )
        else:
            logger.info("script_action_executed", alert_id=alert.id, script=script_path)

    # ── Notifications ───────────────────────────────────────────

    async def _notify_recipients(self, alert: Alert) -> None:
        await self._send(alert, alert.recipients.users, ChannelType.EMAIL)
        await self._send(alert, alert.recipients.channels, ChannelType.CHAT)
        await self._send(alert, alert.recipients.integrations, ChannelType.WEBHOOK)
        if alert.notifications:
            await self._store.update_alert(alert)

    async def _send(
        self,
        alert: Alert,
        recipients: list[str],
        channel: ChannelType,
        endpoint: str | None = None,
    ) -> None:
        if not recipients:
            return
        if self._notifier is None:
            logger.debug("notifier_not_configured", alert_id=alert.id, channel=channel.value)
            return

        for recipient in recipients:
            request = NotificationRequest(
                alert_id=alert.id,
                recipient=recipient,
                channel=channel,
                subject=alert.title,
                message=alert.message,
                priority=alert.severity,
                metadata=dict(alert.metadata),
                endpoint=endpoint,
            )
            try:
                notification_id = await self._notifier.send_notification(request)
            except (ConfigurationError, ValidationError) as exc:
                logger.warning(
                    "alert_notification_not_sent",
                    alert_id=alert.id,
                    channel=channel.value,
                    recipient=recipient,
                    error=str(exc),
                )
                continue

            result = self._notifier.get_notification(notification_id)
            if result is not None:
                self._upsert_record(alert, result)
            elif not any(r.id == notification_id for r in alert.notifications):
                alert.notifications.append(
                    NotificationRecord(
                        id=notification_id,
                        channel=channel,
                        recipient=recipient,
                        sent_at=self._clock(),
                    )
                )

    @staticmethod
    def _upsert_record(alert: Alert, result: NotificationResult) -> None:
        for record in alert.notifications:
            if record.id == result.id:
                record.status = result.status
                record.error = result.error
                record.retry_count = result.retry_count
                return
        alert.notifications.append(
            NotificationRecord(
                id=result.id,
                channel=result.channel,
                recipient=result.recipient,
                sent_at=result.sent_at,
                status=result.status,
                error=result.error,
                retry_count=result.retry_count,
            )
        )

    # ── Bus handlers ────────────────────────────────────────────

    async def _on_error_alert(self, spec: AlertSpec) -> None:
        await self.create_alert(spec)

    async def _on_escalation_triggered(self, signal: EscalationSignal) -> None:
        alert = await self._load(signal.alert_id)
        if alert is None:
            logger.warning("escalated_alert_not_found", alert_id=signal.alert_id)
            return

        alert.escalation.level = min(signal.level, alert.escalation.max_level)
        alert.escalation.escalated_at = signal.timestamp
        alert.escalation.escalated_to = list(signal.recipients)

        await self._send(alert, signal.recipients, ChannelType.EMAIL)
        await self._store.update_alert(alert)

        await self._bus.publish(
            Signal.ALERT_ESCALATED,
            signal.model_copy(update={"level": alert.escalation.level}),
        )
        logger.info(
            "alert_escalated",
            alert_id=alert.id,
            level=alert.escalation.level,
            recipients=len(signal.recipients),
        )

    async def _on_notification_update(self, result: NotificationResult) -> None:
        alert = self._alerts.get(result.alert_id)
        if alert is None:
            return
        self._upsert_record(alert, result)
        try:
            await self._store.update_alert(alert)
        except PersistenceError:
            logger.error(
                "notification_status_persist_failed",
                alert_id=alert.id,
                notification_id=result.id,
            )

    # ── Lifecycle ───────────────────────────────────────────────

    async def acknowledge_alert(
        self,
        alert_id: str,
        acknowledged_by: str,
        note: str | None = None,
    ) -> Alert:
        """Move an open alert to acknowledged.

        Raises:
            ValidationError: Unknown alert.
            InvalidStateError: The alert is not open.
        """
        alert = await self._require(alert_id)
        if alert.status != AlertStatus.OPEN:
            raise InvalidStateError(
                f"Alert {alert_id} cannot be acknowledged from status {alert.status.value}",
                alert.status.value,
            )

        now = self._clock()
        updated = alert.model_copy(deep=True)
        updated.status = AlertStatus.ACKNOWLEDGED
        updated.acknowledgment = Acknowledgment(
            acknowledged_by=acknowledged_by,
            acknowledged_at=now,
            note=note,
        )
        await self._commit(updated)

        await self._bus.publish(
            Signal.ALERT_ACKNOWLEDGED,
            AlertLifecycleEvent(
                alert_id=alert_id,
                status=updated.status,
                actor=acknowledged_by,
                note=note,
                timestamp=now,
            ),
        )
        logger.info("alert_acknowledged", alert_id=alert_id, acknowledged_by=acknowledged_by)
        return updated.model_copy(deep=True)

    async def resolve_alert(
        self,
        alert_id: str,
        resolved_by: str,
        resolution: str,
        root_cause: str | None = None,
    ) -> Alert:
        """Resolve an alert from any status.

        Raises:
            ValidationError: Unknown alert.
        """
        alert = await self._require(alert_id)

        now = self._clock()
        updated = alert.model_copy(deep=True)
        updated.status = AlertStatus.RESOLVED
        updated.resolution = Resolution(
            resolved_by=resolved_by,
            resolved_at=now,
            resolution=resolution,
            root_cause=root_cause,
        )
        await self._commit(updated)

        await self._bus.publish(
            Signal.ALERT_RESOLVED,
            AlertLifecycleEvent(
                alert_id=alert_id,
                status=updated.status,
                actor=resolved_by,
                resolution=resolution,
                root_cause=root_cause,
                timestamp=now,
            ),
        )
        logger.info("alert_resolved", alert_id=alert_id, resolved_by=resolved_by)
        return updated.model_copy(deep=True)

    async def suppress_alert(
        self,
        alert_id: str,
        suppressed_by: str,
        duration_secs: float | None = None,
        reason: str | None = None,
    ) -> Alert:
        """Suppress an alert and block its fingerprint for *duration_secs*.

        Raises:
            ValidationError: Unknown alert.
        """
        alert = await self._require(alert_id)

        now = self._clock()
        duration = self._config.default_suppress_secs if duration_secs is None else duration_secs
        until = now + duration

        updated = alert.model_copy(deep=True)
        updated.status = AlertStatus.SUPPRESSED
        updated.escalation.suppress_until = until
        await self._commit(updated)

        self._suppressions[updated.fingerprint] = until
        await self._store.save_suppression(updated.fingerprint, until)

        await self._bus.publish(
            Signal.ALERT_SUPPRESSED,
            AlertLifecycleEvent(
                alert_id=alert_id,
                status=updated.status,
                actor=suppressed_by,
                note=reason,
                duration_secs=duration,
                timestamp=now,
            ),
        )
        logger.info(
            "alert_suppressed",
            alert_id=alert_id,
            suppressed_by=suppressed_by,
            duration_secs=duration,
            reason=reason,
        )
        return updated.model_copy(deep=True)

    async def _load(self, alert_id: str) -> Alert | None:
        alert = self._alerts.get(alert_id)
        if alert is None:
            alert = await self._store.get_alert(alert_id)
            if alert is not None:
                self._alerts[alert_id] = alert
        return alert

    async def _require(self, alert_id: str) -> Alert:
        alert = await self._load(alert_id)
        if alert is None:
            raise ValidationError(f"Alert not found: {alert_id}")
        return alert

    async def _commit(self, alert: Alert) -> None:
        await self._store.update_alert(alert)
        self._alerts[alert.id] = alert

    # ── Rules ───────────────────────────────────────────────────

    async def create_alert_rule(self, rule: AlertRule) -> str:
        now = self._clock()
        rule = rule.model_copy(update={"created_at": now, "updated_at": now}, deep=True)
        await self._store.store_alert_rule(rule)
        self._rules[rule.id] = rule
        logger.info("alert_rule_created", rule_id=rule.id, name=rule.name)
        return rule.id

    async def update_alert_rule(self, rule_id: str, **updates: object) -> AlertRule:
        """Apply field *updates* to a rule.

        Raises:
            ValidationError: Unknown rule.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            raise ValidationError(f"Alert rule not found: {rule_id}")
        data = {**rule.model_dump(), **updates, "id": rule_id, "updated_at": self._clock()}
        updated = AlertRule.model_validate(data)
        await self._store.update_alert_rule(updated)
        self._rules[rule_id] = updated
        logger.info("alert_rule_updated", rule_id=rule_id, name=updated.name)
        return updated.model_copy(deep=True)

    async def delete_alert_rule(self, rule_id: str) -> None:
        """Remove a rule and its throttle windows.

        Raises:
            ValidationError: Unknown rule.
        """
        if rule_id not in self._rules:
            raise ValidationError(f"Alert rule not found: {rule_id}")
        await self._store.delete_alert_rule(rule_id)
        del self._rules[rule_id]
        prefix = f"{rule_id}:"
        for key in [k for k in self._throttle if k.startswith(prefix)]:
            del self._throttle[key]
        logger.info("alert_rule_deleted", rule_id=rule_id)

    def get_alert_rules(self) -> list[AlertRule]:
        return [r.model_copy(deep=True) for r in self._rules.values()]

    # ── Queries ─────────────────────────────────────────────────

    async def get_alert(self, alert_id: str) -> Alert | None:
        alert = await self._load(alert_id)
        return alert.model_copy(deep=True) if alert else None

    async def search_alerts(self, query: AlertFilter) -> tuple[list[Alert], int]:
        return await self._store.search_alerts(query)

    async def get_metrics(self, time_range_secs: float = _DAY_SECS) -> AlertMetrics:
        end = self._clock()
        alerts = await self._store.get_alerts_in_range(end - time_range_secs, end)
        return calculate_metrics(alerts)

    def is_suppressed(self, fingerprint: str) -> bool:
        until = self._suppressions.get(fingerprint)
        return until is not None and self._clock() < until

    # ── Persistence / background work ───────────────────────────

    async def restore(self) -> None:
        """Reload rules and unexpired suppressions from the store."""
        now = self._clock()
        self._rules = {r.id: r for r in await self._store.get_all_alert_rules()}
        self._suppressions = {
            fp: until for fp, until in (await self._store.get_suppressions()).items()
            if until > now
        }
        logger.info(
            "alert_manager_restored",
            rules=len(self._rules),
            suppressions=len(self._suppressions),
        )

    async def cleanup(self) -> int:
        """Trim the in-memory index and drop stored alerts past retention."""
        cutoff = self._clock() - self._config.retention_days * _DAY_SECS
        for alert_id in [a.id for a in self._alerts.values() if a.timestamp < cutoff]:
            del self._alerts[alert_id]

        cap = self._config.max_alerts_in_memory
        if len(self._alerts) > cap:
            newest = sorted(self._alerts.values(), key=lambda a: a.timestamp, reverse=True)[:cap]
            self._alerts = {a.id: a for a in newest}

        removed = await self._store.cleanup(self._config.retention_days)
        if removed:
            logger.debug("alerts_cleaned_up", removed=removed)
        return removed

    def cleanup_caches(self) -> None:
        now = self._clock()
        for fp in [fp for fp, until in self._suppressions.items() if now >= until]:
            del self._suppressions[fp]
        for key in [k for k, w in self._throttle.items() if now - w.window_start > _DAY_SECS]:
            del self._throttle[key]

    async def refresh_metrics(self) -> AlertMetrics:
        metrics = await self.get_metrics()
        await self._bus.publish(Signal.METRICS_UPDATED, metrics)
        return metrics

    async def start(self) -> None:
        for task in self._tasks:
            await task.start()
        logger.info("alert_manager_started", rules=len(self._rules))

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
        self._delayed.cancel_all()
        logger.info("alert_manager_stopped")
