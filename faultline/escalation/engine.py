"""Timed multi-level escalation per alert.

State machine per instance::

    active ──(escalate)*──▶ completed
    active ⇄ paused
    active / paused ──▶ stopped

Timers are in-process only. ``next_escalation_at`` is persisted with
every transition so ``restore()`` can re-arm them after a restart, and
the periodic sweep fires anything whose due time has passed. Levels
without ``auto_escalate`` get a due time but no timer, so only the sweep
advances them.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from faultline.core.bus import EventBus, Signal
from faultline.core.config import EscalationConfig
from faultline.core.exceptions import PersistenceError, ValidationError
from faultline.core.scheduler import PeriodicTask, TimerRegistry
from faultline.core.types import (
    Alert,
    AlertLifecycleEvent,
    EscalationEvent,
    EscalationEventType,
    EscalationInstance,
    EscalationLevel,
    EscalationRequest,
    EscalationRule,
    EscalationSignal,
    EscalationStatus,
    EscalationTrigger,
)
from faultline.storage.base import AlertStore

logger = structlog.get_logger(__name__)

_DAY_SECS = 86400.0

_LIVE = (EscalationStatus.ACTIVE, EscalationStatus.PAUSED)

_STOP_EVENT: dict[str, EscalationEventType] = {
    "acknowledged": EscalationEventType.ACKNOWLEDGED,
    "resolved": EscalationEventType.RESOLVED,
}


def trigger_matches(trigger: EscalationTrigger, alert: Alert) -> bool:
    if trigger.severities is not None and alert.severity not in trigger.severities:
        return False
    if trigger.types is not None and alert.type not in trigger.types:
        return False
    if trigger.sources is not None and alert.source not in trigger.sources:
        return False
    return True


class EscalationEngine:
    """Runs escalation instances, keyed by alert id.

    Bus subscriptions:
        alert_created → start_escalation when the alert's max level > 0
        alert_acknowledged / alert_resolved → stop, per the level's stop conditions
        alert_suppressed → stop
        escalation_requested → schedule_escalation
    """

    def __init__(
        self,
        store: AlertStore,
        bus: EventBus,
        config: EscalationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config or EscalationConfig()
        self._clock = clock
        self._rules: dict[str, EscalationRule] = {}
        self._instances: dict[str, EscalationInstance] = {}
        self._timers = TimerRegistry("escalation")
        self._sweep = PeriodicTask(
            "escalation_sweep",
            self._config.sweep_interval_secs,
            self.process_due_escalations,
        )
        self._cleanup_task = PeriodicTask(
            "escalation_cleanup",
            self._config.cleanup_interval_secs,
            self.cleanup,
        )

        bus.subscribe(Signal.ALERT_CREATED, self._on_alert_created)
        bus.subscribe(Signal.ALERT_ACKNOWLEDGED, self._on_alert_lifecycle)
        bus.subscribe(Signal.ALERT_RESOLVED, self._on_alert_lifecycle)
        bus.subscribe(Signal.ALERT_SUPPRESSED, self._on_alert_lifecycle)
        bus.subscribe(Signal.ESCALATION_REQUESTED, self._on_escalation_requested)

    # ── Rules ───────────────────────────────────────────────────

    async def add_escalation_rule(self, rule: EscalationRule) -> str:
        now = self._clock()
        rule = rule.model_copy(update={"created_at": now, "updated_at": now}, deep=True)
        await self._store.save_escalation_rule(rule)
        self._rules[rule.id] = rule
        logger.info("escalation_rule_added", rule_id=rule.id, name=rule.name, levels=len(rule.levels))
        return rule.id

    async def update_escalation_rule(self, rule_id: str, **updates: object) -> EscalationRule:
        """Apply field *updates* to a rule.

        Raises:
            ValidationError: Unknown rule.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            raise ValidationError(f"Escalation rule not found: {rule_id}")
        data = {**rule.model_dump(), **updates, "id": rule_id, "updated_at": self._clock()}
        updated = EscalationRule.model_validate(data)
        await self._store.save_escalation_rule(updated)
        self._rules[rule_id] = updated
        logger.info("escalation_rule_updated", rule_id=rule_id, name=updated.name)
        return updated.model_copy(deep=True)

    async def remove_escalation_rule(self, rule_id: str) -> bool:
        if rule_id not in self._rules:
            return False
        await self._store.delete_escalation_rule(rule_id)
        del self._rules[rule_id]
        logger.info("escalation_rule_removed", rule_id=rule_id)
        return True

    def get_escalation_rules(self) -> list[EscalationRule]:
        return [r.model_copy(deep=True) for r in self._rules.values()]

    def find_applicable_rule(self, alert: Alert) -> EscalationRule | None:
        for rule in self._rules.values():
            if rule.enabled and any(trigger_matches(t, alert) for t in rule.triggers):
                return rule
        return None

    # ── Transitions ─────────────────────────────────────────────

    async def start_escalation(self, alert: Alert, rule_id: str | None = None) -> str:
        """Start escalating *alert*. Returns the instance id, or "" if no rule applies.

        An explicit *rule_id* bypasses trigger matching. Starting an alert
        that already has a live instance returns that instance's id.
        """
        existing = self._instances.get(alert.id)
        if existing is not None and existing.status in _LIVE:
            return existing.id

        rule = self._rules.get(rule_id) if rule_id else self.find_applicable_rule(alert)
        if rule is None or not rule.enabled or not rule.levels:
            logger.debug("no_escalation_rule", alert_id=alert.id, rule_id=rule_id)
            return ""

        now = self._clock()
        instance = EscalationInstance(
            alert_id=alert.id,
            rule_id=rule.id,
            max_level=min(len(rule.levels), self._config.max_level),
            started_at=now,
            history=[
                EscalationEvent(
                    type=EscalationEventType.STARTED,
                    level=0,
                    timestamp=now,
                    metadata={"rule_id": rule.id},
                )
            ],
        )
        self._instances[alert.id] = instance
        self._schedule_next(instance, rule)
        await self._save(instance)

        await self._bus.publish(
            Signal.ESCALATION_STARTED,
            EscalationSignal(
                alert_id=alert.id,
                escalation_id=instance.id,
                rule_id=rule.id,
                timestamp=now,
            ),
        )
        logger.info(
            "escalation_started",
            alert_id=alert.id,
            escalation_id=instance.id,
            rule_id=rule.id,
            max_level=instance.max_level,
        )
        return instance.id

    async def execute_escalation(self, alert_id: str) -> bool:
        """Advance one level. Returns False when nothing was escalated."""
        instance = self._instances.get(alert_id)
        if instance is None or instance.status != EscalationStatus.ACTIVE:
            return False
        rule = self._rules.get(instance.rule_id)
        if rule is None:
            logger.warning("escalation_rule_missing", alert_id=alert_id, rule_id=instance.rule_id)
            return False

        # Claimed before any await so the sweep cannot fire it twice.
        self._timers.cancel(alert_id)
        instance.next_escalation_at = None

        if instance.current_level >= instance.max_level:
            await self._complete(instance)
            return False

        now = self._clock()
        instance.current_level += 1
        instance.last_escalated_at = now
        level = rule.levels[instance.current_level - 1]
        recipients = level.recipients.flatten() if level.notify else []
        instance.history.append(
            EscalationEvent(
                type=EscalationEventType.ESCALATED,
                level=instance.current_level,
                timestamp=now,
                recipients=recipients,
                metadata={
                    "level_name": level.name,
                    "require_acknowledgment": level.require_acknowledgment,
                },
            )
        )

        try:
            await self._store.save_escalation(instance)
        except PersistenceError:
            await self._record_failure(instance, level, now)
            return False

        await self._bus.publish(
            Signal.ESCALATION_TRIGGERED,
            EscalationSignal(
                alert_id=alert_id,
                escalation_id=instance.id,
                rule_id=rule.id,
                level=instance.current_level,
                level_name=level.name,
                recipients=recipients,
                require_acknowledgment=level.require_acknowledgment,
                timestamp=now,
            ),
        )
        logger.info(
            "escalation_executed",
            alert_id=alert_id,
            escalation_id=instance.id,
            level=instance.current_level,
            level_name=level.name,
            recipients=len(recipients),
        )

        # A subscriber may have stopped the instance while we published.
        if instance.status != EscalationStatus.ACTIVE:
            return True
        if instance.current_level >= instance.max_level:
            await self._complete(instance)
        else:
            # Manual levels get no timer; the sweep advances them once due.
            self._schedule_next(instance, rule, arm=self._auto_armed(instance, rule))
            await self._save(instance)
        return True

    async def _record_failure(
        self,
        instance: EscalationInstance,
        level: EscalationLevel,
        now: float,
    ) -> None:
        instance.history.pop()
        instance.current_level -= 1
        instance.failures += 1
        instance.history.append(
            EscalationEvent(
                type=EscalationEventType.FAILED,
                level=instance.current_level + 1,
                timestamp=now,
                metadata={"failures": instance.failures},
            )
        )
        logger.error(
            "escalation_persist_failed",
            alert_id=instance.alert_id,
            escalation_id=instance.id,
            failures=instance.failures,
        )
        if instance.failures > level.stop_conditions.max_retries:
            try:
                await self.stop_escalation(instance.alert_id, reason="max_retries")
            except PersistenceError:
                logger.error("escalation_stop_not_persisted", alert_id=instance.alert_id)
        else:
            # Left due so the sweep retries it.
            instance.next_escalation_at = now

    async def _complete(self, instance: EscalationInstance) -> None:
        now = self._clock()
        instance.status = EscalationStatus.COMPLETED
        instance.next_escalation_at = None
        self._timers.cancel(instance.alert_id)
        instance.history.append(
            EscalationEvent(
                type=EscalationEventType.COMPLETED,
                level=instance.current_level,
                timestamp=now,
            )
        )
        await self._save(instance)
        await self._bus.publish(
            Signal.ESCALATION_COMPLETED,
            EscalationSignal(
                alert_id=instance.alert_id,
                escalation_id=instance.id,
                rule_id=instance.rule_id,
                level=instance.current_level,
                timestamp=now,
            ),
        )
        logger.info(
            "escalation_completed",
            alert_id=instance.alert_id,
            escalation_id=instance.id,
            final_level=instance.current_level,
        )

    async def stop_escalation(self, alert_id: str, reason: str = "manual") -> bool:
        instance = self._instances.get(alert_id)
        if instance is None or instance.status not in _LIVE:
            return False

        now = self._clock()
        instance.status = EscalationStatus.STOPPED
        instance.next_escalation_at = None
        self._timers.cancel(alert_id)
        instance.history.append(
            EscalationEvent(
                type=_STOP_EVENT.get(reason, EscalationEventType.STOPPED),
                level=instance.current_level,
                timestamp=now,
                metadata={"reason": reason},
            )
        )
        await self._save(instance)

        await self._bus.publish(
            Signal.ESCALATION_STOPPED,
            EscalationSignal(
                alert_id=alert_id,
                escalation_id=instance.id,
                rule_id=instance.rule_id,
                level=instance.current_level,
                reason=reason,
                timestamp=now,
            ),
        )
        logger.info(
            "escalation_stopped",
            alert_id=alert_id,
            escalation_id=instance.id,
            level=instance.current_level,
            reason=reason,
        )
        return True

    async def pause_escalation(self, alert_id: str) -> bool:
        instance = self._instances.get(alert_id)
        if instance is None or instance.status != EscalationStatus.ACTIVE:
            return False
        instance.status = EscalationStatus.PAUSED
        instance.next_escalation_at = None
        self._timers.cancel(alert_id)
        await self._save(instance)
        logger.info("escalation_paused", alert_id=alert_id, escalation_id=instance.id)
        return True

    async def resume_escalation(self, alert_id: str) -> bool:
        instance = self._instances.get(alert_id)
        if instance is None or instance.status != EscalationStatus.PAUSED:
            return False
        instance.status = EscalationStatus.ACTIVE
        logger.info("escalation_resumed", alert_id=alert_id, escalation_id=instance.id)
        rule = self._rules.get(instance.rule_id)
        if instance.current_level >= instance.max_level:
            await self._complete(instance)
            return True
        if rule is not None:
            self._schedule_next(instance, rule, arm=self._auto_armed(instance, rule))
        await self._save(instance)
        return True

    async def schedule_escalation(self, alert_id: str, delay_secs: float) -> bool:
        """Arm the next level to fire after *delay_secs*, replacing any pending timer."""
        instance = self._instances.get(alert_id)
        if instance is None or instance.status != EscalationStatus.ACTIVE:
            logger.warning("no_active_escalation", alert_id=alert_id)
            return False
        if instance.rule_id not in self._rules:
            logger.warning("escalation_rule_missing", alert_id=alert_id, rule_id=instance.rule_id)
            return False
        self._arm(instance, delay_secs)
        await self._save(instance)
        return True

    def _schedule_next(
        self,
        instance: EscalationInstance,
        rule: EscalationRule,
        arm: bool = True,
    ) -> None:
        level = rule.levels[instance.current_level]
        delay = level.delay_secs if level.delay_secs is not None else self._config.default_delay_secs
        if arm:
            self._arm(instance, delay)
        else:
            instance.next_escalation_at = self._clock() + delay
        logger.debug(
            "escalation_scheduled",
            alert_id=instance.alert_id,
            next_level=instance.current_level + 1,
            delay_secs=delay,
            timer=arm,
        )

    def _auto_armed(self, instance: EscalationInstance, rule: EscalationRule | None) -> bool:
        """Whether the level just reached hands off to a timer."""
        if not self._config.auto_escalation:
            return False
        if rule is None or instance.current_level == 0:
            return True
        return rule.levels[instance.current_level - 1].auto_escalate

    def _arm(self, instance: EscalationInstance, delay_secs: float) -> None:
        alert_id = instance.alert_id
        instance.next_escalation_at = self._clock() + delay_secs

        async def fire() -> None:
            await self.execute_escalation(alert_id)

        self._timers.schedule(alert_id, delay_secs, fire)

    async def _save(self, instance: EscalationInstance) -> None:
        await self._store.save_escalation(instance)

    # ── Bus handlers ────────────────────────────────────────────

    async def _on_alert_created(self, alert: Alert) -> None:
        if alert.escalation.max_level > 0:
            await self.start_escalation(alert)

    async def _on_alert_lifecycle(self, event: AlertLifecycleEvent) -> None:
        instance = self._instances.get(event.alert_id)
        if instance is None or instance.status not in _LIVE:
            return
        reason = event.status.value
        conditions = self._current_level(instance)
        if conditions is not None:
            stop = conditions.stop_conditions
            if reason == "acknowledged" and not stop.on_acknowledgment:
                return
            if reason == "resolved" and not stop.on_resolution:
                return
        await self.stop_escalation(event.alert_id, reason=reason)

    async def _on_escalation_requested(self, request: EscalationRequest) -> None:
        await self.schedule_escalation(request.alert_id, request.delay_secs)

    def _current_level(self, instance: EscalationInstance) -> EscalationLevel | None:
        rule = self._rules.get(instance.rule_id)
        if rule is None or not rule.levels:
            return None
        idx = min(max(instance.current_level, 1), len(rule.levels)) - 1
        return rule.levels[idx]

    # ── Queries ─────────────────────────────────────────────────

    def get_escalation_status(self, alert_id: str) -> EscalationInstance | None:
        instance = self._instances.get(alert_id)
        return instance.model_copy(deep=True) if instance else None

    def get_active_escalations(self) -> list[EscalationInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if i.status == EscalationStatus.ACTIVE
        ]

    # ── Background work / persistence ───────────────────────────

    async def process_due_escalations(self) -> int:
        """Fire every active instance whose ``next_escalation_at`` has passed."""
        now = self._clock()
        due = [
            alert_id
            for alert_id, i in self._instances.items()
            if i.status == EscalationStatus.ACTIVE
            and i.next_escalation_at is not None
            and now >= i.next_escalation_at
        ]
        fired = 0
        for alert_id in due:
            if await self.execute_escalation(alert_id):
                fired += 1
        if fired:
            logger.debug("escalation_sweep_fired", count=fired)
        return fired

    async def restore(self) -> None:
        """Reload rules and live instances, re-arming timers from their due times."""
        self._rules = {r.id: r for r in await self._store.get_escalation_rules()}
        now = self._clock()
        rearmed = 0
        for instance in await self._store.get_escalations(_LIVE):
            self._instances[instance.alert_id] = instance
            if instance.status != EscalationStatus.ACTIVE or instance.next_escalation_at is None:
                continue
            if self._auto_armed(instance, self._rules.get(instance.rule_id)):
                alert_id = instance.alert_id

                async def fire(alert_id: str = alert_id) -> None:
                    await self.execute_escalation(alert_id)

                self._timers.schedule(alert_id, max(0.0, instance.next_escalation_at - now), fire)
                rearmed += 1
        logger.info(
            "escalation_engine_restored",
            rules=len(self._rules),
            instances=len(self._instances),
            rearmed=rearmed,
        )

    def cleanup(self, retention_days: int | None = None) -> int:
        """Forget finished instances started before the retention window."""
        days = self._config.retention_days if retention_days is None else retention_days
        cutoff = self._clock() - days * _DAY_SECS
        finished = (EscalationStatus.COMPLETED, EscalationStatus.STOPPED)
        stale = [
            alert_id
            for alert_id, i in self._instances.items()
            if i.status in finished and i.started_at < cutoff
        ]
        for alert_id in stale:
            del self._instances[alert_id]
        if stale:
            logger.debug("escalations_cleaned_up", count=len(stale))
        return len(stale)

    async def start(self) -> None:
        if self._config.scheduled_check:
            await self._sweep.start()
        await self._cleanup_task.start()
        logger.info("escalation_engine_started", rules=len(self._rules))

    async def stop(self) -> None:
        await self._sweep.stop()
        await self._cleanup_task.stop()
        self._timers.cancel_all()
        logger.info("escalation_engine_stopped")
