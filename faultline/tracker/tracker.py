"""Capture, fingerprint, group and analyse application errors."""

from __future__ import annotations

import time
import traceback
from collections import deque
from collections.abc import Callable
from typing import Any

import psutil
import structlog

from faultline.core.bus import EventBus, Signal
from faultline.core.config import TrackerConfig
from faultline.core.exceptions import PersistenceError
from faultline.core.scheduler import PeriodicTask
from faultline.core.types import (
    AlertSeverity,
    AlertSpec,
    AlertType,
    Breadcrumb,
    BreadcrumbLevel,
    ErrorContext,
    ErrorEvent,
    ErrorFilter,
    ErrorGroup,
    ErrorGroupUpdate,
    ErrorLevel,
    ErrorMetadata,
    GroupStatus,
    PerformanceSnapshot,
    TrendPoint,
)
from faultline.storage.base import ErrorStore
from faultline.tracker.analytics import ErrorAnalytics, compute_analytics
from faultline.tracker.fingerprint import Fingerprinter
from faultline.tracker.grouping import ErrorGrouper

logger = structlog.get_logger(__name__)

_DAY_SECS = 86400.0
_WEEK_SECS = 7 * _DAY_SECS


class ErrorTracker:
    """Entry point for error ingestion.

    ``capture_error`` is all-or-nothing: the event is stored and grouped
    before it is buffered or any signal is published, and a store failure
    propagates to the caller as ``PersistenceError``.

    Alert-worthy conditions are published as ``error_alert`` signals
    (``AlertSpec`` payloads) without waiting on subscribers. Each check is
    isolated, so one failing check never fails the capture.
    """

    def __init__(
        self,
        store: ErrorStore,
        bus: EventBus,
        config: TrackerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config or TrackerConfig()
        self._clock = clock
        self._fingerprinter = Fingerprinter(self._config.fingerprint_cache_size)
        self._grouper = ErrorGrouper(store, max_samples=self._config.max_samples)
        # Newest first.
        self._recent: deque[ErrorEvent] = deque(maxlen=self._config.max_recent_errors)
        self._breadcrumbs: deque[Breadcrumb] = deque(maxlen=self._config.max_breadcrumbs)
        self._process = psutil.Process()
        self._captured = 0
        self._alerts_raised = 0
        self._tasks = [
            PeriodicTask("tracker_cleanup", self._config.cleanup_interval_secs, self.cleanup),
            PeriodicTask(
                "tracker_analytics",
                self._config.analytics_interval_secs,
                self.refresh_analytics,
            ),
        ]

    # ── Capture ─────────────────────────────────────────────────

    async def capture_error(
        self,
        error: BaseException | str,
        context: ErrorContext | dict[str, Any] | None = None,
        metadata: ErrorMetadata | dict[str, Any] | None = None,
        level: ErrorLevel = ErrorLevel.ERROR,
        *,
        stack_trace: str | None = None,
        error_type: str | None = None,
    ) -> str:
        """Record one error occurrence and return its id.

        Args:
            error: An exception (class name becomes the type, its traceback
                the stack) or a plain message.
            context: Where it happened. Environment, version and platform
                default from config.
            metadata: Tags, extras and request metadata.
            level: Severity of the occurrence.
            stack_trace: Explicit stack, overriding the exception's.
            error_type: Explicit type, overriding the derived one.

        Raises:
            PersistenceError: The store rejected the event or its group.
        """
        event = self._build_event(error, context, metadata, level, stack_trace, error_type)

        group: ErrorGroup | None = None
        created = False
        try:
            await self._store.store_error(event)
            if self._config.error_grouping:
                try:
                    group, created = await self._grouper.add(event)
                except PersistenceError:
                    await self._discard(event)
                    raise
        except PersistenceError:
            logger.error(
                "error_capture_failed",
                fingerprint=event.fingerprint,
                type=event.type,
            )
            raise

        self._recent.appendleft(event)
        self._captured += 1

        self._bus.publish_nowait(Signal.ERROR_CAPTURED, event)
        if group is not None:
            if created:
                self._bus.publish_nowait(Signal.NEW_ERROR_GROUP, group)
            else:
                self._bus.publish_nowait(
                    Signal.ERROR_GROUP_UPDATED,
                    ErrorGroupUpdate(fingerprint=group.fingerprint, count=group.count),
                )

        if self._config.real_time_alerts:
            self._check_alerts(event, created)

        logger.debug(
            "error_captured",
            error_id=event.id,
            fingerprint=event.fingerprint,
            level=event.level.value,
            type=event.type,
        )
        return event.id

    def add_breadcrumb(
        self,
        category: str,
        message: str,
        level: BreadcrumbLevel = BreadcrumbLevel.INFO,
        data: dict[str, Any] | None = None,
    ) -> None:
        if not self._config.breadcrumbs:
            return
        crumb = Breadcrumb(
            timestamp=self._clock(),
            category=category,
            message=message,
            level=level,
            data=data or {},
        )
        self._breadcrumbs.appendleft(crumb)
        self._bus.publish_nowait(Signal.BREADCRUMB_ADDED, crumb)

    def _build_event(
        self,
        error: BaseException | str,
        context: ErrorContext | dict[str, Any] | None,
        metadata: ErrorMetadata | dict[str, Any] | None,
        level: ErrorLevel,
        stack_trace: str | None,
        error_type: str | None,
    ) -> ErrorEvent:
        if isinstance(error, BaseException):
            message = str(error)
            etype = error_type or type(error).__name__
            if stack_trace is None and error.__traceback__ is not None:
                stack_trace = "".join(traceback.format_exception(error))
        else:
            message = error
            etype = error_type or "GenericError"

        ctx = self._merge_context(context)
        meta = metadata if isinstance(metadata, ErrorMetadata) else ErrorMetadata(**(metadata or {}))

        return ErrorEvent(
            fingerprint=self._fingerprinter.fingerprint(etype, message, stack_trace),
            timestamp=self._clock(),
            level=level,
            message=message,
            type=etype,
            stack_trace=stack_trace,
            context=ctx,
            metadata=meta,
            breadcrumbs=list(self._breadcrumbs)[: self._config.breadcrumbs_per_event],
            performance=self._performance(),
        )

    def _merge_context(self, context: ErrorContext | dict[str, Any] | None) -> ErrorContext:
        values: dict[str, Any] = {
            "environment": self._config.environment,
            "version": self._config.version,
            "platform": self._config.platform,
        }
        if isinstance(context, ErrorContext):
            values.update(context.model_dump(exclude_unset=True))
        elif context:
            values.update({k: v for k, v in context.items() if v is not None})
        return ErrorContext(**values)

    async def _discard(self, event: ErrorEvent) -> None:
        """Roll back a stored event whose group could not be written."""
        try:
            await self._store.delete_error(event.id)
        except PersistenceError:
            logger.error("error_rollback_failed", error_id=event.id, fingerprint=event.fingerprint)

    def _performance(self) -> PerformanceSnapshot:
        try:
            with self._process.oneshot():
                cpu = self._process.cpu_times().user
                mem = self._process.memory_info().rss / (1024 * 1024)
        except psutil.Error:
            logger.warning("performance_snapshot_failed")
            return PerformanceSnapshot(queue_size=len(self._recent))
        return PerformanceSnapshot(cpu_seconds=cpu, memory_mb=mem, queue_size=len(self._recent))

    # ── Built-in alert checks ───────────────────────────────────

    def _check_alerts(self, event: ErrorEvent, new_group: bool) -> None:
        checks: list[tuple[str, Callable[[], AlertSpec | None]]] = [
            ("critical_error", lambda: self._critical_alert(event)),
            ("new_error_group", lambda: self._new_group_alert(event, new_group)),
            ("error_rate_spike", self._spike_alert),
        ]
        for name, check in checks:
            try:
                spec = check()
            except Exception:
                logger.exception("alert_check_failed", check=name, error_id=event.id)
                continue
            if spec is not None:
                self._alerts_raised += 1
                self._bus.publish_nowait(Signal.ERROR_ALERT, spec)

    def _critical_alert(self, event: ErrorEvent) -> AlertSpec | None:
        if event.level not in (ErrorLevel.CRITICAL, ErrorLevel.FATAL):
            return None
        return AlertSpec(
            type=AlertType.ERROR,
            severity=AlertSeverity.CRITICAL,
            title=f"{event.level.value.upper()}: {event.type}",
            message=event.message,
            source="error_tracker",
            metadata={
                "error_id": event.id,
                "fingerprint": event.fingerprint,
                "workflow_id": event.context.workflow_id,
                "node_id": event.context.node_id,
                "stack_trace": event.stack_trace,
            },
        )

    def _new_group_alert(self, event: ErrorEvent, new_group: bool) -> AlertSpec | None:
        if not new_group:
            return None
        return AlertSpec(
            type=AlertType.ERROR,
            severity=AlertSeverity.MEDIUM,
            title="New Error Type Detected",
            message=f'New error type "{event.type}" detected in {event.context.environment}',
            source="error_tracker",
            metadata={
                "fingerprint": event.fingerprint,
                "error_type": event.type,
                "environment": event.context.environment,
            },
        )

    def _spike_alert(self) -> AlertSpec | None:
        now = self._clock()
        window = self._config.spike_window_secs
        recent = older = 0
        for e in self._recent:
            age = now - e.timestamp
            if age <= window:
                recent += 1
            elif age <= 2 * window:
                older += 1
        if older == 0:
            return None

        minutes = window / 60.0
        recent_rate = recent / minutes
        older_rate = older / minutes
        if recent_rate <= older_rate * self._config.spike_multiplier:
            return None
        return AlertSpec(
            type=AlertType.ERROR,
            severity=AlertSeverity.HIGH,
            title="Error Rate Spike Detected",
            message=(
                f"Error rate increased from {older_rate:.1f}/min to {recent_rate:.1f}/min"
            ),
            source="error_tracker",
            metadata={
                "recent_rate": recent_rate,
                "older_rate": older_rate,
                "spike_ratio": recent_rate / older_rate,
            },
        )

    # ── Queries ─────────────────────────────────────────────────

    def get_recent_errors(self, limit: int = 50) -> list[ErrorEvent]:
        return list(self._recent)[:limit]

    def get_breadcrumbs(self, limit: int | None = None) -> list[Breadcrumb]:
        crumbs = list(self._breadcrumbs)
        return crumbs if limit is None else crumbs[:limit]

    async def get_error_group(self, fingerprint: str) -> ErrorGroup | None:
        return await self._store.get_error_group(fingerprint)

    async def search_errors(self, query: ErrorFilter) -> tuple[list[ErrorEvent], int]:
        return await self._store.search_errors(query)

    async def get_error_trends(
        self,
        time_range_secs: float = _WEEK_SECS,
        granularity: str = "hour",
    ) -> list[TrendPoint]:
        end = self._clock()
        return await self._store.get_error_trends(end - time_range_secs, end, granularity)

    async def get_analytics(self, time_range_secs: float = _DAY_SECS) -> ErrorAnalytics:
        end = self._clock()
        start = end - time_range_secs
        events = await self._store.get_errors_in_range(start, end)
        groups = await self._store.get_error_groups(limit=10_000)
        return compute_analytics(events, groups, start, end)

    def get_stats(self) -> dict[str, object]:
        by_level: dict[str, int] = {}
        for e in self._recent:
            by_level[e.level.value] = by_level.get(e.level.value, 0) + 1
        return {
            "captured": self._captured,
            "alerts_raised": self._alerts_raised,
            "recent_errors": len(self._recent),
            "recent_by_level": by_level,
            "breadcrumbs": len(self._breadcrumbs),
            "error_groups": len(self._grouper),
            "fingerprint_cache": len(self._fingerprinter),
        }

    # ── Group lifecycle ─────────────────────────────────────────

    async def update_error_group_status(
        self,
        fingerprint: str,
        status: GroupStatus,
        resolved_by: str | None = None,
        resolution: str | None = None,
    ) -> ErrorGroup:
        """Set a group's status; resolving stamps ``resolved_at``.

        Raises:
            ValidationError: Unknown fingerprint.
        """
        now = self._clock()

        def mutate(group: ErrorGroup) -> None:
            group.status = status
            if status == GroupStatus.RESOLVED:
                group.resolved_at = now
                group.resolved_by = resolved_by
                group.resolution = resolution
            elif status == GroupStatus.OPEN:
                group.resolved_at = None
                group.resolved_by = None
                group.resolution = None

        group = await self._grouper.update(fingerprint, mutate)
        await self._bus.publish(
            Signal.ERROR_GROUP_UPDATED,
            ErrorGroupUpdate(
                fingerprint=fingerprint,
                status=status,
                resolved_by=resolved_by,
                resolution=resolution,
                count=group.count,
            ),
        )
        logger.info(
            "error_group_status_updated",
            fingerprint=fingerprint,
            status=status.value,
            resolved_by=resolved_by,
        )
        return group

    async def assign_error_group(self, fingerprint: str, assigned_to: str) -> ErrorGroup:
        """Assign a group to a user.

        Raises:
            ValidationError: Unknown fingerprint.
        """

        def mutate(group: ErrorGroup) -> None:
            group.assigned_to = assigned_to

        group = await self._grouper.update(fingerprint, mutate)
        await self._bus.publish(
            Signal.ERROR_GROUP_ASSIGNED,
            ErrorGroupUpdate(fingerprint=fingerprint, assigned_to=assigned_to),
        )
        logger.info("error_group_assigned", fingerprint=fingerprint, assigned_to=assigned_to)
        return group

    # ── Background work ─────────────────────────────────────────

    async def cleanup(self) -> int:
        """Drop buffered state past retention and prune the store."""
        cutoff = self._clock() - self._config.retention_days * _DAY_SECS

        # Buffers are newest first, so stale entries sit at the right.
        while self._recent and self._recent[-1].timestamp < cutoff:
            self._recent.pop()
        while self._breadcrumbs and self._breadcrumbs[-1].timestamp < cutoff:
            self._breadcrumbs.pop()
        self._grouper.evict_before(cutoff)

        removed = await self._store.cleanup(self._config.retention_days)
        logger.debug(
            "tracker_cleanup_completed",
            removed=removed,
            recent_errors=len(self._recent),
            breadcrumbs=len(self._breadcrumbs),
        )
        return removed

    async def refresh_analytics(self) -> ErrorAnalytics:
        analytics = await self.get_analytics()
        await self._bus.publish(Signal.METRICS_UPDATED, analytics)
        return analytics

    async def start(self) -> None:
        for task in self._tasks:
            await task.start()
        logger.info("error_tracker_started")

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
        logger.info("error_tracker_stopped")
