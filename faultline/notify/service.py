"""NotificationService: channel routing, rate limits, retries and delivery metrics."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable

import structlog
from pydantic import BaseModel, Field

from faultline.core.bus import EventBus, Signal
from faultline.core.config import NotificationsConfig
from faultline.core.exceptions import (
    ConfigurationError,
    DeliveryError,
    PersistenceError,
    ValidationError,
)
from faultline.core.scheduler import PeriodicTask, TimerRegistry
from faultline.core.types import (
    AlertSeverity,
    ChannelConfig,
    ChannelTestResult,
    ChannelType,
    NotificationRequest,
    NotificationResult,
    NotificationStatus,
    NotificationTemplate,
    RetryPolicy,
)
from faultline.notify.channels import NotificationChannel, build_channel
from faultline.notify.rate_limit import ChannelRateLimiter
from faultline.notify.templates import render_request
from faultline.storage.base import AlertStore

logger = structlog.get_logger(__name__)

_DAY_SECS = 86400.0

_TEST_RECIPIENTS: dict[ChannelType, str] = {
    ChannelType.EMAIL: "test@example.com",
    ChannelType.CHAT: "#general",
    ChannelType.SMS: "+1234567890",
    ChannelType.WEBHOOK: "webhook-test",
    ChannelType.PUSH: "test-device-token",
}

_SENT = (NotificationStatus.SENT, NotificationStatus.DELIVERED)


# ── Metrics ─────────────────────────────────────────────────────


class ChannelMetrics(BaseModel):
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    delivery_rate: float = 0.0
    avg_delivery_secs: float = 0.0


class PriorityMetrics(BaseModel):
    sent: int = 0
    delivered: int = 0
    failed: int = 0


class NotificationMetrics(BaseModel):
    """Delivery report. ``delivery_rate`` is delivered / sent, in [0, 1]."""

    total_sent: int = 0
    total_delivered: int = 0
    total_failed: int = 0
    delivery_rate: float = 0.0
    avg_delivery_secs: float = 0.0
    by_channel: dict[str, ChannelMetrics] = Field(default_factory=dict)
    by_priority: dict[str, PriorityMetrics] = Field(default_factory=dict)
    error_causes: dict[str, int] = Field(default_factory=dict)
    rate_limit_hits: int = 0


def _avg_latency(results: list[NotificationResult]) -> float:
    latencies = [r.delivered_at - r.sent_at for r in results if r.delivered_at is not None]
    return sum(latencies) / len(latencies) if latencies else 0.0


def error_cause(error: str) -> str:
    """Leading token of an error message, up to the first colon."""
    return error.split(":", 1)[0].strip()


def compute_metrics(results: list[NotificationResult], rate_limit_hits: int = 0) -> NotificationMetrics:
    sent = [r for r in results if r.status in _SENT]
    delivered = [r for r in results if r.status == NotificationStatus.DELIVERED]
    failed = [r for r in results if r.status == NotificationStatus.FAILED]

    by_channel: dict[str, ChannelMetrics] = {}
    for channel in {r.channel for r in results}:
        subset = [r for r in results if r.channel == channel]
        ch_sent = sum(1 for r in subset if r.status in _SENT)
        ch_delivered = sum(1 for r in subset if r.status == NotificationStatus.DELIVERED)
        by_channel[channel.value] = ChannelMetrics(
            sent=ch_sent,
            delivered=ch_delivered,
            failed=sum(1 for r in subset if r.status == NotificationStatus.FAILED),
            delivery_rate=ch_delivered / ch_sent if ch_sent else 0.0,
            avg_delivery_secs=_avg_latency(subset),
        )

    by_priority: dict[str, PriorityMetrics] = {}
    for priority in AlertSeverity:
        subset = [r for r in results if r.priority == priority]
        by_priority[priority.value] = PriorityMetrics(
            sent=sum(1 for r in subset if r.status in _SENT),
            delivered=sum(1 for r in subset if r.status == NotificationStatus.DELIVERED),
            failed=sum(1 for r in subset if r.status == NotificationStatus.FAILED),
        )

    causes: dict[str, int] = {}
    for r in results:
        if r.error:
            cause = error_cause(r.error)
            causes[cause] = causes.get(cause, 0) + 1

    return NotificationMetrics(
        total_sent=len(sent),
        total_delivered=len(delivered),
        total_failed=len(failed),
        delivery_rate=len(delivered) / len(sent) if sent else 0.0,
        avg_delivery_secs=_avg_latency(results),
        by_channel=by_channel,
        by_priority=by_priority,
        error_causes=causes,
        rate_limit_hits=rate_limit_hits,
    )


# ── Service ─────────────────────────────────────────────────────


class NotificationService:
    """Delivers notifications through configured channels.

    - Each channel has its own adapter, rate limiter and (optional) retry
      policy overriding the service default.
    - Failed deliveries are retried with exponential backoff. Retry due
      times are persisted so ``restore()`` can rebuild the queue.
    - Every outcome is published: ``notification_sent``,
      ``notification_failed`` (on every failed attempt) and
      ``notification_delivered``.
    """

    def __init__(
        self,
        store: AlertStore,
        bus: EventBus,
        config: NotificationsConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config or NotificationsConfig()
        self._clock = clock
        self._channels: dict[str, ChannelConfig] = {}
        self._adapters: dict[str, NotificationChannel] = {}
        self._limiters: dict[str, ChannelRateLimiter] = {}
        self._templates: dict[str, NotificationTemplate] = {}
        self._results: dict[str, NotificationResult] = {}
        self._retry_queue: dict[str, float] = {}
        self._rate_limit_hits = 0
        self._timers = TimerRegistry("notification_retry")
        self._tasks = [
            PeriodicTask(
                "notification_retry_sweep",
                self._config.retry_sweep_interval_secs,
                self.process_retry_queue,
            ),
            PeriodicTask(
                "notification_cleanup",
                self._config.cleanup_interval_secs,
                self.cleanup,
            ),
            PeriodicTask(
                "notification_metrics",
                self._config.metrics_interval_secs,
                self.refresh_metrics,
            ),
        ]

    # ── Channels & templates ────────────────────────────────────

    async def configure_channel(
        self,
        config: ChannelConfig,
        adapter: NotificationChannel | None = None,
    ) -> None:
        """Register or replace a channel. Without *adapter* one is built from settings."""
        adapter = adapter or build_channel(config, self._config)
        previous = self._adapters.get(config.id)
        if previous is not None and previous is not adapter:
            await previous.close()
        self._channels[config.id] = config.model_copy(deep=True)
        self._adapters[config.id] = adapter
        self._limiters[config.id] = ChannelRateLimiter(config.rate_limits, self._clock)
        logger.info(
            "channel_configured",
            channel_id=config.id,
            channel_type=config.type.value,
            enabled=config.enabled,
        )

    async def remove_channel(self, channel_id: str) -> bool:
        if channel_id not in self._channels:
            return False
        del self._channels[channel_id]
        self._limiters.pop(channel_id, None)
        adapter = self._adapters.pop(channel_id, None)
        if adapter is not None:
            await adapter.close()
        logger.info("channel_removed", channel_id=channel_id)
        return True

    def get_channels(self) -> list[ChannelConfig]:
        return [c.model_copy(deep=True) for c in self._channels.values()]

    def add_template(self, template: NotificationTemplate) -> None:
        self._templates[template.id] = template.model_copy(deep=True)
        logger.debug("template_added", template_id=template.id)

    def _channel_for(self, channel_type: ChannelType) -> ChannelConfig | None:
        for config in self._channels.values():
            if config.type == channel_type and config.enabled:
                return config
        return None

    def _policy(self, config: ChannelConfig | None) -> RetryPolicy:
        if config is not None and config.retry_policy is not None:
            return config.retry_policy
        return self._config.retry_policy

    # ── Sending ─────────────────────────────────────────────────

    async def send_notification(self, request: NotificationRequest) -> str:
        """Deliver *request* and return the notification id.

        Delivery failures never raise; they leave the result ``failed``
        with a retry scheduled.

        Raises:
            ValidationError: The request names an unknown template.
            ConfigurationError: No enabled channel of the request's type.
        """
        template = None
        if request.template:
            template = self._templates.get(request.template)
            if template is None:
                raise ValidationError(f"Template not found: {request.template}")

        channel = self._channel_for(request.channel)
        if channel is None:
            raise ConfigurationError(f"No enabled {request.channel.value} channel configured")

        rendered = render_request(request, template) if template else request.model_copy(deep=True)
        result = NotificationResult(
            alert_id=request.alert_id,
            channel=request.channel,
            recipient=request.recipient,
            priority=request.priority,
            sent_at=self._clock(),
            request=rendered,
        )
        self._results[result.id] = result
        await self._attempt(result, channel)
        return result.id

    async def send_bulk(self, requests: Iterable[NotificationRequest]) -> list[str]:
        """Send concurrently. A request that cannot be started yields ""."""

        async def _one(request: NotificationRequest) -> str:
            try:
                return await self.send_notification(request)
            except (ValidationError, ConfigurationError) as exc:
                logger.warning(
                    "bulk_notification_rejected",
                    alert_id=request.alert_id,
                    channel=request.channel.value,
                    error=str(exc),
                )
                return ""

        return list(await asyncio.gather(*(_one(r) for r in requests)))

    async def _attempt(self, result: NotificationResult, channel: ChannelConfig) -> None:
        request = result.request
        if request is None:
            await self._fail(result, channel, "invalid: no rendered request to deliver", retryable=False)
            return

        limiter = self._limiters[channel.id]
        if not limiter.allow():
            self._rate_limit_hits += 1
            await self._fail(result, channel, f"rate_limited: channel {channel.id} limit reached")
            return

        adapter = self._adapters[channel.id]
        try:
            await adapter.send(request)
        except ConfigurationError as exc:
            await self._fail(result, channel, str(exc), retryable=False)
            return
        except DeliveryError as exc:
            await self._fail(result, channel, str(exc))
            return
        except Exception as exc:
            logger.exception("channel_adapter_error", channel_id=channel.id, notification_id=result.id)
            await self._fail(result, channel, f"{type(exc).__name__}: {exc}")
            return

        limiter.record()
        result.status = NotificationStatus.SENT
        result.sent_at = self._clock()
        result.error = None
        result.retry_at = None
        await self._save(result)
        logger.info(
            "notification_sent",
            notification_id=result.id,
            alert_id=result.alert_id,
            channel=result.channel.value,
            recipient=result.recipient,
            retry_count=result.retry_count,
        )
        await self._bus.publish(Signal.NOTIFICATION_SENT, result.model_copy(deep=True))

    async def _fail(
        self,
        result: NotificationResult,
        channel: ChannelConfig | None,
        error: str,
        retryable: bool = True,
    ) -> None:
        result.status = NotificationStatus.FAILED
        result.error = error
        result.retry_at = None

        policy = self._policy(channel)
        if retryable and self._config.enable_retries and result.retry_count < policy.max_retries:
            delay = policy.delay_for(result.retry_count)
            result.retry_at = self._clock() + delay
            self._schedule_retry(result.id, delay)

        await self._save(result)
        logger.warning(
            "notification_failed",
            notification_id=result.id,
            alert_id=result.alert_id,
            channel=result.channel.value,
            error=error,
            retry_count=result.retry_count,
            retry_at=result.retry_at,
        )
        await self._bus.publish(Signal.NOTIFICATION_FAILED, result.model_copy(deep=True))

    async def _save(self, result: NotificationResult) -> None:
        try:
            await self._store.save_notification(result)
        except PersistenceError:
            logger.error("notification_persist_failed", notification_id=result.id)

    # ── Retries ─────────────────────────────────────────────────

    def _schedule_retry(self, notification_id: str, delay_secs: float) -> None:
        self._retry_queue[notification_id] = self._clock() + delay_secs

        async def fire() -> None:
            await self._retry(notification_id)

        self._timers.schedule(notification_id, delay_secs, fire)

    async def _retry(self, notification_id: str) -> None:
        if self._retry_queue.pop(notification_id, None) is None:
            return
        self._timers.cancel(notification_id)
        result = self._results.get(notification_id)
        if result is None or result.status != NotificationStatus.FAILED:
            return

        channel = self._channel_for(result.channel)
        result.retry_count += 1
        if channel is None:
            await self._fail(result, None, f"unconfigured: no enabled {result.channel.value} channel")
            return
        logger.debug("notification_retry", notification_id=notification_id, attempt=result.retry_count)
        await self._attempt(result, channel)

    async def process_retry_queue(self) -> int:
        """Fire every retry whose due time has passed. Returns the number fired."""
        now = self._clock()
        due = [nid for nid, at in self._retry_queue.items() if at <= now]
        for nid in due:
            await self._retry(nid)
        return len(due)

    # ── Receipts & queries ──────────────────────────────────────

    async def mark_delivered(self, notification_id: str) -> bool:
        """Record a delivery receipt for a sent notification.

        Raises:
            ValidationError: Unknown notification id.
        """
        result = self._results.get(notification_id)
        if result is None:
            raise ValidationError(f"Notification not found: {notification_id}")
        if result.status != NotificationStatus.SENT:
            return False
        result.status = NotificationStatus.DELIVERED
        result.delivered_at = self._clock()
        await self._save(result)
        await self._bus.publish(Signal.NOTIFICATION_DELIVERED, result.model_copy(deep=True))
        return True

    def get_notification(self, notification_id: str) -> NotificationResult | None:
        result = self._results.get(notification_id)
        return result.model_copy(deep=True) if result else None

    def pending_retries(self) -> dict[str, float]:
        return dict(self._retry_queue)

    async def test_channel(self, channel_id: str) -> ChannelTestResult:
        """Send a synthetic low-priority message outside metrics and rate limits.

        Raises:
            ValidationError: Unknown channel id.
        """
        config = self._channels.get(channel_id)
        if config is None:
            raise ValidationError(f"Channel not found: {channel_id}")

        request = NotificationRequest(
            alert_id="test",
            recipient=_TEST_RECIPIENTS.get(config.type, "test-recipient"),
            channel=config.type,
            subject="Test Notification",
            message=f"Test notification for channel {config.name or config.id}",
            priority=AlertSeverity.LOW,
        )
        try:
            await self._adapters[channel_id].send(request)
        except Exception as exc:
            logger.warning("channel_test_failed", channel_id=channel_id, error=str(exc))
            return ChannelTestResult(success=False, error=str(exc))
        logger.info("channel_test_passed", channel_id=channel_id)
        return ChannelTestResult(success=True)

    def get_metrics(self) -> NotificationMetrics:
        return compute_metrics(list(self._results.values()), self._rate_limit_hits)

    # ── Background work / persistence ───────────────────────────

    async def refresh_metrics(self) -> None:
        await self._bus.publish(
            Signal.METRICS_UPDATED,
            {"component": "notifications", "metrics": self.get_metrics()},
        )

    async def cleanup(self, retention_days: int | None = None) -> int:
        """Forget results older than the retention window that are not awaiting a retry."""
        days = self._config.retention_days if retention_days is None else retention_days
        cutoff = self._clock() - days * _DAY_SECS
        stale = [
            nid
            for nid, r in self._results.items()
            if r.sent_at < cutoff and nid not in self._retry_queue
        ]
        for nid in stale:
            del self._results[nid]
        if stale:
            logger.debug("notifications_cleaned_up", count=len(stale))
        return len(stale)

    async def restore(self) -> None:
        """Reload results and rebuild the retry queue from persisted due times."""
        now = self._clock()
        requeued = 0
        for result in await self._store.get_notifications():
            self._results[result.id] = result
            if result.status == NotificationStatus.FAILED and result.retry_at is not None:
                self._schedule_retry(result.id, max(0.0, result.retry_at - now))
                requeued += 1
        logger.info("notification_service_restored", results=len(self._results), requeued=requeued)

    async def start(self) -> None:
        for task in self._tasks:
            await task.start()
        logger.info("notification_service_started", channels=len(self._channels))

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
        self._timers.cancel_all()
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception:
                logger.exception("channel_close_error", adapter=type(adapter).__name__)
        logger.info("notification_service_stopped")
