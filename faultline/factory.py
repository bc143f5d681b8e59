"""Convenience factory for wiring the error-tracking pipeline."""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from faultline.alerts.manager import AlertManager
from faultline.core.bus import EventBus
from faultline.core.config import Settings
from faultline.core.types import ChannelConfig, ChannelType
from faultline.escalation.engine import EscalationEngine
from faultline.notify.service import NotificationService
from faultline.storage.base import AlertStore, ErrorStore
from faultline.storage.memory import MemoryAlertStore, MemoryErrorStore
from faultline.tracker.tracker import ErrorTracker

logger = structlog.get_logger(__name__)


class Pipeline:
    """The four components sharing one bus, started and stopped together."""

    def __init__(
        self,
        bus: EventBus,
        tracker: ErrorTracker,
        notifier: NotificationService,
        alerts: AlertManager,
        escalation: EscalationEngine,
    ) -> None:
        self.bus = bus
        self.tracker = tracker
        self.notifier = notifier
        self.alerts = alerts
        self.escalation = escalation

    async def restore(self) -> None:
        """Re-seed in-memory state (rules, suppressions, timers) from the stores."""
        await self.notifier.restore()
        await self.alerts.restore()
        await self.escalation.restore()

    async def start(self) -> None:
        await self.notifier.start()
        await self.alerts.start()
        await self.escalation.start()
        await self.tracker.start()
        logger.info("pipeline_started")

    async def stop(self) -> None:
        await self.tracker.stop()
        await self.escalation.stop()
        await self.alerts.stop()
        await self.notifier.stop()
        await self.bus.drain()
        logger.info("pipeline_stopped")


def _enabled_channels(settings: Settings) -> list[ChannelConfig]:
    notifications = settings.notifications
    enabled = {
        ChannelType.EMAIL: notifications.email.enabled,
        ChannelType.CHAT: notifications.chat.enabled,
        ChannelType.SMS: notifications.sms.enabled,
        ChannelType.WEBHOOK: notifications.webhook.enabled,
        ChannelType.PUSH: notifications.push.enabled,
    }
    return [
        ChannelConfig(
            id=channel_type.value,
            type=channel_type,
            name=channel_type.value,
            rate_limits=notifications.rate_limits,
        )
        for channel_type, on in enabled.items()
        if on
    ]


async def create_pipeline(
    settings: Settings,
    error_store: ErrorStore | None = None,
    alert_store: AlertStore | None = None,
    bus: EventBus | None = None,
    clock: Callable[[], float] = time.time,
) -> Pipeline:
    """Build every component from *settings*.

    Stores default to the in-memory implementations. Channels enabled in
    ``settings.notifications`` are configured on the notification service.
    """
    bus = bus or EventBus()
    error_store = error_store or MemoryErrorStore(clock)
    alert_store = alert_store or MemoryAlertStore(clock)

    notifier = NotificationService(alert_store, bus, settings.notifications, clock)
    for channel in _enabled_channels(settings):
        await notifier.configure_channel(channel)

    pipeline = Pipeline(
        bus=bus,
        tracker=ErrorTracker(error_store, bus, settings.tracker, clock),
        notifier=notifier,
        alerts=AlertManager(alert_store, bus, notifier, settings.alerts, clock),
        escalation=EscalationEngine(alert_store, bus, settings.escalation, clock),
    )
    logger.info(
        "pipeline_created",
        channels=[c.id for c in notifier.get_channels()],
    )
    return pipeline
