#!/usr/bin/env python3
"""Service entrypoint: wires the pipeline and runs until interrupted.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config file
    python scripts/run.py --config config/settings.yaml

    # Override log level
    python scripts/run.py --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from faultline.core.config import load_settings
from faultline.core.logging import setup_logging
from faultline.factory import create_pipeline

logger = structlog.get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    """Start all components and run until interrupted."""
    settings = load_settings(args.config)
    setup_logging(level=args.log_level)

    logger.info(
        "faultline_starting",
        email=settings.notifications.email.enabled,
        chat=settings.notifications.chat.enabled,
        sms=settings.notifications.sms.enabled,
        webhook=settings.notifications.webhook.enabled,
        push=settings.notifications.push.enabled,
    )

    pipeline = await create_pipeline(settings)
    await pipeline.restore()
    await pipeline.start()
    logger.info("faultline_running")

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("faultline_shutting_down")
    await pipeline.stop()

    stats = pipeline.tracker.get_stats()
    metrics = pipeline.notifier.get_metrics()
    logger.info(
        "faultline_stopped",
        errors_captured=stats.get("captured"),
        notifications_sent=metrics.total_sent,
        notifications_failed=metrics.total_failed,
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the faultline error-tracking and alerting service.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
