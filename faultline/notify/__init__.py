"""Notification delivery: channel adapters, templates, rate limits and retries."""

from faultline.notify.channels import (
    ChatChannel,
    EmailChannel,
    NotificationChannel,
    PushChannel,
    SmsChannel,
    WebhookChannel,
    build_channel,
)
from faultline.notify.rate_limit import ChannelRateLimiter
from faultline.notify.service import NotificationMetrics, NotificationService
from faultline.notify.templates import render, render_request

__all__ = [
    "ChannelRateLimiter",
    "ChatChannel",
    "EmailChannel",
    "NotificationChannel",
    "NotificationMetrics",
    "NotificationService",
    "PushChannel",
    "SmsChannel",
    "WebhookChannel",
    "build_channel",
    "render",
    "render_request",
]
