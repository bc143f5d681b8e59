"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, SecretStr

from faultline.core.types import RateLimits, RetryPolicy

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class TrackerConfig(BaseModel):
    """Error capture, grouping and built-in alert checks."""

    real_time_alerts: bool = True
    error_grouping: bool = True
    breadcrumbs: bool = True
    max_breadcrumbs: int = 100
    breadcrumbs_per_event: int = 20
    max_recent_errors: int = 1000
    max_samples: int = 10
    fingerprint_cache_size: int = 10_000
    spike_multiplier: float = 5.0
    spike_window_secs: float = 300.0
    retention_days: int = 30
    cleanup_interval_secs: float = 3600.0
    analytics_interval_secs: float = 300.0
    environment: str = "development"
    version: str = "1.0.0"
    platform: str = sys.platform


class AlertsConfig(BaseModel):
    """Alert manager configuration."""

    service: str = "faultline"
    retention_days: int = 90
    max_alerts_in_memory: int = 10_000
    default_suppress_secs: float = 3600.0
    # Any enabled rule carrying a suppress action with a duration blocks
    # every alert it matches, independent of the suppression table.
    permanent_rule_suppression: bool = True
    script_timeout_secs: float = 30.0
    cleanup_interval_secs: float = 3600.0
    cache_cleanup_interval_secs: float = 1800.0
    metrics_interval_secs: float = 300.0


class EscalationConfig(BaseModel):
    """Escalation engine configuration."""

    default_delay_secs: float = 1800.0
    max_level: int = 5
    auto_escalation: bool = True
    scheduled_check: bool = True
    sweep_interval_secs: float = 60.0
    cleanup_interval_secs: float = 3600.0
    retention_days: int = 30


class EmailConfig(BaseModel):
    """SMTP transport for the email channel."""

    enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    use_tls: bool = False
    start_tls: bool = True
    username: str = ""
    password: SecretStr = SecretStr("")
    from_email: str = ""


class ChatConfig(BaseModel):
    """Team-chat incoming webhook (Slack or Discord)."""

    enabled: bool = False
    provider: Literal["slack", "discord"] = "slack"
    webhook_url: SecretStr = SecretStr("")
    default_channel: str = "#alerts"
    username: str = "faultline"


class SmsConfig(BaseModel):
    """Twilio-compatible SMS gateway."""

    enabled: bool = False
    account_sid: str = ""
    auth_token: SecretStr = SecretStr("")
    from_number: str = ""
    base_url: str = "https://api.twilio.com/2010-04-01"


class WebhookConfig(BaseModel):
    """Generic JSON webhook."""

    enabled: bool = False
    url: str = ""
    headers: dict[str, str] = {}
    timeout_secs: float = 30.0


class PushConfig(BaseModel):
    """Push notification relay."""

    enabled: bool = False
    service_url: str = ""
    api_key: SecretStr = SecretStr("")
    timeout_secs: float = 30.0


class NotificationsConfig(BaseModel):
    """Notification service configuration."""

    enable_retries: bool = True
    retry_policy: RetryPolicy = RetryPolicy()
    rate_limits: RateLimits = RateLimits()
    retry_sweep_interval_secs: float = 30.0
    retention_days: int = 30
    cleanup_interval_secs: float = 3600.0
    metrics_interval_secs: float = 300.0
    email: EmailConfig = EmailConfig()
    chat: ChatConfig = ChatConfig()
    sms: SmsConfig = SmsConfig()
    webhook: WebhookConfig = WebhookConfig()
    push: PushConfig = PushConfig()


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"


class Settings(BaseModel):
    """Root settings container."""

    tracker: TrackerConfig = TrackerConfig()
    alerts: AlertsConfig = AlertsConfig()
    escalation: EscalationConfig = EscalationConfig()
    notifications: NotificationsConfig = NotificationsConfig()
    logging: LoggingConfig = LoggingConfig()


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
