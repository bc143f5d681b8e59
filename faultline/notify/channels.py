"""Channel adapters that deliver rendered notifications."""

from __future__ import annotations

import abc
import time
from email.message import EmailMessage
from typing import Any

import aiohttp
import aiosmtplib
import structlog

from faultline.core.config import (
    ChatConfig,
    EmailConfig,
    NotificationsConfig,
    PushConfig,
    SmsConfig,
    WebhookConfig,
)
from faultline.core.exceptions import ConfigurationError, DeliveryError
from faultline.core.types import AlertSeverity, ChannelConfig, ChannelType, NotificationRequest

logger = structlog.get_logger(__name__)

# Slack attachment / Discord embed colours keyed by priority.
_COLORS: dict[AlertSeverity, int] = {
    AlertSeverity.LOW: 0x2ECC71,       # green
    AlertSeverity.MEDIUM: 0xF1C40F,    # yellow
    AlertSeverity.HIGH: 0xF39C12,      # orange
    AlertSeverity.CRITICAL: 0xE74C3C,  # red
}


class NotificationChannel(abc.ABC):
    """Base class for notification delivery channels."""

    @abc.abstractmethod
    async def send(self, request: NotificationRequest) -> None:
        """Deliver a rendered notification.

        Raises:
            DeliveryError: The transport rejected or failed the delivery.
            ConfigurationError: Credentials or endpoints are missing.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""


class HttpChannel(NotificationChannel):
    """Shared aiohttp session handling for HTTP-based adapters."""

    name = "http"

    def __init__(self, timeout_secs: float = 30.0) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout_secs)
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _post(self, url: str, **kwargs: Any) -> None:
        try:
            session = self._get_session()
            async with session.post(url, **kwargs) as resp:
                if 200 <= resp.status < 300:
                    return
                body = await resp.text()
                logger.warning(
                    f"{self.name}_send_failed",
                    status=resp.status,
                    body=body[:200],
                )
                raise DeliveryError(f"{self.name} returned HTTP {resp.status}: {body[:200]}")
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise DeliveryError(f"{self.name} request failed: {exc}") from exc

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class EmailChannel(NotificationChannel):
    """Delivers notifications over SMTP."""

    def __init__(self, config: EmailConfig) -> None:
        self._config = config

    def _build_message(self, request: NotificationRequest) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._config.from_email
        msg["To"] = request.recipient
        msg["Subject"] = f"[{request.priority.value.upper()}] {request.subject}"
        msg.set_content(request.message)
        return msg

    async def send(self, request: NotificationRequest) -> None:
        cfg = self._config
        if not cfg.smtp_host or not cfg.from_email:
            raise ConfigurationError("email channel requires smtp_host and from_email")
        if "@" not in request.recipient:
            raise DeliveryError(f"invalid email recipient: {request.recipient}")

        password = cfg.password.get_secret_value()
        try:
            await aiosmtplib.send(
                self._build_message(request),
                hostname=cfg.smtp_host,
                port=cfg.smtp_port,
                username=cfg.username or None,
                password=password or None,
                use_tls=cfg.use_tls,
                start_tls=cfg.start_tls if not cfg.use_tls else False,
            )
        except aiosmtplib.SMTPException as exc:
            raise DeliveryError(f"smtp delivery failed: {exc}") from exc
        except OSError as exc:
            raise DeliveryError(f"smtp connection failed: {exc}") from exc

    async def close(self) -> None:
        return None


class ChatChannel(HttpChannel):
    """Posts to a Slack or Discord incoming webhook."""

    name = "chat"

    def __init__(self, config: ChatConfig) -> None:
        super().__init__()
        self._config = config

    def build_payload(self, request: NotificationRequest) -> dict[str, Any]:
        color = _COLORS.get(request.priority, 0x95A5A6)
        title = f"[{request.priority.value.upper()}] {request.subject}"
        fields = {"Alert ID": request.alert_id, "Priority": request.priority.value}

        if self._config.provider == "discord":
            return {
                "username": self._config.username,
                "embeds": [
                    {
                        "title": title,
                        "description": request.message,
                        "color": color,
                        "fields": [
                            {"name": k, "value": v, "inline": True} for k, v in fields.items()
                        ],
                    }
                ],
            }

        channel = request.recipient if request.recipient.startswith("#") else self._config.default_channel
        return {
            "channel": channel,
            "username": self._config.username,
            "attachments": [
                {
                    "color": f"#{color:06x}",
                    "title": title,
                    "text": request.message,
                    "fields": [{"title": k, "value": v, "short": True} for k, v in fields.items()],
                    "ts": int(time.time()),
                }
            ],
        }

    async def send(self, request: NotificationRequest) -> None:
        url = request.endpoint or self._config.webhook_url.get_secret_value()
        if not url:
            raise ConfigurationError("chat channel requires webhook_url")
        await self._post(url, json=self.build_payload(request))


class SmsChannel(HttpChannel):
    """Sends text messages through the Twilio REST API."""

    name = "sms"

    def __init__(self, config: SmsConfig) -> None:
        super().__init__()
        self._config = config

    async def send(self, request: NotificationRequest) -> None:
        cfg = self._config
        token = cfg.auth_token.get_secret_value()
        if not cfg.account_sid or not token or not cfg.from_number:
            raise ConfigurationError("sms channel requires account_sid, auth_token and from_number")

        url = f"{cfg.base_url}/Accounts/{cfg.account_sid}/Messages.json"
        body = f"[{request.priority.value.upper()}] {request.subject}: {request.message}"
        await self._post(
            url,
            data={"From": cfg.from_number, "To": request.recipient, "Body": body[:1600]},
            auth=aiohttp.BasicAuth(cfg.account_sid, token),
        )


class WebhookChannel(HttpChannel):
    """POSTs a JSON document describing the notification."""

    name = "webhook"

    def __init__(self, config: WebhookConfig) -> None:
        super().__init__(config.timeout_secs)
        self._config = config

    @staticmethod
    def build_payload(request: NotificationRequest) -> dict[str, Any]:
        return {
            "alertId": request.alert_id,
            "subject": request.subject,
            "message": request.message,
            "priority": request.priority.value,
            "recipient": request.recipient,
            "timestamp": time.time(),
            "metadata": request.metadata,
        }

    async def send(self, request: NotificationRequest) -> None:
        url = request.endpoint or self._config.url
        if not url:
            raise ConfigurationError("webhook channel requires a url")
        headers = {"Content-Type": "application/json", **self._config.headers}
        await self._post(url, json=self.build_payload(request), headers=headers)


class PushChannel(HttpChannel):
    """Forwards to a push gateway with bearer authentication."""

    name = "push"

    def __init__(self, config: PushConfig) -> None:
        super().__init__(config.timeout_secs)
        self._config = config

    async def send(self, request: NotificationRequest) -> None:
        api_key = self._config.api_key.get_secret_value()
        if not self._config.service_url or not api_key:
            raise ConfigurationError("push channel requires service_url and api_key")
        payload = {
            "to": request.recipient,
            "title": request.subject,
            "body": request.message,
            "priority": "high" if request.priority in (AlertSeverity.HIGH, AlertSeverity.CRITICAL) else "normal",
            "data": {"alertId": request.alert_id, **request.metadata},
        }
        await self._post(
            self._config.service_url,
            json=payload,
            headers={"Authorization": f"Bearer {api_key}"},
        )


def build_channel(config: ChannelConfig, settings: NotificationsConfig) -> NotificationChannel:
    """Create the adapter for *config*'s channel type from transport settings."""
    if config.type == ChannelType.EMAIL:
        return EmailChannel(settings.email)
    if config.type == ChannelType.CHAT:
        return ChatChannel(settings.chat)
    if config.type == ChannelType.SMS:
        return SmsChannel(settings.sms)
    if config.type == ChannelType.WEBHOOK:
        return WebhookChannel(settings.webhook)
    if config.type == ChannelType.PUSH:
        return PushChannel(settings.push)
    raise ConfigurationError(f"Unsupported channel type: {config.type}")
