"""Tests for notification channels: HTTP mocking, SMTP, error handling."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import aiosmtplib
import pytest
from pydantic import SecretStr

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
from faultline.notify.channels import (
    ChatChannel,
    EmailChannel,
    PushChannel,
    SmsChannel,
    WebhookChannel,
    build_channel,
)


# ── Helpers ─────────────────────────────────────────────────────


def _request(**kw: object) -> NotificationRequest:
    defaults: dict[str, object] = {
        "alert_id": "alert-1",
        "recipient": "oncall@example.com",
        "channel": ChannelType.EMAIL,
        "subject": "Checkout failing",
        "message": "500s from /checkout",
        "priority": AlertSeverity.HIGH,
        "metadata": {"region": "eu-west-1"},
    }
    defaults.update(kw)
    return NotificationRequest(**defaults)  # type: ignore[arg-type]


def _mock_response(status: int = 200, text: str = "ok") -> AsyncMock:
    resp = AsyncMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def _attach_session(ch: object, resp: AsyncMock) -> MagicMock:
    mock_session = MagicMock()
    mock_session.post = MagicMock(return_value=resp)
    mock_session.closed = False
    ch._session = mock_session  # type: ignore[attr-defined]
    return mock_session


def _email_config(**kw: object) -> EmailConfig:
    defaults: dict[str, object] = {
        "enabled": True,
        "smtp_host": "smtp.example.com",
        "from_email": "alerts@example.com",
        "username": "alerts",
        "password": SecretStr("hunter2"),
    }
    defaults.update(kw)
    return EmailConfig(**defaults)  # type: ignore[arg-type]


# ── EmailChannel ───────────────────────────────────────────────


class TestEmailChannel:
    async def test_send_success(self) -> None:
        ch = EmailChannel(_email_config())
        with patch("faultline.notify.channels.aiosmtplib.send", new=AsyncMock()) as mock_send:
            await ch.send(_request())

        mock_send.assert_awaited_once()
        message = mock_send.call_args[0][0]
        assert message["To"] == "oncall@example.com"
        assert message["From"] == "alerts@example.com"
        assert message["Subject"] == "[HIGH] Checkout failing"
        kwargs = mock_send.call_args[1]
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["password"] == "hunter2"

    async def test_missing_host_is_configuration_error(self) -> None:
        ch = EmailChannel(_email_config(smtp_host=""))
        with pytest.raises(ConfigurationError):
            await ch.send(_request())

    async def test_invalid_recipient(self) -> None:
        ch = EmailChannel(_email_config())
        with pytest.raises(DeliveryError):
            await ch.send(_request(recipient="not-an-address"))

    async def test_smtp_error_becomes_delivery_error(self) -> None:
        ch = EmailChannel(_email_config())
        failing = AsyncMock(side_effect=aiosmtplib.SMTPException("relay denied"))
        with patch("faultline.notify.channels.aiosmtplib.send", new=failing):
            with pytest.raises(DeliveryError, match="relay denied"):
                await ch.send(_request())


# ── ChatChannel ────────────────────────────────────────────────


class TestChatChannel:
    async def test_slack_payload(self) -> None:
        ch = ChatChannel(ChatConfig(enabled=True, webhook_url=SecretStr("https://hooks.slack.test/x")))
        session = _attach_session(ch, _mock_response(200))

        await ch.send(_request(channel=ChannelType.CHAT, recipient="#ops"))

        url = session.post.call_args[0][0]
        payload = session.post.call_args[1]["json"]
        assert url == "https://hooks.slack.test/x"
        assert payload["channel"] == "#ops"
        attachment = payload["attachments"][0]
        assert attachment["title"] == "[HIGH] Checkout failing"
        assert attachment["color"] == "#f39c12"

    async def test_non_channel_recipient_uses_default(self) -> None:
        ch = ChatChannel(ChatConfig(default_channel="#alerts"))
        payload = ch.build_payload(_request(channel=ChannelType.CHAT, recipient="U123"))
        assert payload["channel"] == "#alerts"

    def test_discord_payload(self) -> None:
        ch = ChatChannel(ChatConfig(provider="discord"))
        payload = ch.build_payload(_request(channel=ChannelType.CHAT))
        embed = payload["embeds"][0]
        assert embed["description"] == "500s from /checkout"
        assert embed["color"] == 0xF39C12

    async def test_endpoint_overrides_webhook_url(self) -> None:
        ch = ChatChannel(ChatConfig(webhook_url=SecretStr("https://hooks.slack.test/x")))
        session = _attach_session(ch, _mock_response(200))
        await ch.send(_request(channel=ChannelType.CHAT, endpoint="https://other.test/y"))
        assert session.post.call_args[0][0] == "https://other.test/y"

    async def test_missing_url(self) -> None:
        ch = ChatChannel(ChatConfig())
        with pytest.raises(ConfigurationError):
            await ch.send(_request(channel=ChannelType.CHAT))

    async def test_http_error_status(self) -> None:
        ch = ChatChannel(ChatConfig(webhook_url=SecretStr("https://hooks.slack.test/x")))
        _attach_session(ch, _mock_response(500, "invalid_payload"))
        with pytest.raises(DeliveryError, match="HTTP 500"):
            await ch.send(_request(channel=ChannelType.CHAT))

    async def test_client_error(self) -> None:
        ch = ChatChannel(ChatConfig(webhook_url=SecretStr("https://hooks.slack.test/x")))
        session = _attach_session(ch, _mock_response(200))
        session.post = MagicMock(side_effect=aiohttp.ClientError("connection reset"))
        with pytest.raises(DeliveryError, match="connection reset"):
            await ch.send(_request(channel=ChannelType.CHAT))

    async def test_close_session(self) -> None:
        ch = ChatChannel(ChatConfig())
        mock_session = MagicMock()
        mock_session.closed = False
        mock_session.close = AsyncMock()
        ch._session = mock_session
        await ch.close()
        mock_session.close.assert_awaited_once()
        assert ch._session is None


# ── SmsChannel ─────────────────────────────────────────────────


class TestSmsChannel:
    async def test_twilio_request(self) -> None:
        ch = SmsChannel(
            SmsConfig(
                account_sid="AC123",
                auth_token=SecretStr("tok"),
                from_number="+15550000000",
            )
        )
        session = _attach_session(ch, _mock_response(201))

        await ch.send(_request(channel=ChannelType.SMS, recipient="+15551112222"))

        url = session.post.call_args[0][0]
        kwargs = session.post.call_args[1]
        assert url.endswith("/Accounts/AC123/Messages.json")
        assert kwargs["data"]["To"] == "+15551112222"
        assert kwargs["data"]["Body"].startswith("[HIGH] Checkout failing")
        assert kwargs["auth"].login == "AC123"

    async def test_missing_credentials(self) -> None:
        ch = SmsChannel(SmsConfig())
        with pytest.raises(ConfigurationError):
            await ch.send(_request(channel=ChannelType.SMS))


# ── WebhookChannel ─────────────────────────────────────────────


class TestWebhookChannel:
    async def test_payload_and_headers(self) -> None:
        ch = WebhookChannel(
            WebhookConfig(url="https://hooks.example.com/in", headers={"X-Token": "abc"})
        )
        session = _attach_session(ch, _mock_response(204))

        await ch.send(_request(channel=ChannelType.WEBHOOK))

        kwargs = session.post.call_args[1]
        assert kwargs["headers"] == {"Content-Type": "application/json", "X-Token": "abc"}
        payload = kwargs["json"]
        assert payload["alertId"] == "alert-1"
        assert payload["priority"] == "high"
        assert payload["metadata"] == {"region": "eu-west-1"}

    async def test_missing_url(self) -> None:
        ch = WebhookChannel(WebhookConfig())
        with pytest.raises(ConfigurationError):
            await ch.send(_request(channel=ChannelType.WEBHOOK))


# ── PushChannel ────────────────────────────────────────────────


class TestPushChannel:
    async def test_bearer_auth_and_priority(self) -> None:
        ch = PushChannel(
            PushConfig(service_url="https://push.example.com/send", api_key=SecretStr("k"))
        )
        session = _attach_session(ch, _mock_response(200))

        await ch.send(_request(channel=ChannelType.PUSH, priority=AlertSeverity.LOW))

        kwargs = session.post.call_args[1]
        assert kwargs["headers"] == {"Authorization": "Bearer k"}
        assert kwargs["json"]["priority"] == "normal"
        assert kwargs["json"]["data"]["alertId"] == "alert-1"


# ── build_channel ──────────────────────────────────────────────


class TestBuildChannel:
    @pytest.mark.parametrize(
        ("channel_type", "expected"),
        [
            (ChannelType.EMAIL, EmailChannel),
            (ChannelType.CHAT, ChatChannel),
            (ChannelType.SMS, SmsChannel),
            (ChannelType.WEBHOOK, WebhookChannel),
            (ChannelType.PUSH, PushChannel),
        ],
    )
    def test_adapter_per_type(self, channel_type: ChannelType, expected: type) -> None:
        channel = build_channel(
            ChannelConfig(id=channel_type.value, type=channel_type),
            NotificationsConfig(),
        )
        assert isinstance(channel, expected)
