"""
Notification channels and the dispatcher that fans an alert out over them.

Channels:
    - ``EmailChannel`` -- Amazon SES ``send_email`` (HTML card + plain text).
    - ``PushChannel``  -- OneSignal REST ``POST /api/v1/notifications``.

Each channel returns a ``ChannelOutcome`` instead of raising:

    - ``sent``    -- provider accepted the message; ``provider_id`` is set.
    - ``invalid`` -- recipient data cannot be delivered to (malformed email
                     address, no registered push device). Not retried.
    - ``failed``  -- transport or provider failure, including timeouts.

``NotificationDispatcher.dispatch`` runs the user's enabled channels
concurrently, so one channel failing or hanging never blocks the other.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from worker.alerts.logic.templates import condition_color, condition_emoji
from worker.alerts.models import (
    ChannelOutcome,
    ChannelType,
    DeliveryStatus,
    Recipient,
    RenderedMessage,
    Trigger,
)

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ONESIGNAL_URL = "https://onesignal.com/api/v1/notifications"


def is_valid_email(address: str | None) -> bool:
    if not address:
        return False
    return _EMAIL_RE.match(address) is not None


def _condition_text(trigger: Trigger) -> str:
    return trigger.condition.value if trigger.condition is not None else "good"


class NotificationChannel(ABC):
    """Abstract base for a delivery channel."""

    channel_type: ChannelType

    @abstractmethod
    def can_deliver(self, recipient: Recipient) -> bool:
        """Whether the channel is usable for this recipient at all."""

    @abstractmethod
    async def send(
        self, recipient: Recipient, message: RenderedMessage, trigger: Trigger
    ) -> ChannelOutcome:
        """Deliver one message. Must not raise for provider failures."""

    def _outcome(
        self,
        status: DeliveryStatus,
        provider_id: str | None = None,
        error: str | None = None,
    ) -> ChannelOutcome:
        return ChannelOutcome(
            channel=self.channel_type, status=status, provider_id=provider_id, error=error
        )


# ---------------------------------------------------------------------------
# Email (SES)
# ---------------------------------------------------------------------------


def render_email_html(message: str, spot_name: str, condition: str, emoji: str | None) -> str:
    """HTML card for an alert email. ``message`` and ``spot_name`` are escaped."""
    color = condition_color(condition)
    icon = emoji or condition_emoji(condition)
    spot = html.escape(spot_name)
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Surf Alert: {spot}</title>
</head>
<body style="margin: 0; padding: 0; background-color: #0a0a0a; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;">
  <table role="presentation" style="width: 100%; border-collapse: collapse;">
    <tr>
      <td style="padding: 40px 20px;">
        <table role="presentation" style="max-width: 500px; margin: 0 auto; background-color: #1a1a1a; border-radius: 12px; overflow: hidden;">
          <tr>
            <td style="background: linear-gradient(135deg, {color} 0%, #1a1a1a 100%); padding: 24px; text-align: center;">
              <div style="font-size: 48px; margin-bottom: 8px;">{icon}</div>
              <h1 style="margin: 0; color: #ffffff; font-size: 24px; font-weight: 600;">{spot}</h1>
              <div style="display: inline-block; background-color: {color}; color: #000000; padding: 4px 12px; border-radius: 16px; font-size: 12px; font-weight: 600; text-transform: uppercase; margin-top: 8px;">
                {html.escape(condition)}
              </div>
            </td>
          </tr>
          <tr>
            <td style="padding: 32px 24px;">
              <p style="margin: 0; color: #e5e5e5; font-size: 16px; line-height: 1.6;">
                {html.escape(message)}
              </p>
            </td>
          </tr>
          <tr>
            <td style="padding: 24px; border-top: 1px solid #2a2a2a; text-align: center;">
              <p style="margin: 0; color: #666666; font-size: 12px;">Surf Alerts</p>
              <p style="margin: 8px 0 0 0; color: #444444; font-size: 11px;">
                You received this because you set up a trigger for {spot}
              </p>
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>
"""


def ses_client_config(dispatch_timeout: float) -> Config:
    """botocore config whose connect and read timeouts, with no retries,
    fit inside one dispatch timeout."""
    per_phase = max(1.0, dispatch_timeout / 3)
    return Config(
        connect_timeout=per_phase,
        read_timeout=per_phase,
        retries={"total_max_attempts": 1},
    )


class EmailChannel(NotificationChannel):
    """Delivers alerts through Amazon SES.

    The boto3 client is synchronous; calls run in a worker thread so they
    do not block the event loop. A dispatcher timeout cannot stop a
    call already in flight, so the client should come from
    ``ses_client_config`` and give up before the dispatcher does.

    Parameters
    ----------
    ses_client : Any
        A boto3 ``ses`` client.
    sender : str
        ``From`` address, e.g. ``"Surf Alerts <alerts@example.com>"``.
    """

    channel_type = ChannelType.EMAIL

    def __init__(self, ses_client: Any, sender: str) -> None:
        self._ses = ses_client
        self._sender = sender

    def can_deliver(self, recipient: Recipient) -> bool:
        return is_valid_email(recipient.email)

    async def send(
        self, recipient: Recipient, message: RenderedMessage, trigger: Trigger
    ) -> ChannelOutcome:
        if not is_valid_email(recipient.email):
            logger.info("Invalid email address for user=%s", recipient.user_id)
            return self._outcome(DeliveryStatus.INVALID, error="invalid email address")

        condition = _condition_text(trigger)
        body_html = render_email_html(message.body, trigger.spot.name, condition, trigger.emoji)

        try:
            response = await asyncio.to_thread(
                self._ses.send_email,
                Source=self._sender,
                Destination={"ToAddresses": [recipient.email]},
                Message={
                    "Subject": {"Data": message.subject, "Charset": "UTF-8"},
                    "Body": {
                        "Html": {"Data": body_html, "Charset": "UTF-8"},
                        "Text": {"Data": message.body, "Charset": "UTF-8"},
                    },
                },
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning(
                "Email send failed for user=%s trigger=%s: %s",
                recipient.user_id,
                trigger.id,
                exc,
            )
            return self._outcome(DeliveryStatus.FAILED, error=str(exc))

        message_id = response.get("MessageId")
        logger.info("Email sent to user=%s message_id=%s", recipient.user_id, message_id)
        return self._outcome(DeliveryStatus.SENT, provider_id=message_id)


# ---------------------------------------------------------------------------
# Push (OneSignal)
# ---------------------------------------------------------------------------


class PushChannel(NotificationChannel):
    """Delivers alerts as OneSignal push notifications to player ids.

    Parameters
    ----------
    http_client : httpx.AsyncClient
        Shared client for the run.
    app_id, api_key : str or None
        OneSignal credentials. The channel is unconfigured if either is missing.
    dashboard_url : str
        URL opened when the notification is tapped.
    ttl_seconds : int
        Notification time-to-live; conditions go stale quickly.
    max_length : int
        Body truncation length.
    """

    channel_type = ChannelType.PUSH

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        app_id: str | None,
        api_key: str | None,
        dashboard_url: str,
        ttl_seconds: int = 7200,
        max_length: int = 200,
    ) -> None:
        self._client = http_client
        self._app_id = app_id
        self._api_key = api_key
        self._dashboard_url = dashboard_url
        self._ttl = ttl_seconds
        self._max_length = max_length

    @property
    def configured(self) -> bool:
        return bool(self._app_id and self._api_key)

    def can_deliver(self, recipient: Recipient) -> bool:
        return self.configured and bool(recipient.push_player_ids)

    def build_payload(
        self, player_ids: list[str], message: RenderedMessage, trigger: Trigger
    ) -> dict[str, Any]:
        return {
            "app_id": self._app_id,
            "include_player_ids": player_ids,
            "headings": {"en": message.push_title},
            "contents": {"en": message.body[: self._max_length]},
            "url": self._dashboard_url,
            "data": {
                "spotName": trigger.spot.name,
                "condition": _condition_text(trigger),
                "emoji": trigger.emoji,
                "type": "surf_alert",
            },
            "ttl": self._ttl,
            "ios_badgeType": "Increase",
            "ios_badgeCount": 1,
        }

    async def send(
        self, recipient: Recipient, message: RenderedMessage, trigger: Trigger
    ) -> ChannelOutcome:
        if not self.configured:
            return self._outcome(DeliveryStatus.FAILED, error="push not configured")
        if not recipient.push_player_ids:
            logger.info("No active push subscriptions for user=%s", recipient.user_id)
            return self._outcome(DeliveryStatus.INVALID, error="no registered push device")

        payload = self.build_payload(recipient.push_player_ids, message, trigger)
        try:
            resp = await self._client.post(
                ONESIGNAL_URL,
                json=payload,
                headers={"Authorization": f"Basic {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Push send failed for user=%s trigger=%s: %s",
                recipient.user_id,
                trigger.id,
                exc,
            )
            return self._outcome(DeliveryStatus.FAILED, error=str(exc))

        if not resp.is_success:
            logger.warning(
                "OneSignal returned %d for user=%s trigger=%s",
                resp.status_code,
                recipient.user_id,
                trigger.id,
            )
            return self._outcome(
                DeliveryStatus.FAILED, error=f"HTTP {resp.status_code}: {resp.text[:200]}"
            )

        body = resp.json()
        notification_id = body.get("id")
        if not notification_id:
            # OneSignal answers 200 with an errors list when no player id is subscribed.
            errors = body.get("errors")
            logger.info("OneSignal rejected push for user=%s: %s", recipient.user_id, errors)
            return self._outcome(DeliveryStatus.INVALID, error=str(errors))

        logger.info(
            "Push sent to %d device(s) for user=%s: %s",
            len(recipient.push_player_ids),
            recipient.user_id,
            notification_id,
        )
        return self._outcome(DeliveryStatus.SENT, provider_id=notification_id)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Sends a rendered alert over every channel the recipient enabled.

    Parameters
    ----------
    email : EmailChannel or None
    push : PushChannel or None
    timeout_seconds : float
        Per-channel-call timeout.
    concurrency : int
        Maximum number of in-flight channel calls across the run.
    """

    def __init__(
        self,
        email: NotificationChannel | None,
        push: NotificationChannel | None,
        timeout_seconds: float = 10.0,
        concurrency: int = 8,
    ) -> None:
        self._email = email
        self._push = push
        self._timeout = timeout_seconds
        self._semaphore = asyncio.Semaphore(concurrency)

    def enabled_channels(self, recipient: Recipient) -> list[NotificationChannel]:
        """Channels the recipient opted into."""
        channels: list[NotificationChannel] = []
        if self._email is not None and recipient.settings.email_enabled:
            channels.append(self._email)
        if self._push is not None and recipient.settings.push_enabled:
            channels.append(self._push)
        return channels

    def has_deliverable_channel(self, recipient: Recipient) -> bool:
        """True when at least one enabled channel could reach the recipient."""
        return any(ch.can_deliver(recipient) for ch in self.enabled_channels(recipient))

    async def _send_one(
        self,
        channel: NotificationChannel,
        recipient: Recipient,
        message: RenderedMessage,
        trigger: Trigger,
    ) -> ChannelOutcome:
        try:
            async with self._semaphore:
                return await asyncio.wait_for(
                    channel.send(recipient, message, trigger), timeout=self._timeout
                )
        except asyncio.TimeoutError:
            logger.warning(
                "%s channel timed out after %.1fs for trigger=%s",
                channel.channel_type.value,
                self._timeout,
                trigger.id,
            )
            return ChannelOutcome(
                channel=channel.channel_type,
                status=DeliveryStatus.FAILED,
                error="timeout",
            )
        except Exception as exc:
            logger.exception(
                "%s channel raised for trigger=%s", channel.channel_type.value, trigger.id
            )
            return ChannelOutcome(
                channel=channel.channel_type,
                status=DeliveryStatus.FAILED,
                error=str(exc) or type(exc).__name__,
            )

    async def dispatch(
        self, recipient: Recipient, message: RenderedMessage, trigger: Trigger
    ) -> list[ChannelOutcome]:
        """Send over each enabled channel in parallel.

        Returns
        -------
        list[ChannelOutcome]
            One outcome per enabled channel, in channel order (email, push).
        """
        channels = self.enabled_channels(recipient)
        if not channels:
            return []
        outcomes = await asyncio.gather(
            *(self._send_one(ch, recipient, message, trigger) for ch in channels)
        )
        return list(outcomes)
