"""Tests for the email and push channels and the notification dispatcher."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError

from worker.alerts.channels import (
    ONESIGNAL_URL,
    EmailChannel,
    NotificationChannel,
    NotificationDispatcher,
    PushChannel,
    is_valid_email,
    render_email_html,
    ses_client_config,
)
from worker.alerts.models import (
    AlertSettings,
    ChannelOutcome,
    ChannelType,
    ConditionLabel,
    DeliveryStatus,
    Recipient,
    RenderedMessage,
    Spot,
    Trigger,
)


# ── Fixtures ────────────────────────────────────────────


MESSAGE = RenderedMessage(
    subject="🌊 Ocean Beach - Good conditions",
    body="Looking solid out there. 4-5ft, clean, rising tide.",
    push_title="🌊 Ocean Beach",
)


def _recipient(**overrides: Any) -> Recipient:
    defaults: dict[str, Any] = {
        "user_id": "usr_001",
        "email": "surfer@example.com",
        "push_player_ids": ["player-1"],
        "settings": AlertSettings(email_enabled=True, push_enabled=True),
    }
    defaults.update(overrides)
    return Recipient(**defaults)


@pytest.fixture
def trigger() -> Trigger:
    return Trigger(
        id="trg_001",
        user_id="usr_001",
        spot_id="spot_001",
        condition=ConditionLabel.GOOD,
        spot=Spot(id="spot_001", name="Ocean Beach", lat=37.76, lon=-122.51),
        recipient=_recipient(),
    )


def _response(status_code: int = 200, json: Any = None) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json=json if json is not None else {},
        request=httpx.Request("POST", ONESIGNAL_URL),
    )


def _push(client: Any, **overrides: Any) -> PushChannel:
    kwargs: dict[str, Any] = {
        "http_client": client,
        "app_id": "app-123",
        "api_key": "key-456",
        "dashboard_url": "https://surf.example.com/dashboard",
    }
    kwargs.update(overrides)
    return PushChannel(**kwargs)


class StubChannel(NotificationChannel):
    """Channel returning a fixed outcome, optionally after a delay or error."""

    def __init__(self, channel_type: ChannelType, status: DeliveryStatus = DeliveryStatus.SENT,
                 delay: float = 0.0, error: Exception | None = None) -> None:
        self.channel_type = channel_type
        self.status = status
        self.delay = delay
        self.error = error
        self.calls = 0

    def can_deliver(self, recipient: Recipient) -> bool:
        return True

    async def send(self, recipient, message, trigger) -> ChannelOutcome:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self._outcome(self.status, provider_id="stub-id")


# ── Email ───────────────────────────────────────────────


class TestEmailValidation:
    @pytest.mark.parametrize("address", ["a@b.co", "surfer+ob@example.com"])
    def test_valid(self, address: str) -> None:
        assert is_valid_email(address) is True

    @pytest.mark.parametrize("address", [None, "", "no-at-sign", "a@b", "a b@c.com", "a@@b.com"])
    def test_invalid(self, address: str | None) -> None:
        assert is_valid_email(address) is False


class TestEmailChannel:
    def test_ses_timeouts_fit_inside_dispatch_timeout(self) -> None:
        config = ses_client_config(10.0)

        assert config.connect_timeout + config.read_timeout < 10.0
        assert config.retries == {"total_max_attempts": 1}

    @pytest.mark.asyncio
    async def test_successful_send(self, trigger: Trigger) -> None:
        ses = MagicMock()
        ses.send_email.return_value = {"MessageId": "ses-001"}
        channel = EmailChannel(ses, "Surf Alerts <alerts@example.com>")

        outcome = await channel.send(_recipient(), MESSAGE, trigger)

        assert outcome.status == DeliveryStatus.SENT
        assert outcome.provider_id == "ses-001"
        kwargs = ses.send_email.call_args.kwargs
        assert kwargs["Source"] == "Surf Alerts <alerts@example.com>"
        assert kwargs["Destination"] == {"ToAddresses": ["surfer@example.com"]}
        assert kwargs["Message"]["Subject"]["Data"] == MESSAGE.subject
        assert kwargs["Message"]["Body"]["Text"]["Data"] == MESSAGE.body
        assert "Ocean Beach" in kwargs["Message"]["Body"]["Html"]["Data"]

    @pytest.mark.asyncio
    async def test_invalid_address_is_not_sent(self, trigger: Trigger) -> None:
        ses = MagicMock()
        channel = EmailChannel(ses, "alerts@example.com")

        outcome = await channel.send(_recipient(email="not-an-address"), MESSAGE, trigger)

        assert outcome.status == DeliveryStatus.INVALID
        ses.send_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_error(self, trigger: Trigger) -> None:
        ses = MagicMock()
        ses.send_email.side_effect = ClientError(
            {"Error": {"Code": "Throttling", "Message": "Rate exceeded"}}, "SendEmail"
        )
        channel = EmailChannel(ses, "alerts@example.com")

        outcome = await channel.send(_recipient(), MESSAGE, trigger)

        assert outcome.status == DeliveryStatus.FAILED
        assert "Throttling" in (outcome.error or "")

    def test_can_deliver(self) -> None:
        channel = EmailChannel(MagicMock(), "alerts@example.com")
        assert channel.can_deliver(_recipient()) is True
        assert channel.can_deliver(_recipient(email=None)) is False

    def test_html_is_escaped(self) -> None:
        body = render_email_html("<script>x</script>", "Rock & Roll", "epic", None)

        assert "<script>" not in body
        assert "&lt;script&gt;" in body
        assert "Rock &amp; Roll" in body
        assert "🔥" in body


# ── Push ────────────────────────────────────────────────


class TestPushChannel:
    @pytest.mark.asyncio
    async def test_successful_send(self, trigger: Trigger) -> None:
        client = AsyncMock()
        client.post.return_value = _response(200, {"id": "notif-001", "recipients": 1})

        outcome = await _push(client).send(_recipient(), MESSAGE, trigger)

        assert outcome.status == DeliveryStatus.SENT
        assert outcome.provider_id == "notif-001"
        call = client.post.call_args
        assert call.args[0] == ONESIGNAL_URL
        assert call.kwargs["headers"] == {"Authorization": "Basic key-456"}
        payload = call.kwargs["json"]
        assert payload["include_player_ids"] == ["player-1"]
        assert payload["headings"] == {"en": "🌊 Ocean Beach"}
        assert payload["data"]["type"] == "surf_alert"
        assert payload["ttl"] == 7200

    @pytest.mark.asyncio
    async def test_no_devices_is_invalid(self, trigger: Trigger) -> None:
        client = AsyncMock()
        outcome = await _push(client).send(_recipient(push_player_ids=[]), MESSAGE, trigger)

        assert outcome.status == DeliveryStatus.INVALID
        client.post.assert_not_called()

    def test_can_deliver_needs_a_device(self) -> None:
        channel = _push(AsyncMock())

        assert channel.can_deliver(_recipient()) is True
        assert channel.can_deliver(_recipient(push_player_ids=[])) is False
        assert _push(AsyncMock(), app_id=None).can_deliver(_recipient()) is False

    @pytest.mark.asyncio
    async def test_unconfigured_fails(self, trigger: Trigger) -> None:
        channel = _push(AsyncMock(), api_key=None)

        assert channel.configured is False
        outcome = await channel.send(_recipient(), MESSAGE, trigger)
        assert outcome.status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_http_error_status(self, trigger: Trigger) -> None:
        client = AsyncMock()
        client.post.return_value = _response(500, {"errors": ["internal"]})

        outcome = await _push(client).send(_recipient(), MESSAGE, trigger)

        assert outcome.status == DeliveryStatus.FAILED
        assert (outcome.error or "").startswith("HTTP 500")

    @pytest.mark.asyncio
    async def test_transport_error(self, trigger: Trigger) -> None:
        client = AsyncMock()
        client.post.side_effect = httpx.ConnectTimeout("timed out")

        outcome = await _push(client).send(_recipient(), MESSAGE, trigger)

        assert outcome.status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_unsubscribed_players_are_invalid(self, trigger: Trigger) -> None:
        client = AsyncMock()
        client.post.return_value = _response(200, {"errors": ["All included players are not subscribed"]})

        outcome = await _push(client).send(_recipient(), MESSAGE, trigger)

        assert outcome.status == DeliveryStatus.INVALID

    def test_body_is_truncated(self, trigger: Trigger) -> None:
        long_message = MESSAGE.model_copy(update={"body": "x" * 500})
        payload = _push(AsyncMock(), max_length=50).build_payload(["p"], long_message, trigger)
        assert len(payload["contents"]["en"]) == 50


# ── Dispatcher ──────────────────────────────────────────


class TestNotificationDispatcher:
    def test_enabled_channels_follow_settings(self) -> None:
        email = StubChannel(ChannelType.EMAIL)
        push = StubChannel(ChannelType.PUSH)
        dispatcher = NotificationDispatcher(email, push)

        only_email = _recipient(settings=AlertSettings(email_enabled=True, push_enabled=False))
        neither = _recipient(settings=AlertSettings(email_enabled=False, push_enabled=False))

        assert dispatcher.enabled_channels(_recipient()) == [email, push]
        assert dispatcher.enabled_channels(only_email) == [email]
        assert dispatcher.has_deliverable_channel(neither) is False

    def test_invalid_email_only_is_not_deliverable(self) -> None:
        dispatcher = NotificationDispatcher(EmailChannel(MagicMock(), "a@b.co"), None)
        recipient = _recipient(email="broken", settings=AlertSettings(email_enabled=True))
        assert dispatcher.has_deliverable_channel(recipient) is False

    def test_push_without_devices_is_not_deliverable(self) -> None:
        dispatcher = NotificationDispatcher(None, _push(AsyncMock()))
        recipient = _recipient(
            push_player_ids=[], settings=AlertSettings(email_enabled=False, push_enabled=True)
        )
        assert dispatcher.has_deliverable_channel(recipient) is False

    @pytest.mark.asyncio
    async def test_one_channel_failing_does_not_block_other(self, trigger: Trigger) -> None:
        email = StubChannel(ChannelType.EMAIL, error=RuntimeError("boom"))
        push = StubChannel(ChannelType.PUSH)
        dispatcher = NotificationDispatcher(email, push)

        outcomes = await dispatcher.dispatch(_recipient(), MESSAGE, trigger)

        assert [o.channel for o in outcomes] == [ChannelType.EMAIL, ChannelType.PUSH]
        assert outcomes[0].status == DeliveryStatus.FAILED
        assert outcomes[0].error == "boom"
        assert outcomes[1].status == DeliveryStatus.SENT

    @pytest.mark.asyncio
    async def test_hanging_channel_times_out(self, trigger: Trigger) -> None:
        email = StubChannel(ChannelType.EMAIL, delay=5.0)
        push = StubChannel(ChannelType.PUSH)
        dispatcher = NotificationDispatcher(email, push, timeout_seconds=0.05)

        outcomes = await dispatcher.dispatch(_recipient(), MESSAGE, trigger)

        assert outcomes[0].status == DeliveryStatus.FAILED
        assert outcomes[0].error == "timeout"
        assert outcomes[1].status == DeliveryStatus.SENT

    @pytest.mark.asyncio
    async def test_no_enabled_channels(self, trigger: Trigger) -> None:
        email = StubChannel(ChannelType.EMAIL)
        dispatcher = NotificationDispatcher(email, None)
        recipient = _recipient(settings=AlertSettings(email_enabled=False))

        assert await dispatcher.dispatch(recipient, MESSAGE, trigger) == []
        assert email.calls == 0
