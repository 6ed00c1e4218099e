"""
Tests for the Alert Worker Run Orchestrator and Lambda handler.

Validates:
1. Happy path: evaluate -> suppress check -> render -> dispatch -> ledger.
2. One snapshot fetch per spot, shared by every trigger on it.
3. Non-matching and suppressed triggers send nothing.
4. Dry-run renders but dispatches and persists nothing.
5. Provider failure on one spot leaves other spots unaffected.
6. Ledger write failure is counted and does not fail the trigger.
7. Trigger Store failure ends the run with ``store_failed``.
8. ``no_valid_channels`` and surveillance-window skips.
9. Run deadline: unfinished triggers are cancelled and counted.
10. Handler wiring of ``dry_run`` and the Lambda remaining time.

Uses in-memory fakes for the Trigger Store, Alert Ledger, Conditions
Provider, and notification channels.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from worker.alerts.channels import NotificationChannel, NotificationDispatcher, PushChannel
from worker.alerts.conditions import ConditionsProvider, ProviderUnavailableError
from worker.alerts.handler import (
    METRIC_ALERTS_SENT,
    AlertRunner,
    _deadline_for,
    handler,
)
from worker.alerts.logic.suppression import RepeatSuppressionGuard
from worker.alerts.messenger import MessageGenerator
from worker.alerts.models import (
    AlertSettings,
    ChannelOutcome,
    ChannelType,
    ConditionSnapshot,
    DeliveryStatus,
    ForecastReading,
    Recipient,
    RunSummary,
    SentAlert,
    Spot,
    Trigger,
    WindowMode,
)
from worker.alerts.repo import AlertLedger, LedgerWriteError, TriggerStore


# ---------------------------------------------------------------------------
# Fixtures / Helpers
# ---------------------------------------------------------------------------

NOW = datetime(2026, 2, 6, 20, 0, 0, tzinfo=timezone.utc)

FORECAST = {
    "wave_height": 5.0,
    "wave_period": 12.0,
    "swell_direction": 300.0,
    "wind_speed": 6.0,
    "wind_direction": 90.0,
}


def _make_trigger(
    trigger_id: str = "trg_001", spot_id: str = "spot_001", **overrides: Any
) -> Trigger:
    defaults: dict[str, Any] = {
        "id": trigger_id,
        "user_id": "usr_001",
        "spot_id": spot_id,
        "name": "Dawn patrol",
        "min_height": 4.0,
        "spot": Spot(id=spot_id, name=f"Spot {spot_id}", lat=37.76, lon=-122.51),
        "recipient": Recipient(
            user_id="usr_001",
            email="surfer@example.com",
            settings=AlertSettings(window_mode=WindowMode.ALWAYS),
        ),
    }
    defaults.update(overrides)
    return Trigger(**defaults)


class FakeStore(TriggerStore):
    def __init__(self, triggers: list[Trigger], error: Exception | None = None) -> None:
        self.triggers = triggers
        self.error = error
        self.evaluations: list[tuple[str, bool, datetime]] = []
        self.fired: list[tuple[str, datetime]] = []

    async def list_enabled_triggers(self) -> list[Trigger]:
        if self.error is not None:
            raise self.error
        return list(self.triggers)

    async def record_evaluation(self, trigger_id, matched, evaluated_at) -> None:
        self.evaluations.append((trigger_id, matched, evaluated_at))

    async def mark_fired(self, trigger_id, fired_at) -> None:
        self.fired.append((trigger_id, fired_at))


class FakeLedger(AlertLedger):
    def __init__(self, alerts: list[SentAlert] | None = None, fail_writes: bool = False,
                 fail_reads_for: tuple[str, ...] = ()) -> None:
        self.alerts = list(alerts or [])
        self.fail_writes = fail_writes
        self.fail_reads_for = fail_reads_for

    async def record_alert(self, alert: SentAlert) -> None:
        if self.fail_writes:
            raise LedgerWriteError("connection reset")
        self.alerts.append(alert)

    async def last_alert_for(self, trigger_id: str) -> SentAlert | None:
        if trigger_id in self.fail_reads_for:
            raise RuntimeError("unexpected read failure")
        rows = [a for a in self.alerts if a.trigger_id == trigger_id]
        return max(rows, key=lambda a: a.sent_at) if rows else None


class FakeProvider(ConditionsProvider):
    def __init__(self, failing: tuple[str, ...] = (), delay: float = 0.0,
                 forecast: dict[str, float] | None = None) -> None:
        self.failing = failing
        self.delay = delay
        self.forecast = forecast if forecast is not None else FORECAST
        self.calls: list[str] = []

    async def fetch_conditions(self, spot: Spot) -> ConditionSnapshot:
        self.calls.append(spot.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if spot.id in self.failing:
            raise ProviderUnavailableError(f"Open-Meteo request failed for spot {spot.id}")
        return ConditionSnapshot(
            spot_id=spot.id, fetched_at=NOW, forecast=ForecastReading(**self.forecast)
        )


class StubChannel(NotificationChannel):
    def __init__(self, channel_type: ChannelType = ChannelType.EMAIL,
                 status: DeliveryStatus = DeliveryStatus.SENT, deliverable: bool = True) -> None:
        self.channel_type = channel_type
        self.status = status
        self.deliverable = deliverable
        self.sent: list[tuple[str, str]] = []

    def can_deliver(self, recipient: Recipient) -> bool:
        return self.deliverable

    async def send(self, recipient, message, trigger) -> ChannelOutcome:
        self.sent.append((trigger.id, message.body))
        return self._outcome(self.status, provider_id=f"msg-{len(self.sent)}")


def _make_runner(
    triggers: list[Trigger] | None = None,
    store: FakeStore | None = None,
    ledger: FakeLedger | None = None,
    provider: FakeProvider | None = None,
    channel: StubChannel | None = None,
    **kwargs: Any,
) -> tuple[AlertRunner, FakeStore, FakeLedger, FakeProvider, StubChannel]:
    store = store or FakeStore(triggers if triggers is not None else [_make_trigger()])
    ledger = ledger or FakeLedger()
    provider = provider or FakeProvider()
    channel = channel or StubChannel()
    metric_emitter = kwargs.pop("metric_emitter", MagicMock())
    dispatcher = kwargs.pop("dispatcher", NotificationDispatcher(email=channel, push=None))
    runner = AlertRunner(
        store=store,
        ledger=ledger,
        provider=provider,
        messenger=MessageGenerator(None),
        dispatcher=dispatcher,
        guard=RepeatSuppressionGuard(default_cooldown_hours=6),
        metric_emitter=metric_emitter,
        clock=lambda: NOW,
        **kwargs,
    )
    return runner, store, ledger, provider, channel


def _delivered_alert(trigger_id: str, sent_at: datetime) -> SentAlert:
    return SentAlert(
        id=f"alert_{trigger_id}",
        trigger_id=trigger_id,
        spot_id="spot_001",
        user_id="usr_001",
        sent_at=sent_at,
        message="Good conditions",
        channel_outcomes=[ChannelOutcome(channel=ChannelType.EMAIL, status=DeliveryStatus.SENT)],
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_sends_and_records(self) -> None:
        runner, store, ledger, provider, channel = _make_runner()

        summary = await runner.run_once()

        assert summary.triggers_loaded == 1
        assert summary.evaluated == 1
        assert summary.matched == 1
        assert summary.sent == 1
        assert summary.failed == 0
        assert store.evaluations == [("trg_001", True, NOW)]
        assert store.fired == [("trg_001", NOW)]
        assert len(channel.sent) == 1

        alert = ledger.alerts[0]
        assert alert.trigger_id == "trg_001"
        assert alert.delivered is True
        assert alert.message == channel.sent[0][1]
        assert alert.condition_data["wave_height"] == 5.0

    @pytest.mark.asyncio
    async def test_one_fetch_per_spot(self) -> None:
        triggers = [
            _make_trigger("trg_a", "spot_001"),
            _make_trigger("trg_b", "spot_001"),
            _make_trigger("trg_c", "spot_002"),
        ]
        runner, _, _, provider, _ = _make_runner(triggers)

        summary = await runner.run_once()

        assert sorted(provider.calls) == ["spot_001", "spot_002"]
        assert summary.spots == 2
        assert summary.sent == 3

    @pytest.mark.asyncio
    async def test_no_match(self) -> None:
        trigger = _make_trigger(min_height=8.0)
        runner, store, ledger, _, channel = _make_runner([trigger])

        summary = await runner.run_once()

        assert summary.evaluated == 1
        assert summary.matched == 0
        assert summary.sent == 0
        assert store.evaluations == [("trg_001", False, NOW)]
        assert ledger.alerts == []
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_still_matching_within_cooldown_is_suppressed(self) -> None:
        trigger = _make_trigger(last_matched=True)
        ledger = FakeLedger([_delivered_alert("trg_001", NOW - timedelta(hours=1))])
        runner, _, ledger, _, channel = _make_runner([trigger], ledger=ledger)

        summary = await runner.run_once()

        assert summary.suppressed == 1
        assert summary.sent == 0
        assert channel.sent == []
        assert len(ledger.alerts) == 1

    @pytest.mark.asyncio
    async def test_cooldown_elapsed_sends_again(self) -> None:
        trigger = _make_trigger(last_matched=True)
        ledger = FakeLedger([_delivered_alert("trg_001", NOW - timedelta(hours=7))])
        runner, _, ledger, _, _ = _make_runner([trigger], ledger=ledger)

        summary = await runner.run_once()

        assert summary.sent == 1
        assert len(ledger.alerts) == 2

    @pytest.mark.asyncio
    async def test_metrics_emitted(self) -> None:
        emitter = MagicMock()
        runner, *_ = _make_runner(metric_emitter=emitter)

        await runner.run_once()

        names = {c.args[0] for c in emitter.call_args_list}
        assert METRIC_ALERTS_SENT in names
        sent_call = next(c for c in emitter.call_args_list if c.args[0] == METRIC_ALERTS_SENT)
        assert sent_call.args[1] == 1.0

    @pytest.mark.asyncio
    async def test_no_triggers(self) -> None:
        runner, *_ = _make_runner([])

        summary = await runner.run_once()

        assert summary.triggers_loaded == 0
        assert summary.finished_at == NOW


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------


class TestDryRun:
    @pytest.mark.asyncio
    async def test_nothing_dispatched_or_written(self) -> None:
        runner, store, ledger, _, channel = _make_runner()

        summary = await runner.run_once(dry_run=True)

        assert summary.dry_run is True
        assert summary.would_send == 1
        assert summary.sent == 0
        assert channel.sent == []
        assert ledger.alerts == []
        assert store.evaluations == []
        assert store.fired == []


# ---------------------------------------------------------------------------
# Skips
# ---------------------------------------------------------------------------


class TestSkips:
    @pytest.mark.asyncio
    async def test_no_valid_channels(self) -> None:
        runner, store, ledger, _, channel = _make_runner(channel=StubChannel(deliverable=False))

        summary = await runner.run_once()

        assert summary.skipped == 1
        assert channel.sent == []
        assert ledger.alerts == []
        assert store.evaluations == [("trg_001", True, NOW)]

    @pytest.mark.asyncio
    async def test_push_only_without_devices_is_skipped(self) -> None:
        http_client = AsyncMock()
        push = PushChannel(
            http_client=http_client,
            app_id="app-123",
            api_key="key-456",
            dashboard_url="https://surf.example.com/dashboard",
        )
        recipient = Recipient(
            user_id="usr_001",
            push_player_ids=[],
            settings=AlertSettings(
                window_mode=WindowMode.ALWAYS, email_enabled=False, push_enabled=True
            ),
        )
        runner, _, ledger, _, _ = _make_runner(
            [_make_trigger(recipient=recipient)],
            dispatcher=NotificationDispatcher(email=None, push=push),
        )

        summary = await runner.run_once()

        assert summary.skipped == 1
        assert summary.failed == 0
        http_client.post.assert_not_awaited()
        assert ledger.alerts == []

    @pytest.mark.asyncio
    async def test_outside_clock_window(self) -> None:
        recipient = Recipient(
            user_id="usr_001",
            email="surfer@example.com",
            timezone="UTC",
            settings=AlertSettings(
                window_mode=WindowMode.CLOCK, window_start_time="06:00", window_end_time="12:00"
            ),
        )
        runner, _, _, _, channel = _make_runner([_make_trigger(recipient=recipient)])

        summary = await runner.run_once()

        assert summary.matched == 1
        assert summary.skipped == 1
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_window_check_can_be_disabled(self) -> None:
        recipient = Recipient(
            user_id="usr_001",
            email="surfer@example.com",
            timezone="UTC",
            settings=AlertSettings(active_days=["Mon"]),
        )
        runner, *_ = _make_runner(
            [_make_trigger(recipient=recipient)], enable_surveillance_window=False
        )

        summary = await runner.run_once()

        assert summary.sent == 1


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_provider_failure_only_affects_its_spot(self) -> None:
        triggers = [
            _make_trigger("trg_a", "spot_001"),
            _make_trigger("trg_b", "spot_002"),
            _make_trigger("trg_c", "spot_002"),
        ]
        provider = FakeProvider(failing=("spot_002",))
        runner, store, _, provider, _ = _make_runner(triggers, provider=provider)

        summary = await runner.run_once()

        assert summary.sent == 1
        assert summary.failed == 2
        assert summary.provider_failures == 1
        assert provider.calls.count("spot_002") == 1
        assert [e[0] for e in store.evaluations] == ["trg_a"]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self) -> None:
        triggers = [_make_trigger("trg_a"), _make_trigger("trg_b")]
        ledger = FakeLedger(fail_reads_for=("trg_a",))
        runner, *_ = _make_runner(triggers, ledger=ledger)

        summary = await runner.run_once()

        assert summary.failed == 1
        assert summary.sent == 1

    @pytest.mark.asyncio
    async def test_ledger_write_failure_is_counted(self) -> None:
        runner, store, _, _, channel = _make_runner(ledger=FakeLedger(fail_writes=True))

        summary = await runner.run_once()

        assert summary.ledger_failures == 1
        assert summary.sent == 1
        assert len(channel.sent) == 1
        assert store.fired == [("trg_001", NOW)]

    @pytest.mark.asyncio
    async def test_all_channels_failed(self) -> None:
        channel = StubChannel(status=DeliveryStatus.FAILED)
        runner, store, ledger, _, _ = _make_runner(channel=channel)

        summary = await runner.run_once()

        assert summary.failed == 1
        assert ledger.alerts[0].delivered is False
        assert store.fired == []

    @pytest.mark.asyncio
    async def test_store_failure(self) -> None:
        store = FakeStore([], error=RuntimeError("database unavailable"))
        runner, *_ = _make_runner(store=store)

        summary = await runner.run_once()

        assert summary.store_failed is True
        assert summary.evaluated == 0

    @pytest.mark.asyncio
    async def test_deadline_cancels_unfinished_triggers(self) -> None:
        triggers = [_make_trigger("trg_a", "spot_001"), _make_trigger("trg_b", "spot_002")]
        runner, _, ledger, _, _ = _make_runner(triggers, provider=FakeProvider(delay=5.0))

        summary = await runner.run_once(deadline_seconds=0.05)

        assert summary.deadline_exceeded is True
        assert summary.timed_out == 2
        assert summary.failed == 2
        assert summary.evaluated == 0
        assert ledger.alerts == []


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def _make_context(remaining_ms: int = 60000) -> MagicMock:
    context = MagicMock()
    context.get_remaining_time_in_millis.return_value = remaining_ms
    return context


class TestHandler:
    def test_deadline_capped_by_remaining_time(self) -> None:
        settings = MagicMock(run_deadline_seconds=600.0)

        assert _deadline_for(settings, _make_context(60000)) == 55.0
        assert _deadline_for(settings, None) == 600.0
        assert _deadline_for(settings, _make_context(1000)) == 0.0

    @patch("worker.alerts.handler.run_alerts", new_callable=AsyncMock)
    @patch("worker.alerts.handler.load_settings")
    def test_handler_runs_and_returns_summary(
        self, mock_load: MagicMock, mock_run: AsyncMock
    ) -> None:
        settings = MagicMock(run_deadline_seconds=600.0)
        mock_load.return_value = settings
        mock_run.return_value = RunSummary(run_id="abc123", started_at=NOW, dry_run=True)

        result = handler({"dry_run": True}, _make_context(120000))

        assert result["run_id"] == "abc123"
        assert result["dry_run"] is True
        mock_run.assert_awaited_once_with(settings, dry_run=True, deadline_seconds=115.0)

    @patch("worker.alerts.handler.run_alerts", new_callable=AsyncMock)
    @patch("worker.alerts.handler.load_settings")
    def test_handler_defaults_to_live_run(
        self, mock_load: MagicMock, mock_run: AsyncMock
    ) -> None:
        mock_load.return_value = MagicMock(run_deadline_seconds=600.0)
        mock_run.return_value = RunSummary(run_id="abc123", started_at=NOW)

        handler({}, None)

        assert mock_run.call_args.kwargs["dry_run"] is False
