"""
Run Orchestrator and Lambda handler for the Alert Worker.

Implements ``AlertRunner.run_once`` and the ``handler(event, context)``
entrypoint invoked by the scheduler (EventBridge cron).

Per-trigger flow:
    1. Fetch the spot's ``ConditionSnapshot`` (at most once per spot per run).
    2. ``evaluate`` the trigger and persist ``last_matched`` (not in dry-run).
    3. Matched only: check the surveillance window and active day.
    4. Read the trigger's last ledger row and consult the suppression guard.
    5. Skip with ``no_valid_channels`` when no enabled channel can deliver.
    6. Render the message (generation failures fall back to plain text).
    7. Dispatch over the enabled channels and append a ledger row.
    8. Set ``last_fired_at`` when at least one channel delivered.

Key Design Decisions:
    - **Independent units**: each trigger runs as its own task. Any failure
      is logged and counted against that trigger only; ``run_once`` never
      raises.
    - **Per-run snapshot cache**: ``RunContext`` owns a write-once map of
      spot id -> fetch task. Triggers on the same spot await the same task,
      so the provider is called once per spot. Nothing outlives the run.
    - **Run deadline**: when the deadline passes, unfinished triggers are
      cancelled and counted as failed. Ledger rows already written stay.
    - **Dry-run**: everything up to rendering runs; nothing is dispatched
      and nothing is written.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from worker.alerts.channels import NotificationDispatcher
from worker.alerts.conditions import ConditionsProvider, ProviderUnavailableError
from worker.alerts.config import Settings, load_settings
from worker.alerts.logic.evaluator import evaluate
from worker.alerts.logic.suppression import RepeatSuppressionGuard
from worker.alerts.logic.window import check_active_day, check_surveillance_window
from worker.alerts.messenger import MessageGenerator
from worker.alerts.models import (
    ConditionSnapshot,
    RunSummary,
    SentAlert,
    Spot,
    Trigger,
    TriggerOutcome,
)
from worker.alerts.repo import AlertLedger, LedgerWriteError, TriggerStore

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric Constants
# ---------------------------------------------------------------------------

METRIC_TRIGGERS_EVALUATED = "TriggersEvaluated"
METRIC_TRIGGERS_MATCHED = "TriggersMatched"
METRIC_ALERTS_SENT = "AlertsSent"
METRIC_ALERTS_SUPPRESSED = "AlertsSuppressed"
METRIC_TRIGGERS_FAILED = "TriggersFailed"
METRIC_LEDGER_WRITE_FAILURES = "LedgerWriteFailures"
METRIC_RUN_DURATION = "RunDuration"

SKIP_NO_VALID_CHANNELS = "no_valid_channels"

# Margin kept back from the Lambda remaining time when deriving the deadline.
_TIMEOUT_MARGIN_SECONDS = 5.0


# ---------------------------------------------------------------------------
# Metric Emitter
# ---------------------------------------------------------------------------


def _default_metric_emitter(
    name: str, value: float, unit: str, dimensions: dict[str, str]
) -> None:
    """Default metric emitter that logs metrics when no CloudWatch emitter is configured."""
    logger.info(
        "Metric: %s=%.3f %s dimensions=%s",
        name,
        value,
        unit,
        dimensions,
    )


# ---------------------------------------------------------------------------
# Run Context
# ---------------------------------------------------------------------------


class RunContext:
    """Working set of one ``run_once`` call.

    Parameters
    ----------
    run_id : str
        Identifier used in logs and metric dimensions.
    now : datetime
        Evaluation time shared by every trigger in the run.
    dry_run : bool
        When True, nothing is dispatched or persisted.
    provider : ConditionsProvider
        Source of condition snapshots.
    fetch_concurrency : int
        Maximum number of concurrent spot fetches.
    fetch_timeout : float
        Per-spot fetch timeout in seconds.
    """

    def __init__(
        self,
        run_id: str,
        now: datetime,
        dry_run: bool,
        provider: ConditionsProvider,
        fetch_concurrency: int,
        fetch_timeout: float,
    ) -> None:
        self.run_id = run_id
        self.now = now
        self.dry_run = dry_run
        self.provider_failures = 0
        self._provider = provider
        self._fetch_semaphore = asyncio.Semaphore(fetch_concurrency)
        self._fetch_timeout = fetch_timeout
        self._snapshots: dict[str, asyncio.Task[ConditionSnapshot]] = {}

    async def _fetch(self, spot: Spot) -> ConditionSnapshot:
        try:
            async with self._fetch_semaphore:
                return await asyncio.wait_for(
                    self._provider.fetch_conditions(spot), timeout=self._fetch_timeout
                )
        except asyncio.TimeoutError as exc:
            self.provider_failures += 1
            raise ProviderUnavailableError(
                f"Conditions fetch timed out after {self._fetch_timeout:.0f}s "
                f"for spot {spot.id}"
            ) from exc
        except ProviderUnavailableError:
            self.provider_failures += 1
            raise

    async def snapshot_for(self, spot: Spot) -> ConditionSnapshot:
        """Snapshot for ``spot``, fetched on first request and shared afterwards."""
        task = self._snapshots.get(spot.id)
        if task is None:
            task = asyncio.ensure_future(self._fetch(spot))
            self._snapshots[spot.id] = task
        # Shielded so a cancelled trigger does not cancel its siblings' fetch.
        return await asyncio.shield(task)

    @property
    def spots_fetched(self) -> int:
        return len(self._snapshots)

    async def close(self) -> None:
        """Cancel unfinished fetches and collect their results."""
        pending = [t for t in self._snapshots.values() if not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._snapshots.values(), return_exceptions=True)


# ---------------------------------------------------------------------------
# AlertRunner
# ---------------------------------------------------------------------------


class AlertRunner:
    """Evaluates every enabled trigger once and dispatches the alerts that are due.

    Parameters
    ----------
    store : TriggerStore
        Source of enabled triggers; receives evaluation state.
    ledger : AlertLedger
        Ledger of dispatched alerts.
    provider : ConditionsProvider
        Condition snapshots per spot.
    messenger : MessageGenerator
        Renders alert text.
    dispatcher : NotificationDispatcher
        Channel fan-out.
    guard : RepeatSuppressionGuard
        Rising-edge plus cooldown policy.
    metric_emitter : callable or None
        Callback for run metrics. If None, metrics are logged.
    fetch_concurrency : int
    fetch_timeout : float
    run_deadline_seconds : float or None
        Default overall deadline for a run; None disables it.
    enable_surveillance_window : bool
        When False, window and active-day checks are skipped.
    clock : callable or None
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: TriggerStore,
        ledger: AlertLedger,
        provider: ConditionsProvider,
        messenger: MessageGenerator,
        dispatcher: NotificationDispatcher,
        guard: RepeatSuppressionGuard,
        metric_emitter: Callable[[str, float, str, dict[str, str]], None] | None = None,
        fetch_concurrency: int = 8,
        fetch_timeout: float = 20.0,
        run_deadline_seconds: float | None = 600.0,
        enable_surveillance_window: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._provider = provider
        self._messenger = messenger
        self._dispatcher = dispatcher
        self._guard = guard
        self._metric_emitter = metric_emitter or _default_metric_emitter
        self._fetch_concurrency = fetch_concurrency
        self._fetch_timeout = fetch_timeout
        self._run_deadline = run_deadline_seconds
        self._enable_window = enable_surveillance_window
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run_once(
        self, dry_run: bool = False, deadline_seconds: float | None = None
    ) -> RunSummary:
        """Run one evaluation pass over every enabled trigger.

        Parameters
        ----------
        dry_run : bool
            Evaluate and render, but dispatch and persist nothing.
        deadline_seconds : float or None
            Overall deadline for this run. Defaults to the runner's deadline.

        Returns
        -------
        RunSummary
            Counters for the run. Never raises.
        """
        started = time.monotonic()
        now = self._clock()
        summary = RunSummary(run_id=uuid.uuid4().hex[:12], started_at=now, dry_run=dry_run)
        deadline = deadline_seconds if deadline_seconds is not None else self._run_deadline

        logger.info(
            "Alert run %s started at %s dry_run=%s deadline=%s",
            summary.run_id,
            now.isoformat(),
            dry_run,
            deadline,
        )

        try:
            triggers = await self._store.list_enabled_triggers()
        except Exception:
            logger.exception("Failed to load enabled triggers; aborting run %s", summary.run_id)
            summary.store_failed = True
            return self._finish(summary, started)

        summary.triggers_loaded = len(triggers)
        if not triggers:
            logger.info("No enabled triggers found")
            return self._finish(summary, started)

        ctx = RunContext(
            run_id=summary.run_id,
            now=now,
            dry_run=dry_run,
            provider=self._provider,
            fetch_concurrency=self._fetch_concurrency,
            fetch_timeout=self._fetch_timeout,
        )

        tasks = [
            asyncio.ensure_future(self._process_trigger(ctx, trigger, summary))
            for trigger in triggers
        ]
        try:
            done, pending = await asyncio.wait(tasks, timeout=deadline)

            if pending:
                summary.deadline_exceeded = True
                logger.warning(
                    "Run %s deadline of %.1fs exceeded; abandoning %d trigger(s)",
                    summary.run_id,
                    deadline,
                    len(pending),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

            for task in tasks:
                if task in pending or task.cancelled():
                    summary.timed_out += 1
                    summary.record(TriggerOutcome.FAILED)
                elif task.exception() is not None:
                    summary.record(TriggerOutcome.FAILED)
                else:
                    summary.record(task.result())
        finally:
            await ctx.close()

        summary.spots = ctx.spots_fetched
        summary.provider_failures = ctx.provider_failures
        return self._finish(summary, started)

    # -- per trigger --------------------------------------------------------

    async def _process_trigger(
        self, ctx: RunContext, trigger: Trigger, summary: RunSummary
    ) -> TriggerOutcome:
        try:
            return await self._run_trigger(ctx, trigger, summary)
        except ProviderUnavailableError as exc:
            logger.warning(
                "Skipping trigger=%s this run: conditions unavailable (%s)",
                trigger.id,
                exc,
            )
            return TriggerOutcome.FAILED
        except Exception:
            logger.exception("Unexpected error processing trigger=%s", trigger.id)
            return TriggerOutcome.FAILED

    async def _run_trigger(
        self, ctx: RunContext, trigger: Trigger, summary: RunSummary
    ) -> TriggerOutcome:
        recipient = trigger.recipient

        # Step 1-2: Evaluate against the shared spot snapshot
        snapshot = await ctx.snapshot_for(trigger.spot)
        match = evaluate(trigger, snapshot)
        summary.evaluated += 1

        if not ctx.dry_run:
            try:
                await self._store.record_evaluation(trigger.id, match.matched, ctx.now)
            except Exception:
                logger.warning(
                    "Failed to record evaluation state for trigger=%s",
                    trigger.id,
                    exc_info=True,
                )

        if not match.matched:
            logger.debug("trigger=%s no match: %s", trigger.id, match.reason)
            return TriggerOutcome.NO_MATCH

        summary.matched += 1
        logger.info(
            "trigger=%s (%s) matched at spot=%s",
            trigger.id,
            trigger.name,
            trigger.spot.name,
        )

        # Step 3: Surveillance window and active day
        if self._enable_window:
            in_window, reason = check_surveillance_window(
                recipient.settings,
                recipient.timezone,
                ctx.now,
                snapshot.sunrise,
                snapshot.sunset,
            )
            if in_window:
                in_window, reason = check_active_day(
                    recipient.settings, recipient.timezone, ctx.now
                )
            if not in_window:
                logger.info("trigger=%s skipped: %s", trigger.id, reason)
                return TriggerOutcome.SKIPPED

        # Step 4: Repeat suppression
        last_alert = await self._ledger.last_alert_for(trigger.id)
        if not self._guard.should_send(trigger, match, last_alert, ctx.now):
            logger.info("trigger=%s suppressed (still matching, within cooldown)", trigger.id)
            return TriggerOutcome.SUPPRESSED

        # Step 5: Channels
        if not self._dispatcher.has_deliverable_channel(recipient):
            logger.info("trigger=%s skipped: %s", trigger.id, SKIP_NO_VALID_CHANNELS)
            return TriggerOutcome.SKIPPED

        # Step 6: Render
        message = await self._messenger.build(trigger, match)

        if ctx.dry_run:
            logger.info(
                "[dry-run] would send trigger=%s to user=%s: %s | %s",
                trigger.id,
                recipient.user_id,
                message.subject,
                message.body,
            )
            return TriggerOutcome.WOULD_SEND

        # Step 7: Dispatch and record
        outcomes = await self._dispatcher.dispatch(recipient, message, trigger)
        alert = SentAlert(
            id=str(uuid.uuid4()),
            trigger_id=trigger.id,
            spot_id=trigger.spot_id,
            user_id=trigger.user_id,
            sent_at=self._clock(),
            condition_matched=trigger.condition,
            message=message.body,
            channel_outcomes=outcomes,
            condition_data=match.values.model_dump(mode="json"),
        )

        try:
            await self._ledger.record_alert(alert)
        except LedgerWriteError as exc:
            summary.ledger_failures += 1
            logger.critical(
                "Ledger write failed for trigger=%s run=%s: %s",
                trigger.id,
                ctx.run_id,
                exc,
            )

        if not alert.delivered:
            logger.warning(
                "trigger=%s: no channel delivered (%s)",
                trigger.id,
                ", ".join(f"{o.channel.value}={o.status.value}" for o in outcomes),
            )
            return TriggerOutcome.FAILED

        # Step 8: Mark fired
        try:
            await self._store.mark_fired(trigger.id, alert.sent_at)
        except Exception:
            logger.warning(
                "Failed to update last_fired_at for trigger=%s", trigger.id, exc_info=True
            )

        logger.info(
            "trigger=%s alert %s sent (%s)",
            trigger.id,
            alert.id,
            ", ".join(f"{o.channel.value}={o.status.value}" for o in outcomes),
        )
        return TriggerOutcome.SENT

    # -- metrics ------------------------------------------------------------

    def _finish(self, summary: RunSummary, started: float) -> RunSummary:
        summary.finished_at = self._clock()
        duration = time.monotonic() - started
        self._emit_metrics(summary, duration)
        logger.info(
            "Alert run %s finished in %.1fs: loaded=%d evaluated=%d matched=%d "
            "sent=%d would_send=%d suppressed=%d skipped=%d failed=%d",
            summary.run_id,
            duration,
            summary.triggers_loaded,
            summary.evaluated,
            summary.matched,
            summary.sent,
            summary.would_send,
            summary.suppressed,
            summary.skipped,
            summary.failed,
        )
        return summary

    def _emit_metrics(self, summary: RunSummary, duration: float) -> None:
        dimensions = {"DryRun": str(summary.dry_run).lower()}
        metrics = [
            (METRIC_TRIGGERS_EVALUATED, summary.evaluated, "Count"),
            (METRIC_TRIGGERS_MATCHED, summary.matched, "Count"),
            (METRIC_ALERTS_SENT, summary.sent, "Count"),
            (METRIC_ALERTS_SUPPRESSED, summary.suppressed, "Count"),
            (METRIC_TRIGGERS_FAILED, summary.failed, "Count"),
            (METRIC_LEDGER_WRITE_FAILURES, summary.ledger_failures, "Count"),
            (METRIC_RUN_DURATION, duration, "Seconds"),
        ]
        for name, value, unit in metrics:
            try:
                self._metric_emitter(name, float(value), unit, dimensions)
            except Exception:
                logger.warning("Failed to emit %s metric", name, exc_info=True)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _create_runner(
    settings: Settings,
    http_client: Any,
    text_generator: Any | None,
) -> AlertRunner:
    """Build an ``AlertRunner`` from settings.

    Clients bound to the event loop (HTTP, Anthropic) are passed in so that
    they are created and closed inside the run's loop.
    """
    import boto3

    from worker.alerts.channels import EmailChannel, PushChannel, ses_client_config
    from worker.alerts.conditions import OpenMeteoConditionsProvider
    from worker.alerts.repo import PostgresRepository

    repo = PostgresRepository(conninfo=settings.database_url.get_secret_value())

    email = EmailChannel(
        ses_client=boto3.client(
            "ses",
            region_name=settings.aws_region,
            config=ses_client_config(settings.dispatch_timeout_seconds),
        ),
        sender=settings.email_sender,
    )
    push = PushChannel(
        http_client=http_client,
        app_id=settings.onesignal_app_id,
        api_key=(
            settings.onesignal_api_key.get_secret_value()
            if settings.onesignal_api_key
            else None
        ),
        dashboard_url=settings.dashboard_url,
        ttl_seconds=settings.push_ttl_seconds,
        max_length=settings.push_max_length,
    )

    return AlertRunner(
        store=repo,
        ledger=repo,
        provider=OpenMeteoConditionsProvider(http_client),
        messenger=MessageGenerator(
            text_generator,
            timeout_seconds=settings.generation_timeout_seconds,
            concurrency=settings.generation_concurrency,
        ),
        dispatcher=NotificationDispatcher(
            email=email,
            push=push,
            timeout_seconds=settings.dispatch_timeout_seconds,
            concurrency=settings.dispatch_concurrency,
        ),
        guard=RepeatSuppressionGuard(settings.alert_cooldown_hours),
        fetch_concurrency=settings.fetch_concurrency,
        fetch_timeout=settings.fetch_timeout_seconds,
        run_deadline_seconds=settings.run_deadline_seconds,
        enable_surveillance_window=settings.enable_surveillance_window,
    )


async def run_alerts(
    settings: Settings, dry_run: bool = False, deadline_seconds: float | None = None
) -> RunSummary:
    """Create the run's clients, execute one pass, and close the clients."""
    import httpx

    from worker.alerts.messenger import AnthropicTextGenerator

    text_generator = None
    if settings.anthropic_api_key is not None:
        text_generator = AnthropicTextGenerator(
            api_key=settings.anthropic_api_key.get_secret_value(),
            model=settings.anthropic_model,
            max_tokens=settings.generation_max_tokens,
            timeout=settings.generation_timeout_seconds,
        )

    async with httpx.AsyncClient(timeout=settings.fetch_timeout_seconds) as http_client:
        runner = _create_runner(settings, http_client, text_generator)
        try:
            return await runner.run_once(dry_run=dry_run, deadline_seconds=deadline_seconds)
        finally:
            if text_generator is not None:
                await text_generator.aclose()


def _deadline_for(settings: Settings, context: Any) -> float:
    deadline = settings.run_deadline_seconds
    if context is not None and hasattr(context, "get_remaining_time_in_millis"):
        remaining = context.get_remaining_time_in_millis() / 1000.0 - _TIMEOUT_MARGIN_SECONDS
        deadline = min(deadline, max(remaining, 0.0))
    return deadline


# ---------------------------------------------------------------------------
# Module-level handler (Lambda entrypoint)
# ---------------------------------------------------------------------------


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """AWS Lambda handler entrypoint.

    Parameters
    ----------
    event : dict
        Scheduler event. ``{"dry_run": true}`` runs without side effects.
    context : Any
        AWS Lambda context object; its remaining time caps the run deadline.

    Returns
    -------
    dict
        The ``RunSummary`` as JSON-compatible data.
    """
    settings = load_settings()
    dry_run = bool((event or {}).get("dry_run", False))
    summary = asyncio.run(
        run_alerts(settings, dry_run=dry_run, deadline_seconds=_deadline_for(settings, context))
    )
    return summary.model_dump(mode="json")
