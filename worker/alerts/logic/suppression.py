"""
Repeat suppression for matching triggers.

Implements the ``RepeatSuppressionGuard`` which decides whether a trigger
that matches on this run should actually produce an alert, given the
trigger's previous evaluation and its last delivered ledger entry.

Per-trigger states:
    NOT_MATCHING         -- the rule does not match on this run.
    MATCHING_SENT        -- the rule matches and an alert goes out.
    MATCHING_SUPPRESSED  -- the rule matches but an alert went out recently
                            while the rule kept matching.

Policy:
    - No previous delivered alert -> send.
    - Rising edge (previous evaluation did not match, or never ran) -> send,
      regardless of cooldown.
    - Still matching since the previous run -> send only once the cooldown
      has elapsed since the last delivered alert.

A ledger row whose channels all failed does not count as a previous alert,
so the next scheduled run picks the alert up again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from worker.alerts.models import MatchResult, SentAlert, Trigger

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_HOURS: float = 6.0


class SuppressionState(str, Enum):
    NOT_MATCHING = "not_matching"
    MATCHING_SUPPRESSED = "matching_suppressed"
    MATCHING_SENT = "matching_sent"


def _aware(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class RepeatSuppressionGuard:
    """Rising-edge plus cooldown policy for repeat alerts.

    Parameters
    ----------
    default_cooldown_hours : float
        Cooldown used when a trigger does not set its own ``cooldown_hours``.
    """

    def __init__(self, default_cooldown_hours: float = DEFAULT_COOLDOWN_HOURS) -> None:
        self._default_cooldown = timedelta(hours=default_cooldown_hours)

    def cooldown_for(self, trigger: Trigger) -> timedelta:
        if trigger.cooldown_hours is not None:
            return timedelta(hours=trigger.cooldown_hours)
        return self._default_cooldown

    def classify(
        self,
        trigger: Trigger,
        match: MatchResult,
        last_alert: SentAlert | None,
        now: datetime,
    ) -> SuppressionState:
        """Place the trigger in its state for this run.

        Parameters
        ----------
        trigger : Trigger
            The trigger, carrying ``last_matched`` from the previous run.
        match : MatchResult
            This run's evaluation.
        last_alert : SentAlert or None
            Most recent ledger entry for the trigger.
        now : datetime
            Evaluation time (UTC).

        Returns
        -------
        SuppressionState
        """
        if not match.matched:
            return SuppressionState.NOT_MATCHING

        if last_alert is None or not last_alert.delivered:
            logger.debug("trigger=%s has no delivered alert; sending", trigger.id)
            return SuppressionState.MATCHING_SENT

        if not trigger.last_matched:
            logger.debug(
                "trigger=%s rising edge (previous match=%s); sending",
                trigger.id,
                trigger.last_matched,
            )
            return SuppressionState.MATCHING_SENT

        elapsed = _aware(now) - _aware(last_alert.sent_at)
        cooldown = self.cooldown_for(trigger)
        if elapsed >= cooldown:
            logger.debug(
                "trigger=%s cooldown elapsed (%s >= %s); sending",
                trigger.id,
                elapsed,
                cooldown,
            )
            return SuppressionState.MATCHING_SENT

        logger.debug(
            "trigger=%s suppressed: last alert %s ago, cooldown %s",
            trigger.id,
            elapsed,
            cooldown,
        )
        return SuppressionState.MATCHING_SUPPRESSED

    def should_send(
        self,
        trigger: Trigger,
        match: MatchResult,
        last_alert: SentAlert | None,
        now: datetime,
    ) -> bool:
        return self.classify(trigger, match, last_alert, now) == SuppressionState.MATCHING_SENT
