"""
Pure decision logic for the Alert Worker.

This package contains the trigger evaluator, the repeat-suppression guard,
the surveillance window checks, and deterministic text helpers. Nothing in
here performs I/O.

Public API:
    - ``evaluate`` -- Trigger x snapshot -> MatchResult.
    - ``is_direction_in_range`` -- Wraparound-aware directional window check.
    - ``RepeatSuppressionGuard`` -- Rising-edge + cooldown send decision.
    - ``check_surveillance_window`` / ``check_active_day`` -- Delivery windows.
    - ``interpolate_template`` / ``fallback_message`` / ``build_subject``.
"""

from worker.alerts.logic.evaluator import (
    CHECKS,
    NO_FORECAST_REASON,
    evaluate,
    is_direction_in_range,
)
from worker.alerts.logic.suppression import RepeatSuppressionGuard, SuppressionState
from worker.alerts.logic.templates import (
    build_subject,
    fallback_message,
    interpolate_template,
)
from worker.alerts.logic.window import check_active_day, check_surveillance_window

__all__ = [
    "CHECKS",
    "NO_FORECAST_REASON",
    "evaluate",
    "is_direction_in_range",
    "RepeatSuppressionGuard",
    "SuppressionState",
    "build_subject",
    "fallback_message",
    "interpolate_template",
    "check_active_day",
    "check_surveillance_window",
]
