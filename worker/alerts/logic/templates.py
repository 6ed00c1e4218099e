"""
Deterministic alert text: custom templates, fallback messages, subjects.

Custom Template Tokens:
    ``{{spotName}}`` / ``{{spot}}``            spot display name
    ``{{condition}}``                          condition label (default "good")
    ``{{triggerName}}`` / ``{{trigger}}``      trigger display name
    ``{{height}}`` / ``{{waveHeight}}``        e.g. "5ft"
    ``{{period}}`` / ``{{wavePeriod}}``        e.g. "12s"
    ``{{swellDirection}}`` / ``{{direction}}`` e.g. "300°"
    ``{{windSpeed}}`` / ``{{wind}}``           e.g. "8kts"
    ``{{windDirection}}``                      e.g. "ENE"
    ``{{tideHeight}}`` / ``{{tide}}``          e.g. "2.3ft" or "N/A"
    ``{{tideDirection}}``                      "rising" / "falling" / "slack" / "N/A"

Unknown tokens are left in the output verbatim.
"""

from __future__ import annotations

import re

from worker.alerts.models import ConditionLabel, ConditionValues

_TOKEN_RE = re.compile(r"\{\{(\w+)\}\}")

_CONDITION_EMOJI: dict[str, str] = {
    "epic": "🔥",
    "good": "🌊",
    "fair": "👍",
}
DEFAULT_EMOJI = "🏄"

_CONDITION_COLOR: dict[str, str] = {
    "epic": "#ef4444",
    "good": "#22c55e",
    "fair": "#3b82f6",
}
DEFAULT_COLOR = "#6b7280"


def _fmt(value: float) -> str:
    return f"{value:g}"


def _label(condition: ConditionLabel | None) -> str:
    return condition.value if condition is not None else "good"


def template_tokens(
    spot_name: str,
    trigger_name: str,
    condition: ConditionLabel | None,
    values: ConditionValues,
) -> dict[str, str]:
    """Build the token -> text mapping for a custom template."""
    tide = f"{_fmt(values.tide_height)}ft" if values.tide_height is not None else "N/A"
    height = f"{_fmt(values.wave_height)}ft"
    period = f"{_fmt(values.wave_period)}s"
    direction = f"{_fmt(values.swell_direction)}°"
    wind = f"{_fmt(values.wind_speed)}kts"

    return {
        "spotName": spot_name,
        "spot": spot_name,
        "condition": _label(condition),
        "triggerName": trigger_name,
        "trigger": trigger_name,
        "height": height,
        "waveHeight": height,
        "period": period,
        "wavePeriod": period,
        "swellDirection": direction,
        "direction": direction,
        "windSpeed": wind,
        "wind": wind,
        "windDirection": values.wind_direction,
        "tideHeight": tide,
        "tide": tide,
        "tideDirection": values.tide_direction or "N/A",
    }


TEMPLATE_TOKENS: frozenset[str] = frozenset(
    template_tokens("", "", None, ConditionValues(spot_name="")).keys()
)


def interpolate_template(template: str, tokens: dict[str, str]) -> str:
    """Replace ``{{token}}`` placeholders; unknown tokens stay as written."""

    def _replace(m: re.Match[str]) -> str:
        return tokens.get(m.group(1), m.group(0))

    return _TOKEN_RE.sub(_replace, template)


def fallback_message(
    spot_name: str, condition: ConditionLabel | None, values: ConditionValues
) -> str:
    """Plain message built from raw values, used when generation fails."""
    if condition == ConditionLabel.EPIC:
        label = "Epic"
    elif condition == ConditionLabel.GOOD:
        label = "Good"
    else:
        label = "Fair"
    return (
        f"{label} conditions at {spot_name}: "
        f"{_fmt(values.wave_height)}ft @ {_fmt(values.wave_period)}s, "
        f"wind {_fmt(values.wind_speed)}kts."
    )


def condition_emoji(condition: str) -> str:
    return _CONDITION_EMOJI.get(condition.lower(), DEFAULT_EMOJI)


def condition_color(condition: str) -> str:
    return _CONDITION_COLOR.get(condition.lower(), DEFAULT_COLOR)


def build_subject(
    emoji: str | None, spot_name: str, condition: ConditionLabel | None
) -> str:
    """Email subject, e.g. ``"🌊 Ocean Beach - Good conditions"``."""
    label = _label(condition)
    icon = emoji or condition_emoji(label)
    return f"{icon} {spot_name} - {label.capitalize()} conditions"


def build_push_title(emoji: str | None, spot_name: str) -> str:
    return f"{emoji or '🌊'} {spot_name}"
