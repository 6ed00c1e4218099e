"""
Trigger evaluation logic for the Alert Worker.

Implements ``evaluate(trigger, snapshot) -> MatchResult``. The function is
pure: no I/O, no clock, no logging side effects on the decision path.

Check Order:
    Checks run in a fixed order and stop at the first failure, so the
    ``reason`` of a non-match is reproducible:

    1. Wave height     [min_height, max_height]
    2. Wave period     [min_period, max_period]
    3. Swell direction [min_swell_direction, max_swell_direction] (wraps)
    4. Wind speed      [min_wind_speed, max_wind_speed]
    5. Wind direction  [min_wind_direction, max_wind_direction] (wraps)
    6. Tide phase      rising / falling (slack is compatible with either)
    7. Tide height     [min_tide_height, max_tide_height]

Open Constraints:
    A ``None`` bound never fails its check. A constrained forecast field that
    the provider did not return fails with ``"<field> unavailable"``. Tide
    constraints pass when the snapshot carries no tide reading, since most
    spots have no tide station.

Buoy readings on the snapshot are display-only and never consulted here.
"""

from __future__ import annotations

from typing import Callable

from worker.alerts.models import (
    CheckResult,
    ConditionSnapshot,
    ConditionValues,
    ForecastReading,
    MatchResult,
    TideConstraint,
    TidePhase,
    TideReading,
    Trigger,
)

NO_FORECAST_REASON = "no forecast data available"

_CARDINALS: list[str] = [
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
]


# ---------------------------------------------------------------------------
# Direction helpers
# ---------------------------------------------------------------------------


def normalize_degrees(degrees: float) -> float:
    """Map any degree value onto [0, 360)."""
    return degrees % 360.0


def is_direction_in_range(degrees: float, min_deg: float, max_deg: float) -> bool:
    """Check whether a compass heading falls within a directional window.

    Both bounds and the measured value are normalized to [0, 360) first.
    When ``min_deg > max_deg`` the window crosses north, e.g. 315 -> 45
    matches 350 and 20 but not 180.

    Parameters
    ----------
    degrees : float
        Measured heading.
    min_deg : float
        Start of the window, clockwise.
    max_deg : float
        End of the window, clockwise.

    Returns
    -------
    bool
        True if the heading is inside the window (bounds inclusive).
    """
    d = normalize_degrees(degrees)
    lo = normalize_degrees(min_deg)
    hi = normalize_degrees(max_deg)

    if lo <= hi:
        return lo <= d <= hi
    return d >= lo or d <= hi


def degrees_to_cardinal(degrees: float) -> str:
    """Convert a heading to a 16-point compass label (``"WNW"``)."""
    index = int(round(normalize_degrees(degrees) / 22.5)) % 16
    return _CARDINALS[index]


def _fmt(value: float) -> str:
    return f"{value:g}"


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------

# A check returns a failure reason, or None when it passes.
Check = Callable[[Trigger, ForecastReading, TideReading | None], str | None]


def _range_reason(
    label: str,
    value: float | None,
    min_value: float | None,
    max_value: float | None,
    unit: str,
) -> str | None:
    if min_value is None and max_value is None:
        return None
    if value is None:
        return f"{label} unavailable"
    if min_value is not None and value < min_value:
        return f"{label} {_fmt(value)}{unit} < min {_fmt(min_value)}{unit}"
    if max_value is not None and value > max_value:
        return f"{label} {_fmt(value)}{unit} > max {_fmt(max_value)}{unit}"
    return None


def _direction_reason(
    label: str,
    value: float | None,
    min_value: float | None,
    max_value: float | None,
) -> str | None:
    if min_value is None or max_value is None:
        return None
    if value is None:
        return f"{label} unavailable"
    if not is_direction_in_range(value, min_value, max_value):
        return (
            f"{label} {_fmt(value)}° not in range "
            f"{_fmt(min_value)}-{_fmt(max_value)}°"
        )
    return None


def check_wave_height(
    trigger: Trigger, forecast: ForecastReading, tide: TideReading | None
) -> str | None:
    return _range_reason(
        "Wave height", forecast.wave_height,
        trigger.min_height, trigger.max_height, "ft",
    )


def check_wave_period(
    trigger: Trigger, forecast: ForecastReading, tide: TideReading | None
) -> str | None:
    return _range_reason(
        "Wave period", forecast.wave_period,
        trigger.min_period, trigger.max_period, "s",
    )


def check_swell_direction(
    trigger: Trigger, forecast: ForecastReading, tide: TideReading | None
) -> str | None:
    return _direction_reason(
        "Swell direction", forecast.swell_direction,
        trigger.min_swell_direction, trigger.max_swell_direction,
    )


def check_wind_speed(
    trigger: Trigger, forecast: ForecastReading, tide: TideReading | None
) -> str | None:
    return _range_reason(
        "Wind speed", forecast.wind_speed,
        trigger.min_wind_speed, trigger.max_wind_speed, "kts",
    )


def check_wind_direction(
    trigger: Trigger, forecast: ForecastReading, tide: TideReading | None
) -> str | None:
    return _direction_reason(
        "Wind direction", forecast.wind_direction,
        trigger.min_wind_direction, trigger.max_wind_direction,
    )


def check_tide_phase(
    trigger: Trigger, forecast: ForecastReading, tide: TideReading | None
) -> str | None:
    wanted = trigger.tide_type
    if wanted is None or wanted == TideConstraint.ANY or tide is None:
        return None
    if tide.phase == TidePhase.SLACK:
        return None
    if tide.phase.value != wanted.value:
        return f"Tide is {tide.phase.value}, need {wanted.value}"
    return None


def check_tide_height(
    trigger: Trigger, forecast: ForecastReading, tide: TideReading | None
) -> str | None:
    if tide is None:
        return None
    return _range_reason(
        "Tide height", tide.height,
        trigger.min_tide_height, trigger.max_tide_height, "ft",
    )


CHECKS: list[tuple[str, Check]] = [
    ("wave_height", check_wave_height),
    ("wave_period", check_wave_period),
    ("swell_direction", check_swell_direction),
    ("wind_speed", check_wind_speed),
    ("wind_direction", check_wind_direction),
    ("tide_phase", check_tide_phase),
    ("tide_height", check_tide_height),
]


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _has_forecast(forecast: ForecastReading | None) -> bool:
    if forecast is None:
        return False
    return any(
        v is not None
        for v in (
            forecast.wave_height,
            forecast.wave_period,
            forecast.swell_direction,
            forecast.wind_speed,
            forecast.wind_direction,
        )
    )


def build_values(trigger: Trigger, snapshot: ConditionSnapshot) -> ConditionValues:
    """Collect the snapshot values used for rendering and the ledger."""
    forecast = snapshot.forecast or ForecastReading()
    tide = snapshot.tide
    wind_degrees = forecast.wind_direction

    return ConditionValues(
        spot_name=trigger.spot.name,
        wave_height=forecast.wave_height or 0.0,
        wave_period=forecast.wave_period or 0.0,
        swell_direction=forecast.swell_direction or 0.0,
        wind_speed=forecast.wind_speed or 0.0,
        wind_direction=(
            degrees_to_cardinal(wind_degrees) if wind_degrees is not None else "N/A"
        ),
        wind_degrees=wind_degrees or 0.0,
        tide_height=tide.height if tide is not None else None,
        tide_direction=tide.phase.value if tide is not None else None,
        buoy_id=snapshot.buoy.buoy_id if snapshot.buoy is not None else None,
    )


def evaluate(trigger: Trigger, snapshot: ConditionSnapshot) -> MatchResult:
    """Evaluate a trigger's rule against a condition snapshot.

    Parameters
    ----------
    trigger : Trigger
        The rule to evaluate.
    snapshot : ConditionSnapshot
        Readings for the trigger's spot.

    Returns
    -------
    MatchResult
        ``matched`` is True only if every constrained check passes. On a
        non-match, ``reason`` and ``failed_check`` name the first failing
        check. A snapshot without forecast values is a plain non-match with
        reason ``"no forecast data available"``, whatever its tide reading.
    """
    values = build_values(trigger, snapshot)

    if not _has_forecast(snapshot.forecast):
        return MatchResult(
            matched=False,
            reason=NO_FORECAST_REASON,
            failed_check="forecast",
            checks=[CheckResult(check="forecast", passed=False, reason=NO_FORECAST_REASON)],
            values=values,
        )

    forecast = snapshot.forecast or ForecastReading()
    trail: list[CheckResult] = []

    for name, check in CHECKS:
        reason = check(trigger, forecast, snapshot.tide)
        if reason is not None:
            trail.append(CheckResult(check=name, passed=False, reason=reason))
            return MatchResult(
                matched=False,
                reason=reason,
                failed_check=name,
                checks=trail,
                values=values,
            )
        trail.append(CheckResult(check=name, passed=True))

    return MatchResult(matched=True, checks=trail, values=values)
