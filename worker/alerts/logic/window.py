"""
Surveillance window and active-day checks.

A matched trigger is only dispatched while its owner is "watching": inside
the configured window (solar, clock, or always) and on one of the active
days. Both checks use the owner's local time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from worker.alerts.models import AlertSettings, WindowMode

logger = logging.getLogger(__name__)

# Local-hour fallback for solar mode when sunrise/sunset are unknown.
SOLAR_FALLBACK_START_HOUR = 6
SOLAR_FALLBACK_END_HOUR = 20

_DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def _local(now: datetime, tz_name: str) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", tz_name)
        tz = ZoneInfo("UTC")
    return now.astimezone(tz)


def _minutes(hhmm: str) -> int:
    hours, _, minutes = hhmm.partition(":")
    return int(hours) * 60 + int(minutes or 0)


def check_surveillance_window(
    settings: AlertSettings,
    tz_name: str,
    now: datetime,
    sunrise: datetime | None = None,
    sunset: datetime | None = None,
) -> tuple[bool, str | None]:
    """Check whether ``now`` falls inside the user's surveillance window.

    Parameters
    ----------
    settings : AlertSettings
        The user's alert settings.
    tz_name : str
        IANA timezone of the user.
    now : datetime
        Current time (UTC).
    sunrise, sunset : datetime or None
        Solar times for the spot, used in solar mode.

    Returns
    -------
    tuple[bool, str | None]
        ``(True, None)`` inside the window, otherwise ``(False, reason)``.
    """
    if settings.window_mode == WindowMode.ALWAYS:
        return True, None

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = _local(now, tz_name)

    if settings.window_mode == WindowMode.CLOCK:
        current = local.hour * 60 + local.minute
        start = _minutes(settings.window_start_time)
        end = _minutes(settings.window_end_time)
        if start <= current <= end:
            return True, None
        return False, (
            f"outside_clock_window_{settings.window_start_time}"
            f"_{settings.window_end_time}"
        )

    # Solar
    if sunrise is not None and sunset is not None:
        if sunrise <= now <= sunset:
            return True, None
        return False, "outside_solar_window"

    if SOLAR_FALLBACK_START_HOUR <= local.hour <= SOLAR_FALLBACK_END_HOUR:
        return True, None
    return False, "outside_solar_window_fallback"


def check_active_day(
    settings: AlertSettings, tz_name: str, now: datetime
) -> tuple[bool, str | None]:
    """Check whether today (user-local) is one of the active days."""
    today = _DAY_NAMES[_local(now, tz_name).weekday()]
    if today in settings.active_days:
        return True, None
    return False, f"inactive_day_{today}"
