"""
Repository: Trigger Store and Alert Ledger for the Alert Worker.

Uses ``psycopg`` (v3, async) for PostgreSQL access. Each call opens its own
short-lived connection; pooling is handled externally by PgBouncer.

Tables:
    - ``triggers``           -- rule definitions plus evaluation state
                                (``last_matched``, ``last_evaluated_at``,
                                ``last_fired_at``).
    - ``user_spots``         -- the user's spot (display name, coordinates,
                                buoy and tide station), falling back to the
                                linked ``surf_spots`` row for coordinates.
    - ``profiles``           -- contact email and timezone.
    - ``alert_settings``     -- channel preferences and surveillance window.
    - ``push_subscriptions`` -- active OneSignal player ids.
    - ``sent_alerts``        -- append-only ledger, one row per dispatch.

Ledger rows are never updated or deleted here.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, time

import psycopg
from psycopg.rows import dict_row

from worker.alerts.models import (
    DEFAULT_ACTIVE_DAYS,
    AlertSettings,
    ChannelOutcome,
    ConditionLabel,
    NotificationStyle,
    Recipient,
    SentAlert,
    Spot,
    TideConstraint,
    Trigger,
    WindowMode,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


class LedgerWriteError(Exception):
    """Raised when a ledger row cannot be written."""


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class TriggerStore(ABC):
    """Read access to enabled triggers and write access to their evaluation state."""

    @abstractmethod
    async def list_enabled_triggers(self) -> list[Trigger]:
        """Enabled triggers of users with live alerts on, joined with spot and recipient."""
        ...

    @abstractmethod
    async def record_evaluation(
        self, trigger_id: str, matched: bool, evaluated_at: datetime
    ) -> None:
        """Persist the result of this run's evaluation as the trigger's previous match."""
        ...

    @abstractmethod
    async def mark_fired(self, trigger_id: str, fired_at: datetime) -> None:
        ...


class AlertLedger(ABC):
    """Append-only record of dispatched alerts."""

    @abstractmethod
    async def record_alert(self, alert: SentAlert) -> None:
        """Append one ledger row.

        Raises
        ------
        LedgerWriteError
            If the row could not be written.
        """
        ...

    @abstractmethod
    async def last_alert_for(self, trigger_id: str) -> SentAlert | None:
        """Most recent ledger row for the trigger, or None."""
        ...


# ---------------------------------------------------------------------------
# SQL Constants
# ---------------------------------------------------------------------------

_LIST_ENABLED_TRIGGERS_SQL = """\
SELECT
    t.id,
    t.user_id,
    t.spot_id,
    t.name,
    t.emoji,
    t.condition,
    t.min_height,
    t.max_height,
    t.min_period,
    t.max_period,
    t.min_swell_direction,
    t.max_swell_direction,
    t.min_wind_speed,
    t.max_wind_speed,
    t.min_wind_direction,
    t.max_wind_direction,
    t.tide_type,
    t.min_tide_height,
    t.max_tide_height,
    t.notification_style,
    t.message_template,
    t.enabled,
    t.cooldown_hours,
    t.last_matched,
    t.last_evaluated_at,
    t.last_fired_at,
    us.name AS spot_name,
    COALESCE(us.latitude, ss.lat) AS spot_lat,
    COALESCE(us.longitude, ss.lon) AS spot_lon,
    COALESCE(us.buoy_id, ss.buoy_id) AS spot_buoy_id,
    us.tide_station_id,
    us.tide_station_name,
    p.email,
    p.timezone,
    s.window_mode,
    s.window_start_time,
    s.window_end_time,
    s.active_days,
    s.email_enabled,
    s.push_enabled,
    COALESCE(
        (
            SELECT array_agg(ps.onesignal_player_id ORDER BY ps.onesignal_player_id)
            FROM push_subscriptions ps
            WHERE ps.user_id = t.user_id
              AND ps.is_active
        ),
        '{}'
    ) AS push_player_ids
FROM triggers t
JOIN user_spots us ON us.id = t.spot_id
LEFT JOIN surf_spots ss ON ss.id = us.master_spot_id
JOIN profiles p ON p.id = t.user_id
JOIN alert_settings s ON s.user_id = t.user_id
WHERE t.enabled
  AND s.live_alerts_enabled
ORDER BY t.spot_id, t.id
"""

_RECORD_EVALUATION_SQL = """\
UPDATE triggers
SET last_matched = %s,
    last_evaluated_at = %s
WHERE id = %s
"""

_MARK_FIRED_SQL = """\
UPDATE triggers
SET last_fired_at = %s
WHERE id = %s
"""

_INSERT_SENT_ALERT_SQL = """\
INSERT INTO sent_alerts (
    id,
    trigger_id,
    spot_id,
    user_id,
    sent_at,
    condition_matched,
    message_content,
    channel_outcomes,
    condition_data
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_LAST_ALERT_SQL = """\
SELECT
    id,
    trigger_id,
    spot_id,
    user_id,
    sent_at,
    condition_matched,
    message_content,
    channel_outcomes,
    condition_data
FROM sent_alerts
WHERE trigger_id = %s
ORDER BY sent_at DESC
LIMIT 1
"""


# ---------------------------------------------------------------------------
# Row -> Model Mapping Helpers
# ---------------------------------------------------------------------------


def _hhmm(value: object, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, time):
        return value.strftime("%H:%M")
    return str(value)[:5]


def _row_to_trigger(row: dict) -> Trigger:
    """Convert a joined trigger row (dict) to a Trigger model.

    Flat ``spot_*`` columns become ``Spot``; profile, settings and push
    columns become ``Recipient``. Missing settings fall back to the
    dashboard defaults.
    """
    spot = Spot(
        id=str(row["spot_id"]),
        name=row.get("spot_name") or "",
        lat=row.get("spot_lat") or 0.0,
        lon=row.get("spot_lon") or 0.0,
        buoy_id=row.get("spot_buoy_id"),
        tide_station_id=row.get("tide_station_id"),
        tide_station_name=row.get("tide_station_name"),
    )

    settings = AlertSettings(
        window_mode=WindowMode(row.get("window_mode") or WindowMode.SOLAR.value),
        window_start_time=_hhmm(row.get("window_start_time"), "06:00"),
        window_end_time=_hhmm(row.get("window_end_time"), "22:00"),
        active_days=row.get("active_days") or list(DEFAULT_ACTIVE_DAYS),
        email_enabled=(
            row["email_enabled"] if row.get("email_enabled") is not None else True
        ),
        push_enabled=row.get("push_enabled") or False,
    )

    recipient = Recipient(
        user_id=str(row["user_id"]),
        email=row.get("email"),
        timezone=row.get("timezone") or "America/Chicago",
        push_player_ids=[pid for pid in (row.get("push_player_ids") or []) if pid],
        settings=settings,
    )

    condition = row.get("condition")
    tide_type = row.get("tide_type")
    style = row.get("notification_style")

    return Trigger(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        spot_id=str(row["spot_id"]),
        name=row.get("name") or "",
        emoji=row.get("emoji"),
        condition=ConditionLabel(condition) if condition else None,
        min_height=row.get("min_height"),
        max_height=row.get("max_height"),
        min_period=row.get("min_period"),
        max_period=row.get("max_period"),
        min_swell_direction=row.get("min_swell_direction"),
        max_swell_direction=row.get("max_swell_direction"),
        min_wind_speed=row.get("min_wind_speed"),
        max_wind_speed=row.get("max_wind_speed"),
        min_wind_direction=row.get("min_wind_direction"),
        max_wind_direction=row.get("max_wind_direction"),
        tide_type=TideConstraint(tide_type) if tide_type else None,
        min_tide_height=row.get("min_tide_height"),
        max_tide_height=row.get("max_tide_height"),
        notification_style=NotificationStyle(style) if style else None,
        message_template=row.get("message_template"),
        enabled=row.get("enabled", True),
        cooldown_hours=row.get("cooldown_hours"),
        last_matched=row.get("last_matched"),
        last_evaluated_at=row.get("last_evaluated_at"),
        last_fired_at=row.get("last_fired_at"),
        spot=spot,
        recipient=recipient,
    )


def _row_to_sent_alert(row: dict) -> SentAlert:
    """Convert a ``sent_alerts`` row (dict) to a SentAlert model.

    JSONB columns may arrive as strings when read through a pooler that
    does not advertise the type.
    """
    outcomes_raw = row.get("channel_outcomes") or []
    if isinstance(outcomes_raw, str):
        outcomes_raw = json.loads(outcomes_raw)

    condition_data = row.get("condition_data") or {}
    if isinstance(condition_data, str):
        condition_data = json.loads(condition_data)

    condition = row.get("condition_matched")
    return SentAlert(
        id=str(row["id"]),
        trigger_id=str(row["trigger_id"]),
        spot_id=str(row["spot_id"]),
        user_id=str(row["user_id"]),
        sent_at=row["sent_at"],
        condition_matched=ConditionLabel(condition) if condition else None,
        message=row.get("message_content") or "",
        channel_outcomes=[ChannelOutcome(**o) for o in outcomes_raw],
        condition_data=condition_data,
    )


def _alert_to_params(alert: SentAlert) -> tuple:
    return (
        alert.id,
        alert.trigger_id,
        alert.spot_id,
        alert.user_id,
        alert.sent_at,
        alert.condition_matched.value if alert.condition_matched else None,
        alert.message,
        json.dumps([o.model_dump(mode="json") for o in alert.channel_outcomes]),
        json.dumps(alert.condition_data),
    )


# ---------------------------------------------------------------------------
# Concrete Implementation: PostgresRepository
# ---------------------------------------------------------------------------


class PostgresRepository(TriggerStore, AlertLedger):
    """PostgreSQL-backed Trigger Store and Alert Ledger using async psycopg v3.

    Parameters
    ----------
    conninfo : str
        PostgreSQL connection string (DSN).
    """

    def __init__(self, conninfo: str) -> None:
        self._conninfo = conninfo

    async def _connect(self) -> psycopg.AsyncConnection:
        """Create a new database connection with dict rows."""
        return await psycopg.AsyncConnection.connect(
            self._conninfo,
            row_factory=dict_row,
        )

    async def list_enabled_triggers(self) -> list[Trigger]:
        async with await self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(_LIST_ENABLED_TRIGGERS_SQL)
                rows = await cur.fetchall()

        triggers: list[Trigger] = []
        for row in rows:
            try:
                triggers.append(_row_to_trigger(row))
            except ValueError:
                logger.exception("Skipping malformed trigger row id=%s", row.get("id"))
        return triggers

    async def record_evaluation(
        self, trigger_id: str, matched: bool, evaluated_at: datetime
    ) -> None:
        async with await self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(_RECORD_EVALUATION_SQL, (matched, evaluated_at, trigger_id))

    async def mark_fired(self, trigger_id: str, fired_at: datetime) -> None:
        async with await self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(_MARK_FIRED_SQL, (fired_at, trigger_id))

    async def record_alert(self, alert: SentAlert) -> None:
        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(_INSERT_SENT_ALERT_SQL, _alert_to_params(alert))
        except psycopg.Error as exc:
            raise LedgerWriteError(
                f"Failed to record alert {alert.id} for trigger {alert.trigger_id}: {exc}"
            ) from exc
        logger.debug("Recorded alert %s for trigger=%s", alert.id, alert.trigger_id)

    async def last_alert_for(self, trigger_id: str) -> SentAlert | None:
        async with await self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(_LAST_ALERT_SQL, (trigger_id,))
                row = await cur.fetchone()

        if row is None:
            return None
        return _row_to_sent_alert(row)
