"""
Domain models for the Alert Worker.

Pydantic v2 models for the rows read from the Trigger Store, the condition
snapshot produced by the Conditions Provider, the evaluation result, and the
ledger entries written after dispatch.

**CRITICAL**: Enum values are the exact strings stored in the ``triggers``,
``alert_settings`` and ``sent_alerts`` tables. Changing them breaks the
dashboard, which reads the same columns.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ConditionLabel(str, Enum):
    """Qualitative label a user attaches to a trigger."""

    FAIR = "fair"
    GOOD = "good"
    EPIC = "epic"


class TideConstraint(str, Enum):
    """Tide phase a trigger asks for. ``ANY`` is an open constraint."""

    RISING = "rising"
    FALLING = "falling"
    ANY = "any"


class TidePhase(str, Enum):
    """Measured tide phase at evaluation time."""

    RISING = "rising"
    FALLING = "falling"
    SLACK = "slack"


class NotificationStyle(str, Enum):
    """How alert text is produced for a trigger."""

    LOCAL_VOICE = "local"
    HYPED_VOICE = "hype"
    CUSTOM_TEMPLATE = "custom"


class WindowMode(str, Enum):
    """Surveillance window mode from the user's alert settings."""

    SOLAR = "solar"
    CLOCK = "clock"
    ALWAYS = "always"


class ChannelType(str, Enum):
    EMAIL = "email"
    PUSH = "push"


class DeliveryStatus(str, Enum):
    """Per-channel delivery outcome.

    ``INVALID`` marks bad recipient data (malformed address, no device) and
    is never retried. ``FAILED`` marks a transport or provider failure.
    """

    SENT = "sent"
    FAILED = "failed"
    INVALID = "invalid"


class TriggerOutcome(str, Enum):
    """What happened to one trigger during one run."""

    NO_MATCH = "no_match"
    SUPPRESSED = "suppressed"
    SKIPPED = "skipped"
    SENT = "sent"
    WOULD_SEND = "would_send"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Trigger Store rows
# ---------------------------------------------------------------------------


DEFAULT_ACTIVE_DAYS: list[str] = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


class Spot(BaseModel):
    """Minimal spot metadata joined onto each trigger."""

    model_config = {"populate_by_name": True}

    id: str
    name: str
    lat: float
    lon: float
    buoy_id: str | None = None
    tide_station_id: str | None = None
    tide_station_name: str | None = None


class AlertSettings(BaseModel):
    """Per-user delivery preferences and surveillance window."""

    model_config = {"populate_by_name": True}

    window_mode: WindowMode = WindowMode.SOLAR
    window_start_time: str = "06:00"
    window_end_time: str = "22:00"
    active_days: list[str] = Field(default_factory=lambda: list(DEFAULT_ACTIVE_DAYS))
    email_enabled: bool = True
    push_enabled: bool = False


class Recipient(BaseModel):
    """The owner of a trigger, as far as delivery is concerned."""

    model_config = {"populate_by_name": True}

    user_id: str
    email: str | None = None
    timezone: str = "America/Chicago"
    push_player_ids: list[str] = []
    settings: AlertSettings = Field(default_factory=AlertSettings)


class Trigger(BaseModel):
    """A user's rule bound to one spot.

    Every range bound is independently optional; ``None`` means the bound is
    open and always passes. Directional ranges only apply when both bounds
    are set, and may wrap through 0/360.

    ``last_matched`` / ``last_evaluated_at`` / ``last_fired_at`` are the
    cross-run evaluation state kept in the Trigger Store.
    """

    model_config = {"populate_by_name": True}

    id: str
    user_id: str
    spot_id: str
    name: str = ""
    emoji: str | None = None

    condition: ConditionLabel | None = None

    min_height: float | None = None
    max_height: float | None = None
    min_period: float | None = None
    max_period: float | None = None
    min_swell_direction: float | None = None
    max_swell_direction: float | None = None
    min_wind_speed: float | None = None
    max_wind_speed: float | None = None
    min_wind_direction: float | None = None
    max_wind_direction: float | None = None
    tide_type: TideConstraint | None = None
    min_tide_height: float | None = None
    max_tide_height: float | None = None

    notification_style: NotificationStyle | None = None
    message_template: str | None = None
    enabled: bool = True
    cooldown_hours: float | None = None

    # Evaluation state
    last_matched: bool | None = None
    last_evaluated_at: datetime | None = None
    last_fired_at: datetime | None = None

    # Joined context
    spot: Spot
    recipient: Recipient


# ---------------------------------------------------------------------------
# Condition snapshot
# ---------------------------------------------------------------------------


class ForecastReading(BaseModel):
    """Forecast values for the current hour at a spot.

    Heights in feet, periods in seconds, speeds in knots, directions in
    degrees. A field is ``None`` when the provider did not return it.
    """

    model_config = {"populate_by_name": True}

    wave_height: float | None = None
    wave_period: float | None = None
    swell_direction: float | None = None
    wind_speed: float | None = None
    wind_direction: float | None = None
    air_temp: float | None = None
    secondary_height: float | None = None
    secondary_period: float | None = None
    secondary_direction: float | None = None


class TideReading(BaseModel):
    model_config = {"populate_by_name": True}

    height: float
    phase: TidePhase
    station_id: str = ""
    station_name: str = ""


class BuoyReading(BaseModel):
    """Live buoy observation. Display only, never used to decide a match."""

    model_config = {"populate_by_name": True}

    buoy_id: str
    wave_height: float
    wave_period: float | None = None
    mean_wave_direction: float | None = None
    water_temp: float | None = None
    wind_speed: float | None = None
    wind_gust: float | None = None
    wind_direction: float | None = None
    observed_at: datetime


class ConditionSnapshot(BaseModel):
    """Environmental readings used to evaluate every trigger on one spot."""

    model_config = {"populate_by_name": True}

    spot_id: str
    fetched_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    forecast: ForecastReading | None = None
    tide: TideReading | None = None
    buoy: BuoyReading | None = None
    sunrise: datetime | None = None
    sunset: datetime | None = None


# ---------------------------------------------------------------------------
# Evaluation output
# ---------------------------------------------------------------------------


class CheckResult(BaseModel):
    """Outcome of one named constraint check."""

    model_config = {"populate_by_name": True}

    check: str
    passed: bool
    reason: str = ""


class ConditionValues(BaseModel):
    """Snapshot values used for a decision, kept for rendering and audit."""

    model_config = {"populate_by_name": True}

    spot_name: str
    wave_height: float = 0.0
    wave_period: float = 0.0
    swell_direction: float = 0.0
    wind_speed: float = 0.0
    wind_direction: str = "N/A"
    wind_degrees: float = 0.0
    tide_height: float | None = None
    tide_direction: str | None = None
    buoy_id: str | None = None


class MatchResult(BaseModel):
    """Result of evaluating one trigger against one snapshot.

    ``checks`` lists every check that ran, in evaluation order; the last
    entry is the failing one when ``matched`` is False.
    """

    model_config = {"populate_by_name": True}

    matched: bool
    reason: str | None = None
    failed_check: str | None = None
    checks: list[CheckResult] = []
    values: ConditionValues


# ---------------------------------------------------------------------------
# Dispatch and ledger
# ---------------------------------------------------------------------------


class RenderedMessage(BaseModel):
    model_config = {"populate_by_name": True}

    subject: str
    body: str
    push_title: str


class ChannelOutcome(BaseModel):
    model_config = {"populate_by_name": True}

    channel: ChannelType
    status: DeliveryStatus
    provider_id: str | None = None
    error: str | None = None


class SentAlert(BaseModel):
    """Immutable ledger row describing one dispatched alert."""

    model_config = {"populate_by_name": True}

    id: str
    trigger_id: str
    spot_id: str
    user_id: str
    sent_at: datetime
    condition_matched: ConditionLabel | None = None
    message: str
    channel_outcomes: list[ChannelOutcome] = []
    condition_data: dict[str, Any] = {}

    @property
    def delivered(self) -> bool:
        """True when at least one channel accepted the alert."""
        return any(o.status == DeliveryStatus.SENT for o in self.channel_outcomes)


class RunSummary(BaseModel):
    """Counters for one ``run_once`` invocation."""

    model_config = {"populate_by_name": True}

    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    dry_run: bool = False

    triggers_loaded: int = 0
    spots: int = 0
    evaluated: int = 0
    matched: int = 0
    sent: int = 0
    would_send: int = 0
    suppressed: int = 0
    skipped: int = 0
    failed: int = 0

    provider_failures: int = 0
    ledger_failures: int = 0
    timed_out: int = 0
    deadline_exceeded: bool = False
    store_failed: bool = False

    def record(self, outcome: TriggerOutcome) -> None:
        """Fold one trigger outcome into the counters."""
        if outcome == TriggerOutcome.SENT:
            self.sent += 1
        elif outcome == TriggerOutcome.WOULD_SEND:
            self.would_send += 1
        elif outcome == TriggerOutcome.SUPPRESSED:
            self.suppressed += 1
        elif outcome == TriggerOutcome.SKIPPED:
            self.skipped += 1
        elif outcome == TriggerOutcome.FAILED:
            self.failed += 1
