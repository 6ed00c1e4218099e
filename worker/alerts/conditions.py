"""
Conditions Provider for the Alert Worker.

Builds a ``ConditionSnapshot`` for one spot from public data sources:

    - Open-Meteo Marine API   -- swell height/period/direction, wind-wave
                                 secondary swell (current hour).
    - Open-Meteo Forecast API -- 10 m wind speed/direction, air temperature,
                                 daily sunrise/sunset.
    - NOAA CO-OPS             -- hi/lo tide predictions, interpolated to now.
    - NOAA NDBC realtime2     -- latest buoy observation (display only).

Failure Semantics:
    The forecast is the only required part. If either Open-Meteo request
    fails, returns a non-2xx status, or cannot be decoded, the fetch raises
    ``ProviderUnavailableError``. Tide, buoy, and solar data degrade to
    ``None`` on any failure so that a partial snapshot is still usable.

Units:
    Heights in feet, periods in seconds, speeds in knots, temperatures in
    Fahrenheit, directions in degrees.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, TypeVar

import httpx

from worker.alerts.models import (
    BuoyReading,
    ConditionSnapshot,
    ForecastReading,
    Spot,
    TidePhase,
    TideReading,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

METERS_TO_FEET = 3.28084
MS_TO_KNOTS = 1.94384
KMH_TO_KNOTS = 0.539957

MARINE_API_URL = "https://marine-api.open-meteo.com/v1/marine"
FORECAST_API_URL = "https://api.open-meteo.com/v1/forecast"
NOAA_TIDE_API_URL = "https://api.tidesandcurrents.noaa.gov/api/prod/datagetter"
NDBC_REALTIME_URL = "https://www.ndbc.noaa.gov/data/realtime2/{buoy_id}.txt"

USER_AGENT = "SurfAlertWorker/1.0 (surf alert application)"

# Tide is "slack" within this many minutes of a predicted high or low.
SLACK_WINDOW_MINUTES = 15

# Buoy observations older than this are ignored.
BUOY_MAX_AGE = timedelta(hours=48)

# NDBC standard meteorological columns.
_NDBC_YEAR, _NDBC_MONTH, _NDBC_DAY, _NDBC_HOUR, _NDBC_MINUTE = 0, 1, 2, 3, 4
_NDBC_WDIR, _NDBC_WSPD, _NDBC_GST, _NDBC_WVHT, _NDBC_DPD = 5, 6, 7, 8, 9
_NDBC_MWD, _NDBC_WTMP = 11, 14
_NDBC_MIN_COLUMNS = 15


class ProviderUnavailableError(Exception):
    """Raised when the forecast for a spot cannot be fetched."""


def _round(value: float | None, digits: int) -> float | None:
    if value is None:
        return None
    return round(value, digits)


def celsius_to_fahrenheit(celsius: float) -> float:
    return celsius * 9 / 5 + 32


# ---------------------------------------------------------------------------
# Open-Meteo parsing
# ---------------------------------------------------------------------------


def _response_tz(payload: dict[str, Any]) -> timezone:
    return timezone(timedelta(seconds=payload.get("utc_offset_seconds", 0)))


def _parse_local_times(times: list[str], tz: timezone) -> list[datetime]:
    return [datetime.fromisoformat(t).replace(tzinfo=tz) for t in times]


def current_hour_index(times: list[datetime], now: datetime) -> int:
    """Index of the first hourly slot at or after the start of the current hour."""
    hour_start = now.replace(minute=0, second=0, microsecond=0)
    for i, t in enumerate(times):
        if t >= hour_start:
            return i
    return 0


def _at(series: dict[str, Any], key: str, index: int) -> float | None:
    values = series.get(key)
    if not values or index >= len(values):
        return None
    return values[index]


def parse_forecast(
    marine: dict[str, Any], weather: dict[str, Any], now: datetime
) -> ForecastReading | None:
    """Combine marine and weather payloads into the current-hour reading.

    Returns ``None`` when the marine payload carries no hourly data.
    """
    marine_hourly = marine.get("hourly") or {}
    times = marine_hourly.get("time") or []
    if not times:
        return None

    index = current_hour_index(_parse_local_times(times, _response_tz(marine)), now)

    weather_hourly = weather.get("hourly") or {}
    weather_times = weather_hourly.get("time") or []
    w_index = (
        current_hour_index(_parse_local_times(weather_times, _response_tz(weather)), now)
        if weather_times
        else index
    )

    height_m = _at(marine_hourly, "swell_wave_height", index)
    secondary_m = _at(marine_hourly, "wind_wave_height", index)
    wind_kmh = _at(weather_hourly, "wind_speed_10m", w_index)
    air_c = _at(weather_hourly, "temperature_2m", w_index)

    return ForecastReading(
        wave_height=_round(height_m * METERS_TO_FEET, 1) if height_m is not None else None,
        wave_period=_round(_at(marine_hourly, "swell_wave_period", index), 0),
        swell_direction=_round(_at(marine_hourly, "swell_wave_direction", index), 0),
        wind_speed=_round(wind_kmh * KMH_TO_KNOTS, 0) if wind_kmh is not None else None,
        wind_direction=_round(_at(weather_hourly, "wind_direction_10m", w_index), 0),
        air_temp=_round(celsius_to_fahrenheit(air_c), 0) if air_c is not None else None,
        secondary_height=(
            _round(secondary_m * METERS_TO_FEET, 1) if secondary_m is not None else None
        ),
        secondary_period=_round(_at(marine_hourly, "wind_wave_period", index), 0),
        secondary_direction=_round(_at(marine_hourly, "wind_wave_direction", index), 0),
    )


def parse_solar(weather: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    daily = weather.get("daily") or {}
    sunrise = daily.get("sunrise") or []
    sunset = daily.get("sunset") or []
    if not sunrise or not sunset:
        return None, None
    tz = _response_tz(weather)
    return (
        datetime.fromisoformat(sunrise[0]).replace(tzinfo=tz),
        datetime.fromisoformat(sunset[0]).replace(tzinfo=tz),
    )


# ---------------------------------------------------------------------------
# NOAA tide
# ---------------------------------------------------------------------------


def interpolate_tide(
    predictions: list[tuple[datetime, float]], now: datetime
) -> tuple[float, TidePhase]:
    """Interpolate height and phase between the hi/lo predictions around ``now``.

    Parameters
    ----------
    predictions : list of (datetime, float)
        Hi/lo turning points in time order, heights in feet.
    now : datetime
        Current time (UTC).

    Returns
    -------
    tuple[float, TidePhase]
        Height rounded to 0.1 ft, and the phase. Within 15 minutes of either
        turning point, or when ``now`` is not bracketed, the phase is slack.
    """
    before: tuple[datetime, float] | None = None
    after: tuple[datetime, float] | None = None
    for point in predictions:
        if point[0] <= now:
            before = point
        elif after is None:
            after = point
            break

    if before is None or after is None:
        height = predictions[0][1] if predictions else 0.0
        return round(height, 1), TidePhase.SLACK

    total = (after[0] - before[0]).total_seconds()
    elapsed = (now - before[0]).total_seconds()
    progress = max(0.0, min(1.0, elapsed / total)) if total > 0 else 0.0
    height = before[1] + (after[1] - before[1]) * progress

    minutes_to_next = (after[0] - now).total_seconds() / 60
    minutes_from_prev = elapsed / 60
    if minutes_to_next < SLACK_WINDOW_MINUTES or minutes_from_prev < SLACK_WINDOW_MINUTES:
        phase = TidePhase.SLACK
    elif after[1] > before[1]:
        phase = TidePhase.RISING
    else:
        phase = TidePhase.FALLING

    return round(height, 1), phase


def parse_tide_predictions(payload: dict[str, Any]) -> list[tuple[datetime, float]]:
    """Parse a CO-OPS ``predictions`` payload requested with ``time_zone=gmt``."""
    if payload.get("error"):
        raise ValueError(f"NOAA tide error: {payload['error']}")
    points = []
    for p in payload.get("predictions") or []:
        ts = datetime.strptime(p["t"], "%Y-%m-%d %H:%M").replace(tzinfo=timezone.utc)
        points.append((ts, float(p["v"])))
    return points


# ---------------------------------------------------------------------------
# NDBC buoy
# ---------------------------------------------------------------------------


def _ndbc_value(raw: str) -> float | None:
    if raw in ("MM", "N/A", ""):
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def parse_buoy_text(buoy_id: str, text: str, now: datetime) -> BuoyReading | None:
    """Parse the newest usable row of an NDBC realtime2 file.

    Rows without a wave height are skipped. Returns ``None`` when no row
    qualifies or the newest usable row is older than 48 hours.
    """
    for line in text.strip().splitlines():
        if line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < _NDBC_MIN_COLUMNS:
            continue
        wave_height = _ndbc_value(parts[_NDBC_WVHT])
        if wave_height is None:
            continue

        year = int(parts[_NDBC_YEAR])
        if year < 100:
            year += 2000
        observed_at = datetime(
            year,
            int(parts[_NDBC_MONTH]),
            int(parts[_NDBC_DAY]),
            int(parts[_NDBC_HOUR]),
            int(parts[_NDBC_MINUTE]),
            tzinfo=timezone.utc,
        )
        if now - observed_at > BUOY_MAX_AGE:
            logger.info(
                "Buoy %s: newest observation is stale (%s)", buoy_id, observed_at.isoformat()
            )
            return None

        water_c = _ndbc_value(parts[_NDBC_WTMP])
        wind_ms = _ndbc_value(parts[_NDBC_WSPD])
        gust_ms = _ndbc_value(parts[_NDBC_GST])
        return BuoyReading(
            buoy_id=buoy_id,
            wave_height=round(wave_height * METERS_TO_FEET, 1),
            wave_period=_ndbc_value(parts[_NDBC_DPD]),
            mean_wave_direction=_ndbc_value(parts[_NDBC_MWD]),
            water_temp=round(celsius_to_fahrenheit(water_c)) if water_c is not None else None,
            wind_speed=round(wind_ms * MS_TO_KNOTS) if wind_ms is not None else None,
            wind_gust=round(gust_ms * MS_TO_KNOTS) if gust_ms is not None else None,
            wind_direction=_ndbc_value(parts[_NDBC_WDIR]),
            observed_at=observed_at,
        )

    logger.info("Buoy %s: no valid observation found", buoy_id)
    return None


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ConditionsProvider(ABC):
    """Abstract source of condition snapshots."""

    @abstractmethod
    async def fetch_conditions(self, spot: Spot) -> ConditionSnapshot:
        """Fetch the snapshot for ``spot``.

        Raises
        ------
        ProviderUnavailableError
            If the forecast cannot be fetched.
        """


class OpenMeteoConditionsProvider(ConditionsProvider):
    """``ConditionsProvider`` backed by Open-Meteo and NOAA.

    Parameters
    ----------
    http_client : httpx.AsyncClient
        Client shared for the run; request timeouts are configured on it.
    """

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._client = http_client

    async def _get_json(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        resp = await self._client.get(url, params=params)
        resp.raise_for_status()
        return resp.json()

    async def _fetch_forecast(
        self, spot: Spot, now: datetime
    ) -> tuple[ForecastReading | None, datetime | None, datetime | None]:
        marine_params = {
            "latitude": spot.lat,
            "longitude": spot.lon,
            "hourly": (
                "swell_wave_height,swell_wave_period,swell_wave_direction,"
                "wind_wave_height,wind_wave_period,wind_wave_direction"
            ),
            "forecast_days": 1,
            "timezone": "auto",
        }
        weather_params = {
            "latitude": spot.lat,
            "longitude": spot.lon,
            "hourly": "wind_speed_10m,wind_direction_10m,temperature_2m",
            "daily": "sunrise,sunset",
            "forecast_days": 1,
            "timezone": "auto",
        }
        try:
            marine, weather = await asyncio.gather(
                self._get_json(MARINE_API_URL, marine_params),
                self._get_json(FORECAST_API_URL, weather_params),
            )
            forecast = parse_forecast(marine, weather, now)
            sunrise, sunset = parse_solar(weather)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            raise ProviderUnavailableError(
                f"Open-Meteo request failed for spot {spot.id}: {exc}"
            ) from exc
        return forecast, sunrise, sunset

    async def _fetch_tide(self, spot: Spot, now: datetime) -> TideReading | None:
        if not spot.tide_station_id:
            return None
        begin = now - timedelta(hours=12)
        params = {
            "station": spot.tide_station_id,
            "product": "predictions",
            "datum": "MLLW",
            "units": "english",
            "time_zone": "gmt",
            "format": "json",
            "interval": "hilo",
            "begin_date": begin.strftime("%Y%m%d %H:%M"),
            "range": 36,
            "application": "surf_alert_worker",
        }
        predictions = parse_tide_predictions(await self._get_json(NOAA_TIDE_API_URL, params))
        if len(predictions) < 2:
            logger.info("Tide station %s: not enough predictions", spot.tide_station_id)
            return None
        height, phase = interpolate_tide(predictions, now)
        return TideReading(
            height=height,
            phase=phase,
            station_id=spot.tide_station_id,
            station_name=spot.tide_station_name or "",
        )

    async def _fetch_buoy(self, spot: Spot, now: datetime) -> BuoyReading | None:
        if not spot.buoy_id:
            return None
        buoy_id = spot.buoy_id.upper()
        resp = await self._client.get(
            NDBC_REALTIME_URL.format(buoy_id=buoy_id),
            headers={"User-Agent": USER_AGENT},
        )
        resp.raise_for_status()
        return parse_buoy_text(buoy_id, resp.text, now)

    async def _optional(self, label: str, spot: Spot, coro: Awaitable[T]) -> T | None:
        try:
            return await coro
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning("%s fetch failed for spot=%s: %s", label, spot.id, exc)
            return None

    async def fetch_conditions(self, spot: Spot) -> ConditionSnapshot:
        now = datetime.now(timezone.utc)
        (forecast, sunrise, sunset), tide, buoy = await asyncio.gather(
            self._fetch_forecast(spot, now),
            self._optional("Tide", spot, self._fetch_tide(spot, now)),
            self._optional("Buoy", spot, self._fetch_buoy(spot, now)),
        )
        return ConditionSnapshot(
            spot_id=spot.id,
            fetched_at=now,
            forecast=forecast,
            tide=tide,
            buoy=buoy,
            sunrise=sunrise,
            sunset=sunset,
        )
