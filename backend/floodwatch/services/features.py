"""Feature extraction: readings + forecast -> derived signals, feature vector, risk factors.

Every function here degrades instead of raising: missing optional fields
contribute zero and short or disordered windows yield zero trend, so an
assessment can always be produced.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from floodwatch.config import settings
from floodwatch.schemas.risk import RiskFactors
from floodwatch.schemas.telemetry import (
    LocationMetadata,
    NowcastForecast,
    PeriodForecast,
    Reading,
)

MM_TO_IN = 0.0393701

CRITICAL_INFRASTRUCTURE_TYPES = ("hospital", "school", "emergency", "power", "water")

FEATURE_NAMES = (
    "current_level",
    "previous_level",
    "max_level",
    "mean_level",
    "mean_flow",
    "trend",
    "rainfall_nowcast",
    "soil_saturation",
)


@dataclass(frozen=True)
class Signals:
    """Scalar signals derived from one reading window and forecast."""

    current_level: float = 0.0
    trend: float = 0.0
    rainfall_nowcast_in: float = 0.0
    precip_probability_max: float = 0.0  # 0-1
    soil_saturation: float = 0.0
    reading_count: int = 0
    latest_at: datetime | None = None

    @property
    def precipitation_mm(self) -> float:
        return self.rainfall_nowcast_in / MM_TO_IN


def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _finite(value: float | None) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return float(value)


def calculate_trend(readings: list[Reading], window_hours: float | None = None) -> float:
    """Rate of change of water level (ft/hr) over the trailing window.

    The window is anchored on the most recent reading. Zero when fewer than
    two readings fall inside it or the elapsed time is not positive.
    """
    if len(readings) < 2:
        return 0.0
    window = window_hours if window_hours is not None else settings.trend_window_hours

    latest = as_utc(readings[-1].timestamp)
    cutoff = latest - timedelta(hours=window)
    recent = [r for r in readings if as_utc(r.timestamp) >= cutoff]
    if len(recent) < 2:
        return 0.0

    first, last = recent[0], recent[-1]
    elapsed_hours = (as_utc(last.timestamp) - as_utc(first.timestamp)).total_seconds() / 3600
    if elapsed_hours <= 0:
        return 0.0
    return (_finite(last.water_level_ft) - _finite(first.water_level_ft)) / elapsed_hours


def overflow_probability(
    current_level: float,
    trend: float,
    critical_level: float | None = None,
    predicted_level: float | None = None,
) -> float:
    """Logistic probability that the level reaches critical within the projection horizon."""
    critical = critical_level if critical_level is not None else settings.critical_level_ft
    if current_level >= critical:
        return 1.0

    projected = current_level + trend * settings.projection_hours
    if predicted_level is not None and math.isfinite(predicted_level):
        projected = max(projected, predicted_level)

    x = (projected - critical) / settings.overflow_logistic_scale
    # math.exp overflows for very negative x
    if x < -700:
        return 0.0
    return 1 / (1 + math.exp(-x))


def rainfall_nowcast(forecast, now: datetime | None = None) -> tuple[float, float]:
    """Return (expected rainfall in inches over the nowcast horizon, max precip probability 0-1)."""
    if forecast is None:
        return 0.0, 0.0
    now = as_utc(now or datetime.now(timezone.utc))

    if isinstance(forecast, NowcastForecast):
        horizon = now + timedelta(hours=settings.nowcast_hours)
        total_mm = 0.0
        max_prob = 0.0
        for point in forecast.hourly:
            at = as_utc(point.time)
            if now < at <= horizon:
                total_mm += max(0.0, _finite(point.precipitation_mm))
                max_prob = max(max_prob, _finite(point.precipitation_probability_pct) / 100)
        return total_mm * MM_TO_IN, min(1.0, max_prob)

    if isinstance(forecast, PeriodForecast):
        max_prob = 0.0
        for period in forecast.periods[: settings.period_forecast_periods]:
            max_prob = max(max_prob, _finite(period.probability_of_precipitation_pct) / 100)
        max_prob = min(1.0, max_prob)
        return max_prob * settings.period_forecast_factor, max_prob

    return 0.0, 0.0


def soil_saturation(readings: list[Reading]) -> float:
    """Direct sensor value when the latest reading has one, else a rainfall-based estimate."""
    if not readings:
        return 0.0
    latest = readings[-1]
    if latest.soil_moisture_pct is not None and math.isfinite(latest.soil_moisture_pct):
        return min(1.0, max(0.0, latest.soil_moisture_pct / 100))

    cutoff = as_utc(latest.timestamp) - timedelta(hours=settings.soil_lookback_hours)
    recent_rain = sum(
        max(0.0, _finite(r.rainfall_in))
        for r in readings
        if as_utc(r.timestamp) > cutoff
    )
    return min(1.0, max(0.0, recent_rain * settings.soil_rain_coefficient))


def urban_density(metadata: LocationMetadata | None) -> float:
    if metadata is None or not metadata.population:
        return 0.0
    return min(1.0, max(0.0, metadata.population / settings.max_population))


def infrastructure_criticality(metadata: LocationMetadata | None) -> float:
    if metadata is None or not metadata.critical_infrastructure:
        return 0.0
    matched = sum(
        1 for infra in metadata.critical_infrastructure
        if any(kind in infra.lower() for kind in CRITICAL_INFRASTRUCTURE_TYPES)
    )
    return min(1.0, matched * 0.2)


def extract_signals(readings: list[Reading], forecast=None, now: datetime | None = None) -> Signals:
    if not readings:
        rain, prob = rainfall_nowcast(forecast, now)
        return Signals(rainfall_nowcast_in=rain, precip_probability_max=prob)

    rain, prob = rainfall_nowcast(forecast, now)
    return Signals(
        current_level=_finite(readings[-1].water_level_ft),
        trend=calculate_trend(readings),
        rainfall_nowcast_in=rain,
        precip_probability_max=prob,
        soil_saturation=soil_saturation(readings),
        reading_count=len(readings),
        latest_at=as_utc(readings[-1].timestamp),
    )


def feature_vector(readings: list[Reading], signals: Signals) -> list[float]:
    """Fixed-length vector (see FEATURE_NAMES) consumed by the predictive estimators."""
    if not readings:
        return [0.0] * len(FEATURE_NAMES)

    levels = [_finite(r.water_level_ft) for r in readings]
    flows = [_finite(r.flow_rate_cfs) for r in readings]
    return [
        levels[-1],
        levels[-2] if len(levels) > 1 else 0.0,
        max(levels),
        sum(levels) / len(levels),
        sum(flows) / len(flows),
        signals.trend,
        signals.rainfall_nowcast_in,
        signals.soil_saturation,
    ]


def build_factors(
    signals: Signals,
    metadata: LocationMetadata | None,
    historical_accuracy: float,
    critical_level: float | None = None,
    predicted_level: float | None = None,
) -> RiskFactors:
    return RiskFactors(
        water_level_trend=signals.trend,
        forecast_probability=overflow_probability(
            signals.current_level, signals.trend, critical_level, predicted_level,
        ),
        rainfall_nowcast=signals.rainfall_nowcast_in,
        soil_saturation=signals.soil_saturation,
        historical_accuracy=historical_accuracy,
        urban_density=urban_density(metadata),
        infrastructure_criticality=infrastructure_criticality(metadata),
    )


def detect_anomalies(values: list[float], threshold: float | None = None) -> list[int]:
    """Indices of values whose z-score exceeds the threshold."""
    if len(values) < 3:
        return []
    threshold = threshold if threshold is not None else settings.anomaly_z_threshold

    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    std = math.sqrt(variance)
    if std == 0:
        return []
    return [i for i, v in enumerate(values) if abs((v - mean) / std) > threshold]
