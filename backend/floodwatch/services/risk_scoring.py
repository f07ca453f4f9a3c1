"""Flood risk scoring model.

Weighted linear combination of 0-100 sub-scores:
  trend(0.25) + forecast(0.20) + rainfall(0.15) + soil(0.10)
  - accuracy penalty(0.05) + urban(0.15) + infrastructure(0.20)

The historical-accuracy term contributes its complement under a negative
weight: a location with a record of inaccurate alerts loses up to 5 points,
damping repeat false alarms.
Fixed level breakpoints, no hysteresis.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from floodwatch.config import settings
from floodwatch.schemas.risk import RiskFactors, RiskLevel
from floodwatch.services.features import as_utc

WEIGHTS: dict[str, float] = {
    "water_level_trend": 0.25,
    "forecast_probability": 0.20,
    "rainfall_nowcast": 0.15,
    "soil_saturation": 0.10,
    "historical_accuracy": -0.05,
    "urban_density": 0.15,
    "infrastructure_criticality": 0.20,
}

# Level floors, highest first
LEVEL_THRESHOLDS: tuple[tuple[float, RiskLevel], ...] = (
    (80.0, RiskLevel.EXTREME),
    (60.0, RiskLevel.HIGH),
    (40.0, RiskLevel.MODERATE),
    (20.0, RiskLevel.LOW),
)

RAINFALL_CAP_IN = 4.0


def sub_scores(factors: RiskFactors) -> dict[str, float]:
    """Normalize each factor to 0-100 before weighting."""
    return {
        # 5 ft/hr saturates; falling water contributes nothing
        "water_level_trend": min(100.0, max(0.0, factors.water_level_trend) * 20),
        "forecast_probability": _unit(factors.forecast_probability) * 100,
        "rainfall_nowcast": min(100.0, max(0.0, factors.rainfall_nowcast) / RAINFALL_CAP_IN * 100),
        "soil_saturation": _unit(factors.soil_saturation) * 100,
        "historical_accuracy": (1 - _unit(factors.historical_accuracy)) * 100,
        "urban_density": _unit(factors.urban_density) * 100,
        "infrastructure_criticality": _unit(factors.infrastructure_criticality) * 100,
    }


def compute_score(factors: RiskFactors) -> float:
    parts = sub_scores(factors)
    score = sum(WEIGHTS[name] * value for name, value in parts.items())
    return min(100.0, max(0.0, score))


def score_to_level(score: float) -> RiskLevel:
    for floor, level in LEVEL_THRESHOLDS:
        if score >= floor:
            return level
    return RiskLevel.NONE


def level_floor(level: RiskLevel) -> float:
    for floor, candidate in LEVEL_THRESHOLDS:
        if candidate == level:
            return floor
    return 0.0


def compute_confidence(
    factors: RiskFactors,
    reading_count: int,
    latest_at: datetime | None,
    now: datetime | None = None,
) -> float:
    confidence = 0.5
    if reading_count > 10:
        confidence += 0.1
    if reading_count > 50:
        confidence += 0.1

    confidence += _unit(factors.historical_accuracy) * 0.2

    if latest_at is not None:
        now = as_utc(now or datetime.now(timezone.utc))
        age = now - as_utc(latest_at)
        if timedelta(0) <= age < timedelta(minutes=settings.stale_reading_minutes):
            confidence += 0.1

    return min(1.0, max(0.0, confidence))


def _unit(value: float) -> float:
    return min(1.0, max(0.0, value))


@dataclass(frozen=True)
class AccuracyEntry:
    predicted: str
    actual: str
    correct: bool
    recorded_at: datetime


@dataclass
class AccuracyLog:
    """Bounded FIFO of past prediction outcomes for one location."""

    maxlen: int = field(default_factory=lambda: settings.accuracy_log_size)

    def __post_init__(self):
        self._entries: deque[AccuracyEntry] = deque(maxlen=self.maxlen)
        self._lock = threading.Lock()

    def record(self, predicted: str, actual: str) -> AccuracyEntry:
        entry = AccuracyEntry(
            predicted=predicted,
            actual=actual,
            correct=predicted == actual,
            recorded_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def accuracy(self) -> float:
        """Share of correct entries; 0.5 (neutral) when empty."""
        with self._lock:
            if not self._entries:
                return 0.5
            return sum(1 for e in self._entries if e.correct) / len(self._entries)

    def entries(self) -> list[AccuracyEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
