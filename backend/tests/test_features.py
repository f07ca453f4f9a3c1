import math
from datetime import datetime, timedelta, timezone

from floodwatch.schemas.telemetry import (
    ForecastPeriod,
    HourlyPrecipitation,
    LocationMetadata,
    NowcastForecast,
    PeriodForecast,
    Reading,
)
from floodwatch.services import features

NOW = datetime(2025, 7, 4, 12, 0, tzinfo=timezone.utc)


def _make_readings(levels, step_minutes=60, end=NOW, **kwargs) -> list[Reading]:
    start = end - timedelta(minutes=step_minutes * (len(levels) - 1))
    return [
        Reading(timestamp=start + timedelta(minutes=step_minutes * i), water_level_ft=level, **kwargs)
        for i, level in enumerate(levels)
    ]


def test_trend_rising():
    readings = _make_readings([5.0, 8.0, 11.0])
    assert features.calculate_trend(readings) == 3.0


def test_trend_needs_two_readings():
    assert features.calculate_trend([]) == 0.0
    assert features.calculate_trend(_make_readings([4.0])) == 0.0


def test_trend_zero_elapsed_time():
    readings = [Reading(timestamp=NOW, water_level_ft=1.0), Reading(timestamp=NOW, water_level_ft=9.0)]
    assert features.calculate_trend(readings) == 0.0


def test_trend_out_of_order_timestamps_is_finite():
    readings = [
        Reading(timestamp=NOW, water_level_ft=1.0),
        Reading(timestamp=NOW - timedelta(hours=1), water_level_ft=9.0),
    ]
    trend = features.calculate_trend(readings)
    assert math.isfinite(trend)
    assert trend == 0.0


def test_trend_uses_trailing_window_only():
    # hourly readings; only the trailing 6 hours count
    levels = [20.0] * 6 + [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0]
    readings = _make_readings(levels)
    assert features.calculate_trend(readings) == 1.0


def test_trend_naive_timestamps_treated_as_utc():
    naive_end = NOW.replace(tzinfo=None)
    readings = _make_readings([2.0, 4.0], end=naive_end)
    assert features.calculate_trend(readings) == 2.0


def test_overflow_probability_at_critical():
    assert features.overflow_probability(15.0, 0.0, critical_level=15.0) == 1.0
    assert features.overflow_probability(20.0, -1.0, critical_level=15.0) == 1.0


def test_overflow_probability_logistic():
    # projected = 9 + 1*6 = 15 -> exactly at critical -> 0.5
    assert features.overflow_probability(9.0, 1.0, critical_level=15.0) == 0.5
    low = features.overflow_probability(2.0, 0.0, critical_level=15.0)
    high = features.overflow_probability(12.0, 3.0, critical_level=15.0)
    assert low < 0.1
    assert high > 0.9


def test_overflow_probability_uses_predicted_level():
    base = features.overflow_probability(5.0, 0.0, critical_level=15.0)
    boosted = features.overflow_probability(5.0, 0.0, critical_level=15.0, predicted_level=14.0)
    assert boosted > base
    # a lower prediction never reduces the trend projection
    assert features.overflow_probability(5.0, 0.0, critical_level=15.0, predicted_level=1.0) == base


def test_rainfall_nowcast_hourly_window():
    forecast = NowcastForecast(hourly=[
        HourlyPrecipitation(time=NOW, precipitation_mm=100.0),  # not strictly after now
        HourlyPrecipitation(time=NOW + timedelta(hours=1), precipitation_mm=10.0, precipitation_probability_pct=40),
        HourlyPrecipitation(time=NOW + timedelta(hours=6), precipitation_mm=15.4, precipitation_probability_pct=90),
        HourlyPrecipitation(time=NOW + timedelta(hours=7), precipitation_mm=50.0, precipitation_probability_pct=100),
    ])
    inches, prob = features.rainfall_nowcast(forecast, NOW)
    assert math.isclose(inches, 25.4 * features.MM_TO_IN, rel_tol=1e-9)
    assert prob == 0.9


def test_rainfall_nowcast_missing_amounts():
    forecast = NowcastForecast(hourly=[HourlyPrecipitation(time=NOW + timedelta(hours=2))])
    assert features.rainfall_nowcast(forecast, NOW) == (0.0, 0.0)


def test_rainfall_nowcast_periods():
    forecast = PeriodForecast(periods=[
        ForecastPeriod(name="Tonight", probability_of_precipitation_pct=30),
        ForecastPeriod(name="Friday", probability_of_precipitation_pct=80),
        ForecastPeriod(name="Friday Night", probability_of_precipitation_pct=100),
    ])
    inches, prob = features.rainfall_nowcast(forecast, NOW)
    assert prob == 0.8
    assert math.isclose(inches, 1.6)


def test_rainfall_nowcast_none():
    assert features.rainfall_nowcast(None, NOW) == (0.0, 0.0)


def test_soil_saturation_prefers_sensor():
    readings = _make_readings([3.0, 3.0], soil_moisture_pct=65.0, rainfall_in=5.0)
    assert features.soil_saturation(readings) == 0.65


def test_soil_saturation_from_rainfall():
    readings = _make_readings([3.0, 3.0, 3.0], rainfall_in=1.0)
    assert math.isclose(features.soil_saturation(readings), 0.6)


def test_soil_saturation_clamped():
    readings = _make_readings([3.0] * 10, rainfall_in=2.0)
    assert features.soil_saturation(readings) == 1.0
    assert features.soil_saturation([]) == 0.0


def test_urban_density_and_infrastructure():
    meta = LocationMetadata(
        population=2_500_000,
        critical_infrastructure=["County Hospital", "Elm Street School", "Parking Garage"],
    )
    assert features.urban_density(meta) == 0.5
    assert math.isclose(features.infrastructure_criticality(meta), 0.4)


def test_metadata_missing_contributes_zero():
    assert features.urban_density(None) == 0.0
    assert features.infrastructure_criticality(None) == 0.0
    assert features.urban_density(LocationMetadata()) == 0.0


def test_infrastructure_capped():
    meta = LocationMetadata(critical_infrastructure=[f"Hospital {i}" for i in range(8)])
    assert features.infrastructure_criticality(meta) == 1.0


def test_feature_vector_shape():
    readings = _make_readings([1.0, 2.0, 4.0], flow_rate_cfs=100.0)
    signals = features.extract_signals(readings, None, NOW)
    vector = features.feature_vector(readings, signals)
    assert len(vector) == len(features.FEATURE_NAMES)
    assert vector[0] == 4.0
    assert vector[1] == 2.0
    assert vector[2] == 4.0
    assert vector[4] == 100.0
    assert vector[5] == signals.trend


def test_feature_vector_empty_is_zero():
    signals = features.extract_signals([], None, NOW)
    assert features.feature_vector([], signals) == [0.0] * len(features.FEATURE_NAMES)


def test_extract_signals_precipitation_mm():
    forecast = NowcastForecast(hourly=[HourlyPrecipitation(time=NOW + timedelta(hours=1), precipitation_mm=20.0)])
    signals = features.extract_signals(_make_readings([2.0, 2.0]), forecast, NOW)
    assert math.isclose(signals.precipitation_mm, 20.0)
    assert signals.reading_count == 2
    assert signals.latest_at == NOW


def test_detect_anomalies():
    values = [2.0] * 20 + [30.0]
    assert features.detect_anomalies(values) == [20]


def test_detect_anomalies_degenerate():
    assert features.detect_anomalies([1.0, 50.0]) == []
    assert features.detect_anomalies([3.0, 3.0, 3.0, 3.0]) == []
