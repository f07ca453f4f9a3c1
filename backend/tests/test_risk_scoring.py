from datetime import datetime, timedelta, timezone

import pytest

from floodwatch.schemas.risk import RiskFactors, RiskLevel
from floodwatch.services import risk_scoring
from floodwatch.services.risk_scoring import AccuracyLog

NOW = datetime(2025, 7, 4, 12, 0, tzinfo=timezone.utc)


def _make_factors(**kwargs) -> RiskFactors:
    defaults = {"historical_accuracy": 1.0}
    defaults.update(kwargs)
    return RiskFactors(**defaults)


def test_weights_sum():
    positive = sum(w for w in risk_scoring.WEIGHTS.values() if w > 0)
    assert positive == pytest.approx(1.05)
    assert risk_scoring.WEIGHTS["historical_accuracy"] == -0.05


def test_score_all_zero():
    assert risk_scoring.compute_score(_make_factors()) == 0.0


def test_score_trend_only():
    # 3 ft/hr -> 60 sub-score -> 15 points
    assert risk_scoring.compute_score(_make_factors(water_level_trend=3.0)) == pytest.approx(15.0)


def test_trend_sub_score_saturates():
    assert risk_scoring.sub_scores(_make_factors(water_level_trend=5.0))["water_level_trend"] == 100.0
    assert risk_scoring.sub_scores(_make_factors(water_level_trend=50.0))["water_level_trend"] == 100.0
    assert risk_scoring.sub_scores(_make_factors(water_level_trend=-4.0))["water_level_trend"] == 0.0


def test_rainfall_capped_at_four_inches():
    parts = risk_scoring.sub_scores(_make_factors(rainfall_nowcast=2.0))
    assert parts["rainfall_nowcast"] == 50.0
    parts = risk_scoring.sub_scores(_make_factors(rainfall_nowcast=12.0))
    assert parts["rainfall_nowcast"] == 100.0


def test_inaccurate_history_is_penalized():
    trusted = risk_scoring.compute_score(_make_factors(water_level_trend=2.0, historical_accuracy=1.0))
    untrusted = risk_scoring.compute_score(_make_factors(water_level_trend=2.0, historical_accuracy=0.0))
    assert untrusted == pytest.approx(trusted - 5.0)


def test_score_clamped():
    maxed = _make_factors(
        water_level_trend=10.0,
        forecast_probability=1.0,
        rainfall_nowcast=10.0,
        soil_saturation=1.0,
        urban_density=1.0,
        infrastructure_criticality=1.0,
    )
    assert risk_scoring.compute_score(maxed) == 100.0
    assert risk_scoring.compute_score(RiskFactors(historical_accuracy=0.0)) == 0.0


@pytest.mark.parametrize("score,level", [
    (0.0, RiskLevel.NONE),
    (19.99, RiskLevel.NONE),
    (20.0, RiskLevel.LOW),
    (39.99, RiskLevel.LOW),
    (40.0, RiskLevel.MODERATE),
    (59.9, RiskLevel.MODERATE),
    (60.0, RiskLevel.HIGH),
    (60.1, RiskLevel.HIGH),
    (79.99, RiskLevel.HIGH),
    (80.0, RiskLevel.EXTREME),
    (100.0, RiskLevel.EXTREME),
])
def test_level_thresholds(score, level):
    assert risk_scoring.score_to_level(score) == level


def test_level_floor():
    assert risk_scoring.level_floor(RiskLevel.HIGH) == 60.0
    assert risk_scoring.level_floor(RiskLevel.NONE) == 0.0


def test_score_monotonic_in_trend():
    previous = -1.0
    for trend in [-2.0, 0.0, 0.5, 1.0, 2.0, 3.0, 4.5, 6.0, 25.0]:
        score = risk_scoring.compute_score(_make_factors(water_level_trend=trend, forecast_probability=0.3))
        assert score >= previous
        previous = score


def test_confidence_base_with_neutral_accuracy():
    conf = risk_scoring.compute_confidence(RiskFactors(), 0, None, NOW)
    assert conf == pytest.approx(0.6)


def test_confidence_all_bonuses():
    conf = risk_scoring.compute_confidence(
        _make_factors(historical_accuracy=1.0),
        reading_count=60,
        latest_at=NOW - timedelta(minutes=5),
        now=NOW,
    )
    assert conf == pytest.approx(1.0)


def test_confidence_stale_reading():
    fresh = risk_scoring.compute_confidence(RiskFactors(), 20, NOW - timedelta(minutes=10), NOW)
    stale = risk_scoring.compute_confidence(RiskFactors(), 20, NOW - timedelta(hours=2), NOW)
    assert fresh == pytest.approx(0.8)
    assert stale == pytest.approx(0.7)


def test_accuracy_log_neutral_when_empty():
    log = AccuracyLog()
    assert log.accuracy() == 0.5
    assert len(log) == 0


def test_accuracy_log_records():
    log = AccuracyLog()
    log.record("high", "high")
    log.record("high", "moderate")
    entry = log.record("low", "low")
    assert entry.correct
    assert log.accuracy() == pytest.approx(2 / 3)


def test_accuracy_log_evicts_oldest():
    log = AccuracyLog(maxlen=3)
    log.record("high", "low")
    for _ in range(3):
        log.record("low", "low")
    assert len(log) == 3
    assert log.accuracy() == 1.0
    assert all(e.correct for e in log.entries())
