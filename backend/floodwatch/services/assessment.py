"""Assessment engine: orchestrates feature extraction, scoring, and the alert policy.

One call to `assess` is a pure, synchronous pass over its inputs. The only
state it touches is lazy Q-table initialization inside the policy, which the
caller serializes per location.
"""

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from floodwatch.config import settings
from floodwatch.schemas.policy import AlertAction, MDPState, TimeOfDay
from floodwatch.schemas.risk import RiskAssessment, RiskFactors, RiskLevel
from floodwatch.schemas.telemetry import LocationMetadata, Reading
from floodwatch.services import features, risk_scoring, time_to_impact
from floodwatch.services.estimators import EnsembleOutput, EstimatorEnsemble
from floodwatch.services.mdp_policy import MDPAlertPolicy
from floodwatch.services.risk_scoring import AccuracyLog

logger = logging.getLogger(__name__)

# Lead time (minutes) under which a rising level forces at least a high score
IMPACT_ESCALATION_MINUTES = 120.0

ACTION_DESCRIPTIONS: dict[AlertAction, str] = {
    AlertAction.NONE: "Continue monitoring",
    AlertAction.WATCH: "Issue flood watch advisory",
    AlertAction.WARNING: "Issue flood warning",
    AlertAction.HIGH: "Issue high flood warning - prepare for flooding",
    AlertAction.EVACUATE: "Issue evacuation order - life-threatening conditions",
}

_LEVEL_RECOMMENDATIONS: dict[RiskLevel, list[str]] = {
    RiskLevel.EXTREME: [
        "Evacuate immediately to higher ground",
        "Avoid all low-water crossings",
        "Follow emergency evacuation routes",
    ],
    RiskLevel.HIGH: [
        "Prepare for potential evacuation",
        "Move valuables to higher floors",
        "Monitor emergency broadcasts",
        "Avoid unnecessary travel",
    ],
    RiskLevel.MODERATE: [
        "Stay alert for changing conditions",
        "Prepare emergency supplies",
        "Plan evacuation routes",
    ],
    RiskLevel.LOW: [
        "Monitor weather forecasts",
        "Check emergency supplies",
    ],
    RiskLevel.NONE: [],
}


def assess(
    readings: list[Reading],
    forecast=None,
    metadata: LocationMetadata | None = None,
    accuracy_log: AccuracyLog | float | None = None,
    *,
    policy: MDPAlertPolicy | None = None,
    previous_action: AlertAction = AlertAction.NONE,
    estimators: EstimatorEnsemble | None = None,
    critical_level: float | None = None,
    tz: str | None = None,
    now: datetime | None = None,
) -> RiskAssessment:
    """Produce a risk assessment; never raises.

    `tz` is the IANA zone of the gauge; day and night are judged on its local
    clock (UTC when omitted).
    """
    try:
        return _assess(
            readings or [], forecast, metadata, accuracy_log,
            policy, previous_action, estimators, critical_level, tz, now,
        )
    except Exception as e:
        logger.exception("Assessment failed, returning degraded result: %s", e)
        return RiskAssessment(
            score=0.0,
            level=RiskLevel.NONE,
            confidence=0.0,
            factors=RiskFactors(),
            alerts=["ASSESSMENT_DEGRADED"],
        )


def _assess(
    readings: list[Reading],
    forecast,
    metadata: LocationMetadata | None,
    accuracy_log: AccuracyLog | float | None,
    policy: MDPAlertPolicy | None,
    previous_action: AlertAction,
    estimators: EstimatorEnsemble | None,
    critical_level: float | None,
    tz: str | None,
    now: datetime | None,
) -> RiskAssessment:
    critical = critical_level if critical_level is not None else settings.critical_level_ft
    now = features.as_utc(now or datetime.now(timezone.utc))

    signals = features.extract_signals(readings, forecast, now)
    vector = features.feature_vector(readings, signals)

    # an empty window carries no information for the estimators
    if estimators is not None and readings:
        ensemble = estimators.predict(vector)
    else:
        ensemble = EnsembleOutput()

    factors = features.build_factors(
        signals,
        metadata,
        _historical_accuracy(accuracy_log),
        critical_level=critical,
        predicted_level=ensemble.predicted_level,
    )

    score = risk_scoring.compute_score(factors)
    tti = time_to_impact.estimate(signals.trend, signals.current_level, critical)
    score = round(_escalate_for_impact(score, tti), 2)
    level = risk_scoring.score_to_level(score)

    mdp_state = MDPState(
        water_level=signals.current_level,
        rate_of_change=signals.trend,
        precipitation=signals.precipitation_mm,
        time_of_day=_time_of_day(signals.latest_at or now, tz),
        previous_alert=previous_action,
    )
    action, action_confidence = _choose_action(policy, mdp_state, level)

    anomalies = features.detect_anomalies([r.water_level_ft for r in readings])

    alerts = generate_alerts(factors, level, tti, ensemble.risk_level)
    if readings and (len(readings) - 1) in anomalies:
        alerts.append("SENSOR_ANOMALY_DETECTED")

    return RiskAssessment(
        score=score,
        level=level,
        confidence=risk_scoring.compute_confidence(factors, signals.reading_count, signals.latest_at, now),
        factors=factors,
        alerts=alerts,
        recommendations=generate_recommendations(level, factors, metadata, action),
        time_to_impact_minutes=tti,
        evacuation_recommended=should_evacuate(score, factors, tti, action),
        mdp_state=mdp_state,
        recommended_action=action,
        action_confidence=action_confidence,
        predicted_level_ft=ensemble.predicted_level,
        model_risk_level=ensemble.risk_level,
        anomalies=anomalies,
    )


def _historical_accuracy(accuracy_log: AccuracyLog | float | None) -> float:
    if accuracy_log is None:
        return 0.5
    if isinstance(accuracy_log, AccuracyLog):
        return accuracy_log.accuracy()
    return min(1.0, max(0.0, float(accuracy_log)))


def _escalate_for_impact(score: float, tti: float | None) -> float:
    """Imminent impact sets a floor on the score: at critical -> extreme, under 2h -> high."""
    if tti is None:
        return score
    if tti == 0:
        return max(score, risk_scoring.level_floor(RiskLevel.EXTREME))
    if tti < IMPACT_ESCALATION_MINUTES:
        return max(score, risk_scoring.level_floor(RiskLevel.HIGH))
    return score


def _time_of_day(at: datetime, tz: str | None = None) -> TimeOfDay:
    if tz:
        at = at.astimezone(ZoneInfo(tz))
    return TimeOfDay.DAY if 6 <= at.hour < 18 else TimeOfDay.NIGHT


def _choose_action(
    policy: MDPAlertPolicy | None,
    state: MDPState,
    level: RiskLevel,
) -> tuple[AlertAction, float | None]:
    """Greedy policy action, or the level's own action while the policy is unsure."""
    if policy is None:
        return level.to_action(), None
    decision = policy.select_action(state, explore=False)
    if decision.confidence < settings.policy_min_confidence:
        return level.to_action(), decision.confidence
    return decision.action, decision.confidence


def generate_alerts(
    factors: RiskFactors,
    level: RiskLevel,
    tti: float | None = None,
    model_level: RiskLevel | None = None,
) -> list[str]:
    alerts = []
    if factors.water_level_trend > 2:
        alerts.append("RAPID_WATER_RISE")
    if factors.forecast_probability > 0.7:
        alerts.append("HIGH_OVERFLOW_PROBABILITY")
    if factors.rainfall_nowcast > 2:
        alerts.append("HEAVY_RAIN_EXPECTED")
    if factors.soil_saturation > 0.8:
        alerts.append("SATURATED_SOIL_CONDITIONS")

    if level == RiskLevel.EXTREME:
        alerts.append("IMMEDIATE_EVACUATION_RECOMMENDED")
    elif level == RiskLevel.HIGH:
        alerts.append("PREPARE_FOR_EVACUATION")

    if factors.infrastructure_criticality > 0.7:
        alerts.append("CRITICAL_INFRASTRUCTURE_AT_RISK")
    if tti is not None and tti < IMPACT_ESCALATION_MINUTES:
        alerts.append("IMPACT_WITHIN_2_HOURS")
    if model_level in (RiskLevel.HIGH, RiskLevel.EXTREME):
        alerts.append("MODEL_PREDICTS_SEVERE_FLOODING")
    return alerts


def generate_recommendations(
    level: RiskLevel,
    factors: RiskFactors,
    metadata: LocationMetadata | None = None,
    action: AlertAction | None = None,
) -> list[str]:
    recommendations = list(_LEVEL_RECOMMENDATIONS[level])

    if factors.infrastructure_criticality > 0.5:
        recommendations.append("Critical facilities should activate emergency protocols")

    crossings = metadata.low_water_crossings if metadata else 0
    if crossings > 0 and level.rank >= RiskLevel.MODERATE.rank:
        recommendations.append(f"Barricade {crossings} low-water crossings")

    if action is not None and action != AlertAction.NONE:
        recommendations.append(f"Alert policy: {ACTION_DESCRIPTIONS[action]}")
    return recommendations


def should_evacuate(
    score: float,
    factors: RiskFactors,
    tti: float | None,
    action: AlertAction | None = None,
) -> bool:
    if score >= 80:
        return True
    if score >= 60 and tti is not None and tti < IMPACT_ESCALATION_MINUTES:
        return True
    if factors.water_level_trend > 3 and factors.infrastructure_criticality > 0.7:
        return True
    if action == AlertAction.EVACUATE and score >= 60:
        return True
    return False
