from enum import Enum

from pydantic import BaseModel, ConfigDict


class AlertAction(str, Enum):
    NONE = "none"
    WATCH = "watch"
    WARNING = "warning"
    HIGH = "high"
    EVACUATE = "evacuate"

    @property
    def rank(self) -> int:
        return ALERT_ACTIONS.index(self)


# Enumeration order is the escalation order and the Q-value tie-break order.
ALERT_ACTIONS: tuple[AlertAction, ...] = tuple(AlertAction)


class WaterState(str, Enum):
    NORMAL = "normal"
    RISING = "rising"
    HIGH = "high"
    CRITICAL = "critical"


WATER_STATES: tuple[WaterState, ...] = tuple(WaterState)


class TimeOfDay(str, Enum):
    DAY = "day"
    NIGHT = "night"


class MDPState(BaseModel):
    """Continuous environmental state fed to the alert policy."""

    model_config = ConfigDict(frozen=True)

    water_level: float = 0.0
    rate_of_change: float = 0.0
    precipitation: float = 0.0
    time_of_day: TimeOfDay = TimeOfDay.DAY
    previous_alert: AlertAction = AlertAction.NONE


class ActionDecision(BaseModel):
    action: AlertAction
    confidence: float
    explored: bool = False


class LabeledState(BaseModel):
    """Evaluation sample; the true water state is derived from the readings when omitted."""

    state: MDPState
    water_state: WaterState | None = None


class PolicyEvaluation(BaseModel):
    total: int = 0
    accuracy: float = 0.0
    false_positive_rate: float = 0.0
    false_negative_rate: float = 0.0
    average_confidence: float = 0.0


class OutcomeRequest(BaseModel):
    """Ground-truth feedback for a past decision.

    `prev_state` and `action` default to the location's last assessment.
    `actual_water_state` may be given directly or derived from an observed
    level/rate pair.
    """

    prev_state: MDPState | None = None
    action: AlertAction | None = None
    actual_water_state: WaterState | None = None
    observed_level_ft: float | None = None
    observed_rate_ft_hr: float = 0.0
    time_to_impact_minutes: float | None = None
    next_state: MDPState | None = None
    predicted_level: str | None = None
    actual_level: str | None = None


class OutcomeResult(BaseModel):
    location_id: str
    action: AlertAction
    actual_water_state: WaterState
    reward: float
