from enum import Enum

from pydantic import BaseModel, ConfigDict

from floodwatch.schemas.policy import AlertAction, MDPState


class RiskLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    EXTREME = "extreme"

    @property
    def rank(self) -> int:
        return RISK_LEVELS.index(self)

    def to_action(self) -> AlertAction:
        return _LEVEL_TO_ACTION[self]


RISK_LEVELS: tuple[RiskLevel, ...] = tuple(RiskLevel)

_LEVEL_TO_ACTION = {
    RiskLevel.NONE: AlertAction.NONE,
    RiskLevel.LOW: AlertAction.WATCH,
    RiskLevel.MODERATE: AlertAction.WARNING,
    RiskLevel.HIGH: AlertAction.HIGH,
    RiskLevel.EXTREME: AlertAction.EVACUATE,
}


class RiskFactors(BaseModel):
    water_level_trend: float = 0.0  # ft/hr
    forecast_probability: float = 0.0  # 0-1
    rainfall_nowcast: float = 0.0  # inches, next 6h
    soil_saturation: float = 0.0  # 0-1
    historical_accuracy: float = 0.5  # 0-1
    urban_density: float = 0.0  # 0-1
    infrastructure_criticality: float = 0.0  # 0-1


class RiskAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float  # 0-100
    level: RiskLevel
    confidence: float  # 0-1
    factors: RiskFactors
    alerts: list[str] = []
    recommendations: list[str] = []
    time_to_impact_minutes: float | None = None
    evacuation_recommended: bool = False
    mdp_state: MDPState | None = None
    recommended_action: AlertAction | None = None
    action_confidence: float | None = None
    predicted_level_ft: float | None = None
    model_risk_level: RiskLevel | None = None
    anomalies: list[int] = []
