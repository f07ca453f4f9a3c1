from typing import Any

from pydantic import BaseModel, Field

from floodwatch.config import settings
from floodwatch.schemas.policy import LabeledState
from floodwatch.schemas.telemetry import LocationMetadata, Reading


class AssessRequest(BaseModel):
    readings: list[Reading] = []
    # Validated leniently: an unrecognized shape is treated as no forecast
    forecast: dict[str, Any] | None = None
    metadata: LocationMetadata | None = None


class SimulateRequest(BaseModel):
    # Runs under the location lock, so the request size is capped
    episodes: int | None = Field(default=None, ge=1, le=settings.monte_carlo_max_episodes)


class EvaluateRequest(BaseModel):
    test_set: list[LabeledState] | None = None


class TrainRequest(BaseModel):
    readings: list[Reading] = Field(min_length=1)


class TrainingSummary(BaseModel):
    readings: int
    level_samples: int
    severity_samples: int
    predictor_trained: bool
    classifier_trained: bool
    predictor_loss: float | None = None


class LocationSummary(BaseModel):
    location_id: str
    name: str
    county: str
    latitude: float
    longitude: float
    critical_level_ft: float
    low_water_crossings: int
