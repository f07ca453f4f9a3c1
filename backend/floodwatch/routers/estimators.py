import dataclasses

from fastapi import APIRouter, Request

from floodwatch.schemas.api import TrainingSummary, TrainRequest
from floodwatch.services.features import as_utc

router = APIRouter(prefix="/estimators", tags=["estimators"])


@router.post("/train", response_model=TrainingSummary)
def train_estimators(body: TrainRequest, request: Request):
    """Fit the level predictor and risk classifier on a historical gauge series."""
    readings = sorted(body.readings, key=lambda r: as_utc(r.timestamp))
    report = request.app.state.registry.estimators.fit_history(readings)
    return TrainingSummary(**dataclasses.asdict(report))
