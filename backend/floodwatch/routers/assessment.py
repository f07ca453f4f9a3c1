import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import TypeAdapter, ValidationError

from floodwatch.locations.definitions import get_location
from floodwatch.schemas.api import AssessRequest
from floodwatch.schemas.policy import OutcomeRequest, OutcomeResult
from floodwatch.schemas.risk import RiskAssessment
from floodwatch.schemas.telemetry import ForecastSnapshot
from floodwatch.services import persistence
from floodwatch.services.features import as_utc

logger = logging.getLogger(__name__)

router = APIRouter(tags=["assessment"])

_forecast_adapter = TypeAdapter(ForecastSnapshot)


def _parse_forecast(location_id: str, payload: dict | None):
    if payload is None:
        return None
    try:
        return _forecast_adapter.validate_python(payload)
    except ValidationError as e:
        logger.warning("Ignoring malformed forecast for %s: %d error(s)", location_id, e.error_count())
        return None


@router.post("/assess/{location_id}", response_model=RiskAssessment)
def assess_location(location_id: str, body: AssessRequest, request: Request):
    """Score current flood risk for a location and pick an alert action."""
    location = get_location(location_id)
    if location is None:
        raise HTTPException(status_code=404, detail=f"Unknown location {location_id}")

    result = request.app.state.registry.assess(
        location_id,
        sorted(body.readings, key=lambda r: as_utc(r.timestamp)),
        _parse_forecast(location_id, body.forecast),
        body.metadata or location.metadata,
        critical_level=location.critical_level_ft,
        timezone=location.timezone,
    )
    persistence.persist_assessment(location_id, result)
    return result


@router.post("/outcomes/{location_id}", response_model=OutcomeResult)
def record_outcome(location_id: str, body: OutcomeRequest, request: Request):
    """Feed an observed outcome back into the location's alert policy."""
    if get_location(location_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown location {location_id}")
    try:
        result = request.app.state.registry.record_outcome(location_id, body)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    persistence.persist_outcome(result, body.time_to_impact_minutes)
    return result
