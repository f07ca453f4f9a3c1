from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from floodwatch.locations.definitions import get_location
from floodwatch.schemas.api import EvaluateRequest, SimulateRequest
from floodwatch.schemas.policy import PolicyEvaluation
from floodwatch.services import persistence
from floodwatch.services.errors import PolicyImportError

router = APIRouter(prefix="/policy", tags=["policy"])


def _require_location(location_id: str):
    if get_location(location_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown location {location_id}")


@router.get("/{location_id}")
def export_policy(location_id: str, request: Request):
    _require_location(location_id)
    return request.app.state.registry.export_policy(location_id)


@router.put("/{location_id}")
def import_policy(location_id: str, request: Request, document: dict[str, Any] = Body(...)):
    _require_location(location_id)
    registry = request.app.state.registry
    try:
        registry.import_policy(location_id, document)
    except PolicyImportError as e:
        raise HTTPException(status_code=400, detail=str(e))
    persistence.save_policy_snapshot(location_id, registry.export_policy(location_id))
    return {"status": "imported", "states": len(document.get("q_table", {}))}


@router.post("/{location_id}/simulate")
def simulate(location_id: str, request: Request, body: SimulateRequest | None = None):
    """Run Monte Carlo self-play against the live policy."""
    _require_location(location_id)
    registry = request.app.state.registry
    registry.run_monte_carlo(location_id, body.episodes if body else None)
    document = registry.export_policy(location_id)
    persistence.save_policy_snapshot(location_id, document)
    return {"status": "simulated", "states": len(document["q_table"])}


@router.post("/{location_id}/evaluate", response_model=PolicyEvaluation)
def evaluate(location_id: str, request: Request, body: EvaluateRequest | None = None):
    _require_location(location_id)
    return request.app.state.registry.evaluate(location_id, body.test_set if body else None)
