from fastapi import APIRouter, HTTPException

from floodwatch.locations.definitions import LOCATIONS, LocationDefinition, get_location
from floodwatch.schemas.api import LocationSummary

router = APIRouter(prefix="/locations", tags=["locations"])


def _summary(loc: LocationDefinition) -> LocationSummary:
    return LocationSummary(
        location_id=loc.location_id,
        name=loc.name,
        county=loc.county,
        latitude=loc.latitude,
        longitude=loc.longitude,
        critical_level_ft=loc.critical_level_ft,
        low_water_crossings=loc.low_water_crossings,
    )


@router.get("/", response_model=list[LocationSummary])
async def list_locations():
    """List the monitored river gauge locations."""
    return [_summary(loc) for loc in LOCATIONS]


@router.get("/{location_id}", response_model=LocationSummary)
async def get_location_detail(location_id: str):
    loc = get_location(location_id)
    if loc is None:
        raise HTTPException(status_code=404, detail=f"Unknown location {location_id}")
    return _summary(loc)
