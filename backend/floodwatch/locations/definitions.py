from dataclasses import dataclass

from floodwatch.schemas.telemetry import LocationMetadata


@dataclass(frozen=True)
class LocationDefinition:
    location_id: str
    name: str
    county: str
    latitude: float
    longitude: float
    population: int
    critical_infrastructure: tuple[str, ...]
    low_water_crossings: int
    critical_level_ft: float = 15.0
    # IANA zone used for day/night in the alert policy state
    timezone: str = "America/Chicago"

    @property
    def metadata(self) -> LocationMetadata:
        return LocationMetadata(
            population=self.population,
            critical_infrastructure=list(self.critical_infrastructure),
            low_water_crossings=self.low_water_crossings,
        )


# Texas pilot monitoring locations
LOCATIONS = [
    LocationDefinition(
        location_id="TX-BEXAR",
        name="San Antonio River at Mitchell St",
        county="Bexar",
        latitude=29.4246,
        longitude=-98.4951,
        population=2048290,
        critical_infrastructure=("University Hospital", "Mission Road Power Plant", "Brackenridge School"),
        low_water_crossings=226,
    ),
    LocationDefinition(
        location_id="TX-KERR",
        name="Guadalupe River at Kerrville",
        county="Kerr",
        latitude=30.0508,
        longitude=-99.1406,
        population=52598,
        critical_infrastructure=("Peterson Regional Hospital", "Kerrville Water Treatment", "Tivy High School"),
        low_water_crossings=47,
        critical_level_ft=14.0,
    ),
    LocationDefinition(
        location_id="TX-TRAVIS",
        name="Onion Creek at Twin Creeks",
        county="Travis",
        latitude=30.2672,
        longitude=-97.7431,
        population=1290188,
        critical_infrastructure=("Dell Seton Hospital", "Austin Energy Substation"),
        low_water_crossings=189,
    ),
    LocationDefinition(
        location_id="TX-HARRIS",
        name="Buffalo Bayou at Shepherd Dr",
        county="Harris",
        latitude=29.7604,
        longitude=-95.3698,
        population=4731145,
        critical_infrastructure=(
            "Texas Medical Center Hospital",
            "Houston Emergency Center",
            "East Water Purification Plant",
            "Greens Bayou Power Station",
        ),
        low_water_crossings=312,
        critical_level_ft=18.0,
    ),
    LocationDefinition(
        location_id="TX-DALLAS",
        name="Trinity River at Dallas",
        county="Dallas",
        latitude=32.7767,
        longitude=-96.7970,
        population=2613539,
        critical_infrastructure=("Parkland Hospital",),
        low_water_crossings=143,
        critical_level_ft=30.0,
    ),
]

LOCATION_MAP: dict[str, LocationDefinition] = {loc.location_id: loc for loc in LOCATIONS}


def get_location(location_id: str) -> LocationDefinition | None:
    return LOCATION_MAP.get(location_id)
