from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class Reading(BaseModel):
    """One timestamped sensor/gauge sample for a monitored location."""

    timestamp: datetime
    water_level_ft: float = 0.0
    flow_rate_cfs: float | None = None
    rainfall_in: float | None = None
    soil_moisture_pct: float | None = None
    temperature_f: float | None = None
    pressure_mb: float | None = None


class HourlyPrecipitation(BaseModel):
    time: datetime
    precipitation_mm: float | None = None
    precipitation_probability_pct: float | None = None


class NowcastForecast(BaseModel):
    """Hourly precipitation forecast (Open-Meteo style)."""

    kind: Literal["nowcast"] = "nowcast"
    hourly: list[HourlyPrecipitation] = []


class ForecastPeriod(BaseModel):
    name: str | None = None
    start_time: datetime | None = None
    probability_of_precipitation_pct: float | None = None
    short_forecast: str | None = None


class PeriodForecast(BaseModel):
    """Discrete-period text forecast (NWS style)."""

    kind: Literal["periods"] = "periods"
    periods: list[ForecastPeriod] = []


ForecastSnapshot = Annotated[Union[NowcastForecast, PeriodForecast], Field(discriminator="kind")]


class LocationMetadata(BaseModel):
    population: int | None = None
    critical_infrastructure: list[str] = []
    low_water_crossings: int = 0

    model_config = {"frozen": True}
