from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Database
    database_url: str = Field(default="sqlite:///./floodwatch.db")

    log_level: str = Field(default="INFO")

    # Water level thresholds (ft)
    critical_level_ft: float = Field(default=15.0)

    # Trend / projection
    trend_window_hours: float = Field(default=6.0)
    projection_hours: float = Field(default=6.0)
    overflow_logistic_scale: float = Field(default=5.0)

    # Rainfall nowcast
    nowcast_hours: int = Field(default=6)
    period_forecast_periods: int = Field(default=2)
    period_forecast_factor: float = Field(default=2.0)  # inches at 100% PoP

    # Soil saturation estimate: 1 in of rain over the lookback = +0.2
    soil_lookback_hours: float = Field(default=24.0)
    soil_rain_coefficient: float = Field(default=0.2)

    # Location normalization
    max_population: int = Field(default=5_000_000)

    # Historical accuracy log (entries per location)
    accuracy_log_size: int = Field(default=100)

    # Confidence: readings newer than this earn the freshness bonus
    stale_reading_minutes: float = Field(default=30.0)

    # Anomaly detection (z-score)
    anomaly_z_threshold: float = Field(default=3.0)

    # MDP alert policy
    mdp_learning_rate: float = Field(default=0.1)
    mdp_discount_factor: float = Field(default=0.95)
    mdp_exploration_rate: float = Field(default=0.1)
    mdp_seed: int | None = Field(default=None)
    # Below this confidence the policy defers to the action implied by the risk level
    policy_min_confidence: float = Field(default=0.1)

    # Monte Carlo warm-up
    monte_carlo_episodes: int = Field(default=1000)
    monte_carlo_steps: int = Field(default=10)
    # Upper bound for on-demand simulation requests
    monte_carlo_max_episodes: int = Field(default=20_000)
    evaluation_sample_size: int = Field(default=200)

    # Predictive estimators: per-assessment deadline (seconds)
    estimator_timeout_s: float = Field(default=0.25)

    # Scheduler intervals (minutes)
    policy_improve_interval: int = Field(default=360)

    # CORS
    cors_origins: str = Field(default="http://localhost:5173,http://localhost:3000")

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
