"""
glucocast Configuration
Loads settings from environment variables with validation.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="GLUCOCAST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "glucocast"
    app_version: str = "1.0.0"
    debug: bool = False
    timezone: str = Field(default="UTC", description="Zone used for time-of-day buckets")

    # History source (Nightscout-compatible)
    nightscout_url: Optional[str] = Field(default=None)
    nightscout_api_secret: Optional[str] = Field(default=None)
    nightscout_timeout_seconds: float = Field(default=30.0)

    # Persistence
    parameters_path: str = Field(default="~/.config/glucocast/prediction-params.json")

    # Recalculation
    default_lookback_days: int = Field(default=30, ge=1, le=365)
    recent_history_hours: int = Field(default=8, ge=1)
    cache_ttl_seconds: float = Field(default=300.0, ge=0)

    # Safety range for every forecast value (mg/dL)
    safety_min_glucose: float = Field(default=20.0)
    safety_max_glucose: float = Field(default=500.0)

    # Alert thresholds (mg/dL)
    high_bg_threshold: float = Field(default=180.0)
    low_bg_threshold: float = Field(default=70.0)

    # Parameter estimation bounds
    isf_min: float = Field(default=10.0)
    isf_max: float = Field(default=200.0)
    icr_min: float = Field(default=3.0)
    icr_max: float = Field(default=40.0)
    correction_min_glucose: float = Field(default=150.0, description="BG that marks a bolus as a correction")
    min_estimate_events: int = Field(default=1, ge=1)
    min_bucket_samples: int = Field(default=3, ge=1)
    min_dia_events: int = Field(default=5, ge=1)
    min_absorption_events: int = Field(default=3, ge=1)

    # Ensemble engine
    autosens_min: float = Field(default=0.7)
    autosens_max: float = Field(default=1.2)
    circadian_min_hour_samples: int = Field(default=2, ge=1)
    circadian_min_total_samples: int = Field(default=10, ge=1)
    circadian_learning_rate: float = Field(default=0.5, gt=0, le=1)
    min_learning_readings: int = Field(default=100)
    min_learning_treatments: int = Field(default=10)

    # Sequence model
    lstm_hidden_size: int = Field(default=8, ge=1)
    lstm_epochs: int = Field(default=3, ge=1)
    lstm_max_sequences: int = Field(default=500, ge=1)
    lstm_seed: Optional[int] = Field(default=None)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
