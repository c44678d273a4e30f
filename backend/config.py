"""FoxPilot application configuration."""

import os
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class BlackoutWindow(BaseModel):
    """A time-of-day range during which the automation loop takes no action."""

    start: str
    end: str
    days: Optional[list[int]] = None  # 0 = Sunday ... 6 = Saturday
    enabled: bool = True

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"Invalid time '{v}', expected HH:MM")
        return v

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: Optional[list[int]]) -> Optional[list[int]]:
        if v is None:
            return v
        for day in v:
            if day < 0 or day > 6:
                raise ValueError(f"Invalid weekday index {day}, expected 0-6")
        return sorted(set(v))


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "FoxPilot"
    app_version: str = "0.4.0"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    timezone: str = "Australia/Sydney"

    # Persistence
    data_dir: str = os.environ.get("FOXPILOT_DATA_DIR", str(Path(__file__).parent.parent / "data"))
    state_file: str = ""

    # FoxESS Open API
    foxess_api_key: str = ""
    foxess_device_sn: str = ""
    foxess_base_url: str = "https://www.foxesscloud.com"
    foxess_request_timeout_seconds: float = 10.0
    scheduler_group_count: int = Field(8, ge=1, le=16)

    # Amber Electric price feed
    amber_api_key: str = ""
    amber_site_id: str = ""
    amber_base_url: str = "https://api.amber.com.au/v1"

    # Weather (Open-Meteo, no key required)
    weather_place: str = "Sydney"

    # Automation loop
    automation_interval_seconds: int = Field(60, ge=10)
    automation_start_delay_seconds: int = 5
    tick_deadline_seconds: float = 45.0
    gather_data_timeout_seconds: float = 8.0

    # Cache TTLs (FoxESS is rate limited, so telemetry is cached longest after weather)
    cache_ttl_price_seconds: int = 60
    cache_ttl_telemetry_seconds: int = 300
    cache_ttl_weather_seconds: int = 1800

    # Upstream retry policy
    retry_max_attempts: int = Field(3, ge=1, le=10)
    retry_delay_ms: int = Field(1000, ge=100, le=10000)

    # Rule defaults
    default_cooldown_minutes: int = 5
    default_duration_minutes: int = 30
    default_fd_pwr: int = 5000

    # Battery safety thresholds
    safety_min_soc_percent: float = Field(10, ge=0, le=100)
    safety_max_soc_percent: float = Field(100, ge=0, le=100)

    # Blackout windows, e.g. FOXPILOT_BLACKOUT_WINDOWS='[{"start": "22:00", "end": "06:00"}]'
    blackout_windows: list[BlackoutWindow] = []

    model_config = {
        "env_prefix": "FOXPILOT_",
        "env_file": ".env",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_safety(self):
        if self.safety_min_soc_percent >= self.safety_max_soc_percent:
            raise ValueError("safety_min_soc_percent must be below safety_max_soc_percent")
        return self

    def model_post_init(self, __context):
        """Set computed defaults after init."""
        if not self.state_file:
            self.state_file = os.path.join(self.data_dir, "automation_state.json")


settings = Settings()
