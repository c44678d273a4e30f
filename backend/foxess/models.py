"""Pydantic models for FoxESS inverter scheduler and telemetry data."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Scheduler Models ---


class SchedulerGroup(BaseModel):
    """A single time period ("group") in the inverter's V1 scheduler."""

    model_config = ConfigDict(populate_by_name=True)

    enable: int = 0  # 1 = active, 0 = disabled
    work_mode: str = Field("SelfUse", alias="workMode")
    start_hour: int = Field(0, alias="startHour", ge=0, le=23)
    start_minute: int = Field(0, alias="startMinute", ge=0, le=59)
    end_hour: int = Field(0, alias="endHour", ge=0, le=23)
    end_minute: int = Field(0, alias="endMinute", ge=0, le=59)
    min_soc_on_grid: int = Field(10, alias="minSocOnGrid")
    fd_soc: int = Field(10, alias="fdSoc")
    fd_pwr: int = Field(0, alias="fdPwr")
    max_soc: int = Field(100, alias="maxSoc")

    @classmethod
    def cleared(cls) -> "SchedulerGroup":
        """A fully reset, disabled period (00:00-00:00) with no ghost data."""
        return cls()

    @property
    def is_enabled(self) -> bool:
        return self.enable == 1

    def to_api(self) -> dict:
        """Serialize with the camelCase field names the device expects."""
        return self.model_dump(by_alias=True)


# --- Telemetry Models ---


class TelemetryReading(BaseModel):
    """Real-time inverter values extracted from /op/v0/device/real/query."""

    soc: Optional[float] = None
    battery_temperature: Optional[float] = None
    ambient_temperature: Optional[float] = None
    pv_power: Optional[float] = None
    load_power: Optional[float] = None
    feedin_power: Optional[float] = None
    grid_consumption_power: Optional[float] = None


# Variable names on the FoxESS side -> TelemetryReading field
TELEMETRY_VARIABLES = {
    "SoC": "soc",
    "batTemperature": "battery_temperature",
    "ambientTemperation": "ambient_temperature",
    "pvPower": "pv_power",
    "loadsPower": "load_power",
    "feedinPower": "feedin_power",
    "gridConsumptionPower": "grid_consumption_power",
}
