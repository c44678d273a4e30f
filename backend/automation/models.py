"""Domain models for automation rules, the active segment and persisted state."""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator

from config import settings
from foxess.models import SchedulerGroup

OPERATORS = (">", ">=", "<", "<=", "==", "!=")
WORK_MODES = ("SelfUse", "ForceCharge", "ForceDischarge", "Feedin", "Backup")
DEFAULT_PRIORITY = 99

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

WorkMode = Literal["SelfUse", "ForceCharge", "ForceDischarge", "Feedin", "Backup"]


def local_now() -> datetime:
    """Current time in the configured site timezone."""
    return datetime.now(ZoneInfo(settings.timezone))


def parse_hhmm(value: str) -> int:
    """'HH:MM' -> minutes since midnight."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


# --- Conditions ---


class NumericCondition(BaseModel):
    """A comparison against one observed value."""
    enabled: bool = False
    operator: str = ">"
    value: float = 0
    value2: Optional[float] = None  # stored, not evaluated

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v: str) -> str:
        if v not in OPERATORS:
            raise ValueError(f"Unknown operator '{v}'. Must be one of {', '.join(OPERATORS)}")
        return v


class TemperatureCondition(NumericCondition):
    # None keeps the legacy behaviour: ambient first, then battery
    source: Optional[Literal["battery", "ambient"]] = None


class WeatherCondition(BaseModel):
    enabled: bool = False
    codes: list[int] = []


class TimeWindowCondition(BaseModel):
    enabled: bool = False
    start: str = "00:00"
    end: str = "23:59"

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"Invalid time '{v}', expected HH:MM")
        return v


class Conditions(BaseModel):
    feed_in_price: NumericCondition = Field(default_factory=NumericCondition)
    buy_price: NumericCondition = Field(default_factory=NumericCondition)
    soc: NumericCondition = Field(default_factory=NumericCondition)
    temperature: TemperatureCondition = Field(default_factory=TemperatureCondition)
    weather_code: WeatherCondition = Field(default_factory=WeatherCondition)
    time_window: TimeWindowCondition = Field(default_factory=TimeWindowCondition)


# --- Rules ---


class Action(BaseModel):
    """The device segment a rule writes when it triggers."""
    work_mode: WorkMode = "SelfUse"
    duration_minutes: int = Field(default_factory=lambda: settings.default_duration_minutes, ge=1, le=1440)
    min_soc_on_grid: int = Field(20, ge=0, le=100)
    fd_soc: int = Field(35, ge=0, le=100)
    fd_pwr: int = Field(default_factory=lambda: settings.default_fd_pwr, ge=0)
    max_soc: int = Field(90, ge=0, le=100)


class Rule(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True
    priority: int = Field(DEFAULT_PRIORITY, ge=0, le=999)
    cooldown_minutes: int = Field(default_factory=lambda: settings.default_cooldown_minutes, ge=0)
    last_triggered_at: Optional[datetime] = None
    conditions: Conditions = Field(default_factory=Conditions)
    action: Action = Field(default_factory=Action)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Rule name cannot be blank")
        return v


# --- Active segment ---


class ActiveSegment(BaseModel):
    """The device schedule entry the loop believes it owns.

    Identity is the work mode plus start and end times. ``group_index`` is
    only a hint; the device may reorder its groups.
    """
    rule_name: str
    work_mode: str
    start_hour: int
    start_minute: int
    end_hour: int
    end_minute: int
    group_index: int = 0
    started_at: Optional[datetime] = None

    @classmethod
    def from_group(
        cls, group: SchedulerGroup, rule_name: str, group_index: int, started_at: datetime
    ) -> "ActiveSegment":
        return cls(
            rule_name=rule_name,
            work_mode=group.work_mode,
            start_hour=group.start_hour,
            start_minute=group.start_minute,
            end_hour=group.end_hour,
            end_minute=group.end_minute,
            group_index=group_index,
            started_at=started_at,
        )

    def matches(self, group: SchedulerGroup) -> bool:
        return (
            group.is_enabled
            and group.work_mode == self.work_mode
            and group.start_hour == self.start_hour
            and group.start_minute == self.start_minute
            and group.end_hour == self.end_hour
            and group.end_minute == self.end_minute
        )

    def end_datetime(self) -> Optional[datetime]:
        if self.started_at is None:
            return None
        return self.started_at.replace(
            hour=self.end_hour, minute=self.end_minute, second=0, microsecond=0
        )

    def is_expired(self, now: datetime) -> bool:
        """True once ``now`` (minute resolution) is past the segment end."""
        now_minute = now.replace(second=0, microsecond=0)
        end = self.end_datetime()
        if end is None:
            return now_minute.hour * 60 + now_minute.minute > self.end_hour * 60 + self.end_minute
        if end.tzinfo is not None and now_minute.tzinfo is not None:
            now_minute = now_minute.astimezone(end.tzinfo)
        elif end.tzinfo is not None:
            end = end.replace(tzinfo=None)
        elif now_minute.tzinfo is not None:
            now_minute = now_minute.replace(tzinfo=None)
        return now_minute > end

    def label(self) -> str:
        return (
            f"{self.work_mode} {self.start_hour:02d}:{self.start_minute:02d}"
            f"-{self.end_hour:02d}:{self.end_minute:02d}"
        )


# --- State ---


class AutomationState(BaseModel):
    """The persisted automation document."""
    enabled: bool = True
    last_check_at: Optional[datetime] = None
    last_triggered_at: Optional[datetime] = None
    active_rule_name: Optional[str] = None
    active_segment: Optional[ActiveSegment] = None
    in_blackout: bool = False
    rules: dict[str, Rule] = {}

    def clear_active(self):
        self.active_rule_name = None
        self.active_segment = None


class DataSnapshot(BaseModel):
    """Observed values a rule is evaluated against. Missing values are None."""
    feed_in_price: Optional[float] = None
    buy_price: Optional[float] = None
    soc: Optional[float] = None
    battery_temperature: Optional[float] = None
    ambient_temperature: Optional[float] = None
    weather_code: Optional[int] = None
    pv_power: Optional[float] = None
    load_power: Optional[float] = None


@dataclass
class ConditionResult:
    name: str
    value: Any
    target: str
    met: bool

    def to_dict(self) -> dict:
        return {"name": self.name, "value": self.value, "target": self.target, "met": self.met}
