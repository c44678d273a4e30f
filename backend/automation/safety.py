"""Battery safety thresholds and blackout windows."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from config import BlackoutWindow, settings
from automation.models import parse_hhmm

logger = logging.getLogger(__name__)

DISCHARGE_MODES = {"ForceDischarge", "Feedin"}
CHARGE_MODES = {"ForceCharge"}


@dataclass
class SafetyThresholds:
    min_soc_percent: float = 10
    max_soc_percent: float = 100

    @classmethod
    def from_settings(cls) -> "SafetyThresholds":
        return cls(settings.safety_min_soc_percent, settings.safety_max_soc_percent)


@dataclass
class SafetyCheck:
    safe: bool
    reason: Optional[str] = None


@dataclass
class BlackoutInfo:
    in_blackout: bool
    window: Optional[BlackoutWindow] = None


def check_safety_thresholds(
    work_mode: str, soc: Optional[float], thresholds: Optional[SafetyThresholds] = None
) -> SafetyCheck:
    """Decide whether a work mode may be applied at the current SoC.

    Discharge-class modes are blocked at or below the minimum, charge-class
    modes at or above the maximum. An unknown SoC is allowed.
    """
    thresholds = thresholds or SafetyThresholds.from_settings()

    if soc is None:
        logger.warning("SoC unknown, applying %s without safety check", work_mode)
        return SafetyCheck(safe=True, reason="soc_unknown")

    if work_mode in DISCHARGE_MODES and soc <= thresholds.min_soc_percent:
        return SafetyCheck(
            safe=False,
            reason=f"SoC {soc:.0f}% at or below minimum {thresholds.min_soc_percent:.0f}% for {work_mode}",
        )

    if work_mode in CHARGE_MODES and soc >= thresholds.max_soc_percent:
        return SafetyCheck(
            safe=False,
            reason=f"SoC {soc:.0f}% at or above maximum {thresholds.max_soc_percent:.0f}% for {work_mode}",
        )

    return SafetyCheck(safe=True)


def in_time_range(start: str, end: str, now: datetime) -> bool:
    """Inclusive HH:MM range check; ranges where start > end cross midnight."""
    current = now.hour * 60 + now.minute
    start_min = parse_hhmm(start)
    end_min = parse_hhmm(end)
    if start_min <= end_min:
        return start_min <= current <= end_min
    return current >= start_min or current <= end_min


def _weekday(now: datetime) -> int:
    # Python's Monday=0 -> Sunday=0 convention used by the windows
    return (now.weekday() + 1) % 7


def get_blackout_info(windows: Optional[list[BlackoutWindow]], now: datetime) -> BlackoutInfo:
    """Return the first enabled blackout window covering ``now``, if any."""
    for window in windows or []:
        if not window.enabled:
            continue
        if window.days and _weekday(now) not in window.days:
            continue
        if in_time_range(window.start, window.end, now):
            return BlackoutInfo(in_blackout=True, window=window)
    return BlackoutInfo(in_blackout=False)
