"""Automation actions - writing and cancelling device scheduler segments."""

import logging
from datetime import datetime
from typing import Optional

from automation.models import Action, ActiveSegment
from foxess.commands import blank_schedule
from foxess.models import SchedulerGroup

logger = logging.getLogger(__name__)

LAST_MINUTE_OF_DAY = 23 * 60 + 59


def has_room_today(now: datetime) -> bool:
    """False at 23:59, where a capped segment would have zero length."""
    return now.hour * 60 + now.minute < LAST_MINUTE_OF_DAY


def build_group(action: Action, now: datetime) -> SchedulerGroup:
    """The scheduler group for an action starting at ``now``.

    Segments never cross midnight: the end is capped at 23:59.
    """
    start = now.hour * 60 + now.minute
    end = min(start + action.duration_minutes, LAST_MINUTE_OF_DAY)
    return SchedulerGroup(
        enable=1,
        work_mode=action.work_mode,
        start_hour=start // 60,
        start_minute=start % 60,
        end_hour=end // 60,
        end_minute=end % 60,
        min_soc_on_grid=action.min_soc_on_grid,
        fd_soc=action.fd_soc,
        fd_pwr=action.fd_pwr,
        max_soc=action.max_soc,
    )


async def apply_segment(device, rule_name: str, action: Action, now: datetime) -> Optional[ActiveSegment]:
    """Clear every device group and write the action's segment at index 0.

    Returns the new ActiveSegment, or None if the write failed or there is
    no time left before midnight.
    """
    if not has_room_today(now):
        logger.warning("Not applying '%s' at %s: segment would be empty", rule_name, now.strftime("%H:%M"))
        return None

    current = await device.get_schedule()
    if current is None:
        logger.warning("Schedule read failed before applying '%s', writing a blank schedule", rule_name)
        current = blank_schedule()

    group = build_group(action, now)
    groups = [group] + [SchedulerGroup.cleared() for _ in range(max(len(current), 1) - 1)]

    if not await device.set_schedule(groups):
        logger.error(
            "Device write failed for rule '%s': %s for %d minutes",
            rule_name, action.work_mode, action.duration_minutes,
        )
        return None

    if not await device.set_scheduler_flag(True):
        logger.warning("Segment written but scheduler flag could not be enabled")

    segment = ActiveSegment.from_group(group, rule_name, 0, now)
    logger.info("Applied segment %s for rule '%s'", segment.label(), rule_name)
    return segment


async def cancel_segment(device, groups: list[SchedulerGroup], index: int) -> bool:
    """Zero the group at ``index`` in place and write the full list back."""
    updated = list(groups)
    updated[index] = SchedulerGroup.cleared()
    ok = await device.set_schedule(updated)
    if not ok:
        logger.error("Failed to cancel segment in group %d", index + 1)
    return ok


async def clear_all(device) -> bool:
    """Write a schedule with every group zeroed."""
    ok = await device.set_schedule(blank_schedule())
    if ok:
        logger.info("Cleared all device scheduler groups")
    else:
        logger.error("Failed to clear device scheduler groups")
    return ok
