"""Reconcile the tracked active segment against the device schedule.

The device API does not preserve the order of its scheduler groups, so the
tracked segment is located by value (work mode plus start and end times)
rather than by position.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from automation.actions import cancel_segment
from automation.models import AutomationState, DataSnapshot
from automation.rules import evaluate_conditions
from foxess.models import SchedulerGroup

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    SKIPPED = "skipped"
    FETCH_FAILED = "fetch_failed"
    EXPIRED = "expired"
    EXTERNAL_CANCEL = "external_cancel"
    RULE_GONE = "rule_gone"
    CONDITIONS_FAILED = "conditions_failed"
    CONTINUING = "continuing"
    WRITE_FAILED = "write_failed"


def find_segment(state: AutomationState, groups: list[SchedulerGroup]) -> Optional[int]:
    """Index of the enabled group equal by value to the tracked segment."""
    segment = state.active_segment
    if segment is None:
        return None
    for index, group in enumerate(groups):
        if segment.matches(group):
            return index
    return None


async def reconcile(
    device, state: AutomationState, snapshot: DataSnapshot, now: datetime
) -> ReconcileOutcome:
    """Validate the active segment, cancelling or clearing it as needed.

    Mutates ``state`` in place; the caller persists it.
    """
    segment = state.active_segment
    if segment is None:
        return ReconcileOutcome.SKIPPED

    groups = await device.get_schedule()
    if groups is None:
        logger.warning("Could not fetch scheduler data, keeping active segment until next tick")
        return ReconcileOutcome.FETCH_FAILED

    index = find_segment(state, groups)
    if index is not None and index != segment.group_index:
        logger.debug("Active segment moved from group %d to %d", segment.group_index + 1, index + 1)
        segment.group_index = index

    if segment.is_expired(now):
        if index is None:
            logger.info("Active segment %s expired and is already gone", segment.label())
            state.clear_active()
            return ReconcileOutcome.EXPIRED
        if not await cancel_segment(device, groups, index):
            return ReconcileOutcome.WRITE_FAILED
        logger.info("Active segment %s expired, cleared group %d", segment.label(), index + 1)
        state.clear_active()
        return ReconcileOutcome.EXPIRED

    if index is None:
        logger.info("Active segment %s no longer on device (cancelled externally)", segment.label())
        state.clear_active()
        return ReconcileOutcome.EXTERNAL_CANCEL

    rule = state.rules.get(state.active_rule_name or "")
    if rule is None or not rule.enabled:
        if not await cancel_segment(device, groups, index):
            return ReconcileOutcome.WRITE_FAILED
        logger.info("Active rule '%s' disabled or deleted, segment cancelled", state.active_rule_name)
        state.clear_active()
        return ReconcileOutcome.RULE_GONE

    all_met, _ = evaluate_conditions(rule, snapshot, now)
    if not all_met:
        if not await cancel_segment(device, groups, index):
            return ReconcileOutcome.WRITE_FAILED
        logger.info("Active rule '%s' conditions no longer met, segment cancelled", rule.name)
        state.clear_active()
        return ReconcileOutcome.CONDITIONS_FAILED

    logger.debug("Active rule '%s' conditions still hold", rule.name)
    return ReconcileOutcome.CONTINUING
