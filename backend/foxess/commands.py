"""FoxESS scheduler and telemetry commands.

``FoxESSDevice`` is the device gateway the automation engine talks to. Reads
return ``None`` when the device could not be reached (after retries), writes
return ``False``; neither raises for upstream failures.
"""

import logging
from typing import Optional

from config import settings
from foxess.client import FoxESSAPIError, FoxESSClient
from foxess.models import TELEMETRY_VARIABLES, SchedulerGroup, TelemetryReading
from services.retry import FETCH_FAILED, RetryPolicy

logger = logging.getLogger(__name__)

SCHEDULER_GET_PATH = "/op/v1/device/scheduler/get"
SCHEDULER_ENABLE_PATH = "/op/v1/device/scheduler/enable"
SCHEDULER_FLAG_PATH = "/op/v1/device/scheduler/set/flag"
REAL_QUERY_PATH = "/op/v0/device/real/query"


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, FoxESSAPIError):
        return exc.is_transient
    return True


class FoxESSDevice:
    """Scheduler and telemetry access for one inverter."""

    def __init__(self, client: Optional[FoxESSClient] = None, retry: Optional[RetryPolicy] = None):
        self.client = client or FoxESSClient()
        self.retry = retry or RetryPolicy.from_settings(is_retryable_error=_is_retryable)

    @property
    def device_sn(self) -> str:
        return self.client.device_sn

    async def close(self):
        await self.client.close()

    async def get_schedule(self) -> Optional[list[SchedulerGroup]]:
        """Read the device scheduler groups, or None if the read failed."""

        async def _fetch():
            return await self.client.post(SCHEDULER_GET_PATH, {"deviceSN": self.device_sn})

        result = await self.retry.run(_fetch, "foxess.scheduler.get")
        if result is FETCH_FAILED:
            logger.warning("Could not read device schedule")
            return None

        groups = (result or {}).get("groups", [])
        try:
            return [SchedulerGroup.model_validate(g) for g in groups]
        except ValueError as e:
            logger.warning("Device returned an unreadable schedule: %s", e)
            return None

    async def set_schedule(self, groups: list[SchedulerGroup]) -> bool:
        """Write the full list of scheduler groups. Returns True on success."""
        payload = {"deviceSN": self.device_sn, "groups": [g.to_api() for g in groups]}

        async def _write():
            return await self.client.post(SCHEDULER_ENABLE_PATH, payload)

        result = await self.retry.run(_write, "foxess.scheduler.enable")
        if result is FETCH_FAILED:
            logger.error("Failed to write device schedule (%d groups)", len(groups))
            return False
        return True

    async def set_scheduler_flag(self, enabled: bool) -> bool:
        """Toggle the device's scheduler master flag."""
        payload = {"deviceSN": self.device_sn, "enable": 1 if enabled else 0}

        async def _write():
            return await self.client.post(SCHEDULER_FLAG_PATH, payload)

        result = await self.retry.run(_write, "foxess.scheduler.flag")
        if result is FETCH_FAILED:
            logger.warning("Failed to set scheduler flag to %s", enabled)
            return False
        return True

    async def get_telemetry(self, variables: Optional[list[str]] = None) -> Optional[TelemetryReading]:
        """Query real-time values. Returns None if the query failed."""
        variables = variables or list(TELEMETRY_VARIABLES)
        payload = {"sn": self.device_sn, "variables": variables}

        async def _fetch():
            return await self.client.post(REAL_QUERY_PATH, payload)

        result = await self.retry.run(_fetch, "foxess.real.query")
        if result is FETCH_FAILED:
            return None
        return parse_telemetry(result)


def parse_telemetry(result) -> TelemetryReading:
    """Extract known variables from a real/query ``result`` payload."""
    values: dict[str, float] = {}
    if isinstance(result, list) and result:
        datas = result[0].get("datas", []) if isinstance(result[0], dict) else []
        for item in datas:
            field = TELEMETRY_VARIABLES.get(item.get("variable"))
            value = item.get("value")
            if field is None or value is None:
                continue
            try:
                values[field] = float(value)
            except (TypeError, ValueError):
                continue
    return TelemetryReading(**values)


def blank_schedule() -> list[SchedulerGroup]:
    """A schedule with every group cleared."""
    return [SchedulerGroup.cleared() for _ in range(settings.scheduler_group_count)]
