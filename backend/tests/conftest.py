"""Pytest configuration and shared fixtures for FoxPilot tests."""

import sys
from pathlib import Path
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

import pytest

# Add backend to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from automation.engine import AutomationEngine  # noqa: E402
from automation.models import Action, ActiveSegment, DataSnapshot, Rule  # noqa: E402
from automation.safety import SafetyThresholds  # noqa: E402
from foxess.models import SchedulerGroup, TelemetryReading  # noqa: E402
from services.state_store import StateStore  # noqa: E402

SYDNEY = ZoneInfo("Australia/Sydney")


def at(hour: int, minute: int = 0, day: int = 14) -> datetime:
    """A Sydney-local timestamp on a fixed Wednesday (2026-10-14)."""
    return datetime(2026, 10, day, hour, minute, tzinfo=SYDNEY)


class FakeDevice:
    """In-memory stand-in for FoxESSDevice.

    ``reorder`` reverses the group list on every read, ``fail_reads`` makes
    reads return None and ``fail_writes`` makes writes return False.
    """

    def __init__(self, groups: Optional[list[SchedulerGroup]] = None, group_count: int = 8):
        self.groups = groups or [SchedulerGroup.cleared() for _ in range(group_count)]
        self.telemetry = TelemetryReading(soc=50.0)
        self.reorder = False
        self.fail_reads = False
        self.fail_writes = False
        self.reads = 0
        self.writes: list[list[SchedulerGroup]] = []
        self.flag_calls: list[bool] = []
        self.closed = False

    async def get_schedule(self):
        self.reads += 1
        if self.fail_reads:
            return None
        groups = [g.model_copy() for g in self.groups]
        if self.reorder:
            groups.reverse()
        return groups

    async def set_schedule(self, groups):
        if self.fail_writes:
            return False
        self.groups = [g.model_copy() for g in groups]
        self.writes.append(self.groups)
        return True

    async def set_scheduler_flag(self, enabled):
        self.flag_calls.append(enabled)
        return True

    async def get_telemetry(self, variables=None):
        if self.fail_reads:
            return None
        return self.telemetry

    async def close(self):
        self.closed = True

    def enabled_groups(self) -> list[SchedulerGroup]:
        return [g for g in self.groups if g.is_enabled]


class FakeCollector:
    """Serves a fixed DataSnapshot instead of calling upstreams."""

    def __init__(self, snapshot: Optional[DataSnapshot] = None):
        self.data = snapshot or DataSnapshot()
        self.refreshes = 0

    async def refresh(self, now=None, sources=None):
        self.refreshes += 1

    def snapshot(self, now=None) -> DataSnapshot:
        return self.data

    def invalidate(self, source=None):
        pass

    def stats(self, now=None):
        return []

    async def close(self):
        pass


def make_rule(name: str, priority: int = 99, work_mode: str = "SelfUse", duration: int = 30, **conditions) -> Rule:
    """Build a rule; keyword args are condition blocks, enabled by default."""
    cond_data = {key: {"enabled": True, **value} for key, value in conditions.items()}
    return Rule(
        name=name,
        priority=priority,
        cooldown_minutes=5,
        conditions=cond_data,
        action=Action(work_mode=work_mode, duration_minutes=duration),
    )


def segment_group(work_mode: str, start: tuple, end: tuple) -> SchedulerGroup:
    return SchedulerGroup(
        enable=1,
        work_mode=work_mode,
        start_hour=start[0],
        start_minute=start[1],
        end_hour=end[0],
        end_minute=end[1],
    )


def active_segment(rule_name: str, group: SchedulerGroup, index: int = 0, started_at: Optional[datetime] = None):
    return ActiveSegment.from_group(group, rule_name, index, started_at or at(group.start_hour, group.start_minute))


@pytest.fixture
def fake_device():
    return FakeDevice()


@pytest.fixture
def fake_collector():
    return FakeCollector()


@pytest.fixture
def state_store(tmp_path):
    return StateStore(str(tmp_path / "automation_state.json"))


@pytest.fixture
def clock():
    """Mutable clock: set ``clock.now`` to move time."""
    class Clock:
        now = at(14, 0)

        def __call__(self):
            return self.now

    return Clock()


@pytest.fixture
def engine(fake_device, fake_collector, state_store, clock):
    return AutomationEngine(
        device=fake_device,
        collector=fake_collector,
        store=state_store,
        blackout_windows=[],
        thresholds=SafetyThresholds(10, 100),
        clock=clock,
    )
