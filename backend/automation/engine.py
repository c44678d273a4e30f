"""Automation engine - runs the decision loop and owns the automation state."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import BlackoutWindow, settings
from automation import rules as rule_eval
from automation.actions import apply_segment, clear_all, has_room_today
from automation.models import ActiveSegment, DataSnapshot, Rule, local_now, parse_hhmm
from automation.reconciler import reconcile
from automation.safety import SafetyThresholds, check_safety_thresholds, get_blackout_info
from foxess.commands import FoxESSDevice
from services.collector import TELEMETRY, DataCollector
from services.state_store import StateStore

logger = logging.getLogger(__name__)


class RuleNotFoundError(LookupError):
    pass


class RuleExistsError(ValueError):
    pass


class AutomationEngine:
    """Owns the device gateway, the data collector and the persisted state.

    Ticks never overlap: the scheduler runs one instance at a time and every
    state mutation, from the loop or the management routes, holds ``_lock``.
    """

    def __init__(
        self,
        device=None,
        collector: Optional[DataCollector] = None,
        store: Optional[StateStore] = None,
        blackout_windows: Optional[list[BlackoutWindow]] = None,
        thresholds: Optional[SafetyThresholds] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.device = device or FoxESSDevice()
        self.collector = collector or DataCollector(self.device)
        self.store = store or StateStore()
        self.state = self.store.load()
        self.blackout_windows = settings.blackout_windows if blackout_windows is None else blackout_windows
        self.thresholds = thresholds or SafetyThresholds.from_settings()
        self.clock = clock
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.last_result: dict = {}
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Future] = None

    # --- Lifecycle ---

    def start(self):
        """Start the interval scheduler."""
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=settings.automation_interval_seconds),
            id="automation_loop",
            name="Automation Decision Loop",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now() + timedelta(seconds=settings.automation_start_delay_seconds),
        )
        self.scheduler.start()
        logger.info(
            "Automation scheduler started (every %ds, %d rules loaded)",
            settings.automation_interval_seconds, len(self.state.rules),
        )

    async def shutdown(self):
        """Stop the scheduler, wait for any in-flight tick and flush state."""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Automation scheduler stopped")
        async with self._lock:
            if self._inflight is not None and not self._inflight.done():
                await self._inflight
            self.persist()
        await self.collector.close()
        await self.device.close()

    def persist(self) -> bool:
        return self.store.save(self.state)

    async def _shielded(self, coro: Awaitable):
        """Run a device write and its state commit so that a tick timeout can't interrupt it."""
        task = asyncio.ensure_future(coro)
        self._inflight = task
        return await asyncio.shield(task)

    # --- Loop ---

    async def tick(self, now: Optional[datetime] = None) -> dict:
        """Run one automation cycle. Skipped if a cycle is already running."""
        if self._lock.locked():
            logger.info("Previous automation tick still running, skipping")
            return {"status": "skipped"}

        async with self._lock:
            now = now or self.clock()
            try:
                result = await asyncio.wait_for(self._tick(now), timeout=settings.tick_deadline_seconds)
            except asyncio.TimeoutError:
                logger.error("Automation tick exceeded %.0fs deadline", settings.tick_deadline_seconds)
                if self._inflight is not None and not self._inflight.done():
                    await self._inflight
                self.persist()
                result = {"status": "timeout"}
            except Exception as e:
                logger.exception("Unexpected error in automation tick: %s", e)
                result = {"status": "error", "error": str(e)}
            self.last_result = result
            return result

    async def _tick(self, now: datetime) -> dict:
        state = self.state
        state.last_check_at = now

        blackout = get_blackout_info(self.blackout_windows, now)
        state.in_blackout = blackout.in_blackout

        if not state.enabled:
            logger.debug("Automation disabled, idle tick")
            self.persist()
            return {"status": "disabled"}

        if blackout.in_blackout:
            logger.debug("In blackout window %s-%s, idle tick", blackout.window.start, blackout.window.end)
            self.persist()
            return {"status": "blackout", "window": blackout.window.model_dump()}

        logger.info("Automation tick at %s (%d rules)", now.strftime("%H:%M:%S"), len(state.rules))
        ts = now.timestamp()
        await self.collector.refresh(ts)
        snapshot = self.collector.snapshot(ts)

        outcome = await self._shielded(reconcile(self.device, state, snapshot, now))
        self.persist()

        selection = rule_eval.select_rule(state.rules, snapshot, state, now)
        result = {
            "status": "evaluated",
            "reconcile": outcome.value,
            "triggered": None,
            "rules": selection.evaluated,
        }
        if not selection.triggered:
            logger.debug("No rules triggered")
            return result

        rule = selection.rule
        segment, reason = await self._apply_rule(rule, snapshot.soc, now)
        if segment is None:
            result["blocked"] = reason
            return result
        result["triggered"] = rule.name
        return result

    async def _apply_rule(
        self, rule: Rule, soc: Optional[float], now: datetime
    ) -> tuple[Optional[ActiveSegment], Optional[str]]:
        """Safety gate, then device write plus state commit."""
        check = check_safety_thresholds(rule.action.work_mode, soc, self.thresholds)
        if not check.safe:
            logger.warning("Safety gate blocked rule '%s': %s", rule.name, check.reason)
            return None, check.reason
        if not has_room_today(now):
            logger.warning("Rule '%s' matched at %s, too late to schedule a segment", rule.name, now.strftime("%H:%M"))
            return None, "end_of_day"

        segment = await self._shielded(self._write_and_commit(rule, now))
        if segment is None:
            return None, "device_write_failed"
        return segment, None

    async def _write_and_commit(self, rule: Rule, now: datetime) -> Optional[ActiveSegment]:
        segment = await apply_segment(self.device, rule.name, rule.action, now)
        if segment is None:
            return None
        rule.last_triggered_at = now
        self.state.last_triggered_at = now
        self.state.active_rule_name = rule.name
        self.state.active_segment = segment
        self.persist()
        logger.info("Rule '%s' triggered: %s", rule.name, segment.label())
        return segment

    # --- Management ---

    def status(self) -> dict:
        state = self.state
        blackout = get_blackout_info(self.blackout_windows, self.clock())
        return {
            "enabled": state.enabled,
            "last_check_at": state.last_check_at,
            "last_triggered_at": state.last_triggered_at,
            "active_rule_name": state.active_rule_name,
            "active_segment": state.active_segment.model_dump() if state.active_segment else None,
            "in_blackout": state.in_blackout,
            "current_blackout_window": blackout.window.model_dump() if blackout.window else None,
            "rule_count": len(state.rules),
            "last_result": self.last_result,
        }

    async def set_enabled(self, enabled: bool):
        async with self._lock:
            self.state.enabled = enabled
            self.persist()
        logger.info("Automation %s", "enabled" if enabled else "disabled")

    async def trigger_rule(self, name: str) -> dict:
        """Apply one rule's action now, skipping evaluation and cooldown."""
        async with self._lock:
            rule = self.state.rules.get(name)
            if rule is None:
                raise RuleNotFoundError(name)
            now = self.clock()
            ts = now.timestamp()
            # The loop may be idle, so the cached SoC can be stale or absent
            await self.collector.refresh(ts, sources=(TELEMETRY,))
            snapshot = self.collector.snapshot(ts)
            logger.info("Manual trigger of rule '%s'", name)
            segment, reason = await self._apply_rule(rule, snapshot.soc, now)
            return {
                "success": segment is not None,
                "rule_name": name,
                "segment": segment.model_dump() if segment else None,
                "reason": reason,
            }

    async def reset(self):
        """Clear all cooldowns and the active rule/segment."""
        async with self._lock:
            for rule in self.state.rules.values():
                rule.last_triggered_at = None
            self.state.last_triggered_at = None
            self.state.clear_active()
            self.persist()
        logger.info("Automation state reset")

    async def cancel_active(self) -> bool:
        """Zero every device group and forget the active segment."""
        async with self._lock:
            ok = await self._shielded(clear_all(self.device))
            if ok:
                self.state.clear_active()
                self.persist()
            return ok

    def dry_run(self, mock: dict, test_time: Optional[str] = None) -> dict:
        """Evaluate the rules against supplied values, without cooldown or side effects."""
        snapshot = DataSnapshot(**mock)
        now = self.clock()
        if test_time:
            minutes = parse_hhmm(test_time)
            now = now.replace(hour=minutes // 60, minute=minutes % 60, second=0, microsecond=0)
        return rule_eval.dry_run(self.state.rules, snapshot, now)

    async def run_cycle(self) -> dict:
        """Run one tick now, waiting for an in-progress tick if needed."""
        async with self._lock:
            pass
        return await self.tick()

    # --- Rule CRUD ---

    def list_rules(self) -> list[Rule]:
        return sorted(self.state.rules.values(), key=lambda r: (r.priority, r.name))

    def get_rule(self, name: str) -> Rule:
        rule = self.state.rules.get(name)
        if rule is None:
            raise RuleNotFoundError(name)
        return rule

    async def create_rule(self, rule: Rule) -> Rule:
        async with self._lock:
            if rule.name in self.state.rules:
                raise RuleExistsError(rule.name)
            self.state.rules[rule.name] = rule
            self.persist()
        logger.info("Rule '%s' created", rule.name)
        return rule

    async def upsert_rule(self, name: str, updated: Rule) -> Rule:
        """Replace a rule, allowing a rename. Disabling clears its cooldown."""
        async with self._lock:
            existing = self.state.rules.get(name)
            if existing is None:
                raise RuleNotFoundError(name)
            if updated.name != name and updated.name in self.state.rules:
                raise RuleExistsError(updated.name)
            if not updated.enabled:
                updated.last_triggered_at = None
            else:
                updated.last_triggered_at = existing.last_triggered_at
            del self.state.rules[name]
            self.state.rules[updated.name] = updated
            if self.state.active_rule_name == name:
                self.state.active_rule_name = updated.name
                if self.state.active_segment is not None:
                    self.state.active_segment.rule_name = updated.name
            self.persist()
        logger.info("Rule '%s' updated", updated.name)
        return updated

    async def set_rule_enabled(self, name: str, enabled: bool) -> Rule:
        async with self._lock:
            rule = self.state.rules.get(name)
            if rule is None:
                raise RuleNotFoundError(name)
            rule.enabled = enabled
            if not enabled:
                rule.last_triggered_at = None
            self.persist()
        logger.info("Rule '%s' %s", name, "enabled" if enabled else "disabled")
        return rule

    async def delete_rule(self, name: str):
        """Delete a rule. An active segment it owns is cancelled on the next tick."""
        async with self._lock:
            if name not in self.state.rules:
                raise RuleNotFoundError(name)
            del self.state.rules[name]
            self.persist()
        logger.info("Rule '%s' deleted", name)
