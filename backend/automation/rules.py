"""Rule evaluation logic: conditions, cooldowns and priority ordering."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from automation.models import (
    DEFAULT_PRIORITY,
    AutomationState,
    ConditionResult,
    DataSnapshot,
    Rule,
)
from automation.safety import in_time_range

logger = logging.getLogger(__name__)


def compare_value(actual: Optional[float], operator: str, target: float) -> bool:
    """Compare an observed value against a threshold. Missing values never match."""
    if actual is None:
        return False

    if operator == ">=":
        return actual >= target
    elif operator == "<=":
        return actual <= target
    elif operator == ">":
        return actual > target
    elif operator == "<":
        return actual < target
    elif operator == "==":
        return actual == target
    elif operator == "!=":
        return actual != target
    else:
        logger.warning("Unknown operator: %s", operator)
        return False


def _temperature_for(source: Optional[str], snapshot: DataSnapshot) -> Optional[float]:
    if source == "battery":
        return snapshot.battery_temperature
    if source == "ambient":
        return snapshot.ambient_temperature
    if snapshot.ambient_temperature is not None:
        return snapshot.ambient_temperature
    return snapshot.battery_temperature


def evaluate_conditions(
    rule: Rule, snapshot: DataSnapshot, now: datetime
) -> tuple[bool, list[ConditionResult]]:
    """Evaluate every enabled condition of a rule (AND).

    Has no side effects and ignores cooldown. A rule with no enabled
    conditions always matches.
    """
    conditions = rule.conditions
    results: list[ConditionResult] = []

    for name, actual in (
        ("feed_in_price", snapshot.feed_in_price),
        ("buy_price", snapshot.buy_price),
        ("soc", snapshot.soc),
    ):
        cond = getattr(conditions, name)
        if cond.enabled:
            met = compare_value(actual, cond.operator, cond.value)
            results.append(ConditionResult(name, actual, f"{cond.operator} {cond.value:g}", met))

    temp = conditions.temperature
    if temp.enabled:
        actual = _temperature_for(temp.source, snapshot)
        met = compare_value(actual, temp.operator, temp.value)
        results.append(ConditionResult("temperature", actual, f"{temp.operator} {temp.value:g}", met))

    weather = conditions.weather_code
    if weather.enabled:
        code = snapshot.weather_code
        met = code is not None and code in weather.codes
        results.append(ConditionResult("weather_code", code, f"in {weather.codes}", met))

    window = conditions.time_window
    if window.enabled:
        met = in_time_range(window.start, window.end, now)
        results.append(
            ConditionResult("time_window", now.strftime("%H:%M"), f"{window.start}-{window.end}", met)
        )

    for result in results:
        logger.debug(
            "Rule '%s': %s=%s target %s -> %s",
            rule.name, result.name, result.value, result.target, "met" if result.met else "not met",
        )

    return all(r.met for r in results), results


def _elapsed(now: datetime, then: datetime) -> timedelta:
    if (now.tzinfo is None) != (then.tzinfo is None):
        now = now.replace(tzinfo=None)
        then = then.replace(tzinfo=None)
    return now - then


def is_in_cooldown(rule: Rule, now: datetime) -> bool:
    if rule.last_triggered_at is None:
        return False
    return _elapsed(now, rule.last_triggered_at) < timedelta(minutes=rule.cooldown_minutes)


def should_bypass_cooldown(rule: Rule, state: AutomationState) -> bool:
    """Cooldown is skipped when nothing is active or the rule outranks the active one."""
    if state.active_segment is None or not state.active_rule_name:
        return True
    if rule.name == state.active_rule_name:
        return False
    active = state.rules.get(state.active_rule_name)
    active_priority = active.priority if active else DEFAULT_PRIORITY
    return rule.priority < active_priority


def sorted_enabled_rules(rules: dict[str, Rule]) -> list[Rule]:
    """Enabled rules, highest precedence (lowest priority number) first."""
    return sorted(
        (r for r in rules.values() if r.enabled),
        key=lambda r: (r.priority, r.name),
    )


@dataclass
class Selection:
    """Outcome of walking the rule list for one tick."""
    rule: Optional[Rule] = None
    evaluated: dict[str, dict] = field(default_factory=dict)

    @property
    def triggered(self) -> bool:
        return self.rule is not None


def select_rule(
    rules: dict[str, Rule], snapshot: DataSnapshot, state: AutomationState, now: datetime
) -> Selection:
    """Return the first enabled rule (by priority) whose conditions all hold.

    Rules in cooldown are skipped unless the cooldown is bypassed.
    """
    selection = Selection()
    for rule in sorted_enabled_rules(rules):
        if is_in_cooldown(rule, now) and not should_bypass_cooldown(rule, state):
            logger.debug("Rule '%s' in cooldown", rule.name)
            selection.evaluated[rule.name] = {"met": False, "reason": "cooldown", "conditions": []}
            continue

        all_met, results = evaluate_conditions(rule, snapshot, now)
        selection.evaluated[rule.name] = {
            "met": all_met,
            "reason": "conditions_met" if all_met else "conditions_not_met",
            "conditions": [r.to_dict() for r in results],
        }
        if all_met:
            logger.info("Rule '%s' (priority %d) matched", rule.name, rule.priority)
            selection.rule = rule
            break

    return selection


def dry_run(rules: dict[str, Rule], snapshot: DataSnapshot, now: datetime) -> dict:
    """Evaluate rules against supplied values without cooldown or side effects."""
    results = []
    triggered: Optional[str] = None
    for rule in sorted_enabled_rules(rules):
        all_met, conditions = evaluate_conditions(rule, snapshot, now)
        results.append({
            "rule_name": rule.name,
            "priority": rule.priority,
            "met": all_met,
            "conditions": [c.to_dict() for c in conditions],
        })
        if all_met:
            triggered = rule.name
            break

    return {
        "triggered": triggered is not None,
        "rule_name": triggered,
        "test_time": now.strftime("%H:%M"),
        "results": results,
    }
