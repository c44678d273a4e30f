"""Persistent automation state store.

Keeps the automation document (master switch, rules, active segment) in a
JSON file within the data directory. Writes go to a temp file that is then
renamed over the target, so a crash mid-write never leaves a torn document.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from automation.models import AutomationState, Rule
from config import settings

logger = logging.getLogger(__name__)


def deep_merge(defaults: dict, loaded: dict) -> dict:
    """Overlay ``loaded`` onto ``defaults``, recursing into nested dicts."""
    merged = dict(defaults)
    for key, value in loaded.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class StateStore:
    """Loads and atomically saves the AutomationState document."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or settings.state_file)

    def load(self) -> AutomationState:
        """Load state from disk, falling back to defaults when missing or corrupt."""
        if not self.path.exists():
            logger.info("No state file at %s, starting with defaults", self.path)
            return AutomationState()

        try:
            raw = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load automation state: %s", e)
            return AutomationState()
        if not isinstance(raw, dict):
            logger.warning("Automation state file is not an object, using defaults")
            return AutomationState()

        raw_rules = raw.pop("rules", None) or {}
        merged = deep_merge(AutomationState().model_dump(mode="json", exclude={"rules"}), raw)
        try:
            state = AutomationState.model_validate(merged)
        except ValidationError as e:
            logger.warning("Automation state failed validation, using defaults: %s", e)
            return AutomationState()

        default_rule = None
        for name, data in raw_rules.items():
            if not isinstance(data, dict):
                continue
            if default_rule is None:
                default_rule = Rule(name="_").model_dump(mode="json")
            try:
                rule = Rule.model_validate(deep_merge(default_rule, {**data, "name": name}))
            except ValidationError as e:
                logger.warning("Skipping invalid stored rule '%s': %s", name, e)
                continue
            state.rules[rule.name] = rule

        logger.info("Loaded automation state from %s (%d rules)", self.path, len(state.rules))
        return state

    def save(self, state: AutomationState) -> bool:
        """Persist state atomically. Returns False (and logs) on failure."""
        payload = state.model_dump_json(indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            logger.error("Failed to save automation state to %s: %s", self.path, e)
            return False
        logger.debug("Saved automation state to %s", self.path)
        return True
