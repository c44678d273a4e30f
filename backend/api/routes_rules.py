"""API routes for automation rules CRUD."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError

from api.routes_automation import get_engine
from automation.engine import AutomationEngine, RuleExistsError, RuleNotFoundError
from automation.models import DEFAULT_PRIORITY, Action, Conditions, Rule
from services.state_store import deep_merge

router = APIRouter(prefix="/api/rules", tags=["rules"])


# --- Request Models ---


class RuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True
    priority: int = Field(DEFAULT_PRIORITY, ge=0, le=999)
    cooldown_minutes: Optional[int] = Field(None, ge=0)
    conditions: Conditions = Field(default_factory=Conditions)
    action: Action = Field(default_factory=Action)

    def to_rule(self) -> Rule:
        return Rule(**self.model_dump(exclude_none=True))


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    enabled: Optional[bool] = None
    priority: Optional[int] = Field(None, ge=0, le=999)
    cooldown_minutes: Optional[int] = Field(None, ge=0)
    conditions: Optional[dict] = None
    action: Optional[dict] = None


class ToggleRule(BaseModel):
    enabled: Optional[bool] = None


def _not_found(name: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Rule '{name}' not found")


# --- Endpoints ---


@router.get("")
async def list_rules(engine: AutomationEngine = Depends(get_engine)):
    """List all rules, highest precedence first."""
    return engine.list_rules()


@router.get("/{name}")
async def get_rule(name: str, engine: AutomationEngine = Depends(get_engine)):
    try:
        return engine.get_rule(name)
    except RuleNotFoundError:
        raise _not_found(name)


@router.post("", status_code=201)
async def create_rule(body: RuleCreate, engine: AutomationEngine = Depends(get_engine)):
    """Create a new rule."""
    try:
        return await engine.create_rule(body.to_rule())
    except RuleExistsError:
        raise HTTPException(status_code=409, detail=f"Rule '{body.name}' already exists")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/{name}")
async def update_rule(name: str, body: RuleUpdate, engine: AutomationEngine = Depends(get_engine)):
    """Update a rule. Nested conditions and action are merged into the existing values."""
    try:
        existing = engine.get_rule(name)
    except RuleNotFoundError:
        raise _not_found(name)

    merged = deep_merge(existing.model_dump(), body.model_dump(exclude_unset=True, exclude_none=True))
    try:
        updated = Rule.model_validate(merged)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        return await engine.upsert_rule(name, updated)
    except RuleNotFoundError:
        raise _not_found(name)
    except RuleExistsError:
        raise HTTPException(status_code=409, detail=f"Rule '{updated.name}' already exists")


@router.post("/{name}/toggle")
async def toggle_rule(name: str, body: Optional[ToggleRule] = None, engine: AutomationEngine = Depends(get_engine)):
    """Enable or disable a rule. Without a body the current flag is flipped."""
    try:
        rule = engine.get_rule(name)
        enabled = body.enabled if body and body.enabled is not None else not rule.enabled
        return await engine.set_rule_enabled(name, enabled)
    except RuleNotFoundError:
        raise _not_found(name)


@router.delete("/{name}")
async def delete_rule(name: str, engine: AutomationEngine = Depends(get_engine)):
    """Delete a rule."""
    try:
        await engine.delete_rule(name)
    except RuleNotFoundError:
        raise _not_found(name)
    return {"success": True, "deleted": name}
