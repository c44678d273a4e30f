"""API routes for the automation loop: status, master switch and manual control."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from automation.engine import AutomationEngine, RuleNotFoundError

router = APIRouter(prefix="/api/automation", tags=["automation"])


def get_engine(request: Request) -> AutomationEngine:
    return request.app.state.engine


# --- Request Models ---


class ToggleRequest(BaseModel):
    enabled: bool


class TriggerRequest(BaseModel):
    rule_name: str = Field(..., min_length=1)


class MockData(BaseModel):
    feed_in_price: Optional[float] = None
    buy_price: Optional[float] = None
    soc: Optional[float] = Field(None, ge=0, le=100)
    battery_temperature: Optional[float] = None
    ambient_temperature: Optional[float] = None
    weather_code: Optional[int] = None
    pv_power: Optional[float] = None
    load_power: Optional[float] = None


class DryRunRequest(BaseModel):
    mock_data: MockData = Field(default_factory=MockData)
    test_time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


# --- Endpoints ---


@router.get("/status")
async def automation_status(engine: AutomationEngine = Depends(get_engine)):
    """Current automation state as of the last tick."""
    return engine.status()


@router.post("/toggle")
async def toggle_automation(body: ToggleRequest, engine: AutomationEngine = Depends(get_engine)):
    """Turn the automation master switch on or off."""
    await engine.set_enabled(body.enabled)
    return {"success": True, "enabled": body.enabled}


@router.post("/trigger")
async def trigger_rule(body: TriggerRequest, engine: AutomationEngine = Depends(get_engine)):
    """Apply a rule's action immediately. The safety gate still applies."""
    try:
        result = await engine.trigger_rule(body.rule_name)
    except RuleNotFoundError:
        raise HTTPException(status_code=400, detail=f"Unknown rule '{body.rule_name}'")
    return result


@router.post("/reset")
async def reset_automation(engine: AutomationEngine = Depends(get_engine)):
    """Clear cooldowns and the active rule."""
    await engine.reset()
    return {"success": True}


@router.post("/cancel")
async def cancel_active(engine: AutomationEngine = Depends(get_engine)):
    """Clear every device scheduler group and the active segment."""
    ok = await engine.cancel_active()
    if not ok:
        raise HTTPException(status_code=502, detail="Failed to clear device schedule")
    return {"success": True}


@router.post("/test")
async def dry_run_automation(body: DryRunRequest, engine: AutomationEngine = Depends(get_engine)):
    """Dry-run the rules against mock values."""
    return engine.dry_run(body.mock_data.model_dump(), body.test_time)


@router.post("/cycle")
async def run_cycle(engine: AutomationEngine = Depends(get_engine)):
    """Run one automation tick now."""
    return await engine.run_cycle()


@router.get("/cache")
async def cache_stats(engine: AutomationEngine = Depends(get_engine)):
    """Age and freshness of each cached upstream source."""
    return {"sources": engine.collector.stats()}


@router.delete("/cache")
async def clear_cache(source: Optional[str] = None, engine: AutomationEngine = Depends(get_engine)):
    """Drop one cached source (price, telemetry, weather) or all of them."""
    try:
        engine.collector.invalidate(source)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "source": source or "all"}
