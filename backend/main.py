"""FoxPilot - FoxESS battery automation service."""

import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from automation.engine import AutomationEngine
from automation.models import local_now
from api.routes_automation import router as automation_router
from api.routes_rules import router as rules_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("foxpilot")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    logger.info("Starting FoxPilot v%s", settings.app_version)

    if not settings.foxess_api_key or not settings.foxess_device_sn:
        logger.warning("FoxESS credentials not configured - device reads and writes will fail")
    if not settings.amber_api_key:
        logger.warning("Amber API key not configured - price conditions will never match")
    if settings.blackout_windows:
        logger.info("Blackout windows: %d configured", len(settings.blackout_windows))

    engine = getattr(app.state, "engine", None)
    if engine is None:
        engine = AutomationEngine()
        app.state.engine = engine
    engine.start()

    yield

    # Shutdown
    await engine.shutdown()
    logger.info("FoxPilot stopped")


app = FastAPI(
    title="FoxPilot",
    description="FoxESS battery automation",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS - restrict to dev servers in debug mode, allow all in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:8080"] if settings.debug else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register API routes
app.include_router(automation_router)
app.include_router(rules_router)


# --- Health check ---

@app.get("/api/health")
async def health():
    """Health check endpoint.

    Reports ``degraded`` when the loop is enabled but ``last_check_at`` is
    older than three intervals.
    """
    engine = getattr(app.state, "engine", None)
    last_check = engine.state.last_check_at if engine else None
    stalled = False
    if engine and engine.state.enabled and last_check is not None:
        now = local_now()
        if last_check.tzinfo is None:
            now = now.replace(tzinfo=None)
        stalled = now - last_check > timedelta(seconds=3 * settings.automation_interval_seconds)

    data_dir = settings.data_dir
    return {
        "status": "degraded" if stalled else "ok",
        "version": settings.app_version,
        "loop_running": bool(engine and engine.scheduler and engine.scheduler.running),
        "last_check_at": last_check,
        "device_configured": bool(settings.foxess_api_key and settings.foxess_device_sn),
        "price_feed_configured": bool(settings.amber_api_key),
        "data_volume_mounted": os.path.isdir(data_dir) and os.access(data_dir, os.W_OK),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
