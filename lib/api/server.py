"""
FastAPI Server - Auto-Explain Page Scheduler

Serves the sliding-window page explanation sessions over HTTP and runs the
shared page worker pool inside the same event loop.

Run with:
    python run_server.py

Or with uvicorn:
    uvicorn lib.api.server:app --host 0.0.0.0 --port 8001

Note: The server respects both PORT and API_PORT environment variables.
"""

import logging
import os
import sys
from pathlib import Path

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

# Add project root to path BEFORE importing local modules
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from backend.services.config import RegistryBackend, get_settings, reset_settings
from backend.services.exceptions import ConfigurationError
from backend.services.page_scheduler import get_page_scheduler, reset_page_scheduler
from backend.services.session_manager import get_session_manager
from backend.services.session_models import SessionState
from lib.api.routers import explain_session_router
from lib.api.shared import HealthResponse, get_manager

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Auto-Explain API",
    description="Sliding-window AI page explanation scheduler",
    version=API_VERSION
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(explain_session_router)


# =============================================================================
# Health
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health(manager=Depends(get_manager)) -> HealthResponse:
    """Liveness plus scheduler and registry state."""
    try:
        scheduler_running = get_page_scheduler().is_running
    except ConfigurationError:
        scheduler_running = False

    settings = manager.settings
    redis_connected = None
    if settings.registry_backend is RegistryBackend.REDIS:
        from backend.services.redis_client import check_redis_health
        redis_connected = (await check_redis_health()).connected

    healthy = scheduler_running and redis_connected is not False
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=API_VERSION,
        scheduler_running=scheduler_running,
        active_sessions=manager.session_count(SessionState.ACTIVE),
        registry_backend=settings.registry_backend.value,
        redis_connected=redis_connected,
    )


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info("=" * 60)
    logger.info("Auto-Explain API Starting...")
    logger.info("=" * 60)

    # Load environment variables from project root
    from dotenv import load_dotenv
    env_path = project_root / ".env"
    load_dotenv(dotenv_path=env_path, override=True)

    # Settings are cached; re-read them now that .env is loaded
    reset_settings()
    settings = get_settings()
    logger.info(
        "✓ Window %d before / %d after, jump threshold %d",
        settings.window.default.before,
        settings.window.default.after,
        settings.window.jump_threshold,
    )
    logger.info("✓ Session registry backend: %s", settings.registry_backend.value)

    get_session_manager()

    try:
        scheduler = get_page_scheduler()
        await scheduler.start()
        logger.info("✓ Page task scheduler started (%d workers)", scheduler.config.max_concurrency)
    except ConfigurationError as e:
        logger.error("Page task scheduler not started: %s", e)
        logger.error("Sessions will stay pending until a generation service is configured")

    api_port = os.getenv("PORT") or os.getenv("API_PORT", "8001")
    logger.info("=" * 60)
    logger.info("API Ready!")
    logger.info(f"Listening on http://0.0.0.0:{api_port}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("Auto-Explain API shutting down...")

    try:
        scheduler = get_page_scheduler()
        await scheduler.stop()
        logger.info("✓ Page task scheduler stopped gracefully")
    except ConfigurationError:
        logger.debug("No page task scheduler to stop")
    finally:
        reset_page_scheduler()


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    # Load environment variables from project root
    from dotenv import load_dotenv
    env_path = project_root / ".env"
    load_dotenv(dotenv_path=env_path, override=True)

    # Railway sets PORT env var, we also support API_PORT
    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("PORT") or os.getenv("API_PORT", "8001"))
    reload = os.getenv("UVICORN_RELOAD", "false").lower() == "true"

    logger.info(f"Starting server on {host}:{port}")
    logger.info(f"Reload: {reload}")

    uvicorn.run(
        "lib.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )
