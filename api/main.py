"""
CRM Sync - identity resolution and external sync for the personal CRM
FastAPI Application Entry Point

Start with:

    uvicorn api.main:app --host 0.0.0.0 --port 8000

or `python -m api.main` to use CRM_HOST and CRM_PORT.

The background scheduler polls for due syncs every CRM_SYNC_POLL_SECONDS.
Set CRM_SYNC_SCHEDULER_ENABLED=false when running several API instances
against one database and drive syncs from scripts/run_all_syncs.py instead.
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from api.routes import identity, imports, sync
from config.settings import settings

logger = logging.getLogger(__name__)

# Background scheduler (initialized on startup)
_scheduler_thread = None
_scheduler_stop_event = threading.Event()
_run_cancel_event = threading.Event()


def _sync_scheduler_loop(stop_event: threading.Event, poll_seconds: int):
    """
    Background thread that runs due syncs until stopped.

    Each pass gets a fresh cancel event (the run deadline sets it); shutdown
    sets the current one so in-flight providers stop between pages and no
    cursor is advanced past unprocessed data.

    Args:
        stop_event: Event to signal thread shutdown
        poll_seconds: Seconds between checks for due syncs
    """
    global _run_cancel_event
    from api.services.sync_service import get_sync_service

    while not stop_event.is_set():
        _run_cancel_event = threading.Event()
        try:
            service = get_sync_service()
            runs = service.run_due_syncs(
                max_workers=settings.sync_max_workers,
                cancel_event=_run_cancel_event,
                deadline_seconds=settings.sync_run_deadline_seconds,
            )
            if runs:
                failed = [r for r in runs if r.outcome != "success"]
                logger.info(f"Sync scheduler: {len(runs)} run(s), {len(failed)} not successful")
            service.prune_logs()
        except Exception as e:
            logger.error(f"Sync scheduler iteration failed: {e}")

        stop_event.wait(timeout=poll_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    global _scheduler_thread

    if settings.sync_scheduler_enabled:
        try:
            _scheduler_stop_event.clear()
            _scheduler_thread = threading.Thread(
                target=_sync_scheduler_loop,
                args=(_scheduler_stop_event, settings.sync_poll_seconds),
                daemon=True,
                name="SyncSchedulerThread"
            )
            _scheduler_thread.start()
            logger.info(f"Sync scheduler started (every {settings.sync_poll_seconds}s)")
        except Exception as e:
            logger.error(f"Failed to start sync scheduler: {e}")
    else:
        logger.info("Sync scheduler disabled")

    yield  # Application runs here

    if _scheduler_thread and _scheduler_thread.is_alive():
        _scheduler_stop_event.set()
        _run_cancel_event.set()
        _scheduler_thread.join(timeout=5)
        logger.info("Sync scheduler stopped")


app = FastAPI(
    title="CRM Sync",
    description="Cross-source identity resolution and sync reconciliation for a personal CRM",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(identity.router)
app.include_router(sync.router)
app.include_router(imports.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (convert bytes to string)
    sanitized_errors = []
    for error in errors:
        sanitized = dict(error)
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        if "ctx" in sanitized:
            sanitized["ctx"] = {k: str(v) for k, v in sanitized["ctx"].items()}
        sanitized_errors.append(sanitized)

    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.get("/health")
async def health_check():
    """Health check: database reachable, scheduler running if enabled."""
    from api.services.sync_state import get_sync_state_store

    checks = {}
    try:
        get_sync_state_store().list_all()
        checks["database"] = True
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        checks["database"] = False

    if settings.sync_scheduler_enabled:
        checks["scheduler"] = bool(_scheduler_thread and _scheduler_thread.is_alive())

    all_healthy = all(checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "service": "crm-sync",
        "checks": checks,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
