"""
BCA Field Sync API
FastAPI backend for building condition assessment: tenant-scoped projects,
offline capture sync with three-way merge, and capital-planning scores.
"""
import os
import sys
import time
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.db import Database
from app.services.logging_config import setup_logging
from app.services.middleware import (
    RateLimitMiddleware,
    RequestTimingMiddleware,
    SecurityHeadersMiddleware,
)
from app.services.perf_monitor import PerformanceTracker

# Load .env in dev (no-op when the file is missing)
load_dotenv()

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("bca-api")

APP_VERSION = "1.0.0"
_PROCESS_START = time.monotonic()

for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var} — running in dev mode")
if not os.getenv("CELERY_BROKER_URL"):
    logger.info("Optional env var not set: CELERY_BROKER_URL")


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = Database()
    create_tables = os.getenv("DB_CREATE_ALL", "").lower() in ("1", "true", "yes")
    await db.connect(create_tables=create_tables)
    app.state.db = db
    app.state.perf_tracker = PerformanceTracker()
    try:
        yield
    finally:
        await db.disconnect()


app = FastAPI(
    title="BCA Field Sync API",
    version=APP_VERSION,
    description="Building condition assessment with offline field capture",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS: restricted to allowed origins from env
# ---------------------------------------------------------------------------
_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RateLimitMiddleware)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

# Routers
from app.api.auth_routes import router as auth_router
from app.api.sync_routes import router as sync_router
from app.api.prioritization_routes import router as prioritization_router

app.include_router(auth_router)
app.include_router(sync_router)
app.include_router(prioritization_router)


@app.get("/health")
async def health_check():
    db = getattr(app.state, "db", None)
    return {
        "status": "active",
        "version": APP_VERSION,
        "db_connected": bool(db and db.connected),
        "broker_configured": bool(os.getenv("CELERY_BROKER_URL")),
    }


@app.get("/metrics")
async def metrics():
    """
    Sync throughput, conflict and error counts, and process memory.
    Sourced from the in-process PerformanceTracker created in the lifespan.
    """
    uptime_seconds = round(time.monotonic() - _PROCESS_START, 1)

    memory_mb: float = 0.0
    try:
        import resource  # Unix only
        usage = resource.getrusage(resource.RUSAGE_SELF)
        # ru_maxrss is in kilobytes on Linux, bytes on macOS
        if sys.platform == "darwin":
            memory_mb = round(usage.ru_maxrss / (1024 * 1024), 2)
        else:
            memory_mb = round(usage.ru_maxrss / 1024, 2)
    except ImportError:
        memory_mb = 0.0

    tracker = getattr(app.state, "perf_tracker", None)
    snapshot = tracker.get_metrics() if tracker else PerformanceTracker().get_metrics()

    return {
        "uptime_seconds": uptime_seconds,
        "memory_usage_mb": memory_mb,
        **snapshot,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
