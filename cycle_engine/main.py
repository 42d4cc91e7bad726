# ============================================================================
# Cycle Engine - FastAPI Application Entry Point
# ============================================================================
"""
FastAPI application exposing the cycle engine.

This module sets up the FastAPI application with:
- Startup/shutdown handlers that open and close the CycleEngine
- Error handlers mapping engine errors to HTTP responses
- The v1 API router under /api/v1

Usage:
    Direct: python -m cycle_engine.main
    Server: uvicorn cycle_engine.main:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .api.v1 import api_router
from .api.v1.models import ErrorResponse
from .config import settings
from .errors import ConfigurationError, CycleEngineError
from .services.engine import CycleEngine

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("cycle_engine.api")

# ============================================================================
# APPLICATION INITIALIZATION
# ============================================================================

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "Cycle Engine API\n\n"
        "Schedules per-tenant collection cycles, collects ESI telemetry "
        "snapshots and tracks each cycle's pipeline status."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


def build_engine() -> CycleEngine:
    return CycleEngine.build()


# ============================================================================
# APPLICATION EVENT HANDLERS
# ============================================================================

@app.on_event("startup")
async def startup_event() -> None:
    """
    Open the database and telemetry client and create tables.

    Raises:
        Exception: If the engine cannot be opened
    """
    logger.info(f"🚀 Starting {settings.api_title} v{settings.api_version}")
    engine = build_engine()
    try:
        await engine.open()
    except Exception as e:
        logger.error(f"❌ Startup failed: {e}")
        await engine.close()
        raise
    app.state.engine = engine
    logger.info("✅ Startup complete")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("🛑 Shutting down")
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.close()
        app.state.engine = None


# ============================================================================
# ERROR HANDLERS
# ============================================================================

def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, timestamp=datetime.now(timezone.utc))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, f"HTTP {exc.status_code}", str(exc.detail))


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error(f"Configuration error on {request.url.path}: {exc}")
    return _error(503, "Service Unavailable", str(exc))


@app.exception_handler(CycleEngineError)
async def engine_error_handler(request: Request, exc: CycleEngineError) -> JSONResponse:
    logger.error(f"Engine error on {request.url.path}: {exc}")
    return _error(409, "Conflict", str(exc))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected errors.

    The error text is only returned in debug mode.
    """
    logger.exception(f"Unhandled error on {request.url.path}")
    return _error(500, "Internal Server Error", str(exc) if settings.debug else "An unexpected error occurred")


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

app.include_router(api_router, prefix="/api/v1")


@app.get("/", tags=["root"])
async def root() -> Dict[str, Any]:
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "status": "running",
        "docs_url": "/docs",
        "health_check": "/api/v1/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("cycle_engine.main:app", host="0.0.0.0", port=8000)
