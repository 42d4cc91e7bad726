"""
FastAPI dependencies.

The engine is created by the application's startup handler and stored on
``app.state``; routes receive it through ``get_engine``.
"""

from fastapi import HTTPException, Request, status

from .services.engine import CycleEngine


def get_engine(request: Request) -> CycleEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cycle engine is not initialized",
        )
    return engine
