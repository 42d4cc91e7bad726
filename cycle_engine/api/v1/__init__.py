from fastapi import APIRouter

# Aggregate all v1 routers here
from .routers import cycles, system

api_router = APIRouter()
api_router.include_router(cycles.router)
api_router.include_router(system.router)

__all__ = ["api_router"]
