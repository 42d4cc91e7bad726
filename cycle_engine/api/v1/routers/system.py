from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ....config import settings
from ....dependencies import get_engine
from ....services.engine import CycleEngine
from ..models import HealthStatus

router = APIRouter()


@router.get("/health", response_model=HealthStatus, response_model_by_alias=True, tags=["System"])
async def health_check(engine: CycleEngine = Depends(get_engine)):
    """Health check endpoint."""
    database = await engine.database.health_check()
    return HealthStatus(
        status=database["status"],
        timestamp=datetime.now(timezone.utc),
        version=settings.api_version,
        database=database,
    )
