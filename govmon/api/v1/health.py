import time

from fastapi import APIRouter, Depends

from govmon.dependencies import get_scheduler
from govmon.schemas.monitoring import HealthResponse
from govmon.services.scheduler import CycleScheduler

router = APIRouter()

_start_time = time.monotonic()


@router.get("/api/health")
async def health_check(
    scheduler: CycleScheduler = Depends(get_scheduler),
) -> HealthResponse:
    """Liveness check — no operator key required."""
    return HealthResponse(
        status="ok",
        scheduler_state=scheduler.state.value,
        uptime_seconds=round(time.monotonic() - _start_time, 1),
    )
