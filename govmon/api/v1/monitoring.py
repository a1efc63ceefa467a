from fastapi import APIRouter, Depends, Query

from govmon.dependencies import get_aggregator, get_scheduler
from govmon.schemas.monitoring import (
    CycleSummary,
    SchedulerStatusResponse,
    UptimeStatsResponse,
    UptimeTrendResponse,
)
from govmon.services.scheduler import CycleScheduler
from govmon.services.uptime import UptimeAggregator

router = APIRouter()


@router.post("/api/health-check/run")
async def run_health_check(
    scheduler: CycleScheduler = Depends(get_scheduler),
) -> CycleSummary:
    """Run a check cycle now. 409 if one is already running."""
    return await scheduler.run_manual()


@router.get("/api/health-check/status")
async def health_check_status(
    scheduler: CycleScheduler = Depends(get_scheduler),
) -> SchedulerStatusResponse:
    return scheduler.status()


@router.get("/api/systems/{system_id}/uptime")
async def system_uptime(
    system_id: int,
    aggregator: UptimeAggregator = Depends(get_aggregator),
) -> UptimeStatsResponse:
    """Uptime statistics over the trailing window."""
    return await aggregator.get_uptime_stats(system_id)


@router.get("/api/systems/{system_id}/uptime/trend")
async def system_uptime_trend(
    system_id: int,
    days: int = Query(30, ge=1, le=365),
    aggregator: UptimeAggregator = Depends(get_aggregator),
) -> UptimeTrendResponse:
    """Daily uptime, oldest first, one point per UTC day."""
    return await aggregator.get_uptime_trend(system_id, days)
