from fastapi import Request

from govmon.services.scheduler import CycleScheduler
from govmon.services.uptime import UptimeAggregator


def get_scheduler(request: Request) -> CycleScheduler:
    """Return the cycle scheduler stored on app state during lifespan."""
    return request.app.state.scheduler


def get_aggregator(request: Request) -> UptimeAggregator:
    return request.app.state.aggregator
