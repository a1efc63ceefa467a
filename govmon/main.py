from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from govmon.api.v1.router import v1_router
from govmon.config import settings
from govmon.core.access_gate import OperatorGateMiddleware
from govmon.core.database import async_session, close_db, init_db
from govmon.core.exceptions import MonitorError, monitor_error_handler
from govmon.core.middleware import RequestLoggingMiddleware
from govmon.services.ledger import DowntimeLedger
from govmon.services.probe import ProbeEngine, build_probe_client
from govmon.services.scheduler import CycleScheduler
from govmon.services.store import SystemStore
from govmon.services.uptime import UptimeAggregator

_NAME_TO_LEVEL = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "warn": 30,
    "error": 40,
    "critical": 50,
}

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        _NAME_TO_LEVEL.get(settings.govmon_log_level.lower(), 20)
    ),
)

logger = structlog.get_logger()


def build_aggregator(store: SystemStore) -> UptimeAggregator:
    return UptimeAggregator(
        store,
        window_days=settings.govmon_uptime_window_days,
        recent_incidents_limit=settings.govmon_recent_incidents_limit,
    )


def build_scheduler(
    store: SystemStore, probe_engine: ProbeEngine, aggregator: UptimeAggregator
) -> CycleScheduler:
    """Assemble the check cycle from settings."""
    return CycleScheduler(
        store,
        probe_engine,
        DowntimeLedger(store),
        aggregator,
        interval_minutes=settings.govmon_check_interval_minutes,
        cron=settings.govmon_check_schedule,
        timezone=settings.govmon_check_timezone,
        preset=settings.govmon_check_preset,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    await init_db()

    probe_client = build_probe_client(settings)
    probe_engine = ProbeEngine(probe_client, timeout=settings.govmon_probe_timeout_seconds)
    store = SystemStore(async_session)
    aggregator = build_aggregator(store)
    scheduler = build_scheduler(store, probe_engine, aggregator)

    app.state.aggregator = aggregator
    app.state.scheduler = scheduler

    if settings.govmon_scheduler_enabled:
        await scheduler.start()

    logger.info(
        "govmon_starting",
        scheduler_enabled=settings.govmon_scheduler_enabled,
        schedule=scheduler.schedule_description,
    )
    yield

    await scheduler.stop()
    await probe_client.aclose()
    await close_db()
    logger.info("govmon_stopping")


app = FastAPI(
    title="Government Systems Monitor",
    description="Health checks, downtime tracking and uptime reporting for government web systems",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(MonitorError, monitor_error_handler)

# Middleware (Starlette: last-added = outermost)
# 1. RequestLogging (outermost) — logs all requests including gate rejections
# 2. CORS — handles preflight before the gate
# 3. OperatorGate — shared secret on mutating requests
app.add_middleware(OperatorGateMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.govmon_cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(v1_router)


@app.get("/")
async def root():
    return {"service": "govmon", "version": "0.1.0"}
