from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class SystemStatus(str, Enum):
    UP = "Up"
    DOWN = "Down"
    MAINTENANCE = "Maintenance"


class ProbeErrorCategory(str, Enum):
    CONNECTION_REFUSED = "connection-refused"
    TIMEOUT = "timeout"
    DNS_FAILURE = "dns-failure"
    CONNECTION_RESET = "connection-reset"
    CERTIFICATE_EXPIRED = "certificate-expired"
    CERTIFICATE_VERIFICATION_FAILED = "certificate-verification-failed"
    HTTP_ERROR_STATUS = "http-error-status"
    UNKNOWN = "unknown"


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class ProbeOutcome(BaseModel):
    system_id: int | None = None
    system_name: str | None = None
    status: str  # "Up", "Down", or the unchanged status when not attempted
    elapsed_ms: int | None = None
    http_status: int | None = None
    error: str | None = None
    error_category: ProbeErrorCategory | None = None
    error_code: str | None = None
    attempted: bool = True
    checked_at: datetime | None = None
    final_url: str | None = None
    headers: dict[str, str] = {}


class CycleSummary(BaseModel):
    total: int = 0
    checked: int = 0
    up: int = 0
    down: int = 0
    skipped: int = 0
    trigger: str = "schedule"  # "schedule" or "manual"
    started_at: datetime | None = None
    finished_at: datetime | None = None


class DowntimeIncident(BaseModel):
    id: int
    down_time: datetime
    up_time: datetime | None = None
    duration_minutes: int | None = None
    state_transition: str | None = None
    error_message: str | None = None


class UptimeStatsResponse(BaseModel):
    system_id: int
    uptime_percentage: float
    total_incidents: int
    total_downtime_minutes: int
    total_downtime_hours: float
    currently_down: bool
    recent_incidents: list[DowntimeIncident]


class TrendPoint(BaseModel):
    date: str  # YYYY-MM-DD (UTC)
    uptime: float
    downtime: int  # minutes


class UptimeTrendResponse(BaseModel):
    system_id: int
    days: int
    points: list[TrendPoint]


class SchedulerStatusResponse(BaseModel):
    state: SchedulerState
    active: bool
    schedule: str
    next_run_time: datetime | None = None
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_summary: CycleSummary | None = None
    last_error: str | None = None
    cycles_completed: int = 0
    cycles_skipped: int = 0
    cycles_failed: int = 0


class HealthResponse(BaseModel):
    status: str  # "ok"
    scheduler_state: str
    uptime_seconds: float = 0.0
    version: str = "0.1.0"
