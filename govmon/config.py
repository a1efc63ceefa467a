from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    govmon_db_url: str = "sqlite+aiosqlite:///data/govmon.db"

    # Logging
    govmon_log_level: str = "info"

    # CORS
    govmon_cors_origins: str = "http://localhost:3000,http://localhost:5000,http://127.0.0.1:3000"

    # Operator gate for mutating endpoints (None = disabled)
    govmon_operator_key: str | None = None

    # Health check schedule
    govmon_scheduler_enabled: bool = True
    govmon_check_interval_minutes: int = Field(5, ge=1)
    govmon_check_schedule: str | None = None  # 5-field cron, overrides the minute interval
    govmon_check_preset: str | None = None  # EVERY_1_MIN ... EVERY_HOUR, used when no cron is set
    govmon_check_timezone: str = "UTC"

    # Probe
    govmon_probe_timeout_seconds: float = Field(30.0, gt=0)
    govmon_probe_max_redirects: int = Field(5, ge=0)
    govmon_probe_user_agent: str = DEFAULT_USER_AGENT

    # Uptime
    govmon_uptime_window_days: int = Field(30, ge=1)
    govmon_recent_incidents_limit: int = Field(5, ge=1)

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
