"""Health check cycle scheduler — fans probes out over the roster on a timer."""

import asyncio
from collections.abc import Callable
from datetime import datetime

import structlog
from apscheduler.events import EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED, JobEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from govmon.core.clock import utcnow
from govmon.core.exceptions import CycleInProgressError, MonitorError
from govmon.schemas.monitoring import (
    CycleSummary,
    ProbeOutcome,
    SchedulerState,
    SchedulerStatusResponse,
    SystemStatus,
)
from govmon.services.ledger import DowntimeLedger
from govmon.services.probe import ProbeEngine, ProbeTarget
from govmon.services.store import SystemStore
from govmon.services.uptime import UptimeAggregator

logger = structlog.get_logger()

JOB_ID = "health-check-cycle"

# Named schedules accepted by GOVMON_CHECK_PRESET
SCHEDULE_PRESETS = {
    "EVERY_1_MIN": "*/1 * * * *",
    "EVERY_2_MIN": "*/2 * * * *",
    "EVERY_5_MIN": "*/5 * * * *",
    "EVERY_10_MIN": "*/10 * * * *",
    "EVERY_15_MIN": "*/15 * * * *",
    "EVERY_30_MIN": "*/30 * * * *",
    "EVERY_HOUR": "0 * * * *",
}


def preset_cron(preset: str) -> str:
    """Cron expression for a named preset (case-insensitive)."""
    try:
        return SCHEDULE_PRESETS[preset.strip().upper()]
    except KeyError:
        raise ValueError(
            f"Unknown schedule preset '{preset}'. Available presets: {', '.join(SCHEDULE_PRESETS)}"
        ) from None


class CycleScheduler:
    """Runs health check cycles on a schedule, one at a time.

    Probes for the whole roster run concurrently with no cap; each probe is
    bounded by its own timeout, which is fine for rosters in the low hundreds.
    A firing that arrives while a cycle is still running is dropped, never
    queued.
    """

    def __init__(
        self,
        store: SystemStore,
        probe_engine: ProbeEngine,
        ledger: DowntimeLedger,
        aggregator: UptimeAggregator,
        interval_minutes: int = 5,
        cron: str | None = None,
        timezone: str = "UTC",
        preset: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._probe = probe_engine
        self._ledger = ledger
        self._aggregator = aggregator
        self._interval_minutes = interval_minutes
        # An explicit cron expression wins over a preset
        self._preset = preset.strip().upper() if preset and not cron else None
        self._cron = cron or (preset_cron(preset) if preset else None)
        self._timezone = timezone
        self._clock = clock

        # Validates the schedule up front; raises ValueError on a bad cron expression or preset
        self._trigger = self._build_trigger()

        self._scheduler: AsyncIOScheduler | None = None
        self._lock = asyncio.Lock()
        self._state = SchedulerState.IDLE

        self._last_started_at: datetime | None = None
        self._last_finished_at: datetime | None = None
        self._last_summary: CycleSummary | None = None
        self._last_error: str | None = None
        self._cycles_completed = 0
        self._cycles_skipped = 0
        self._cycles_failed = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def active(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def schedule_description(self) -> str:
        if self._preset:
            return f"preset {self._preset} (cron '{self._cron}', {self._timezone})"
        if self._cron:
            return f"cron '{self._cron}' ({self._timezone})"
        return f"every {self._interval_minutes} minute(s)"

    def _build_trigger(self) -> BaseTrigger:
        if self._cron:
            return CronTrigger.from_crontab(self._cron, timezone=self._timezone)
        return IntervalTrigger(minutes=self._interval_minutes, timezone=self._timezone)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the timer. The first cycle fires immediately."""
        if self.active:
            logger.warning("scheduler_already_started")
            return

        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._scheduler.add_listener(
            self._on_job_not_run, EVENT_JOB_MAX_INSTANCES | EVENT_JOB_MISSED
        )
        self._scheduler.add_job(
            self._scheduled_run,
            trigger=self._trigger,
            id=JOB_ID,
            name="Health check cycle",
            # Wall clock; the injected clock only stamps stored records
            next_run_time=utcnow(),
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info("scheduler_started", schedule=self.schedule_description)

    async def stop(self) -> None:
        """Stop the timer. A cycle already in flight runs to completion."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("scheduler_stopped")

    def _on_job_not_run(self, event: JobEvent) -> None:
        if event.code == EVENT_JOB_MAX_INSTANCES:
            self._cycles_skipped += 1
            logger.warning("cycle_skipped", trigger="schedule", reason="cycle already running")
        else:
            logger.warning("cycle_missed", job_id=event.job_id)

    async def _scheduled_run(self) -> None:
        await self.run_cycle(trigger="schedule")

    # ── Cycles ───────────────────────────────────────────────────────────────

    async def run_cycle(self, trigger: str = "schedule") -> CycleSummary | None:
        """Run one cycle unless one is already running.

        Returns None when the cycle was skipped or failed; failures are logged
        and recorded as ``last_error`` so the timer keeps firing.
        """
        if self._lock.locked():
            self._cycles_skipped += 1
            logger.warning("cycle_skipped", trigger=trigger, reason="cycle already running")
            return None

        async with self._lock:
            self._state = SchedulerState.RUNNING
            self._last_started_at = self._clock()
            try:
                summary = await self._execute(trigger, self._last_started_at)
            except Exception as exc:
                self._cycles_failed += 1
                self._last_error = str(exc) or type(exc).__name__
                logger.exception("cycle_failed", trigger=trigger)
                return None
            finally:
                self._state = SchedulerState.IDLE
                self._last_finished_at = self._clock()

            self._cycles_completed += 1
            self._last_summary = summary
            self._last_error = None
            return summary

    async def run_manual(self) -> CycleSummary:
        """Operator-triggered cycle; raises instead of silently skipping."""
        if self._lock.locked():
            self._cycles_skipped += 1
            logger.warning("cycle_skipped", trigger="manual", reason="cycle already running")
            raise CycleInProgressError()

        summary = await self.run_cycle(trigger="manual")
        if summary is None:
            raise MonitorError(
                code="cycle_failed",
                message="Health check cycle failed. See server logs for details.",
                status=500,
            )
        return summary

    async def _execute(self, trigger: str, started_at: datetime) -> CycleSummary:
        roster = await self._store.list_probeable_systems()
        total = len(await self._store.list_all_system_ids())

        summary = CycleSummary(
            total=total,
            skipped=max(0, total - len(roster)),
            trigger=trigger,
            started_at=started_at,
        )
        logger.info("cycle_started", trigger=trigger, total=total, probeable=len(roster))

        outcomes = await asyncio.gather(
            *(self._probe.probe(target) for target in roster),
            return_exceptions=True,
        )

        for target, outcome in zip(roster, outcomes):
            if isinstance(outcome, BaseException):
                summary.skipped += 1
                logger.error(
                    "probe_crashed",
                    system_id=target.id,
                    error=str(outcome) or type(outcome).__name__,
                )
                continue
            if not outcome.attempted:
                summary.skipped += 1
                continue

            summary.checked += 1
            if outcome.status == SystemStatus.UP.value:
                summary.up += 1
            else:
                summary.down += 1

            try:
                await self._record(target, outcome)
            except MonitorError as exc:
                logger.error(
                    "system_update_failed",
                    system_id=target.id,
                    error=exc.message,
                )

        await self._aggregator.update_all_uptimes()

        summary.finished_at = self._clock()
        logger.info(
            "cycle_completed",
            trigger=trigger,
            total=summary.total,
            checked=summary.checked,
            up=summary.up,
            down=summary.down,
            skipped=summary.skipped,
        )
        return summary

    async def _record(self, target: ProbeTarget, outcome: ProbeOutcome) -> None:
        """Persist one probe result: ledger first, then status and last check.

        Records are stamped with the moment the probe started, not the moment
        the slowest probe of the cycle finished.
        """
        now = outcome.checked_at or self._clock()
        old_status = await self._store.get_system_status(target.id)
        if old_status is None:
            logger.warning("system_vanished", system_id=target.id)
            return

        if old_status != outcome.status:
            await self._ledger.record_outcome(
                target.id, old_status, outcome.status, outcome.error, now
            )
            await self._store.set_system_status(target.id, outcome.status, now)
            logger.info(
                "system_status_changed",
                system_id=target.id,
                old_status=old_status,
                new_status=outcome.status,
                error=outcome.error,
                error_category=outcome.error_category.value if outcome.error_category else None,
            )
        else:
            await self._store.set_last_check(target.id, now)

    # ── Status ───────────────────────────────────────────────────────────────

    def status(self) -> SchedulerStatusResponse:
        next_run_time = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(JOB_ID)
            if job is not None:
                next_run_time = job.next_run_time

        return SchedulerStatusResponse(
            state=self._state,
            active=self.active,
            schedule=self.schedule_description,
            next_run_time=next_run_time,
            last_started_at=self._last_started_at,
            last_finished_at=self._last_finished_at,
            last_summary=self._last_summary,
            last_error=self._last_error,
            cycles_completed=self._cycles_completed,
            cycles_skipped=self._cycles_skipped,
            cycles_failed=self._cycles_failed,
        )
