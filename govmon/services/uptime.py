"""Uptime aggregator — availability percentages and daily trends from downtime intervals."""

from collections.abc import Callable
from datetime import datetime, time, timedelta, timezone

import structlog

from govmon.core.clock import as_utc, minutes_between, utcnow
from govmon.core.database import DowntimeInterval
from govmon.core.exceptions import MonitorError, NotFoundError
from govmon.schemas.monitoring import (
    DowntimeIncident,
    TrendPoint,
    UptimeStatsResponse,
    UptimeTrendResponse,
)
from govmon.services.store import SystemStore

logger = structlog.get_logger()

MINUTES_PER_DAY = 1440


def uptime_percentage(downtime_minutes: int, window_minutes: int) -> float:
    """Clamp to [0, 100] and round to 2 decimal places."""
    if window_minutes <= 0:
        return 100.0
    pct = (window_minutes - downtime_minutes) / window_minutes * 100.0
    return round(max(0.0, min(100.0, pct)), 2)


def interval_minutes(interval: DowntimeInterval, now: datetime) -> int:
    """Minutes an interval contributes; open intervals run until ``now``."""
    end = as_utc(interval.up_time) if interval.up_time is not None else now
    return minutes_between(as_utc(interval.down_time), end)


class UptimeAggregator:
    def __init__(
        self,
        store: SystemStore,
        window_days: int = 30,
        recent_incidents_limit: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._window_days = window_days
        self._recent_limit = recent_incidents_limit
        self._clock = clock

    def _now(self, now: datetime | None) -> datetime:
        return as_utc(now) if now is not None else self._clock()

    async def compute_uptime(
        self,
        system_id: int,
        window_days: int | None = None,
        now: datetime | None = None,
    ) -> float:
        """Availability over the trailing window.

        Only intervals that started inside the window are counted; an outage
        that began before the window is ignored even if it is still open.
        """
        now = self._now(now)
        days = window_days or self._window_days
        since = now - timedelta(days=days)

        intervals = await self._store.list_intervals_in_window(system_id, since)
        if not intervals:
            return 100.0

        downtime = sum(interval_minutes(interval, now) for interval in intervals)
        return uptime_percentage(downtime, days * MINUTES_PER_DAY)

    async def compute_trend(
        self,
        system_id: int,
        days: int = 30,
        now: datetime | None = None,
    ) -> list[TrendPoint]:
        """One point per UTC calendar day, oldest first, ending today.

        Intervals are clipped to each day so an outage spanning midnight is
        split across both days.
        """
        now = self._now(now)
        today = now.date()
        first_day = today - timedelta(days=days - 1)
        range_start = datetime.combine(first_day, time.min, tzinfo=timezone.utc)

        intervals = await self._store.list_intervals_overlapping(system_id, range_start, now)
        spans = [
            (
                as_utc(interval.down_time),
                as_utc(interval.up_time) if interval.up_time is not None else now,
            )
            for interval in intervals
        ]

        points: list[TrendPoint] = []
        for offset in range(days):
            day = first_day + timedelta(days=offset)
            day_start = datetime.combine(day, time.min, tzinfo=timezone.utc)
            day_end = day_start + timedelta(days=1)

            downtime = 0
            for start, end in spans:
                clipped_start = max(start, day_start)
                clipped_end = min(end, day_end)
                if clipped_end > clipped_start:
                    downtime += minutes_between(clipped_start, clipped_end)
            downtime = min(downtime, MINUTES_PER_DAY)

            points.append(
                TrendPoint(
                    date=day.isoformat(),
                    uptime=uptime_percentage(downtime, MINUTES_PER_DAY),
                    downtime=downtime,
                )
            )
        return points

    async def get_uptime_trend(
        self, system_id: int, days: int = 30, now: datetime | None = None
    ) -> UptimeTrendResponse:
        if await self._store.get_system(system_id) is None:
            raise NotFoundError(f"System {system_id} not found.")
        points = await self.compute_trend(system_id, days, now)
        return UptimeTrendResponse(system_id=system_id, days=days, points=points)

    async def update_all_uptimes(self, now: datetime | None = None) -> dict[int, float]:
        """Recompute and persist the cached percentage for every system, one at a time."""
        now = self._now(now)
        results: dict[int, float] = {}

        for system_id in await self._store.list_all_system_ids():
            try:
                pct = await self.compute_uptime(system_id, now=now)
                await self._store.set_uptime_percentage(system_id, pct)
            except MonitorError as exc:
                logger.error("uptime_update_failed", system_id=system_id, error=exc.message)
                continue
            results[system_id] = pct

        logger.info("uptime_updated", systems=len(results))
        return results

    async def get_uptime_stats(
        self, system_id: int, now: datetime | None = None
    ) -> UptimeStatsResponse:
        """Summary of the trailing window for one system."""
        now = self._now(now)
        if await self._store.get_system(system_id) is None:
            raise NotFoundError(f"System {system_id} not found.")

        since = now - timedelta(days=self._window_days)
        intervals = await self._store.list_intervals_in_window(system_id, since)

        total_minutes = sum(interval_minutes(interval, now) for interval in intervals)
        pct = (
            uptime_percentage(total_minutes, self._window_days * MINUTES_PER_DAY)
            if intervals
            else 100.0
        )

        recent = [
            DowntimeIncident(
                id=interval.id,
                down_time=as_utc(interval.down_time),
                up_time=as_utc(interval.up_time) if interval.up_time is not None else None,
                duration_minutes=interval.duration_minutes,
                state_transition=interval.state_transition,
                error_message=interval.error_message,
            )
            for interval in intervals[: self._recent_limit]
        ]

        return UptimeStatsResponse(
            system_id=system_id,
            uptime_percentage=pct,
            total_incidents=len(intervals),
            total_downtime_minutes=total_minutes,
            total_downtime_hours=round(total_minutes / 60, 2),
            currently_down=any(interval.up_time is None for interval in intervals),
            recent_incidents=recent,
        )
