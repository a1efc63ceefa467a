"""Persistence collaborator for the monitoring core — systems and downtime intervals."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from govmon.core.clock import minutes_between
from govmon.core.database import Agency, DowntimeInterval, MonitoredSystem
from govmon.core.exceptions import NotFoundError, StoreError
from govmon.services.probe import ProbeTarget

logger = structlog.get_logger()


class SystemStore:
    """Async SQLAlchemy store for monitored systems and their downtime intervals."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("store_operation_failed", operation=operation, error=str(exc))
            raise StoreError(
                f"Store operation '{operation}' failed.",
                details={"operation": operation},
            ) from exc

    # ── Systems ──────────────────────────────────────────────────────────────

    async def list_probeable_systems(self) -> list[ProbeTarget]:
        """Systems with a non-empty URL, in id order."""
        async with self._session("list_probeable_systems") as session:
            result = await session.execute(
                select(
                    MonitoredSystem.id,
                    MonitoredSystem.name,
                    MonitoredSystem.url,
                    MonitoredSystem.status,
                )
                .where(
                    MonitoredSystem.url.is_not(None),
                    func.trim(MonitoredSystem.url) != "",
                )
                .order_by(MonitoredSystem.id)
            )
            return [
                ProbeTarget(id=row.id, name=row.name, url=row.url, status=row.status)
                for row in result
            ]

    async def list_all_system_ids(self) -> list[int]:
        async with self._session("list_all_system_ids") as session:
            result = await session.execute(select(MonitoredSystem.id).order_by(MonitoredSystem.id))
            return list(result.scalars().all())

    async def list_systems(self) -> list[MonitoredSystem]:
        async with self._session("list_systems") as session:
            result = await session.execute(select(MonitoredSystem).order_by(MonitoredSystem.id))
            return list(result.scalars().all())

    async def get_system(self, system_id: int) -> MonitoredSystem | None:
        async with self._session("get_system") as session:
            return await session.get(MonitoredSystem, system_id)

    async def get_system_status(self, system_id: int) -> str | None:
        async with self._session("get_system_status") as session:
            return await session.scalar(
                select(MonitoredSystem.status).where(MonitoredSystem.id == system_id)
            )

    async def set_system_status(self, system_id: int, status: str, last_check: datetime) -> bool:
        async with self._session("set_system_status") as session:
            result = await session.execute(
                update(MonitoredSystem)
                .where(MonitoredSystem.id == system_id)
                .values(status=status, last_check=last_check)
            )
            await session.commit()
            return result.rowcount > 0

    async def set_last_check(self, system_id: int, last_check: datetime) -> bool:
        async with self._session("set_last_check") as session:
            result = await session.execute(
                update(MonitoredSystem)
                .where(MonitoredSystem.id == system_id)
                .values(last_check=last_check)
            )
            await session.commit()
            return result.rowcount > 0

    async def set_uptime_percentage(self, system_id: int, percentage: float) -> bool:
        async with self._session("set_uptime_percentage") as session:
            result = await session.execute(
                update(MonitoredSystem)
                .where(MonitoredSystem.id == system_id)
                .values(uptime_percentage=percentage)
            )
            await session.commit()
            return result.rowcount > 0

    async def create_system(
        self,
        name: str,
        url: str | None = None,
        system_type: str | None = None,
        agency_name: str | None = None,
        status: str = "Up",
    ) -> MonitoredSystem:
        """Register a system, creating its agency by name if needed."""
        async with self._session("create_system") as session:
            agency_id = None
            if agency_name:
                agency = await session.scalar(select(Agency).where(Agency.name == agency_name))
                if agency is None:
                    agency = Agency(name=agency_name)
                    session.add(agency)
                    await session.flush()
                agency_id = agency.id

            system = MonitoredSystem(
                name=name,
                url=url or None,
                system_type=system_type,
                agency_id=agency_id,
                status=status,
            )
            session.add(system)
            await session.commit()
            await session.refresh(system)
            return system

    # ── Downtime intervals ───────────────────────────────────────────────────

    async def get_open_interval(self, system_id: int) -> DowntimeInterval | None:
        async with self._session("get_open_interval") as session:
            return await session.scalar(
                select(DowntimeInterval)
                .where(
                    DowntimeInterval.system_id == system_id,
                    DowntimeInterval.up_time.is_(None),
                )
                .order_by(DowntimeInterval.down_time.desc())
                .limit(1)
            )

    async def insert_open_interval(
        self,
        system_id: int,
        start: datetime,
        transition: str,
        error_message: str | None,
    ) -> DowntimeInterval | None:
        """Open an interval. Returns None if the system already has an open one.

        Raises NotFoundError when the system row is gone (deleted mid-cycle).
        """
        async with self._session("insert_open_interval") as session:
            try:
                async with session.begin():
                    if await session.get(MonitoredSystem, system_id) is None:
                        raise NotFoundError(
                            f"System {system_id} no longer exists.",
                            details={"system_id": system_id},
                        )
                    existing = await session.scalar(
                        select(DowntimeInterval.id)
                        .where(
                            DowntimeInterval.system_id == system_id,
                            DowntimeInterval.up_time.is_(None),
                        )
                        .limit(1)
                    )
                    if existing is not None:
                        logger.warning(
                            "open_interval_exists",
                            system_id=system_id,
                            interval_id=existing,
                        )
                        return None

                    interval = DowntimeInterval(
                        system_id=system_id,
                        down_time=start,
                        state_transition=transition,
                        error_message=error_message,
                    )
                    session.add(interval)
            except IntegrityError as exc:
                # Lost a race: either another open row landed first or the system was deleted
                if await session.get(MonitoredSystem, system_id, populate_existing=True) is None:
                    logger.warning("open_interval_rejected", system_id=system_id, reason="system_missing")
                    raise NotFoundError(
                        f"System {system_id} no longer exists.",
                        details={"system_id": system_id},
                    ) from exc
                logger.warning(
                    "open_interval_rejected",
                    system_id=system_id,
                    reason="open_interval_exists",
                    error=str(exc.orig),
                )
                return None
            return interval

    async def close_latest_open_interval(
        self, system_id: int, end: datetime
    ) -> DowntimeInterval | None:
        """Close the newest open interval in a single transaction.

        The UPDATE is guarded by ``up_time IS NULL`` so a concurrent close or a
        retried call cannot close the same interval twice.
        """
        async with self._session("close_latest_open_interval") as session:
            async with session.begin():
                interval = await session.scalar(
                    select(DowntimeInterval)
                    .where(
                        DowntimeInterval.system_id == system_id,
                        DowntimeInterval.up_time.is_(None),
                    )
                    .order_by(DowntimeInterval.down_time.desc())
                    .limit(1)
                    .with_for_update()
                )
                if interval is None:
                    return None

                duration = minutes_between(interval.down_time, end)
                result = await session.execute(
                    update(DowntimeInterval)
                    .where(
                        DowntimeInterval.id == interval.id,
                        DowntimeInterval.up_time.is_(None),
                    )
                    .values(up_time=end, duration_minutes=duration)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None

                await session.refresh(interval)
            return interval

    async def list_intervals_in_window(
        self, system_id: int, since: datetime
    ) -> list[DowntimeInterval]:
        """Intervals that started at or after ``since``, newest first."""
        async with self._session("list_intervals_in_window") as session:
            result = await session.execute(
                select(DowntimeInterval)
                .where(
                    DowntimeInterval.system_id == system_id,
                    DowntimeInterval.down_time >= since,
                )
                .order_by(DowntimeInterval.down_time.desc())
            )
            return list(result.scalars().all())

    async def list_intervals_overlapping(
        self, system_id: int, start: datetime, end: datetime
    ) -> list[DowntimeInterval]:
        """Intervals that intersect [start, end), oldest first."""
        async with self._session("list_intervals_overlapping") as session:
            result = await session.execute(
                select(DowntimeInterval)
                .where(
                    DowntimeInterval.system_id == system_id,
                    DowntimeInterval.down_time < end,
                    (DowntimeInterval.up_time.is_(None)) | (DowntimeInterval.up_time > start),
                )
                .order_by(DowntimeInterval.down_time)
            )
            return list(result.scalars().all())
