"""Downtime ledger — turns status transitions into open/closed downtime intervals."""

from datetime import datetime
from enum import Enum

import structlog

from govmon.core.exceptions import NotFoundError
from govmon.schemas.monitoring import SystemStatus
from govmon.services.store import SystemStore

logger = structlog.get_logger()


class LedgerAction(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"
    NONE = "none"
    SKIPPED = "skipped"


def transition_label(old_status: str | None, new_status: str) -> str:
    return f"{old_status or 'Unknown'} → {new_status}"


class DowntimeLedger:
    """Records downtime intervals for Up/Down transitions.

    A transition into Down opens an interval; Down back to Up closes the most
    recent open one. Every other pair leaves the ledger untouched.
    """

    def __init__(self, store: SystemStore):
        self._store = store

    async def record_outcome(
        self,
        system_id: int,
        old_status: str | None,
        new_status: str,
        error_detail: str | None,
        now: datetime,
    ) -> LedgerAction:
        if old_status == new_status:
            return LedgerAction.NONE

        if new_status == SystemStatus.DOWN.value:
            return await self._open(system_id, old_status, error_detail, now)

        if old_status == SystemStatus.DOWN.value and new_status == SystemStatus.UP.value:
            return await self._close(system_id, now)

        return LedgerAction.NONE

    async def _open(
        self, system_id: int, old_status: str | None, error_detail: str | None, now: datetime
    ) -> LedgerAction:
        label = transition_label(old_status, SystemStatus.DOWN.value)
        try:
            interval = await self._store.insert_open_interval(system_id, now, label, error_detail)
        except NotFoundError:
            logger.warning(
                "downtime_open_refused",
                system_id=system_id,
                reason="system no longer exists",
            )
            return LedgerAction.SKIPPED
        if interval is None:
            logger.error(
                "downtime_open_refused",
                system_id=system_id,
                reason="open interval already exists",
            )
            return LedgerAction.SKIPPED

        logger.info(
            "downtime_opened",
            system_id=system_id,
            interval_id=interval.id,
            transition=label,
            error=error_detail,
        )
        return LedgerAction.OPENED

    async def _close(self, system_id: int, now: datetime) -> LedgerAction:
        interval = await self._store.close_latest_open_interval(system_id, now)
        if interval is None:
            logger.error(
                "downtime_close_without_open_interval",
                system_id=system_id,
            )
            return LedgerAction.SKIPPED

        logger.info(
            "downtime_closed",
            system_id=system_id,
            interval_id=interval.id,
            duration_minutes=interval.duration_minutes,
        )
        return LedgerAction.CLOSED
