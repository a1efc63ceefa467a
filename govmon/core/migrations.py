"""Schema management for the monitoring database.

Alembic owns the schema history. On startup the database is brought to head
and then the open-interval guard is checked: the downtime ledger relies on
the partial unique index ``ix_system_downtime_one_open`` to refuse a second
open interval for a system, so a database that lost it (hand-edited, restored
from a dump, or created by an older tool) gets it back before the scheduler
starts. If rows already break the rule the index cannot be built and startup
fails with a StoreError naming the affected systems.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path

import structlog
from alembic import command
from alembic.config import Config
from sqlalchemy import func, inspect, select, text

from govmon.core.database import Base, DowntimeInterval, engine
from govmon.core.exceptions import StoreError

logger = structlog.get_logger()

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

OPEN_INTERVAL_INDEX = "ix_system_downtime_one_open"
LEDGER_TABLE = DowntimeInterval.__tablename__


def _alembic_cfg() -> Config:
    """Build Alembic Config with absolute paths (cwd-independent)."""
    cfg = Config(str(_PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    return cfg


@dataclass(frozen=True)
class SchemaState:
    tables: frozenset[str]
    revision: str | None

    @property
    def tracked(self) -> bool:
        return "alembic_version" in self.tables

    @property
    def missing_tables(self) -> set[str]:
        return set(Base.metadata.tables) - self.tables

    @property
    def empty(self) -> bool:
        return not (set(Base.metadata.tables) & self.tables)


def _read_state(connection) -> SchemaState:
    tables = frozenset(inspect(connection).get_table_names())
    revision = None
    if "alembic_version" in tables:
        row = connection.execute(text("SELECT version_num FROM alembic_version")).first()
        revision = row[0] if row else None
    return SchemaState(tables=tables, revision=revision)


def _open_interval_index():
    return next(ix for ix in DowntimeInterval.__table__.indexes if ix.name == OPEN_INTERVAL_INDEX)


def _ensure_open_interval_guard(connection) -> bool:
    """Make sure the one-open-interval index exists and is unique.

    Returns True when the index had to be (re)built.
    """
    indexes = {ix["name"]: ix for ix in inspect(connection).get_indexes(LEDGER_TABLE)}
    existing = indexes.get(OPEN_INTERVAL_INDEX)
    if existing is not None and existing["unique"]:
        return False

    duplicates = connection.execute(
        select(DowntimeInterval.system_id)
        .where(DowntimeInterval.up_time.is_(None))
        .group_by(DowntimeInterval.system_id)
        .having(func.count() > 1)
    ).scalars().all()
    if duplicates:
        logger.error("open_interval_guard_blocked", system_ids=list(duplicates))
        raise StoreError(
            "Several open downtime intervals exist for the same system; close the extra ones before starting.",
            details={"operation": "ensure_open_interval_guard", "system_ids": list(duplicates)},
        )

    if existing is not None:
        # Same name but not unique: replace it.
        connection.execute(text(f"DROP INDEX {OPEN_INTERVAL_INDEX}"))
    _open_interval_index().create(connection)
    return True


async def ensure_db_migrated() -> None:
    """Bring the database to the head revision and verify the ledger guard.

    * Empty database: ``create_all`` then stamp head.
    * Untracked database (tables made outside Alembic): create whatever tables
      are missing, e.g. a roster that predates downtime tracking, then stamp.
    * Tracked database: ``alembic upgrade head``.
    """
    async with engine.begin() as conn:
        state = await conn.run_sync(_read_state)

    if state.tracked:
        logger.info("migrations_upgrade", current_rev=state.revision)
        await asyncio.to_thread(command.upgrade, _alembic_cfg(), "head")
    else:
        if state.empty:
            logger.info("migrations_fresh_db", action="create_all_and_stamp")
        else:
            logger.info(
                "migrations_untracked_db",
                action="create_missing_and_stamp",
                missing_tables=sorted(state.missing_tables),
            )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await asyncio.to_thread(command.stamp, _alembic_cfg(), "head")

    async with engine.begin() as conn:
        rebuilt = await conn.run_sync(_ensure_open_interval_guard)
    if rebuilt:
        logger.warning("open_interval_guard_rebuilt", index=OPEN_INTERVAL_INDEX)
