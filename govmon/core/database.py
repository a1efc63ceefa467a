import datetime
from pathlib import Path

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, event, func, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from govmon.config import settings


class Base(DeclarativeBase):
    pass


# ── Agencies ─────────────────────────────────────────────────────────────────


class Agency(Base):
    __tablename__ = "agencies"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now()
    )

    systems: Mapped[list["MonitoredSystem"]] = relationship(back_populates="agency")


# ── Monitored systems ────────────────────────────────────────────────────────


class MonitoredSystem(Base):
    __tablename__ = "systems"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    system_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    agency_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("agencies.id", ondelete="SET NULL"), nullable=True, index=True
    )
    url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="Up", server_default="Up")
    uptime_percentage: Mapped[float] = mapped_column(Float, default=100.0, server_default="100.0")
    last_check: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    agency: Mapped[Agency | None] = relationship(back_populates="systems")
    downtime_intervals: Mapped[list["DowntimeInterval"]] = relationship(
        back_populates="system", passive_deletes=True
    )


# ── Downtime intervals ───────────────────────────────────────────────────────


class DowntimeInterval(Base):
    __tablename__ = "system_downtime"
    __table_args__ = (
        # At most one open interval (up_time IS NULL) per system.
        Index(
            "ix_system_downtime_one_open",
            "system_id",
            unique=True,
            sqlite_where=text("up_time IS NULL"),
            postgresql_where=text("up_time IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    system_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("systems.id", ondelete="CASCADE"), index=True
    )
    down_time: Mapped[datetime.datetime] = mapped_column(DateTime, index=True)
    up_time: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    state_transition: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now()
    )

    system: Mapped[MonitoredSystem] = relationship(back_populates="downtime_intervals")


# ── Engine & Session ──────────────────────────────────────────────────────────


def enable_sqlite_foreign_keys(async_engine: AsyncEngine) -> None:
    """Turn on FK enforcement (and ON DELETE CASCADE) for SQLite connections."""
    if async_engine.dialect.name != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(settings.govmon_db_url, echo=False)
enable_sqlite_foreign_keys(engine)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """Ensure database schema is up to date via Alembic migrations."""
    from govmon.core.migrations import ensure_db_migrated

    database = engine.url.database
    if engine.dialect.name == "sqlite" and database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)

    await ensure_db_migrated()


async def close_db() -> None:
    """Dispose of the engine."""
    await engine.dispose()
