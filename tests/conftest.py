import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from govmon.core.database import Base, enable_sqlite_foreign_keys
from govmon.services.ledger import DowntimeLedger
from govmon.services.probe import ProbeEngine
from govmon.services.scheduler import CycleScheduler
from govmon.services.store import SystemStore
from govmon.services.uptime import UptimeAggregator
from tests.mocks.fake_clock import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine for tests."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Async session bound to the in-memory engine."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def store(session_factory):
    return SystemStore(session_factory)


@pytest.fixture
def ledger(store):
    return DowntimeLedger(store)


@pytest.fixture
def aggregator(store, clock):
    return UptimeAggregator(store, window_days=30, recent_incidents_limit=5, clock=clock)


def _route_by_host(request: httpx.Request) -> httpx.Response:
    """Default probe transport: host name decides the answer."""
    host = request.url.host
    if host.startswith("refused"):
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request)
    if host.startswith("down"):
        return httpx.Response(503)
    if host.startswith("missing"):
        return httpx.Response(404)
    return httpx.Response(200, headers={"server": "fake"})


@pytest_asyncio.fixture
async def probe_client():
    async with httpx.AsyncClient(transport=httpx.MockTransport(_route_by_host)) as client:
        yield client


@pytest.fixture
def probe_engine(probe_client, clock):
    return ProbeEngine(probe_client, timeout=5.0, clock=clock)


@pytest_asyncio.fixture
async def scheduler(store, probe_engine, ledger, aggregator, clock):
    sched = CycleScheduler(store, probe_engine, ledger, aggregator, clock=clock)
    yield sched
    await sched.stop()


@pytest_asyncio.fixture
async def app_with_db(aggregator, scheduler):
    """FastAPI app wired to the in-memory test database."""
    from govmon.main import app

    app.state.aggregator = aggregator
    app.state.scheduler = scheduler
    yield app


@pytest_asyncio.fixture
async def client(app_with_db):
    transport = ASGITransport(app=app_with_db)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
