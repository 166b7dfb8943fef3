"""pytest fixtures for GENMEDIA backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- database_url: Function-scoped SQLite file database (or PostgreSQL via
  testcontainers when GENMEDIA_TEST_POSTGRES=1)
- session_factory: Function-scoped session factory with all tables created
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- settings / job_queue: Test configuration and the generation queue
- generation_factory: Persists Generation rows with sensible defaults
- test_client: AsyncClient bound to the app with test state injected
"""

import os

# Settings skip required-variable validation in the test environment
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("KIE_API_KEY", "test-kie-key")
os.environ.setdefault("PUBLIC_BASE_URL", "https://genmedia.test")

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import genmedia.models  # noqa: E402, F401
from genmedia.core.config import Settings  # noqa: E402
from genmedia.core.database import setup_db_session  # noqa: E402
from genmedia.models.generation import Generation, GenerationMode, GenerationStatus  # noqa: E402
from genmedia.services.job_queue import JobQueue  # noqa: E402
from genmedia.uow import create_uow_factory  # noqa: E402

USE_POSTGRES = os.environ.get("GENMEDIA_TEST_POSTGRES") == "1"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests.

    Autouse fixture ensures TZ=UTC is set before any test runs.
    """
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture(scope="session")
def postgres_container():
    """Provide a session-scoped PostgreSQL container (only when GENMEDIA_TEST_POSTGRES=1)."""
    if not USE_POSTGRES:
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_genmedia",
    ) as container:
        yield container


@pytest.fixture
def database_url(tmp_path, postgres_container) -> str:
    """Database URL for one test: a fresh SQLite file, or the shared container."""
    if postgres_container is not None:
        return postgres_container.get_connection_url(driver="psycopg")
    return f"sqlite+aiosqlite:///{tmp_path / 'genmedia.db'}"


@pytest_asyncio.fixture(scope="function")
async def session_factory(database_url) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory over a database with all tables created.

    Tables are dropped after each test for isolation.
    """
    factory = setup_db_session(database_url, pool_size=5)
    engine = factory.kw["bind"]

    if database_url.startswith("sqlite"):
        # WAL lets the worker, the queue and the test session read while another writes
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def settings(database_url) -> Settings:
    """Test settings: fast polling, short backoff, fixed provider endpoints."""
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        DATABASE_URL=database_url,
        KIE_API_KEY="test-kie-key",
        KIE_API_BASE_URL="https://kie.test/api/v1",
        PUBLIC_BASE_URL="https://genmedia.test",
        RUN_WORKER_IN_APP=False,
        WORKER_CONCURRENCY=1,
        POLL_INTERVAL_SECONDS=0.01,
        QUEUE_MAX_ATTEMPTS=3,
        QUEUE_BACKOFF_SECONDS=5.0,
        QUEUE_BACKOFF_MAX_SECONDS=300.0,
    )


@pytest.fixture
def job_queue(session_factory, settings) -> JobQueue:
    """Provide the generation queue bound to the test database."""
    return JobQueue.from_settings(session_factory, settings)


@pytest.fixture
def generation_factory(session_factory):
    """Persist a Generation row and return it.

    Example:
        generation = await generation_factory(status=GenerationStatus.PROCESSING)
    """

    async def _create(**overrides) -> Generation:
        values = {
            "prompt": "a red fox in snow",
            "mode": GenerationMode.IMAGE,
            "model": "seedream/4.5-text-to-image",
            "status": GenerationStatus.PENDING,
            "aspect_ratio": "1:1",
        }
        values.update(overrides)
        generation = Generation(**values)
        async with session_factory() as session:
            session.add(generation)
            await session.commit()
        return generation

    return _create


@pytest_asyncio.fixture
async def test_client(settings, session_factory, uow_factory, job_queue):
    """Provide AsyncClient for testing API endpoints with database access.

    ASGITransport does not run the lifespan, so the state it would build is
    injected into app.state directly (no worker pool is started).
    """
    from httpx import ASGITransport, AsyncClient

    from genmedia.app import app

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.job_queue = job_queue

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
