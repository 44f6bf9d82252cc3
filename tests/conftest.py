"""Pytest configuration and fixtures."""

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["EVENT_BUS_TYPE"] = "mock"

import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.core.database import Base, get_db_session
from src.core.settings import Settings
from src.main import app
from src.services.credit_costs import seed_default_costs
from src.services.events import EventPublisher


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A file-backed SQLite database per test.

    ``BEGIN IMMEDIATE`` takes the database write lock at the start of every
    transaction, which stands in for PostgreSQL's row lock so that concurrent
    units of work really serialize.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(test_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(test_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Create a test database session with the default cost catalog."""
    async with session_factory() as session:
        await seed_default_costs(session)
        yield session


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def events():
    """Mock publisher; published events are kept on ``events.published``."""
    return EventPublisher()


@pytest_asyncio.fixture
async def client(session_factory, db_session):
    """Create a test client; each request gets its own session, like production."""

    async def get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = get_test_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def owner_id():
    return uuid.uuid4()


@pytest.fixture
def other_user_id():
    return uuid.uuid4()
