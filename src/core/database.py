"""Database configuration and session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from .settings import get_settings

logger = logging.getLogger(__name__)

# SQLAlchemy Base for ORM models
Base = declarative_base()

CALLER_SETTING = "app.current_user_id"
SET_CALLER_SQL = text(f"SELECT set_config('{CALLER_SETTING}', :user_id, true)")
LEDGER_WRITER_ROLE = "ledger_service_role"


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self):
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def engine(self) -> AsyncEngine:
        """Create the async engine on first use."""
        if self._engine is None:
            settings = get_settings()
            self._engine = create_async_engine(
                settings.async_database_url,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_recycle=settings.database_pool_recycle,
                echo=settings.debug,
            )
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_factory

    async def connect(self) -> None:
        """Fail fast at startup when the database is unreachable."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Failed to connect to database: {e}")
            raise
        logger.info("Database async connection established")

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session."""
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise


# Global database manager instance
_db_manager = DatabaseManager()


def get_database() -> DatabaseManager:
    """Get the database manager instance."""
    return _db_manager


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session for FastAPI."""
    async with get_database().get_session() as session:
        yield session


def is_postgresql(session: AsyncSession) -> bool:
    """True when the session is bound to a PostgreSQL engine."""
    bind = session.get_bind()
    return bind.dialect.name == "postgresql"


async def set_caller_context(session: AsyncSession, user_id: str) -> None:
    """Expose the caller to row-level security policies for the current transaction."""
    await session.execute(SET_CALLER_SQL, {"user_id": user_id})
    logger.debug(f"Set caller context to: {user_id}")


async def install_caller_context(session: AsyncSession, user_id: str) -> None:
    """Re-apply the caller context at the start of every transaction on ``session``.

    ``set_config(..., true)`` is transaction-local, and services commit more than
    once per request, so a single call at request start is not enough. Only
    PostgreSQL evaluates the policies; other dialects are left untouched.
    """
    if not is_postgresql(session):
        return

    @event.listens_for(session.sync_session, "after_begin")
    def _apply_caller(sync_session, transaction, connection):
        connection.execute(SET_CALLER_SQL, {"user_id": user_id})

    if session.in_transaction():
        await set_caller_context(session, user_id)


async def assume_ledger_writer(session: AsyncSession) -> None:
    """Run the rest of the current transaction as the ledger writer role.

    Request sessions log in as ``ledger_app_role``, which may only read the
    ledger tables. ``SET LOCAL`` ends with the transaction, so every ledger
    unit of work calls this again. Other dialects have no roles.
    """
    if not is_postgresql(session):
        return
    await session.execute(text(f"SET LOCAL ROLE {LEDGER_WRITER_ROLE}"))
