"""Async database engine and session management.

Provides:
    - _get_engine: The SQLAlchemy async engine (lazy singleton).
    - get_async_session: FastAPI dependency that yields a session per request.
    - session_scope: The same unit of work for code outside a request
      (background sweeps, the simulation).
    - enable_sqlite_savepoints: Makes SAVEPOINT work on aiosqlite.
    - init_db / close_db: Lifecycle hooks for FastAPI's lifespan.

Usage in FastAPI:
    @app.get("/escrows")
    async def list_escrows(session: AsyncSession = Depends(get_async_session)):
        ...
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from escrow_ledger.config import get_settings
from escrow_ledger.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)

# Module-level singletons (initialized lazily)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def enable_sqlite_savepoints(engine: AsyncEngine, immediate: bool = False) -> None:
    """Let SQLAlchemy own BEGIN on SQLite so nested savepoints behave.

    pysqlite (and aiosqlite on top of it) emits its own BEGIN lazily and
    breaks `session.begin_nested()`. Escrow creation and reference
    allocation rely on savepoints, so the SQLite engines used by tests and
    the simulation need this.

    With `immediate`, every transaction takes the write lock up front.
    SQLite has no row locks, and two deferred transactions that both read
    before writing fail with SQLITE_BUSY instead of waiting for each other.
    """
    begin = "BEGIN IMMEDIATE" if immediate else "BEGIN"

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql(begin)


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Build an async engine, applying pool settings only where they apply."""
    settings = get_settings()
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
        # A file database is shared between connections; memory is not.
        enable_sqlite_savepoints(engine, immediate=":memory:" not in url)
        return engine

    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_pre_ping=True,
        echo=echo,
    )


def _get_engine() -> AsyncEngine:
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(settings.database_url, echo=settings.db_echo_sql)
        logger.info(
            "database.engine_created",
            dialect=_engine.dialect.name,
            pool_size=settings.db_pool_size,
        )
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(_get_engine())
    return _session_factory


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    The session is automatically committed on success or rolled back on error.
    """
    factory = _get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work outside a request: commit on success, roll back on error."""
    factory = factory or _get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize the database engine and create tables if they don't exist.

    Called during FastAPI's lifespan startup. In production, use Alembic
    migrations instead of create_all.
    """
    from escrow_ledger.infrastructure.database.orm_models import Base

    engine = _get_engine()
    settings = get_settings()

    if settings.is_development:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def close_db() -> None:
    """Dispose of the database engine. Called during FastAPI's lifespan shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
