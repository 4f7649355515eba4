"""Database engine and session management.

The engine and session factory are built lazily from ``DatabaseSettings``
on first use, so importing this module never opens a connection and tests
can swap settings before anything is created.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, make_url, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tree_service.core.settings import get_db_settings
from tree_service.utils.retry import retry

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from tree_service.core.settings import DatabaseSettings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _safe_url(dsn: str) -> str:
    return make_url(dsn).render_as_string(hide_password=True)


def get_engine() -> AsyncEngine:
    """Return the process-wide async engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_db_settings()
        _engine = create_async_engine(settings.dsn, **settings.engine_kwargs())
        _instrument_engine(_engine, settings)
        logger.debug("Database engine created", extra={"url": _safe_url(settings.dsn)})
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory bound to ``get_engine()``.

    The factory doubles as the ``session_factory`` argument of
    ``TreeRepository`` so ``find_trees`` can open one session per root.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


# ============================================================================
# Engine instrumentation
# ============================================================================


def configure_sqlite(engine: AsyncEngine) -> None:
    """Make a SQLite engine honor foreign keys and SAVEPOINTs.

    Closure rows rely on ON DELETE CASCADE, which SQLite only enforces with
    ``PRAGMA foreign_keys``. The pysqlite driver also begins transactions on
    its own schedule, which breaks ``Session.begin_nested()``; transaction
    control is handed back to SQLAlchemy by emitting BEGIN ourselves.
    """
    sync_engine = engine.sync_engine
    if event.contains(sync_engine, "connect", _sqlite_connect):
        return
    event.listen(sync_engine, "connect", _sqlite_connect)
    event.listen(sync_engine, "begin", _sqlite_begin)


def _sqlite_connect(dbapi_conn: Any, connection_record: Any) -> None:
    _ = connection_record
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_begin(conn: Any) -> None:
    conn.exec_driver_sql("BEGIN")


def _instrument_engine(engine: AsyncEngine, settings: DatabaseSettings) -> None:
    """Attach connection and cursor listeners to the engine."""
    sync_engine = engine.sync_engine
    threshold = settings.slow_query_threshold

    if settings.is_sqlite:
        configure_sqlite(engine)

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _before_cursor_execute(
        conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: Any
    ) -> None:
        _ = conn, cursor, statement, parameters, executemany
        context._query_start_time = time.perf_counter()

    @event.listens_for(sync_engine, "after_cursor_execute")
    def _after_cursor_execute(
        conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: Any
    ) -> None:
        _ = conn, cursor, parameters
        start = getattr(context, "_query_start_time", None)
        if start is None:
            return
        duration = time.perf_counter() - start
        if duration < threshold:
            return

        # e.g. "DELETE FROM ..." -> "DELETE"
        operation = statement.lstrip().split(None, 1)[0].upper() if statement.strip() else "UNKNOWN"
        logger.warning(
            "Slow query: %s took %.3fs",
            operation,
            duration,
            extra={
                "operation": operation,
                "duration": duration,
                "threshold": threshold,
                "executemany": bool(executemany),
            },
        )


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """Get async database session.

    Yields:
        Database session that is automatically closed.

    Example:
        async with get_async_session() as session:
            roots = await repo.find_roots(session)
    """
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def _check_connection(create_schema: bool) -> None:
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        if create_schema:
            from tree_service.core.database import Base
            from tree_service.core.database.hierarchy import register_tree_events

            register_tree_events(Base)
            await conn.run_sync(Base.metadata.create_all)


async def init_database(*, create_schema: bool = False) -> None:
    """Initialize the database connection with retry logic.

    Attempts to connect with exponential backoff, using the start-up retry
    knobs from ``DatabaseSettings``. This is useful when the database is
    not immediately available (e.g. in containerized environments).

    Args:
        create_schema: Also register tree listeners and create every table
            known to ``Base.metadata`` (closure tables included). Meant for
            local runs and tests; production schemas come from migrations.

    Raises:
        RetryError: If unable to connect after all retry attempts.
    """
    settings = get_db_settings()
    safe_url = _safe_url(settings.dsn)
    logger.info(
        "Initializing database connection with retry",
        extra={
            "max_attempts": settings.startup_retry_attempts,
            "initial_delay": settings.startup_retry_delay,
        },
    )

    connect = retry(
        max_attempts=settings.startup_retry_attempts,
        initial_delay=settings.startup_retry_delay,
        max_delay=30.0,
        exponential_base=2.0,
        jitter=True,
        stop_after_delay=settings.startup_retry_timeout,
    )(_check_connection)

    try:
        await connect(create_schema)
    except Exception as e:
        logger.error(
            "Failed to connect to database",
            extra={"url": safe_url, "error": str(e)},
        )
        raise

    logger.info(
        "Database connection established successfully",
        extra={"url": safe_url, "driver": make_url(settings.dsn).drivername},
    )


async def close_database() -> None:
    """Dispose of the engine and forget the session factory.

    This should be called during application shutdown. A later
    ``get_engine()`` call builds a fresh engine from current settings.
    """
    global _engine, _session_factory
    if _engine is None:
        return

    logger.info("Closing database connection")
    engine, _engine, _session_factory = _engine, None, None
    await engine.dispose()
    logger.info("Database connection closed successfully")


__all__ = [
    "close_database",
    "configure_sqlite",
    "get_async_session",
    "get_engine",
    "get_session_factory",
    "init_database",
]
