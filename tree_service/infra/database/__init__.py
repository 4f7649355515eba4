"""Database infrastructure: engine, sessions, start-up and shutdown."""

from tree_service.infra.database.session import (
    close_database,
    configure_sqlite,
    get_async_session,
    get_engine,
    get_session_factory,
    init_database,
)

__all__ = [
    "close_database",
    "configure_sqlite",
    "get_async_session",
    "get_engine",
    "get_session_factory",
    "init_database",
]
