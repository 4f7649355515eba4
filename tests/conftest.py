"""Pytest configuration and shared fixtures.

Organization:
    - Settings Fixtures: isolated settings caches per test
    - Database Fixtures: SQLAlchemy engine, session and session factory
    - Tree Fixtures: seeded sample trees for every encoding

When adding new features:
    1. Add fixtures to the appropriate section below
    2. Use @pytest.fixture with clear docstrings
    3. Make fixtures composable (fixtures can depend on other fixtures)
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tests.fixtures import Category, Folder, Topic
from tests.utils import SAMPLE_EDGES, seed_tree
from tree_service.core.database.base import Base
from tree_service.core.settings import clear_all_caches
from tree_service.infra.database import configure_sqlite

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Generator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine

# Ensure tests run without external infrastructure
os.environ.setdefault("DB_DSN", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DB_STARTUP_RETRY_DELAY", "0")
os.environ.setdefault("LOG_CONSOLE_ENABLED", "false")
for _config_dir_env in ("DB_CONFIG_DIR", "LOGGING_CONFIG_DIR", "TREE_CONFIG_DIR"):
    os.environ.setdefault(_config_dir_env, "/nonexistent/tree-service-conf")


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def _fresh_settings() -> Generator[None]:
    """Reload settings from the environment for every test."""
    clear_all_caches()
    yield
    clear_all_caches()


# ============================================================================
# Database Fixtures
# ============================================================================


async def _create_engine(url: str) -> AsyncEngine:
    engine = create_async_engine(url, echo=False)
    configure_sqlite(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    """Create async SQLAlchemy engine with in-memory SQLite and all tables.

    Yields:
        Async SQLAlchemy engine; closure tables are included because
        ``tests.fixtures`` registers the tree events on import.
    """
    engine = await _create_engine("sqlite+aiosqlite:///:memory:")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
async def file_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """Engine on a SQLite file, for tests that need several connections."""
    engine = await _create_engine(f"sqlite+aiosqlite:///{tmp_path / 'trees.db'}")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(file_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """Provide a session; its transaction is rolled back after the test.

    Example:
        async def test_roots(db_session):
            roots = await TreeRepository(Category).find_roots(db_session)
    """
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


# ============================================================================
# Tree Fixtures
# ============================================================================


@pytest.fixture(params=[Category, Folder, Topic], ids=["closure-table", "nested-set", "materialized-path"])
def tree_model(request: pytest.FixtureRequest) -> type[Any]:
    """Each tree model in turn, one per encoding."""
    return request.param


@pytest.fixture
async def sample_tree(db_session: AsyncSession, tree_model: type[Any]) -> dict[str, Any]:
    """Seed the sample tree (A > B > D, A > C, E) for ``tree_model``.

    Returns:
        Name -> entity mapping (ids 1..5 in insertion order).
    """
    return await seed_tree(db_session, tree_model, SAMPLE_EDGES)
