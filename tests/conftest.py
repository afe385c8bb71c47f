"""
Shared pytest fixtures for the beehive tests.

This module provides:
- SQLite file databases for source and destination with the clinic schema
  (source_engine, dest_engine, src, dst)
- Catalogue and plan fixtures (catalogue, plan)
- Identity map and repository fixtures (store, memory_repo, merge_repo)
- A recording tracer (mock_tracer)

Database fixtures use file databases in ``tmp_path`` so parallel workers
can open their own connections; the busy timeout lets concurrent writers
queue instead of failing.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from beehive.catalogue import PhasePlan, SchemaCatalogue
from beehive.identity_map import IdentityMapStore
from beehive.observability import MockTracer
from beehive.repositories import InMemoryMergeStateRepository, SQLAlchemyMergeStateRepository
from tests.fixtures import SOURCE_ID, build_catalogue, build_plan, create_schema, sqlite_engine

# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def source_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Source database with the clinic schema and no rows."""
    engine = sqlite_engine(tmp_path / "source.db")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def dest_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Destination database with the clinic schema and no rows."""
    engine = sqlite_engine(tmp_path / "destination.db")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def src(source_engine: AsyncEngine) -> AsyncGenerator[AsyncConnection, None]:
    async with source_engine.connect() as conn:
        yield conn


@pytest_asyncio.fixture
async def dst(dest_engine: AsyncEngine) -> AsyncGenerator[AsyncConnection, None]:
    async with dest_engine.connect() as conn:
        yield conn


@pytest_asyncio.fixture
async def merge_repo(dst: AsyncConnection) -> SQLAlchemyMergeStateRepository:
    """Merge state repository on ``dst`` with its tables created and committed."""
    repo = SQLAlchemyMergeStateRepository(dst, SOURCE_ID, enable_tracing=False)
    async with dst.begin():
        await repo.create_tables()
    return repo


# =============================================================================
# Model Fixtures
# =============================================================================


@pytest.fixture
def catalogue() -> SchemaCatalogue:
    return build_catalogue()


@pytest.fixture
def plan() -> PhasePlan:
    return build_plan()


@pytest.fixture
def store() -> IdentityMapStore:
    """Identity map store with the admin user seeded."""
    return IdentityMapStore(seed_mappings={"users": {1: 1}})


@pytest.fixture
def memory_repo() -> InMemoryMergeStateRepository:
    return InMemoryMergeStateRepository(SOURCE_ID)


@pytest.fixture
def mock_tracer() -> MockTracer:
    return MockTracer()
