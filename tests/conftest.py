"""
Shared pytest fixtures for the relayout tests.

This module provides:
- Sample data fixtures (job_id, source_rows)
- Engine fixtures (engine: an in-memory engine holding a five-partition
  source and an empty target with a different layout)
- Configuration fixtures (fast_config, job_spec) tuned so control loops
  finish in milliseconds
- Store fixtures (job_repo, recording_job_repo, ledger)
- Controller fixture (controller over the recording repository)
- SQLite fixtures (sqlite_connection with the relayout schema applied)

All fixtures are function scoped; every test gets fresh state.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any
from uuid import UUID, uuid4

import aiosqlite
import pytest
import pytest_asyncio

from relayout.controller import MigrationController
from relayout.engine.in_memory import InMemoryStorageEngine
from relayout.models import JobSpec, MigrationConfig
from relayout.repositories import InMemoryJobRepository, InMemoryProgressLedger
from relayout.schema import get_schema
from tests.fixtures import SOURCE, TARGET, RecordingJobRepository, fast_config_dict, make_rows

# ============================================================================
# Pytest configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


# ============================================================================
# Sample data fixtures
# ============================================================================


@pytest.fixture
def job_id() -> UUID:
    """Provide a unique job ID for testing."""
    return uuid4()


@pytest.fixture
def source_rows() -> list[dict[str, Any]]:
    """Rows of the five-partition source dataset."""
    return make_rows()


# ============================================================================
# Engine fixtures
# ============================================================================


@pytest.fixture
def engine(source_rows: list[dict[str, Any]]) -> InMemoryStorageEngine:
    """
    Provide an in-memory engine with a source and an empty target.

    The source is partitioned by ``day`` (p1..p5); the target uses a
    different layout (partitioned by ``id`` parity).
    """
    engine = InMemoryStorageEngine(enable_tracing=False)
    engine.create_dataset(SOURCE, rows=source_rows, partition_by=lambda row: row["day"])
    engine.create_dataset(TARGET, partition_by=lambda row: row["id"] % 2)
    return engine


# ============================================================================
# Configuration fixtures
# ============================================================================


@pytest.fixture
def fast_config() -> MigrationConfig:
    """MigrationConfig with millisecond backoffs and polling."""
    return MigrationConfig.from_dict(fast_config_dict())


@pytest.fixture
def job_spec(job_id: UUID) -> JobSpec:
    """JobSpec migrating the fixture source into the fixture target."""
    return JobSpec(
        source=SOURCE,
        target=TARGET,
        job_id=job_id,
        created_by="tests",
        config=fast_config_dict(),
    )


# ============================================================================
# Store fixtures
# ============================================================================


@pytest.fixture
def job_repo() -> InMemoryJobRepository:
    """Provide a fresh in-memory job repository."""
    return InMemoryJobRepository(enable_tracing=False)


@pytest.fixture
def recording_job_repo() -> RecordingJobRepository:
    """In-memory job repository recording every status change."""
    return RecordingJobRepository()


@pytest.fixture
def ledger() -> InMemoryProgressLedger:
    """Provide a fresh in-memory progress ledger."""
    return InMemoryProgressLedger(enable_tracing=False)


# ============================================================================
# Controller fixtures
# ============================================================================


@pytest_asyncio.fixture
async def controller(
    engine: InMemoryStorageEngine,
    recording_job_repo: RecordingJobRepository,
    ledger: InMemoryProgressLedger,
) -> AsyncGenerator[MigrationController, None]:
    """
    Controller over the in-memory stack.

    Uses the recording job repository so tests can assert on status
    history. Control loops still running after the test are stopped.
    """
    controller = MigrationController(engine, recording_job_repo, ledger, enable_tracing=False)
    yield controller
    await controller.shutdown()


# ============================================================================
# SQLite fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[aiosqlite.Connection, None]:
    """
    Provide an aiosqlite connection to an in-memory database.

    The relayout schema is applied; the connection is closed after the test.

    Yields:
        aiosqlite.Connection: Raw database connection
    """
    conn = await aiosqlite.connect(":memory:")
    await conn.executescript(get_schema("sqlite"))
    yield conn
    await conn.close()
