"""
Unit tests for PartitionEnumerator.

Tests cover:
- One pending unit per source partition, largest first
- Unit ids are the engine's partition ids and stay stable across calls
- Unpartitioned and empty sources
- Engine errors and inconsistent metadata raise EnumerationError
"""

from unittest.mock import AsyncMock
from uuid import UUID

import pytest

from relayout.engine.in_memory import UNPARTITIONED_ID, InMemoryStorageEngine
from relayout.enumerator import PartitionEnumerator
from relayout.exceptions import EngineError, EnumerationError
from relayout.models import PartitionInfo, UnitState
from tests.fixtures import PARTITION_SIZES, SOURCE


@pytest.fixture
def enumerator(engine: InMemoryStorageEngine) -> PartitionEnumerator:
    return PartitionEnumerator(engine, enable_tracing=False)


class TestEnumerate:
    """Tests for PartitionEnumerator.enumerate."""

    @pytest.mark.asyncio
    async def test_one_pending_unit_per_partition(
        self, enumerator: PartitionEnumerator, job_id: UUID
    ) -> None:
        units = await enumerator.enumerate(job_id, SOURCE)

        assert {unit.unit_id for unit in units} == set(PARTITION_SIZES)
        assert all(unit.state == UnitState.PENDING for unit in units)
        assert all(unit.attempt_count == 0 for unit in units)
        assert all(unit.job_id == job_id for unit in units)

    @pytest.mark.asyncio
    async def test_largest_partitions_first(
        self, enumerator: PartitionEnumerator, job_id: UUID
    ) -> None:
        """Units are ordered by size on disk, positions follow that order."""
        units = await enumerator.enumerate(job_id, SOURCE)

        assert [unit.unit_id for unit in units] == ["p2", "p4", "p1", "p5", "p3"]
        assert [unit.position for unit in units] == [0, 1, 2, 3, 4]
        sizes = [unit.byte_estimate for unit in units]
        assert sizes == sorted(sizes, reverse=True)

    @pytest.mark.asyncio
    async def test_estimates_and_partition_value(
        self, enumerator: PartitionEnumerator, job_id: UUID
    ) -> None:
        units = {unit.unit_id: unit for unit in await enumerator.enumerate(job_id, SOURCE)}

        assert units["p2"].row_estimate == 5
        assert units["p2"].partition_value == "'p2'"

    @pytest.mark.asyncio
    async def test_ids_stable_across_calls(
        self, enumerator: PartitionEnumerator, job_id: UUID
    ) -> None:
        first = await enumerator.enumerate(job_id, SOURCE)
        second = await enumerator.enumerate(job_id, SOURCE)

        assert [u.unit_id for u in first] == [u.unit_id for u in second]

    @pytest.mark.asyncio
    async def test_equal_sizes_ordered_by_id(self, job_id: UUID) -> None:
        engine = AsyncMock()
        engine.list_partitions.return_value = [
            PartitionInfo("b", "'b'", rows=1, bytes_on_disk=10),
            PartitionInfo("a", "'a'", rows=1, bytes_on_disk=10),
        ]
        enumerator = PartitionEnumerator(engine, enable_tracing=False)

        units = await enumerator.enumerate(job_id, SOURCE)

        assert [unit.unit_id for unit in units] == ["a", "b"]


class TestEdgeCases:
    """Unpartitioned and empty sources."""

    @pytest.mark.asyncio
    async def test_unpartitioned_source_is_one_unit(self, job_id: UUID) -> None:
        engine = InMemoryStorageEngine(enable_tracing=False)
        engine.create_dataset("db.flat", rows=[{"id": 1}, {"id": 2}])
        enumerator = PartitionEnumerator(engine, enable_tracing=False)

        units = await enumerator.enumerate(job_id, "db.flat")

        assert len(units) == 1
        assert units[0].unit_id == UNPARTITIONED_ID
        assert units[0].row_estimate == 2

    @pytest.mark.asyncio
    async def test_empty_source_has_no_units(self, job_id: UUID) -> None:
        engine = InMemoryStorageEngine(enable_tracing=False)
        engine.create_dataset("db.empty", partition_by=lambda row: row["day"])
        enumerator = PartitionEnumerator(engine, enable_tracing=False)

        assert await enumerator.enumerate(job_id, "db.empty") == []


class TestErrors:
    """Enumeration failures."""

    @pytest.mark.asyncio
    async def test_missing_source(self, enumerator: PartitionEnumerator, job_id: UUID) -> None:
        with pytest.raises(EnumerationError) as exc_info:
            await enumerator.enumerate(job_id, "db.missing")

        assert exc_info.value.source == "db.missing"
        assert exc_info.value.job_id == job_id
        assert "doesn't exist" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_engine_error_wrapped(
        self, engine: InMemoryStorageEngine, enumerator: PartitionEnumerator, job_id: UUID
    ) -> None:
        engine.fail_next("list_partitions", error=EngineError("Code: 159. Timeout exceeded"))

        with pytest.raises(EnumerationError, match="Timeout exceeded") as exc_info:
            await enumerator.enumerate(job_id, SOURCE)

        assert isinstance(exc_info.value.__cause__, EngineError)

    @pytest.mark.asyncio
    async def test_duplicate_partition_ids(self, job_id: UUID) -> None:
        """Inconsistent metadata is refused rather than planned twice."""
        engine = AsyncMock()
        engine.list_partitions.return_value = [
            PartitionInfo("202401", "202401", rows=1, bytes_on_disk=10),
            PartitionInfo("202401", "202401", rows=2, bytes_on_disk=20),
        ]
        enumerator = PartitionEnumerator(engine, enable_tracing=False)

        with pytest.raises(EnumerationError, match="reported twice"):
            await enumerator.enumerate(job_id, SOURCE)
