"""
Unit tests for UnitExecutor.

Tests cover:
- Copy and verification of one unit
- Idempotence: leftovers of a previous attempt are cleared before recopying
- Row count and checksum mismatches are reported, never accepted
- Engine errors become failed outcomes with their classification
- Only the unit's own rows are touched
"""

from uuid import UUID

import pytest

from relayout.engine.in_memory import InMemoryStorageEngine
from relayout.exceptions import EngineError
from relayout.executor import UnitExecutor
from relayout.models import MigrationUnit, UnitState
from tests.fixtures import SOURCE, TARGET

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def executor(engine: InMemoryStorageEngine) -> UnitExecutor:
    return UnitExecutor(engine, SOURCE, TARGET, enable_tracing=False)


def make_unit(job_id: UUID, partition: str = "p2", attempt_count: int = 1) -> MigrationUnit:
    return MigrationUnit(
        job_id=job_id,
        unit_id=partition,
        position=0,
        partition_value=f"'{partition}'",
        state=UnitState.IN_FLIGHT,
        attempt_count=attempt_count,
    )


def target_days(engine: InMemoryStorageEngine) -> list[str]:
    return sorted(row["day"] for row in engine.rows(TARGET))


# =============================================================================
# Tests
# =============================================================================


class TestSuccessfulCopy:
    """Tests for a clean copy."""

    @pytest.mark.asyncio
    async def test_copies_partition(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        outcome = await executor.execute(make_unit(job_id, "p2"))

        assert outcome.success
        assert outcome.unit_id == "p2"
        assert outcome.source_rows == 5
        assert outcome.target_rows == 5
        assert outcome.source_checksum == outcome.target_checksum
        assert outcome.cleared_rows == 0
        assert target_days(engine) == ["p2"] * 5

    @pytest.mark.asyncio
    async def test_source_untouched(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        before = engine.rows(SOURCE)

        await executor.execute(make_unit(job_id, "p4"))

        assert engine.rows(SOURCE) == before

    @pytest.mark.asyncio
    async def test_only_unit_rows_touched(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        """Copying a second unit leaves the first unit's rows alone."""
        await executor.execute(make_unit(job_id, "p1"))
        await executor.execute(make_unit(job_id, "p3"))

        assert target_days(engine) == ["p1", "p1", "p1", "p3"]

    @pytest.mark.asyncio
    async def test_checksums_skipped_when_disabled(
        self, engine: InMemoryStorageEngine, job_id: UUID
    ) -> None:
        executor = UnitExecutor(engine, SOURCE, TARGET, verify_checksum=False, enable_tracing=False)

        outcome = await executor.execute(make_unit(job_id))

        assert outcome.success
        assert outcome.source_checksum is None
        assert outcome.target_checksum is None


class TestIdempotence:
    """Re-executing a unit converges to the same target state."""

    @pytest.mark.asyncio
    async def test_reexecution_does_not_duplicate(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        await executor.execute(make_unit(job_id, "p2"))
        outcome = await executor.execute(make_unit(job_id, "p2", attempt_count=2))

        assert outcome.success
        assert outcome.cleared_rows == 5
        assert target_days(engine) == ["p2"] * 5

    @pytest.mark.asyncio
    async def test_partial_copy_cleared(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        """Rows left by an interrupted attempt are deleted before the recopy."""
        engine.get_dataset(TARGET).rows.append({"day": "p2", "id": 4, "value": "v4"})

        outcome = await executor.execute(make_unit(job_id, "p2"))

        assert outcome.success
        assert outcome.cleared_rows == 1
        assert len(engine.operation_calls("delete_partition")) == 1
        assert target_days(engine) == ["p2"] * 5

    @pytest.mark.asyncio
    async def test_no_delete_when_target_clean(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        await executor.execute(make_unit(job_id, "p5"))

        assert engine.operation_calls("delete_partition") == []


class TestVerificationFailures:
    """Mismatches are reported as failed outcomes."""

    @pytest.mark.asyncio
    async def test_row_count_mismatch(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        engine.corrupt_copies("p2")

        outcome = await executor.execute(make_unit(job_id, "p2"))

        assert not outcome.success
        assert outcome.retryable
        assert outcome.error_code == "INTEGRITY_MISMATCH"
        assert outcome.source_rows == 5
        assert outcome.target_rows == 4
        assert "Row count mismatch" in (outcome.error or "")

    @pytest.mark.asyncio
    async def test_checksum_mismatch(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        """Same row count but different content is still a mismatch."""
        # A stale row survives the clear and the copy loses the real one.
        engine.get_dataset(TARGET).rows.append({"day": "p3", "id": 999, "value": "stale"})
        engine.corrupt_copies("p3")
        original_delete = engine.delete_partition

        async def keep_rows(dataset, predicate):
            engine.calls.append(("delete_partition", dataset, predicate.partition_id))

        engine.delete_partition = keep_rows  # type: ignore[method-assign]
        try:
            outcome = await executor.execute(make_unit(job_id, "p3"))
        finally:
            engine.delete_partition = original_delete  # type: ignore[method-assign]

        assert not outcome.success
        assert outcome.source_rows == outcome.target_rows == 1
        assert outcome.source_checksum != outcome.target_checksum
        assert outcome.error_code == "INTEGRITY_MISMATCH"
        assert "Checksum mismatch" in (outcome.error or "")

    @pytest.mark.asyncio
    async def test_recopy_after_mismatch_succeeds(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        engine.corrupt_copies("p4")

        first = await executor.execute(make_unit(job_id, "p4"))
        second = await executor.execute(make_unit(job_id, "p4", attempt_count=2))

        assert not first.success
        assert second.success
        assert second.cleared_rows == 3
        assert target_days(engine) == ["p4"] * 4


class TestEngineFailures:
    """Engine errors become failed outcomes."""

    @pytest.mark.asyncio
    async def test_transient_error(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        engine.fail_next("copy_partition", partition_id="p1")

        outcome = await executor.execute(make_unit(job_id, "p1"))

        assert not outcome.success
        assert outcome.retryable
        assert outcome.error == "Injected copy_partition failure"
        assert outcome.error_code == "ENGINE_TRANSIENT"

    @pytest.mark.asyncio
    async def test_engine_message_verbatim(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        message = "Code: 241. DB::Exception: Memory limit (total) exceeded"
        engine.fail_next("copy_partition", error=EngineError(message))

        outcome = await executor.execute(make_unit(job_id, "p1"))

        assert outcome.error == message

    @pytest.mark.asyncio
    async def test_unexpected_error_is_not_retryable(
        self, engine: InMemoryStorageEngine, executor: UnitExecutor, job_id: UUID
    ) -> None:
        engine.fail_next("aggregate", error=ValueError("bad predicate"))

        outcome = await executor.execute(make_unit(job_id, "p1"))

        assert not outcome.success
        assert not outcome.retryable
        assert outcome.error == "bad predicate"
        assert outcome.error_code == "UNKNOWN_ERROR"
