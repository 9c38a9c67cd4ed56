"""
Unit executor.

Copies one partition from source to target and verifies it. Execution is
idempotent: any rows a previous attempt left in the target for the same
partition predicate are deleted before copying, so a retry never
duplicates rows and never touches other partitions. The source is only
ever read.

The executor reports a ``UnitOutcome`` and never changes the ledger; the
controller applies the outcome.
"""

from __future__ import annotations

import logging
import time

from relayout.engine.interface import StorageEngine
from relayout.exceptions import IntegrityError, MigrationError, classify_exception
from relayout.models import MigrationUnit, PartitionAggregate, UnitOutcome
from relayout.observability import (
    ATTR_ERROR_TYPE,
    ATTR_ROWS,
    ATTR_UNIT_ATTEMPT,
    ATTR_UNIT_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


class UnitExecutor:
    """
    Copies and verifies migration units.

    Example:
        >>> executor = UnitExecutor(engine, "db.events", "db.events_v2")
        >>> outcome = await executor.execute(unit)
        >>> outcome.success
        True

    Args:
        engine: Storage engine.
        source: Source dataset (read only).
        target: Shadow target dataset.
        verify_checksum: Compare checksums in addition to row counts.
        tracer: Optional custom Tracer instance.
        enable_tracing: Emit spans when OpenTelemetry is available.
    """

    def __init__(
        self,
        engine: StorageEngine,
        source: str,
        target: str,
        *,
        verify_checksum: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._engine = engine
        self._source = source
        self._target = target
        self._verify_checksum = verify_checksum
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def execute(self, unit: MigrationUnit) -> UnitOutcome:
        """
        Clear, copy and verify one unit.

        Unit-level failures (engine errors, integrity mismatches) are
        returned as a failed outcome rather than raised. Cancellation
        propagates.

        Args:
            unit: The unit to execute.

        Returns:
            UnitOutcome describing the result.
        """
        with self._tracer.span(
            "relayout.executor.execute",
            {ATTR_UNIT_ID: unit.unit_id, ATTR_UNIT_ATTEMPT: unit.attempt_count},
        ) as span:
            started = time.perf_counter()
            try:
                cleared, source_agg, target_agg = await self._copy_and_verify(unit)
            except Exception as e:
                duration_ms = (time.perf_counter() - started) * 1000
                classification = classify_exception(e)
                if isinstance(e, MigrationError):
                    logger.warning(
                        "Unit %s attempt %d failed: %s",
                        unit.unit_id,
                        unit.attempt_count,
                        e,
                    )
                else:
                    logger.exception("Unit %s failed with unexpected error", unit.unit_id)
                if span:
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                    span.record_exception(e)

                return UnitOutcome(
                    unit_id=unit.unit_id,
                    success=False,
                    source_rows=getattr(e, "source_rows", 0),
                    target_rows=getattr(e, "target_rows", 0),
                    source_checksum=getattr(e, "source_checksum", None),
                    target_checksum=getattr(e, "target_checksum", None),
                    duration_ms=duration_ms,
                    error=(e.message if isinstance(e, MigrationError) else str(e))
                    or type(e).__name__,
                    error_code=classification.error_code,
                    retryable=classification.recoverability.should_retry,
                )

            duration_ms = (time.perf_counter() - started) * 1000
            if span:
                span.set_attribute(ATTR_ROWS, target_agg.rows)
            logger.info(
                "Unit %s copied %d rows in %.0fms",
                unit.unit_id,
                target_agg.rows,
                duration_ms,
            )
            return UnitOutcome(
                unit_id=unit.unit_id,
                success=True,
                source_rows=source_agg.rows,
                target_rows=target_agg.rows,
                source_checksum=source_agg.checksum if self._verify_checksum else None,
                target_checksum=target_agg.checksum if self._verify_checksum else None,
                cleared_rows=cleared,
                duration_ms=duration_ms,
            )

    async def _copy_and_verify(
        self, unit: MigrationUnit
    ) -> tuple[int, PartitionAggregate, PartitionAggregate]:
        predicate = unit.predicate(self._source)

        leftover = await self._engine.aggregate(self._target, predicate)
        if leftover.rows:
            logger.info(
                "Clearing %d rows of unit %s left in %s by a previous attempt",
                leftover.rows,
                unit.unit_id,
                self._target,
            )
            await self._engine.delete_partition(self._target, predicate)

        await self._engine.copy_partition(self._source, self._target, predicate)

        source_agg = await self._engine.aggregate(self._source, predicate)
        target_agg = await self._engine.aggregate(self._target, predicate)
        self._verify(unit, source_agg, target_agg)
        return leftover.rows, source_agg, target_agg

    def _verify(
        self,
        unit: MigrationUnit,
        source_agg: PartitionAggregate,
        target_agg: PartitionAggregate,
    ) -> None:
        if source_agg.rows != target_agg.rows:
            raise IntegrityError(
                f"Row count mismatch: source {source_agg.rows}, target {target_agg.rows}",
                source_rows=source_agg.rows,
                target_rows=target_agg.rows,
                unit_id=unit.unit_id,
                job_id=unit.job_id,
            )
        if self._verify_checksum and source_agg.checksum != target_agg.checksum:
            raise IntegrityError(
                f"Checksum mismatch: source {source_agg.checksum}, target {target_agg.checksum}",
                source_rows=source_agg.rows,
                target_rows=target_agg.rows,
                source_checksum=source_agg.checksum,
                target_checksum=target_agg.checksum,
                unit_id=unit.unit_id,
                job_id=unit.job_id,
            )


__all__ = ["UnitExecutor"]
