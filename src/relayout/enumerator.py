"""
Partition enumerator.

Discovers the migration units of a source dataset from the engine's own
partitioning. Unit ids are the engine's partition ids, so they are disjoint,
cover every row present at enumeration time, and stay stable across
restarts. Units are ordered largest first (ties by partition id) so the
expensive partitions start early and the order is deterministic.

Enumeration runs once per job. Rows written to the source afterwards are
not part of the job.
"""

from __future__ import annotations

import logging
from uuid import UUID

from relayout.engine.interface import StorageEngine
from relayout.exceptions import EngineError, EnumerationError
from relayout.models import MigrationUnit, UnitState
from relayout.observability import ATTR_SOURCE, ATTR_UNIT_COUNT, Tracer, create_tracer

logger = logging.getLogger(__name__)


class PartitionEnumerator:
    """
    Turns the source's partitions into pending migration units.

    Args:
        engine: Storage engine to read partition metadata from.
        tracer: Optional custom Tracer instance.
        enable_tracing: Emit spans when OpenTelemetry is available.
    """

    def __init__(
        self,
        engine: StorageEngine,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._engine = engine
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def enumerate(self, job_id: UUID, source: str) -> list[MigrationUnit]:
        """
        Enumerate the units of a source dataset.

        Args:
            job_id: Job the units belong to.
            source: Source dataset.

        Returns:
            Pending units, largest first.

        Raises:
            EnumerationError: If the partition metadata cannot be read or is
                inconsistent.
        """
        with self._tracer.span("relayout.enumerator.enumerate", {ATTR_SOURCE: source}) as span:
            try:
                partitions = await self._engine.list_partitions(source)
            except EngineError as e:
                raise EnumerationError(
                    f"Cannot read partitions of {source}: {e}", source=source, job_id=job_id
                ) from e

            seen: set[str] = set()
            for partition in partitions:
                if partition.partition_id in seen:
                    raise EnumerationError(
                        f"Partition id {partition.partition_id!r} reported twice for {source}",
                        source=source,
                        job_id=job_id,
                    )
                seen.add(partition.partition_id)

            ordered = sorted(partitions, key=lambda p: (-p.bytes_on_disk, p.partition_id))
            units = [
                MigrationUnit(
                    job_id=job_id,
                    unit_id=partition.partition_id,
                    position=position,
                    partition_value=partition.partition_value,
                    row_estimate=partition.rows,
                    byte_estimate=partition.bytes_on_disk,
                    state=UnitState.PENDING,
                )
                for position, partition in enumerate(ordered)
            ]

            logger.info(
                "Enumerated %d partitions of %s (%d rows, %d bytes)",
                len(units),
                source,
                sum(unit.row_estimate for unit in units),
                sum(unit.byte_estimate for unit in units),
            )
            if span:
                span.set_attribute(ATTR_UNIT_COUNT, len(units))
            return units


__all__ = ["PartitionEnumerator"]
