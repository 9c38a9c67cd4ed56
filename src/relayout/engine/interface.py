"""
Storage engine contract.

The orchestrator never implements storage itself. Everything it needs from
the engine is behind this protocol: a read-only introspection surface for
the health gate and the enumerator, partition-scoped copy/delete/aggregate
primitives for the executor, and an atomic exchange for cutover.

Dataset names are ``database.table`` (or a bare table name resolved
against the engine's default database).
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from relayout.models import (
    MergePressure,
    PartitionAggregate,
    PartitionInfo,
    PartitionPredicate,
    ReplicaStatus,
    VolumeSpace,
)


@runtime_checkable
class StorageEngine(Protocol):
    """
    Protocol for storage engines a migration runs against.

    Implementations raise ``TransientEngineError`` for timeouts and
    temporary unavailability and ``EngineError`` for everything else,
    keeping the engine's message verbatim.

    Implementations:
        - InMemoryStorageEngine: Python lists, for tests and dry runs
        - ClickHouseStorageEngine: clickhouse-connect async client
    """

    # Introspection

    async def count_outstanding_mutations(self, datasets: Sequence[str]) -> int:
        """Number of unfinished mutations on the given datasets."""
        ...

    async def get_volume_space(self, datasets: Sequence[str]) -> list[VolumeSpace]:
        """Space of every volume the given datasets can store parts on."""
        ...

    async def get_merge_pressure(self, datasets: Sequence[str]) -> MergePressure:
        """Merge queue depth and active part count of the given datasets."""
        ...

    async def get_replica_status(self, datasets: Sequence[str]) -> ReplicaStatus | None:
        """Replication lag of the given datasets, None when not replicated."""
        ...

    async def list_partitions(self, dataset: str) -> list[PartitionInfo]:
        """Active partitions of a dataset with row and byte counts."""
        ...

    async def aggregate(self, dataset: str, predicate: PartitionPredicate) -> PartitionAggregate:
        """Row count and order-independent checksum of rows matching predicate."""
        ...

    # Data movement

    async def copy_partition(
        self, source: str, target: str, predicate: PartitionPredicate
    ) -> None:
        """Insert into target every source row matching predicate."""
        ...

    async def delete_partition(self, dataset: str, predicate: PartitionPredicate) -> None:
        """Delete every row matching predicate, synchronously."""
        ...

    async def exchange(self, first: str, second: str) -> None:
        """Atomically swap the identities of two datasets."""
        ...

    # Dataset lifecycle

    async def dataset_exists(self, dataset: str) -> bool:
        ...

    async def drop_dataset(self, dataset: str) -> None:
        ...


__all__ = ["StorageEngine"]
