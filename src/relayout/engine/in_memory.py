"""
In-memory storage engine.

Useful for testing, development and dry runs of a migration plan. Datasets
are lists of row dictionaries; a dataset's partition function maps a row to
its partition key value the same way a ``PARTITION BY`` expression would.

Besides the full engine contract it offers the knobs tests need: settable
health signals, scripted sequences of readings, failure injection per
operation and partition, and a record of every call made.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from relayout.exceptions import EngineError, TransientEngineError
from relayout.models import (
    MergePressure,
    PartitionAggregate,
    PartitionInfo,
    PartitionPredicate,
    ReplicaStatus,
    VolumeSpace,
)
from relayout.observability import ATTR_DB_OPERATION, ATTR_DB_SYSTEM, Tracer, create_tracer

logger = logging.getLogger(__name__)

PartitionFunction = Callable[[dict[str, Any]], Any]

UNPARTITIONED_ID = "all"


def partition_literal(value: Any) -> str:
    """Render a partition key value the way the engine prints it."""
    if value is None:
        return "tuple()"
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"
    if isinstance(value, tuple):
        return "(" + ",".join(partition_literal(item) for item in value) + ")"
    return str(value)


def row_checksum(row: dict[str, Any]) -> int:
    """64-bit digest of one row, independent of key order."""
    canonical = repr(sorted(row.items())).encode("utf-8")
    return int.from_bytes(hashlib.blake2b(canonical, digest_size=8).digest(), "big")


@dataclass
class InMemoryDataset:
    """
    A dataset held in memory.

    Attributes:
        name: Dataset name.
        rows: Row dictionaries.
        partition_by: Maps a row to its partition key value; None for an
            unpartitioned dataset.
        volume: Name of the volume the dataset lives on.
        active_parts: Reported active part count.
    """

    name: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    partition_by: PartitionFunction | None = None
    volume: str = "default"
    active_parts: int = 1

    def partition_key(self, row: dict[str, Any]) -> Any:
        if self.partition_by is None:
            return None
        return self.partition_by(row)

    def partition_id(self, row: dict[str, Any]) -> str:
        if self.partition_by is None:
            return UNPARTITIONED_ID
        value = self.partition_by(row)
        if isinstance(value, tuple):
            return "-".join(str(item) for item in value)
        return str(value)


@dataclass
class _InjectedFailure:
    operation: str
    partition_id: str | None
    remaining: int
    error: Exception

    def matches(self, operation: str, partition_id: str | None) -> bool:
        if self.remaining <= 0 or self.operation != operation:
            return False
        return self.partition_id is None or self.partition_id == partition_id


class InMemoryStorageEngine:
    """
    In-memory implementation of the storage engine contract.

    Health signals are plain attributes (``outstanding_mutations``,
    ``volumes``, ``merge_queue_depth``, ``replica_status``) or can be
    scripted per reading with :meth:`script_health`.

    Example:
        >>> engine = InMemoryStorageEngine()
        >>> engine.create_dataset(
        ...     "db.events",
        ...     rows=[{"day": 1, "v": "a"}, {"day": 2, "v": "b"}],
        ...     partition_by=lambda row: row["day"],
        ... )
        >>> engine.create_dataset("db.events_v2", partition_by=lambda row: row["v"])
        >>> partitions = await engine.list_partitions("db.events")

    Attributes:
        calls: Every operation performed, as ``(operation, *args)`` tuples.
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._datasets: dict[str, InMemoryDataset] = {}
        self._failures: list[_InjectedFailure] = []
        self._corruptions: dict[str, int] = {}
        self._scripts: dict[str, deque[Any]] = {}
        self._lock = asyncio.Lock()

        self.calls: list[tuple[Any, ...]] = []
        self.outstanding_mutations = 0
        self.volumes: list[VolumeSpace] = [
            VolumeSpace(name="default", free_bytes=800, total_bytes=1000)
        ]
        self.merge_queue_depth = 0
        self.replica_status: ReplicaStatus | None = None
        self.copy_delay = 0.0

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def create_dataset(
        self,
        name: str,
        rows: Sequence[dict[str, Any]] | None = None,
        partition_by: PartitionFunction | None = None,
        *,
        volume: str = "default",
        active_parts: int = 1,
    ) -> InMemoryDataset:
        dataset = InMemoryDataset(
            name=name,
            rows=[dict(row) for row in rows or ()],
            partition_by=partition_by,
            volume=volume,
            active_parts=active_parts,
        )
        self._datasets[name] = dataset
        return dataset

    def get_dataset(self, name: str) -> InMemoryDataset:
        try:
            return self._datasets[name]
        except KeyError:
            raise EngineError(
                f"Table {name} doesn't exist", operation="lookup", code=60
            ) from None

    def rows(self, name: str) -> list[dict[str, Any]]:
        return list(self.get_dataset(name).rows)

    def fail_next(
        self,
        operation: str,
        *,
        partition_id: str | None = None,
        times: int = 1,
        error: Exception | None = None,
    ) -> None:
        """
        Make the next ``times`` calls of an operation raise.

        Args:
            operation: Engine method name (e.g. "copy_partition", "exchange").
            partition_id: Only fail calls for this partition (None for any).
            times: Number of calls to fail.
            error: Exception to raise (TransientEngineError by default).
        """
        self._failures.append(
            _InjectedFailure(
                operation=operation,
                partition_id=partition_id,
                remaining=times,
                error=error or TransientEngineError(f"Injected {operation} failure"),
            )
        )

    def corrupt_copies(self, partition_id: str, times: int = 1) -> None:
        """Drop one row from the next ``times`` copies of a partition."""
        self._corruptions[partition_id] = self._corruptions.get(partition_id, 0) + times

    def script_health(self, signal: str, readings: Sequence[Any]) -> None:
        """
        Queue readings returned by the next calls of a health signal.

        Once the queue is drained the attribute value is returned again.

        Args:
            signal: One of "mutations", "volumes", "merges", "replicas".
            readings: Values in the shape the matching method returns.
        """
        self._scripts[signal] = deque(readings)

    def operation_calls(
        self, operation: str, partition_id: str | None = None
    ) -> list[tuple[Any, ...]]:
        return [
            call
            for call in self.calls
            if call[0] == operation and (partition_id is None or partition_id in call[1:])
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, *call: Any) -> None:
        self.calls.append(call)

    def _maybe_fail(self, operation: str, partition_id: str | None = None) -> None:
        for failure in self._failures:
            if failure.matches(operation, partition_id):
                failure.remaining -= 1
                raise failure.error

    def _scripted(self, signal: str, default: Any) -> Any:
        queue = self._scripts.get(signal)
        if queue:
            return queue.popleft()
        return default

    def _matching(
        self, dataset: InMemoryDataset, predicate: PartitionPredicate
    ) -> list[dict[str, Any]]:
        # Rows are always selected by the SOURCE's partitioning.
        source = self._datasets.get(predicate.source, dataset)
        return [row for row in dataset.rows if source.partition_id(row) == predicate.partition_id]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def count_outstanding_mutations(self, datasets: Sequence[str]) -> int:
        self._record("count_outstanding_mutations", tuple(datasets))
        self._maybe_fail("count_outstanding_mutations")
        return int(self._scripted("mutations", self.outstanding_mutations))

    async def get_volume_space(self, datasets: Sequence[str]) -> list[VolumeSpace]:
        self._record("get_volume_space", tuple(datasets))
        self._maybe_fail("get_volume_space")
        names = {self._datasets[name].volume for name in datasets if name in self._datasets}
        volumes = self._scripted("volumes", self.volumes)
        return [volume for volume in volumes if not names or volume.name in names]

    async def get_merge_pressure(self, datasets: Sequence[str]) -> MergePressure:
        self._record("get_merge_pressure", tuple(datasets))
        self._maybe_fail("get_merge_pressure")
        parts = max(
            (self._datasets[name].active_parts for name in datasets if name in self._datasets),
            default=0,
        )
        default = MergePressure(queue_depth=self.merge_queue_depth, max_active_parts=parts)
        return self._scripted("merges", default)

    async def get_replica_status(self, datasets: Sequence[str]) -> ReplicaStatus | None:
        self._record("get_replica_status", tuple(datasets))
        self._maybe_fail("get_replica_status")
        return self._scripted("replicas", self.replica_status)

    async def list_partitions(self, dataset: str) -> list[PartitionInfo]:
        self._record("list_partitions", dataset)
        self._maybe_fail("list_partitions")
        data = self.get_dataset(dataset)

        grouped: dict[str, list[dict[str, Any]]] = {}
        values: dict[str, Any] = {}
        for row in data.rows:
            partition_id = data.partition_id(row)
            grouped.setdefault(partition_id, []).append(row)
            values.setdefault(partition_id, data.partition_key(row))

        return [
            PartitionInfo(
                partition_id=partition_id,
                partition_value=partition_literal(values[partition_id]),
                rows=len(rows),
                bytes_on_disk=sum(len(repr(row)) for row in rows),
            )
            for partition_id, rows in sorted(grouped.items())
        ]

    async def aggregate(self, dataset: str, predicate: PartitionPredicate) -> PartitionAggregate:
        with self._tracer.span(
            "relayout.engine.aggregate",
            {ATTR_DB_SYSTEM: "memory", ATTR_DB_OPERATION: "SELECT"},
        ):
            self._record("aggregate", dataset, predicate.partition_id)
            self._maybe_fail("aggregate", predicate.partition_id)
            rows = self._matching(self.get_dataset(dataset), predicate)
            checksum = sum(row_checksum(row) for row in rows) % (1 << 64)
            return PartitionAggregate(rows=len(rows), checksum=checksum)

    # ------------------------------------------------------------------
    # Data movement
    # ------------------------------------------------------------------

    async def copy_partition(
        self, source: str, target: str, predicate: PartitionPredicate
    ) -> None:
        with self._tracer.span(
            "relayout.engine.copy_partition",
            {ATTR_DB_SYSTEM: "memory", ATTR_DB_OPERATION: "INSERT"},
        ):
            self._record("copy_partition", source, target, predicate.partition_id)
            if self.copy_delay:
                await asyncio.sleep(self.copy_delay)
            self._maybe_fail("copy_partition", predicate.partition_id)
            async with self._lock:
                rows = [dict(row) for row in self._matching(self.get_dataset(source), predicate)]
                remaining = self._corruptions.get(predicate.partition_id, 0)
                if remaining and rows:
                    self._corruptions[predicate.partition_id] = remaining - 1
                    rows = rows[:-1]
                self.get_dataset(target).rows.extend(rows)

    async def delete_partition(self, dataset: str, predicate: PartitionPredicate) -> None:
        with self._tracer.span(
            "relayout.engine.delete_partition",
            {ATTR_DB_SYSTEM: "memory", ATTR_DB_OPERATION: "DELETE"},
        ):
            self._record("delete_partition", dataset, predicate.partition_id)
            self._maybe_fail("delete_partition", predicate.partition_id)
            async with self._lock:
                data = self.get_dataset(dataset)
                doomed = {id(row) for row in self._matching(data, predicate)}
                data.rows = [row for row in data.rows if id(row) not in doomed]

    async def exchange(self, first: str, second: str) -> None:
        with self._tracer.span(
            "relayout.engine.exchange",
            {ATTR_DB_SYSTEM: "memory", ATTR_DB_OPERATION: "EXCHANGE"},
        ):
            self._record("exchange", first, second)
            self._maybe_fail("exchange")
            async with self._lock:
                a = self.get_dataset(first)
                b = self.get_dataset(second)
                a.name, b.name = second, first
                self._datasets[first], self._datasets[second] = b, a
            logger.info("Exchanged %s and %s", first, second)

    # ------------------------------------------------------------------
    # Dataset lifecycle
    # ------------------------------------------------------------------

    async def dataset_exists(self, dataset: str) -> bool:
        self._record("dataset_exists", dataset)
        return dataset in self._datasets

    async def drop_dataset(self, dataset: str) -> None:
        self._record("drop_dataset", dataset)
        self._maybe_fail("drop_dataset")
        async with self._lock:
            self.get_dataset(dataset)
            del self._datasets[dataset]


__all__ = [
    "InMemoryDataset",
    "InMemoryStorageEngine",
    "partition_literal",
    "row_checksum",
    "UNPARTITIONED_ID",
]
