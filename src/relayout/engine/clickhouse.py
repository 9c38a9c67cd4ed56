"""
ClickHouse storage engine.

Implements the storage engine contract with the clickhouse-connect async
client. Introspection reads the ``system`` tables; data movement uses
``INSERT ... SELECT`` scoped to one source partition, synchronous
``ALTER TABLE ... DELETE`` for clearing a partition in the target, and
``EXCHANGE TABLES`` for the cutover swap.

Partition predicates are expressed with the SOURCE's partition key:

- on the source: ``_partition_id = '<id>'``
- on the target: ``(<source partition key>) = <partition literal>``

so a retry clears exactly the rows the copy inserted, whatever the
target's own partitioning is.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import clickhouse_connect
from clickhouse_connect.driver.exceptions import ClickHouseError, OperationalError
from decouple import config

from relayout.exceptions import EngineError, TransientEngineError
from relayout.models import (
    MergePressure,
    PartitionAggregate,
    PartitionInfo,
    PartitionPredicate,
    ReplicaStatus,
    VolumeSpace,
)
from relayout.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_UNIT_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

# Server error codes worth retrying: timeouts, too many simultaneous
# queries, no free connection, socket/network errors, memory limit,
# too many parts, keeper exceptions.
TRANSIENT_ERROR_CODES = frozenset({159, 202, 203, 209, 210, 241, 252, 999})

_ERROR_CODE_RE = re.compile(r"Code:\s*(\d+)")

_DATASETS_FILTER = "has({datasets:Array(String)}, concat(database, '.', table))"


@dataclass(frozen=True)
class ClickHouseSettings:
    """
    Connection settings for ClickHouse.

    Attributes:
        host: Server host.
        port: HTTP(S) port.
        database: Default database for bare table names.
        user: User name.
        password: Password.
        secure: Use TLS.
        timeout: Connect timeout in seconds.
    """

    host: str = "localhost"
    port: int = 8123
    database: str = "default"
    user: str = "default"
    password: str = ""
    secure: bool = False
    timeout: int = 30

    @classmethod
    def from_env(cls) -> ClickHouseSettings:
        """Read settings from ``CLICKHOUSE_*`` environment variables or ``.env``."""
        host = config("CLICKHOUSE_HOST", default="localhost")
        port = config("CLICKHOUSE_PORT", default=8123, cast=int)
        # Cloud endpoints only accept TLS
        is_cloud = ".clickhouse.cloud" in host or port in (8443, 443)
        return cls(
            host=host,
            port=port,
            database=config("CLICKHOUSE_DATABASE", default="default"),
            user=config("CLICKHOUSE_USER", default="default"),
            password=config("CLICKHOUSE_PASSWORD", default=""),
            secure=config("CLICKHOUSE_SECURE", default=is_cloud, cast=bool),
            timeout=config("CLICKHOUSE_TIMEOUT", default=30, cast=int),
        )


@dataclass(frozen=True)
class _TableMetadata:
    partition_key: str
    columns: tuple[str, ...]


def quote_identifier(name: str) -> str:
    return "`" + name.replace("\\", "\\\\").replace("`", "\\`") + "`"


def map_clickhouse_error(exc: BaseException, operation: str) -> EngineError:
    """
    Translate a driver exception into the engine error taxonomy.

    The server message is kept verbatim.

    Args:
        exc: Exception raised by clickhouse-connect or the network stack.
        operation: Engine operation being performed.

    Returns:
        TransientEngineError for retryable failures, EngineError otherwise.
    """
    message = str(exc)
    match = _ERROR_CODE_RE.search(message)
    code = int(match.group(1)) if match else None

    if isinstance(exc, (OperationalError, TimeoutError, ConnectionError)):
        return TransientEngineError(message, operation=operation, code=code)
    if code in TRANSIENT_ERROR_CODES:
        return TransientEngineError(message, operation=operation, code=code)
    return EngineError(message, operation=operation, code=code)


class ClickHouseStorageEngine:
    """
    Storage engine backed by a ClickHouse server.

    Example:
        >>> engine = await ClickHouseStorageEngine.connect(ClickHouseSettings.from_env())
        >>> partitions = await engine.list_partitions("analytics.events")
        >>> await engine.close()

    Args:
        client: clickhouse-connect ``AsyncClient``.
        database: Database used for bare table names.
        tracer: Optional custom Tracer instance.
        enable_tracing: Emit spans when OpenTelemetry is available.
    """

    def __init__(
        self,
        client: Any,
        *,
        database: str = "default",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._client = client
        self._database = database
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._metadata: dict[str, _TableMetadata] = {}

    @classmethod
    async def connect(
        cls,
        settings: ClickHouseSettings,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> ClickHouseStorageEngine:
        """Open an async client with the given settings."""
        client = await clickhouse_connect.get_async_client(
            host=settings.host,
            port=settings.port,
            database=settings.database,
            username=settings.user,
            password=settings.password,
            secure=settings.secure,
            connect_timeout=settings.timeout,
        )
        logger.info("Connected to ClickHouse at %s:%s", settings.host, settings.port)
        return cls(
            client,
            database=settings.database,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _split(self, dataset: str) -> tuple[str, str]:
        if "." in dataset:
            database, table = dataset.split(".", 1)
            return database, table
        return self._database, dataset

    def _qualified(self, dataset: str) -> str:
        database, table = self._split(dataset)
        return f"{quote_identifier(database)}.{quote_identifier(table)}"

    def _full_names(self, datasets: Sequence[str]) -> list[str]:
        return [".".join(self._split(name)) for name in datasets]

    async def _query(
        self, operation: str, sql: str, parameters: dict[str, Any] | None = None
    ) -> list[Sequence[Any]]:
        logger.debug("%s: %s", operation, sql)
        try:
            result = await self._client.query(sql, parameters=parameters or {})
        except (ClickHouseError, OSError) as e:
            raise map_clickhouse_error(e, operation) from e
        return list(result.result_rows)

    async def _command(
        self,
        operation: str,
        sql: str,
        parameters: dict[str, Any] | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Any:
        logger.debug("%s: %s", operation, sql)
        try:
            return await self._client.command(
                sql, parameters=parameters or {}, settings=settings or {}
            )
        except (ClickHouseError, OSError) as e:
            raise map_clickhouse_error(e, operation) from e

    async def _table_metadata(self, dataset: str) -> _TableMetadata:
        name = ".".join(self._split(dataset))
        cached = self._metadata.get(name)
        if cached is not None:
            return cached

        database, table = self._split(dataset)
        params = {"database": database, "table": table}
        rows = await self._query(
            "table_metadata",
            "SELECT partition_key FROM system.tables "
            "WHERE database = {database:String} AND name = {table:String}",
            params,
        )
        if not rows:
            raise EngineError(f"Table {name} doesn't exist", operation="table_metadata", code=60)
        columns = await self._query(
            "table_metadata",
            "SELECT name FROM system.columns "
            "WHERE database = {database:String} AND table = {table:String} "
            "AND default_kind NOT IN ('MATERIALIZED', 'ALIAS') "
            "ORDER BY position",
            params,
        )
        metadata = _TableMetadata(
            partition_key=str(rows[0][0] or ""),
            columns=tuple(str(row[0]) for row in columns),
        )
        self._metadata[name] = metadata
        return metadata

    async def render_predicate(
        self, dataset: str, predicate: PartitionPredicate
    ) -> tuple[str, dict[str, Any]]:
        """
        Render a partition predicate for a dataset.

        Returns:
            SQL condition and its bound parameters.
        """
        if self._split(dataset) == self._split(predicate.source):
            return "_partition_id = {partition_id:String}", {
                "partition_id": predicate.partition_id
            }

        source = await self._table_metadata(predicate.source)
        if not source.partition_key:
            return "1", {}
        # Literal comes from system.parts of the source, not from user input.
        return f"({source.partition_key}) = {predicate.partition_value}", {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def count_outstanding_mutations(self, datasets: Sequence[str]) -> int:
        rows = await self._query(
            "count_outstanding_mutations",
            f"SELECT count() FROM system.mutations WHERE is_done = 0 AND {_DATASETS_FILTER}",
            {"datasets": self._full_names(datasets)},
        )
        return int(rows[0][0]) if rows else 0

    async def get_volume_space(self, datasets: Sequence[str]) -> list[VolumeSpace]:
        rows = await self._query(
            "get_volume_space",
            "SELECT name, free_space, total_space FROM system.disks "
            "WHERE name IN ("
            "SELECT arrayJoin(disks) FROM system.storage_policies "
            "WHERE policy_name IN ("
            "SELECT storage_policy FROM system.tables "
            "WHERE has({datasets:Array(String)}, concat(database, '.', name))"
            ")) ORDER BY name",
            {"datasets": self._full_names(datasets)},
        )
        return [
            VolumeSpace(name=str(name), free_bytes=int(free), total_bytes=int(total))
            for name, free, total in rows
        ]

    async def get_merge_pressure(self, datasets: Sequence[str]) -> MergePressure:
        params = {"datasets": self._full_names(datasets)}
        merges = await self._query(
            "get_merge_pressure",
            f"SELECT count() FROM system.merges WHERE {_DATASETS_FILTER}",
            params,
        )
        queued = await self._query(
            "get_merge_pressure",
            f"SELECT sum(merges_in_queue) FROM system.replicas WHERE {_DATASETS_FILTER}",
            params,
        )
        parts = await self._query(
            "get_merge_pressure",
            "SELECT max(active_parts) FROM ("
            "SELECT count() AS active_parts FROM system.parts "
            f"WHERE active = 1 AND {_DATASETS_FILTER} "
            "GROUP BY database, table)",
            params,
        )
        running = int(merges[0][0] or 0) if merges else 0
        in_queue = int(queued[0][0] or 0) if queued else 0
        return MergePressure(
            queue_depth=running + in_queue,
            max_active_parts=int(parts[0][0] or 0) if parts else 0,
        )

    async def get_replica_status(self, datasets: Sequence[str]) -> ReplicaStatus | None:
        rows = await self._query(
            "get_replica_status",
            "SELECT count(), max(absolute_delay), countIf(is_readonly = 1) "
            f"FROM system.replicas WHERE {_DATASETS_FILTER}",
            {"datasets": self._full_names(datasets)},
        )
        if not rows or not rows[0][0]:
            return None
        _, lag, readonly = rows[0]
        return ReplicaStatus(max_lag_seconds=float(lag or 0), readonly_replicas=int(readonly))

    async def list_partitions(self, dataset: str) -> list[PartitionInfo]:
        with self._tracer.span(
            "relayout.engine.list_partitions",
            {ATTR_DB_SYSTEM: "clickhouse", ATTR_DB_OPERATION: "SELECT"},
        ):
            await self._table_metadata(dataset)
            database, table = self._split(dataset)
            rows = await self._query(
                "list_partitions",
                "SELECT partition_id, partition, sum(rows), sum(bytes_on_disk) "
                "FROM system.parts "
                "WHERE active = 1 AND database = {database:String} AND table = {table:String} "
                "GROUP BY partition_id, partition "
                "ORDER BY partition_id",
                {"database": database, "table": table},
            )
            return [
                PartitionInfo(
                    partition_id=str(partition_id),
                    partition_value=str(partition),
                    rows=int(row_count),
                    bytes_on_disk=int(size),
                )
                for partition_id, partition, row_count, size in rows
            ]

    async def aggregate(self, dataset: str, predicate: PartitionPredicate) -> PartitionAggregate:
        with self._tracer.span(
            "relayout.engine.aggregate",
            {
                ATTR_DB_SYSTEM: "clickhouse",
                ATTR_DB_OPERATION: "SELECT",
                ATTR_UNIT_ID: predicate.partition_id,
            },
        ):
            source = await self._table_metadata(predicate.source)
            condition, params = await self.render_predicate(dataset, predicate)
            columns = ", ".join(quote_identifier(column) for column in source.columns)
            rows = await self._query(
                "aggregate",
                f"SELECT count(), sum(cityHash64({columns})) "
                f"FROM {self._qualified(dataset)} WHERE {condition}",
                params,
            )
            row_count, checksum = rows[0] if rows else (0, 0)
            return PartitionAggregate(rows=int(row_count), checksum=int(checksum or 0))

    # ------------------------------------------------------------------
    # Data movement
    # ------------------------------------------------------------------

    async def copy_partition(
        self, source: str, target: str, predicate: PartitionPredicate
    ) -> None:
        with self._tracer.span(
            "relayout.engine.copy_partition",
            {
                ATTR_DB_SYSTEM: "clickhouse",
                ATTR_DB_OPERATION: "INSERT",
                ATTR_UNIT_ID: predicate.partition_id,
            },
        ):
            metadata = await self._table_metadata(source)
            condition, params = await self.render_predicate(source, predicate)
            columns = ", ".join(quote_identifier(column) for column in metadata.columns)
            await self._command(
                "copy_partition",
                f"INSERT INTO {self._qualified(target)} ({columns}) "
                f"SELECT {columns} FROM {self._qualified(source)} WHERE {condition}",
                params,
            )

    async def delete_partition(self, dataset: str, predicate: PartitionPredicate) -> None:
        with self._tracer.span(
            "relayout.engine.delete_partition",
            {
                ATTR_DB_SYSTEM: "clickhouse",
                ATTR_DB_OPERATION: "DELETE",
                ATTR_UNIT_ID: predicate.partition_id,
            },
        ):
            condition, params = await self.render_predicate(dataset, predicate)
            await self._command(
                "delete_partition",
                f"ALTER TABLE {self._qualified(dataset)} DELETE WHERE {condition}",
                params,
                settings={"mutations_sync": 2},
            )

    async def exchange(self, first: str, second: str) -> None:
        with self._tracer.span(
            "relayout.engine.exchange",
            {ATTR_DB_SYSTEM: "clickhouse", ATTR_DB_OPERATION: "EXCHANGE"},
        ):
            await self._command(
                "exchange",
                f"EXCHANGE TABLES {self._qualified(first)} AND {self._qualified(second)}",
            )
            # Names now point at different tables
            self._metadata.pop(".".join(self._split(first)), None)
            self._metadata.pop(".".join(self._split(second)), None)
            logger.info("Exchanged %s and %s", first, second)

    # ------------------------------------------------------------------
    # Dataset lifecycle
    # ------------------------------------------------------------------

    async def dataset_exists(self, dataset: str) -> bool:
        database, table = self._split(dataset)
        rows = await self._query(
            "dataset_exists",
            "SELECT count() FROM system.tables "
            "WHERE database = {database:String} AND name = {table:String}",
            {"database": database, "table": table},
        )
        return bool(rows and rows[0][0])

    async def drop_dataset(self, dataset: str) -> None:
        await self._command("drop_dataset", f"DROP TABLE {self._qualified(dataset)} SYNC")
        self._metadata.pop(".".join(self._split(dataset)), None)
        logger.info("Dropped %s", dataset)


__all__ = [
    "ClickHouseSettings",
    "ClickHouseStorageEngine",
    "TRANSIENT_ERROR_CODES",
    "map_clickhouse_error",
    "quote_identifier",
]
