"""
Unit tests for ClickHouseStorageEngine.

The clickhouse-connect client is replaced by a fake that records queries
and answers them from canned rows, so no server is needed.

Tests cover:
- Error mapping (verbatim messages, transient codes)
- Settings from environment variables
- Partition listing and metadata caching
- Predicates on source and target
- SQL issued for copy, delete, exchange and drop
- Health signal queries
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from clickhouse_connect.driver.exceptions import DatabaseError, OperationalError

from relayout.engine.clickhouse import (
    ClickHouseSettings,
    ClickHouseStorageEngine,
    map_clickhouse_error,
    quote_identifier,
)
from relayout.exceptions import EngineError, TransientEngineError
from relayout.models import PartitionPredicate

# =============================================================================
# Fake client
# =============================================================================


class FakeClient:
    """Answers queries by matching a fragment of the SQL."""

    def __init__(self, answers: dict[str, list[tuple[Any, ...]]] | None = None) -> None:
        self.answers = answers or {}
        self.queries: list[tuple[str, dict[str, Any]]] = []
        self.commands: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        self.command_error: Exception | None = None
        self.close = AsyncMock()

    async def query(self, sql: str, parameters: dict[str, Any] | None = None) -> Any:
        self.queries.append((sql, parameters or {}))
        for fragment, rows in self.answers.items():
            if fragment in sql:
                result = MagicMock()
                result.result_rows = rows
                return result
        result = MagicMock()
        result.result_rows = []
        return result

    async def command(
        self,
        sql: str,
        parameters: dict[str, Any] | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Any:
        if self.command_error is not None:
            raise self.command_error
        self.commands.append((sql, parameters or {}, settings or {}))
        return None


TABLE_METADATA = {
    "SELECT partition_key FROM system.tables": [("toYYYYMM(day)",)],
    "FROM system.columns": [("day",), ("id",), ("value",)],
}


@pytest.fixture
def client() -> FakeClient:
    return FakeClient(dict(TABLE_METADATA))


@pytest.fixture
def ch_engine(client: FakeClient) -> ClickHouseStorageEngine:
    return ClickHouseStorageEngine(client, database="analytics", enable_tracing=False)


SOURCE_PREDICATE = PartitionPredicate(
    source="analytics.events", partition_id="202401", partition_value="202401"
)


# =============================================================================
# Error mapping
# =============================================================================


class TestErrorMapping:
    """Tests for map_clickhouse_error."""

    def test_message_kept_verbatim(self) -> None:
        message = "Code: 60. DB::Exception: Table analytics.events_v2 doesn't exist"

        error = map_clickhouse_error(DatabaseError(message), "exchange")

        assert type(error) is EngineError
        assert error.message == message
        assert error.code == 60
        assert error.operation == "exchange"

    @pytest.mark.parametrize("code", [159, 202, 241, 252])
    def test_transient_codes(self, code: int) -> None:
        error = map_clickhouse_error(DatabaseError(f"Code: {code}. DB::Exception"), "copy")

        assert isinstance(error, TransientEngineError)
        assert error.code == code

    def test_operational_errors_are_transient(self) -> None:
        error = map_clickhouse_error(OperationalError("Connection refused"), "aggregate")

        assert isinstance(error, TransientEngineError)
        assert error.code is None

    def test_network_errors_are_transient(self) -> None:
        assert isinstance(
            map_clickhouse_error(ConnectionResetError("reset by peer"), "query"),
            TransientEngineError,
        )


class TestQuoteIdentifier:
    def test_plain(self) -> None:
        assert quote_identifier("events") == "`events`"

    def test_backtick_escaped(self) -> None:
        assert quote_identifier("we`ird") == "`we\\`ird`"


# =============================================================================
# Settings
# =============================================================================


class TestClickHouseSettings:
    """Tests for ClickHouseSettings.from_env."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("HOST", "PORT", "DATABASE", "USER", "PASSWORD", "SECURE", "TIMEOUT"):
            monkeypatch.delenv(f"CLICKHOUSE_{name}", raising=False)

        settings = ClickHouseSettings.from_env()

        assert settings.host == "localhost"
        assert settings.port == 8123
        assert settings.secure is False

    def test_cloud_host_uses_tls(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLICKHOUSE_HOST", "abc123.eu-west-1.aws.clickhouse.cloud")
        monkeypatch.setenv("CLICKHOUSE_PORT", "8443")
        monkeypatch.setenv("CLICKHOUSE_DATABASE", "analytics")
        monkeypatch.delenv("CLICKHOUSE_SECURE", raising=False)

        settings = ClickHouseSettings.from_env()

        assert settings.port == 8443
        assert settings.database == "analytics"
        assert settings.secure is True

    def test_explicit_secure_flag(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLICKHOUSE_HOST", "clickhouse.internal")
        monkeypatch.setenv("CLICKHOUSE_PORT", "9440")
        monkeypatch.setenv("CLICKHOUSE_SECURE", "true")

        assert ClickHouseSettings.from_env().secure is True


# =============================================================================
# Introspection
# =============================================================================


class TestListPartitions:
    """Tests for list_partitions."""

    @pytest.mark.asyncio
    async def test_reads_system_parts(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        client.answers["FROM system.parts"] = [
            ("202401", "202401", 1000, 4096),
            ("202402", "202402", 500, 2048),
        ]

        partitions = await ch_engine.list_partitions("events")

        assert [p.partition_id for p in partitions] == ["202401", "202402"]
        assert partitions[0].rows == 1000
        assert partitions[0].bytes_on_disk == 4096
        sql, params = client.queries[-1]
        assert "active = 1" in sql
        assert params == {"database": "analytics", "table": "events"}

    @pytest.mark.asyncio
    async def test_missing_table(self, client: FakeClient) -> None:
        client.answers.clear()
        engine = ClickHouseStorageEngine(client, enable_tracing=False)

        with pytest.raises(EngineError, match="doesn't exist") as exc_info:
            await engine.list_partitions("db.missing")

        assert exc_info.value.code == 60

    @pytest.mark.asyncio
    async def test_metadata_cached(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        await ch_engine.list_partitions("analytics.events")
        await ch_engine.list_partitions("analytics.events")

        metadata_queries = [sql for sql, _ in client.queries if "system.columns" in sql]
        assert len(metadata_queries) == 1


class TestHealthSignals:
    """Tests for the health signal queries."""

    @pytest.mark.asyncio
    async def test_outstanding_mutations(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        client.answers["FROM system.mutations"] = [(3,)]

        count = await ch_engine.count_outstanding_mutations(["events", "other.events_v2"])

        assert count == 3
        _, params = client.queries[-1]
        assert params == {"datasets": ["analytics.events", "other.events_v2"]}

    @pytest.mark.asyncio
    async def test_volume_space(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        client.answers["FROM system.disks"] = [("default", 100, 1000), ("cold", 900, 1000)]

        volumes = await ch_engine.get_volume_space(["events"])

        assert [(v.name, v.free_fraction) for v in volumes] == [("default", 0.1), ("cold", 0.9)]

    @pytest.mark.asyncio
    async def test_merge_pressure(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        client.answers["FROM system.merges"] = [(2,)]
        client.answers["sum(merges_in_queue)"] = [(5,)]
        client.answers["max(active_parts)"] = [(120,)]

        pressure = await ch_engine.get_merge_pressure(["events"])

        assert pressure.queue_depth == 7
        assert pressure.max_active_parts == 120

    @pytest.mark.asyncio
    async def test_not_replicated(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        client.answers["absolute_delay"] = [(0, None, 0)]

        assert await ch_engine.get_replica_status(["events"]) is None

    @pytest.mark.asyncio
    async def test_replica_lag(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        client.answers["absolute_delay"] = [(2, 45, 1)]

        status = await ch_engine.get_replica_status(["events"])

        assert status is not None
        assert status.max_lag_seconds == 45.0
        assert status.readonly_replicas == 1


# =============================================================================
# Data movement
# =============================================================================


class TestPredicates:
    """Predicates use the source's partitioning on both sides."""

    @pytest.mark.asyncio
    async def test_source_uses_partition_id(self, ch_engine: ClickHouseStorageEngine) -> None:
        condition, params = await ch_engine.render_predicate("analytics.events", SOURCE_PREDICATE)

        assert condition == "_partition_id = {partition_id:String}"
        assert params == {"partition_id": "202401"}

    @pytest.mark.asyncio
    async def test_target_uses_source_partition_key(
        self, ch_engine: ClickHouseStorageEngine
    ) -> None:
        condition, params = await ch_engine.render_predicate("events_v2", SOURCE_PREDICATE)

        assert condition == "(toYYYYMM(day)) = 202401"
        assert params == {}

    @pytest.mark.asyncio
    async def test_unpartitioned_source_matches_everything(self, client: FakeClient) -> None:
        client.answers["SELECT partition_key FROM system.tables"] = [("",)]
        engine = ClickHouseStorageEngine(client, database="analytics", enable_tracing=False)
        predicate = PartitionPredicate(
            source="events", partition_id="all", partition_value="tuple()"
        )

        condition, _ = await engine.render_predicate("events_v2", predicate)

        assert condition == "1"


class TestDataMovement:
    """SQL issued for copy, delete and aggregate."""

    @pytest.mark.asyncio
    async def test_copy_partition(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        await ch_engine.copy_partition("events", "events_v2", SOURCE_PREDICATE)

        sql, params, _ = client.commands[-1]
        assert sql == (
            "INSERT INTO `analytics`.`events_v2` (`day`, `id`, `value`) "
            "SELECT `day`, `id`, `value` FROM `analytics`.`events` "
            "WHERE _partition_id = {partition_id:String}"
        )
        assert params == {"partition_id": "202401"}

    @pytest.mark.asyncio
    async def test_delete_partition_is_synchronous(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        await ch_engine.delete_partition("events_v2", SOURCE_PREDICATE)

        sql, _, settings = client.commands[-1]
        assert sql == (
            "ALTER TABLE `analytics`.`events_v2` DELETE WHERE (toYYYYMM(day)) = 202401"
        )
        assert settings == {"mutations_sync": 2}

    @pytest.mark.asyncio
    async def test_aggregate(self, client: FakeClient, ch_engine: ClickHouseStorageEngine) -> None:
        client.answers["cityHash64"] = [(42, 123456789)]

        aggregate = await ch_engine.aggregate("events_v2", SOURCE_PREDICATE)

        assert aggregate.rows == 42
        assert aggregate.checksum == 123456789
        sql, _ = client.queries[-1]
        assert "sum(cityHash64(`day`, `id`, `value`))" in sql

    @pytest.mark.asyncio
    async def test_empty_aggregate(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        client.answers["cityHash64"] = [(0, None)]

        aggregate = await ch_engine.aggregate("events_v2", SOURCE_PREDICATE)

        assert aggregate.rows == 0
        assert aggregate.checksum == 0


class TestLifecycle:
    """Exchange, drop and close."""

    @pytest.mark.asyncio
    async def test_exchange(self, client: FakeClient, ch_engine: ClickHouseStorageEngine) -> None:
        await ch_engine.exchange("events", "events_v2")

        sql, _, _ = client.commands[-1]
        assert sql == "EXCHANGE TABLES `analytics`.`events` AND `analytics`.`events_v2`"

    @pytest.mark.asyncio
    async def test_exchange_error_verbatim(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        message = "Code: 48. DB::Exception: EXCHANGE is not supported for Ordinary databases"
        client.command_error = DatabaseError(message)

        with pytest.raises(EngineError) as exc_info:
            await ch_engine.exchange("events", "events_v2")

        assert str(exc_info.value) == message
        assert exc_info.value.operation == "exchange"

    @pytest.mark.asyncio
    async def test_exchange_invalidates_metadata(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        await ch_engine.list_partitions("events")
        await ch_engine.exchange("events", "events_v2")
        await ch_engine.list_partitions("events")

        metadata_queries = [sql for sql, _ in client.queries if "system.columns" in sql]
        assert len(metadata_queries) == 2

    @pytest.mark.asyncio
    async def test_dataset_exists(
        self, client: FakeClient, ch_engine: ClickHouseStorageEngine
    ) -> None:
        client.answers["SELECT count() FROM system.tables"] = [(1,)]

        assert await ch_engine.dataset_exists("events_v2")

    @pytest.mark.asyncio
    async def test_drop(self, client: FakeClient, ch_engine: ClickHouseStorageEngine) -> None:
        await ch_engine.drop_dataset("events_v2")

        sql, _, _ = client.commands[-1]
        assert sql == "DROP TABLE `analytics`.`events_v2` SYNC"

    @pytest.mark.asyncio
    async def test_close(self, client: FakeClient, ch_engine: ClickHouseStorageEngine) -> None:
        await ch_engine.close()

        client.close.assert_awaited_once()
