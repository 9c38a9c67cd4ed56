"""
Storage engines a migration runs against.

- StorageEngine: the protocol the orchestrator depends on
- InMemoryStorageEngine: tests and dry runs
- ClickHouseStorageEngine: ClickHouse via clickhouse-connect
"""

from relayout.engine.clickhouse import ClickHouseSettings, ClickHouseStorageEngine
from relayout.engine.in_memory import InMemoryDataset, InMemoryStorageEngine
from relayout.engine.interface import StorageEngine

__all__ = [
    "StorageEngine",
    "InMemoryDataset",
    "InMemoryStorageEngine",
    "ClickHouseSettings",
    "ClickHouseStorageEngine",
]
