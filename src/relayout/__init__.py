"""
relayout - Partition-by-partition table layout migrations.

This library provides:
- Health Gate over live storage engine signals (mutations, disk, merges, replicas)
- Partition Enumerator and an idempotent, verifying Unit Executor
- Progress Ledger with In-Memory, SQLite and PostgreSQL backends
- Migration Controller with pause/resume/cancel and crash recovery
- Cutover Coordinator with atomic exchange, rollback and retention purge
- ClickHouse and In-Memory storage engines
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("relayout-py")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from relayout.controller import MigrationController
from relayout.cutover import CutoverCoordinator
from relayout.engine import (
    ClickHouseSettings,
    ClickHouseStorageEngine,
    InMemoryStorageEngine,
    StorageEngine,
)
from relayout.enumerator import PartitionEnumerator
from relayout.exceptions import (
    CutoverError,
    EngineError,
    EnumerationError,
    IllegalTransition,
    IntegrityError,
    InvalidJobTransitionError,
    JobAlreadyActiveError,
    JobNotFoundError,
    JobStateError,
    MigrationError,
    PreconditionError,
    RetryConfig,
    TransientEngineError,
    UnitNotFoundError,
)
from relayout.executor import UnitExecutor
from relayout.health import HealthGate
from relayout.locks import (
    InMemoryLockManager,
    PostgreSQLLockManager,
    SQLiteLockManager,
    target_lock_key,
)
from relayout.models import (
    CutoverOutcome,
    CutoverRecord,
    HealthCheckResult,
    HealthSnapshot,
    JobSpec,
    JobStatus,
    JobStatusReport,
    MigrationConfig,
    MigrationJob,
    MigrationUnit,
    UnitOutcome,
    UnitState,
)
from relayout.repositories import (
    InMemoryJobRepository,
    InMemoryProgressLedger,
    JobRepository,
    PostgreSQLJobRepository,
    PostgreSQLProgressLedger,
    ProgressLedger,
    SQLiteJobRepository,
    SQLiteProgressLedger,
)

__all__ = [
    "__version__",
    # Orchestration
    "MigrationController",
    "CutoverCoordinator",
    "HealthGate",
    "PartitionEnumerator",
    "UnitExecutor",
    # Engines
    "StorageEngine",
    "InMemoryStorageEngine",
    "ClickHouseSettings",
    "ClickHouseStorageEngine",
    # State
    "JobRepository",
    "InMemoryJobRepository",
    "SQLiteJobRepository",
    "PostgreSQLJobRepository",
    "ProgressLedger",
    "InMemoryProgressLedger",
    "SQLiteProgressLedger",
    "PostgreSQLProgressLedger",
    "InMemoryLockManager",
    "PostgreSQLLockManager",
    "SQLiteLockManager",
    "target_lock_key",
    # Models
    "CutoverOutcome",
    "CutoverRecord",
    "HealthCheckResult",
    "HealthSnapshot",
    "JobSpec",
    "JobStatus",
    "JobStatusReport",
    "MigrationConfig",
    "MigrationJob",
    "MigrationUnit",
    "UnitOutcome",
    "UnitState",
    # Errors
    "MigrationError",
    "EngineError",
    "TransientEngineError",
    "IntegrityError",
    "PreconditionError",
    "IllegalTransition",
    "EnumerationError",
    "JobNotFoundError",
    "UnitNotFoundError",
    "JobAlreadyActiveError",
    "JobStateError",
    "InvalidJobTransitionError",
    "CutoverError",
    "RetryConfig",
]
