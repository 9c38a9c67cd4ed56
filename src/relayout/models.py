"""
Data models for the relayout partition migration orchestrator.

Models in this module:

Enums:
    - JobStatus: Migration job lifecycle
    - UnitState: Per-partition unit lifecycle
    - CutoverOutcome: Result of the atomic exchange

Configuration:
    - MigrationConfig: Gate thresholds, retry ceiling, parallelism, backoff
    - JobSpec: Operator input for starting a job

Engine read models:
    - VolumeSpace, MergePressure, ReplicaStatus
    - PartitionInfo, PartitionPredicate, PartitionAggregate

Core Models:
    - MigrationJob: A source -> shadow target table migration
    - MigrationUnit: One partition of the source dataset
    - HealthSnapshot: Storage engine signals read for one gate check
    - HealthCheckResult: Gate decision with its reasons
    - UnitOutcome: What the executor reports for one unit execution
    - CutoverRecord: Result of a cutover attempt
    - JobStatusReport: Job plus unit states for operators
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from relayout.exceptions import RetryConfig


class JobStatus(Enum):
    """
    Migration job lifecycle.

    State machine transitions:
        PLANNING -> RUNNING -> COMPLETED -> CUTOVER_DONE
                      ^  |        |
                      |  v        +------> FAILED (cutover failure)
                    PAUSED
        PLANNING/RUNNING/PAUSED ---------> FAILED

    Attributes:
        PLANNING: Job created, partitions being enumerated.
        RUNNING: Control loop dispatching units.
        PAUSED: Dispatch stopped (health gate or operator request).
        COMPLETED: Every unit is done; waiting for cutover.
        FAILED: Unrecoverable error, retry ceiling reached, cancel, or
            cutover failure. Source is untouched.
        CUTOVER_DONE: Shadow target swapped in.
    """

    PLANNING = "planning"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CUTOVER_DONE = "cutover_done"

    @property
    def is_terminal(self) -> bool:
        """
        Check if this is a terminal status.

        Returns:
            True for FAILED and CUTOVER_DONE.
        """
        return self in (JobStatus.FAILED, JobStatus.CUTOVER_DONE)

    @property
    def is_active(self) -> bool:
        """
        Check if a job in this status owns its target dataset.

        Returns:
            True for every non-terminal status.
        """
        return not self.is_terminal

    def can_transition_to(self, target: JobStatus) -> bool:
        """
        Check if transition to target status is valid.

        Args:
            target: The target status.

        Returns:
            True if the transition is valid.
        """
        valid_transitions: dict[JobStatus, tuple[JobStatus, ...]] = {
            JobStatus.PLANNING: (JobStatus.RUNNING, JobStatus.FAILED),
            JobStatus.RUNNING: (JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED),
            JobStatus.PAUSED: (JobStatus.RUNNING, JobStatus.FAILED),
            JobStatus.COMPLETED: (JobStatus.CUTOVER_DONE, JobStatus.FAILED),
        }
        return target in valid_transitions.get(self, ())


class UnitState(Enum):
    """
    Migration unit lifecycle.

    Valid transitions:
        - PENDING -> IN_FLIGHT: Unit dispatched to the executor
        - IN_FLIGHT -> DONE: Copy verified
        - IN_FLIGHT -> FAILED: Copy or verification failed
        - FAILED -> PENDING: Retry

    DONE is terminal and never revisited.
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self == UnitState.DONE

    def can_transition_to(self, target: UnitState) -> bool:
        valid_transitions: dict[UnitState, tuple[UnitState, ...]] = {
            UnitState.PENDING: (UnitState.IN_FLIGHT,),
            UnitState.IN_FLIGHT: (UnitState.DONE, UnitState.FAILED),
            UnitState.FAILED: (UnitState.PENDING,),
        }
        return target in valid_transitions.get(self, ())


class CutoverOutcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for a migration job.

    Persisted with the job so a resumed controller runs with the same
    thresholds. Immutable for the lifetime of the job.

    Attributes:
        max_outstanding_mutations: Gate ceiling on unfinished mutations (default 0).
        min_free_disk_fraction: Gate floor on free space per volume (default 0.20).
        max_merge_queue_depth: Gate ceiling on queued/running merges (default 10).
        max_active_parts: Gate ceiling on active parts of any involved table
            (default 300).
        max_replica_lag_seconds: Gate ceiling on replica lag (default 60).
        max_attempts: Per-unit retry ceiling (default 5).
        parallelism: Units executed concurrently (default 4).
        gate_backoff: Backoff between gate re-polls while paused.
        retry_backoff: Delay before a failed unit is dispatched again.
        verify_checksum: Compare content checksums as well as row counts.
        auto_cutover: Run cutover as soon as the job completes.
        retention_hours: How long the exchanged-out original is kept for rollback.
        poll_interval_seconds: Idle wait of the control loop between checks
            of operator requests.

    Example:
        >>> config = MigrationConfig(parallelism=8, auto_cutover=False)
        >>> config.max_attempts
        5
    """

    max_outstanding_mutations: int = 0
    min_free_disk_fraction: float = 0.20
    max_merge_queue_depth: int = 10
    max_active_parts: int = 300
    max_replica_lag_seconds: float = 60.0
    max_attempts: int = 5
    parallelism: int = 4
    gate_backoff: RetryConfig = field(
        default_factory=lambda: RetryConfig(base_delay_ms=1000.0, max_delay_ms=60000.0)
    )
    retry_backoff: RetryConfig = field(
        default_factory=lambda: RetryConfig(base_delay_ms=500.0, max_delay_ms=30000.0)
    )
    verify_checksum: bool = True
    auto_cutover: bool = True
    retention_hours: int = 72
    poll_interval_seconds: float = 1.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_outstanding_mutations < 0:
            raise ValueError(
                f"max_outstanding_mutations must be >= 0, got {self.max_outstanding_mutations}"
            )
        if not 0.0 <= self.min_free_disk_fraction < 1.0:
            raise ValueError(
                f"min_free_disk_fraction must be in [0, 1), got {self.min_free_disk_fraction}"
            )
        if self.max_merge_queue_depth < 0:
            raise ValueError(
                f"max_merge_queue_depth must be >= 0, got {self.max_merge_queue_depth}"
            )
        if self.max_active_parts < 1:
            raise ValueError(f"max_active_parts must be >= 1, got {self.max_active_parts}")
        if self.max_replica_lag_seconds < 0:
            raise ValueError(
                f"max_replica_lag_seconds must be >= 0, got {self.max_replica_lag_seconds}"
            )
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.retention_hours < 0:
            raise ValueError(f"retention_hours must be >= 0, got {self.retention_hours}")
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be > 0, got {self.poll_interval_seconds}"
            )

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.retention_hours)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "max_outstanding_mutations": self.max_outstanding_mutations,
            "min_free_disk_fraction": self.min_free_disk_fraction,
            "max_merge_queue_depth": self.max_merge_queue_depth,
            "max_active_parts": self.max_active_parts,
            "max_replica_lag_seconds": self.max_replica_lag_seconds,
            "max_attempts": self.max_attempts,
            "parallelism": self.parallelism,
            "gate_backoff": self.gate_backoff.to_dict(),
            "retry_backoff": self.retry_backoff.to_dict(),
            "verify_checksum": self.verify_checksum,
            "auto_cutover": self.auto_cutover,
            "retention_hours": self.retention_hours,
            "poll_interval_seconds": self.poll_interval_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        """
        Create from dictionary. Missing keys take their defaults.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            MigrationConfig instance.

        Raises:
            ValueError: On unknown keys, here or in a backoff, or invalid values
        """
        _reject_unknown_keys(data, cls, "config")
        defaults = cls()
        gate_backoff = data.get("gate_backoff")
        retry_backoff = data.get("retry_backoff")
        if gate_backoff:
            _reject_unknown_keys(gate_backoff, RetryConfig, "gate_backoff")
        if retry_backoff:
            _reject_unknown_keys(retry_backoff, RetryConfig, "retry_backoff")
        return cls(
            max_outstanding_mutations=data.get(
                "max_outstanding_mutations", defaults.max_outstanding_mutations
            ),
            min_free_disk_fraction=data.get(
                "min_free_disk_fraction", defaults.min_free_disk_fraction
            ),
            max_merge_queue_depth=data.get("max_merge_queue_depth", defaults.max_merge_queue_depth),
            max_active_parts=data.get("max_active_parts", defaults.max_active_parts),
            max_replica_lag_seconds=data.get(
                "max_replica_lag_seconds", defaults.max_replica_lag_seconds
            ),
            max_attempts=data.get("max_attempts", defaults.max_attempts),
            parallelism=data.get("parallelism", defaults.parallelism),
            gate_backoff=(
                RetryConfig.from_dict(gate_backoff) if gate_backoff else defaults.gate_backoff
            ),
            retry_backoff=(
                RetryConfig.from_dict(retry_backoff) if retry_backoff else defaults.retry_backoff
            ),
            verify_checksum=data.get("verify_checksum", defaults.verify_checksum),
            auto_cutover=data.get("auto_cutover", defaults.auto_cutover),
            retention_hours=data.get("retention_hours", defaults.retention_hours),
            poll_interval_seconds=data.get(
                "poll_interval_seconds", defaults.poll_interval_seconds
            ),
        )


def _reject_unknown_keys(data: dict[str, Any], config_cls: type, context: str) -> None:
    unknown = sorted(set(data) - {f.name for f in fields(config_cls)})
    if unknown:
        raise ValueError(f"Unknown {context} keys: {', '.join(unknown)}")


class JobSpec(BaseModel):
    """
    Operator input for starting a migration job.

    The target must already exist with the new layout (sort key, partition
    scheme) and the same columns as the source.

    Example:
        >>> spec = JobSpec(source="analytics.events", target="analytics.events_v2")
        >>> spec.to_config().parallelism
        4
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    job_id: UUID | None = None
    created_by: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("source", "target")
    @classmethod
    def _validate_dataset_name(cls, value: str) -> str:
        value = value.strip()
        parts = value.split(".")
        if len(parts) > 2 or not all(parts):
            raise ValueError(f"dataset name must be 'table' or 'database.table', got {value!r}")
        return value

    @field_validator("config")
    @classmethod
    def _validate_config(cls, value: dict[str, Any]) -> dict[str, Any]:
        try:
            MigrationConfig.from_dict(value)
        except (TypeError, AttributeError) as e:
            raise ValueError(f"invalid config value: {e}") from e
        return value

    @model_validator(mode="after")
    def _validate_distinct(self) -> JobSpec:
        if self.source == self.target:
            raise ValueError("source and target must be different datasets")
        return self

    def to_config(self) -> MigrationConfig:
        return MigrationConfig.from_dict(self.config)


# =============================================================================
# Engine read models
# =============================================================================


@dataclass(frozen=True)
class VolumeSpace:
    """Free and total bytes of one storage volume (disk)."""

    name: str
    free_bytes: int
    total_bytes: int

    @property
    def free_fraction(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.free_bytes / self.total_bytes


@dataclass(frozen=True)
class MergePressure:
    """
    Merge activity on the involved tables.

    Attributes:
        queue_depth: Running merges plus merges queued on replicas.
        max_active_parts: Highest active part count of any involved table.
    """

    queue_depth: int
    max_active_parts: int = 0


@dataclass(frozen=True)
class ReplicaStatus:
    """Replication state of the involved tables."""

    max_lag_seconds: float
    readonly_replicas: int = 0


@dataclass(frozen=True)
class PartitionInfo:
    """
    One partition of a dataset as reported by the engine.

    Attributes:
        partition_id: Stable engine-assigned partition identifier.
        partition_value: Literal of the partition key value (e.g. ``202401``
            or ``'2024-01-01'``), usable in a predicate.
        rows: Active row count.
        bytes_on_disk: Compressed size on disk.
    """

    partition_id: str
    partition_value: str
    rows: int
    bytes_on_disk: int


@dataclass(frozen=True)
class PartitionPredicate:
    """
    Rows belonging to one partition of the SOURCE dataset.

    The predicate is always expressed with the source's partition key, so
    it selects the same rows in the target even though the target is
    partitioned differently.
    """

    source: str
    partition_id: str
    partition_value: str


@dataclass(frozen=True)
class PartitionAggregate:
    """Row count and content checksum over the rows matching a predicate."""

    rows: int
    checksum: int


# =============================================================================
# Core models
# =============================================================================


@dataclass
class MigrationUnit:
    """
    One partition-equivalent chunk of the source dataset.

    Mutable: the ledger applies state transitions to it. The unit id is the
    source's own partition id and is stable across restarts.

    Attributes:
        job_id: Owning job.
        unit_id: Source partition id.
        position: Enumeration order (largest partitions first).
        partition_value: Partition key literal for predicates.
        row_estimate: Rows at enumeration time.
        byte_estimate: Bytes on disk at enumeration time.
        state: Current unit state.
        attempt_count: Times the unit has been dispatched.
        last_error: Last failure diagnostic, cleared on success.
        last_attempt_at: When the unit was last dispatched.
        updated_at: Last ledger write.
    """

    job_id: UUID
    unit_id: str
    position: int
    partition_value: str
    row_estimate: int = 0
    byte_estimate: int = 0
    state: UnitState = UnitState.PENDING
    attempt_count: int = 0
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_done(self) -> bool:
        return self.state == UnitState.DONE

    def can_retry(self, max_attempts: int) -> bool:
        """
        Check if a failed unit may be dispatched again.

        Args:
            max_attempts: The job's retry ceiling.

        Returns:
            True if the unit is failed and below the ceiling.
        """
        return self.state == UnitState.FAILED and self.attempt_count < max_attempts

    def is_exhausted(self, max_attempts: int) -> bool:
        return self.state == UnitState.FAILED and self.attempt_count >= max_attempts

    def predicate(self, source: str) -> PartitionPredicate:
        return PartitionPredicate(
            source=source,
            partition_id=self.unit_id,
            partition_value=self.partition_value,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "position": self.position,
            "partition_value": self.partition_value,
            "row_estimate": self.row_estimate,
            "byte_estimate": self.byte_estimate,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }


@dataclass
class MigrationJob:
    """
    A migration of one source dataset into a shadow target.

    Mutable: owned by the controller, which persists every change through
    the job repository.

    Attributes:
        id: Unique job identifier.
        source: Source dataset ('database.table').
        target: Shadow target dataset.
        status: Current job status.
        config: Job configuration.
        created_at: When the job was created.
        updated_at: When the job was last updated.
        created_by: Who started the job.
        enumerated_at: When the partitions were enumerated.
        started_at: When the job entered RUNNING for the first time.
        completed_at: When every unit was done.
        unit_count: Units enumerated.
        rows_estimate: Source rows at enumeration time.
        bytes_estimate: Source bytes at enumeration time.
        pause_reason: Why the job is paused.
        pause_requested: Operator asked for a pause.
        cancel_requested: Operator asked for a cancel.
        last_error: Error that failed the job.
        cutover_at: When the exchange succeeded.
        rolled_back_at: When the cutover was rolled back.
        retained_purged_at: When the retained original was dropped.
    """

    id: UUID
    source: str
    target: str
    status: JobStatus = JobStatus.PLANNING
    config: MigrationConfig = field(default_factory=MigrationConfig)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None
    enumerated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    unit_count: int = 0
    rows_estimate: int = 0
    bytes_estimate: int = 0
    pause_reason: str | None = None
    pause_requested: bool = False
    cancel_requested: bool = False
    last_error: str | None = None
    cutover_at: datetime | None = None
    rolled_back_at: datetime | None = None
    retained_purged_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def retention_expires_at(self) -> datetime | None:
        """
        End of the rollback window.

        Returns:
            Cutover time plus retention, or None before cutover.
        """
        if self.cutover_at is None:
            return None
        return self.cutover_at + self.config.retention

    @property
    def rollback_available(self) -> bool:
        """
        Check whether the cutover can still be rolled back.

        Returns:
            True after a successful cutover that was neither rolled back
            nor purged.
        """
        return (
            self.status == JobStatus.CUTOVER_DONE
            and self.rolled_back_at is None
            and self.retained_purged_at is None
        )

    def can_transition_to(self, target_status: JobStatus) -> bool:
        return self.status.can_transition_to(target_status)

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": str(self.id),
            "source": self.source,
            "target": self.target,
            "status": self.status.value,
            "config": self.config.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
            "enumerated_at": _iso(self.enumerated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "unit_count": self.unit_count,
            "rows_estimate": self.rows_estimate,
            "bytes_estimate": self.bytes_estimate,
            "pause_reason": self.pause_reason,
            "pause_requested": self.pause_requested,
            "cancel_requested": self.cancel_requested,
            "last_error": self.last_error,
            "cutover_at": _iso(self.cutover_at),
            "rolled_back_at": _iso(self.rolled_back_at),
            "retained_purged_at": _iso(self.retained_purged_at),
        }


@dataclass(frozen=True)
class HealthSnapshot:
    """
    Storage engine signals read for one gate check.

    Never persisted. Fields are None when the check short-circuited before
    reading them.

    Attributes:
        mutation_queue_depth: Unfinished mutations on the involved tables.
        volumes: Space of every volume touched by source and target.
        merge_queue_depth: Running plus queued merges.
        max_active_parts: Highest active part count of any involved table.
        merge_saturated: Whether merge pressure exceeded its ceiling.
        replica_lag_seconds: Max replica lag, None when not replicated.
        readonly_replicas: Replicas currently read-only.
        taken_at: When the snapshot was read.
    """

    mutation_queue_depth: int | None = None
    volumes: tuple[VolumeSpace, ...] | None = None
    merge_queue_depth: int | None = None
    max_active_parts: int | None = None
    merge_saturated: bool | None = None
    replica_lag_seconds: float | None = None
    readonly_replicas: int | None = None
    taken_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def free_disk_fractions(self) -> dict[str, float]:
        return {volume.name: volume.free_fraction for volume in self.volumes or ()}


@dataclass(frozen=True)
class HealthCheckResult:
    """
    Health gate decision.

    Attributes:
        ok: Whether it is safe to dispatch work.
        reasons: Failing conditions (only the first, since checks short-circuit).
        snapshot: Signals read for this decision.
    """

    ok: bool
    reasons: tuple[str, ...] = ()
    snapshot: HealthSnapshot = field(default_factory=HealthSnapshot)

    def __iter__(self) -> Iterator[Any]:
        # Allows ``ok, reasons = await gate.check()``
        return iter((self.ok, list(self.reasons)))


@dataclass(frozen=True)
class UnitOutcome:
    """
    What the executor reports for one unit execution.

    The executor never mutates the ledger; the controller applies outcomes.

    Attributes:
        unit_id: Unit that was executed.
        success: Copy verified.
        source_rows: Rows in the source partition.
        target_rows: Rows in the target after the copy.
        source_checksum: Source checksum (None when not compared).
        target_checksum: Target checksum (None when not compared).
        cleared_rows: Rows removed from the target before copying.
        duration_ms: Execution time.
        error: Failure diagnostic.
        error_code: Classification code of the failure.
        retryable: Whether the controller may retry the unit.
    """

    unit_id: str
    success: bool
    source_rows: int = 0
    target_rows: int = 0
    source_checksum: int | None = None
    target_checksum: int | None = None
    cleared_rows: int = 0
    duration_ms: float = 0.0
    error: str | None = None
    error_code: str | None = None
    retryable: bool = True


@dataclass(frozen=True)
class CutoverRecord:
    """
    Result of a cutover attempt.

    Immutable: created once by the cutover coordinator. Whether rollback is
    still possible later also depends on the job (rolled back, purged).

    Attributes:
        job_id: Job that was cut over.
        performed_at: When the exchange was attempted.
        source: Dataset of record (keeps its name across the exchange).
        prior_target_name: Shadow target name before the exchange.
        outcome: SUCCESS or FAILURE.
        rollback_available: True when the original was retained.
        retained_name: Where the original data lives after a successful
            exchange (the former target name).
        error_message: Engine error verbatim on failure.
        duration_ms: Time spent in the exchange.
    """

    job_id: UUID
    performed_at: datetime
    source: str
    prior_target_name: str
    outcome: CutoverOutcome
    rollback_available: bool
    retained_name: str | None = None
    error_message: str | None = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome == CutoverOutcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "performed_at": self.performed_at.isoformat(),
            "source": self.source,
            "prior_target_name": self.prior_target_name,
            "outcome": self.outcome.value,
            "rollback_available": self.rollback_available,
            "retained_name": self.retained_name,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class JobStatusReport:
    """
    Job status with per-unit detail for operators.

    A failed job always names the units responsible in ``failing_units``.
    ``enumerated_at`` is reported because rows written to the source after
    enumeration are not part of the job.
    """

    job: MigrationJob
    units: tuple[MigrationUnit, ...]
    cutover: CutoverRecord | None = None

    @property
    def units_total(self) -> int:
        return len(self.units)

    def count(self, state: UnitState) -> int:
        return sum(1 for unit in self.units if unit.state == state)

    @property
    def bytes_total(self) -> int:
        return sum(unit.byte_estimate for unit in self.units)

    @property
    def bytes_done(self) -> int:
        return sum(unit.byte_estimate for unit in self.units if unit.is_done)

    @property
    def progress_percent(self) -> float:
        if not self.units:
            return 100.0 if self.job.completed_at else 0.0
        return self.count(UnitState.DONE) / len(self.units) * 100

    @property
    def failing_units(self) -> list[MigrationUnit]:
        return [unit for unit in self.units if unit.state == UnitState.FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job.to_dict(),
            "progress": {
                "units_total": self.units_total,
                "units_done": self.count(UnitState.DONE),
                "units_in_flight": self.count(UnitState.IN_FLIGHT),
                "units_pending": self.count(UnitState.PENDING),
                "units_failed": self.count(UnitState.FAILED),
                "bytes_total": self.bytes_total,
                "bytes_done": self.bytes_done,
                "percent": round(self.progress_percent, 2),
            },
            "enumerated_at": (
                self.job.enumerated_at.isoformat() if self.job.enumerated_at else None
            ),
            "failing_units": [
                {
                    "unit_id": unit.unit_id,
                    "attempt_count": unit.attempt_count,
                    "last_error": unit.last_error,
                }
                for unit in self.failing_units
            ],
            "units": [unit.to_dict() for unit in self.units],
            "cutover": self.cutover.to_dict() if self.cutover else None,
        }


__all__ = [
    "JobStatus",
    "UnitState",
    "CutoverOutcome",
    "MigrationConfig",
    "JobSpec",
    "VolumeSpace",
    "MergePressure",
    "ReplicaStatus",
    "PartitionInfo",
    "PartitionPredicate",
    "PartitionAggregate",
    "MigrationUnit",
    "MigrationJob",
    "HealthSnapshot",
    "HealthCheckResult",
    "UnitOutcome",
    "CutoverRecord",
    "JobStatusReport",
]
