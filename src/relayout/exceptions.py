"""
Exceptions for the relayout partition migration orchestrator.

Exception Hierarchy:
    MigrationError (base)
    +-- EngineError
    |   +-- TransientEngineError
    +-- IntegrityError
    +-- PreconditionError
    +-- IllegalTransition
    +-- EnumerationError
    +-- JobNotFoundError
    +-- UnitNotFoundError
    +-- JobAlreadyActiveError
    +-- JobStateError
    |   +-- InvalidJobTransitionError
    +-- CutoverError

Unit-level errors (engine failures, integrity mismatches) are handled by the
controller's retry logic and only escalate to a failed job once a unit has
exhausted its attempts. ``IllegalTransition`` and ``EnumerationError`` are
fatal to the job straight away.

Every exception carries an ``ErrorClassification`` so operator tooling can
decide how to react without matching on class names.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: Ledger corruption or other failures that need a human now.
        ERROR: The job or an operation failed.
        WARNING: A condition that usually resolves by itself (transient
            engine errors, gate pauses).
        INFO: Not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def log_level(self) -> int:
        """Python logging level matching this severity."""
        return {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }[self]


class ErrorRecoverability(Enum):
    """
    How the orchestrator responds to an error.

    Attributes:
        RECOVERABLE: The unit is retried through the clear-and-recopy path,
            or the operation can be repeated once a condition clears.
        TRANSIENT: Temporary engine trouble; retried with backoff.
        FATAL: Never retried; the job fails immediately.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True for errors the controller retries automatically."""
        return self in (ErrorRecoverability.RECOVERABLE, ErrorRecoverability.TRANSIENT)

    @property
    def should_abort(self) -> bool:
        """True for errors that fail the job without retry."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff with jitter.

    Used both for re-dispatching failed units and for re-polling the
    health gate while a job is paused.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Delay before the first retry in milliseconds.
        max_delay_ms: Upper bound for any single delay.
        exponential_base: Growth factor between attempts.
        jitter_factor: Random jitter added on top of the delay (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(base_delay_ms=100, max_delay_ms=10000, jitter_factor=0)
        >>> config.get_delay_ms(3)
        800.0
    """

    max_attempts: int = 5
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate the delay before retry number ``attempt`` (0-indexed).

        Args:
            attempt: How many retries have already happened.

        Returns:
            Delay in milliseconds, never above ``max_delay_ms``.
        """
        delay = self.base_delay_ms * (self.exponential_base ** max(attempt, 0))
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
        return min(delay, self.max_delay_ms)

    def get_delay_seconds(self, attempt: int) -> float:
        """Same as :meth:`get_delay_ms` in seconds, for ``asyncio.sleep``."""
        return self.get_delay_ms(attempt) / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        return cls(
            max_attempts=data.get("max_attempts", 5),
            base_delay_ms=data.get("base_delay_ms", 100.0),
            max_delay_ms=data.get("max_delay_ms", 30000.0),
            exponential_base=data.get("exponential_base", 2.0),
            jitter_factor=data.get("jitter_factor", 0.1),
        )


TRANSIENT_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=500.0,
    max_delay_ms=30000.0,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the orchestrator responds to the error.
        error_code: Stable code for programmatic handling.
        category: Grouping for related errors (engine, ledger, cutover, ...).
        suggested_action: Guidance shown to operators.
        retry_config: Backoff used when the error is retried automatically.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        """
        Convert classification to dictionary for serialization.

        Returns:
            Dictionary representation of the classification.
        """
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        return result


class MigrationError(Exception):
    """
    Base exception for all relayout errors.

    Attributes:
        message: Human-readable error description.
        job_id: The migration job involved, if known.
        unit_id: The migration unit (partition id) involved, if known.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs and job status",
    )

    def __init__(
        self,
        message: str,
        *,
        job_id: UUID | None = None,
        unit_id: str | None = None,
    ) -> None:
        self.message = message
        self.job_id = job_id
        self.unit_id = unit_id
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.job_id:
            parts.append(f"job_id={self.job_id}")
        if self.unit_id is not None:
            parts.append(f"unit_id={self.unit_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for operator output.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "job_id": str(self.job_id) if self.job_id else None,
            "unit_id": self.unit_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


# =============================================================================
# Storage engine errors
# =============================================================================


class EngineError(MigrationError):
    """
    Raised when the storage engine rejects an operation.

    The engine's own error text is kept verbatim in ``message`` so it can be
    surfaced unchanged to the operator.

    Attributes:
        operation: Engine operation that failed (e.g., "copy_partition").
        code: Engine-specific error code, if reported.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ENGINE_ERROR",
        category="engine",
        suggested_action="Inspect the engine error; the unit is retried up to its ceiling",
        retry_config=TRANSIENT_RETRY_CONFIG,
    )

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        code: int | None = None,
        job_id: UUID | None = None,
        unit_id: str | None = None,
    ) -> None:
        self.operation = operation
        self.code = code
        super().__init__(message, job_id=job_id, unit_id=unit_id)

    def __str__(self) -> str:
        # Verbatim engine text; context goes to to_dict
        return self.message

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["operation"] = self.operation
        result["code"] = self.code
        return result


class TransientEngineError(EngineError):
    """Raised for timeouts and temporary unavailability of the engine."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="ENGINE_TRANSIENT",
        category="engine",
        suggested_action="Retried automatically with backoff; check engine load if it persists",
        retry_config=TRANSIENT_RETRY_CONFIG,
    )


# =============================================================================
# Verification errors
# =============================================================================


class IntegrityError(MigrationError):
    """
    Raised when a copied partition does not match its source.

    Never accepted silently: the unit is retried via the clear-and-recopy
    path and the job fails once the unit reaches its retry ceiling.

    Attributes:
        source_rows: Row count of the source partition.
        target_rows: Row count of the target partition.
        source_checksum: Checksum of the source partition (if compared).
        target_checksum: Checksum of the target partition (if compared).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INTEGRITY_MISMATCH",
        category="verification",
        suggested_action=(
            "The partition is cleared and recopied; check for concurrent writes to the target"
        ),
    )

    def __init__(
        self,
        message: str,
        *,
        source_rows: int,
        target_rows: int,
        source_checksum: int | None = None,
        target_checksum: int | None = None,
        job_id: UUID | None = None,
        unit_id: str | None = None,
    ) -> None:
        self.source_rows = source_rows
        self.target_rows = target_rows
        self.source_checksum = source_checksum
        self.target_checksum = target_checksum
        super().__init__(message, job_id=job_id, unit_id=unit_id)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update(
            {
                "source_rows": self.source_rows,
                "target_rows": self.target_rows,
                "source_checksum": self.source_checksum,
                "target_checksum": self.target_checksum,
            }
        )
        return result


class PreconditionError(MigrationError):
    """
    Raised when an operation's precondition is unmet.

    Examples are a negative health gate reading or a cutover requested
    before every unit is done. Causes a wait, never a job failure.

    Attributes:
        reasons: The unmet conditions.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PRECONDITION_UNMET",
        category="precondition",
        suggested_action="Wait for the condition to clear, then retry the operation",
    )

    def __init__(
        self,
        message: str,
        *,
        reasons: list[str] | None = None,
        job_id: UUID | None = None,
    ) -> None:
        self.reasons = list(reasons or [])
        super().__init__(message, job_id=job_id)


class IllegalTransition(MigrationError):  # noqa: N818
    """
    Raised when a unit state change violates the unit state machine.

    Signals a programming error or a corrupted ledger. Fatal to the job and
    never retried.

    Attributes:
        current_state: State recorded in the ledger.
        requested_state: State that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ILLEGAL_UNIT_TRANSITION",
        category="ledger",
        suggested_action="Inspect the progress ledger for corruption; the job cannot continue",
    )

    def __init__(
        self,
        unit_id: str,
        current_state: str,
        requested_state: str,
        *,
        job_id: UUID | None = None,
    ) -> None:
        self.current_state = current_state
        self.requested_state = requested_state
        super().__init__(
            f"Illegal unit transition {current_state} -> {requested_state}",
            job_id=job_id,
            unit_id=unit_id,
        )


class EnumerationError(MigrationError):
    """
    Raised when the source dataset's partitioning cannot be read.

    Fatal at planning time: the job never reaches ``running``.

    Attributes:
        source: The dataset that could not be enumerated.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ENUMERATION_FAILED",
        category="planning",
        suggested_action="Check that the source exists and its partition metadata is readable",
    )

    def __init__(self, message: str, *, source: str, job_id: UUID | None = None) -> None:
        self.source = source
        super().__init__(message, job_id=job_id)


# =============================================================================
# Job errors
# =============================================================================


class JobNotFoundError(MigrationError):
    """Raised when a requested migration job does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="JOB_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the job ID",
    )

    def __init__(self, job_id: UUID) -> None:
        super().__init__(f"Migration job {job_id} not found", job_id=job_id)


class UnitNotFoundError(MigrationError):
    """Raised when a unit id is not part of the job's ledger."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNIT_NOT_FOUND",
        category="ledger",
        suggested_action="Verify the unit id belongs to this job",
    )

    def __init__(self, job_id: UUID, unit_id: str) -> None:
        super().__init__(f"Unit {unit_id!r} not found", job_id=job_id, unit_id=unit_id)


class JobAlreadyActiveError(MigrationError):
    """
    Raised when another job already owns the target dataset.

    Attributes:
        target: The contested target dataset.
        existing_job_id: The job that owns it, if known.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="TARGET_BUSY",
        category="concurrency",
        suggested_action="Wait for the active job to finish or cancel it",
    )

    def __init__(self, target: str, existing_job_id: UUID | None = None) -> None:
        self.target = target
        self.existing_job_id = existing_job_id
        message = f"Target {target} is already owned by an active job"
        if existing_job_id:
            message = f"{message} ({existing_job_id})"
        super().__init__(message, job_id=existing_job_id)


class JobStateError(MigrationError):
    """
    Raised when an operation is invalid for the job's current status.

    Attributes:
        current_status: The job's status when the operation was attempted.
        operation: The operation that was refused.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="JOB_STATE_INVALID",
        category="state",
        suggested_action="Check the job status before retrying the operation",
    )

    def __init__(
        self,
        message: str,
        *,
        job_id: UUID | None = None,
        current_status: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.current_status = current_status
        self.operation = operation
        super().__init__(message, job_id=job_id)


class InvalidJobTransitionError(JobStateError):
    """Raised when a job status change violates the job state machine."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ILLEGAL_JOB_TRANSITION",
        category="state",
        suggested_action="Job state is inconsistent; inspect the job store",
    )

    def __init__(self, job_id: UUID, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid job transition {from_status} -> {to_status}",
            job_id=job_id,
            current_status=from_status,
            operation="transition",
        )


class CutoverError(MigrationError):
    """
    Raised when the atomic exchange or a rollback fails.

    ``message`` is the engine error verbatim when the engine rejected the
    exchange.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CUTOVER_FAILED",
        category="cutover",
        suggested_action="Source is unchanged; start a new job once the conflict is resolved",
    )


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception.

    Relayout errors return their own classification. Timeouts and connection
    problems from drivers are treated as transient; anything else is fatal.

    Args:
        exc: The exception to classify.

    Returns:
        ErrorClassification for the exception.
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransientEngineError._default_classification

    if isinstance(exc, OSError):
        return ErrorClassification(
            severity=ErrorSeverity.WARNING,
            recoverability=ErrorRecoverability.TRANSIENT,
            error_code="IO_ERROR",
            category="connectivity",
            suggested_action="Check network and disk availability",
            retry_config=TRANSIENT_RETRY_CONFIG,
        )

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs.",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "TRANSIENT_RETRY_CONFIG",
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
    "classify_exception",
]
