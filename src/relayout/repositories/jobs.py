"""
Job repository.

Durable storage for migration jobs and cutover records. Status changes are
validated against the job state machine and applied as compare-and-set on
the stored status, so a stale writer can never move a job backwards.

Operator pause/cancel requests are stored as flags, letting a CLI process
steer a controller running somewhere else; the controller re-reads the job
on every loop iteration.

At most one active (non-terminal) job may exist per target dataset.
``create`` enforces this, and the SQL schemas back it with a partial unique
index.

Implementations:
    - InMemoryJobRepository: tests
    - SQLiteJobRepository: single-host deployments (aiosqlite)
    - PostgreSQLJobRepository: shared state (SQLAlchemy async)
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from relayout.exceptions import (
    InvalidJobTransitionError,
    JobAlreadyActiveError,
    JobNotFoundError,
    JobStateError,
)
from relayout.models import CutoverOutcome, CutoverRecord, JobStatus, MigrationConfig, MigrationJob
from relayout.observability import (
    ATTR_DB_SYSTEM,
    ATTR_JOB_ID,
    ATTR_JOB_STATUS,
    ATTR_TARGET,
    Tracer,
    create_tracer,
)
from relayout.repositories._connection import execute_with_connection
from relayout.repositories._rows import from_iso, to_iso, truncate_error

if TYPE_CHECKING:
    import aiosqlite


@runtime_checkable
class JobRepository(Protocol):
    """
    Protocol for job repositories.
    """

    async def create(self, job: MigrationJob) -> UUID:
        """
        Persist a new job.

        Raises:
            JobAlreadyActiveError: If an active job already owns the target
            JobStateError: If a job with the same id exists
        """
        ...

    async def get(self, job_id: UUID) -> MigrationJob | None:
        ...

    async def get_active_by_target(self, target: str) -> MigrationJob | None:
        """Return the non-terminal job owning a target, if any."""
        ...

    async def list_jobs(self, status: JobStatus | None = None) -> list[MigrationJob]:
        ...

    async def update_status(
        self,
        job_id: UUID,
        new_status: JobStatus,
        *,
        error: str | None = None,
        pause_reason: str | None = None,
    ) -> MigrationJob:
        """
        Move a job to a new status.

        Sets the timestamp that belongs to the new status, records
        ``error`` as the job's last error when failing, and keeps
        ``pause_reason`` only while paused.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobTransitionError: If the state machine forbids the move
        """
        ...

    async def set_pause_reason(self, job_id: UUID, reason: str | None) -> None:
        ...

    async def record_enumeration(
        self,
        job_id: UUID,
        *,
        unit_count: int,
        rows_estimate: int,
        bytes_estimate: int,
        enumerated_at: datetime,
    ) -> None:
        ...

    async def set_requests(
        self,
        job_id: UUID,
        *,
        pause_requested: bool | None = None,
        cancel_requested: bool | None = None,
    ) -> None:
        """Set or clear operator pause/cancel request flags."""
        ...

    async def mark_rolled_back(self, job_id: UUID, at: datetime) -> None:
        ...

    async def mark_retained_purged(self, job_id: UUID, at: datetime) -> None:
        ...

    async def save_cutover(self, record: CutoverRecord) -> None:
        ...

    async def get_cutover(self, job_id: UUID) -> CutoverRecord | None:
        """Return the most recent cutover record of a job."""
        ...


def _status_changes(
    job: MigrationJob,
    new_status: JobStatus,
    error: str | None,
    pause_reason: str | None,
    now: datetime,
) -> MigrationJob:
    """Validate a status change and return the updated job."""
    if not job.status.can_transition_to(new_status):
        raise InvalidJobTransitionError(job.id, job.status.value, new_status.value)

    updated = replace(job, status=new_status, updated_at=now)
    if new_status == JobStatus.RUNNING:
        updated.pause_reason = None
        if updated.started_at is None:
            updated.started_at = now
    elif new_status == JobStatus.PAUSED:
        updated.pause_reason = pause_reason
    elif new_status == JobStatus.COMPLETED:
        updated.completed_at = now
    elif new_status == JobStatus.CUTOVER_DONE:
        updated.cutover_at = now
    elif new_status == JobStatus.FAILED:
        updated.pause_reason = None
        updated.last_error = truncate_error(error) or updated.last_error
    return updated


class InMemoryJobRepository:
    """
    In-memory job repository for testing.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._jobs: dict[UUID, MigrationJob] = {}
        self._cutovers: dict[UUID, list[CutoverRecord]] = {}
        self._lock = asyncio.Lock()

    def _get_locked(self, job_id: UUID) -> MigrationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def create(self, job: MigrationJob) -> UUID:
        with self._tracer.span(
            "relayout.job_repo.create", {ATTR_JOB_ID: str(job.id), ATTR_TARGET: job.target}
        ):
            now = datetime.now(UTC)
            async with self._lock:
                if job.id in self._jobs:
                    raise JobStateError(f"Job {job.id} already exists", job_id=job.id)
                for existing in self._jobs.values():
                    if existing.target == job.target and existing.is_active:
                        raise JobAlreadyActiveError(job.target, existing.id)
                self._jobs[job.id] = replace(
                    job,
                    created_at=job.created_at or now,
                    updated_at=now,
                )
            return job.id

    async def get(self, job_id: UUID) -> MigrationJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    async def get_active_by_target(self, target: str) -> MigrationJob | None:
        async with self._lock:
            for job in self._jobs.values():
                if job.target == target and job.is_active:
                    return replace(job)
            return None

    async def list_jobs(self, status: JobStatus | None = None) -> list[MigrationJob]:
        async with self._lock:
            jobs = [
                replace(job)
                for job in self._jobs.values()
                if status is None or job.status == status
            ]
        return sorted(jobs, key=lambda j: j.created_at or datetime.min.replace(tzinfo=UTC))

    async def update_status(
        self,
        job_id: UUID,
        new_status: JobStatus,
        *,
        error: str | None = None,
        pause_reason: str | None = None,
    ) -> MigrationJob:
        with self._tracer.span(
            "relayout.job_repo.update_status",
            {ATTR_JOB_ID: str(job_id), ATTR_JOB_STATUS: new_status.value},
        ):
            async with self._lock:
                job = self._get_locked(job_id)
                updated = _status_changes(job, new_status, error, pause_reason, datetime.now(UTC))
                self._jobs[job_id] = updated
                return replace(updated)

    async def set_pause_reason(self, job_id: UUID, reason: str | None) -> None:
        async with self._lock:
            job = self._get_locked(job_id)
            job.pause_reason = reason
            job.updated_at = datetime.now(UTC)

    async def record_enumeration(
        self,
        job_id: UUID,
        *,
        unit_count: int,
        rows_estimate: int,
        bytes_estimate: int,
        enumerated_at: datetime,
    ) -> None:
        async with self._lock:
            job = self._get_locked(job_id)
            job.unit_count = unit_count
            job.rows_estimate = rows_estimate
            job.bytes_estimate = bytes_estimate
            job.enumerated_at = enumerated_at
            job.updated_at = datetime.now(UTC)

    async def set_requests(
        self,
        job_id: UUID,
        *,
        pause_requested: bool | None = None,
        cancel_requested: bool | None = None,
    ) -> None:
        async with self._lock:
            job = self._get_locked(job_id)
            if pause_requested is not None:
                job.pause_requested = pause_requested
            if cancel_requested is not None:
                job.cancel_requested = cancel_requested
            job.updated_at = datetime.now(UTC)

    async def mark_rolled_back(self, job_id: UUID, at: datetime) -> None:
        async with self._lock:
            job = self._get_locked(job_id)
            job.rolled_back_at = at
            job.updated_at = at

    async def mark_retained_purged(self, job_id: UUID, at: datetime) -> None:
        async with self._lock:
            job = self._get_locked(job_id)
            job.retained_purged_at = at
            job.updated_at = at

    async def save_cutover(self, record: CutoverRecord) -> None:
        async with self._lock:
            self._get_locked(record.job_id)
            self._cutovers.setdefault(record.job_id, []).append(record)

    async def get_cutover(self, job_id: UUID) -> CutoverRecord | None:
        async with self._lock:
            records = self._cutovers.get(job_id)
            return records[-1] if records else None

    async def clear(self) -> None:
        """Clear all jobs. Useful for test setup/teardown."""
        async with self._lock:
            self._jobs.clear()
            self._cutovers.clear()


_JOB_COLUMNS = (
    "id, source, target, status, config, created_by, unit_count, rows_estimate, "
    "bytes_estimate, pause_reason, pause_requested, cancel_requested, last_error, "
    "created_at, updated_at, enumerated_at, started_at, completed_at, cutover_at, "
    "rolled_back_at, retained_purged_at"
)

_CUTOVER_COLUMNS = (
    "job_id, performed_at, source, prior_target_name, outcome, rollback_available, "
    "retained_name, error_message, duration_ms"
)


class SQLiteJobRepository:
    """
    SQLite implementation of the job repository.

    Stores jobs in ``relayout_jobs`` and cutover records in
    ``relayout_cutovers`` (see ``relayout.schema``). The configuration is
    stored as JSON text.
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection

    @staticmethod
    def _row_to_job(row: Sequence[Any]) -> MigrationJob:
        return MigrationJob(
            id=UUID(row[0]),
            source=row[1],
            target=row[2],
            status=JobStatus(row[3]),
            config=MigrationConfig.from_dict(json.loads(row[4]) if row[4] else {}),
            created_by=row[5],
            unit_count=row[6],
            rows_estimate=row[7],
            bytes_estimate=row[8],
            pause_reason=row[9],
            pause_requested=bool(row[10]),
            cancel_requested=bool(row[11]),
            last_error=row[12],
            created_at=from_iso(row[13]),
            updated_at=from_iso(row[14]),
            enumerated_at=from_iso(row[15]),
            started_at=from_iso(row[16]),
            completed_at=from_iso(row[17]),
            cutover_at=from_iso(row[18]),
            rolled_back_at=from_iso(row[19]),
            retained_purged_at=from_iso(row[20]),
        )

    async def _fetch_one(self, where: str, params: Sequence[Any]) -> MigrationJob | None:
        cursor = await self._connection.execute(
            f"SELECT {_JOB_COLUMNS} FROM relayout_jobs WHERE {where}", tuple(params)
        )
        row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def _require(self, job_id: UUID) -> MigrationJob:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def create(self, job: MigrationJob) -> UUID:
        with self._tracer.span(
            "relayout.job_repo.create",
            {ATTR_JOB_ID: str(job.id), ATTR_TARGET: job.target, ATTR_DB_SYSTEM: "sqlite"},
        ):
            if await self.get(job.id) is not None:
                raise JobStateError(f"Job {job.id} already exists", job_id=job.id)
            existing = await self.get_active_by_target(job.target)
            if existing is not None:
                raise JobAlreadyActiveError(job.target, existing.id)

            now = datetime.now(UTC)
            try:
                await self._connection.execute(
                    f"""
                    INSERT INTO relayout_jobs ({_JOB_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(job.id),
                        job.source,
                        job.target,
                        job.status.value,
                        json.dumps(job.config.to_dict()),
                        job.created_by,
                        job.unit_count,
                        job.rows_estimate,
                        job.bytes_estimate,
                        job.pause_reason,
                        int(job.pause_requested),
                        int(job.cancel_requested),
                        job.last_error,
                        to_iso(job.created_at or now),
                        to_iso(now),
                        to_iso(job.enumerated_at),
                        to_iso(job.started_at),
                        to_iso(job.completed_at),
                        to_iso(job.cutover_at),
                        to_iso(job.rolled_back_at),
                        to_iso(job.retained_purged_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                await self._connection.rollback()
                raise JobAlreadyActiveError(job.target) from e
            await self._connection.commit()
            return job.id

    async def get(self, job_id: UUID) -> MigrationJob | None:
        return await self._fetch_one("id = ?", (str(job_id),))

    async def get_active_by_target(self, target: str) -> MigrationJob | None:
        return await self._fetch_one(
            "target = ? AND status NOT IN (?, ?)",
            (target, JobStatus.FAILED.value, JobStatus.CUTOVER_DONE.value),
        )

    async def list_jobs(self, status: JobStatus | None = None) -> list[MigrationJob]:
        if status is None:
            cursor = await self._connection.execute(
                f"SELECT {_JOB_COLUMNS} FROM relayout_jobs ORDER BY created_at"
            )
        else:
            cursor = await self._connection.execute(
                f"SELECT {_JOB_COLUMNS} FROM relayout_jobs WHERE status = ? ORDER BY created_at",
                (status.value,),
            )
        rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def update_status(
        self,
        job_id: UUID,
        new_status: JobStatus,
        *,
        error: str | None = None,
        pause_reason: str | None = None,
    ) -> MigrationJob:
        with self._tracer.span(
            "relayout.job_repo.update_status",
            {
                ATTR_JOB_ID: str(job_id),
                ATTR_JOB_STATUS: new_status.value,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            job = await self._require(job_id)
            updated = _status_changes(job, new_status, error, pause_reason, datetime.now(UTC))

            cursor = await self._connection.execute(
                """
                UPDATE relayout_jobs
                SET status = ?, pause_reason = ?, last_error = ?, updated_at = ?,
                    started_at = ?, completed_at = ?, cutover_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    updated.status.value,
                    updated.pause_reason,
                    updated.last_error,
                    to_iso(updated.updated_at),
                    to_iso(updated.started_at),
                    to_iso(updated.completed_at),
                    to_iso(updated.cutover_at),
                    str(job_id),
                    job.status.value,
                ),
            )
            await self._connection.commit()
            if cursor.rowcount == 0:
                latest = await self._require(job_id)
                raise InvalidJobTransitionError(job_id, latest.status.value, new_status.value)
            return updated

    async def _update_fields(self, job_id: UUID, assignments: str, params: Sequence[Any]) -> None:
        cursor = await self._connection.execute(
            f"UPDATE relayout_jobs SET {assignments}, updated_at = ? WHERE id = ?",
            (*params, to_iso(datetime.now(UTC)), str(job_id)),
        )
        await self._connection.commit()
        if cursor.rowcount == 0:
            raise JobNotFoundError(job_id)

    async def set_pause_reason(self, job_id: UUID, reason: str | None) -> None:
        await self._update_fields(job_id, "pause_reason = ?", (reason,))

    async def record_enumeration(
        self,
        job_id: UUID,
        *,
        unit_count: int,
        rows_estimate: int,
        bytes_estimate: int,
        enumerated_at: datetime,
    ) -> None:
        await self._update_fields(
            job_id,
            "unit_count = ?, rows_estimate = ?, bytes_estimate = ?, enumerated_at = ?",
            (unit_count, rows_estimate, bytes_estimate, to_iso(enumerated_at)),
        )

    async def set_requests(
        self,
        job_id: UUID,
        *,
        pause_requested: bool | None = None,
        cancel_requested: bool | None = None,
    ) -> None:
        assignments: list[str] = []
        params: list[Any] = []
        if pause_requested is not None:
            assignments.append("pause_requested = ?")
            params.append(int(pause_requested))
        if cancel_requested is not None:
            assignments.append("cancel_requested = ?")
            params.append(int(cancel_requested))
        if assignments:
            await self._update_fields(job_id, ", ".join(assignments), params)

    async def mark_rolled_back(self, job_id: UUID, at: datetime) -> None:
        await self._update_fields(job_id, "rolled_back_at = ?", (to_iso(at),))

    async def mark_retained_purged(self, job_id: UUID, at: datetime) -> None:
        await self._update_fields(job_id, "retained_purged_at = ?", (to_iso(at),))

    async def save_cutover(self, record: CutoverRecord) -> None:
        with self._tracer.span(
            "relayout.job_repo.save_cutover",
            {ATTR_JOB_ID: str(record.job_id), ATTR_DB_SYSTEM: "sqlite"},
        ):
            await self._connection.execute(
                f"""
                INSERT INTO relayout_cutovers ({_CUTOVER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(record.job_id),
                    to_iso(record.performed_at),
                    record.source,
                    record.prior_target_name,
                    record.outcome.value,
                    int(record.rollback_available),
                    record.retained_name,
                    truncate_error(record.error_message),
                    record.duration_ms,
                ),
            )
            await self._connection.commit()

    async def get_cutover(self, job_id: UUID) -> CutoverRecord | None:
        cursor = await self._connection.execute(
            f"""
            SELECT {_CUTOVER_COLUMNS} FROM relayout_cutovers
            WHERE job_id = ? ORDER BY id DESC LIMIT 1
            """,
            (str(job_id),),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return CutoverRecord(
            job_id=UUID(row[0]),
            performed_at=from_iso(row[1]) or datetime.now(UTC),
            source=row[2],
            prior_target_name=row[3],
            outcome=CutoverOutcome(row[4]),
            rollback_available=bool(row[5]),
            retained_name=row[6],
            error_message=row[7],
            duration_ms=row[8],
        )


class PostgreSQLJobRepository:
    """
    PostgreSQL implementation of the job repository.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://...")
        >>> repo = PostgreSQLJobRepository(engine)
        >>> job = await repo.get(job_id)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    @staticmethod
    def _row_to_job(row: Any) -> MigrationJob:
        config = row.config
        if isinstance(config, str):
            config = json.loads(config)
        return MigrationJob(
            id=row.id,
            source=row.source,
            target=row.target,
            status=JobStatus(row.status),
            config=MigrationConfig.from_dict(config or {}),
            created_by=row.created_by,
            unit_count=row.unit_count,
            rows_estimate=row.rows_estimate,
            bytes_estimate=row.bytes_estimate,
            pause_reason=row.pause_reason,
            pause_requested=row.pause_requested,
            cancel_requested=row.cancel_requested,
            last_error=row.last_error,
            created_at=row.created_at,
            updated_at=row.updated_at,
            enumerated_at=row.enumerated_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            cutover_at=row.cutover_at,
            rolled_back_at=row.rolled_back_at,
            retained_purged_at=row.retained_purged_at,
        )

    async def _fetch(self, where: str, params: dict[str, Any]) -> list[MigrationJob]:
        query = text(f"SELECT {_JOB_COLUMNS} FROM relayout_jobs WHERE {where} ORDER BY created_at")
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            return [self._row_to_job(row) for row in result.fetchall()]

    async def _require(self, job_id: UUID) -> MigrationJob:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def create(self, job: MigrationJob) -> UUID:
        with self._tracer.span(
            "relayout.job_repo.create",
            {ATTR_JOB_ID: str(job.id), ATTR_TARGET: job.target, ATTR_DB_SYSTEM: "postgresql"},
        ):
            if await self.get(job.id) is not None:
                raise JobStateError(f"Job {job.id} already exists", job_id=job.id)
            existing = await self.get_active_by_target(job.target)
            if existing is not None:
                raise JobAlreadyActiveError(job.target, existing.id)

            now = datetime.now(UTC)
            query = text(f"""
                INSERT INTO relayout_jobs ({_JOB_COLUMNS})
                VALUES (:id, :source, :target, :status, CAST(:config AS JSONB), :created_by,
                        :unit_count, :rows_estimate, :bytes_estimate, :pause_reason,
                        :pause_requested, :cancel_requested, :last_error, :created_at,
                        :updated_at, :enumerated_at, :started_at, :completed_at,
                        :cutover_at, :rolled_back_at, :retained_purged_at)
            """)
            params = {
                "id": job.id,
                "source": job.source,
                "target": job.target,
                "status": job.status.value,
                "config": json.dumps(job.config.to_dict()),
                "created_by": job.created_by,
                "unit_count": job.unit_count,
                "rows_estimate": job.rows_estimate,
                "bytes_estimate": job.bytes_estimate,
                "pause_reason": job.pause_reason,
                "pause_requested": job.pause_requested,
                "cancel_requested": job.cancel_requested,
                "last_error": job.last_error,
                "created_at": job.created_at or now,
                "updated_at": now,
                "enumerated_at": job.enumerated_at,
                "started_at": job.started_at,
                "completed_at": job.completed_at,
                "cutover_at": job.cutover_at,
                "rolled_back_at": job.rolled_back_at,
                "retained_purged_at": job.retained_purged_at,
            }
            try:
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    await conn.execute(query, params)
            except SQLAlchemyIntegrityError as e:
                raise JobAlreadyActiveError(job.target) from e
            return job.id

    async def get(self, job_id: UUID) -> MigrationJob | None:
        jobs = await self._fetch("id = :id", {"id": job_id})
        return jobs[0] if jobs else None

    async def get_active_by_target(self, target: str) -> MigrationJob | None:
        jobs = await self._fetch(
            "target = :target AND status NOT IN ('failed', 'cutover_done')",
            {"target": target},
        )
        return jobs[0] if jobs else None

    async def list_jobs(self, status: JobStatus | None = None) -> list[MigrationJob]:
        if status is None:
            return await self._fetch("TRUE", {})
        return await self._fetch("status = :status", {"status": status.value})

    async def update_status(
        self,
        job_id: UUID,
        new_status: JobStatus,
        *,
        error: str | None = None,
        pause_reason: str | None = None,
    ) -> MigrationJob:
        with self._tracer.span(
            "relayout.job_repo.update_status",
            {
                ATTR_JOB_ID: str(job_id),
                ATTR_JOB_STATUS: new_status.value,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            job = await self._require(job_id)
            updated = _status_changes(job, new_status, error, pause_reason, datetime.now(UTC))

            query = text("""
                UPDATE relayout_jobs
                SET status = :status,
                    pause_reason = :pause_reason,
                    last_error = :last_error,
                    updated_at = :updated_at,
                    started_at = :started_at,
                    completed_at = :completed_at,
                    cutover_at = :cutover_at
                WHERE id = :id AND status = :expected_status
            """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    query,
                    {
                        "status": updated.status.value,
                        "pause_reason": updated.pause_reason,
                        "last_error": updated.last_error,
                        "updated_at": updated.updated_at,
                        "started_at": updated.started_at,
                        "completed_at": updated.completed_at,
                        "cutover_at": updated.cutover_at,
                        "id": job_id,
                        "expected_status": job.status.value,
                    },
                )
                changed = result.rowcount

            if changed == 0:
                latest = await self._require(job_id)
                raise InvalidJobTransitionError(job_id, latest.status.value, new_status.value)
            return updated

    async def _update_fields(self, job_id: UUID, assignments: str, params: dict[str, Any]) -> None:
        # assignments are fixed strings built in this class
        query = text(f"""
            UPDATE relayout_jobs
            SET {assignments}, updated_at = :updated_at
            WHERE id = :id
        """)
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(
                query, {**params, "updated_at": datetime.now(UTC), "id": job_id}
            )
            changed = result.rowcount
        if changed == 0:
            raise JobNotFoundError(job_id)

    async def set_pause_reason(self, job_id: UUID, reason: str | None) -> None:
        await self._update_fields(job_id, "pause_reason = :reason", {"reason": reason})

    async def record_enumeration(
        self,
        job_id: UUID,
        *,
        unit_count: int,
        rows_estimate: int,
        bytes_estimate: int,
        enumerated_at: datetime,
    ) -> None:
        await self._update_fields(
            job_id,
            "unit_count = :unit_count, rows_estimate = :rows_estimate, "
            "bytes_estimate = :bytes_estimate, enumerated_at = :enumerated_at",
            {
                "unit_count": unit_count,
                "rows_estimate": rows_estimate,
                "bytes_estimate": bytes_estimate,
                "enumerated_at": enumerated_at,
            },
        )

    async def set_requests(
        self,
        job_id: UUID,
        *,
        pause_requested: bool | None = None,
        cancel_requested: bool | None = None,
    ) -> None:
        assignments: list[str] = []
        params: dict[str, Any] = {}
        if pause_requested is not None:
            assignments.append("pause_requested = :pause_requested")
            params["pause_requested"] = pause_requested
        if cancel_requested is not None:
            assignments.append("cancel_requested = :cancel_requested")
            params["cancel_requested"] = cancel_requested
        if assignments:
            await self._update_fields(job_id, ", ".join(assignments), params)

    async def mark_rolled_back(self, job_id: UUID, at: datetime) -> None:
        await self._update_fields(job_id, "rolled_back_at = :at", {"at": at})

    async def mark_retained_purged(self, job_id: UUID, at: datetime) -> None:
        await self._update_fields(job_id, "retained_purged_at = :at", {"at": at})

    async def save_cutover(self, record: CutoverRecord) -> None:
        with self._tracer.span(
            "relayout.job_repo.save_cutover",
            {ATTR_JOB_ID: str(record.job_id), ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"""
                INSERT INTO relayout_cutovers ({_CUTOVER_COLUMNS})
                VALUES (:job_id, :performed_at, :source, :prior_target_name, :outcome,
                        :rollback_available, :retained_name, :error_message, :duration_ms)
            """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(
                    query,
                    {
                        "job_id": record.job_id,
                        "performed_at": record.performed_at,
                        "source": record.source,
                        "prior_target_name": record.prior_target_name,
                        "outcome": record.outcome.value,
                        "rollback_available": record.rollback_available,
                        "retained_name": record.retained_name,
                        "error_message": truncate_error(record.error_message),
                        "duration_ms": record.duration_ms,
                    },
                )

    async def get_cutover(self, job_id: UUID) -> CutoverRecord | None:
        query = text(f"""
            SELECT {_CUTOVER_COLUMNS} FROM relayout_cutovers
            WHERE job_id = :job_id
            ORDER BY id DESC
            LIMIT 1
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"job_id": job_id})
            row = result.fetchone()
        if row is None:
            return None
        return CutoverRecord(
            job_id=row.job_id,
            performed_at=row.performed_at,
            source=row.source,
            prior_target_name=row.prior_target_name,
            outcome=CutoverOutcome(row.outcome),
            rollback_available=row.rollback_available,
            retained_name=row.retained_name,
            error_message=row.error_message,
            duration_ms=row.duration_ms,
        )


__all__ = [
    "JobRepository",
    "InMemoryJobRepository",
    "SQLiteJobRepository",
    "PostgreSQLJobRepository",
]
