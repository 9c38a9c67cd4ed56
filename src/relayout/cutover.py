"""
Cutover coordinator.

Swaps the shadow target in as the dataset of record with a single atomic
exchange, and keeps the original around for a retention window so the
swap can be undone.

Cutover sequence:
    1. Check the job is completed and every unit is done
    2. Exchange source and target (one engine operation)
    3. Record the outcome and move the job to cutover_done or failed

After a successful exchange the source name holds the new layout and the
target name holds the original data; that is the retained dataset a
rollback exchanges back.

Usage:
    >>> coordinator = CutoverCoordinator(engine, job_repo, ledger)
    >>> record = await coordinator.cutover(job_id)
    >>> if not record.success:
    ...     print(record.error_message)
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from uuid import UUID

from relayout.engine.interface import StorageEngine
from relayout.exceptions import (
    CutoverError,
    JobNotFoundError,
    JobStateError,
    MigrationError,
    PreconditionError,
)
from relayout.models import CutoverOutcome, CutoverRecord, JobStatus, MigrationJob
from relayout.observability import (
    ATTR_ERROR_TYPE,
    ATTR_JOB_ID,
    ATTR_SOURCE,
    ATTR_TARGET,
    Tracer,
    create_tracer,
)
from relayout.repositories.jobs import JobRepository
from relayout.repositories.ledger import ProgressLedger

logger = logging.getLogger(__name__)


class CutoverCoordinator:
    """
    Performs cutover, rollback and the retention purge.

    Args:
        engine: Storage engine providing the exchange primitive.
        job_repo: Job store.
        ledger: Progress ledger, consulted for the all-done precondition.
        tracer: Optional custom Tracer instance.
        enable_tracing: Emit spans when OpenTelemetry is available.
    """

    def __init__(
        self,
        engine: StorageEngine,
        job_repo: JobRepository,
        ledger: ProgressLedger,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._engine = engine
        self._job_repo = job_repo
        self._ledger = ledger
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def _require_job(self, job_id: UUID) -> MigrationJob:
        job = await self._job_repo.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cutover(self, job_id: UUID) -> CutoverRecord:
        """
        Exchange the shadow target with the source.

        An engine failure does not raise: it is recorded verbatim on the
        returned record and on the job, which becomes failed. The source
        is left as it was and the target is kept.

        Args:
            job_id: Job to cut over.

        Returns:
            CutoverRecord describing the outcome.

        Raises:
            JobNotFoundError: If the job does not exist
            PreconditionError: If the job is not completed or a unit is not done
        """
        with self._tracer.span("relayout.cutover.cutover", {ATTR_JOB_ID: str(job_id)}) as span:
            job = await self._require_job(job_id)
            if span:
                span.set_attribute(ATTR_SOURCE, job.source)
                span.set_attribute(ATTR_TARGET, job.target)

            if job.status != JobStatus.COMPLETED:
                raise PreconditionError(
                    f"Cutover requires a completed job, job is {job.status.value}",
                    reasons=[f"status is {job.status.value}"],
                    job_id=job_id,
                )
            if not await self._ledger.all_done(job_id):
                raise PreconditionError(
                    "Cutover requires every unit to be done",
                    reasons=["units outstanding"],
                    job_id=job_id,
                )

            logger.info("Starting cutover of job %s: %s <-> %s", job_id, job.source, job.target)
            started = time.perf_counter()
            try:
                await self._engine.exchange(job.source, job.target)
            except Exception as e:
                duration_ms = (time.perf_counter() - started) * 1000
                message = e.message if isinstance(e, MigrationError) else str(e)
                message = message or type(e).__name__
                if span:
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                    span.record_exception(e)
                logger.error("Cutover of job %s failed: %s", job_id, message)

                record = CutoverRecord(
                    job_id=job_id,
                    performed_at=datetime.now(UTC),
                    source=job.source,
                    prior_target_name=job.target,
                    outcome=CutoverOutcome.FAILURE,
                    rollback_available=False,
                    error_message=message,
                    duration_ms=duration_ms,
                )
                await self._job_repo.save_cutover(record)
                await self._job_repo.update_status(job_id, JobStatus.FAILED, error=message)
                return record

            duration_ms = (time.perf_counter() - started) * 1000
            record = CutoverRecord(
                job_id=job_id,
                performed_at=datetime.now(UTC),
                source=job.source,
                prior_target_name=job.target,
                outcome=CutoverOutcome.SUCCESS,
                rollback_available=True,
                retained_name=job.target,
                duration_ms=duration_ms,
            )
            await self._job_repo.save_cutover(record)
            await self._job_repo.update_status(job_id, JobStatus.CUTOVER_DONE)
            logger.info(
                "Cutover of job %s done in %.1fms; original retained as %s for %d hours",
                job_id,
                duration_ms,
                job.target,
                job.config.retention_hours,
            )
            return record

    async def rollback(self, job_id: UUID) -> MigrationJob:
        """
        Exchange the retained original back in.

        Args:
            job_id: Job whose cutover is undone.

        Returns:
            The updated job.

        Raises:
            JobStateError: If no cutover can be rolled back (never cut over,
                already rolled back, purged, or retention window elapsed)
            CutoverError: If the engine rejects the exchange
        """
        with self._tracer.span("relayout.cutover.rollback", {ATTR_JOB_ID: str(job_id)}):
            job = await self._require_job(job_id)
            self._check_rollback(job)

            try:
                await self._engine.exchange(job.source, job.target)
            except MigrationError as e:
                logger.error("Rollback of job %s failed: %s", job_id, e.message)
                raise CutoverError(e.message, job_id=job_id) from e

            now = datetime.now(UTC)
            await self._job_repo.mark_rolled_back(job_id, now)
            logger.info(
                "Rolled back cutover of job %s; %s holds the original again", job_id, job.source
            )
            return await self._require_job(job_id)

    def _check_rollback(self, job: MigrationJob) -> None:
        if job.status != JobStatus.CUTOVER_DONE:
            raise JobStateError(
                f"Job {job.id} was not cut over",
                job_id=job.id,
                current_status=job.status.value,
                operation="rollback",
            )
        if job.rolled_back_at is not None:
            raise JobStateError(
                f"Cutover of job {job.id} was already rolled back",
                job_id=job.id,
                current_status=job.status.value,
                operation="rollback",
            )
        if job.retained_purged_at is not None:
            raise JobStateError(
                f"Retained original of job {job.id} was purged",
                job_id=job.id,
                current_status=job.status.value,
                operation="rollback",
            )
        expires = job.retention_expires_at
        if expires is not None and datetime.now(UTC) > expires:
            raise JobStateError(
                f"Retention window of job {job.id} ended at {expires.isoformat()}",
                job_id=job.id,
                current_status=job.status.value,
                operation="rollback",
            )

    async def purge_retained(self, job_id: UUID, *, force: bool = False) -> MigrationJob:
        """
        Drop the retained original after the retention window.

        Args:
            job_id: Job whose retained dataset is dropped.
            force: Purge even if the retention window is still open.

        Returns:
            The updated job.

        Raises:
            JobStateError: If there is nothing retained to purge
            PreconditionError: If the window is still open and not forced
        """
        with self._tracer.span(
            "relayout.cutover.purge_retained", {ATTR_JOB_ID: str(job_id)}
        ) as span:
            job = await self._require_job(job_id)
            if job.status != JobStatus.CUTOVER_DONE or job.rolled_back_at is not None:
                raise JobStateError(
                    f"Job {job.id} retains no original dataset",
                    job_id=job_id,
                    current_status=job.status.value,
                    operation="purge",
                )
            if job.retained_purged_at is not None:
                raise JobStateError(
                    f"Retained original of job {job.id} was already purged",
                    job_id=job_id,
                    current_status=job.status.value,
                    operation="purge",
                )

            expires = job.retention_expires_at
            now = datetime.now(UTC)
            if not force and expires is not None and now < expires:
                raise PreconditionError(
                    f"Retention window open until {expires.isoformat()}",
                    reasons=["retention window open"],
                    job_id=job_id,
                )

            if span:
                span.set_attribute(ATTR_TARGET, job.target)
            if await self._engine.dataset_exists(job.target):
                await self._engine.drop_dataset(job.target)
            else:
                logger.warning("Retained dataset %s of job %s is already gone", job.target, job_id)

            await self._job_repo.mark_retained_purged(job_id, now)
            logger.info("Purged retained original %s of job %s", job.target, job_id)
            return await self._require_job(job_id)


__all__ = ["CutoverCoordinator"]
