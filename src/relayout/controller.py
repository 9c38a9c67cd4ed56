"""
MigrationController - drives a migration job from planning to cutover.

The controller is the operator-facing entry point. It creates jobs,
enumerates their units, and runs one control loop per job in the
background. The loop:

    - applies finished unit outcomes through the progress ledger
    - polls the health gate before every dispatch and pauses the job while
      the gate is negative, re-polling with exponential backoff
    - dispatches failed units below the retry ceiling ahead of pending ones,
      up to the configured parallelism
    - fails the job when a unit exhausts its retry ceiling
    - completes the job when every unit is done, then cuts over if
      auto-cutover is enabled

Only one loop may drive a target at a time. The controller takes the
target lock before the job enters running and the loop holds it until it
exits.

Pause and cancel requests are persisted on the job, so a controller in
another process sees them on its next loop iteration. In-flight unit
executions always finish before a pause or cancel takes effect.

Usage:
    >>> controller = MigrationController(engine, job_repo, ledger)
    >>> job = await controller.start_job(JobSpec(source="db.events", target="db.events_v2"))
    >>> await controller.wait_for_status(job.id, {JobStatus.CUTOVER_DONE})
    >>> report = await controller.get_status(job.id)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable
from datetime import UTC, datetime
from uuid import UUID, uuid4

from relayout.cutover import CutoverCoordinator
from relayout.engine.interface import StorageEngine
from relayout.enumerator import PartitionEnumerator
from relayout.exceptions import (
    EnumerationError,
    IllegalTransition,
    JobAlreadyActiveError,
    JobNotFoundError,
    JobStateError,
)
from relayout.executor import UnitExecutor
from relayout.health import HealthGate
from relayout.locks import InMemoryLockManager, LockAcquisitionError, LockManager, target_lock_key
from relayout.models import (
    CutoverRecord,
    JobSpec,
    JobStatus,
    JobStatusReport,
    MigrationConfig,
    MigrationJob,
    MigrationUnit,
    UnitOutcome,
    UnitState,
)
from relayout.observability import (
    ATTR_JOB_ID,
    ATTR_JOB_STATUS,
    ATTR_SOURCE,
    ATTR_TARGET,
    ATTR_UNIT_COUNT,
    Tracer,
    create_tracer,
)
from relayout.repositories.jobs import JobRepository
from relayout.repositories.ledger import ProgressLedger

logger = logging.getLogger(__name__)

OPERATOR_PAUSE_REASON = "operator requested"
CANCELLED_ERROR = "Cancelled by operator"
INTERRUPTED_ERROR = "interrupted"


class MigrationController:
    """
    Orchestrates migration jobs.

    Example:
        >>> controller = MigrationController(
        ...     engine,
        ...     SQLiteJobRepository(db),
        ...     SQLiteProgressLedger(db),
        ... )
        >>> job = await controller.start_job(spec)
        >>> await controller.pause_job(job.id)
        >>> await controller.resume_job(job.id)

    Args:
        engine: Storage engine holding the source and target.
        job_repo: Job store.
        ledger: Progress ledger.
        lock_manager: Target lock manager. Defaults to an in-process one;
            use SQLiteLockManager when processes share a SQLite state file
            and PostgreSQLLockManager when controllers run on several hosts.
        tracer: Optional custom Tracer instance.
        enable_tracing: Emit spans when OpenTelemetry is available.

    Attributes:
        _tasks: Control loop tasks running in this process, by job id.
        _wakeups: Events that interrupt a loop's wait, by job id. Present
            only while the loop still accepts operator requests.
        _guards: Serialize operator requests with a loop's decision to stop.
    """

    def __init__(
        self,
        engine: StorageEngine,
        job_repo: JobRepository,
        ledger: ProgressLedger,
        *,
        lock_manager: LockManager | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._engine = engine
        self._job_repo = job_repo
        self._ledger = ledger
        self._locks: LockManager = lock_manager or InMemoryLockManager(tracer=self._tracer)
        self._enumerator = PartitionEnumerator(engine, tracer=self._tracer)
        self._cutover = CutoverCoordinator(engine, job_repo, ledger, tracer=self._tracer)

        self._tasks: dict[UUID, asyncio.Task[None]] = {}
        self._wakeups: dict[UUID, asyncio.Event] = {}
        self._guards: dict[UUID, asyncio.Lock] = {}

    # =========================================================================
    # Operator surface
    # =========================================================================

    async def start_job(self, spec: JobSpec) -> MigrationJob:
        """
        Create, plan and start a migration job.

        The control loop runs in the background; use ``wait_for_status``,
        ``join`` or ``get_status`` to follow it.

        Args:
            spec: Source, target and configuration of the job.

        Returns:
            The job, in running status.

        Raises:
            JobAlreadyActiveError: If another job owns the target
            EnumerationError: If the source partitions cannot be read; the
                job is left failed
        """
        config = spec.to_config()
        with self._tracer.span(
            "relayout.controller.start_job",
            {ATTR_SOURCE: spec.source, ATTR_TARGET: spec.target},
        ) as span:
            existing = await self._job_repo.get_active_by_target(spec.target)
            if existing is not None:
                raise JobAlreadyActiveError(spec.target, existing.id)

            lock_key = target_lock_key(spec.target)
            if await self._locks.try_acquire(lock_key) is None:
                logger.warning("Target %s is locked by another controller", spec.target)
                raise JobAlreadyActiveError(spec.target)

            try:
                job = MigrationJob(
                    id=spec.job_id or uuid4(),
                    source=spec.source,
                    target=spec.target,
                    status=JobStatus.PLANNING,
                    config=config,
                    created_by=spec.created_by,
                )
                await self._job_repo.create(job)
                logger.info(
                    "Created job %s: %s -> %s (by %s)",
                    job.id,
                    job.source,
                    job.target,
                    job.created_by or "unknown",
                )
                if span:
                    span.set_attribute(ATTR_JOB_ID, str(job.id))

                units = await self._plan(job)
                if span:
                    span.set_attribute(ATTR_UNIT_COUNT, len(units))
                await self._set_status(job.id, JobStatus.RUNNING)
            except BaseException:
                await self._locks.release(lock_key)
                raise

            self._spawn(job.id, lock_key)
            return await self._require_job(job.id)

    async def get_status(self, job_id: UUID) -> JobStatusReport:
        """
        Get a job with every unit state.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        with self._tracer.span("relayout.controller.get_status", {ATTR_JOB_ID: str(job_id)}):
            job = await self._require_job(job_id)
            units = await self._ledger.load(job_id)
            cutover = await self._job_repo.get_cutover(job_id)
            return JobStatusReport(job=job, units=tuple(units), cutover=cutover)

    async def pause_job(self, job_id: UUID) -> MigrationJob:
        """
        Stop dispatching new units of a job.

        In-flight units finish first; the job then moves to paused and its
        control loop exits.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is not running or paused
        """
        with self._tracer.span("relayout.controller.pause_job", {ATTR_JOB_ID: str(job_id)}):
            job = await self._require_job(job_id)
            if job.status not in (JobStatus.RUNNING, JobStatus.PAUSED):
                raise JobStateError(
                    f"Cannot pause a job in status {job.status.value}",
                    job_id=job_id,
                    current_status=job.status.value,
                    operation="pause",
                )

            logger.info("Pause requested for job %s", job_id)
            if await self._signal(job_id, pause_requested=True):
                return await self._require_job(job_id)

            # No loop here: pause directly unless another process runs one.
            lock_key = target_lock_key(job.target)
            if await self._locks.try_acquire(lock_key) is None:
                return await self._require_job(job_id)
            try:
                job = await self._require_job(job_id)
                if job.status == JobStatus.RUNNING:
                    await self._set_status(
                        job_id, JobStatus.PAUSED, pause_reason=OPERATOR_PAUSE_REASON
                    )
                else:
                    await self._job_repo.set_pause_reason(job_id, OPERATOR_PAUSE_REASON)
            finally:
                await self._locks.release(lock_key)
            return await self._require_job(job_id)

    async def resume_job(self, job_id: UUID) -> MigrationJob:
        """
        Resume a paused job, or recover one whose control loop died.

        Units found in flight were interrupted mid-copy; they are marked
        failed so they go through the clear-and-recopy path. Done units are
        never copied again.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is terminal or completed
            JobAlreadyActiveError: If another process is driving the job
        """
        with self._tracer.span("relayout.controller.resume_job", {ATTR_JOB_ID: str(job_id)}):
            job = await self._require_job(job_id)
            if job.status not in (JobStatus.PLANNING, JobStatus.RUNNING, JobStatus.PAUSED):
                raise JobStateError(
                    f"Cannot resume a job in status {job.status.value}",
                    job_id=job_id,
                    current_status=job.status.value,
                    operation="resume",
                )

            if await self._signal(job_id, pause_requested=False):
                logger.debug("Job %s already has a control loop", job_id)
                return await self._require_job(job_id)

            lock_key = target_lock_key(job.target)
            if await self._locks.try_acquire(lock_key) is None:
                raise JobAlreadyActiveError(job.target, job.id)

            try:
                job = await self._require_job(job_id)
                if job.status == JobStatus.PLANNING:
                    await self._plan(job)
                else:
                    await self._recover_interrupted(job_id)
                if job.status != JobStatus.RUNNING:
                    await self._set_status(job_id, JobStatus.RUNNING)
            except BaseException:
                await self._locks.release(lock_key)
                raise

            logger.info("Resumed job %s", job_id)
            self._spawn(job_id, lock_key)
            return await self._require_job(job_id)

    async def cancel_job(self, job_id: UUID) -> MigrationJob:
        """
        Cancel a job.

        In-flight units finish first, then the job is marked failed. The
        target is left as a discardable artifact.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job already finished
        """
        with self._tracer.span("relayout.controller.cancel_job", {ATTR_JOB_ID: str(job_id)}):
            job = await self._require_job(job_id)
            if job.is_terminal or job.status == JobStatus.COMPLETED:
                raise JobStateError(
                    f"Cannot cancel a job in status {job.status.value}",
                    job_id=job_id,
                    current_status=job.status.value,
                    operation="cancel",
                )

            logger.info("Cancel requested for job %s", job_id)
            if await self._signal(job_id, cancel_requested=True):
                return await self._require_job(job_id)

            lock_key = target_lock_key(job.target)
            if await self._locks.try_acquire(lock_key) is None:
                return await self._require_job(job_id)
            try:
                await self._fail_job(job_id, CANCELLED_ERROR)
            finally:
                await self._locks.release(lock_key)
            return await self._require_job(job_id)

    async def trigger_cutover(self, job_id: UUID) -> CutoverRecord:
        """
        Run the cutover of a completed job manually.

        Raises:
            JobNotFoundError: If the job does not exist
            PreconditionError: If the job is not completed
            JobAlreadyActiveError: If a control loop holds the target
        """
        with self._tracer.span("relayout.controller.trigger_cutover", {ATTR_JOB_ID: str(job_id)}):
            job = await self._require_job(job_id)
            async with self._target_lock(job):
                return await self._cutover.cutover(job_id)

    async def rollback_cutover(self, job_id: UUID) -> MigrationJob:
        """Exchange the retained original back in (see CutoverCoordinator.rollback)."""
        job = await self._require_job(job_id)
        async with self._target_lock(job):
            return await self._cutover.rollback(job_id)

    async def purge_retained(self, job_id: UUID, *, force: bool = False) -> MigrationJob:
        """Drop the retained original (see CutoverCoordinator.purge_retained)."""
        job = await self._require_job(job_id)
        async with self._target_lock(job):
            return await self._cutover.purge_retained(job_id, force=force)

    async def wait_for_status(
        self,
        job_id: UUID,
        statuses: Iterable[JobStatus],
        *,
        timeout: float | None = None,
        poll_interval: float = 0.05,
    ) -> MigrationJob:
        """
        Wait until a job reaches one of ``statuses`` or a terminal status.

        Raises:
            JobNotFoundError: If the job does not exist
            TimeoutError: If timeout exceeded
        """
        wanted = set(statuses)
        loop = asyncio.get_running_loop()
        start = loop.time()

        while True:
            job = await self._require_job(job_id)
            if job.status in wanted or job.is_terminal:
                return job

            if timeout is not None and loop.time() - start >= timeout:
                raise TimeoutError(
                    f"Timeout waiting for job {job_id} to reach "
                    f"{', '.join(sorted(s.value for s in wanted))}"
                )
            await asyncio.sleep(poll_interval)

    async def join(self, job_id: UUID, *, timeout: float | None = None) -> MigrationJob:
        """
        Wait for this process's control loop of a job to exit.

        Returns immediately when no loop runs here.
        """
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self._require_job(job_id)

    async def shutdown(self) -> None:
        """
        Stop every control loop of this process.

        Units in flight are abandoned mid-copy and recovered by
        ``resume_job``.
        """
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # =========================================================================
    # Control loop
    # =========================================================================

    def _spawn(self, job_id: UUID, lock_key: str) -> None:
        self._wakeups[job_id] = asyncio.Event()
        self._guards.setdefault(job_id, asyncio.Lock())
        self._tasks[job_id] = asyncio.create_task(
            self._run(job_id, lock_key),
            name=f"relayout_job_{job_id}",
        )

    async def _run(self, job_id: UUID, lock_key: str) -> None:
        """Run the control loop and release the target lock when it exits."""
        try:
            with self._tracer.span("relayout.controller.run", {ATTR_JOB_ID: str(job_id)}) as span:
                await self._control_loop(job_id)
                if span:
                    job = await self._require_job(job_id)
                    span.set_attribute(ATTR_JOB_STATUS, job.status.value)
        except asyncio.CancelledError:
            logger.info("Control loop of job %s cancelled", job_id)
            raise
        except IllegalTransition as e:
            logger.error("Ledger refused a transition for job %s: %s", job_id, e)
            await self._fail_job(job_id, f"{e.message} (unit {e.unit_id})")
        except Exception as e:
            logger.exception("Control loop of job %s crashed", job_id)
            await self._fail_job(job_id, f"Controller error: {e}")
        finally:
            self._tasks.pop(job_id, None)
            self._wakeups.pop(job_id, None)
            await self._locks.release(lock_key)

    async def _control_loop(self, job_id: UUID) -> None:
        job = await self._require_job(job_id)
        config = job.config
        executor = UnitExecutor(
            self._engine,
            job.source,
            job.target,
            verify_checksum=config.verify_checksum,
            tracer=self._tracer,
        )
        gate = HealthGate(self._engine, [job.source, job.target], config, tracer=self._tracer)
        wakeup = self._wakeups[job_id]
        loop = asyncio.get_running_loop()

        in_flight: dict[asyncio.Task[UnitOutcome], MigrationUnit] = {}
        retry_at: dict[str, float] = {}
        gate_failures = 0
        next_gate_at = 0.0
        fatal: str | None = None

        try:
            while True:
                wakeup.clear()

                for task in [t for t in in_flight if t.done()]:
                    unit = in_flight.pop(task)
                    outcome = task.result()
                    await self._apply_outcome(job, unit, outcome, retry_at, loop.time())
                    if not outcome.success and not outcome.retryable and fatal is None:
                        fatal = f"Unit {unit.unit_id} failed permanently: {outcome.error}"

                job = await self._require_job(job_id)
                units = await self._ledger.load(job_id)

                if job.is_terminal:
                    if not in_flight:
                        logger.info("Job %s is %s, stopping", job_id, job.status.value)
                        return
                    await self._wait(wakeup, config.poll_interval_seconds)
                    continue

                if fatal is None:
                    exhausted = [u for u in units if u.is_exhausted(config.max_attempts)]
                    if exhausted:
                        fatal = "; ".join(
                            f"Unit {u.unit_id} failed {u.attempt_count} attempts: {u.last_error}"
                            for u in exhausted
                        )

                if fatal is not None or job.cancel_requested or job.pause_requested:
                    if in_flight:
                        await self._wait(wakeup, config.poll_interval_seconds)
                        continue
                    if await self._stop(job_id, fatal):
                        return
                    continue

                if not in_flight and all(unit.is_done for unit in units):
                    await self._complete(job)
                    return

                now = loop.time()
                busy = {unit.unit_id for unit in in_flight.values()}
                candidates = self._candidates(units, busy, retry_at, config, now)
                slots = config.parallelism - len(in_flight)

                while slots > 0 and candidates and now >= next_gate_at:
                    result = await gate.check()
                    if not result.ok:
                        gate_failures += 1
                        delay = config.gate_backoff.get_delay_seconds(gate_failures - 1)
                        next_gate_at = loop.time() + delay
                        reason = "health gate: " + "; ".join(result.reasons)
                        job = await self._gate_paused(job, reason)
                        logger.warning(
                            "Job %s paused by %s; re-polling in %.2fs", job_id, reason, delay
                        )
                        break

                    if gate_failures:
                        logger.info("Health gate ok again for job %s", job_id)
                    gate_failures = 0
                    if job.status == JobStatus.PAUSED:
                        job = await self._set_status(job_id, JobStatus.RUNNING)

                    unit = candidates.pop(0)
                    task = await self._dispatch(executor, job_id, unit)
                    task.add_done_callback(lambda _t, event=wakeup: event.set())
                    in_flight[task] = unit
                    slots -= 1

                timeout = self._next_timeout(config, loop.time(), next_gate_at, retry_at)
                await self._wait(wakeup, timeout)
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    @staticmethod
    def _candidates(
        units: list[MigrationUnit],
        busy: set[str],
        retry_at: dict[str, float],
        config: MigrationConfig,
        now: float,
    ) -> list[MigrationUnit]:
        """Failed units due for retry first, then pending units in order."""
        retries = [
            unit
            for unit in units
            if unit.unit_id not in busy
            and unit.can_retry(config.max_attempts)
            and retry_at.get(unit.unit_id, 0.0) <= now
        ]
        fresh = [
            unit
            for unit in units
            if unit.unit_id not in busy and unit.state == UnitState.PENDING
        ]
        retries.sort(key=lambda u: u.position)
        fresh.sort(key=lambda u: u.position)
        return retries + fresh

    @staticmethod
    def _next_timeout(
        config: MigrationConfig,
        now: float,
        next_gate_at: float,
        retry_at: dict[str, float],
    ) -> float:
        timeout = config.poll_interval_seconds
        pending = [at for at in (next_gate_at, *retry_at.values()) if at > now]
        if pending:
            timeout = min(timeout, min(pending) - now)
        return max(timeout, 0.0)

    async def _dispatch(
        self, executor: UnitExecutor, job_id: UUID, unit: MigrationUnit
    ) -> asyncio.Task[UnitOutcome]:
        if unit.state == UnitState.FAILED:
            await self._ledger.transition(job_id, unit.unit_id, UnitState.PENDING)
        unit = await self._ledger.transition(job_id, unit.unit_id, UnitState.IN_FLIGHT)
        logger.debug(
            "Dispatching unit %s of job %s (attempt %d)", unit.unit_id, job_id, unit.attempt_count
        )
        return asyncio.create_task(
            executor.execute(unit),
            name=f"relayout_unit_{job_id}_{unit.unit_id}",
        )

    async def _apply_outcome(
        self,
        job: MigrationJob,
        unit: MigrationUnit,
        outcome: UnitOutcome,
        retry_at: dict[str, float],
        now: float,
    ) -> None:
        if outcome.success:
            await self._ledger.transition(job.id, unit.unit_id, UnitState.DONE)
            retry_at.pop(unit.unit_id, None)
            logger.info(
                "Unit %s of job %s done: %d rows", unit.unit_id, job.id, outcome.target_rows
            )
            return

        failed = await self._ledger.transition(
            job.id, unit.unit_id, UnitState.FAILED, error=outcome.error
        )
        retry_at[unit.unit_id] = now + job.config.retry_backoff.get_delay_seconds(
            failed.attempt_count - 1
        )
        logger.warning(
            "Unit %s of job %s failed attempt %d/%d: %s",
            unit.unit_id,
            job.id,
            failed.attempt_count,
            job.config.max_attempts,
            outcome.error,
        )

    async def _gate_paused(self, job: MigrationJob, reason: str) -> MigrationJob:
        if job.status == JobStatus.RUNNING:
            return await self._set_status(job.id, JobStatus.PAUSED, pause_reason=reason)
        if job.pause_reason != reason:
            await self._job_repo.set_pause_reason(job.id, reason)
            return await self._require_job(job.id)
        return job

    async def _stop(self, job_id: UUID, fatal: str | None) -> bool:
        """
        Apply a pause, cancel or failure once nothing is in flight.

        Returns False when the request was withdrawn in the meantime and
        the loop should keep going.
        """
        async with self._guard(job_id):
            job = await self._require_job(job_id)
            if fatal is None and not job.cancel_requested and not job.pause_requested:
                return False
            self._wakeups.pop(job_id, None)

            if fatal is not None:
                await self._fail_job(job_id, fatal)
            elif job.cancel_requested:
                await self._fail_job(job_id, CANCELLED_ERROR)
            elif job.status == JobStatus.RUNNING:
                await self._set_status(job_id, JobStatus.PAUSED, pause_reason=OPERATOR_PAUSE_REASON)
            else:
                await self._job_repo.set_pause_reason(job_id, OPERATOR_PAUSE_REASON)
            return True

    async def _complete(self, job: MigrationJob) -> None:
        if job.status == JobStatus.PAUSED:
            await self._set_status(job.id, JobStatus.RUNNING)
        await self._set_status(job.id, JobStatus.COMPLETED)

        if not job.config.auto_cutover:
            logger.info("Job %s completed; waiting for a manual cutover", job.id)
            return
        record = await self._cutover.cutover(job.id)
        if not record.success:
            logger.error("Automatic cutover of job %s failed", job.id)

    @staticmethod
    async def _wait(wakeup: asyncio.Event, timeout: float) -> None:
        if timeout <= 0:
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(wakeup.wait(), timeout)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _plan(self, job: MigrationJob) -> list[MigrationUnit]:
        try:
            units = await self._enumerator.enumerate(job.id, job.source)
        except EnumerationError as e:
            await self._fail_job(job.id, e.message)
            raise

        await self._ledger.initialize(job.id, units)
        enumerated_at = datetime.now(UTC)
        await self._job_repo.record_enumeration(
            job.id,
            unit_count=len(units),
            rows_estimate=sum(unit.row_estimate for unit in units),
            bytes_estimate=sum(unit.byte_estimate for unit in units),
            enumerated_at=enumerated_at,
        )
        logger.info(
            "Planned job %s: %d units as of %s; rows written to %s later are not migrated",
            job.id,
            len(units),
            enumerated_at.isoformat(),
            job.source,
        )
        return units

    async def _recover_interrupted(self, job_id: UUID) -> None:
        for unit in await self._ledger.load(job_id):
            if unit.state == UnitState.IN_FLIGHT:
                logger.warning("Unit %s of job %s was interrupted mid-copy", unit.unit_id, job_id)
                await self._ledger.transition(
                    job_id, unit.unit_id, UnitState.FAILED, error=INTERRUPTED_ERROR
                )

    async def _set_status(
        self,
        job_id: UUID,
        status: JobStatus,
        *,
        pause_reason: str | None = None,
    ) -> MigrationJob:
        job = await self._job_repo.update_status(job_id, status, pause_reason=pause_reason)
        if pause_reason:
            logger.info("Job %s is now %s (%s)", job_id, status.value, pause_reason)
        else:
            logger.info("Job %s is now %s", job_id, status.value)
        return job

    async def _fail_job(self, job_id: UUID, error: str) -> None:
        job = await self._require_job(job_id)
        if job.is_terminal:
            logger.debug("Job %s already %s; not failing it again", job_id, job.status.value)
            return
        await self._job_repo.update_status(job_id, JobStatus.FAILED, error=error)
        logger.error("Job %s failed: %s", job_id, error)

    async def _require_job(self, job_id: UUID) -> MigrationJob:
        job = await self._job_repo.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _is_local(self, job_id: UUID) -> bool:
        return job_id in self._wakeups

    def _wake(self, job_id: UUID) -> None:
        event = self._wakeups.get(job_id)
        if event is not None:
            event.set()

    def _guard(self, job_id: UUID) -> asyncio.Lock:
        return self._guards.setdefault(job_id, asyncio.Lock())

    async def _signal(
        self,
        job_id: UUID,
        *,
        pause_requested: bool | None = None,
        cancel_requested: bool | None = None,
    ) -> bool:
        """
        Persist an operator request.

        Returns:
            True if a control loop in this process will act on it. Otherwise
            any loop of this process that was stopping has exited.
        """
        async with self._guard(job_id):
            await self._job_repo.set_requests(
                job_id,
                pause_requested=pause_requested,
                cancel_requested=cancel_requested,
            )
            if self._is_local(job_id):
                self._wake(job_id)
                return True

        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return False

    @contextlib.asynccontextmanager
    async def _target_lock(self, job: MigrationJob) -> AsyncIterator[None]:
        try:
            async with self._locks.acquire(target_lock_key(job.target), timeout=0):
                yield
        except LockAcquisitionError as e:
            raise JobAlreadyActiveError(job.target, job.id) from e


__all__ = ["MigrationController"]
