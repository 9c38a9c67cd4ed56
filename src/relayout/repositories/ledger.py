"""
Progress ledger.

Durable record of every migration unit's state, so a controller that
crashed can resume without re-enumerating or re-copying completed work.

Every transition is validated against the unit state machine:

    pending -> in_flight -> done | failed
    failed  -> pending

``done`` is terminal. An illegal request raises ``IllegalTransition``.
Transitions are compare-and-set against the state the ledger read, so two
concurrent updates to the same unit can never both apply. The attempt
count is incremented on ``pending -> in_flight``.

Implementations:
    - InMemoryProgressLedger: tests
    - SQLiteProgressLedger: single-host deployments (aiosqlite)
    - PostgreSQLProgressLedger: shared state (SQLAlchemy async)
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from relayout.exceptions import IllegalTransition, UnitNotFoundError
from relayout.models import MigrationUnit, UnitState
from relayout.observability import (
    ATTR_DB_SYSTEM,
    ATTR_JOB_ID,
    ATTR_UNIT_COUNT,
    ATTR_UNIT_ID,
    ATTR_UNIT_STATE,
    Tracer,
    create_tracer,
)
from relayout.repositories._connection import execute_with_connection
from relayout.repositories._rows import from_iso, to_iso, truncate_error

if TYPE_CHECKING:
    import aiosqlite


@runtime_checkable
class ProgressLedger(Protocol):
    """
    Protocol for progress ledgers.
    """

    async def initialize(self, job_id: UUID, units: Sequence[MigrationUnit]) -> None:
        """
        Record freshly enumerated units.

        Units already present are left untouched, so calling this again for
        the same job never resets progress.

        Args:
            job_id: Owning job
            units: Units in enumeration order
        """
        ...

    async def load(self, job_id: UUID) -> list[MigrationUnit]:
        """
        Load every unit of a job in enumeration order.

        Args:
            job_id: Owning job

        Returns:
            Units ordered by position (empty for an unknown job)
        """
        ...

    async def get(self, job_id: UUID, unit_id: str) -> MigrationUnit:
        """
        Load one unit.

        Raises:
            UnitNotFoundError: If the unit is not part of the job
        """
        ...

    async def transition(
        self,
        job_id: UUID,
        unit_id: str,
        new_state: UnitState,
        error: str | None = None,
    ) -> MigrationUnit:
        """
        Move a unit to a new state.

        Args:
            job_id: Owning job
            unit_id: Unit to move
            new_state: Requested state
            error: Failure diagnostic (recorded for ``failed``)

        Returns:
            The updated unit

        Raises:
            UnitNotFoundError: If the unit is not part of the job
            IllegalTransition: If the state machine forbids the move, or the
                unit changed concurrently
        """
        ...

    async def all_done(self, job_id: UUID) -> bool:
        """
        Check whether every unit of the job is done.

        Returns:
            True when no unit is in another state (also for zero units)
        """
        ...


def _next_unit(
    current: MigrationUnit,
    new_state: UnitState,
    error: str | None,
    now: datetime,
) -> MigrationUnit:
    """Apply a validated transition to a copy of the unit."""
    if not current.state.can_transition_to(new_state):
        raise IllegalTransition(
            current.unit_id,
            current.state.value,
            new_state.value,
            job_id=current.job_id,
        )

    attempt_count = current.attempt_count
    last_attempt_at = current.last_attempt_at
    last_error = current.last_error

    if new_state == UnitState.IN_FLIGHT:
        attempt_count += 1
        last_attempt_at = now
    elif new_state == UnitState.DONE:
        last_error = None
    elif new_state == UnitState.FAILED:
        last_error = truncate_error(error) or "unknown error"

    return replace(
        current,
        state=new_state,
        attempt_count=attempt_count,
        last_attempt_at=last_attempt_at,
        last_error=last_error,
        updated_at=now,
    )


class InMemoryProgressLedger:
    """
    In-memory progress ledger for testing.

    Uses an asyncio lock so each transition is atomic within the process.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._units: dict[UUID, dict[str, MigrationUnit]] = {}
        self._lock = asyncio.Lock()

    async def initialize(self, job_id: UUID, units: Sequence[MigrationUnit]) -> None:
        with self._tracer.span(
            "relayout.ledger.initialize",
            {ATTR_JOB_ID: str(job_id), ATTR_UNIT_COUNT: len(units)},
        ):
            now = datetime.now(UTC)
            async with self._lock:
                job_units = self._units.setdefault(job_id, {})
                for unit in units:
                    if unit.unit_id not in job_units:
                        job_units[unit.unit_id] = replace(unit, job_id=job_id, updated_at=now)

    async def load(self, job_id: UUID) -> list[MigrationUnit]:
        with self._tracer.span("relayout.ledger.load", {ATTR_JOB_ID: str(job_id)}):
            async with self._lock:
                units = self._units.get(job_id, {}).values()
                return sorted((replace(unit) for unit in units), key=lambda u: u.position)

    async def get(self, job_id: UUID, unit_id: str) -> MigrationUnit:
        async with self._lock:
            return replace(self._get_locked(job_id, unit_id))

    def _get_locked(self, job_id: UUID, unit_id: str) -> MigrationUnit:
        try:
            return self._units[job_id][unit_id]
        except KeyError:
            raise UnitNotFoundError(job_id, unit_id) from None

    async def transition(
        self,
        job_id: UUID,
        unit_id: str,
        new_state: UnitState,
        error: str | None = None,
    ) -> MigrationUnit:
        with self._tracer.span(
            "relayout.ledger.transition",
            {ATTR_JOB_ID: str(job_id), ATTR_UNIT_ID: unit_id, ATTR_UNIT_STATE: new_state.value},
        ):
            async with self._lock:
                current = self._get_locked(job_id, unit_id)
                updated = _next_unit(current, new_state, error, datetime.now(UTC))
                self._units[job_id][unit_id] = updated
                return replace(updated)

    async def all_done(self, job_id: UUID) -> bool:
        async with self._lock:
            return all(unit.is_done for unit in self._units.get(job_id, {}).values())

    async def clear(self) -> None:
        """Clear all units. Useful for test setup/teardown."""
        async with self._lock:
            self._units.clear()


_UNIT_COLUMNS = (
    "job_id, unit_id, position, partition_value, row_estimate, byte_estimate, "
    "state, attempt_count, last_error, last_attempt_at, updated_at"
)


class SQLiteProgressLedger:
    """
    SQLite implementation of the progress ledger.

    Stores units in the ``relayout_units`` table (see ``relayout.schema``).
    UUIDs and timestamps are stored as TEXT.

    Example:
        >>> async with aiosqlite.connect("relayout.db") as db:
        ...     await db.executescript(get_schema("sqlite"))
        ...     ledger = SQLiteProgressLedger(db)
        ...     units = await ledger.load(job_id)
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
    def _row_to_unit(row: Sequence[Any]) -> MigrationUnit:
        return MigrationUnit(
            job_id=UUID(row[0]),
            unit_id=row[1],
            position=row[2],
            partition_value=row[3],
            row_estimate=row[4],
            byte_estimate=row[5],
            state=UnitState(row[6]),
            attempt_count=row[7],
            last_error=row[8],
            last_attempt_at=from_iso(row[9]),
            updated_at=from_iso(row[10]),
        )

    async def initialize(self, job_id: UUID, units: Sequence[MigrationUnit]) -> None:
        with self._tracer.span(
            "relayout.ledger.initialize",
            {ATTR_JOB_ID: str(job_id), ATTR_UNIT_COUNT: len(units), ATTR_DB_SYSTEM: "sqlite"},
        ):
            now = to_iso(datetime.now(UTC))
            await self._connection.executemany(
                f"""
                INSERT INTO relayout_units ({_UNIT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (job_id, unit_id) DO NOTHING
                """,
                [
                    (
                        str(job_id),
                        unit.unit_id,
                        unit.position,
                        unit.partition_value,
                        unit.row_estimate,
                        unit.byte_estimate,
                        unit.state.value,
                        unit.attempt_count,
                        unit.last_error,
                        to_iso(unit.last_attempt_at),
                        now,
                    )
                    for unit in units
                ],
            )
            await self._connection.commit()

    async def load(self, job_id: UUID) -> list[MigrationUnit]:
        with self._tracer.span(
            "relayout.ledger.load", {ATTR_JOB_ID: str(job_id), ATTR_DB_SYSTEM: "sqlite"}
        ):
            cursor = await self._connection.execute(
                f"SELECT {_UNIT_COLUMNS} FROM relayout_units WHERE job_id = ? ORDER BY position",
                (str(job_id),),
            )
            rows = await cursor.fetchall()
            return [self._row_to_unit(row) for row in rows]

    async def get(self, job_id: UUID, unit_id: str) -> MigrationUnit:
        cursor = await self._connection.execute(
            f"SELECT {_UNIT_COLUMNS} FROM relayout_units WHERE job_id = ? AND unit_id = ?",
            (str(job_id), unit_id),
        )
        row = await cursor.fetchone()
        if row is None:
            raise UnitNotFoundError(job_id, unit_id)
        return self._row_to_unit(row)

    async def transition(
        self,
        job_id: UUID,
        unit_id: str,
        new_state: UnitState,
        error: str | None = None,
    ) -> MigrationUnit:
        with self._tracer.span(
            "relayout.ledger.transition",
            {
                ATTR_JOB_ID: str(job_id),
                ATTR_UNIT_ID: unit_id,
                ATTR_UNIT_STATE: new_state.value,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            current = await self.get(job_id, unit_id)
            updated = _next_unit(current, new_state, error, datetime.now(UTC))

            cursor = await self._connection.execute(
                """
                UPDATE relayout_units
                SET state = ?, attempt_count = ?, last_error = ?,
                    last_attempt_at = ?, updated_at = ?
                WHERE job_id = ? AND unit_id = ? AND state = ? AND attempt_count = ?
                """,
                (
                    updated.state.value,
                    updated.attempt_count,
                    updated.last_error,
                    to_iso(updated.last_attempt_at),
                    to_iso(updated.updated_at),
                    str(job_id),
                    unit_id,
                    current.state.value,
                    current.attempt_count,
                ),
            )
            await self._connection.commit()

            if cursor.rowcount == 0:
                latest = await self.get(job_id, unit_id)
                raise IllegalTransition(
                    unit_id, latest.state.value, new_state.value, job_id=job_id
                )
            return updated

    async def all_done(self, job_id: UUID) -> bool:
        cursor = await self._connection.execute(
            "SELECT COUNT(*) FROM relayout_units WHERE job_id = ? AND state != ?",
            (str(job_id), UnitState.DONE.value),
        )
        row = await cursor.fetchone()
        return row is not None and row[0] == 0


class PostgreSQLProgressLedger:
    """
    PostgreSQL implementation of the progress ledger.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://...")
        >>> ledger = PostgreSQLProgressLedger(engine)
        >>> await ledger.transition(job_id, "202401", UnitState.IN_FLIGHT)
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
    def _row_to_unit(row: Any) -> MigrationUnit:
        return MigrationUnit(
            job_id=row.job_id,
            unit_id=row.unit_id,
            position=row.position,
            partition_value=row.partition_value,
            row_estimate=row.row_estimate,
            byte_estimate=row.byte_estimate,
            state=UnitState(row.state),
            attempt_count=row.attempt_count,
            last_error=row.last_error,
            last_attempt_at=row.last_attempt_at,
            updated_at=row.updated_at,
        )

    async def initialize(self, job_id: UUID, units: Sequence[MigrationUnit]) -> None:
        with self._tracer.span(
            "relayout.ledger.initialize",
            {
                ATTR_JOB_ID: str(job_id),
                ATTR_UNIT_COUNT: len(units),
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            if not units:
                return
            now = datetime.now(UTC)
            query = text(f"""
                INSERT INTO relayout_units ({_UNIT_COLUMNS})
                VALUES (:job_id, :unit_id, :position, :partition_value, :row_estimate,
                        :byte_estimate, :state, :attempt_count, :last_error,
                        :last_attempt_at, :updated_at)
                ON CONFLICT (job_id, unit_id) DO NOTHING
            """)
            params = [
                {
                    "job_id": job_id,
                    "unit_id": unit.unit_id,
                    "position": unit.position,
                    "partition_value": unit.partition_value,
                    "row_estimate": unit.row_estimate,
                    "byte_estimate": unit.byte_estimate,
                    "state": unit.state.value,
                    "attempt_count": unit.attempt_count,
                    "last_error": unit.last_error,
                    "last_attempt_at": unit.last_attempt_at,
                    "updated_at": now,
                }
                for unit in units
            ]
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def load(self, job_id: UUID) -> list[MigrationUnit]:
        with self._tracer.span(
            "relayout.ledger.load", {ATTR_JOB_ID: str(job_id), ATTR_DB_SYSTEM: "postgresql"}
        ):
            query = text(f"""
                SELECT {_UNIT_COLUMNS}
                FROM relayout_units
                WHERE job_id = :job_id
                ORDER BY position
            """)
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"job_id": job_id})
                return [self._row_to_unit(row) for row in result.fetchall()]

    async def get(self, job_id: UUID, unit_id: str) -> MigrationUnit:
        query = text(f"""
            SELECT {_UNIT_COLUMNS}
            FROM relayout_units
            WHERE job_id = :job_id AND unit_id = :unit_id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"job_id": job_id, "unit_id": unit_id})
            row = result.fetchone()
        if row is None:
            raise UnitNotFoundError(job_id, unit_id)
        return self._row_to_unit(row)

    async def transition(
        self,
        job_id: UUID,
        unit_id: str,
        new_state: UnitState,
        error: str | None = None,
    ) -> MigrationUnit:
        with self._tracer.span(
            "relayout.ledger.transition",
            {
                ATTR_JOB_ID: str(job_id),
                ATTR_UNIT_ID: unit_id,
                ATTR_UNIT_STATE: new_state.value,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            current = await self.get(job_id, unit_id)
            updated = _next_unit(current, new_state, error, datetime.now(UTC))

            query = text("""
                UPDATE relayout_units
                SET state = :state,
                    attempt_count = :attempt_count,
                    last_error = :last_error,
                    last_attempt_at = :last_attempt_at,
                    updated_at = :updated_at
                WHERE job_id = :job_id
                  AND unit_id = :unit_id
                  AND state = :expected_state
                  AND attempt_count = :expected_attempts
            """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    query,
                    {
                        "state": updated.state.value,
                        "attempt_count": updated.attempt_count,
                        "last_error": updated.last_error,
                        "last_attempt_at": updated.last_attempt_at,
                        "updated_at": updated.updated_at,
                        "job_id": job_id,
                        "unit_id": unit_id,
                        "expected_state": current.state.value,
                        "expected_attempts": current.attempt_count,
                    },
                )
                changed = result.rowcount

            if changed == 0:
                latest = await self.get(job_id, unit_id)
                raise IllegalTransition(
                    unit_id, latest.state.value, new_state.value, job_id=job_id
                )
            return updated

    async def all_done(self, job_id: UUID) -> bool:
        query = text("""
            SELECT COUNT(*) FROM relayout_units
            WHERE job_id = :job_id AND state != 'done'
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"job_id": job_id})
            return result.scalar_one() == 0


__all__ = [
    "ProgressLedger",
    "InMemoryProgressLedger",
    "SQLiteProgressLedger",
    "PostgreSQLProgressLedger",
]
