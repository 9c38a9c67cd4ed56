"""
PostgreSQL advisory locks.

Advisory locks are session-level: each held lock keeps its own session
open until it is released, and PostgreSQL frees it if the connection
drops. That makes them a good fit for guarding a target across several
controller hosts sharing one PostgreSQL state store.

Usage:
    >>> locks = PostgreSQLLockManager(session_factory)
    >>> async with locks.acquire(target_lock_key("db.events_v2"), timeout=5.0):
    ...     await controller.run(job_id)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relayout.locks.base import LockAcquisitionError, LockInfo, LockNotHeldError
from relayout.observability import (
    ATTR_DB_SYSTEM,
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_KEY,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


def lock_id_for(key: str) -> int:
    """
    Map a string key to a PostgreSQL advisory lock ID.

    SHA-256 of the key, first 8 bytes, masked to 63 bits so it fits a
    signed bigint.
    """
    digest = hashlib.sha256(key.encode()).digest()
    return int.from_bytes(digest[:8], byteorder="big") & 0x7FFFFFFFFFFFFFFF


class PostgreSQLLockManager:
    """
    Manages PostgreSQL advisory locks.

    Note:
        Every held lock pins one pooled connection. Size the pool for the
        number of targets migrated concurrently.

    Args:
        session_factory: SQLAlchemy async session factory
        holder_id: Optional identifier for this holder, for debugging
        tracer: Optional custom Tracer instance
        enable_tracing: Emit spans when OpenTelemetry is available
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        holder_id: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._session_factory = session_factory
        self._holder_id = holder_id
        self._held: dict[str, tuple[AsyncSession, int]] = {}
        self._lock = asyncio.Lock()

    async def _try_lock(self, session: AsyncSession, lock_id: int) -> bool:
        result = await session.execute(
            text("SELECT pg_try_advisory_lock(:lock_id)"),
            {"lock_id": lock_id},
        )
        return bool(result.scalar())

    async def try_acquire(self, key: str) -> LockInfo | None:
        """
        Acquire a lock without waiting.

        Returns:
            LockInfo if acquired, None if another session holds it.
            The caller must ``release`` an acquired lock.
        """
        lock_id = lock_id_for(key)
        with self._tracer.span(
            "relayout.lock.try_acquire",
            {ATTR_LOCK_KEY: key, ATTR_DB_SYSTEM: "postgresql"},
        ) as span:
            session = self._session_factory()
            try:
                acquired = await self._try_lock(session, lock_id)
            except SQLAlchemyError as e:
                await session.close()
                raise LockAcquisitionError(key, f"Database error: {e}") from e

            if span:
                span.set_attribute(ATTR_LOCK_ACQUIRED, acquired)
            if not acquired:
                await session.close()
                return None

            async with self._lock:
                self._held[key] = (session, lock_id)
            logger.debug("Acquired advisory lock: key=%s, lock_id=%d", key, lock_id)
            return LockInfo(
                key=key,
                lock_id=lock_id,
                acquired_at=datetime.now(UTC),
                holder_id=self._holder_id,
            )

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.1,
    ) -> AsyncIterator[LockInfo]:
        """
        Acquire an advisory lock as a context manager.

        Args:
            key: Lock key
            timeout: Seconds to wait (None waits forever, 0 tries once)
            retry_interval: Seconds between attempts

        Raises:
            LockAcquisitionError: If the lock is not acquired within timeout
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            info = await self.try_acquire(key)
            if info is not None:
                break
            if deadline is not None and loop.time() >= deadline:
                raise LockAcquisitionError(key, f"Timeout after {timeout}s", timeout=timeout)
            await asyncio.sleep(retry_interval)

        try:
            yield info
        finally:
            await self.release(key)

    async def release(self, key: str) -> None:
        """
        Release a held lock.

        Raises:
            LockNotHeldError: If this manager does not hold the lock
        """
        async with self._lock:
            if key not in self._held:
                raise LockNotHeldError(key)
            session, lock_id = self._held.pop(key)

        try:
            await session.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": lock_id},
            )
            logger.debug("Released advisory lock: key=%s, lock_id=%d", key, lock_id)
        except SQLAlchemyError as e:
            # closing the session below frees the lock server-side
            logger.warning("Error releasing advisory lock: key=%s, error=%s", key, e)
        finally:
            await session.close()

    async def is_held(self, key: str) -> bool:
        async with self._lock:
            return key in self._held

    @property
    def held_lock_count(self) -> int:
        return len(self._held)


__all__ = ["PostgreSQLLockManager", "lock_id_for"]
