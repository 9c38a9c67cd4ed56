"""
SQLite lease locks.

A lock is a row in ``relayout_locks`` naming its holder and when its lease
expires. Acquisition is a single upsert that only takes over a row whose
lease has run out, so several processes sharing one SQLite state file
agree on who owns a target. While a lock is held, a background task renews
the lease; a holder that dies stops renewing and its lock becomes free
once the lease expires.

Usage:
    >>> locks = SQLiteLockManager(db)
    >>> async with locks.acquire(target_lock_key("db.events_v2"), timeout=0):
    ...     await controller.run(job_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import sqlite3
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import uuid4

from relayout.locks.base import LockAcquisitionError, LockInfo, LockNotHeldError
from relayout.locks.postgresql import lock_id_for
from relayout.observability import (
    ATTR_DB_SYSTEM,
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_KEY,
    Tracer,
    create_tracer,
)

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 30.0


def default_holder_id() -> str:
    """Identity unique to this manager: host, process and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class SQLiteLockManager:
    """
    Non-reentrant named locks shared through a SQLite database.

    Args:
        connection: aiosqlite connection with the relayout schema applied
        holder_id: Identity recorded on held locks (default: host, pid and
            a random suffix)
        lease_seconds: How long a lock survives without renewal
        renew_interval: Seconds between renewals (default: a third of the
            lease)
        tracer: Optional custom Tracer instance
        enable_tracing: Emit spans when OpenTelemetry is available
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        *,
        holder_id: str | None = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        renew_interval: float | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection
        self._holder_id = holder_id or default_holder_id()
        self._lease_seconds = lease_seconds
        self._renew_interval = renew_interval or lease_seconds / 3
        self._held: dict[str, LockInfo] = {}
        self._renewals: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    @property
    def holder_id(self) -> str:
        return self._holder_id

    @property
    def lease_seconds(self) -> float:
        return self._lease_seconds

    async def _claim(self, key: str, acquired_at: datetime) -> bool:
        now = time.time()
        cursor = await self._connection.execute(
            """
            INSERT INTO relayout_locks (key, holder_id, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (key) DO UPDATE SET
                holder_id = excluded.holder_id,
                acquired_at = excluded.acquired_at,
                expires_at = excluded.expires_at
            WHERE relayout_locks.expires_at <= ?
            """,
            (key, self._holder_id, acquired_at.isoformat(), now + self._lease_seconds, now),
        )
        claimed = cursor.rowcount == 1
        await self._connection.commit()
        return claimed

    async def try_acquire(self, key: str) -> LockInfo | None:
        """
        Acquire a lock without waiting.

        Returns:
            LockInfo if acquired, None if a live lease is held, by this
            manager or any other. The caller must ``release`` an acquired
            lock.
        """
        with self._tracer.span(
            "relayout.lock.try_acquire",
            {ATTR_LOCK_KEY: key, ATTR_DB_SYSTEM: "sqlite"},
        ) as span:
            async with self._lock:
                if key in self._held:
                    acquired = False
                else:
                    acquired_at = datetime.now(UTC)
                    try:
                        acquired = await self._claim(key, acquired_at)
                    except sqlite3.Error as e:
                        raise LockAcquisitionError(key, f"Database error: {e}") from e
                if acquired:
                    info = LockInfo(
                        key=key,
                        lock_id=lock_id_for(key),
                        acquired_at=acquired_at,
                        holder_id=self._holder_id,
                    )
                    self._held[key] = info
                    self._renewals[key] = asyncio.create_task(
                        self._renew_loop(key), name=f"relayout_lock_renew_{key}"
                    )

            if span:
                span.set_attribute(ATTR_LOCK_ACQUIRED, acquired)
            if not acquired:
                return None
            logger.debug("Acquired lease lock: key=%s, holder=%s", key, self._holder_id)
            return info

    async def renew(self, key: str) -> bool:
        """
        Extend the lease of a held lock.

        Returns:
            False if the row no longer belongs to this holder.

        Raises:
            LockNotHeldError: If this manager does not hold the lock
        """
        if key not in self._held:
            raise LockNotHeldError(key)
        cursor = await self._connection.execute(
            "UPDATE relayout_locks SET expires_at = ? WHERE key = ? AND holder_id = ?",
            (time.time() + self._lease_seconds, key, self._holder_id),
        )
        renewed = cursor.rowcount == 1
        await self._connection.commit()
        return renewed

    async def _renew_loop(self, key: str) -> None:
        while True:
            await asyncio.sleep(self._renew_interval)
            try:
                renewed = await self.renew(key)
            except LockNotHeldError:
                return
            except sqlite3.Error as e:
                logger.warning("Error renewing lease lock: key=%s, error=%s", key, e)
                continue
            if not renewed:
                logger.error(
                    "Lease lock lost: key=%s, holder=%s; another holder took it over",
                    key,
                    self._holder_id,
                )
                return

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.1,
    ) -> AsyncIterator[LockInfo]:
        """
        Acquire a lease lock as a context manager.

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
            del self._held[key]
            renewal = self._renewals.pop(key)

        renewal.cancel()
        with suppress(asyncio.CancelledError):
            await renewal

        try:
            await self._connection.execute(
                "DELETE FROM relayout_locks WHERE key = ? AND holder_id = ?",
                (key, self._holder_id),
            )
            await self._connection.commit()
            logger.debug("Released lease lock: key=%s", key)
        except sqlite3.Error as e:
            # the lease expires on its own
            logger.warning("Error releasing lease lock: key=%s, error=%s", key, e)

    async def is_held(self, key: str) -> bool:
        async with self._lock:
            return key in self._held

    @property
    def held_lock_count(self) -> int:
        return len(self._held)


__all__ = ["DEFAULT_LEASE_SECONDS", "SQLiteLockManager", "default_holder_id"]
