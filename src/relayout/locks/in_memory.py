"""
In-process lock manager.

Locks live in a dictionary shared by every user of the same manager
instance. Suitable for tests and single-process deployments backed by the
SQLite state store.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from relayout.locks.base import LockAcquisitionError, LockInfo, LockNotHeldError
from relayout.observability import ATTR_LOCK_ACQUIRED, ATTR_LOCK_KEY, Tracer, create_tracer

logger = logging.getLogger(__name__)


class InMemoryLockManager:
    """
    Non-reentrant named locks held in memory.

    Example:
        >>> locks = InMemoryLockManager()
        >>> async with locks.acquire(target_lock_key("db.events_v2"), timeout=0):
        ...     await run_loop()
    """

    def __init__(
        self,
        *,
        holder_id: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._holder_id = holder_id
        self._held: dict[str, LockInfo] = {}
        self._lock = asyncio.Lock()
        self._next_id = 0

    async def try_acquire(self, key: str) -> LockInfo | None:
        with self._tracer.span("relayout.lock.try_acquire", {ATTR_LOCK_KEY: key}) as span:
            async with self._lock:
                if key in self._held:
                    if span:
                        span.set_attribute(ATTR_LOCK_ACQUIRED, False)
                    return None
                self._next_id += 1
                info = LockInfo(
                    key=key,
                    lock_id=self._next_id,
                    acquired_at=datetime.now(UTC),
                    holder_id=self._holder_id,
                )
                self._held[key] = info
            if span:
                span.set_attribute(ATTR_LOCK_ACQUIRED, True)
            logger.debug("Acquired lock: key=%s", key)
            return info

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.1,
    ) -> AsyncIterator[LockInfo]:
        """
        Acquire a lock as a context manager.

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
        async with self._lock:
            if key not in self._held:
                raise LockNotHeldError(key)
            del self._held[key]
        logger.debug("Released lock: key=%s", key)

    async def is_held(self, key: str) -> bool:
        async with self._lock:
            return key in self._held

    @property
    def held_lock_count(self) -> int:
        return len(self._held)


__all__ = ["InMemoryLockManager"]
