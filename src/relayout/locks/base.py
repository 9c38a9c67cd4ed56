"""
Lock types shared by the lock managers.

A migration controller holds the lock for its target for as long as its
loop runs, so two controllers can never drive the same target at once,
even when they share a state store but not a process.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from relayout.exceptions import MigrationError


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired lock.

    Attributes:
        key: The string key identifying the lock
        lock_id: Numeric lock ID derived from the key
        acquired_at: When the lock was acquired
        holder_id: Optional identifier of the holder, for debugging
    """

    key: str
    lock_id: int
    acquired_at: datetime
    holder_id: str | None = None


class LockAcquisitionError(MigrationError):
    """
    Raised when a lock cannot be acquired.

    Attributes:
        key: The lock key that could not be acquired
        reason: Why acquisition failed
        timeout: The timeout, if the timeout was the cause
    """

    def __init__(self, key: str, reason: str, timeout: float | None = None) -> None:
        self.key = key
        self.reason = reason
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock '{key}': {reason}")


class LockNotHeldError(MigrationError):
    """Raised when releasing a lock this manager does not hold."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Lock '{key}' is not held by this manager")


@runtime_checkable
class LockManager(Protocol):
    """Protocol for lock managers."""

    def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.1,
    ) -> AbstractAsyncContextManager[LockInfo]:
        """
        Acquire a lock for the duration of a context.

        Raises:
            LockAcquisitionError: If the lock is not acquired within timeout
        """
        ...

    async def try_acquire(self, key: str) -> LockInfo | None:
        ...

    async def release(self, key: str) -> None:
        ...

    async def is_held(self, key: str) -> bool:
        ...


def target_lock_key(target: str, operation: str = "migrate") -> str:
    """
    Build the lock key guarding a target dataset.

    Example:
        >>> target_lock_key("db.events_v2")
        'relayout:migrate:db.events_v2'
    """
    return f"relayout:{operation}:{target}"


__all__ = [
    "LockAcquisitionError",
    "LockInfo",
    "LockManager",
    "LockNotHeldError",
    "target_lock_key",
]
