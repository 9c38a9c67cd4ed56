"""
Target locks.

Example:
    >>> from relayout.locks import InMemoryLockManager, target_lock_key
    >>> locks = InMemoryLockManager()
    >>> async with locks.acquire(target_lock_key("db.events_v2"), timeout=0):
    ...     ...
"""

from relayout.locks.base import (
    LockAcquisitionError,
    LockInfo,
    LockManager,
    LockNotHeldError,
    target_lock_key,
)
from relayout.locks.in_memory import InMemoryLockManager
from relayout.locks.postgresql import PostgreSQLLockManager, lock_id_for
from relayout.locks.sqlite import SQLiteLockManager

__all__ = [
    "InMemoryLockManager",
    "LockAcquisitionError",
    "LockInfo",
    "LockManager",
    "LockNotHeldError",
    "PostgreSQLLockManager",
    "SQLiteLockManager",
    "lock_id_for",
    "target_lock_key",
]
