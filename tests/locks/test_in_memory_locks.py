"""
Tests for InMemoryLockManager and the shared lock helpers.
"""

import asyncio

import pytest

from relayout.locks import (
    InMemoryLockManager,
    LockAcquisitionError,
    LockManager,
    LockNotHeldError,
    target_lock_key,
)

KEY = target_lock_key("db.events_v2")


@pytest.fixture
def locks() -> InMemoryLockManager:
    return InMemoryLockManager(holder_id="host-a", enable_tracing=False)


class TestTargetLockKey:
    def test_default_operation(self) -> None:
        assert target_lock_key("db.events_v2") == "relayout:migrate:db.events_v2"

    def test_custom_operation(self) -> None:
        assert target_lock_key("db.events", "cutover") == "relayout:cutover:db.events"


class TestTryAcquire:
    """Tests for non-blocking acquisition."""

    def test_satisfies_protocol(self, locks: InMemoryLockManager) -> None:
        assert isinstance(locks, LockManager)

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, locks: InMemoryLockManager) -> None:
        info = await locks.try_acquire(KEY)

        assert info is not None
        assert info.key == KEY
        assert info.holder_id == "host-a"
        assert await locks.is_held(KEY)
        assert locks.held_lock_count == 1

        await locks.release(KEY)

        assert not await locks.is_held(KEY)

    @pytest.mark.asyncio
    async def test_not_reentrant(self, locks: InMemoryLockManager) -> None:
        await locks.try_acquire(KEY)

        assert await locks.try_acquire(KEY) is None

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, locks: InMemoryLockManager) -> None:
        await locks.try_acquire(KEY)

        assert await locks.try_acquire(target_lock_key("db.other")) is not None

    @pytest.mark.asyncio
    async def test_release_not_held(self, locks: InMemoryLockManager) -> None:
        with pytest.raises(LockNotHeldError) as exc_info:
            await locks.release(KEY)

        assert exc_info.value.key == KEY


class TestAcquireContext:
    """Tests for the acquire context manager."""

    @pytest.mark.asyncio
    async def test_released_on_exit(self, locks: InMemoryLockManager) -> None:
        async with locks.acquire(KEY, timeout=0) as info:
            assert info.key == KEY
            assert await locks.is_held(KEY)

        assert not await locks.is_held(KEY)

    @pytest.mark.asyncio
    async def test_released_on_error(self, locks: InMemoryLockManager) -> None:
        with pytest.raises(RuntimeError):
            async with locks.acquire(KEY, timeout=0):
                raise RuntimeError("loop crashed")

        assert not await locks.is_held(KEY)

    @pytest.mark.asyncio
    async def test_timeout_zero_tries_once(self, locks: InMemoryLockManager) -> None:
        await locks.try_acquire(KEY)

        with pytest.raises(LockAcquisitionError) as exc_info:
            async with locks.acquire(KEY, timeout=0):
                pass

        assert exc_info.value.key == KEY
        assert exc_info.value.timeout == 0
        assert "Timeout" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_waits_for_release(self, locks: InMemoryLockManager) -> None:
        await locks.try_acquire(KEY)

        async def release_soon() -> None:
            await asyncio.sleep(0.01)
            await locks.release(KEY)

        releaser = asyncio.create_task(release_soon())
        async with locks.acquire(KEY, timeout=1.0, retry_interval=0.005) as info:
            assert info.key == KEY
        await releaser
