"""Unit tests for the reservation lock coordinator"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from lab_platform.core.exceptions import LockTimeout
from lab_platform.schemas.quota import Requester
from lab_platform.services.reservation_lock import (
    InProcessLockBackend,
    RedisLockBackend,
    ReservationLockCoordinator,
    compute_lock_key
)


@pytest.fixture
def backend():
    return InProcessLockBackend()


@pytest.fixture
def coordinator(backend):
    return ReservationLockCoordinator(backend=backend, retry_interval=0.01, default_timeout=0.5)


def test_lock_key_combines_user_and_team():
    assert compute_lock_key(7) == 7 << 32
    assert compute_lock_key(7, 3) == (7 << 32) ^ 3
    assert compute_lock_key(7, 3) != compute_lock_key(7)
    assert compute_lock_key(7, 3) == compute_lock_key(7, 3)


def test_lock_key_fits_in_64_bits():
    assert compute_lock_key(2 ** 40, 5) < 2 ** 64


@pytest.mark.asyncio
async def test_acquire_and_release(coordinator, backend):
    requester = Requester(user_id=1)

    async with coordinator.acquire(requester) as key:
        assert key in backend.held_keys()

    assert backend.held_keys() == set()


@pytest.mark.asyncio
async def test_timeout_when_held(coordinator):
    """A second acquirer gives up with LockTimeout once the bound elapses"""
    requester = Requester(user_id=1, team_id=2)

    async with coordinator.acquire(requester):
        with pytest.raises(LockTimeout) as exc_info:
            async with coordinator.acquire(requester, timeout=0.05):
                pass

    assert exc_info.value.retryable is True
    assert exc_info.value.lock_key == compute_lock_key(1)


@pytest.mark.asyncio
async def test_team_context_shares_the_users_lock(coordinator):
    """Personal and team admissions of one user contend for the same key"""
    assert coordinator.lock_key(Requester(user_id=1, team_id=5)) == coordinator.lock_key(Requester(user_id=1))

    async with coordinator.acquire(Requester(user_id=1)):
        with pytest.raises(LockTimeout):
            async with coordinator.acquire(Requester(user_id=1, team_id=5), timeout=0.05):
                pass


@pytest.mark.asyncio
async def test_released_when_body_raises(coordinator, backend):
    requester = Requester(user_id=4)

    with pytest.raises(RuntimeError):
        async with coordinator.acquire(requester):
            raise RuntimeError("boom")

    assert backend.held_keys() == set()
    # The lock can be taken again right away
    async with coordinator.acquire(requester, timeout=0.05):
        pass


@pytest.mark.asyncio
async def test_different_requesters_do_not_block(coordinator):
    async with coordinator.acquire(Requester(user_id=1)):
        async with coordinator.acquire(Requester(user_id=2), timeout=0.05):
            pass


@pytest.mark.asyncio
async def test_with_lock_serializes_callers(coordinator):
    """Critical sections for one requester never overlap"""
    requester = Requester(user_id=9)
    active = 0
    max_active = 0

    async def critical():
        nonlocal active, max_active
        active += 1
        max_active = max(max_active, active)
        await asyncio.sleep(0.01)
        active -= 1
        return "done"

    results = await asyncio.gather(*[
        coordinator.with_lock(requester, 2.0, critical) for _ in range(5)
    ])

    assert results == ["done"] * 5
    assert max_active == 1


@pytest.mark.asyncio
async def test_waiter_acquires_after_release(coordinator):
    requester = Requester(user_id=3)
    order = []

    async def holder():
        async with coordinator.acquire(requester):
            order.append("holder")
            await asyncio.sleep(0.05)

    async def waiter():
        await asyncio.sleep(0.01)
        async with coordinator.acquire(requester, timeout=1.0):
            order.append("waiter")

    await asyncio.gather(holder(), waiter())

    assert order == ["holder", "waiter"]


@pytest.mark.asyncio
async def test_release_with_wrong_token_is_ignored(backend):
    token = await backend.try_acquire(11)

    await backend.release(11, "not-the-owner")
    assert 11 in backend.held_keys()

    await backend.release(11, token)
    assert backend.held_keys() == set()


# ============================================================================
# Redis backend
# ============================================================================

@pytest.fixture
def mock_redis():
    """Mock Redis client"""
    redis = AsyncMock()
    redis.set = AsyncMock(return_value=True)
    redis.eval = AsyncMock(return_value=1)
    return redis


@pytest.mark.asyncio
async def test_redis_acquire_sets_key_with_ttl(mock_redis):
    backend = RedisLockBackend(mock_redis, ttl_seconds=30)

    token = await backend.try_acquire(42)

    assert token is not None
    mock_redis.set.assert_awaited_once_with(
        "lab:reservation_lock:42", token, nx=True, px=30000
    )


@pytest.mark.asyncio
async def test_redis_acquire_returns_none_when_held(mock_redis):
    mock_redis.set = AsyncMock(return_value=None)
    backend = RedisLockBackend(mock_redis)

    assert await backend.try_acquire(42) is None


@pytest.mark.asyncio
async def test_redis_release_checks_owner(mock_redis):
    backend = RedisLockBackend(mock_redis)

    await backend.release(42, "token-1")

    mock_redis.eval.assert_awaited_once_with(
        RedisLockBackend.RELEASE_SCRIPT, 1, "lab:reservation_lock:42", "token-1"
    )


@pytest.mark.asyncio
async def test_redis_release_error_does_not_propagate(mock_redis):
    mock_redis.eval = AsyncMock(side_effect=ConnectionError("redis down"))
    backend = RedisLockBackend(mock_redis)

    await backend.release(42, "token-1")


@pytest.mark.asyncio
async def test_coordinator_over_redis_times_out(mock_redis):
    mock_redis.set = AsyncMock(return_value=None)
    coordinator = ReservationLockCoordinator(
        backend=RedisLockBackend(mock_redis),
        retry_interval=0.01,
        default_timeout=0.05
    )

    with pytest.raises(LockTimeout):
        async with coordinator.acquire(Requester(user_id=1)):
            pass

    assert mock_redis.set.await_count >= 2
    mock_redis.eval.assert_not_awaited()
