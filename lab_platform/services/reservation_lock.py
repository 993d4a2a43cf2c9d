"""Reservation Lock Coordinator - serializes admission decisions per requester"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar
from uuid import uuid4

from redis.asyncio import Redis

from lab_platform.core.exceptions import LockTimeout
from lab_platform.core.logging_config import get_logger
from lab_platform.core.monitoring import admissions_total, lock_wait_seconds
from lab_platform.schemas.quota import Requester

logger = get_logger(__name__)

T = TypeVar("T")

_KEY_MASK = (1 << 64) - 1


def compute_lock_key(user_id: int, team_id: Optional[int] = None) -> int:
    """
    Combine user and team into one 64-bit lock key.

    The user id occupies the high 32 bits and the team id (0 when absent) is
    XORed into the low bits.
    """
    return ((int(user_id) << 32) ^ int(team_id or 0)) & _KEY_MASK


class LockBackend(ABC):
    """Non-blocking mutual exclusion keyed by integer"""

    @abstractmethod
    async def try_acquire(self, key: int) -> Optional[str]:
        """Return an owner token when the lock was taken, None when held elsewhere"""
        ...

    @abstractmethod
    async def release(self, key: int, token: str) -> None:
        ...


class InProcessLockBackend(LockBackend):
    """
    Locks held in this process's memory.

    Only serializes callers sharing the same event loop and backend instance.
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._owners: Dict[int, str] = {}

    async def try_acquire(self, key: int) -> Optional[str]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            return None
        await lock.acquire()
        token = uuid4().hex
        self._owners[key] = token
        return token

    async def release(self, key: int, token: str) -> None:
        lock = self._locks.get(key)
        if lock is None or self._owners.get(key) != token:
            logger.warning("lock_release_not_owner", lock_key=key)
            return
        del self._owners[key]
        lock.release()
        if not lock.locked():
            self._locks.pop(key, None)

    def held_keys(self) -> set:
        return set(self._owners)


class RedisLockBackend(LockBackend):
    """
    Locks stored in Redis with an owner token and a TTL.

    The TTL bounds how long a crashed holder can block a requester; it must
    exceed the admission critical section.
    """

    KEY_PREFIX = "lab:reservation_lock:"

    # Delete only when the caller still owns the lock
    RELEASE_SCRIPT = """
    if redis.call('get', KEYS[1]) == ARGV[1] then
        return redis.call('del', KEYS[1])
    end
    return 0
    """

    def __init__(self, redis: Redis, ttl_seconds: int = 30):
        self.redis = redis
        self.ttl_ms = int(ttl_seconds * 1000)

    def _name(self, key: int) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def try_acquire(self, key: int) -> Optional[str]:
        token = uuid4().hex
        acquired = await self.redis.set(self._name(key), token, nx=True, px=self.ttl_ms)
        return token if acquired else None

    async def release(self, key: int, token: str) -> None:
        try:
            await self.redis.eval(self.RELEASE_SCRIPT, 1, self._name(key), token)
        except Exception as e:
            # The TTL frees the key eventually; do not mask the caller's outcome
            logger.error(
                "lock_release_failed",
                lock_key=key,
                error=str(e),
                exc_info=True
            )


class ReservationLockCoordinator:
    """
    Serializes admission decisions per requester key.

    Acquisition retries at a fixed interval until the timeout elapses and then
    raises LockTimeout. The lock is always released on exit, including when
    the guarded function raises.
    """

    def __init__(
        self,
        backend: Optional[LockBackend] = None,
        retry_interval: float = 1.0,
        default_timeout: float = 5.0
    ):
        self.backend = backend or InProcessLockBackend()
        self.retry_interval = retry_interval
        self.default_timeout = default_timeout

    @staticmethod
    def lock_key(requester: Requester) -> int:
        """
        Key guarding a requester's admissions.

        Usage counters are kept per user, so a user's personal and team
        contexts all share the user's key and serialize against each other.
        """
        return compute_lock_key(requester.user_id)

    async def _acquire(self, key: int, timeout: float) -> str:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout

        while True:
            token = await self.backend.try_acquire(key)
            if token is not None:
                lock_wait_seconds.observe(loop.time() - started)
                return token

            remaining = deadline - loop.time()
            if remaining <= 0:
                admissions_total.labels(outcome="lock_timeout").inc()
                logger.warning("reservation_lock_timeout", lock_key=key, timeout=timeout)
                raise LockTimeout(key, timeout)

            await asyncio.sleep(min(self.retry_interval, remaining))

    @asynccontextmanager
    async def acquire(
        self,
        requester: Requester,
        timeout: Optional[float] = None
    ) -> AsyncIterator[int]:
        """
        Hold the requester's reservation lock for the body of the block.

        Usage:
            async with coordinator.acquire(requester, timeout=5):
                ...
        """
        key = self.lock_key(requester)
        timeout = self.default_timeout if timeout is None else timeout
        token = await self._acquire(key, timeout)
        logger.debug("reservation_lock_acquired", lock_key=key, user_id=requester.user_id)
        try:
            yield key
        finally:
            await self.backend.release(key, token)
            logger.debug("reservation_lock_released", lock_key=key, user_id=requester.user_id)

    async def with_lock(
        self,
        requester: Requester,
        timeout: Optional[float],
        fn: Callable[[], Awaitable[T]]
    ) -> T:
        """Run `fn` while holding the requester's lock and return its result"""
        async with self.acquire(requester, timeout):
            return await fn()
