"""Per-user serialization of ledger mutations.

`LocalUserLocks` serializes within one process; `RedisUserLocks` extends the
guarantee across instances. Different users never contend.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.exceptions import LockError

from creditledger.core.config import Settings
from creditledger.core.exceptions import LedgerBusyError
from creditledger.core.logging import get_logger

log = get_logger(__name__)

LOCK_KEY_PREFIX = "ledger:user_lock"


class LocalUserLocks:
    def __init__(self, wait_seconds: float = 5.0):
        self._wait_seconds = wait_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._wait_seconds)
            except asyncio.TimeoutError:
                log.warning("ledger_lock_timeout", user_id=user_id, backend="local")
                raise LedgerBusyError(user_id)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[user_id] -= 1
            if self._holders[user_id] == 0:
                del self._holders[user_id]
                self._locks.pop(user_id, None)


class RedisUserLocks:
    def __init__(self, redis, timeout_seconds: float = 10.0, wait_seconds: float = 5.0):
        self._redis = redis
        self._timeout = timeout_seconds
        self._wait = wait_seconds

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{LOCK_KEY_PREFIX}:{user_id}",
            timeout=self._timeout,
            blocking_timeout=self._wait,
        )
        if not await lock.acquire():
            log.warning("ledger_lock_timeout", user_id=user_id, backend="redis")
            raise LedgerBusyError(user_id)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lease ran out before release; per-bucket conditional updates still held.
                log.warning("ledger_lock_lease_expired", user_id=user_id)


def build_lock_manager(settings: Settings, redis=None):
    if settings.lock_backend == "redis":
        if redis is None:
            import redis.asyncio as aioredis
            redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        return RedisUserLocks(redis, settings.lock_timeout_seconds, settings.lock_wait_seconds)
    return LocalUserLocks(settings.lock_wait_seconds)
