from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import LockError

from meditation.domain.errors import LockNotAcquiredError

logger = logging.getLogger("locks")


def music_lock_key(external_task_id: str) -> str:
    return f"suno:cb:{external_task_id}"


class LockProvider(Protocol):
    def hold(self, key: str, *, timeout: float, blocking_timeout: float): ...


class RedisLockProvider:
    """
    Cross-process lock (poller workers and API replicas share it).

    timeout bounds how long a crashed holder can block others;
    blocking_timeout bounds how long we wait to acquire.
    """

    def __init__(self, redis_url: str):
        self.client = aioredis.from_url(redis_url, decode_responses=False)

    @asynccontextmanager
    async def hold(self, key: str, *, timeout: float, blocking_timeout: float) -> AsyncIterator[None]:
        lock = self.client.lock(key, timeout=timeout, blocking_timeout=blocking_timeout)
        acquired = await lock.acquire()
        if not acquired:
            raise LockNotAcquiredError(key)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # expired under us; the next holder already owns the key
                logger.warning("lock_release_failed", extra={"key": key})

    async def close(self) -> None:
        await self.client.aclose()


class _KeyedLock:
    __slots__ = ("lock", "users", "owner", "expiry")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0
        self.owner: Optional[object] = None
        self.expiry: Optional[asyncio.TimerHandle] = None


class InProcessLockProvider:
    """
    Keyed asyncio locks. Only valid when one process runs the reconciler and the webhook.

    Behaves like the redis lock: a holder past timeout loses the key, and a
    key's entry is dropped once nobody holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, _KeyedLock] = {}

    def _expire(self, key: str, entry: _KeyedLock, owner: object) -> None:
        if entry.owner is not owner:
            return
        entry.owner = None
        entry.expiry = None
        entry.lock.release()
        logger.warning("lock_expired", extra={"key": key})

    @asynccontextmanager
    async def hold(self, key: str, *, timeout: float, blocking_timeout: float) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyedLock()
        entry.users += 1
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=blocking_timeout)
            except asyncio.TimeoutError as e:
                raise LockNotAcquiredError(key) from e

            owner = object()
            entry.owner = owner
            entry.expiry = asyncio.get_running_loop().call_later(timeout, self._expire, key, entry, owner)
            try:
                yield
            finally:
                if entry.owner is owner:
                    entry.expiry.cancel()
                    entry.owner = None
                    entry.expiry = None
                    entry.lock.release()
                else:
                    # expired under us; the next holder already owns the key
                    logger.warning("lock_release_failed", extra={"key": key})
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    async def close(self) -> None:
        for entry in self._locks.values():
            if entry.expiry is not None:
                entry.expiry.cancel()
        self._locks.clear()


def build_lock_provider(redis_url: Optional[str]) -> RedisLockProvider | InProcessLockProvider:
    if redis_url:
        return RedisLockProvider(redis_url)
    logger.warning("redis_url_unset_using_in_process_locks")
    return InProcessLockProvider()
