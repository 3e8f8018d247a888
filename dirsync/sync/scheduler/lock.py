"""
Distributed Locks.

Per-entity-type locks taken by sync tasks so that two tasks never write
the same entity type of one tenant concurrently. Holders refresh the TTL
from a heartbeat; a crashed holder's lock simply expires.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, List, Optional

import redis.asyncio as redis
from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError

from dirsync.database.connection import DatabaseManager
from dirsync.sync.entities import EntityType, Scope, utcnow
from dirsync.sync.errors import LockContention
from dirsync.sync.models import SyncLockModel
from dirsync.utils.retry import RetryConfig, RetryExecutor

logger = logging.getLogger(__name__)


def lock_key(entity_type: EntityType, scope: Scope) -> str:
    return f"sync:{EntityType(entity_type).value}:{scope.key}"


class LockManager(ABC):
    """Abstract lock backend."""

    def __init__(self, retry_config: Optional[RetryConfig] = None, sleep=None):
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self._sleep = sleep or asyncio.sleep

    @abstractmethod
    async def try_acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        pass

    @abstractmethod
    async def refresh(self, key: str, owner: str, ttl_seconds: int) -> bool:
        """Extend the TTL if owner still holds the lock."""
        pass

    @abstractmethod
    async def release(self, key: str, owner: str) -> bool:
        """Delete the lock if owner holds it."""
        pass

    async def acquire(self, key: str, owner: str, ttl_seconds: int) -> None:
        """
        Acquire a lock, retrying with backoff.

        Raises:
            LockContention: If the lock is still held after the last attempt
        """
        async def attempt():
            if not await self.try_acquire(key, owner, ttl_seconds):
                raise LockContention(f"Lock {key} is held by another task", context={"key": key})

        await RetryExecutor(self.retry_config, sleep=self._sleep).async_execute(attempt)
        logger.debug(f"Lock {key} acquired by {owner}")

    @asynccontextmanager
    async def hold(
        self,
        keys: List[str],
        owner: str,
        ttl_seconds: int,
        heartbeat_interval: Optional[float] = None
    ) -> AsyncIterator[List[str]]:
        """
        Hold several locks for the duration of the block.

        Keys are taken in sorted order; a failure releases those already held.
        """
        keys = sorted(set(keys))
        held: List[str] = []
        try:
            for key in keys:
                await self.acquire(key, owner, ttl_seconds)
                held.append(key)
        except Exception:
            for key in held:
                await self.release(key, owner)
            raise

        interval = heartbeat_interval or max(ttl_seconds / 3.0, 0.1)
        heartbeat = asyncio.create_task(self._heartbeat(held, owner, ttl_seconds, interval))
        try:
            yield held
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            for key in held:
                await self.release(key, owner)

    async def _heartbeat(self, keys: List[str], owner: str, ttl_seconds: int, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            for key in keys:
                try:
                    if not await self.refresh(key, owner, ttl_seconds):
                        logger.warning(f"Lock {key} lost by {owner}")
                except Exception as e:
                    logger.error(f"Lock heartbeat failed for {key}: {e}")


class MemoryLockManager(LockManager):
    """Process-local lock backend."""

    def __init__(self, retry_config: Optional[RetryConfig] = None, sleep=None):
        super().__init__(retry_config, sleep)
        self._locks = {}

    async def try_acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        now = utcnow()
        current = self._locks.get(key)
        if current is not None and current[0] != owner and current[1] > now:
            return False
        self._locks[key] = (owner, now + timedelta(seconds=ttl_seconds))
        return True

    async def refresh(self, key: str, owner: str, ttl_seconds: int) -> bool:
        current = self._locks.get(key)
        if current is None or current[0] != owner:
            return False
        self._locks[key] = (owner, utcnow() + timedelta(seconds=ttl_seconds))
        return True

    async def release(self, key: str, owner: str) -> bool:
        current = self._locks.get(key)
        if current is None or current[0] != owner:
            return False
        del self._locks[key]
        return True


_REFRESH_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisLockManager(LockManager):
    """Redis lock backend (SET NX PX with compare-and-refresh/delete scripts)."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "dirsync",
        retry_config: Optional[RetryConfig] = None,
        sleep=None
    ):
        super().__init__(retry_config, sleep)
        self._redis = client or redis.from_url(redis_url, decode_responses=True)
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:lock:{key}"

    async def try_acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        acquired = await self._redis.set(self._key(key), owner, nx=True, px=int(ttl_seconds * 1000))
        if acquired:
            return True
        # Re-entrant for the same owner
        current = await self._redis.get(self._key(key))
        if isinstance(current, bytes):
            current = current.decode()
        if current == owner:
            return await self.refresh(key, owner, ttl_seconds)
        return False

    async def refresh(self, key: str, owner: str, ttl_seconds: int) -> bool:
        result = await self._redis.eval(_REFRESH_SCRIPT, 1, self._key(key), owner, int(ttl_seconds * 1000))
        return bool(result)

    async def release(self, key: str, owner: str) -> bool:
        result = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(key), owner)
        return bool(result)

    async def close(self) -> None:
        await self._redis.aclose()


class DatabaseLockManager(LockManager):
    """Lock backend on the sync_locks table."""

    def __init__(self, db: DatabaseManager, retry_config: Optional[RetryConfig] = None, sleep=None):
        super().__init__(retry_config, sleep)
        self.db = db

    async def try_acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)

        # Take over an expired lock or re-enter our own
        with self.db.get_session() as session:
            result = session.execute(
                update(SyncLockModel)
                .where(
                    SyncLockModel.key == key,
                    or_(SyncLockModel.expires_at < now, SyncLockModel.owner == owner),
                )
                .values(owner=owner, expires_at=expires_at, acquired_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True

        try:
            with self.db.get_session() as session:
                session.add(SyncLockModel(key=key, owner=owner, expires_at=expires_at, acquired_at=now))
        except IntegrityError:
            return False
        return True

    async def refresh(self, key: str, owner: str, ttl_seconds: int) -> bool:
        with self.db.get_session() as session:
            result = session.execute(
                update(SyncLockModel)
                .where(SyncLockModel.key == key, SyncLockModel.owner == owner)
                .values(expires_at=utcnow() + timedelta(seconds=ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def release(self, key: str, owner: str) -> bool:
        with self.db.get_session() as session:
            result = session.execute(
                delete(SyncLockModel)
                .where(SyncLockModel.key == key, SyncLockModel.owner == owner)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
