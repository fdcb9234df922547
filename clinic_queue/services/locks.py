"""Per clinic-date locking for the single-in-progress invariant."""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import Dict

from clinic_queue.config import LOCK_TTL_MS
from clinic_queue.exceptions import ConflictError, DependencyFailure

logger = logging.getLogger(__name__)

# Lua script for atomic compare-and-delete
COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""

# Lua script for atomic compare-and-extend
COMPARE_AND_EXTEND = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("pexpire", KEYS[1], ARGV[2])
else
  return 0
end
"""


def lock_key(clinic_id: str, day: date) -> str:
    return f"queue_lock:{clinic_id}:{day.isoformat()}"


class LockLease:
    """Handle for a held lock. An in-process lock cannot be lost."""

    def __init__(self, key: str):
        self.key = key

    async def verify(self) -> None:
        return None


class RedisLockLease(LockLease):

    def __init__(self, redis_client, key: str, token: str, timeout_ms: int):
        super().__init__(key)
        self.redis = redis_client
        self.token = token
        self.timeout_ms = timeout_ms

    async def verify(self) -> None:
        """
        Confirm the lock is still ours and renew its TTL.

        Raises:
            ConflictError: The key expired and may now belong to another holder
        """
        if not self.redis.eval(COMPARE_AND_EXTEND, 1, self.key, self.token, self.timeout_ms):
            logger.warning(f"⚠️ Lost queue lock {self.key} (token: {self.token[:8]})")
            raise ConflictError(f"Queue lock {self.key} expired before the change was written")


class ClinicDateLock:
    """In-process mutex keyed by clinic and date."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, clinic_id: str, day: date):
        key = lock_key(clinic_id, day)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1

        try:
            async with lock:
                logger.debug(f"🔒 Acquired local lock: {key}")
                yield LockLease(key)
            logger.debug(f"🔓 Released local lock: {key}")
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                # Nobody holds or waits for it any more
                del self._users[key]
                self._locks.pop(key, None)


class RedisClinicDateLock:
    """Token-based distributed lock for multi-process deployments."""

    def __init__(self, redis_client, timeout_ms: int = LOCK_TTL_MS, retries: int = 8):
        """
        Args:
            redis_client: Synchronous Redis client (redis-py)
            timeout_ms: Lock TTL in milliseconds, renewed by ``RedisLockLease.verify``
            retries: Attempts after the first failed acquisition
        """
        self.redis = redis_client
        self.timeout_ms = timeout_ms
        self.retries = retries

    @asynccontextmanager
    async def acquire(self, clinic_id: str, day: date):
        """
        Acquire the clinic-date lock with automatic release.

        Yields a ``RedisLockLease``; call ``verify()`` right before writing
        so a holder whose key expired never commits.

        Raises:
            DependencyFailure: If lock cannot be acquired after retries
        """
        key = lock_key(clinic_id, day)
        token = str(uuid.uuid4())
        acquired = False

        try:
            acquired = self.redis.set(key, token, nx=True, px=self.timeout_ms)

            if not acquired:
                # Backoff 50ms, 100ms, 150ms...
                for i in range(self.retries):
                    await asyncio.sleep(0.05 * (i + 1))
                    acquired = self.redis.set(key, token, nx=True, px=self.timeout_ms)
                    if acquired:
                        break

                if not acquired:
                    raise DependencyFailure(
                        "redis_lock", f"queue lock busy for {key} after {self.retries} retries"
                    )

            logger.debug(f"🔒 Acquired queue lock: {key} (token: {token[:8]})")
            yield RedisLockLease(self.redis, key, token, self.timeout_ms)

        finally:
            if acquired:
                try:
                    # Only delete if we still own the lock
                    self.redis.eval(COMPARE_AND_DELETE, 1, key, token)
                    logger.debug(f"🔓 Released queue lock: {key}")
                except Exception as e:
                    logger.warning(f"Failed to release lock {key}: {e}")
