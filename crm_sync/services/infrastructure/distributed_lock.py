"""
Redis-backed mutual exclusion for scheduled jobs running on several instances.

The lock is a plain key set with NX and a TTL; the value is this instance's
id so that release only deletes a lock we still own.
"""

import os
import time

from redis.exceptions import RedisError

from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.services.infrastructure.redis_client import RedisClient, RedisClientError

logger = get_logger(__name__)


def make_instance_id() -> str:
    return f"{os.getpid()}-{int(time.time() * 1000)}"


class DistributedLock:
    """
    Usage:
        lock = DistributedLock(redis_client, "gmail_sync_lock:15", ttl_s=960)
        async with lock as acquired:
            if acquired:
                ...
    """

    def __init__(self, redis_client: RedisClient, key: str, ttl_s: int, instance_id: str | None = None):
        self.redis = redis_client
        self.key = key
        self.ttl_s = ttl_s
        self.instance_id = instance_id or make_instance_id()
        self.acquired = False

    async def acquire(self) -> bool:
        """
        Try once to take the lock. Redis failures count as "not acquired" so
        that two instances never run the same tick while Redis is unreachable.
        """
        try:
            self.acquired = await self.redis.set_if_absent(self.key, self.instance_id, self.ttl_s)
        except (RedisError, RedisClientError) as e:
            logger.error("Redis lock error, skipping run", key=self.key, error=str(e))
            self.acquired = False
            return False

        if self.acquired:
            logger.info("Acquired lock", key=self.key, instance_id=self.instance_id, ttl_s=self.ttl_s)
        else:
            logger.info("Another instance holds lock, skipping run", key=self.key)
        return self.acquired

    async def release(self) -> bool:
        """Delete the lock only if it still holds our instance id."""
        if not self.acquired:
            return False

        self.acquired = False
        try:
            released = await self.redis.delete_if_value(self.key, self.instance_id)
        except (RedisError, RedisClientError) as e:
            logger.error("Error releasing Redis lock", key=self.key, error=str(e))
            return False

        if released:
            logger.info("Released lock", key=self.key)
        else:
            logger.warning("Lock expired or taken over before release", key=self.key)
        return released

    async def __aenter__(self) -> bool:
        return await self.acquire()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
