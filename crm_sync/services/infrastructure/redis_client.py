"""
Async Redis client with connection pooling and an explicit lifecycle.

Constructed once per process (API or worker), initialized at startup,
closed at shutdown, and passed to whatever needs it.
"""

import redis.asyncio as redis
from redis.asyncio.client import PubSub
from redis.asyncio.connection import ConnectionPool

from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Deletes KEYS[1] only while it still holds ARGV[1]
_COMPARE_AND_DELETE = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisClientError(Exception):
    """Raised when the Redis client cannot be used."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class RedisClient:
    """Thin async Redis wrapper exposing the primitives the sync core relies on."""

    def __init__(self, url: str, max_connections: int = 20):
        self._url = url
        self._max_connections = max_connections
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                retry_on_timeout=True,
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized", max_connections=self._max_connections)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RedisClientError("Redis initialization failed", operation="initialize") from e

    async def close(self) -> None:
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))
        finally:
            self._initialized = False

    def _require_client(self) -> redis.Redis:
        if not self._initialized or self.client is None:
            raise RedisClientError("Redis client not initialized", operation="require_client")
        return self.client

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            return bool(await self._require_client().ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        return await self._require_client().get(key)

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        """SET key value NX EX ttl; True when this call created the key."""
        result = await self._require_client().set(key, value, nx=True, ex=ttl_s)
        return bool(result)

    async def delete_if_value(self, key: str, expected: str) -> bool:
        """Atomically delete key only if it still holds the expected value."""
        removed = await self._require_client().eval(_COMPARE_AND_DELETE, 1, key, expected)
        return int(removed or 0) > 0

    async def publish(self, channel: str, message: str) -> int:
        return int(await self._require_client().publish(channel, message))

    def pubsub(self) -> PubSub:
        return self._require_client().pubsub(ignore_subscribe_messages=True)
