"""
Broadcast channels used for leader election between execution contexts.

A channel delivers every published message to every other subscriber on
the same name. Two implementations:

- InMemoryBroadcastHub: contexts living in one process (and tests)
- RedisBroadcastChannel: contexts in separate processes, via Redis pub/sub
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from redis.exceptions import RedisError

from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class BroadcastChannel(Protocol):
    async def publish(self, message: dict[str, Any]) -> None: ...

    async def subscribe(self, handler: MessageHandler) -> None: ...

    async def close(self) -> None: ...


async def _dispatch(handler: MessageHandler, message: dict[str, Any], channel: str) -> None:
    try:
        result = handler(message)
        if asyncio.iscoroutine(result):
            await result
    except Exception as e:
        logger.error("Broadcast handler failed", channel=channel, error=str(e))


class InMemoryBroadcastChannel:
    """One endpoint on an in-process hub; never receives its own messages."""

    def __init__(self, hub: "InMemoryBroadcastHub", name: str):
        self._hub = hub
        self.name = name
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._reader: asyncio.Task | None = None
        self._handler: MessageHandler | None = None
        self.closed = False

    async def publish(self, message: dict[str, Any]) -> None:
        if self.closed:
            return
        self._hub._deliver(self, message)

    async def subscribe(self, handler: MessageHandler) -> None:
        self._handler = handler
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop(), name=f"broadcast-{self.name}")

    async def _read_loop(self) -> None:
        while True:
            message = await self._inbox.get()
            if self._handler is not None:
                await _dispatch(self._handler, message, self.name)

    async def close(self) -> None:
        self.closed = True
        self._hub._detach(self)
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None


class InMemoryBroadcastHub:
    def __init__(self):
        self._endpoints: dict[str, list[InMemoryBroadcastChannel]] = {}

    def channel(self, name: str) -> InMemoryBroadcastChannel:
        endpoint = InMemoryBroadcastChannel(self, name)
        self._endpoints.setdefault(name, []).append(endpoint)
        return endpoint

    def _deliver(self, sender: InMemoryBroadcastChannel, message: dict[str, Any]) -> None:
        for endpoint in self._endpoints.get(sender.name, []):
            if endpoint is not sender and not endpoint.closed:
                endpoint._inbox.put_nowait(dict(message))

    def _detach(self, endpoint: InMemoryBroadcastChannel) -> None:
        endpoints = self._endpoints.get(endpoint.name, [])
        if endpoint in endpoints:
            endpoints.remove(endpoint)


class RedisBroadcastChannel:
    """
    Redis pub/sub channel. Redis echoes a publisher's own messages back to
    it, so receivers must filter on the message's sender field.
    """

    def __init__(self, redis_client: RedisClient, name: str):
        self._redis = redis_client
        self.name = name
        self._pubsub = None
        self._reader: asyncio.Task | None = None

    async def publish(self, message: dict[str, Any]) -> None:
        try:
            await self._redis.publish(self.name, json.dumps(message))
        except RedisError as e:
            logger.warning("Broadcast publish failed", channel=self.name, error=str(e))

    async def subscribe(self, handler: MessageHandler) -> None:
        if self._reader is not None:
            return
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.name)
        self._reader = asyncio.create_task(self._read_loop(handler), name=f"broadcast-{self.name}")

    async def _read_loop(self, handler: MessageHandler) -> None:
        async for raw in self._pubsub.listen():
            if raw.get("type") != "message":
                continue
            try:
                message = json.loads(raw["data"])
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed broadcast message", channel=self.name)
                continue
            await _dispatch(handler, message, self.name)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.name)
                await self._pubsub.aclose()
            except RedisError as e:
                logger.warning("Error closing broadcast subscription", channel=self.name, error=str(e))
            self._pubsub = None
