"""
The ``ServiceKit`` context object.

One instance per process owns the Redis connection, the HTTP client and the
registry snapshot, and hands them to the components that need them. Nothing
in servicekit keeps module-level mutable state.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Request
from redis.exceptions import RedisError

from servicekit.core.logging import get_logger
from servicekit.core.redis import RedisManager
from servicekit.dispatcher import RequestDispatcher
from servicekit.errors import BackendUnavailable
from servicekit.projector import SecondaryIndexProjector
from servicekit.registry import DescriptorSource, FileDocumentSource, RedisDocumentSource, ServiceRegistry
from servicekit.settings import Settings, get_settings
from servicekit.store import ConfigStore
from servicekit.streams import MessageHandler, StreamChannel, StreamConsumer

log = get_logger("servicekit.kit")


class ServiceKit:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        redis_client: Optional[redis.Redis] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        source: Optional[DescriptorSource] = None,
    ) -> None:
        s = settings or get_settings()
        self.settings = s
        self.redis = RedisManager(s, client=redis_client)
        self.store = ConfigStore(self.redis)
        self.projector = SecondaryIndexProjector(self.store)
        self.streams = StreamChannel(self.redis)
        self.registry = ServiceRegistry(source or self._default_source())
        self.dispatcher = RequestDispatcher(self.registry, client=http_client, settings=s)
        self._listener: Optional[asyncio.Task] = None
        self._consumers: List[StreamConsumer] = []

    def _default_source(self) -> DescriptorSource:
        if self.settings.SERVICEKIT_REGISTRY_FILE:
            return FileDocumentSource(self.settings.SERVICEKIT_REGISTRY_FILE)
        return RedisDocumentSource(self.redis, self.settings.SERVICEKIT_REGISTRY_KEY)

    @property
    def registry_channel(self) -> str:
        return self.settings.SERVICEKIT_REGISTRY_CHANNEL

    # ------------------- lifecycle -------------------

    async def start(self) -> None:
        try:
            await self.redis.connect()
        except BackendUnavailable:
            log.warning(
                "Redis is not reachable at startup; store and streams fail fast until restart."
            )

        await self.registry.reload()

        if self.redis.connected and self.settings.SERVICEKIT_REGISTRY_PUBSUB:
            self._listener = asyncio.create_task(self._registry_listener())

    async def stop(self) -> None:
        consumers, self._consumers = self._consumers, []
        for consumer in consumers:
            await consumer.stop()
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener
        await self.dispatcher.aclose()
        await self.redis.close()

    async def start_consumer(
        self,
        stream_key: str,
        group_name: str,
        consumer_name: str,
        handler: MessageHandler,
        *,
        dedup: bool = True,
    ) -> StreamConsumer:
        """Start a background consumer that is stopped together with the kit."""
        s = self.settings
        consumer = StreamConsumer(
            self.streams,
            stream_key,
            group_name,
            consumer_name,
            handler,
            block_ms=s.SERVICEKIT_STREAM_BLOCK_MS,
            count=s.SERVICEKIT_STREAM_COUNT,
            dedup_ttl_seconds=s.SERVICEKIT_STREAM_DEDUP_TTL_SEC if dedup else None,
        )
        await consumer.start()
        self._consumers.append(consumer)
        return consumer

    # ------------------- registry change events -------------------

    async def publish_registry_change(self, op: str = "updated") -> int:
        """Tell every process sharing this Redis to reload its registry."""
        return await self.streams.broadcast(self.registry_channel, {"op": op})

    async def _registry_listener(self) -> None:
        channel = self.redis.ns_key(self.registry_channel)
        pubsub = self.redis.client.pubsub()
        try:
            await pubsub.subscribe(channel)
            log.info("Subscribed to registry channel: %s", channel)
            async for msg in pubsub.listen():
                if msg is None or msg.get("type") != "message":
                    continue
                log.debug("Registry change event: %s", msg.get("data"))
                await self.registry.reload()
        except asyncio.CancelledError:
            log.info("Registry listener cancelled.")
            raise
        except RedisError as exc:
            log.error("Registry listener stopped: %s", exc)
        finally:
            with contextlib.suppress(RedisError):
                await pubsub.unsubscribe(channel)
            with contextlib.suppress(RedisError):
                await pubsub.aclose()


def get_servicekit(request: Request) -> ServiceKit:
    """FastAPI dependency: the ServiceKit installed by the lifespan."""
    kit = getattr(request.app.state, "servicekit", None)
    if kit is None:
        raise BackendUnavailable("servicekit is not initialized")
    return kit
