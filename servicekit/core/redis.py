from __future__ import annotations

from typing import Optional, Tuple

import redis.asyncio as redis
from redis.asyncio.sentinel import Sentinel
from redis.exceptions import RedisError

from servicekit.core.logging import get_logger
from servicekit.errors import BackendUnavailable
from servicekit.settings import Settings, get_settings

log = get_logger("servicekit.redis")


class RedisManager:
    """
    The single Redis connection shared by the config store and the stream channel.

    Lifecycle is explicit: ``connect()`` once at startup, ``close()`` at shutdown.
    Touching :attr:`client` outside that window raises ``BackendUnavailable``
    instead of queueing or blocking.
    """

    @classmethod
    def _build_redis_client(
        cls, s: Settings
    ) -> Tuple[redis.Redis, Optional[redis.ConnectionPool], Optional[Sentinel]]:
        """
        Builds a Redis client using either:
        - Sentinel (SERVICEKIT_REDIS_SENTINEL=true)
        - SERVICEKIT_REDIS_URL / REDIS_URL when set
        - A direct ConnectionPool from host/port (default)
        """
        socket_kwargs = {
            "socket_keepalive": True,
            "socket_timeout": s.SERVICEKIT_REDIS_SOCKET_TIMEOUT,
            "socket_connect_timeout": s.SERVICEKIT_REDIS_CONNECT_TIMEOUT,
        }

        sentinels = list(s.SERVICEKIT_REDIS_SENTINELS_PARSED)
        if s.SERVICEKIT_REDIS_SENTINEL:
            if not sentinels:
                log.warning(
                    "SERVICEKIT_REDIS_SENTINEL=true but SERVICEKIT_REDIS_SENTINELS is empty; falling back to direct Redis."
                )
            else:
                sentinel = Sentinel(
                    sentinels,
                    password=s.REDIS_PASSWORD,
                    db=s.REDIS_DB,
                    decode_responses=True,
                    **socket_kwargs,
                )
                client = sentinel.master_for(
                    s.SERVICEKIT_REDIS_SENTINEL_MASTER,
                    password=s.REDIS_PASSWORD,
                    db=s.REDIS_DB,
                    decode_responses=True,
                    **socket_kwargs,
                )
                return client, None, sentinel

        if s.SERVICEKIT_REDIS_URL:
            pool = redis.ConnectionPool.from_url(
                s.SERVICEKIT_REDIS_URL,
                password=s.REDIS_PASSWORD,
                max_connections=s.SERVICEKIT_REDIS_MAX_CONNECTIONS,
                decode_responses=True,
                **socket_kwargs,
            )
        else:
            pool = redis.ConnectionPool(
                host=s.REDIS_HOST,
                port=s.REDIS_PORT,
                db=s.REDIS_DB,
                password=s.REDIS_PASSWORD,
                max_connections=s.SERVICEKIT_REDIS_MAX_CONNECTIONS,
                decode_responses=True,
                **socket_kwargs,
            )
        return redis.Redis(connection_pool=pool), pool, None

    def __init__(self, settings: Optional[Settings] = None, *, client: Optional[redis.Redis] = None) -> None:
        self.settings = settings or get_settings()
        self.namespace = self.settings.SERVICEKIT_REDIS_NAMESPACE
        self._injected = client
        self._client: Optional[redis.Redis] = None
        self._pool: Optional[redis.ConnectionPool] = None
        self._sentinel: Optional[Sentinel] = None

    # ------------------- lifecycle -------------------
    async def connect(self) -> None:
        if self._client is not None:
            log.info("Redis client already connected.")
            return
        if self._injected is not None:
            client, pool, sentinel = self._injected, None, None
        else:
            client, pool, sentinel = self._build_redis_client(self.settings)
        try:
            await client.ping()
        except RedisError as exc:
            log.error("Redis connection failed: %s", exc)
            if self._injected is None:
                await client.aclose()
            raise BackendUnavailable("Redis connection failed") from exc
        self._client, self._pool, self._sentinel = client, pool, sentinel
        log.info("Redis connection established and ready.")

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            log.info("Redis client was not active; nothing to close.")
            return
        try:
            await client.aclose()
            if self._pool is not None:
                await self._pool.aclose()
            log.info("Redis client closed.")
        except RedisError as exc:
            log.error("Error while closing Redis client: %s", exc)
        finally:
            self._pool = None
            self._sentinel = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise BackendUnavailable("Redis client not initialized; call connect() first")
        return self._client

    # ------------------- key helpers -------------------
    def ns_key(self, key: str) -> str:
        """Prefix Redis keys with SERVICEKIT_REDIS_NAMESPACE (idempotent)."""
        ns = str(self.namespace or "").strip(":")
        if not ns:
            return key
        prefix = f"{ns}:"
        return key if key.startswith(prefix) else f"{prefix}{key}"

    # ------------------- connectivity -------------------
    async def is_available(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.ping()
            return True
        except RedisError:
            return False
