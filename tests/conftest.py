"""Shared fixtures: an in-memory async Redis double and wired-up components."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from servicekit.core.redis import RedisManager
from servicekit.registry import ServiceRegistry
from servicekit.settings import Settings
from servicekit.store import ConfigStore
from servicekit.streams import StreamChannel


def _id_key(entry_id: str) -> Tuple[int, int]:
    ms, seq = entry_id.split("-")
    return int(ms), int(seq)


class _Group:
    def __init__(self, last_id: str) -> None:
        self.last_id = last_id
        self.pending: Dict[str, str] = {}


class FakePubSub:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.channels: Set[str] = set()
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        self.channels.update(channels)
        for c in channels:
            self.queue.put_nowait({"type": "subscribe", "channel": c, "data": 1})

    async def listen(self):
        while True:
            yield await self.queue.get()

    async def unsubscribe(self, *channels: str) -> None:
        if self.redis.fail_unsubscribe:
            raise RedisConnectionError("Connection lost during unsubscribe")
        self.channels.difference_update(channels)

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    """
    The subset of ``redis.asyncio.Redis`` servicekit uses, with
    ``decode_responses=True`` semantics and RESP2-shaped stream replies.

    ``down=True`` makes every command raise a connection error;
    ``fail_prefixes`` makes SET fail for matching keys only;
    ``fail_unsubscribe`` makes pub/sub unsubscribe raise.
    """

    def __init__(self) -> None:
        self.kv: Dict[str, str] = {}
        self.streams: Dict[str, List[Tuple[str, Dict[str, str]]]] = {}
        self.groups: Dict[Tuple[str, str], _Group] = {}
        self.published: List[Tuple[str, str]] = []
        self.set_calls: List[str] = []
        self.fail_prefixes: Set[str] = set()
        self.down = False
        self.closed = False
        self.fail_unsubscribe = False
        self.pubsubs: List[FakePubSub] = []
        self._seq = 0

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    # ------------------- connection -------------------
    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        self.closed = True

    # ------------------- keys -------------------
    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.kv.get(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        self._check()
        if any(key.startswith(p) for p in self.fail_prefixes):
            raise RedisConnectionError(f"write to {key} failed")
        self.set_calls.append(key)
        if nx and key in self.kv:
            return None
        self.kv[key] = str(value)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for k in keys:
            if self.kv.pop(k, None) is not None:
                removed += 1
        return removed

    async def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for k in keys if k in self.kv)

    def pubsub(self) -> FakePubSub:
        ps = FakePubSub(self)
        self.pubsubs.append(ps)
        return ps

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        receivers = [ps for ps in self.pubsubs if channel in ps.channels]
        for ps in receivers:
            ps.queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    # ------------------- streams -------------------
    def _next_id(self) -> str:
        self._seq += 1
        return f"1700000000000-{self._seq}"

    async def xadd(self, name: str, fields: Dict[str, str], id: str = "*", maxlen=None, approximate=True) -> str:
        self._check()
        entry_id = self._next_id()
        self.streams.setdefault(name, []).append((entry_id, dict(fields)))
        return entry_id

    async def xgroup_create(self, name: str, groupname: str, id: str = "$", mkstream: bool = False) -> bool:
        self._check()
        if name not in self.streams:
            if not mkstream:
                raise ResponseError("ERR The XGROUP subcommand requires the key to exist")
            self.streams[name] = []
        if (name, groupname) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        entries = self.streams[name]
        last = entries[-1][0] if (id == "$" and entries) else "0-0"
        self.groups[(name, groupname)] = _Group(last)
        return True

    def _collect(self, name: str, group: _Group, consumer: str, start: str, count: Optional[int]):
        entries = self.streams.get(name, [])
        if start == ">":
            fresh = [(i, f) for i, f in entries if _id_key(i) > _id_key(group.last_id)]
            fresh = fresh[:count] if count else fresh
            for i, _ in fresh:
                group.pending[i] = consumer
            if fresh:
                group.last_id = fresh[-1][0]
            return fresh
        by_id = dict(entries)
        own = [i for i, c in group.pending.items() if c == consumer]
        own.sort(key=_id_key)
        own = own[:count] if count else own
        return [(i, by_id.get(i)) for i in own]

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None, noack=False):
        self._check()
        deadline = time.monotonic() + (block or 0) / 1000.0
        while True:
            reply = []
            for name, start in streams.items():
                group = self.groups.get((name, groupname))
                if group is None:
                    raise ResponseError(f"NOGROUP No such key '{name}' or consumer group '{groupname}'")
                found = self._collect(name, group, consumername, start, count)
                if found:
                    reply.append([name, found])
            if reply:
                return reply
            pending_read = all(s != ">" for s in streams.values())
            if pending_read or block is None or time.monotonic() >= deadline:
                return []
            await asyncio.sleep(0.01)

    async def xack(self, name: str, groupname: str, *ids: str) -> int:
        self._check()
        group = self.groups.get((name, groupname))
        if group is None:
            return 0
        return sum(1 for i in ids if group.pending.pop(i, None) is not None)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        SERVICEKIT_REDIS_NAMESPACE="",
        SERVICEKIT_SERVICE_TOKEN="own-token",
        SERVICEKIT_REGISTRY_PUBSUB=False,
        SERVICEKIT_REGISTRY_FILE=None,
        SERVICEKIT_STREAM_MAXLEN=0,
    )


@pytest.fixture
async def rm(settings: Settings, fake_redis: FakeRedis):
    manager = RedisManager(settings, client=fake_redis)
    await manager.connect()
    yield manager
    await manager.close()


@pytest.fixture
def store(rm: RedisManager) -> ConfigStore:
    return ConfigStore(rm)


@pytest.fixture
def channel(rm: RedisManager) -> StreamChannel:
    return StreamChannel(rm)


class StaticSource:
    """Descriptor source returning a fixed document, or raising ``error``."""

    def __init__(self, services: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None) -> None:
        self.services = services
        self.error = error
        self.calls = 0

    async def fetch_document(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.services is None:
            return None
        return {"_id": "service_configurations", "services": self.services}


@pytest.fixture
def billing_services() -> List[Dict[str, Any]]:
    return [
        {"serviceName": "billing", "host": "10.0.0.5", "port": 8080, "token": "abc"},
        {"serviceName": "no-port", "host": "10.0.0.6", "token": "def"},
        {"serviceName": "no-token", "host": "10.0.0.7", "port": 9090},
    ]


@pytest.fixture
async def loaded_registry(billing_services) -> ServiceRegistry:
    registry = ServiceRegistry(StaticSource(billing_services))
    await registry.reload()
    return registry
