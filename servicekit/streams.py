"""
Redis Streams work queue.

Each entry carries one field, ``payload``, holding the JSON-encoded message.
Consumer groups give at-least-once delivery per group: an entry stays in the
group's pending list until it is acknowledged, so handlers must be idempotent
with respect to the message id.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from redis.exceptions import RedisError, ResponseError

from servicekit.constants import BUSYGROUP, STREAM_PAYLOAD_FIELD
from servicekit.core.logging import get_logger
from servicekit.core.redis import RedisManager
from servicekit.errors import BackendUnavailable, SerializationFailure
from servicekit.models import StreamMessage

log = get_logger("servicekit.streams")

NEW_ENTRIES = ">"
OWN_PENDING = "0"


class StreamChannel:
    def __init__(self, rm: RedisManager, *, maxlen: Optional[int] = None) -> None:
        self.rm = rm
        s = rm.settings
        self.maxlen = maxlen if maxlen is not None else (s.SERVICEKIT_STREAM_MAXLEN or None)
        self.default_block_ms = s.SERVICEKIT_STREAM_BLOCK_MS
        self.default_count = s.SERVICEKIT_STREAM_COUNT
        self._socket_timeout = s.SERVICEKIT_REDIS_SOCKET_TIMEOUT

    async def ensure_group(self, stream_key: str, group_name: str) -> None:
        """Create stream and group at the current tail. Safe to call repeatedly."""
        client = self.rm.client
        try:
            await client.xgroup_create(self.rm.ns_key(stream_key), group_name, id="$", mkstream=True)
            log.info("Stream '%s' and group '%s' ensured.", stream_key, group_name)
        except ResponseError as exc:
            if str(exc).startswith(BUSYGROUP):
                log.debug("Group '%s' already exists on stream '%s'.", group_name, stream_key)
                return
            log.error("Error creating stream/group '%s/%s': %s", stream_key, group_name, exc)
            raise BackendUnavailable(f"Could not create group '{group_name}' on stream '{stream_key}'") from exc
        except RedisError as exc:
            log.error("Error creating stream/group '%s/%s': %s", stream_key, group_name, exc)
            raise BackendUnavailable(f"Could not create group '{group_name}' on stream '{stream_key}'") from exc

    async def publish(self, stream_key: str, payload: Any) -> str:
        try:
            text = json.dumps(payload, default=str)
        except (TypeError, ValueError) as exc:
            raise SerializationFailure("Stream payload is not JSON serializable") from exc

        client = self.rm.client
        kwargs = {}
        if self.maxlen:
            kwargs = {"maxlen": self.maxlen, "approximate": True}
        try:
            message_id = await client.xadd(self.rm.ns_key(stream_key), {STREAM_PAYLOAD_FIELD: text}, **kwargs)
        except RedisError as exc:
            log.error("Error publishing to stream '%s': %s", stream_key, exc)
            raise BackendUnavailable(f"Could not publish to stream '{stream_key}'") from exc
        log.debug("Message published to stream '%s' with id %s", stream_key, message_id)
        return message_id

    async def read_group(
        self,
        stream_key: str,
        group_name: str,
        consumer_name: str,
        *,
        block_ms: Optional[int] = None,
        count: Optional[int] = None,
        pending: bool = False,
    ) -> List[StreamMessage]:
        """
        Read entries for ``consumer_name`` within the group, in log order.

        New entries by default; ``pending=True`` re-reads the entries already
        delivered to this consumer and not yet acknowledged. A timeout returns
        an empty list; ``block_ms=0`` does not wait at all.

        Pending entries already trimmed from the log can never be delivered;
        they are acknowledged and the read moves on to the entries behind them.
        """
        block = self.default_block_ms if block_ms is None else block_ms
        if block < 0:
            raise ValueError("block_ms must not be negative")
        count = count or self.default_count
        if self._socket_timeout and block / 1000.0 >= self._socket_timeout:
            log.warning(
                "Block of %sms on '%s' is not below the Redis socket timeout (%ss).",
                block,
                stream_key,
                self._socket_timeout,
            )

        while True:
            entries = await self._read_entries(
                stream_key,
                group_name,
                consumer_name,
                OWN_PENDING if pending else NEW_ENTRIES,
                count=count,
                # BLOCK 0 would wait forever
                block=block or None,
            )
            trimmed = [message_id for message_id, fields in entries if fields is None]
            if trimmed:
                log.warning(
                    "Pending entries %s on '%s' no longer exist in the stream; acknowledging them.",
                    ", ".join(trimmed),
                    stream_key,
                )
                await self.ack(stream_key, group_name, trimmed)
            messages = self._decode_entries(stream_key, entries)
            if messages or not trimmed:
                return messages

    async def _read_entries(
        self,
        stream_key: str,
        group_name: str,
        consumer_name: str,
        start: str,
        *,
        count: int,
        block: Optional[int],
    ) -> List[Tuple[str, Optional[Dict[str, str]]]]:
        client = self.rm.client
        key = self.rm.ns_key(stream_key)
        try:
            response = await client.xreadgroup(group_name, consumer_name, {key: start}, count=count, block=block)
        except RedisError as exc:
            log.error("Error reading stream '%s' for group '%s': %s", stream_key, group_name, exc)
            raise BackendUnavailable(f"Could not read stream '{stream_key}' for group '{group_name}'") from exc

        if not response:
            return []
        if isinstance(response, dict):
            # RESP3: {stream: [[(id, fields), ...]]}
            return list((response.get(key) or [[]])[0])
        return list(response[0][1])

    @staticmethod
    def _decode_entries(stream_key: str, entries) -> List[StreamMessage]:
        messages: List[StreamMessage] = []
        for message_id, fields in entries:
            if fields is None:
                continue
            raw = fields.get(STREAM_PAYLOAD_FIELD)
            try:
                payload = json.loads(raw)
            except (TypeError, ValueError) as exc:
                log.error("Malformed payload in entry %s on '%s'.", message_id, stream_key)
                raise SerializationFailure(
                    f"Malformed payload in stream '{stream_key}'", message_id=message_id
                ) from exc
            messages.append(StreamMessage(id=message_id, payload=payload))
        return messages

    async def ack(self, stream_key: str, group_name: str, ids: Union[str, Iterable[str]]) -> int:
        id_list = [ids] if isinstance(ids, str) else list(ids)
        if not id_list:
            return 0
        client = self.rm.client
        try:
            acked = await client.xack(self.rm.ns_key(stream_key), group_name, *id_list)
        except RedisError as exc:
            log.error("Error acknowledging on stream '%s': %s", stream_key, exc)
            raise BackendUnavailable(f"Could not acknowledge on stream '{stream_key}'") from exc
        log.debug("ACK sent for %d message(s) on '%s'.", len(id_list), stream_key)
        return int(acked)

    async def broadcast(self, channel: str, payload: Any) -> int:
        """Fire-and-forget pub/sub message. Returns the number of receivers."""
        client = self.rm.client
        try:
            receivers = await client.publish(self.rm.ns_key(channel), json.dumps(payload, default=str))
        except RedisError as exc:
            log.error("Error publishing to channel '%s': %s", channel, exc)
            raise BackendUnavailable(f"Could not publish to channel '{channel}'") from exc
        log.debug("Message published on channel '%s'; received by %s subscriber(s).", channel, receivers)
        return int(receivers)

    # ------------------- processed markers -------------------

    def _done_key(self, stream_key: str, group_name: str, message_id: str) -> str:
        return self.rm.ns_key(f"{stream_key}:{group_name}:done:{message_id}")

    async def was_processed(self, stream_key: str, group_name: str, message_id: str) -> bool:
        try:
            return bool(await self.rm.client.exists(self._done_key(stream_key, group_name, message_id)))
        except RedisError as exc:
            raise BackendUnavailable("Could not read processed marker") from exc

    async def mark_processed(self, stream_key: str, group_name: str, message_id: str, ttl_seconds: int) -> None:
        try:
            await self.rm.client.set(self._done_key(stream_key, group_name, message_id), "1", ex=ttl_seconds, nx=True)
        except RedisError as exc:
            raise BackendUnavailable("Could not write processed marker") from exc


MessageHandler = Callable[[StreamMessage], Awaitable[None]]


class StreamConsumer:
    """
    Background worker for one consumer of one group.

    Successful messages are acknowledged. A handler failure leaves the message
    pending; the consumer re-reads its own pending list when it starts and
    after dropping a malformed entry, and keeps doing so while every pending
    message it gets is handled.
    """

    def __init__(
        self,
        channel: StreamChannel,
        stream_key: str,
        group_name: str,
        consumer_name: str,
        handler: MessageHandler,
        *,
        block_ms: Optional[int] = None,
        count: Optional[int] = None,
        dedup_ttl_seconds: Optional[int] = None,
        error_backoff_sec: float = 1.0,
    ) -> None:
        self.channel = channel
        self.stream_key = stream_key
        self.group_name = group_name
        self.consumer_name = consumer_name
        self.handler = handler
        self.block_ms = block_ms
        self.count = count
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self.error_backoff_sec = error_backoff_sec
        self._drain_pending = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            log.warning("Consumer %s already running", self.consumer_name)
            return
        await self.channel.ensure_group(self.stream_key, self.group_name)
        # entries delivered before a restart are still pending for this consumer
        self._drain_pending = True
        self._task = asyncio.create_task(self._loop())
        log.info(
            "Consumer %s started on %s/%s",
            self.consumer_name,
            self.stream_key,
            self.group_name,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            log.exception("Consumer %s had stopped with an error", self.consumer_name)
        log.info("Consumer %s stopped", self.consumer_name)

    async def run_once(self) -> int:
        """One read/handle/ack cycle. Returns the number of messages acknowledged."""
        pending = self._drain_pending
        self._drain_pending = False
        try:
            messages = await self.channel.read_group(
                self.stream_key,
                self.group_name,
                self.consumer_name,
                block_ms=self.block_ms,
                count=self.count,
                pending=pending,
            )
        except SerializationFailure as exc:
            bad_id = exc.context.get("message_id")
            if bad_id:
                await self.channel.ack(self.stream_key, self.group_name, [bad_id])
                log.error("Dropped malformed entry %s from '%s'.", bad_id, self.stream_key)
            self._drain_pending = True
            return 0

        acked = 0
        for message in messages:
            if self.dedup_ttl_seconds and await self.channel.was_processed(
                self.stream_key, self.group_name, message.id
            ):
                log.debug("Message %s already processed; acknowledging only.", message.id)
                acked += await self.channel.ack(self.stream_key, self.group_name, [message.id])
                continue
            try:
                await self.handler(message)
            except Exception:
                log.exception("Handler failed for message %s on '%s'; left pending.", message.id, self.stream_key)
                continue
            if self.dedup_ttl_seconds:
                await self.channel.mark_processed(
                    self.stream_key, self.group_name, message.id, self.dedup_ttl_seconds
                )
            acked += await self.channel.ack(self.stream_key, self.group_name, [message.id])

        if pending and messages and acked == len(messages):
            self._drain_pending = True
        return acked

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except BackendUnavailable as exc:
                log.error("Consumer %s: %s; retrying in %.1fs", self.consumer_name, exc.message, self.error_backoff_sec)
                await asyncio.sleep(self.error_backoff_sec)
            except Exception:
                log.exception("Consumer %s: unexpected error; retrying in %.1fs", self.consumer_name, self.error_backoff_sec)
                await asyncio.sleep(self.error_backoff_sec)
