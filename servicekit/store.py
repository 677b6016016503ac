"""
Key/value config store over Redis.

Values are written inside a small JSON envelope, ``{"kind": ..., "data": ...}``,
so a read never has to guess whether ``"42"`` was a JSON number or raw text.
Text that is not an envelope (written by services that predate it) is still
readable: it is JSON-decoded when possible and returned verbatim otherwise.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Union

from redis.exceptions import RedisError

from servicekit.core.logging import get_logger
from servicekit.core.redis import RedisManager
from servicekit.errors import BackendUnavailable, SerializationFailure
from servicekit.models import StoreResult, ValueKind

log = get_logger("servicekit.store")

_ENVELOPE_KEYS = {"kind", "data"}


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_value(value: Any) -> str:
    if value is None:
        envelope = {"kind": ValueKind.EMPTY.value, "data": None}
    elif isinstance(value, (dict, list, tuple)):
        envelope = {"kind": ValueKind.JSON.value, "data": value}
    else:
        envelope = {"kind": ValueKind.RAW.value, "data": _scalar_text(value)}
    try:
        return json.dumps(envelope, separators=(",", ":"), default=str)
    except (TypeError, ValueError) as exc:
        raise SerializationFailure("Value is not JSON serializable") from exc


def decode_value(text: str) -> StoreResult:
    try:
        parsed = json.loads(text)
    except ValueError:
        return StoreResult(found=True, value=text, kind=ValueKind.RAW)

    if isinstance(parsed, dict) and set(parsed) == _ENVELOPE_KEYS:
        try:
            kind = ValueKind(parsed["kind"])
        except ValueError:
            kind = None
        if kind is not None:
            return StoreResult(found=True, value=parsed["data"], kind=kind)

    # legacy producer: plain JSON text
    return StoreResult(found=True, value=parsed, kind=ValueKind.JSON)


class ConfigStore:
    """Every call is a round trip; nothing is cached locally."""

    def __init__(self, rm: RedisManager) -> None:
        self.rm = rm

    async def put(self, key: str, value: Any, *, ex: Optional[int] = None) -> None:
        if not isinstance(key, str) or not key:
            raise SerializationFailure("Store key must be a non-empty string")
        if value is None:
            log.warning("Value for key %s is None; storing an explicit empty marker.", key)
        text = encode_value(value)
        client = self.rm.client
        try:
            await client.set(self.rm.ns_key(key), text, ex=ex)
        except RedisError as exc:
            log.error("Redis error during put(%s): %s", key, exc)
            raise BackendUnavailable(f"Could not write key '{key}'") from exc
        log.debug("Stored key %s", key)

    async def get(self, key: str) -> StoreResult:
        if not isinstance(key, str) or not key:
            raise SerializationFailure("Store key must be a non-empty string")
        client = self.rm.client
        try:
            text = await client.get(self.rm.ns_key(key))
        except RedisError as exc:
            log.error("Redis error during get(%s): %s", key, exc)
            raise BackendUnavailable(f"Could not read key '{key}'") from exc
        if text is None:
            log.debug("No value stored for key %s", key)
            return StoreResult.missing()
        if isinstance(text, bytes):
            text = text.decode()
        return decode_value(text)

    async def delete(self, keys: Union[str, Iterable[str]]) -> int:
        key_list = [keys] if isinstance(keys, str) else list(keys)
        if not key_list:
            return 0
        if not all(isinstance(k, str) and k for k in key_list):
            raise SerializationFailure("Store keys must be non-empty strings")
        client = self.rm.client
        try:
            removed = await client.delete(*(self.rm.ns_key(k) for k in key_list))
        except RedisError as exc:
            log.error("Redis error during delete(%s): %s", ", ".join(key_list), exc)
            raise BackendUnavailable("Could not delete keys") from exc
        log.debug("Deleted %s of %s key(s): %s", removed, len(key_list), ", ".join(key_list))
        return int(removed)
