import json

import pytest

from servicekit.core.redis import RedisManager
from servicekit.errors import BackendUnavailable, SerializationFailure
from servicekit.models import ValueKind
from servicekit.store import ConfigStore, decode_value, encode_value


async def test_json_value_comes_back_structured(store, fake_redis):
    await store.put("company_settings:42", {"name": "Acme", "channels": ["whatsapp"]})

    result = await store.get("company_settings:42")

    assert result.found
    assert result.kind is ValueKind.JSON
    assert result.value == {"name": "Acme", "channels": ["whatsapp"]}
    assert json.loads(fake_redis.kv["company_settings:42"])["kind"] == "json"


async def test_scalars_are_stored_as_text(store):
    await store.put("n", 42)
    await store.put("flag", True)

    number = await store.get("n")
    flag = await store.get("flag")

    assert (number.kind, number.value) == (ValueKind.RAW, "42")
    assert (flag.kind, flag.value) == (ValueKind.RAW, "true")


async def test_quoted_text_is_not_reinterpreted(store):
    await store.put("k", '"quoted"')
    result = await store.get("k")
    assert result.value == '"quoted"'
    assert result.kind is ValueKind.RAW


async def test_none_is_an_explicit_empty_marker(store):
    await store.put("k", None)
    result = await store.get("k")
    assert result.found
    assert result.kind is ValueKind.EMPTY
    assert result.value is None


async def test_missing_key_is_not_found(store):
    result = await store.get("nope")
    assert not result.found
    assert result.value is None


async def test_legacy_values_remain_readable(store, fake_redis):
    fake_redis.kv["legacy_json"] = '{"a": 1}'
    fake_redis.kv["legacy_text"] = "123456789"
    fake_redis.kv["legacy_raw"] = "not json at all"

    assert (await store.get("legacy_json")).value == {"a": 1}
    assert (await store.get("legacy_text")).value == 123456789
    raw = await store.get("legacy_raw")
    assert (raw.kind, raw.value) == (ValueKind.RAW, "not json at all")


async def test_delete_reports_removed_count(store):
    await store.put("a", 1)
    await store.put("b", 2)

    assert await store.delete("a") == 1
    assert await store.delete(["a", "b", "c"]) == 1
    assert await store.delete([]) == 0
    assert not (await store.get("b")).found


async def test_backend_failure_is_not_reported_as_missing(store, fake_redis):
    fake_redis.down = True
    with pytest.raises(BackendUnavailable):
        await store.get("company_settings:42")
    with pytest.raises(BackendUnavailable):
        await store.put("k", 1)


async def test_invalid_key_is_rejected(store):
    with pytest.raises(SerializationFailure):
        await store.put("", 1)
    with pytest.raises(SerializationFailure):
        await store.delete(["ok", ""])


async def test_unserializable_value_is_rejected(store):
    class Opaque:
        def __str__(self):
            raise TypeError("no text form")

    with pytest.raises(SerializationFailure):
        await store.put("k", {"x": Opaque()})


def test_decode_value_ignores_foreign_envelope_kinds():
    text = json.dumps({"kind": "other", "data": 1})
    result = decode_value(text)
    assert result.kind is ValueKind.JSON
    assert result.value == {"kind": "other", "data": 1}


def test_encode_value_is_compact():
    assert encode_value([1, 2]) == '{"kind":"json","data":[1,2]}'


# ------------------- connection lifecycle -------------------


async def test_store_fails_fast_before_connect(settings, fake_redis):
    store = ConfigStore(RedisManager(settings, client=fake_redis))
    with pytest.raises(BackendUnavailable):
        await store.get("k")


async def test_store_fails_fast_after_close(settings, fake_redis):
    rm = RedisManager(settings, client=fake_redis)
    await rm.connect()
    await rm.close()
    with pytest.raises(BackendUnavailable):
        await ConfigStore(rm).put("k", 1)


async def test_connect_failure_raises_backend_unavailable(settings, fake_redis):
    fake_redis.down = True
    rm = RedisManager(settings, client=fake_redis)
    with pytest.raises(BackendUnavailable):
        await rm.connect()
    assert not rm.connected
    assert not await rm.is_available()


def test_namespace_prefix_is_idempotent(settings, fake_redis):
    rm = RedisManager(settings.model_copy(update={"SERVICEKIT_REDIS_NAMESPACE": "tenant-a"}), client=fake_redis)
    assert rm.ns_key("k") == "tenant-a:k"
    assert rm.ns_key("tenant-a:k") == "tenant-a:k"
