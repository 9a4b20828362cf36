from __future__ import annotations

import asyncio

import pytest

from cortex_pathways.config.settings import ContextStoreSettings
from cortex_pathways.orchestration.context_store import (
    InMemoryContextStore,
    RedisContextStore,
    create_context_store,
    serialize_context,
)


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}
        self.expiries: dict[str, int | None] = {}

    async def get(self, key: str) -> bytes | None:
        return self.values.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.values[key] = value.encode()
        self.expiries[key] = ex

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)


def test_in_memory_store_round_trip_returns_copies() -> None:
    store = InMemoryContextStore()

    async def _run() -> None:
        assert await store.get("ctx") is None
        context = {"facts": ["a", "b"]}
        await store.set("ctx", context)
        context["facts"].append("c")

        loaded = await store.get("ctx")
        assert loaded == {"facts": ["a", "b"]}
        loaded["facts"].append("d")
        assert await store.get("ctx") == {"facts": ["a", "b"]}

        await store.delete("ctx")
        assert await store.get("ctx") is None

    asyncio.run(_run())


def test_redis_store_uses_prefix_and_ttl() -> None:
    client = _FakeRedis()
    store = RedisContextStore(client, key_prefix="test:ctx", ttl_seconds=30)

    async def _run() -> None:
        await store.set("abc", {"x": 1})
        assert client.expiries == {"test:ctx:abc": 30}
        assert await store.get("abc") == {"x": 1}
        assert await store.get("missing") is None

    asyncio.run(_run())


def test_serialized_form_ignores_key_order() -> None:
    assert serialize_context({"a": 1, "b": 2}) == serialize_context({"b": 2, "a": 1})


def test_factory_selects_backend() -> None:
    assert isinstance(create_context_store(ContextStoreSettings()), InMemoryContextStore)
    pytest.importorskip("redis")
    store = create_context_store(ContextStoreSettings(backend="redis", key_prefix="p"))
    assert isinstance(store, RedisContextStore)
