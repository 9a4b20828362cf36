"""Saved-context storage keyed by context id."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from typing import Any, Protocol

import structlog
from redis.asyncio import Redis

from cortex_pathways.config.settings import ContextStoreSettings

logger = structlog.get_logger(__name__)


def serialize_context(context: Mapping[str, Any]) -> str:
    """Stable serialised form used for storage and change detection."""
    return json.dumps(context, sort_keys=True, default=str)


class ContextStore(Protocol):
    async def get(self, context_id: str) -> dict[str, Any] | None: ...

    async def set(self, context_id: str, context: Mapping[str, Any]) -> None: ...


class InMemoryContextStore:
    """Process-local store with optional TTL; values are stored serialised."""

    def __init__(self, *, ttl_seconds: int | None = None) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}
        self._ttl = ttl_seconds
        self._lock = asyncio.Lock()

    async def get(self, context_id: str) -> dict[str, Any] | None:
        async with self._lock:
            item = self._data.get(context_id)
            if item is None:
                return None
            payload, expires_at = item
            if expires_at is not None and expires_at < asyncio.get_running_loop().time():
                self._data.pop(context_id, None)
                return None
            return json.loads(payload)

    async def set(self, context_id: str, context: Mapping[str, Any]) -> None:
        async with self._lock:
            expires_at = None
            if self._ttl:
                expires_at = asyncio.get_running_loop().time() + self._ttl
            self._data[context_id] = (serialize_context(context), expires_at)

    async def delete(self, context_id: str) -> None:
        async with self._lock:
            self._data.pop(context_id, None)


class RedisContextStore:
    """Redis backed store; contexts are JSON documents under ``key_prefix``."""

    def __init__(
        self,
        client: Redis | None = None,
        *,
        key_prefix: str = "cortex:context",
        ttl_seconds: int | None = None,
    ) -> None:
        self._client = client or Redis()
        self._prefix = key_prefix
        self._ttl = ttl_seconds

    def _key(self, context_id: str) -> str:
        return f"{self._prefix}:{context_id}"

    async def get(self, context_id: str) -> dict[str, Any] | None:
        raw = await self._client.get(self._key(context_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        value = json.loads(raw)
        if not isinstance(value, dict):
            logger.warning("pathway.context.invalid_payload", context_id=context_id)
            return None
        return value

    async def set(self, context_id: str, context: Mapping[str, Any]) -> None:
        await self._client.set(self._key(context_id), serialize_context(context), ex=self._ttl)

    async def delete(self, context_id: str) -> None:
        await self._client.delete(self._key(context_id))


def create_context_store(settings: ContextStoreSettings) -> ContextStore:
    if settings.backend == "redis":
        client = Redis.from_url(settings.url)
        return RedisContextStore(client, key_prefix=settings.key_prefix, ttl_seconds=settings.ttl_seconds)
    return InMemoryContextStore(ttl_seconds=settings.ttl_seconds)


__all__ = [
    "ContextStore",
    "InMemoryContextStore",
    "RedisContextStore",
    "create_context_store",
    "serialize_context",
]
