"""Cache adapters for the latest observed record.

The cache is a best-effort mirror: callers bound every operation with a
timeout and treat :class:`~lastknown.exceptions.CacheError` as absence.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Protocol, TypeVar

from redis import asyncio as aioredis
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from lastknown._redact import redact_url
from lastknown.exceptions import CacheError, CacheErrorKind

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheStore(Protocol):
    """Key/value capability consumed by the read and write paths."""

    async def get(self, key: str, *, timeout: float) -> bytes | None:
        ...

    async def set(self, key: str, value: bytes, *, timeout: float) -> None:
        ...


class MemoryCacheStore:
    """In-process cache for single-process deployments and tests."""

    def __init__(self) -> None:
        self._values: dict[str, bytes] = {}

    async def get(self, key: str, *, timeout: float) -> bytes | None:
        return self._values.get(key)

    async def set(self, key: str, value: bytes, *, timeout: float) -> None:
        self._values[key] = value


class RedisCacheStore:
    """Cache backed by a shared ``redis.asyncio`` client.

    The client owns a connection pool and is safe for concurrent use by
    many request coroutines. It is created once per process and injected.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCacheStore:
        _logger.debug("Redis cache at %s", redact_url(url))
        return cls(aioredis.Redis.from_url(url))

    async def _bounded(self, coro: Awaitable[T], timeout: float, action: str) -> T:
        try:
            return await asyncio.wait_for(coro, timeout)
        except (TimeoutError, RedisTimeoutError) as exc:
            raise CacheError(f"Cache {action} timed out after {timeout:.3f}s", kind=CacheErrorKind.TIMEOUT) from exc
        except RedisError as exc:
            raise CacheError(f"Cache {action} failed: {exc}") from exc

    async def get(self, key: str, *, timeout: float) -> bytes | None:
        value = await self._bounded(self._client.get(key), timeout, "read")
        if value is None:
            return None
        if isinstance(value, str):
            return value.encode("utf-8")
        return bytes(value)

    async def set(self, key: str, value: bytes, *, timeout: float) -> None:
        await self._bounded(self._client.set(key, value), timeout, "write")

    async def close(self) -> None:
        await self._client.aclose()
