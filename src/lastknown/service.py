"""High-level async entry point wiring the read and write paths."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
from sqlalchemy.ext.asyncio import AsyncEngine

from lastknown._redact import redact_url
from lastknown.cache import CacheStore, MemoryCacheStore, RedisCacheStore
from lastknown.channel import EventChannel, MemoryEventChannel, MqttEventChannel
from lastknown.config import LastKnownConfig
from lastknown.coordinator import ReadCoordinator
from lastknown.exceptions import LastKnownError
from lastknown.origin import OriginFetcher
from lastknown.store import DurableStore, SqlDurableStore, create_store_engine
from lastknown.worker import PersistenceWorker, WorkerState

_logger = logging.getLogger(__name__)


class LastKnownService:
    """Process-scoped owner of every shared resource.

    The HTTP session, database engine, cache client and channel are created
    once on enter and injected into the coordinator and the worker.
    Collaborators passed explicitly are used as-is and left open on exit.

    Usage::

        async with LastKnownService(config) as service:
            service.start_worker()
            payload = await service.get_latest()
    """

    def __init__(
        self,
        config: LastKnownConfig,
        *,
        http_session: aiohttp.ClientSession | None = None,
        cache: CacheStore | None = None,
        store: DurableStore | None = None,
        channel: EventChannel | None = None,
    ) -> None:
        self._config = config
        self._external_session = http_session is not None
        self._http_session = http_session
        self._cache = cache
        self._owns_cache = cache is None
        self._store = store
        self._engine: AsyncEngine | None = None
        self._channel = channel
        self._owns_channel = channel is None
        self._coordinator: ReadCoordinator | None = None
        self._worker: PersistenceWorker | None = None
        self._worker_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> LastKnownService:
        config = self._config
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=config.origin_timeout),
            )

        if self._cache is None:
            self._cache = RedisCacheStore.from_url(config.redis_url) if config.redis_url else MemoryCacheStore()

        if self._store is None:
            self._engine = create_store_engine(config.database_url)
            self._store = SqlDurableStore(self._engine)

        if self._channel is None:
            if config.mqtt is not None:
                mqtt_channel = MqttEventChannel(config.mqtt, logger=_logger)
                mqtt_channel.start()
                self._channel = mqtt_channel
            else:
                self._channel = MemoryEventChannel()

        fetcher = OriginFetcher(config.origin_url, self._http_session, timeout=config.origin_timeout)
        self._coordinator = ReadCoordinator(
            fetcher,
            self._cache,
            self._store,
            self._channel,
            cache_key=config.cache_key,
            topic=config.topic,
            cache_timeout=config.cache_timeout,
            store_timeout=config.store_timeout,
            request_deadline=config.request_deadline,
        )
        _logger.info(
            "Service ready origin=%s store=%s cache=%s channel=%s",
            config.origin_url,
            redact_url(config.database_url) if self._engine is not None else type(self._store).__name__,
            redact_url(config.redis_url) or type(self._cache).__name__,
            type(self._channel).__name__,
        )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        try:
            await self.stop_worker()
            if self._coordinator is not None:
                await self._coordinator.drain()
        finally:
            self._coordinator = None
            await self._release_resources()

    async def _release_resources(self) -> None:
        closers: list[tuple[str, Callable[[], Awaitable[None]]]] = []
        if self._owns_channel and self._channel is not None:
            closers.append(("event channel", self._channel.close))
            self._channel = None
        if self._owns_cache and isinstance(self._cache, RedisCacheStore):
            closers.append(("redis cache", self._cache.close))
        if self._engine is not None:
            closers.append(("database engine", self._engine.dispose))
            self._engine = None
            self._store = None
        if not self._external_session and self._http_session is not None:
            closers.append(("http session", self._http_session.close))
            self._http_session = None

        # Every resource gets its close call even when an earlier one fails.
        for name, close in closers:
            try:
                await close()
            except Exception:
                _logger.exception("Closing the %s failed", name)

    def _require_coordinator(self) -> ReadCoordinator:
        if self._coordinator is None:
            raise LastKnownError("Service not started. Use 'async with LastKnownService(...)'.")
        return self._coordinator

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_latest(self, deadline: float | None = None) -> str | None:
        """Latest known payload, or ``None`` when nothing is available in time."""
        return await self._require_coordinator().get_latest(deadline)

    async def create_schema(self) -> None:
        """Create the durable table (first run only, not a migration tool)."""
        if not isinstance(self._store, SqlDurableStore):
            raise LastKnownError("create_schema requires the SQL durable store")
        await self._store.create_schema()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    @property
    def worker_state(self) -> WorkerState | None:
        return self._worker.state if self._worker is not None else None

    def start_worker(self) -> asyncio.Task[None]:
        """Start the persistence worker in the background."""
        self._require_coordinator()
        if self._worker_task is not None and not self._worker_task.done():
            return self._worker_task
        channel, store = self._channel, self._store
        if channel is None or store is None:
            raise LastKnownError("Service has no channel or store to consume with")
        config = self._config
        self._worker = PersistenceWorker(
            channel,
            store,
            topic=config.topic,
            group=config.consumer_group,
            cache=self._cache,
            cache_key=config.cache_key,
            cache_timeout=config.cache_timeout,
            poll_interval=config.poll_interval,
            retry_backoff=config.retry_backoff,
            cache_precheck=config.cache_precheck,
            conditional_update=config.conditional_update,
        )
        self._worker_task = self._worker.start()
        return self._worker_task

    async def stop_worker(self) -> None:
        """Signal the worker to stop and wait for it to release the channel."""
        task = self._worker_task
        self._worker_task = None
        if task is None:
            return
        if self._worker is not None:
            self._worker.stop()
        try:
            await task
        except Exception:
            _logger.exception("Persistence worker failed")
