"""Read path: origin first, then cache, then durable store.

A successful origin fetch also starts two detached background writes (cache
slot and channel publish). The caller never waits for them and never sees
their failures; they are reported through logging only.

The cache write is unconditional, last arrival wins. Two fetches completing
out of order can leave an older value in the cache; the durable store is
protected by the worker's timestamp check instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from lastknown._constants import (
    DEFAULT_CACHE_KEY,
    DEFAULT_CACHE_TIMEOUT,
    DEFAULT_REQUEST_DEADLINE,
    DEFAULT_STORE_TIMEOUT,
    DEFAULT_TOPIC,
)
from lastknown._redact import redact_for_log
from lastknown.cache import CacheStore
from lastknown.channel.base import DeliveryReport, EventChannel
from lastknown.exceptions import CacheError, FetchError, RecordDecodeError, StoreError
from lastknown.models.record import Record
from lastknown.origin import Fetcher
from lastknown.store import DurableStore

_logger = logging.getLogger(__name__)


class _DeadlineExceeded(Exception):
    """The caller's overall budget ran out before a stage could start."""


class ReadCoordinator:
    """Serves ``get_latest`` with a three-stage fallback chain.

    Usage::

        coordinator = ReadCoordinator(fetcher, cache, store, channel)
        payload = await coordinator.get_latest(deadline=2.0)
        if payload is None:
            ...  # nothing known anywhere
    """

    def __init__(
        self,
        fetcher: Fetcher,
        cache: CacheStore,
        store: DurableStore,
        channel: EventChannel,
        *,
        cache_key: str = DEFAULT_CACHE_KEY,
        topic: str = DEFAULT_TOPIC,
        cache_timeout: float = DEFAULT_CACHE_TIMEOUT,
        store_timeout: float = DEFAULT_STORE_TIMEOUT,
        request_deadline: float = DEFAULT_REQUEST_DEADLINE,
    ) -> None:
        self._fetcher = fetcher
        self._cache = cache
        self._store = store
        self._channel = channel
        self._cache_key = cache_key
        self._topic = topic
        self._cache_timeout = cache_timeout
        self._store_timeout = store_timeout
        self._request_deadline = request_deadline
        self._background: set[asyncio.Task[None]] = set()

    @property
    def pending_background(self) -> int:
        """Number of background writes still in flight."""
        return len(self._background)

    async def get_latest(self, deadline: float | None = None) -> str | None:
        """Return the freshest payload available, or ``None``.

        Parameters
        ----------
        deadline
            Overall budget in seconds. Defaults to the configured request
            deadline. Each stage is additionally bounded by its own
            timeout; once the budget is spent ``None`` is returned.

        Raises
        ------
        ValueError
            *deadline* is negative.
        """
        budget = self._request_deadline if deadline is None else float(deadline)
        if budget < 0:
            raise ValueError(f"deadline must not be negative, got {deadline}")

        loop = asyncio.get_running_loop()
        expires_at = loop.time() + budget

        def remaining() -> float:
            left = expires_at - loop.time()
            if left <= 0:
                raise _DeadlineExceeded
            return left

        try:
            record = await self._from_origin(remaining)
            if record is not None:
                return record.payload

            record = await self._from_cache(remaining)
            if record is not None:
                return record.payload

            record = await self._from_store(remaining)
            if record is not None:
                return record.payload
        except _DeadlineExceeded:
            _logger.warning("Deadline of %.3fs reached before a value was found", budget)
            return None

        _logger.warning("No value available from origin, cache or durable store")
        return None

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _from_origin(self, remaining: Callable[[], float]) -> Record | None:
        budget = remaining()
        try:
            # The fetcher enforces its own hard timeout; this bounds it by the caller deadline too.
            record = await asyncio.wait_for(self._fetcher.fetch(timeout=budget), budget)
        except FetchError as exc:
            _logger.warning("Error occurred while fetching the latest value (%s): %s", exc.kind, exc)
            return None
        except TimeoutError:
            _logger.warning("Origin did not answer within the remaining %.3fs", budget)
            return None
        _logger.debug("Fetched from origin at %s: %s", record.timestamp, redact_for_log(record.payload))
        self._spawn(self._write_cache(record), name="lastknown-cache-write")
        self._spawn(self._publish(record), name="lastknown-publish")
        return record

    async def _from_cache(self, remaining: Callable[[], float]) -> Record | None:
        try:
            raw = await asyncio.wait_for(
                self._cache.get(self._cache_key, timeout=self._cache_timeout),
                min(self._cache_timeout, remaining()),
            )
            if raw is None:
                return None
            return Record.from_wire(raw)
        except (CacheError, RecordDecodeError, TimeoutError) as exc:
            _logger.warning("Error occurred while reading the latest value from cache: %r", exc)
            return None

    async def _from_store(self, remaining: Callable[[], float]) -> Record | None:
        try:
            return await asyncio.wait_for(self._store.get_singleton(), min(self._store_timeout, remaining()))
        except (StoreError, TimeoutError) as exc:
            _logger.warning("Error occurred while reading the latest value from the durable store: %r", exc)
            return None

    # ------------------------------------------------------------------
    # Background writes
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_cache(self, record: Record) -> None:
        try:
            await asyncio.wait_for(
                self._cache.set(self._cache_key, record.to_wire(), timeout=self._cache_timeout),
                self._cache_timeout,
            )
        except (CacheError, TimeoutError) as exc:
            _logger.warning("Error occurred while caching the latest value: %r", exc)

    async def _publish(self, record: Record) -> None:
        try:
            self._channel.publish(self._topic, record.to_wire(), on_delivery=self._on_delivery)
        except Exception:
            _logger.warning("Error occurred while publishing the latest value", exc_info=True)

    def _on_delivery(self, report: DeliveryReport) -> None:
        if not report.persisted:
            _logger.warning(
                "Message delivery failed (%s): %s",
                report.error or "not persisted",
                redact_for_log(report.value),
            )
            return
        _logger.debug("Message delivered to %s", report.topic)

    async def drain(self) -> None:
        """Wait for all in-flight background writes to finish."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
