"""Persistence worker: drains the event channel into the durable store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum

from lastknown._constants import DEFAULT_CACHE_KEY, DEFAULT_CACHE_TIMEOUT, DEFAULT_CONSUMER_GROUP, DEFAULT_TOPIC
from lastknown.cache import CacheStore
from lastknown.channel.base import ChannelMessage, EventChannel, Subscription
from lastknown.exceptions import CacheError, ChannelError, RecordDecodeError, StoreError
from lastknown.models.record import Record
from lastknown.policy import should_replace
from lastknown.store import DurableStore

logger = logging.getLogger(__name__)


class WorkerStatus(StrEnum):
    IDLE = "idle"
    WAITING = "waiting"
    PROCESSING = "processing"
    ACKNOWLEDGING = "acknowledging"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class WorkerState:
    """Observable state and counters of a running worker."""

    status: WorkerStatus = WorkerStatus.IDLE
    received: int = 0
    applied: int = 0
    skipped_stale: int = 0
    decode_failures: int = 0
    store_failures: int = 0
    consume_errors: int = 0
    partition_eofs: int = 0
    error: Exception | None = None


class PersistenceWorker:
    """Single sequential consumer applying observed records to the store.

    Each message goes through ``waiting -> processing -> acknowledging``.
    The channel cursor is only advanced once the durable write (or the
    decision not to write) has succeeded, which gives at-least-once
    delivery into the store. Replays are harmless because a record whose
    timestamp is not strictly newer than the stored one is a no-op.

    Example:
        worker = PersistenceWorker(channel, store, topic="observed")
        task = worker.start()
        ...
        worker.stop()
        await task
    """

    def __init__(
        self,
        channel: EventChannel,
        store: DurableStore,
        *,
        topic: str = DEFAULT_TOPIC,
        group: str = DEFAULT_CONSUMER_GROUP,
        cache: CacheStore | None = None,
        cache_key: str = DEFAULT_CACHE_KEY,
        cache_timeout: float = DEFAULT_CACHE_TIMEOUT,
        poll_interval: float = 1.0,
        retry_backoff: float = 1.0,
        cache_precheck: bool = False,
        conditional_update: bool = False,
    ) -> None:
        if cache_precheck and cache is None:
            raise ValueError("cache_precheck requires a cache")
        self._channel = channel
        self._store = store
        self._topic = topic
        self._group = group
        self._cache = cache
        self._cache_key = cache_key
        self._cache_timeout = cache_timeout
        self._poll_interval = poll_interval
        self._retry_backoff = retry_backoff
        self._cache_precheck = cache_precheck
        self._conditional_update = conditional_update
        self._state = WorkerState()
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> WorkerState:
        """Current worker state."""
        return self._state

    def start(self) -> asyncio.Task[None]:
        """Run the worker in a background task."""
        self._stop.clear()
        self._task = asyncio.create_task(self.run(), name="lastknown-persistence-worker")
        return self._task

    def stop(self) -> None:
        """Signal the worker to stop after the message in hand."""
        self._stop.set()
        self._state.status = WorkerStatus.STOPPING
        logger.info("Persistence worker stopping...")

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking up early when stop is requested."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), seconds)
        except TimeoutError:
            pass

    async def _subscribe(self) -> Subscription | None:
        while not self._stop.is_set():
            try:
                return await self._channel.subscribe(self._topic, group=self._group)
            except ChannelError as e:
                self._state.consume_errors += 1
                logger.error("Subscribing to %s failed: %s", self._topic, e)
                await self._pause(self._retry_backoff)
            except Exception as e:
                self._state.consume_errors += 1
                self._state.error = e
                logger.exception("Unexpected error subscribing to %s", self._topic)
                await self._pause(self._retry_backoff)
        return None

    async def run(self) -> None:
        """Consume until :meth:`stop` is called or the task is cancelled."""
        subscription = await self._subscribe()
        if subscription is None:
            self._state.status = WorkerStatus.STOPPED
            return
        logger.info("Persistence worker started topic=%s group=%s", self._topic, self._group)
        try:
            while not self._stop.is_set():
                await self._poll_once(subscription)
        except asyncio.CancelledError:
            logger.info("Persistence worker cancelled, closing consumer")
            raise
        finally:
            self._state.status = WorkerStatus.STOPPED
            await subscription.close()
            logger.info("Persistence worker stopped")

    async def _poll_once(self, subscription: Subscription) -> None:
        self._state.status = WorkerStatus.WAITING
        try:
            message = await subscription.receive(timeout=self._poll_interval)
        except ChannelError as e:
            self._state.consume_errors += 1
            self._state.error = e
            logger.error("Consume error: %s", e)
            await self._pause(self._retry_backoff)
            return
        except Exception as e:
            self._state.consume_errors += 1
            self._state.error = e
            logger.exception("Unexpected consume error")
            await self._pause(self._retry_backoff)
            return

        if message is None:
            return
        if message.end_of_partition:
            self._state.partition_eofs += 1
            logger.info(
                "Reached end of topic %s, partition %s, offset %s.",
                message.topic,
                message.partition,
                message.offset,
            )
            return

        self._state.received += 1
        logger.debug("Received message at %s[%s]@%s", message.topic, message.partition, message.offset)
        try:
            await self.process(subscription, message)
        except Exception as e:
            self._state.error = e
            logger.exception("Unexpected error processing message at offset %s, retrying", message.offset)
            await self._retry_later(subscription, message)

    async def process(self, subscription: Subscription, message: ChannelMessage) -> None:
        """Apply one message and acknowledge it once the store agrees."""
        self._state.status = WorkerStatus.PROCESSING
        try:
            candidate = Record.from_wire(message.value)
        except RecordDecodeError as e:
            self._state.decode_failures += 1
            logger.error("Skipping undecodable message at offset %s: %s", message.offset, e)
            await self._acknowledge(subscription, message)
            return

        try:
            await self._apply(candidate)
        except StoreError as e:
            self._state.store_failures += 1
            self._state.error = e
            logger.error("Durable write failed, message at offset %s will be redelivered: %s", message.offset, e)
            await self._retry_later(subscription, message)
            return

        await self._acknowledge(subscription, message)

    async def _retry_later(self, subscription: Subscription, message: ChannelMessage) -> None:
        try:
            await subscription.rewind(message)
        except Exception:
            logger.exception("Rewind to offset %s failed", message.offset)
        await self._pause(self._retry_backoff)

    async def _acknowledge(self, subscription: Subscription, message: ChannelMessage) -> None:
        self._state.status = WorkerStatus.ACKNOWLEDGING
        try:
            await subscription.ack(message)
        except ChannelError as e:
            self._state.error = e
            logger.error("Store offset error: %s", e)

    async def _cached_is_newer(self, candidate: Record) -> bool:
        if self._cache is None:
            return False
        try:
            raw = await asyncio.wait_for(
                self._cache.get(self._cache_key, timeout=self._cache_timeout),
                self._cache_timeout,
            )
            if raw is None:
                return False
            cached = Record.from_wire(raw)
        except (CacheError, RecordDecodeError, TimeoutError) as e:
            logger.warning("Error getting value from cache, falling back to the durable store: %r", e)
            return False
        return cached.timestamp > candidate.timestamp

    async def _apply(self, candidate: Record) -> None:
        if self._cache_precheck and await self._cached_is_newer(candidate):
            # The newer cached record has its own message on the way.
            self._state.skipped_stale += 1
            logger.debug("Skipping record at %s, cache already holds a newer one", candidate.timestamp)
            return

        if self._conditional_update:
            replaced = await self._store.replace_if_newer(candidate)
        else:
            reference = await self._store.get_singleton()
            replaced = should_replace(candidate, reference)
            if replaced:
                await self._store.upsert_singleton(candidate)
                if reference is None:
                    logger.info("Stored first record at %s", candidate.timestamp)

        if replaced:
            self._state.applied += 1
            logger.debug("Stored record at %s", candidate.timestamp)
        else:
            self._state.skipped_stale += 1
            logger.debug("Record at %s is not newer than the stored one, skipped", candidate.timestamp)
