"""In-process event channel.

An append-only log per topic with one committed cursor per consumer group,
mirroring a single-partition log broker. Used for single-process
deployments and tests.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from lastknown.channel.base import ChannelMessage, DeliveryCallback, DeliveryReport
from lastknown.exceptions import ChannelError, ChannelErrorKind

_logger = logging.getLogger(__name__)


class MemoryEventChannel:
    """Append-only in-memory log with per-group cursors."""

    def __init__(self, *, emit_partition_eof: bool = False) -> None:
        self._logs: dict[str, list[bytes]] = defaultdict(list)
        self._committed: dict[tuple[str, str], int] = {}
        self._signals: dict[str, asyncio.Event] = {}
        self._emit_partition_eof = emit_partition_eof
        self._closed = False

    def _signal(self, topic: str) -> asyncio.Event:
        event = self._signals.get(topic)
        if event is None:
            event = asyncio.Event()
            self._signals[topic] = event
        return event

    def messages(self, topic: str) -> list[bytes]:
        """Copy of everything published to *topic* so far."""
        return list(self._logs[topic])

    def committed(self, topic: str, group: str) -> int:
        """Next offset *group* will read from *topic* after a restart."""
        return self._committed.get((group, topic), 0)

    def publish(self, topic: str, value: bytes, *, on_delivery: DeliveryCallback | None = None) -> None:
        if self._closed:
            report = DeliveryReport(topic=topic, value=value, persisted=False, error="channel closed")
        else:
            self._logs[topic].append(bytes(value))
            self._signal(topic).set()
            report = DeliveryReport(topic=topic, value=value, persisted=True)
        if on_delivery is not None:
            asyncio.get_running_loop().call_soon(on_delivery, report)

    async def subscribe(self, topic: str, *, group: str) -> MemorySubscription:
        if self._closed:
            raise ChannelError("Channel is closed", kind=ChannelErrorKind.CONSUME_ERROR)
        position = self.committed(topic, group)
        _logger.debug("Subscribed group=%s topic=%s from offset=%d", group, topic, position)
        return MemorySubscription(self, topic, group, position)

    def _commit(self, topic: str, group: str, next_offset: int) -> None:
        key = (group, topic)
        self._committed[key] = max(self._committed.get(key, 0), next_offset)

    async def close(self) -> None:
        self._closed = True
        for event in self._signals.values():
            event.set()


class MemorySubscription:
    """Sequential reader over one topic log."""

    def __init__(self, channel: MemoryEventChannel, topic: str, group: str, position: int) -> None:
        self._channel = channel
        self._topic = topic
        self._group = group
        self._position = position
        self._eof_sent = False
        self._closed = False

    @property
    def position(self) -> int:
        return self._position

    async def receive(self, *, timeout: float) -> ChannelMessage | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if self._closed or self._channel._closed:  # noqa: SLF001
                raise ChannelError("Subscription is closed", kind=ChannelErrorKind.CONSUME_ERROR)

            log = self._channel._logs[self._topic]  # noqa: SLF001
            if self._position < len(log):
                offset = self._position
                self._position += 1
                self._eof_sent = False
                return ChannelMessage(topic=self._topic, value=log[offset], offset=offset)

            if self._channel._emit_partition_eof and not self._eof_sent:  # noqa: SLF001
                self._eof_sent = True
                return ChannelMessage(topic=self._topic, value=None, offset=self._position, end_of_partition=True)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            signal = self._channel._signal(self._topic)  # noqa: SLF001
            signal.clear()
            try:
                await asyncio.wait_for(signal.wait(), remaining)
            except TimeoutError:
                return None

    async def ack(self, message: ChannelMessage) -> None:
        if message.end_of_partition:
            return
        self._channel._commit(self._topic, self._group, message.offset + 1)  # noqa: SLF001

    async def rewind(self, message: ChannelMessage) -> None:
        if message.end_of_partition:
            return
        self._position = min(self._position, message.offset)

    async def close(self) -> None:
        self._closed = True
