"""Event channel capability: message types and structural interfaces."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class ChannelMessage:
    """An immutable message received from a subscription.

    ``handle`` carries whatever the transport needs to acknowledge the
    message (an MQTT ``(mid, qos)`` pair, nothing for the in-memory log).
    """

    topic: str
    value: bytes | None
    partition: int = 0
    offset: int = -1
    end_of_partition: bool = False
    handle: Any = None


@dataclass(frozen=True)
class DeliveryReport:
    """Outcome of a publish, reported asynchronously on the event loop."""

    topic: str
    value: bytes
    persisted: bool
    error: str | None = None


DeliveryCallback = Callable[[DeliveryReport], None]


class Subscription(Protocol):
    """Sequential stream of messages with manual acknowledgement.

    Unacknowledged messages are delivered again to the next subscription
    of the same consumer group.
    """

    async def receive(self, *, timeout: float) -> ChannelMessage | None:
        """Next message, or ``None`` when nothing arrived within *timeout*."""
        ...

    async def ack(self, message: ChannelMessage) -> None:
        """Advance the durable cursor past *message*."""
        ...

    async def rewind(self, message: ChannelMessage) -> None:
        """Deliver *message* again on the next :meth:`receive`."""
        ...

    async def close(self) -> None:
        ...


class EventChannel(Protocol):
    """Producer and consumer sides of the message transport."""

    def publish(self, topic: str, value: bytes, *, on_delivery: DeliveryCallback | None = None) -> None:
        """Queue *value* for *topic* without blocking the caller."""
        ...

    async def subscribe(self, topic: str, *, group: str) -> Subscription:
        ...

    async def close(self) -> None:
        ...
