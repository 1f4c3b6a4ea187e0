"""Event channel layer.

Write-behind transport between the read path (publisher) and the
persistence worker (consumer). Delivery is at-least-once; consumers
acknowledge manually.
"""

from lastknown.channel.base import (
    ChannelMessage,
    DeliveryCallback,
    DeliveryReport,
    EventChannel,
    Subscription,
)
from lastknown.channel.memory import MemoryEventChannel, MemorySubscription
from lastknown.channel.mqtt import MqttEventChannel, MqttSubscription

__all__ = [
    "ChannelMessage",
    "DeliveryCallback",
    "DeliveryReport",
    "EventChannel",
    "MemoryEventChannel",
    "MemorySubscription",
    "MqttEventChannel",
    "MqttSubscription",
    "Subscription",
]
