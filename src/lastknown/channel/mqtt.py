"""MQTT event channel on paho-mqtt.

Messages are published and consumed with QoS 1 on a persistent session
(``clean_session=False``) with manual acknowledgement: the broker keeps
redelivering a message until the consumer acks it, which survives consumer
restarts. paho runs its network loop in a background thread; everything it
reports is handed back to the asyncio loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import threading
from collections.abc import Callable
from typing import Any, cast

import paho.mqtt.client as mqtt

from lastknown.channel.base import ChannelMessage, DeliveryCallback, DeliveryReport
from lastknown.config import MqttSettings
from lastknown.exceptions import ChannelError, ChannelErrorKind

_QOS = 1


def _build_client(settings: MqttSettings) -> mqtt.Client:
    client = mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=settings.client_id,
        clean_session=False,
        protocol=mqtt.MQTTv311,
        manual_ack=True,
    )
    if settings.username:
        client.username_pw_set(settings.username, settings.password)
    if settings.tls:
        client.tls_set()
    return client


class MqttEventChannel:
    """Threaded paho-mqtt runtime exposing the event channel interface."""

    def __init__(
        self,
        settings: MqttSettings,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        logger: logging.Logger | None = None,
        client_factory: Callable[[MqttSettings], mqtt.Client] = _build_client,
    ) -> None:
        self._settings = settings
        self._loop = loop
        self._logger = logger or logging.getLogger(__name__)
        self._client_factory = client_factory
        self._client: mqtt.Client | None = None
        self._running = False
        self._subscriptions: list[MqttSubscription] = []
        self._unrouted: list[ChannelMessage] = []
        self._pending: dict[int, tuple[str, bytes, DeliveryCallback | None]] = {}
        self._pending_lock = threading.RLock()

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is running."""
        return self._running

    def start(self) -> None:
        """Connect in the background and start the network loop."""
        if self._running:
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._logger.debug(
            "MQTT channel start requested host=%s port=%s client_id=%s",
            self._settings.host,
            self._settings.port,
            self._settings.client_id,
        )
        client = self._client_factory(self._settings)
        client.enable_logger(self._logger)
        client.on_connect = self._on_connect
        client.on_message = self._on_message
        client.on_publish = self._on_publish
        client.on_disconnect = self._on_disconnect
        client.connect_async(self._settings.host, self._settings.port, keepalive=self._settings.keepalive)
        client.loop_start()
        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise ChannelError("MQTT channel is not started", kind=ChannelErrorKind.CONSUME_ERROR)
        return self._client

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.value != 0:
            self._logger.warning("MQTT connect failed: %s", reason_code)
            return
        self._logger.debug("MQTT connected reason=%s", reason_code)
        for topic in {s.topic for s in self._subscriptions}:
            client.subscribe(topic, qos=_QOS)

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if self._running:
            self._logger.warning("MQTT disconnected: %s", reason_code)

    def _on_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        message = ChannelMessage(
            topic=msg.topic,
            value=bytes(msg.payload),
            offset=msg.mid,
            handle=(msg.mid, msg.qos),
        )
        self._call_soon(self._route, message)

    def _on_publish(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        mid: int,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        with self._pending_lock:
            pending = self._pending.pop(mid, None)
        if pending is None:
            return
        topic, value, callback = pending
        failed = bool(getattr(reason_code, "is_failure", False))
        report = DeliveryReport(
            topic=topic,
            value=value,
            persisted=not failed,
            error=str(reason_code) if failed else None,
        )
        if callback is not None:
            self._call_soon(callback, report)

    def _call_soon(self, fn: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self._logger.debug("MQTT event dropped, no running loop")
            return
        loop.call_soon_threadsafe(fn, *args)

    # ------------------------------------------------------------------
    # Event loop side
    # ------------------------------------------------------------------

    def _route(self, message: ChannelMessage) -> None:
        matched = False
        for subscription in self._subscriptions:
            if mqtt.topic_matches_sub(subscription.topic, message.topic):
                subscription._deliver(message)  # noqa: SLF001
                matched = True
                break
        if not matched:
            # Persistent sessions can deliver before subscribe() is called locally.
            self._unrouted.append(message)

    def publish(self, topic: str, value: bytes, *, on_delivery: DeliveryCallback | None = None) -> None:
        client = self._require_client()
        with self._pending_lock:
            info = client.publish(topic, value, qos=_QOS)
            # NO_CONN still queues QoS>0 messages until the client reconnects.
            if info.rc in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
                self._pending[info.mid] = (topic, value, on_delivery)
                return
        report = DeliveryReport(topic=topic, value=value, persisted=False, error=mqtt.error_string(info.rc))
        if on_delivery is not None:
            asyncio.get_running_loop().call_soon(on_delivery, report)

    async def subscribe(self, topic: str, *, group: str) -> MqttSubscription:
        # The consumer group is the persistent session, i.e. the client id.
        client = self._require_client()
        subscription = MqttSubscription(self, topic)
        self._subscriptions.append(subscription)
        result, _mid = client.subscribe(topic, qos=_QOS)
        if result not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
            self._subscriptions.remove(subscription)
            raise ChannelError(f"MQTT subscribe to {topic} failed: {mqtt.error_string(result)}")
        self._logger.debug("MQTT subscribed topic=%s session=%s", topic, self._settings.client_id)

        unrouted, self._unrouted = self._unrouted, []
        for message in unrouted:
            self._route(message)
        return subscription

    def _ack(self, message: ChannelMessage) -> None:
        if message.handle is None:
            return
        mid, qos = message.handle
        result = self._require_client().ack(mid, qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise ChannelError(f"MQTT ack of mid={mid} failed: {mqtt.error_string(result)}")

    def _unsubscribe(self, subscription: MqttSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if self._client is not None and not any(s.topic == subscription.topic for s in self._subscriptions):
            self._client.unsubscribe(subscription.topic)

    async def close(self) -> None:
        """Stop and disconnect the MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._subscriptions.clear()

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")


class MqttSubscription:
    """Local queue of messages routed from the MQTT network thread."""

    def __init__(self, channel: MqttEventChannel, topic: str) -> None:
        self._channel = channel
        self.topic = topic
        self._queue: asyncio.Queue[ChannelMessage] = asyncio.Queue()
        self._redeliver: collections.deque[ChannelMessage] = collections.deque()
        self._closed = False

    def _deliver(self, message: ChannelMessage) -> None:
        self._queue.put_nowait(message)

    async def receive(self, *, timeout: float) -> ChannelMessage | None:
        if self._closed:
            raise ChannelError("Subscription is closed", kind=ChannelErrorKind.CONSUME_ERROR)
        if self._redeliver:
            return self._redeliver.popleft()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None

    async def ack(self, message: ChannelMessage) -> None:
        self._channel._ack(message)  # noqa: SLF001

    async def rewind(self, message: ChannelMessage) -> None:
        self._redeliver.appendleft(message)

    async def close(self) -> None:
        self._closed = True
        self._channel._unsubscribe(self)  # noqa: SLF001
