"""MQTT event sink and command source built on paho-mqtt."""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Any

import paho.mqtt.client as mqtt

from vacuum_sim.l0_core.bounded_queue import BoundedQueue
from vacuum_sim.l0_core.exceptions import (
    DeleteError, PublishError, ResourceNotFoundError, UnsubscribeError, VacuumSimError,
)
from vacuum_sim.l1_transport.polling import DEFAULT_WAIT_S, PollingCommandSource
from vacuum_sim.l1_transport.ports import RawMessage

log = logging.getLogger(__name__)

DEFAULT_BASE_TOPIC = "vacuum"
DEFAULT_QOS = 1
INBOX_CAPACITY = 1024
RECEIVE_MAX_BATCH = 10
_WILDCARDS = frozenset("+#/")


def connect_client(
    host: str = "localhost",
    port: int = 1883,
    *,
    client_id: str = "",
    keepalive: int = 60,
    username: str | None = None,
    password: str | None = None,
) -> mqtt.Client:
    """Create a paho client, connect it and start its network loop thread."""
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
    )
    client.enable_logger(log)
    if username:
        client.username_pw_set(username, password)
    client.connect(host, port, keepalive=keepalive)
    client.loop_start()
    log.debug("MQTT network loop started host=%s port=%d", host, port)
    return client


def disconnect_client(client: mqtt.Client) -> None:
    try:
        client.disconnect()
    finally:
        client.loop_stop()
        log.debug("MQTT network loop stopped")


def _check_name(name: str) -> None:
    if not name or _WILDCARDS.intersection(name):
        raise VacuumSimError(f"invalid MQTT resource name {name!r}")


class MqttEventSink:
    """
    Topics are plain MQTT topic paths under ``base_topic``; nothing is created
    broker-side, so "create" just validates and records the name. Events are
    published retained so late subscribers see the latest state, and deleting
    a topic clears its retained message.
    """

    def __init__(self, client: mqtt.Client, base_topic: str = DEFAULT_BASE_TOPIC,
                 qos: int = DEFAULT_QOS, retain: bool = True) -> None:
        self._client = client
        self._base = base_topic.rstrip("/")
        self._qos = qos
        self._retain = retain
        self._lock = threading.Lock()
        self._known: dict[str, str] = {}

    def _path(self, name: str) -> str:
        return f"{self._base}/{name}"

    def find_topic(self, name: str) -> str:
        with self._lock:
            if name not in self._known:
                raise ResourceNotFoundError(f"no topic named {name!r}")
            return self._known[name]

    def create_topic(self, name: str) -> str:
        _check_name(name)
        with self._lock:
            return self._known.setdefault(name, self._path(name))

    def publish(self, handle: str, payload: str) -> None:
        info = self._client.publish(handle, payload, qos=self._qos, retain=self._retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"publish to {handle} failed: {mqtt.error_string(info.rc)}")

    def delete_topic(self, handle: str) -> None:
        with self._lock:
            names = [n for n, h in self._known.items() if h == handle]
            if not names:
                raise DeleteError(f"unknown topic {handle!r}")
        info = self._client.publish(handle, b"", qos=self._qos, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise DeleteError(f"clearing {handle} failed: {mqtt.error_string(info.rc)}")
        with self._lock:
            for name in names:
                self._known.pop(name, None)


class MqttCommandSource(PollingCommandSource):
    """
    A channel is the device's own command topic plus every topic it has been
    subscribed to. Incoming messages from the paho network thread are only
    enqueued; decoding happens on the listener thread.

    Message ids are assigned locally, so de-duplication only collapses
    messages that arrive twice through overlapping subscriptions within this
    process; QoS 1 redeliveries from the broker are passed through.
    """

    def __init__(self, client: mqtt.Client, base_topic: str = DEFAULT_BASE_TOPIC,
                 qos: int = DEFAULT_QOS,
                 channel_prefix: str = "VirtualVacuumRobotQueue",
                 wait_s: float = DEFAULT_WAIT_S) -> None:
        super().__init__(channel_prefix=channel_prefix, wait_s=wait_s)
        self._client = client
        self._base = base_topic.rstrip("/")
        self._qos = qos
        self._lock = threading.Lock()
        self._channels: dict[str, set[str]] = {}
        self._inbox = BoundedQueue(INBOX_CAPACITY, "MqttInbox")
        self._ids = itertools.count(1)
        client.on_message = self._on_message
        client.on_connect = self._on_connect

    def _path(self, name: str) -> str:
        return f"{self._base}/{name}"

    # ---- channels ----
    def find_channel(self, name: str) -> str:
        path = self._path(name)
        with self._lock:
            if path not in self._channels:
                raise ResourceNotFoundError(f"no channel named {name!r}")
        return path

    def create_channel(self, name: str) -> str:
        _check_name(name)
        path = self._path(name)
        rc, _mid = self._client.subscribe(path, qos=self._qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise VacuumSimError(f"subscribe {path} failed: {mqtt.error_string(rc)}")
        with self._lock:
            self._channels.setdefault(path, set())
        return path

    def subscribe(self, channel: str, topic_handle: str) -> str:
        with self._lock:
            if channel not in self._channels:
                raise ResourceNotFoundError(f"no channel {channel!r}")
        rc, _mid = self._client.subscribe(topic_handle, qos=self._qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise VacuumSimError(f"subscribe {topic_handle} failed: {mqtt.error_string(rc)}")
        with self._lock:
            self._channels[channel].add(topic_handle)
        return topic_handle

    def unsubscribe(self, subscription: str) -> None:
        with self._lock:
            owners = [c for c, subs in self._channels.items() if subscription in subs]
        if not owners:
            raise UnsubscribeError(f"not subscribed to {subscription!r}")
        rc, _mid = self._client.unsubscribe(subscription)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise UnsubscribeError(f"unsubscribe {subscription} failed: {mqtt.error_string(rc)}")
        with self._lock:
            for channel in owners:
                self._channels.get(channel, set()).discard(subscription)

    def delete_channel(self, handle: str) -> None:
        with self._lock:
            if handle not in self._channels:
                raise DeleteError(f"no channel {handle!r}")
        rc, _mid = self._client.unsubscribe(handle)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise DeleteError(f"unsubscribe {handle} failed: {mqtt.error_string(rc)}")
        with self._lock:
            self._channels.pop(handle, None)

    def delete_channels_with_prefix(self, prefix: str) -> None:
        with self._lock:
            doomed = [c for c in self._channels
                      if self.matches_prefix(c, self._path(prefix))]
        for handle in doomed:
            try:
                self.delete_channel(handle)
            except DeleteError as exc:
                log.warning("failed to delete channel %s: %s", handle, exc)

    # ---- paho callbacks (network thread) ----
    def _on_connect(self, client: mqtt.Client, _userdata: Any, _flags: Any,
                    reason_code: Any, _properties: Any) -> None:
        if getattr(reason_code, "is_failure", False):
            log.warning("MQTT connect failed: %s", reason_code)
            return
        with self._lock:
            filters = [f for c, subs in self._channels.items() for f in (c, *subs)]
        for topic in filters:
            client.subscribe(topic, qos=self._qos)
        log.debug("MQTT connected; resubscribed %d filter(s)", len(filters))

    def _on_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        if not msg.payload:
            return  # retained-message clear
        body = msg.payload.decode("utf-8", errors="replace")
        raw = RawMessage(f"{msg.topic}#{next(self._ids)}", body)
        if not self._inbox.put(raw, timeout=0):
            log.warning("[%s] overflow: dropped message on %s (%d dropped so far)",
                        self._inbox.name(), msg.topic, self._inbox.dropped)

    def _receive(self, channel: str, wait_s: float) -> list[RawMessage]:
        ok, first = self._inbox.get(timeout=wait_s)
        if not ok:
            return []
        return [first, *self._inbox.drain(RECEIVE_MAX_BATCH - 1)]
