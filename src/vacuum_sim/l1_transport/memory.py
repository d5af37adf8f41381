"""
In-memory transport: a tiny topic/channel broker for tests and local runs.

Topics fan out to every channel subscribed to them, the same relationship a
notification topic has with the queues subscribed to it. Each sink/source
class exposes `fail_*` switches so tests can force the error paths.
"""
from __future__ import annotations

import itertools
import json
import logging
import threading
from typing import Any

from vacuum_sim.l0_core.bounded_queue import BoundedQueue
from vacuum_sim.l0_core.exceptions import (
    DeleteError, PublishError, ResourceNotFoundError, UnsubscribeError, VacuumSimError,
)
from vacuum_sim.l1_transport.polling import DEFAULT_WAIT_S, PollingCommandSource
from vacuum_sim.l1_transport.ports import RawMessage

log = logging.getLogger(__name__)

CHANNEL_CAPACITY = 1024
RECEIVE_MAX_BATCH = 10


class InMemoryBroker:
    """Thread-safe registry of topics, channels and subscriptions."""

    def __init__(self, channel_capacity: int = CHANNEL_CAPACITY) -> None:
        self._lock = threading.Lock()
        self._capacity = channel_capacity
        self._topics: dict[str, str] = {}
        self._channels: dict[str, BoundedQueue] = {}
        self._channel_names: dict[str, str] = {}
        self._subscriptions: dict[str, tuple[str, str]] = {}
        self._ids = itertools.count(1)
        self.published: list[tuple[str, str]] = []

    # ---- topics ----
    def find_topic(self, name: str) -> str:
        with self._lock:
            if name not in self._topics:
                raise ResourceNotFoundError(f"no topic named {name!r}")
            return self._topics[name]

    def create_topic(self, name: str) -> str:
        with self._lock:
            return self._topics.setdefault(name, f"mem:topic:{name}")

    def topic_names(self) -> list[str]:
        with self._lock:
            return sorted(self._topics)

    def delete_topic(self, handle: str) -> None:
        with self._lock:
            names = [n for n, h in self._topics.items() if h == handle]
            if not names:
                raise DeleteError(f"no topic with handle {handle!r}")
            for name in names:
                del self._topics[name]
            for sub_id in [s for s, (t, _) in self._subscriptions.items() if t == handle]:
                del self._subscriptions[sub_id]

    def publish(self, handle: str, payload: str) -> None:
        with self._lock:
            if handle not in self._topics.values():
                raise PublishError(f"no topic with handle {handle!r}")
            self.published.append((handle, payload))
            targets = [self._channels[c] for t, c in self._subscriptions.values()
                       if t == handle and c in self._channels]
        for q in targets:
            self._enqueue(q, payload)

    # ---- channels ----
    def find_channel(self, name: str) -> str:
        handle = f"mem:channel:{name}"
        with self._lock:
            if handle not in self._channels:
                raise ResourceNotFoundError(f"no channel named {name!r}")
        return handle

    def create_channel(self, name: str) -> str:
        handle = f"mem:channel:{name}"
        with self._lock:
            if handle not in self._channels:
                self._channels[handle] = BoundedQueue(self._capacity, name)
                self._channel_names[handle] = name
        return handle

    def channel_names(self) -> list[str]:
        with self._lock:
            return sorted(self._channel_names.values())

    def delete_channel(self, handle: str) -> None:
        with self._lock:
            if self._channels.pop(handle, None) is None:
                raise DeleteError(f"no channel with handle {handle!r}")
            self._channel_names.pop(handle, None)

    def delete_channels_with_prefix(self, prefix: str) -> list[str]:
        with self._lock:
            doomed = [h for h, n in self._channel_names.items()
                      if PollingCommandSource.matches_prefix(n, prefix)]
            for handle in doomed:
                self._channels.pop(handle, None)
                self._channel_names.pop(handle, None)
        return doomed

    def subscribe(self, channel: str, topic_handle: str) -> str:
        with self._lock:
            if channel not in self._channels:
                raise ResourceNotFoundError(f"no channel with handle {channel!r}")
            if topic_handle not in self._topics.values():
                raise ResourceNotFoundError(f"no topic with handle {topic_handle!r}")
            sub_id = f"mem:sub:{next(self._ids)}"
            self._subscriptions[sub_id] = (topic_handle, channel)
            return sub_id

    def unsubscribe(self, subscription: str) -> None:
        with self._lock:
            if self._subscriptions.pop(subscription, None) is None:
                raise UnsubscribeError(f"no subscription {subscription!r}")

    def send(self, channel: str, body: str, message_id: str | None = None) -> str:
        """Drop a message straight onto a channel. Returns the message id."""
        with self._lock:
            q = self._channels.get(channel)
            if q is None:
                raise ResourceNotFoundError(f"no channel with handle {channel!r}")
        return self._enqueue(q, body, message_id)

    def receive(self, channel: str, wait_s: float,
                max_batch: int = RECEIVE_MAX_BATCH) -> list[RawMessage]:
        with self._lock:
            q = self._channels.get(channel)
        if q is None:
            raise ResourceNotFoundError(f"no channel with handle {channel!r}")
        ok, first = q.get(timeout=wait_s)
        if not ok:
            return []
        return [first, *q.drain(max_batch - 1)]

    def _enqueue(self, q: BoundedQueue, body: str, message_id: str | None = None) -> str:
        msg = RawMessage(message_id or f"m-{next(self._ids)}", body)
        if not q.put(msg, timeout=0):
            log.warning("[%s] overflow: dropped message %s (%d dropped so far)",
                        q.name(), msg.message_id, q.dropped)
        return msg.message_id


class InMemoryEventSink:
    """EventSink over an InMemoryBroker."""

    def __init__(self, broker: InMemoryBroker | None = None) -> None:
        self.broker = broker or InMemoryBroker()
        self.fail_find = False
        self.fail_create = False
        self.fail_publish = False
        self.fail_delete = False

    def find_topic(self, name: str) -> str:
        if self.fail_find:
            raise VacuumSimError("topic lookup unavailable")
        return self.broker.find_topic(name)

    def create_topic(self, name: str) -> str:
        if self.fail_create:
            raise VacuumSimError("topic creation refused")
        return self.broker.create_topic(name)

    def publish(self, handle: str, payload: str) -> None:
        if self.fail_publish:
            raise PublishError("publish refused")
        self.broker.publish(handle, payload)

    def delete_topic(self, handle: str) -> None:
        if self.fail_delete:
            raise DeleteError("delete refused")
        self.broker.delete_topic(handle)

    def events(self, handle: str | None = None) -> list[dict[str, Any]]:
        """Decoded wire events published so far, optionally for one topic."""
        return [json.loads(p) for h, p in list(self.broker.published)
                if handle is None or h == handle]


class InMemoryCommandSource(PollingCommandSource):
    """CommandSource over an InMemoryBroker."""

    def __init__(self, broker: InMemoryBroker,
                 channel_prefix: str = "VirtualVacuumRobotQueue",
                 wait_s: float = DEFAULT_WAIT_S) -> None:
        super().__init__(channel_prefix=channel_prefix, wait_s=wait_s, error_backoff_s=wait_s)
        self.broker = broker
        self.fail_create = False
        self.fail_unsubscribe = False

    def find_channel(self, name: str) -> str:
        return self.broker.find_channel(name)

    def create_channel(self, name: str) -> str:
        if self.fail_create:
            raise VacuumSimError("channel creation refused")
        return self.broker.create_channel(name)

    def subscribe(self, channel: str, topic_handle: str) -> str:
        return self.broker.subscribe(channel, topic_handle)

    def unsubscribe(self, subscription: str) -> None:
        if self.fail_unsubscribe:
            raise UnsubscribeError("unsubscribe refused")
        self.broker.unsubscribe(subscription)

    def delete_channel(self, handle: str) -> None:
        self.broker.delete_channel(handle)

    def delete_channels_with_prefix(self, prefix: str) -> None:
        doomed = self.broker.delete_channels_with_prefix(prefix)
        log.info("deleted %d channel(s) with prefix %r", len(doomed), prefix)

    def send(self, body: str, message_id: str | None = None) -> str:
        """Deliver ``body`` directly to this source's channel."""
        if self.channel is None:
            raise RuntimeError("no channel provisioned yet")
        return self.broker.send(self.channel, body, message_id)

    def _receive(self, channel: str, wait_s: float) -> list[RawMessage]:
        return self.broker.receive(channel, wait_s)
