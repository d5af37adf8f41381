"""
polling.py
==========
Base class for command sources that long-poll a channel from a listener thread.

Subclasses supply the transport primitives (find/create/delete a channel,
subscribe it to a topic, and a bounded-wait `_receive`). This class owns the
rest of the CommandSource contract:

- ensure_channel(): find-or-create of the per-device channel.
- start_listening()/stop_listening(): one daemon thread looping while alive,
  blocking at most `wait_s` per receive so a stop is observed promptly.
- De-duplication by message id (bounded memory) and in-order delivery of the
  fresh bodies to the batch callback.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Optional

from vacuum_sim.l1_transport.ports import BatchCallback, RawMessage
from vacuum_sim.l1_transport.provisioning import provision

log = logging.getLogger(__name__)

DEFAULT_WAIT_S = 1.0
DEFAULT_ERROR_BACKOFF_S = 2.0
SEEN_IDS_MAX = 4096


class PollingCommandSource(ABC):

    def __init__(self, channel_prefix: str = "VirtualVacuumRobotQueue",
                 wait_s: float = DEFAULT_WAIT_S,
                 error_backoff_s: float = DEFAULT_ERROR_BACKOFF_S) -> None:
        self._channel_prefix = channel_prefix
        self._wait_s = wait_s
        self._error_backoff_s = error_backoff_s
        self._channel: Optional[str] = None
        self._on_batch: Optional[BatchCallback] = None
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._alive = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---- transport primitives ----
    @abstractmethod
    def find_channel(self, name: str) -> str: ...

    @abstractmethod
    def create_channel(self, name: str) -> str: ...

    @abstractmethod
    def subscribe(self, channel: str, topic_handle: str) -> str: ...

    @abstractmethod
    def unsubscribe(self, subscription: str) -> None: ...

    @abstractmethod
    def delete_channel(self, handle: str) -> None: ...

    @abstractmethod
    def delete_channels_with_prefix(self, prefix: str) -> None: ...

    @abstractmethod
    def _receive(self, channel: str, wait_s: float) -> list[RawMessage]:
        """Block up to ``wait_s`` for the next batch; [] on timeout."""

    # ---- provisioning ----
    def channel_name(self, scope_id: int | str) -> str:
        return f"{self._channel_prefix}_{scope_id}"

    @staticmethod
    def matches_prefix(name: str, prefix: str) -> bool:
        """
        A channel belongs to ``prefix`` when it is named exactly that or carries a
        "-" suffix (e.g. a dead-letter channel), so device 5 never claims device 55.
        """
        return name == prefix or name.startswith(f"{prefix}-")

    @property
    def channel(self) -> Optional[str]:
        return self._channel

    def ensure_channel(self, scope_id: int | str) -> str:
        """Find or create the channel for ``scope_id``. ProvisionError is fatal."""
        self._channel = provision(self.channel_name(scope_id), self.find_channel,
                                  self.create_channel, kind="channel")
        return self._channel

    # ---- listening ----
    @property
    def listening(self) -> bool:
        return self._alive.is_set()

    def start_listening(self, on_batch: BatchCallback) -> None:
        if self._channel is None:
            raise RuntimeError("ensure_channel() must be called before start_listening()")
        if self._alive.is_set():
            return
        self._on_batch = on_batch
        self._stopping.clear()
        self._alive.set()
        self._thread = threading.Thread(
            target=self._listen_loop, name=f"listener-{self._channel}", daemon=True
        )
        self._thread.start()

    def stop_listening(self, timeout: float | None = None) -> None:
        """
        Signal the listener to stop and join it. Safe to call from the listener
        thread itself (a shutdown command arrives on that thread) and idempotent.
        """
        self._alive.clear()
        self._stopping.set()
        t = self._thread
        if t and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=timeout if timeout is not None else self._wait_s + 1.0)
            if t.is_alive():
                log.warning("listener for %s did not stop in time", self._channel)
        self._thread = None

    def _fresh(self, messages: list[RawMessage]) -> list[str]:
        bodies: list[str] = []
        for msg in messages:
            if msg.message_id in self._seen:
                continue
            self._seen[msg.message_id] = None
            if len(self._seen) > SEEN_IDS_MAX:
                self._seen.popitem(last=False)
            bodies.append(msg.body)
        return bodies

    def _listen_loop(self) -> None:
        log.info("listening on %s", self._channel)
        while self._alive.is_set():
            channel = self._channel
            if channel is None:
                break
            try:
                batch = self._receive(channel, self._wait_s)
            except Exception:
                log.exception("receive failed on %s", channel)
                self._pause(self._error_backoff_s)
                continue
            bodies = self._fresh(batch)
            if not bodies or not self._alive.is_set():
                continue
            callback = self._on_batch
            if callback is None:
                continue
            try:
                callback(bodies)
            except Exception:
                log.exception("batch callback failed on %s", channel)
        log.info("listener on %s exiting", self._channel)

    def _pause(self, seconds: float) -> None:
        self._stopping.wait(seconds)
