from __future__ import annotations

from vacuum_sim.l0_core.bounded_queue import BoundedQueue
from vacuum_sim.l0_core.events import Command, CommandAction

from typing import Any, Callable, Dict, DefaultDict, List
from collections import defaultdict
import logging
import threading

log = logging.getLogger(__name__)

_STOP = ("__stop__", None)


class CommandBus:
    """
    Minimal synchronous command router.

    Each CommandAction can have exactly one handler. `call` executes the bound
    handler on the caller's thread, so handlers that touch engine state must be
    thread-safe: the ingestor calls from its listener thread while the engine
    loop runs on its own.
    """

    def __init__(self) -> None:
        self._handlers: Dict[CommandAction, Callable[[Command], Any]] = {}

    def register(self, action: CommandAction, handler: Callable[[Command], Any]) -> None:
        """
        Bind ``handler`` to ``action``.

        Raises
        ------
        ValueError
            If ``action`` is already registered.
        """
        if action in self._handlers:
            raise ValueError(f"Handler already registered for {action.value}")
        self._handlers[action] = handler

    def handles(self, action: CommandAction) -> bool:
        return action in self._handlers

    def call(self, command: Command) -> Any:
        """
        Execute the handler for ``command.action`` synchronously.

        Raises
        ------
        LookupError
            If no handler has been registered for the action.
        """
        handler = self._handlers.get(command.action)
        if handler is None:
            raise LookupError(f"No handler registered for {command.action.value}")
        return handler(command)


class EventBus:
    """
    Lightweight in-process pub/sub used as the engine's outbox.

    * Bounded queue prevents unbounded growth (drop-newest policy).
    * Single dispatcher thread delivers events serially to all subscribers,
      so a slow or failing subscriber never stalls the publisher.
    * close() drains everything published before it, then stops.
    """

    def __init__(self, capacity: int = 1024, publish_timeout_ms: int = 10,
                 name: str = "EventBus") -> None:
        self._subscribers: DefaultDict[str, List[Callable[[Any], None]]] = defaultdict(list)
        self._queue = BoundedQueue(maxsize=capacity, name=name)
        self._publish_timeout = publish_timeout_ms / 1000.0
        self._closed = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"{name}-Dispatcher", daemon=True
        )
        self._thread.start()

    # ---- subscription API ----
    def subscribe(self, topic: str, callback: Callable[[Any], None]) -> None:
        """Register ``callback`` for ``topic``; it runs on the dispatcher thread."""
        self._subscribers[topic].append(callback)

    def unsubscribe(self, topic: str, callback: Callable[[Any], None]) -> None:
        if callback in self._subscribers[topic]:
            self._subscribers[topic].remove(callback)

    # ---- publishing API ----
    def publish(self, topic: str, event: Any) -> bool:
        """
        Short-wait publish. Returns True if enqueued; False if the queue was
        full or the bus is already closed.
        """
        if self._closed.is_set():
            return False
        return self._queue.put((topic, event), timeout=self._publish_timeout)

    # ---- lifecycle ----
    def close(self, timeout: float = 2.0) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if not self._queue.put(_STOP, timeout=timeout):
            log.warning("[%s] could not enqueue stop marker", self._queue.name())
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                log.warning("[%s] dispatcher did not stop within %.1fs",
                            self._queue.name(), timeout)

    # ---- dispatcher loop ----
    def _run(self) -> None:
        while True:
            ok, item = self._queue.get(timeout=0.1)
            if not ok:
                continue
            topic, event = item
            if topic == _STOP[0]:
                break
            for callback in list(self._subscribers.get(topic, [])):
                try:
                    callback(event)
                except Exception:
                    log.exception("[%s] subscriber error on topic '%s'",
                                  self._queue.name(), topic)
