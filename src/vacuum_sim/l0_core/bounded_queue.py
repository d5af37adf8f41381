from __future__ import annotations

import threading
from queue import Empty, Full, Queue
from typing import Any, Tuple


class BoundedQueue:
    """
    Fixed-capacity FIFO shared between threads.

    Overflow drops the newest item: `put` gives up after its timeout and
    returns False, and the refusal is counted in `dropped`. A timeout of 0 (or
    less) makes `put`/`get` non-blocking.
    """

    def __init__(self, maxsize: int, name: str) -> None:
        if not isinstance(maxsize, int) or maxsize <= 0:
            raise ValueError("maxsize must be a positive integer")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("name must be a non-empty string")
        self._name = name
        self._q: Queue = Queue(maxsize=maxsize)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    def put(self, item: Any, timeout: float) -> bool:
        try:
            if timeout <= 0:
                self._q.put_nowait(item)
            else:
                self._q.put(item, timeout=timeout)
        except Full:
            with self._dropped_lock:
                self._dropped += 1
            return False
        return True

    def get(self, timeout: float) -> Tuple[bool, Any]:
        """(True, item), or (False, None) once ``timeout`` passes with nothing queued."""
        try:
            if timeout <= 0:
                return True, self._q.get_nowait()
            return True, self._q.get(timeout=timeout)
        except Empty:
            return False, None

    def drain(self, limit: int) -> list[Any]:
        """Pop up to ``limit`` items without waiting."""
        items: list[Any] = []
        while len(items) < limit:
            ok, item = self.get(timeout=0)
            if not ok:
                break
            items.append(item)
        return items

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def qsize(self) -> int:
        return self._q.qsize()

    def name(self) -> str:
        return self._name
