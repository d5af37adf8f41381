from __future__ import annotations

import threading


class ControlFlags:
    """
    The state shared between the command listener and the simulation loop.

    Every read-modify-write happens under one lock, so a command applied from
    the listener thread never interleaves with the engine's own transitions.
    Raising any flag also sets a wake-up event the idle loop waits on.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._changed = threading.Event()
        self._cleaning = False
        self._charging = False
        self._running = True
        self._run_count = 0

    # ---- reads ----
    @property
    def cleaning_requested(self) -> bool:
        with self._lock:
            return self._cleaning

    @property
    def charging_requested(self) -> bool:
        with self._lock:
            return self._charging

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def run_count(self) -> int:
        with self._lock:
            return self._run_count

    # ---- command-side writes ----
    def request_cleaning(self) -> bool:
        """Set the cleaning request. False if already set or shut down."""
        with self._lock:
            if self._cleaning or not self._running:
                return False
            self._cleaning = True
        self._changed.set()
        return True

    def cancel_cleaning(self) -> None:
        with self._lock:
            self._cleaning = False

    def request_charging(self) -> bool:
        """Set the charging request. False if already set or shut down."""
        with self._lock:
            if self._charging or not self._running:
                return False
            self._charging = True
        self._changed.set()
        return True

    def cancel_charging(self) -> None:
        with self._lock:
            self._charging = False

    def empty_dustbin(self) -> None:
        with self._lock:
            self._run_count = 0

    # ---- engine-side transitions ----
    def begin_cleaning(self) -> int:
        """Enter a cleaning cycle; returns the incremented run count."""
        with self._lock:
            self._cleaning = True
            self._charging = False
            self._run_count += 1
            return self._run_count

    def begin_charging(self) -> None:
        with self._lock:
            self._charging = True
            self._cleaning = False

    def stop(self) -> bool:
        """
        Clear everything and leave the running state. Returns True only for
        the call that actually performed the transition.
        """
        with self._lock:
            was_running = self._running
            self._running = False
            self._cleaning = False
            self._charging = False
        self._changed.set()
        return was_running

    def wait_for_change(self, timeout: float) -> bool:
        """Block until a flag is raised or ``timeout`` elapses."""
        fired = self._changed.wait(timeout)
        self._changed.clear()
        return fired
