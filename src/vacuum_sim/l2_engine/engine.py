"""
engine.py
=========
RobotControlEngine: the simulated vacuum's control loop.

This class wraps:
- ControlFlags, the lock-guarded state shared with the command listener.
- TopicRegistry, the provisioned notification topics.
- EventBus as an outbox: events are enqueued and a dispatcher thread hands
  them to the EventSink, so a slow or failing sink never stalls a cycle.
- CommandIngestor + CommandBus for remote commands (optional).

Design:
- The engine thread is the only writer of the power level.
- Cycles check the flags once per tick, so a stop/charge/shutdown applied from
  the listener thread takes effect within one tick.
- Nothing is emitted after SHUTDOWN; cycle calls after shutdown are no-ops.
- shutdown()/teardown() run under one stop lock, so run() and a repeat
  shutdown() return only after a stop in progress on another thread is done.

Usage:
    from vacuum_sim.l1_transport.memory import InMemoryEventSink
    from vacuum_sim.l2_engine.engine import RobotControlEngine

    engine = RobotControlEngine(InMemoryEventSink())
    engine.run_one_cleaning_cycle()
    engine.shutdown()
"""
from __future__ import annotations

import logging
import random
import threading
from typing import Callable, Optional

from vacuum_sim.l0_core import CommandBus, EventBus
from vacuum_sim.l0_core.events import (
    Command, CommandAction, LifecycleEvent, VacuumEvent, format_power, now_iso,
)
from vacuum_sim.l0_core.exceptions import DeleteError, PublishError, UnsubscribeError
from vacuum_sim.l1_transport.ports import CommandSource, EventSink
from vacuum_sim.l1_transport.provisioning import TopicRegistry
from vacuum_sim.l2_engine.config import LOW_POWER_THRESHOLD, EngineConfig
from vacuum_sim.l2_engine.control_flags import ControlFlags
from vacuum_sim.l2_engine.ingestor import CommandIngestor

log = logging.getLogger(__name__)

DEVICE_ID_RANGE = (100, 9999)
INITIAL_POWER_RANGE = (65, 99)
DECLINE_RATE_RANGE = (0.02, 1.0)
CHARGE_RATE_RANGE = (0.02, 3.0)
FULL_POWER = 100.0

LIFECYCLE_TOPIC = "lifecycle"

EventListener = Callable[[LifecycleEvent], None]


class RobotControlEngine:
    """
    Simulates one cleaning robot: power, cycles, faults and remote commands.
    """

    def __init__(
        self,
        sink: EventSink,
        source: Optional[CommandSource] = None,
        config: Optional[EngineConfig] = None,
        device_id: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._cfg = config or EngineConfig()
        self._rng = rng or random.Random()
        self._device_id = device_id if device_id is not None else self._rng.randint(*DEVICE_ID_RANGE)
        self._power = float(self._rng.randint(*INITIAL_POWER_RANGE))
        self._flags = ControlFlags()
        self._listeners: list[EventListener] = []
        self._sink = sink
        self._source = source
        self._silenced = threading.Event()
        self._stop_evt = threading.Event()
        # Held for the whole of shutdown()/teardown(); reentrant so teardown can
        # call shutdown(). run() and repeat callers block on it until done.
        self._stop_lock = threading.RLock()
        self._torn_down = False

        # Provision first: ProvisionError aborts construction before any thread starts.
        self._topics = TopicRegistry(sink, self._cfg.topic_prefix)
        self._topics.provision()

        self._bus = EventBus(capacity=self._cfg.event_capacity, publish_timeout_ms=10,
                             name=f"Outbox-{self._device_id}")
        self._bus.subscribe(LIFECYCLE_TOPIC, self._deliver)

        self._cmd = CommandBus()
        self._register_handlers()

        self._ingestor: Optional[CommandIngestor] = None
        self._channel: Optional[str] = None
        self._subscription: Optional[str] = None
        if source is not None:
            try:
                self._channel = source.ensure_channel(self._device_id)
                start_topic = self._topics.handle(self._topics.start_topic)
                self._subscription = source.subscribe(self._channel, start_topic)
            except Exception:
                self._bus.close()
                raise
            self._ingestor = CommandIngestor(self._device_id, source, self._cmd)
            self._ingestor.start()

        log.info("vacuum %d ready (power=%s, topics=%d, channel=%s)",
                 self._device_id, format_power(self._power), len(self._topics), self._channel)

    # -------------------------------------------------------------------------
    # Read API
    # -------------------------------------------------------------------------
    @property
    def device_id(self) -> int:
        return self._device_id

    @property
    def config(self) -> EngineConfig:
        return self._cfg

    @property
    def power_level(self) -> float:
        return self._power

    @property
    def run_count(self) -> int:
        return self._flags.run_count

    @property
    def running(self) -> bool:
        return self._flags.running

    @property
    def cleaning_requested(self) -> bool:
        return self._flags.cleaning_requested

    @property
    def charging_requested(self) -> bool:
        return self._flags.charging_requested

    @property
    def topics(self) -> TopicRegistry:
        return self._topics

    @property
    def channel(self) -> Optional[str]:
        return self._channel

    # -------------------------------------------------------------------------
    # Observers & commands
    # -------------------------------------------------------------------------
    def add_listener(self, callback: EventListener) -> None:
        """
        Call ``callback`` for every event, synchronously on the emitting thread
        (the engine loop, or the listener thread for STATUS). Keep it short.
        """
        self._listeners.append(callback)

    def remove_listener(self, callback: EventListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def submit(self, command: Command) -> None:
        """Apply ``command`` exactly as if it had arrived from the command source."""
        self._cmd.call(command)

    def _register_handlers(self) -> None:
        self._cmd.register(CommandAction.START, lambda _c: self._flags.request_cleaning())
        self._cmd.register(CommandAction.STOP, lambda _c: self._flags.cancel_cleaning())
        self._cmd.register(CommandAction.CHARGE, lambda _c: self._flags.request_charging())
        self._cmd.register(CommandAction.EMPTY_DUSTBIN, lambda _c: self._flags.empty_dustbin())
        self._cmd.register(CommandAction.STATUS,
                           lambda _c: self._raise(VacuumEvent.STATUS, format_power(self._power)))
        self._cmd.register(CommandAction.SHUTDOWN, self._on_shutdown_command)
        self._cmd.register(CommandAction.TEARDOWN, lambda _c: self.teardown())

    def _on_shutdown_command(self, _command: Command) -> None:
        # Already stopping: do not park the listener thread on the stop lock
        # while the stopping thread is joining it.
        if self._flags.running:
            self.shutdown()

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------
    def run(self) -> None:
        """Run until shutdown() is called, locally or by a command."""
        if not self._flags.running:
            with self._stop_lock:
                return
        self._raise(VacuumEvent.READY, format_power(self._power))
        idle_wait = max(self._cfg.tick_s, self._cfg.idle_poll_s)
        while self._flags.running:
            worked = False
            if self._flags.cleaning_requested:
                self.run_one_cleaning_cycle()
                worked = True
                if self._flags.running and not self._flags.charging_requested:
                    self._raise(VacuumEvent.SLEEPING)
            if self._flags.charging_requested:
                self.run_one_charging_cycle()
                worked = True
            if not worked:
                self._flags.wait_for_change(idle_wait)
        # A shutdown or teardown applied from the listener thread may still be
        # deleting resources; return only once it has finished.
        with self._stop_lock:
            log.info("vacuum %d main loop stopped", self._device_id)

    def run_one_cleaning_cycle(self) -> None:
        if not self._flags.running:
            log.debug("cleaning cycle ignored: vacuum %d is shut down", self._device_id)
            return
        self._flags.begin_cleaning()
        decline = self._rng.uniform(*DECLINE_RATE_RANGE)
        self._raise(VacuumEvent.STARTED)

        while self._flags.cleaning_requested:
            self._tick()
            if not self._flags.cleaning_requested or self._flags.charging_requested:
                break
            if self._power <= LOW_POWER_THRESHOLD:
                self._flags.request_charging()
                break
            if self._is_stuck():
                self._raise(VacuumEvent.STUCK, format_power(self._power))
                break
            if self._flags.run_count > self._cfg.dustbin_capacity:
                self._raise(VacuumEvent.DUSTBIN_FULL, format_power(self._power))
                break
            self._power = max(0.0, self._power - decline)
            self._raise(VacuumEvent.CLEANING, format_power(self._power))

        self._flags.cancel_cleaning()
        self._raise(VacuumEvent.ENDED)

    def run_one_charging_cycle(self) -> None:
        if not self._flags.running:
            log.debug("charging cycle ignored: vacuum %d is shut down", self._device_id)
            return
        self._flags.begin_charging()
        rate = self._rng.uniform(*CHARGE_RATE_RANGE)
        self._raise(VacuumEvent.STARTED_CHARGE)
        # Charging always starts from a flat battery, whatever level triggered it.
        self._power = 0.0

        while self._flags.charging_requested and self._power < FULL_POWER:
            self._tick()
            if not self._flags.charging_requested:
                break
            self._power = min(FULL_POWER, self._power + rate)
            self._raise(VacuumEvent.CHARGING, format_power(self._power))

        self._flags.cancel_charging()
        self._raise(VacuumEvent.SLEEPING)

    def _tick(self) -> None:
        if self._cfg.tick_s > 0:
            self._stop_evt.wait(self._cfg.tick_s)

    def _is_stuck(self) -> bool:
        chance = self._cfg.stuck_chance
        return chance > 0 and self._rng.randrange(chance) == 0

    # -------------------------------------------------------------------------
    # Shutdown & teardown
    # -------------------------------------------------------------------------
    def shutdown(self) -> None:
        """
        Stop the engine. Idempotent: only the first call emits SHUTDOWN.

        With a command source attached this also stops the listener, deletes
        the per-device channel and unsubscribes it; those steps are best effort.
        Outstanding events are flushed to the sink before returning. A call made
        while another thread is shutting down or tearing down blocks until that
        work has finished.
        """
        with self._stop_lock:
            if self._flags.stop():
                self._shutdown_locked()

    def _shutdown_locked(self) -> None:
        self._raise(VacuumEvent.SHUTDOWN)
        self._silenced.set()
        self._stop_evt.set()

        if self._source is not None:
            if self._ingestor is not None:
                self._ingestor.stop()
            if self._channel is not None:
                try:
                    self._source.delete_channel(self._channel)
                except DeleteError as exc:
                    log.warning("could not delete channel %s: %s", self._channel, exc)
            if self._subscription is not None:
                try:
                    self._source.unsubscribe(self._subscription)
                except UnsubscribeError as exc:
                    log.info("unsubscribe of %s skipped: %s", self._subscription, exc)

        self._bus.close()
        log.info("vacuum %d shut down", self._device_id)

    def teardown(self) -> None:
        """Shut down, then delete every provisioned topic and this device's channels."""
        with self._stop_lock:
            self.shutdown()
            if self._torn_down:
                return
            self._torn_down = True
            self._delete_resources()

    def _delete_resources(self) -> None:
        failed = self._topics.delete_all()
        if failed:
            log.warning("teardown left %d topic(s) behind: %s", len(failed), failed)
        if self._source is not None:
            prefix = f"{self._cfg.channel_prefix}_{self._device_id}"
            try:
                self._source.delete_channels_with_prefix(prefix)
            except DeleteError as exc:
                log.warning("could not delete channels with prefix %r: %s", prefix, exc)
        log.info("vacuum %d torn down", self._device_id)

    # -------------------------------------------------------------------------
    # Event emission
    # -------------------------------------------------------------------------
    def _raise(self, kind: VacuumEvent, detail: str = "") -> None:
        if self._silenced.is_set():
            log.debug("suppressed %s after shutdown", kind.value)
            return
        evt = LifecycleEvent(device_id=self._device_id, kind=kind, detail=detail,
                             timestamp=now_iso())
        log.info("%s", evt.to_json())
        if not self._bus.publish(LIFECYCLE_TOPIC, evt):
            log.warning("[outbox] dropped %s event", kind.value)
        for callback in list(self._listeners):
            try:
                callback(evt)
            except Exception:
                log.exception("event listener failed on %s", kind.value)

    def _deliver(self, evt: LifecycleEvent) -> None:
        """Outbox subscriber: runs on the dispatcher thread."""
        try:
            self._sink.publish(self._topics.route(evt.kind), evt.to_json())
        except PublishError as exc:
            log.warning("publish of %s failed: %s", evt.kind.value, exc)
        except LookupError:
            log.debug("no topic for %s (torn down)", evt.kind.value)
