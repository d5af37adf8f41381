import random
import threading

import pytest

from vacuum_sim.l0_core.events import CommandAction, VacuumEvent
from vacuum_sim.l0_core.exceptions import ProvisionError
from vacuum_sim.l1_transport.memory import InMemoryBroker, InMemoryCommandSource, InMemoryEventSink
from vacuum_sim.l2_engine.commands import encode_command
from vacuum_sim.l2_engine.config import EngineConfig
from vacuum_sim.l2_engine.engine import RobotControlEngine

E = VacuumEvent


class Rig:
    """One engine wired to an in-memory broker, with its run loop on a thread."""

    def __init__(self, device_id=321, **cfg):
        cfg.setdefault("stuck_chance", 0)
        cfg.setdefault("idle_poll_s", 0.01)
        self.broker = InMemoryBroker()
        self.sink = InMemoryEventSink(self.broker)
        self.source = InMemoryCommandSource(self.broker, wait_s=0.05)
        self.engine = RobotControlEngine(self.sink, self.source, EngineConfig(**cfg),
                                         device_id=device_id, rng=random.Random(11))
        self.events = []
        self.ready = threading.Event()
        self.engine.add_listener(self._record)
        self.thread = threading.Thread(target=self.engine.run, daemon=True)

    def _record(self, evt):
        self.events.append(evt)
        if evt.kind is E.READY:
            self.ready.set()

    def start(self):
        self.thread.start()
        assert self.ready.wait(2.0), "engine never reported READY"
        return self

    def shutdown_on(self, kind):
        def listener(evt):
            if evt.kind is kind:
                self.engine.shutdown()
        self.engine.add_listener(listener)

    def join(self, timeout=5.0):
        self.thread.join(timeout)
        assert not self.thread.is_alive(), "engine loop did not stop"

    def kinds(self):
        return [e.kind for e in self.events]

    def wire(self, name):
        return [e["eventType"] for e in self.sink.events(self.engine.topics.handle(name))]


def test_broadcast_start_runs_one_cycle_end_to_end():
    rig = Rig(stuck_chance=1)
    rig.shutdown_on(E.SLEEPING)
    start_topic = rig.engine.topics.handle(rig.engine.topics.start_topic)
    rig.start()
    rig.sink.publish(start_topic, "START")
    rig.join()

    assert rig.kinds() == [E.READY, E.STARTED, E.STUCK, E.ENDED, E.SLEEPING, E.SHUTDOWN]
    assert rig.wire("VirtualVacuumRobot_STUCK") == ["STUCK"]
    assert rig.wire("VirtualVacuumRobot_General") == [
        "READY", "STARTED", "ENDED", "SLEEPING", "SHUTDOWN",
    ]
    assert rig.wire("VirtualVacuumRobot_DUSTBIN_FULL") == []


def test_wire_event_shape():
    rig = Rig(stuck_chance=1)
    rig.shutdown_on(E.SLEEPING)
    rig.start()
    rig.source.send("START")
    rig.join()

    stuck = rig.sink.events(rig.engine.topics.handle("VirtualVacuumRobot_STUCK"))[0]
    assert set(stuck) == {"id", "message", "eventType", "timestamp"}
    assert stuck["id"] == 321
    assert stuck["message"] == rig.events[2].detail
    assert stuck["timestamp"].endswith("+00:00")


@pytest.mark.parametrize("body", [
    '{"action":"charge"}',
    encode_command(CommandAction.CHARGE, 321),
    "CHARGE",
])
def test_charge_command_while_idle(body):
    rig = Rig()
    rig.shutdown_on(E.SLEEPING)
    rig.start()
    rig.source.send(body)
    rig.join()

    kinds = rig.kinds()
    assert kinds[:2] == [E.READY, E.STARTED_CHARGE]
    assert kinds[-2:] == [E.SLEEPING, E.SHUTDOWN]
    assert set(kinds[2:-2]) == {E.CHARGING}
    assert rig.engine.power_level == 100.0


def test_command_for_another_device_changes_nothing():
    rig = Rig()
    got_status = threading.Event()

    def on_status(evt):
        if evt.kind is E.STATUS:
            got_status.set()
    rig.engine.add_listener(on_status)
    rig.start()
    rig.source.send(encode_command(CommandAction.START, 999))
    rig.source.send(encode_command(CommandAction.STATUS))
    assert got_status.wait(2.0)
    rig.engine.shutdown()
    rig.join()

    assert rig.kinds() == [E.READY, E.STATUS, E.SHUTDOWN]
    assert rig.engine.run_count == 0


def test_shutdown_command_stops_loop_and_releases_channel():
    rig = Rig().start()
    rig.source.send(encode_command(CommandAction.SHUTDOWN))
    rig.join()

    assert rig.kinds()[-1] is E.SHUTDOWN
    assert not rig.engine.running
    assert not rig.source.listening
    assert rig.broker.channel_names() == []


def test_shutdown_is_idempotent():
    rig = Rig()
    rig.engine.shutdown()
    rig.engine.shutdown()
    assert rig.kinds() == [E.SHUTDOWN]
    assert rig.wire("VirtualVacuumRobot_General") == ["SHUTDOWN"]


def test_nothing_emitted_after_shutdown():
    rig = Rig()
    rig.engine.shutdown()
    rig.engine.run()
    rig.engine.run_one_cleaning_cycle()
    assert rig.kinds() == [E.SHUTDOWN]


def test_teardown_removes_topics_and_channels():
    rig = Rig()
    rig.broker.create_channel("VirtualVacuumRobotQueue_321-dlq")
    rig.broker.create_channel("VirtualVacuumRobotQueue_3210")
    rig.engine.teardown()
    rig.engine.teardown()

    assert rig.kinds() == [E.SHUTDOWN]
    assert rig.broker.topic_names() == []
    assert rig.broker.channel_names() == ["VirtualVacuumRobotQueue_3210"]


def test_teardown_command_finishes_before_run_returns():
    rig = Rig().start()
    rig.source.send(encode_command(CommandAction.TEARDOWN, 321))
    rig.join()

    assert rig.broker.topic_names() == []
    assert rig.broker.channel_names() == []
    assert not rig.source.listening
    assert rig.kinds()[-1] is E.SHUTDOWN


class GatedSink(InMemoryEventSink):
    """Holds every delete_topic until the test opens the gate."""

    def __init__(self, broker):
        super().__init__(broker)
        self.entered = threading.Event()
        self.gate = threading.Event()

    def delete_topic(self, handle):
        self.entered.set()
        assert self.gate.wait(5.0)
        super().delete_topic(handle)


def test_repeat_shutdown_waits_for_teardown_in_progress():
    broker = InMemoryBroker()
    sink = GatedSink(broker)
    engine = RobotControlEngine(sink, InMemoryCommandSource(broker, wait_s=0.05),
                                device_id=8, rng=random.Random(2))
    tearing = threading.Thread(target=engine.teardown, daemon=True)
    tearing.start()
    assert sink.entered.wait(2.0)

    second = threading.Thread(target=engine.shutdown, daemon=True)
    second.start()
    second.join(0.2)
    assert second.is_alive(), "shutdown returned while teardown was still deleting"

    sink.gate.set()
    second.join(2.0)
    tearing.join(2.0)
    assert not second.is_alive()
    assert not tearing.is_alive()
    assert broker.topic_names() == []
    assert broker.channel_names() == []


def test_teardown_tolerates_delete_failures():
    rig = Rig()
    rig.sink.fail_delete = True
    rig.engine.teardown()
    assert len(rig.broker.topic_names()) == 4


def test_publish_failures_do_not_stop_the_engine():
    rig = Rig(stuck_chance=1)
    rig.sink.fail_publish = True
    rig.shutdown_on(E.SLEEPING)
    rig.start()
    rig.source.send("START")
    rig.join()

    assert rig.kinds() == [E.READY, E.STARTED, E.STUCK, E.ENDED, E.SLEEPING, E.SHUTDOWN]
    assert rig.broker.published == []


def test_unsubscribe_failure_is_tolerated():
    rig = Rig()
    rig.source.fail_unsubscribe = True
    rig.engine.shutdown()
    assert not rig.engine.running
    assert rig.broker.channel_names() == []


def test_provisioning_failure_aborts_construction():
    sink = InMemoryEventSink()
    sink.fail_find = True
    sink.fail_create = True
    with pytest.raises(ProvisionError):
        RobotControlEngine(sink)


def test_existing_topics_are_reused():
    broker = InMemoryBroker()
    first = RobotControlEngine(InMemoryEventSink(broker), device_id=1)
    second = RobotControlEngine(InMemoryEventSink(broker), device_id=2)
    try:
        assert dict(first.topics.items()) == dict(second.topics.items())
        assert len(broker.topic_names()) == 4
    finally:
        first.shutdown()
        second.shutdown()


def test_channel_failure_aborts_construction():
    broker = InMemoryBroker()
    source = InMemoryCommandSource(broker)
    source.fail_create = True
    with pytest.raises(ProvisionError):
        RobotControlEngine(InMemoryEventSink(broker), source, device_id=5)
    assert not source.listening
