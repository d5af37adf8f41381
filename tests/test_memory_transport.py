import threading
import time

import pytest

from vacuum_sim.l0_core.exceptions import (
    DeleteError, ProvisionError, PublishError, UnsubscribeError,
)
from vacuum_sim.l1_transport.memory import InMemoryBroker, InMemoryCommandSource, InMemoryEventSink


def _collector():
    batches = []
    got = threading.Event()

    def on_batch(bodies):
        batches.append(list(bodies))
        got.set()

    return batches, got, on_batch


def test_topic_fans_out_to_subscribed_channels():
    broker = InMemoryBroker()
    topic = broker.create_topic("cmds")
    a = broker.create_channel("q_a")
    b = broker.create_channel("q_b")
    broker.subscribe(a, topic)
    broker.subscribe(b, topic)

    broker.publish(topic, "START")

    assert [m.body for m in broker.receive(a, 0.1)] == ["START"]
    assert [m.body for m in broker.receive(b, 0.1)] == ["START"]
    assert broker.published == [(topic, "START")]


def test_publish_to_deleted_topic_fails():
    sink = InMemoryEventSink()
    handle = sink.create_topic("t")
    sink.delete_topic(handle)
    with pytest.raises(PublishError):
        sink.publish(handle, "{}")
    with pytest.raises(DeleteError):
        sink.delete_topic(handle)


def test_ensure_channel_is_idempotent():
    broker = InMemoryBroker()
    first = InMemoryCommandSource(broker).ensure_channel(42)
    second = InMemoryCommandSource(broker).ensure_channel(42)
    assert first == second
    assert broker.channel_names() == ["VirtualVacuumRobotQueue_42"]


def test_ensure_channel_failure_is_fatal():
    source = InMemoryCommandSource(InMemoryBroker())
    source.fail_create = True
    with pytest.raises(ProvisionError):
        source.ensure_channel(1)


def test_listener_deduplicates_by_message_id():
    broker = InMemoryBroker()
    source = InMemoryCommandSource(broker, wait_s=0.05)
    source.ensure_channel(7)
    source.send("START", message_id="m1")
    source.send("START", message_id="m1")
    source.send("CHARGE", message_id="m2")

    batches, got, on_batch = _collector()
    source.start_listening(on_batch)
    try:
        assert got.wait(2.0)
    finally:
        source.stop_listening()

    assert batches == [["START", "CHARGE"]]
    assert not source.listening


def test_listener_keeps_going_after_callback_error():
    broker = InMemoryBroker()
    source = InMemoryCommandSource(broker, wait_s=0.05)
    source.ensure_channel(7)
    seen = []
    second = threading.Event()

    def on_batch(bodies):
        seen.extend(bodies)
        if len(seen) == 1:
            raise RuntimeError("handler bug")
        second.set()

    source.start_listening(on_batch)
    try:
        source.send("one")
        assert _wait_for(lambda: len(seen) == 1)
        source.send("two")
        assert second.wait(2.0)
    finally:
        source.stop_listening()
    assert seen == ["one", "two"]


def test_start_listening_requires_channel():
    source = InMemoryCommandSource(InMemoryBroker())
    with pytest.raises(RuntimeError):
        source.start_listening(lambda bodies: None)


def test_channel_teardown_by_prefix():
    broker = InMemoryBroker()
    source = InMemoryCommandSource(broker)
    source.ensure_channel(5)
    broker.create_channel("VirtualVacuumRobotQueue_5-dlq")
    broker.create_channel("VirtualVacuumRobotQueue_55")
    broker.create_channel("Other_5")

    source.delete_channels_with_prefix("VirtualVacuumRobotQueue_5")
    assert broker.channel_names() == ["Other_5", "VirtualVacuumRobotQueue_55"]


def test_unsubscribe_twice_raises():
    broker = InMemoryBroker()
    topic = broker.create_topic("t")
    source = InMemoryCommandSource(broker)
    channel = source.ensure_channel(1)
    sub = source.subscribe(channel, topic)
    source.unsubscribe(sub)
    with pytest.raises(UnsubscribeError):
        source.unsubscribe(sub)


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
