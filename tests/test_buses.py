import threading

import pytest

from vacuum_sim.l0_core import CommandBus, EventBus
from vacuum_sim.l0_core.events import Command, CommandAction


def test_command_bus_routes_by_action():
    bus = CommandBus()
    seen = []
    bus.register(CommandAction.START, lambda c: seen.append(("start", c.target_id)))
    bus.register(CommandAction.STOP, lambda c: seen.append(("stop", c.target_id)))

    bus.call(Command(CommandAction.STOP, "7"))
    bus.call(Command(CommandAction.START))

    assert seen == [("stop", "7"), ("start", None)]
    assert bus.handles(CommandAction.START)
    assert not bus.handles(CommandAction.CHARGE)


def test_command_bus_rejects_double_registration_and_unknown_action():
    bus = CommandBus()
    bus.register(CommandAction.START, lambda c: None)
    with pytest.raises(ValueError):
        bus.register(CommandAction.START, lambda c: None)
    with pytest.raises(LookupError):
        bus.call(Command(CommandAction.CHARGE))


def test_event_bus_close_drains_in_order():
    bus = EventBus(capacity=64, name="t")
    got = []
    bus.subscribe("a", got.append)
    for i in range(20):
        assert bus.publish("a", i)
    bus.close()
    assert got == list(range(20))
    assert bus.publish("a", 99) is False


def test_event_bus_survives_failing_subscriber():
    bus = EventBus(capacity=8, name="t")
    delivered = threading.Event()

    def boom(_evt):
        raise RuntimeError("subscriber bug")

    bus.subscribe("a", boom)
    bus.subscribe("a", lambda _evt: delivered.set())
    bus.publish("a", 1)
    assert delivered.wait(2.0)
    bus.close()


def test_event_bus_unsubscribe():
    bus = EventBus(capacity=8, name="t")
    got = []
    bus.subscribe("a", got.append)
    bus.unsubscribe("a", got.append)
    bus.publish("a", 1)
    bus.close()
    assert got == []
    bus.close()  # idempotent
