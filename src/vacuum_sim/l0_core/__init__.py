"""
vacuum_sim.l0_core
Foundational core layer (contracts & buses) for the vacuum simulator.

Public API:
- now_iso, format_power, VacuumEvent, CommandAction, Command, LifecycleEvent
- EventBus, CommandBus, BoundedQueue
"""

from .events import (  # noqa: F401
    now_iso, format_power,
    VacuumEvent, CommandAction, Command, LifecycleEvent,
)
from .bounded_queue import BoundedQueue  # noqa: F401
from .bus import EventBus, CommandBus  # noqa: F401

__all__ = [
    "now_iso", "format_power",
    "VacuumEvent", "CommandAction", "Command", "LifecycleEvent",
    "BoundedQueue", "EventBus", "CommandBus",
]
