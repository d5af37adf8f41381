from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def now_iso() -> str:
    """Wall-clock UTC timestamp in ISO-8601, used on the event wire."""
    return datetime.now(timezone.utc).isoformat()


def format_power(power: float) -> str:
    return f"{power:.2f}"


class VacuumEvent(str, Enum):
    """Lifecycle signals raised by the control engine."""
    READY = "READY"
    STARTED = "STARTED"
    CLEANING = "CLEANING"
    ENDED = "ENDED"
    STARTED_CHARGE = "STARTED_CHARGE"
    CHARGING = "CHARGING"
    SLEEPING = "SLEEPING"
    STUCK = "STUCK"
    DUSTBIN_FULL = "DUSTBIN_FULL"
    STATUS = "STATUS"
    SHUTDOWN = "SHUTDOWN"


class CommandAction(str, Enum):
    """Remote actions accepted by the engine. Lookup ignores case."""
    START = "start"
    STOP = "stop"
    CHARGE = "charge"
    EMPTY_DUSTBIN = "emptyDustbin"
    STATUS = "status"
    SHUTDOWN = "shutdown"
    TEARDOWN = "teardown"

    @classmethod
    def _missing_(cls, value: object) -> CommandAction | None:
        if isinstance(value, str):
            folded = value.strip().casefold()
            for member in cls:
                if member.value.casefold() == folded:
                    return member
        return None


@dataclass(frozen=True, slots=True)
class Command:
    """
    One decoded remote command.

    Fields:
      - action: what to do
      - target_id: device identity this command addresses; None or "" means
        every device listening on the channel
    """
    action: CommandAction
    target_id: str | None = None

    @property
    def is_broadcast(self) -> bool:
        return not self.target_id


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """
    Immutable record of one engine transition, built per emission and handed
    to listeners and the event sink. Never retained by the engine.
    """
    device_id: int
    kind: VacuumEvent
    detail: str = ""
    timestamp: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.device_id,
            "message": self.detail,
            "eventType": self.kind.value,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_wire())
