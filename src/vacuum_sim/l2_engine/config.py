from __future__ import annotations
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
import json

import yaml

from vacuum_sim.l0_core.exceptions import ConfigError

# Fixed, not configurable: below this the robot abandons cleaning to charge.
LOW_POWER_THRESHOLD = 5.0

REAL_TIME_TICK_S = 1.0


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    Immutable tuning for one RobotControlEngine.

    Fields
    ------
    dustbin_capacity : int
        Cleaning cycles allowed before DUSTBIN_FULL is raised.
    stuck_chance : int
        Denominator of the per-tick stuck probability (1 / stuck_chance);
        0 disables the stuck trial.
    tick_s : float
        Clock granularity in seconds. 0 runs the simulation as fast as
        possible; 1.0 is real-time mode.
    topic_prefix : str
        Naming prefix for the provisioned topics and the per-device channel.
    idle_poll_s : float
        Longest the main loop waits between flag checks while idle.
    event_capacity : int
        Size of the outbound event queue (drop-newest when full).
    command_wait_s : float
        Long-poll window of the command listener per receive call.
    """
    dustbin_capacity: int = 2
    stuck_chance: int = 1000
    tick_s: float = 0.0
    topic_prefix: str = "VirtualVacuumRobot"
    idle_poll_s: float = 0.05
    event_capacity: int = 4096
    command_wait_s: float = 1.0

    def __post_init__(self) -> None:
        if self.dustbin_capacity < 0:
            raise ConfigError("dustbin_capacity must be >= 0")
        if self.stuck_chance < 0:
            raise ConfigError("stuck_chance must be >= 0")
        if self.tick_s < 0 or self.idle_poll_s <= 0 or self.command_wait_s <= 0:
            raise ConfigError("tick_s must be >= 0; idle_poll_s and command_wait_s > 0")
        if self.event_capacity <= 0:
            raise ConfigError("event_capacity must be positive")
        if not self.topic_prefix.strip():
            raise ConfigError("topic_prefix must be a non-empty string")

    @classmethod
    def real_time(cls, **overrides: Any) -> EngineConfig:
        return cls(tick_s=REAL_TIME_TICK_S, **overrides)

    @property
    def channel_prefix(self) -> str:
        return f"{self.topic_prefix}Queue"

    def with_overrides(self, **overrides: Any) -> EngineConfig:
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def load_config(path: str | Path) -> EngineConfig:
    """
    Load engine config from a YAML or JSON file.

    Supported shapes:
      YAML:
        dustbin_capacity: 2
        stuck_chance: 1000
        real_time: true      # shorthand for tick_s: 1.0

      JSON:
        {"dustbin_capacity": 2, "stuck_chance": 1000, "tick_s": 0}

    Unknown keys are rejected so typos do not silently fall back to defaults.

    Raises FileNotFoundError / ConfigError on bad input.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)

    text = p.read_text(encoding="utf-8")
    try:
        if p.suffix.lower() in {".yml", ".yaml"}:
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text or "{}")
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"{p}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{p}: top level must be a mapping")

    data = dict(data)
    if data.pop("real_time", False) and "tick_s" not in data:
        data["tick_s"] = REAL_TIME_TICK_S

    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"{p}: unknown keys {unknown}")
    try:
        return EngineConfig(**data)
    except TypeError as exc:
        raise ConfigError(f"{p}: {exc}") from exc
