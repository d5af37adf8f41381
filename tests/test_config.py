import json

import pytest

from vacuum_sim.l0_core.exceptions import ConfigError
from vacuum_sim.l2_engine.config import REAL_TIME_TICK_S, EngineConfig, load_config


def test_defaults():
    cfg = EngineConfig()
    assert cfg.dustbin_capacity == 2
    assert cfg.stuck_chance == 1000
    assert cfg.tick_s == 0.0
    assert cfg.channel_prefix == "VirtualVacuumRobotQueue"
    assert EngineConfig.real_time().tick_s == REAL_TIME_TICK_S


def test_overrides_skip_none():
    cfg = EngineConfig().with_overrides(dustbin_capacity=5, stuck_chance=None)
    assert cfg.dustbin_capacity == 5
    assert cfg.stuck_chance == 1000


def test_load_yaml_with_real_time_shorthand(tmp_path):
    p = tmp_path / "vacuum.yaml"
    p.write_text("dustbin_capacity: 1\nstuck_chance: 0\nreal_time: true\n", encoding="utf-8")
    cfg = load_config(p)
    assert cfg == EngineConfig(dustbin_capacity=1, stuck_chance=0, tick_s=REAL_TIME_TICK_S)


def test_load_json(tmp_path):
    p = tmp_path / "vacuum.json"
    p.write_text(json.dumps({"topic_prefix": "Lab", "tick_s": 0.25}), encoding="utf-8")
    cfg = load_config(p)
    assert cfg.topic_prefix == "Lab"
    assert cfg.tick_s == 0.25


@pytest.mark.parametrize("text", [
    '{"dustbin_capcity": 3}',
    '{"dustbin_capacity": -1}',
    '[1, 2]',
    '{"stuck_chance": ',
])
def test_bad_json_is_config_error(tmp_path, text):
    p = tmp_path / "bad.json"
    p.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(p)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")
