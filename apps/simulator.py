#!/usr/bin/env python3
"""
Virtual vacuum runner.

What this process does
----------------------
1) Builds an event sink and a command source for the chosen transport:
   - memory: in-process broker (no network; commands via --start / --once)
   - mqtt:   paho-mqtt client connected to a broker
2) Creates one RobotControlEngine (provisions its topics and, with a command
   source, its per-device channel).
3) Either runs a single cleaning/charging cycle (--once) or the main loop
   until a shutdown/teardown command or Ctrl+C.

Examples:
  ./apps/simulator.py --start --stuck-chance 0
  ./apps/simulator.py --transport mqtt --host 127.0.0.1 --real-time
  ./apps/simulator.py --once charge --log-level WARNING
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from vacuum_sim.l0_core.events import Command, CommandAction
from vacuum_sim.l0_core.exceptions import ConfigError, ProvisionError
from vacuum_sim.l1_transport.memory import InMemoryBroker, InMemoryCommandSource, InMemoryEventSink
from vacuum_sim.l2_engine.config import REAL_TIME_TICK_S, EngineConfig, load_config
from vacuum_sim.l2_engine.engine import RobotControlEngine

log = logging.getLogger("vacuum_sim.simulator")


def _build_config(args: argparse.Namespace) -> EngineConfig:
    cfg = load_config(args.config) if args.config else EngineConfig()
    return cfg.with_overrides(
        dustbin_capacity=args.dustbin_capacity,
        stuck_chance=args.stuck_chance,
        tick_s=REAL_TIME_TICK_S if args.real_time else args.tick,
    )


def _build_engine(args: argparse.Namespace, cfg: EngineConfig):
    """Returns (engine, cleanup) for the selected transport."""
    if args.transport == "mqtt":
        # imported lazily so the memory transport runs without a broker
        from vacuum_sim.l1_transport.mqtt_transport import (
            MqttCommandSource, MqttEventSink, connect_client, disconnect_client,
        )
        client = connect_client(args.host, args.port, client_id=args.client_id,
                                username=args.username, password=args.password)
        sink = MqttEventSink(client, base_topic=args.base_topic)
        source = MqttCommandSource(client, base_topic=args.base_topic,
                                   channel_prefix=cfg.channel_prefix,
                                   wait_s=cfg.command_wait_s)
        return RobotControlEngine(sink, source, cfg), lambda: disconnect_client(client)

    broker = InMemoryBroker()
    sink = InMemoryEventSink(broker)
    source = InMemoryCommandSource(broker, channel_prefix=cfg.channel_prefix,
                                   wait_s=cfg.command_wait_s)
    return RobotControlEngine(sink, source, cfg), lambda: None


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Simulate one autonomous cleaning robot")
    ap.add_argument("--transport", choices=("memory", "mqtt"), default="memory")
    ap.add_argument("--host", default="localhost", help="MQTT broker host")
    ap.add_argument("--port", type=int, default=1883, help="MQTT broker port")
    ap.add_argument("--client-id", default="", help="MQTT client id (default: broker-assigned)")
    ap.add_argument("--username", default=None)
    ap.add_argument("--password", default=None)
    ap.add_argument("--base-topic", default="vacuum", help="MQTT topic namespace")

    ap.add_argument("--config", default=None, help="YAML or JSON engine config")
    ap.add_argument("--real-time", action="store_true", help=f"{REAL_TIME_TICK_S:g}s clock tick")
    ap.add_argument("--tick", type=float, default=None, help="Clock tick in seconds")
    ap.add_argument("--dustbin-capacity", type=int, default=None)
    ap.add_argument("--stuck-chance", type=int, default=None,
                    help="Stuck probability denominator (0 = never)")

    ap.add_argument("--once", choices=("clean", "charge"), default=None,
                    help="Run a single cycle and exit")
    ap.add_argument("--start", action="store_true", help="Request cleaning on startup")
    ap.add_argument("--log-level", default="INFO")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = _build_config(args)
        engine, cleanup = _build_engine(args, cfg)
    except (ConfigError, FileNotFoundError) as exc:
        log.error("bad configuration: %s", exc)
        return 2
    except (ProvisionError, OSError) as exc:
        log.error("startup failed: %s", exc)
        return 1

    def _shutdown_from_interrupt():
        log.info("interrupt received; shutting down vacuum %d", engine.device_id)
        engine.shutdown()

    def _on_sigint(sig, frame):
        # The handler runs on the main thread, possibly inside a lock the engine
        # needs; hand the shutdown to another thread and let the loop observe it.
        threading.Thread(target=_shutdown_from_interrupt, name="sigint-shutdown",
                         daemon=True).start()

    signal.signal(signal.SIGINT, _on_sigint)

    try:
        if args.once == "clean":
            engine.run_one_cleaning_cycle()
        elif args.once == "charge":
            engine.run_one_charging_cycle()
        else:
            if args.start:
                engine.submit(Command(CommandAction.START))
            engine.run()
    finally:
        engine.shutdown()
        cleanup()
    return 0


if __name__ == "__main__":
    sys.exit(main())
