#!/usr/bin/env python3
"""
send_command.py: publish a command to simulated vacuums over MQTT.

Examples:
  # every vacuum listening on the broadcast topic
  ./apps/send_command.py start

  # one vacuum, through the broadcast topic with an id filter
  ./apps/send_command.py status --id 4242

  # legacy bare token
  ./apps/send_command.py charge --legacy
"""
from __future__ import annotations

import argparse
import sys

import paho.mqtt.client as mqtt

from vacuum_sim.l0_core.events import CommandAction
from vacuum_sim.l2_engine.commands import LEGACY_TOKENS, encode_command
from vacuum_sim.l1_transport.mqtt_transport import connect_client, disconnect_client

DEFAULT_TOPIC = "VirtualVacuumRobot"


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Send a command to simulated vacuums")
    ap.add_argument("action", type=CommandAction, metavar="ACTION",
                    help=", ".join(a.value for a in CommandAction))
    ap.add_argument("--id", default=None, help="Target device id (default: all devices)")
    ap.add_argument("--legacy", action="store_true", help="Send the bare START/CHARGE token")
    ap.add_argument("--host", default="localhost")
    ap.add_argument("--port", type=int, default=1883)
    ap.add_argument("--base-topic", default="vacuum")
    ap.add_argument("--topic", default=DEFAULT_TOPIC, help=f"Command topic (default: {DEFAULT_TOPIC})")
    args = ap.parse_args(argv)

    if args.legacy:
        tokens = {a: t for t, a in LEGACY_TOKENS.items()}
        if args.action not in tokens or args.id:
            ap.error("--legacy only supports start/charge without --id")
        payload = tokens[args.action]
    else:
        payload = encode_command(args.action, args.id)

    client = connect_client(args.host, args.port)
    try:
        info = client.publish(f"{args.base_topic}/{args.topic}", payload, qos=1)
        info.wait_for_publish(timeout=5)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            print(f"[MQTT] publish failed: {mqtt.error_string(info.rc)}", file=sys.stderr)
            return 1
        print(f"[MQTT] sent {payload}")
    finally:
        disconnect_client(client)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
