from __future__ import annotations

import logging

from vacuum_sim.l0_core import CommandBus
from vacuum_sim.l0_core.events import Command
from vacuum_sim.l0_core.exceptions import DecodeError
from vacuum_sim.l1_transport.ports import CommandSource
from vacuum_sim.l2_engine.commands import decode_message

log = logging.getLogger(__name__)


class CommandIngestor:
    """
    Purpose:
        Turn raw message batches from a CommandSource into applied commands.

    Per message:
        decode -> drop if addressed to another device -> CommandBus.call.

    A DecodeError ends the current batch (the rest is skipped); the listener
    keeps running and picks up the next batch. A failing handler is logged and
    the batch continues.

    Threading:
        on_batch runs on the source's listener thread, never on the engine
        loop; the handlers it reaches must be thread-safe.
    """

    def __init__(self, device_id: int, source: CommandSource, commandbus: CommandBus) -> None:
        self._device_id = str(device_id)
        self._source = source
        self._cmd = commandbus

    def start(self) -> None:
        self._source.start_listening(self.on_batch)

    def stop(self) -> None:
        self._source.stop_listening()

    def accepts(self, command: Command) -> bool:
        return command.is_broadcast or command.target_id == self._device_id

    def on_batch(self, messages: list[str]) -> int:
        """Apply a batch in order; returns how many commands were applied."""
        applied = 0
        for body in messages:
            try:
                command = decode_message(body)
            except DecodeError as exc:
                log.warning("dropping rest of batch after undecodable message %r: %s",
                            body, exc)
                break
            if not self.accepts(command):
                log.debug("ignoring %s addressed to %s", command.action.value, command.target_id)
                continue
            try:
                self._cmd.call(command)
            except Exception:
                log.exception("applying %s failed", command.action.value)
                continue
            applied += 1
        return applied
