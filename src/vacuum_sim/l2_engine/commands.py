"""
Wire decoding of remote commands.

Two shapes are accepted:

* structured JSON, validated strictly: ``{"action": "start", "id": "1234"}``
  where ``action`` is case-insensitive and an empty or missing ``id`` means
  every device on the channel;
* the legacy bare tokens ``START`` and ``CHARGE``.

Anything else is a DecodeError.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from vacuum_sim.l0_core.events import Command, CommandAction
from vacuum_sim.l0_core.exceptions import DecodeError

LEGACY_TOKENS: dict[str, CommandAction] = {
    "START": CommandAction.START,
    "CHARGE": CommandAction.CHARGE,
}


class CommandMessage(BaseModel):
    """Structured command as it appears on the wire."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    action: CommandAction
    id: str | None = None

    @field_validator("action", mode="before")
    @classmethod
    def _fold_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            return CommandAction(value)
        return value

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("id must be a string or integer")
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value

    def to_command(self) -> Command:
        return Command(action=self.action, target_id=self.id or None)


def encode_command(action: CommandAction, target_id: int | str | None = None) -> str:
    """Structured wire form of a command, as senders should publish it."""
    msg = CommandMessage(action=action, id=None if target_id is None else str(target_id))
    return msg.model_dump_json(exclude_none=True)


def decode_message(body: str) -> Command:
    text = body.strip()
    if text.startswith("{"):
        try:
            return CommandMessage.model_validate_json(text).to_command()
        except ValidationError as exc:
            raise DecodeError(f"malformed command: {exc.error_count()} error(s)",
                              body=body) from exc
    action = LEGACY_TOKENS.get(text)
    if action is None:
        raise DecodeError(f"unrecognised command token {text[:40]!r}", body=body)
    return Command(action=action)
