from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

BatchCallback = Callable[[list[str]], None]


@dataclass(frozen=True, slots=True)
class RawMessage:
    """One inbound message as delivered by a transport, before decoding."""
    message_id: str
    body: str


class EventSink(Protocol):
    """
    Where lifecycle events go. Handles are opaque strings owned by the sink.

    find_topic raises when the name is unknown; create_topic raises when the
    transport refuses; publish raises PublishError; delete_topic raises
    DeleteError.
    """
    def find_topic(self, name: str) -> str: ...
    def create_topic(self, name: str) -> str: ...
    def publish(self, handle: str, payload: str) -> None: ...
    def delete_topic(self, handle: str) -> None: ...


class CommandSource(Protocol):
    """
    Where remote commands come from. One instance serves one controller and
    owns that controller's channel.
    """
    def ensure_channel(self, scope_id: int | str) -> str: ...
    def subscribe(self, channel: str, topic_handle: str) -> str: ...
    def start_listening(self, on_batch: BatchCallback) -> None: ...
    def stop_listening(self) -> None: ...
    def delete_channel(self, handle: str) -> None: ...
    def delete_channels_with_prefix(self, prefix: str) -> None: ...
    def unsubscribe(self, subscription: str) -> None: ...
