"""
Idempotent find-or-create provisioning of named external resources.

The same rule applies to notification topics and command channels: look the
name up, create it on a miss, and give up (ProvisionError) if creation fails
too. It runs once per logical name at startup; the resulting handles are read
only afterwards, except for teardown which deletes them.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterator

from vacuum_sim.l0_core.events import VacuumEvent
from vacuum_sim.l0_core.exceptions import DeleteError, ProvisionError
from vacuum_sim.l1_transport.ports import EventSink

log = logging.getLogger(__name__)

GENERAL_SUFFIX = "General"
ROUTED_EVENTS = (VacuumEvent.DUSTBIN_FULL, VacuumEvent.STUCK)


def provision(name: str, find: Callable[[str], str], create: Callable[[str], str],
              kind: str = "topic") -> str:
    """Return the handle for ``name``, creating the resource if lookup fails."""
    try:
        return find(name)
    except Exception as lookup_exc:
        log.debug("%s %r lookup failed (%s); creating", kind, name, lookup_exc)
        try:
            handle = create(name)
        except Exception as exc:
            log.error("%s %r lookup failed with: %s", kind, name, lookup_exc)
            raise ProvisionError(f"could not find or create {kind} {name!r}: {exc}",
                                 name=name, kind=kind) from exc
        log.info("created %s %r -> %s", kind, name, handle)
        return handle


class TopicRegistry:
    """
    Logical topic name -> sink handle, built once from a naming prefix.

    Topics:
      <prefix>               broadcast command topic ("start" topic)
      <prefix>_DUSTBIN_FULL  dustbin faults
      <prefix>_STUCK         stuck faults
      <prefix>_General       every other lifecycle event
    """

    def __init__(self, sink: EventSink, prefix: str) -> None:
        self._sink = sink
        self._prefix = prefix
        self._handles: dict[str, str] = {}

    @property
    def start_topic(self) -> str:
        return self._prefix

    @property
    def general_topic(self) -> str:
        return f"{self._prefix}_{GENERAL_SUFFIX}"

    def logical_names(self) -> list[str]:
        names = [self.start_topic]
        names.extend(f"{self._prefix}_{kind.value}" for kind in ROUTED_EVENTS)
        names.append(self.general_topic)
        return names

    def provision(self) -> None:
        """Find or create every logical topic. ProvisionError propagates."""
        for name in self.logical_names():
            self._handles[name] = provision(name, self._sink.find_topic,
                                            self._sink.create_topic, kind="topic")

    def handle(self, name: str) -> str:
        try:
            return self._handles[name]
        except KeyError:
            raise LookupError(f"topic {name!r} is not provisioned") from None

    def route(self, kind: VacuumEvent) -> str:
        """Handle of the topic an event of ``kind`` is published to."""
        if kind in ROUTED_EVENTS:
            return self.handle(f"{self._prefix}_{kind.value}")
        return self.handle(self.general_topic)

    def items(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._handles.items()))

    def __contains__(self, name: object) -> bool:
        return name in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def delete_all(self) -> list[str]:
        """
        Delete every provisioned topic. Per-topic failures are logged and the
        remaining topics are still attempted. Returns the names that failed.
        """
        failed: list[str] = []
        for name, handle in self.items():
            try:
                self._sink.delete_topic(handle)
            except DeleteError as exc:
                log.warning("failed to delete topic %r (%s): %s", name, handle, exc)
                failed.append(name)
        self._handles.clear()
        return failed
