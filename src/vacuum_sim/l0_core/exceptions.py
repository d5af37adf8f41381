"""Exception hierarchy for vacuum_sim.

Only ``ProvisionError`` is fatal to a controller. The outbound side-effect
errors (publish, delete, unsubscribe) are logged and swallowed by the engine,
and ``DecodeError`` only ends processing of the current command batch.
"""

from __future__ import annotations


class VacuumSimError(Exception):
    """Base exception for all vacuum_sim errors."""


class ConfigError(VacuumSimError):
    """Invalid or unreadable engine configuration."""


class ResourceNotFoundError(VacuumSimError):
    """A topic or channel lookup by logical name found nothing."""


class ProvisionError(VacuumSimError):
    """Lookup and creation of a topic or channel both failed."""

    def __init__(self, message: str, *, name: str = "", kind: str = "") -> None:
        self.name = name
        self.kind = kind
        super().__init__(message)


class PublishError(VacuumSimError):
    """The event sink refused or failed to deliver a payload."""


class DeleteError(VacuumSimError):
    """Deleting a topic or channel failed."""


class UnsubscribeError(VacuumSimError):
    """Removing a channel subscription failed."""


class DecodeError(VacuumSimError):
    """An inbound command message could not be decoded."""

    def __init__(self, message: str, *, body: str = "") -> None:
        self.body = body
        super().__init__(message)
