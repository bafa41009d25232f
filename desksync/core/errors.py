"""Exception hierarchy shared across desksync."""

from __future__ import annotations


class DeskSyncError(Exception):
    """Base class for all desksync errors."""


class DuplicateEventError(DeskSyncError):
    """An event with the same id is already in the log."""

    def __init__(self, event_id: str):
        super().__init__(f"Event already exists: {event_id}")
        self.event_id = event_id


class ReentrantDispatchError(DeskSyncError):
    """A store mutation was dispatched from inside a subscriber callback."""


class StorageError(DeskSyncError):
    pass


class QuotaExceededError(StorageError):
    """The storage medium refused a write because it is full."""


class StorageUnavailableError(StorageError):
    """The storage medium cannot be opened or written at all."""


class SandboxError(DeskSyncError):
    pass


class SandboxNotFoundError(SandboxError):
    """The sandbox expired or was deleted."""


class SandboxConnectError(SandboxError):
    pass


class TransportError(DeskSyncError):
    pass
