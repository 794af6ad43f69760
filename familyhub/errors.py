from __future__ import annotations


class SyncError(RuntimeError):
    pass


class DiscoveryError(SyncError):
    """The CalDAV discovery chain did not yield a usable VEVENT collection."""


class TransportError(SyncError):
    """A CalDAV request failed or returned an unexpected status."""

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class MappingStoreError(SyncError):
    """The local mapping store could not be read or written."""


class AccountMissingError(SyncError):
    """A mapping row references an account that no longer exists."""
