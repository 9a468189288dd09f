"""Exception types raised by the message cache."""

from __future__ import annotations


class InboxError(Exception):
    """Base class for every error raised by inboxcache."""


class MalformedPayloadError(InboxError, ValueError):
    """A raw payload is missing a required field or has an unparseable value."""


class StoreError(InboxError):
    pass


class StoreOpenError(StoreError):
    """The store medium could not be opened (unreadable, corrupt, or not a database)."""


class StoreClosedError(StoreError):
    """An operation was attempted on a closed store."""


class StoreWriteError(StoreError):
    """The medium failed during a batch; nothing from the batch is visible."""


class MigrationError(InboxError):
    """Raised while converting the legacy store. Never escapes run_migration."""
