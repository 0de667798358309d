"""
Error taxonomy for replaying queued mutations.

The engine decides an item's next state from the exception class alone:
transient errors back off and retry, conflicts are forced through (local
wins), validation errors fail the item permanently.
"""


class SyncError(Exception):
    """Base class for failures while replaying one queued item."""

    recoverable = True

    def __init__(self, message: str, item_id: str | None = None, operation: str | None = None):
        super().__init__(message)
        self.item_id = item_id
        self.operation = operation


class TransientSyncError(SyncError):
    """Network or server fault; retry later with backoff."""


class ConflictSyncError(SyncError):
    """Remote state diverged from what the queued operation expects."""

    def __init__(
        self,
        message: str,
        remote_version: dict | None = None,
        item_id: str | None = None,
        operation: str | None = None,
    ):
        super().__init__(message, item_id=item_id, operation=operation)
        self.remote_version = remote_version


class PayloadValidationError(SyncError):
    """Malformed payload or rejected data; retrying cannot succeed."""

    recoverable = False


class QueueStorageError(Exception):
    """The local queue store could not be read or written."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation
