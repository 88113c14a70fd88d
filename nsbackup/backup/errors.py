"""
Exception hierarchy for backup runs.

Per-collection errors (CollectionNotFoundError, CollectionReadError, ArchiveError)
are caught by the executor and recorded as outcomes. Run-level errors
(AlreadyRunningError, StorageError, BackupCancelledError) end up in the
result's top-level error field.
"""


class BackupError(Exception):
    """Base class for backup errors."""
    pass


class AlreadyRunningError(BackupError):
    """Raised when a backup is already in progress for the target."""
    pass


class CollectionNotFoundError(BackupError):
    """Raised when a requested collection does not exist."""

    def __init__(self, name: str):
        super().__init__(f"Collection not found: {name}")
        self.name = name


class CollectionReadError(BackupError):
    """Raised when reading a collection fails."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class ArchiveError(BackupError):
    """Raised when an archive member cannot be written."""
    pass


class StorageError(BackupError):
    """Raised when uploading the archive fails."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class NotificationError(BackupError):
    """Raised when the notification thread cannot be created."""
    pass


class BackupCancelledError(BackupError):
    """Raised at a batch boundary once the run has been cancelled."""
    pass
