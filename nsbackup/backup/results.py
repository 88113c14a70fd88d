"""
Backup run data model and result aggregation.

BackupOptions describes a requested run, CollectionOutcome records what
happened to one collection and BackupResult is the final, immutable report
returned to the caller. aggregate() folds outcomes into a BackupResult and is
kept free of I/O so the run's partial-success rules can be tested in isolation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Sequence, Tuple, Dict, Any


SUCCEEDED = 'succeeded'
FAILED = 'failed'

ALREADY_RUNNING_MESSAGE = 'A backup is already in progress. Please wait for it to complete.'
CANCELLED_MESSAGE = 'Backup cancelled'
NO_UPLOAD_MESSAGE = 'Upload failed: no archive was uploaded'


@dataclass(frozen=True)
class BackupOptions:
    """Options for a single backup run."""

    collections: Optional[Tuple[str, ...]] = None
    create_thread: bool = False
    is_manual: bool = False

    def __post_init__(self):
        if self.collections is None:
            return

        names = []
        for name in self.collections:
            if not isinstance(name, str) or not name.strip():
                raise ValueError(f"Collection names must be non-empty strings, got {name!r}")
            name = name.strip()
            if name not in names:
                names.append(name)

        object.__setattr__(self, 'collections', tuple(names))

    @classmethod
    def from_request(cls, collections=None, create_thread: bool = False, is_manual: bool = False) -> 'BackupOptions':
        """
        Build options from loosely typed caller input.

        Args:
            collections: None, a comma-separated string or a list of names
            create_thread: Whether to open a notification thread
            is_manual: Whether a user triggered the run

        Returns:
            BackupOptions instance

        Raises:
            ValueError: If collections is malformed or a flag is not a boolean
        """
        for flag, value in (('create_thread', create_thread), ('is_manual', is_manual)):
            if not isinstance(value, bool):
                raise ValueError(f"{flag} must be true or false, got {value!r}")

        if isinstance(collections, str):
            # "users, events," -> ('users', 'events')
            names = [c.strip() for c in collections.split(',') if c.strip()]
            collections = tuple(names) if names else None
        elif collections is not None:
            if not isinstance(collections, (list, tuple)):
                raise ValueError("collections must be a list of names or a comma-separated string")
            collections = tuple(collections)

        return cls(
            collections=collections,
            create_thread=create_thread,
            is_manual=is_manual
        )


@dataclass(frozen=True)
class CollectionOutcome:
    """Result of exporting one collection."""

    name: str
    status: str
    document_count: int = 0
    error: Optional[str] = None
    attempted: bool = True
    attempts: int = 1

    def __post_init__(self):
        if self.status not in (SUCCEEDED, FAILED):
            raise ValueError(f"Invalid outcome status: {self.status}")
        if self.document_count < 0:
            raise ValueError("document_count must be non-negative")
        if (self.status == FAILED) != (self.error is not None):
            raise ValueError("error must be set if and only if the outcome failed")

    @classmethod
    def succeeded(cls, name: str, document_count: int, attempts: int = 1) -> 'CollectionOutcome':
        return cls(name=name, status=SUCCEEDED, document_count=document_count, attempts=attempts)

    @classmethod
    def failed(cls, name: str, error: str, attempted: bool = True, attempts: int = 1) -> 'CollectionOutcome':
        return cls(name=name, status=FAILED, error=error, attempted=attempted, attempts=attempts)

    @classmethod
    def not_found(cls, name: str) -> 'CollectionOutcome':
        return cls.failed(name, f"Collection not found: {name}", attempted=False, attempts=0)

    @property
    def is_failed(self) -> bool:
        return self.status == FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'status': self.status,
            'document_count': self.document_count,
            'error': self.error,
            'attempted': self.attempted,
            'attempts': self.attempts
        }


@dataclass(frozen=True)
class UploadReceipt:
    """Where an uploaded archive ended up."""

    key: str
    url: str
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class BackupResult:
    """Final report of a backup run. Built once, never mutated."""

    success: bool
    collections_processed: Tuple[str, ...]
    total_documents_processed: int
    timestamp: datetime
    is_manual: bool = False
    s3_url: Optional[str] = None
    s3_key: Optional[str] = None
    thread_id: Optional[str] = None
    error: Optional[str] = None
    archive_size_bytes: Optional[int] = None
    outcomes: Tuple[CollectionOutcome, ...] = field(default_factory=tuple)

    @property
    def failed_collections(self) -> List[str]:
        return [o.name for o in self.outcomes if o.is_failed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'collections_processed': list(self.collections_processed),
            'total_documents_processed': self.total_documents_processed,
            'timestamp': self.timestamp.isoformat(),
            'is_manual': self.is_manual,
            's3_url': self.s3_url,
            's3_key': self.s3_key,
            'thread_id': self.thread_id,
            'error': self.error,
            'archive_size_bytes': self.archive_size_bytes,
            'outcomes': [o.to_dict() for o in self.outcomes]
        }


def rejection_result(message: str, options: BackupOptions, timestamp: datetime) -> BackupResult:
    """Result for a run that never started (e.g. already running)."""
    return BackupResult(
        success=False,
        collections_processed=(),
        total_documents_processed=0,
        timestamp=timestamp,
        is_manual=options.is_manual,
        error=message
    )


def _canonical_order(outcomes: Sequence[CollectionOutcome], order: Sequence[str]) -> List[CollectionOutcome]:
    """Sort outcomes by position in order; unknown names go last, by name."""
    position = {name: index for index, name in enumerate(order)}
    return sorted(
        outcomes,
        key=lambda o: (position.get(o.name, len(position)), o.name)
    )


def _summarize_failures(failed: Sequence[CollectionOutcome]) -> str:
    details = ', '.join(f"{o.name} ({o.error})" for o in failed)
    return f"{len(failed)} collection(s) failed: {details}"


def aggregate(
    outcomes: Sequence[CollectionOutcome],
    upload: Optional[UploadReceipt],
    thread_id: Optional[str],
    options: BackupOptions,
    order: Sequence[str],
    completed_at: datetime,
    upload_error: Optional[str] = None
) -> BackupResult:
    """
    Fold per-collection outcomes into a BackupResult.

    The run succeeds when no outcome failed and the archive was uploaded. An
    empty run still uploads an (empty) archive, so a missing upload without
    any other error is itself a failure.

    Args:
        outcomes: One outcome per requested collection, in any order
        upload: Receipt of the archive upload, None if it did not happen
        thread_id: Notification thread id, None if not requested or not created
        options: Options the run was started with
        order: Canonical collection order (enumerator targets, then missing names)
        completed_at: Instant the run completed
        upload_error: Run-level error message (upload failure, cancellation)

    Returns:
        BackupResult
    """
    ordered = _canonical_order(outcomes, order)
    failed = [o for o in ordered if o.is_failed]

    errors = []
    if upload_error:
        errors.append(upload_error)
    if failed:
        errors.append(_summarize_failures(failed))
    if not errors and upload is None:
        errors.append(NO_UPLOAD_MESSAGE)

    success = not errors

    return BackupResult(
        success=success,
        collections_processed=tuple(o.name for o in ordered if o.attempted),
        total_documents_processed=sum(o.document_count for o in ordered if not o.is_failed),
        timestamp=completed_at,
        is_manual=options.is_manual,
        s3_url=upload.url if upload else None,
        s3_key=upload.key if upload else None,
        thread_id=thread_id if options.create_thread else None,
        error='; '.join(errors) if errors else None,
        archive_size_bytes=upload.size_bytes if upload else None,
        outcomes=tuple(ordered)
    )
