"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Admit the run through the RunGuard (reject if one is already running)
2. Resolve target collections
3. Export collections in parallel, each into its own archive member
4. Upload the archive to S3 (once, after every collection finished)
5. Create the notification thread (if requested)
6. Aggregate outcomes into a BackupResult
7. Cleanup temporary files and release the guard
"""

import logging
import os
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .compression import ArchiveWriter, generate_archive_filename
from .errors import (
    AlreadyRunningError,
    ArchiveError,
    BackupCancelledError,
    CollectionNotFoundError,
    CollectionReadError,
    NotificationError,
    StorageError,
)
from .guard import RunGuard, get_guard
from .results import (
    ALREADY_RUNNING_MESSAGE,
    CANCELLED_MESSAGE,
    BackupOptions,
    BackupResult,
    CollectionOutcome,
    aggregate,
    rejection_result,
)
from .sources import CollectionEnumerator, CollectionPlan, DocumentStreamer
from .storage import build_object_key


logger = logging.getLogger(__name__)

# Run phases
IDLE = 'idle'
ADMITTED = 'admitted'
ENUMERATING = 'enumerating'
EXPORTING = 'exporting'
UPLOADING = 'uploading'
FINALIZING = 'finalizing'
COMPLETED = 'completed'
FAILED = 'failed'


def _as_list(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    return list(value)


@dataclass(frozen=True)
class BackupSettings:
    """Tunables for a backup run."""

    database_name: str
    compression_format: str = 'tar.gz'
    batch_size: int = 500
    export_workers: int = 3
    collection_retries: int = 2
    collection_retry_delay: float = 1.0
    s3_prefix: str = 'backups'
    temp_dir: Optional[str] = None
    run_timeout_seconds: Optional[float] = None
    exclude_collections: Sequence[str] = ()

    def __post_init__(self):
        if self.export_workers < 1:
            raise ValueError("export_workers must be at least 1")
        if self.collection_retries < 0:
            raise ValueError("collection_retries must not be negative")

    @classmethod
    def from_config(cls, config) -> 'BackupSettings':
        """
        Build settings from a Flask-style config mapping.

        Args:
            config: Mapping with MONGODB_DATABASE, ARCHIVE_FORMAT, BATCH_SIZE, ...
        """
        timeout = config.get('RUN_TIMEOUT_SECONDS')
        return cls(
            database_name=config.get('MONGODB_DATABASE') or 'nightscout',
            compression_format=config.get('ARCHIVE_FORMAT', 'tar.gz'),
            batch_size=int(config.get('BATCH_SIZE', 500)),
            export_workers=int(config.get('EXPORT_WORKERS', 3)),
            collection_retries=int(config.get('COLLECTION_RETRIES', 2)),
            collection_retry_delay=float(config.get('COLLECTION_RETRY_DELAY_SECONDS', 1.0)),
            s3_prefix=config.get('S3_PREFIX', 'backups'),
            temp_dir=config.get('TEMP_DIR'),
            run_timeout_seconds=float(timeout) if timeout else None,
            exclude_collections=tuple(_as_list(config.get('BACKUP_EXCLUDE_COLLECTIONS')))
        )


class BackupExecutor:
    """
    Orchestrates one backup run of one database.
    """

    def __init__(
        self,
        database,
        storage,
        settings: BackupSettings,
        options: Optional[BackupOptions] = None,
        guard: Optional[RunGuard] = None,
        thread_creator=None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize backup executor.

        Args:
            database: pymongo Database to back up
            storage: Uploader with upload(path, key, cancellation_check) -> UploadReceipt
            settings: BackupSettings
            options: BackupOptions for this run (default: all collections, scheduled)
            guard: RunGuard (default: process-wide guard for the database)
            thread_creator: Optional WebhookThreadCreator for create_thread runs
            clock: Function returning the current UTC time (injectable for tests)
        """
        self.database = database
        self.storage = storage
        self.settings = settings
        self.options = options or BackupOptions()
        self.guard = guard or get_guard(settings.database_name)
        self.thread_creator = thread_creator
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.enumerator = CollectionEnumerator(database, exclude=settings.exclude_collections)
        self.streamer = DocumentStreamer(database, batch_size=settings.batch_size)

        self.phase = IDLE
        self.plan: Optional[CollectionPlan] = None
        self.outcomes: Dict[str, CollectionOutcome] = {}
        self.started_at: Optional[datetime] = None
        self.temp_dir = None
        self.writer: Optional[ArchiveWriter] = None
        self.logs = []

        self._cancelled = threading.Event()
        self._cancel_reason = CANCELLED_MESSAGE
        self._outcomes_lock = threading.Lock()

    def execute(self) -> BackupResult:
        """
        Execute the backup run.

        Returns:
            BackupResult; run failures are reported in the result, not raised
        """
        try:
            self.guard.try_admit()
        except AlreadyRunningError as e:
            self._log(f"Backup rejected: {e}")
            self.phase = FAILED
            return rejection_result(ALREADY_RUNNING_MESSAGE, self.options, self._clock())

        self.phase = ADMITTED
        self.started_at = self._clock()
        kind = 'manual' if self.options.is_manual else 'scheduled'
        self._log(f"Starting {kind} backup of {self.settings.database_name}")

        timer = None
        if self.settings.run_timeout_seconds:
            timer = threading.Timer(self.settings.run_timeout_seconds, self._on_timeout)
            timer.daemon = True
            timer.start()

        try:
            result = self._execute_workflow()

        except Exception as e:
            logger.exception("Backup run failed unexpectedly")
            self._log(f"Backup failed: {e}")
            result = self._aggregate(upload=None, thread_id=None, run_error=f"Backup failed: {e}")

        finally:
            try:
                if timer:
                    timer.cancel()
                self._cleanup()
            finally:
                self.guard.release()

        self.phase = COMPLETED if result.success else FAILED
        if result.success:
            self._log(
                f"Backup completed successfully: {result.total_documents_processed} documents "
                f"from {len(result.collections_processed)} collections"
            )
        else:
            self._log(f"Backup finished with errors: {result.error}")
        return result

    def cancel(self, reason: str = CANCELLED_MESSAGE):
        """
        Request cooperative cancellation.

        In-flight exports stop at their next batch boundary and their members
        are discarded; the upload is skipped or aborted.
        """
        if not self._cancelled.is_set():
            self._cancel_reason = reason
            self._cancelled.set()
            self._log(f"Cancellation requested: {reason}")

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _on_timeout(self):
        self.cancel(f"Backup timed out after {self.settings.run_timeout_seconds:g} seconds")

    def _check_cancelled(self):
        if self._cancelled.is_set():
            raise BackupCancelledError(self._cancel_reason)

    def _execute_workflow(self) -> BackupResult:
        """Execute the main backup workflow steps."""
        # Step 1: Resolve collections
        self.phase = ENUMERATING
        self.plan = self.enumerator.resolve(self.options.collections)
        self._log(f"Resolved {len(self.plan.targets)} collections: {', '.join(self.plan.targets) or 'none'}")
        for name in self.plan.missing:
            self._record(CollectionOutcome.not_found(name))

        # Step 2: Export collections into archive members
        self.phase = EXPORTING
        self.temp_dir = tempfile.mkdtemp(prefix='nsbackup_', dir=self._ensure_temp_root())
        archive_name = generate_archive_filename(self.settings.database_name, self.options.is_manual, self.started_at)
        self.writer = ArchiveWriter(self.temp_dir, archive_name, self.settings.compression_format)
        self._export_all(self.plan.targets)

        # Step 3: Upload the finished archive
        upload = None
        run_error = None

        if self.cancelled:
            run_error = self._cancel_reason
        else:
            # An empty run still produces its (empty) archive
            try:
                archive_path = self.writer.close(allow_empty=not self._has_failures())
            except ArchiveError as e:
                archive_path = None
                run_error = str(e)

            if archive_path:
                self.phase = UPLOADING
                key = build_object_key(self.settings.s3_prefix, os.path.basename(archive_path), self.started_at)
                self._log(f"Uploading {self.writer.member_count} members to {key}")
                try:
                    upload = self.storage.upload(archive_path, key, cancellation_check=self._check_cancelled)
                    self._log(f"Uploaded archive: {upload.key}")
                except StorageError as e:
                    run_error = f"Upload failed: {e}"
                    self._log(run_error)
                except BackupCancelledError as e:
                    run_error = str(e)
            elif run_error is None:
                self._log("Every collection failed, skipping upload")

        # Step 4: Notification thread
        self.phase = FINALIZING
        thread_id = self._create_thread() if self.options.create_thread else None

        result = self._aggregate(upload=upload, thread_id=thread_id, run_error=run_error)

        if thread_id:
            self._post_summary(thread_id, result)

        return result

    def _export_all(self, targets: Sequence[str]):
        """Export every target on a bounded worker pool."""
        if not targets:
            return

        workers = min(self.settings.export_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='nsbackup-export') as pool:
            futures = {pool.submit(self._export_collection, name): name for name in targets}

            for future in as_completed(futures):
                name = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.exception(f"Export of {name} raised")
                    outcome = CollectionOutcome.failed(name, f"Unexpected error: {e}")
                self._record(outcome)

    def _export_collection(self, name: str) -> CollectionOutcome:
        """
        Export one collection, retrying transient read failures from scratch.

        Never raises: every failure becomes a failed outcome.
        """
        max_attempts = self.settings.collection_retries + 1
        attempts = 0

        while True:
            if self.cancelled:
                return CollectionOutcome.failed(
                    name, self._cancel_reason, attempted=attempts > 0, attempts=attempts
                )

            attempts += 1
            handle = None

            try:
                batches = self.streamer.open(name)
                handle = self.writer.begin_member(name)
                try:
                    for batch in batches:
                        self._check_cancelled()
                        self.writer.write_batch(handle, batch)
                finally:
                    batches.close()

                self._check_cancelled()
                count = self.writer.end_member(handle)
                handle = None
                self._log(f"Exported {name}: {count} documents")
                return CollectionOutcome.succeeded(name, count, attempts=attempts)

            except CollectionNotFoundError as e:
                self._log(f"Collection {name} disappeared: {e}")
                return CollectionOutcome.failed(name, str(e), attempts=attempts)

            except CollectionReadError as e:
                if e.transient and attempts < max_attempts:
                    self._log(f"Transient failure on {name} (attempt {attempts}/{max_attempts}), retrying: {e}")
                    self._cancelled.wait(self.settings.collection_retry_delay)
                    continue
                self._log(f"Failed to export {name}: {e}")
                return CollectionOutcome.failed(name, str(e), attempts=attempts)

            except BackupCancelledError as e:
                self._log(f"Export of {name} cancelled")
                return CollectionOutcome.failed(name, str(e), attempts=attempts)

            except ArchiveError as e:
                self._log(f"Failed to write {name}: {e}")
                return CollectionOutcome.failed(name, str(e), attempts=attempts)

            except Exception as e:
                logger.exception(f"Unexpected error exporting {name}")
                return CollectionOutcome.failed(name, f"Unexpected error: {e}", attempts=attempts)

            finally:
                if handle is not None:
                    self.writer.discard_member(handle)

    def _create_thread(self) -> Optional[str]:
        """Open the notification thread; failures leave thread_id absent."""
        if self.thread_creator is None:
            self._log("Thread requested but no notification channel configured")
            return None

        from nsbackup.notifications import format_thread_name

        name = format_thread_name(self.settings.database_name, self.options.is_manual, self.started_at)
        try:
            thread_id = self.thread_creator.create_thread(name, f"🔄 {name} started")
            self._log(f"Created notification thread {thread_id}")
            return thread_id
        except NotificationError as e:
            self._log(f"Warning: Failed to create notification thread: {e}")
            return None

    def _post_summary(self, thread_id: str, result: BackupResult):
        from nsbackup.notifications import format_result_message

        try:
            self.thread_creator.post_message(thread_id, format_result_message(result))
        except NotificationError as e:
            self._log(f"Warning: Failed to post summary to thread {thread_id}: {e}")

    def _aggregate(self, upload, thread_id, run_error) -> BackupResult:
        order = self.plan.order if self.plan else ()
        with self._outcomes_lock:
            outcomes = list(self.outcomes.values())
        return aggregate(
            outcomes,
            upload,
            thread_id,
            self.options,
            order,
            self._clock(),
            upload_error=run_error
        )

    def _has_failures(self) -> bool:
        with self._outcomes_lock:
            return any(o.is_failed for o in self.outcomes.values())

    def _record(self, outcome: CollectionOutcome):
        with self._outcomes_lock:
            self.outcomes[outcome.name] = outcome

    def _ensure_temp_root(self) -> Optional[str]:
        if self.settings.temp_dir:
            os.makedirs(self.settings.temp_dir, exist_ok=True)
        return self.settings.temp_dir

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.writer is not None:
            self.writer.abort()

        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def perform_backup(
    options: BackupOptions,
    database,
    storage,
    settings: BackupSettings,
    thread_creator=None,
    guard: Optional[RunGuard] = None
) -> BackupResult:
    """
    Run a backup and wait for its result.

    Args:
        options: BackupOptions for this run
        database: pymongo Database to back up
        storage: Archive uploader (S3Storage)
        settings: BackupSettings
        thread_creator: Optional notification thread creator
        guard: Optional RunGuard override

    Returns:
        BackupResult (a rejection result if a backup is already running)
    """
    executor = BackupExecutor(
        database,
        storage,
        settings,
        options=options,
        guard=guard,
        thread_creator=thread_creator
    )
    return executor.execute()
