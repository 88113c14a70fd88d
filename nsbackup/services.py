"""
Wiring between the Flask application and the backup engine.

BackupService builds the database handle, uploader and notification channel
from the app config once, and is shared by the HTTP routes and the scheduler.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from nsbackup.backup.errors import NotificationError, StorageError
from nsbackup.backup.executor import BackupSettings, perform_backup
from nsbackup.backup.guard import RunGuard, get_guard
from nsbackup.backup.results import BackupOptions, BackupResult, rejection_result
from nsbackup.backup.sources import create_database
from nsbackup.backup.storage import S3Storage
from nsbackup.notifications import WebhookThreadCreator


logger = logging.getLogger(__name__)

EXTENSION_KEY = 'nsbackup'


class BackupService:
    """
    Entry point for running backups of the configured database.
    """

    def __init__(self, database, settings: BackupSettings, storage=None, thread_creator=None,
                 storage_factory=None, guard: Optional[RunGuard] = None):
        self.database = database
        self.settings = settings
        self.thread_creator = thread_creator
        self.guard = guard or get_guard(settings.database_name)
        self._storage = storage
        self._storage_factory = storage_factory

    @classmethod
    def from_config(cls, app_config) -> 'BackupService':
        """
        Build the service from a Flask config mapping.

        Nothing here touches the network: MongoClient connects lazily and the
        S3 client is created on first use.
        """
        settings = BackupSettings.from_config(app_config)
        database = create_database(
            app_config['MONGODB_URI'],
            settings.database_name,
            serverSelectionTimeoutMS=30000
        )

        thread_creator = None
        if app_config.get('NOTIFY_WEBHOOK_URL'):
            try:
                thread_creator = WebhookThreadCreator(app_config['NOTIFY_WEBHOOK_URL'])
            except NotificationError as e:
                logger.warning(f"Notification channel disabled: {e}")

        def storage_factory():
            return S3Storage(
                bucket_name=app_config.get('S3_BUCKET'),
                region=app_config.get('AWS_REGION', 'us-east-1'),
                access_key=app_config.get('AWS_ACCESS_KEY_ID'),
                secret_key=app_config.get('AWS_SECRET_ACCESS_KEY'),
                endpoint_url=app_config.get('S3_ENDPOINT_URL'),
                max_retries=int(app_config.get('UPLOAD_RETRIES', 3)),
                backoff_seconds=float(app_config.get('UPLOAD_BACKOFF_SECONDS', 1.0)),
                presign_expires=int(app_config.get('S3_PRESIGN_EXPIRES') or 0) or None
            )

        return cls(database, settings, thread_creator=thread_creator, storage_factory=storage_factory)

    @property
    def storage(self):
        if self._storage is None and self._storage_factory is not None:
            self._storage = self._storage_factory()
        return self._storage

    def is_running(self) -> bool:
        return self.guard.is_running()

    def perform_backup(self, options: BackupOptions) -> BackupResult:
        """
        Run a backup and wait for its result.

        Returns:
            BackupResult; never raises for run failures
        """
        try:
            storage = self.storage
        except StorageError as e:
            logger.error(f"Backup storage unavailable: {e}")
            return rejection_result(f"Upload failed: {e}", options, datetime.now(timezone.utc))

        if storage is None:
            return rejection_result("Upload failed: no storage configured", options, datetime.now(timezone.utc))

        return perform_backup(
            options,
            self.database,
            storage,
            self.settings,
            thread_creator=self.thread_creator,
            guard=self.guard
        )


def init_backup_service(app) -> BackupService:
    """Create the BackupService for an app unless one was already installed."""
    service = app.extensions.get(EXTENSION_KEY)
    if service is None:
        service = BackupService.from_config(app.config)
        app.extensions[EXTENSION_KEY] = service
    return service


def get_backup_service(app) -> BackupService:
    return app.extensions[EXTENSION_KEY]
