"""
Unit tests for backup service wiring (nsbackup/services.py).
"""

from nsbackup.backup.errors import StorageError
from nsbackup.backup.results import BackupOptions
from nsbackup.backup.storage import S3Storage
from nsbackup.config import TestingConfig
from nsbackup.notifications import WebhookThreadCreator
from nsbackup.services import BackupService


def _config(**overrides):
    config = {key: getattr(TestingConfig, key) for key in dir(TestingConfig) if key.isupper()}
    config.update(overrides)
    return config


class TestBackupServiceFromConfig:

    def test_builds_lazily(self):
        service = BackupService.from_config(_config(MONGODB_URI='mongodb://localhost:27017/heroku_abc',
                                                     MONGODB_DATABASE='heroku_abc'))

        assert service.database.name == 'heroku_abc'
        assert service.settings.database_name == 'heroku_abc'
        assert service._storage is None
        assert service.thread_creator is None

    def test_storage_created_on_first_use(self):
        service = BackupService.from_config(_config())

        assert isinstance(service.storage, S3Storage)
        assert service.storage is service.storage
        assert service.storage.bucket_name == 'test-bucket'

    def test_webhook_enables_threads(self):
        service = BackupService.from_config(_config(NOTIFY_WEBHOOK_URL='https://discord.example/api/webhooks/1/abc'))

        assert isinstance(service.thread_creator, WebhookThreadCreator)


class TestBackupServicePerformBackup:

    def test_runs_backup(self, backup_service):
        result = backup_service.perform_backup(BackupOptions(collections=['users']))

        assert result.success is True
        assert result.total_documents_processed == 10

    def test_storage_misconfiguration_reported(self, mongo_db, settings, guard):
        def storage_factory():
            raise StorageError("S3 bucket not configured")

        service = BackupService(mongo_db, settings, storage_factory=storage_factory, guard=guard)

        result = service.perform_backup(BackupOptions(is_manual=True))

        assert result.success is False
        assert result.error == 'Upload failed: S3 bucket not configured'
        assert guard.is_running() is False
