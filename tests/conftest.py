"""
Shared pytest fixtures for nsbackup tests.

This module provides fixtures for:
- In-memory MongoDB (mongomock) seeded with test collections
- Mocked S3 (moto) and an S3Storage bound to it
- Backup settings, run guard and a recording fake uploader
- Flask app and test client
"""

import tarfile
from unittest.mock import MagicMock

import boto3
import mongomock
import pytest
from moto import mock_aws

from nsbackup import create_app
from nsbackup.backup.executor import BackupSettings
from nsbackup.backup.guard import RunGuard, reset_guards
from nsbackup.backup.results import UploadReceipt
from nsbackup.backup.storage import S3Storage
from nsbackup.services import BackupService


@pytest.fixture(autouse=True)
def _reset_guards():
    """Each test starts with no registered run guards."""
    reset_guards()
    yield
    reset_guards()


@pytest.fixture
def mongo_db():
    """
    mongomock database seeded with:
    - users: 10 documents
    - events: 250 documents
    """
    client = mongomock.MongoClient()
    database = client['nightscout']
    database['users'].insert_many([{'name': f'user{i}', 'index': i} for i in range(10)])
    database['events'].insert_many([{'type': 'sgv', 'value': 100 + i} for i in range(250)])
    return database


@pytest.fixture
def empty_db():
    """mongomock database without collections."""
    return mongomock.MongoClient()['empty']


@pytest.fixture
def settings(tmp_path):
    """Backup settings tuned for fast tests."""
    return BackupSettings(
        database_name='nightscout',
        batch_size=100,
        export_workers=2,
        collection_retries=2,
        collection_retry_delay=0,
        s3_prefix='backups',
        temp_dir=str(tmp_path / 'temp')
    )


@pytest.fixture
def guard():
    return RunGuard('nightscout')


class RecordingStorage:
    """
    Fake uploader that records archive members at upload time.

    The executor deletes the archive after the run, so members and their line
    counts are captured while the file still exists.
    """

    def __init__(self, url='obj://backups/2024-01-01.tar', error=None):
        self.url = url
        self.error = error
        self.calls = []
        self.members = {}

    def upload(self, local_path, key, cancellation_check=None):
        self.calls.append((local_path, key))
        if cancellation_check:
            cancellation_check()
        if self.error:
            raise self.error

        with tarfile.open(local_path, 'r:*') as tar:
            for member in tar.getmembers():
                content = tar.extractfile(member).read().decode('utf-8')
                self.members[member.name] = content.splitlines()

        return UploadReceipt(key=key, url=self.url, size_bytes=123)


@pytest.fixture
def recording_storage():
    return RecordingStorage()


@pytest.fixture
def make_storage():
    """Factory for RecordingStorage with a custom url or upload error."""
    return RecordingStorage


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    """S3Storage against the moto bucket, with sleeps recorded instead of taken."""
    sleeps = []
    storage = S3Storage(
        bucket_name='test-bucket',
        region='us-east-1',
        access_key='testing',
        secret_key='testing',
        backoff_seconds=1.0,
        sleep=sleeps.append
    )
    storage.sleeps = sleeps
    return storage


@pytest.fixture
def thread_creator():
    creator = MagicMock()
    creator.create_thread.return_value = 'abc123'
    return creator


@pytest.fixture
def backup_service(mongo_db, settings, recording_storage, guard):
    return BackupService(mongo_db, settings, storage=recording_storage, guard=guard)


@pytest.fixture
def app(backup_service, tmp_path, monkeypatch):
    """Flask app with test configuration and an in-memory backup service."""
    monkeypatch.setenv('LOG_DIR', str(tmp_path / 'logs'))
    app = create_app('testing', backup_service=backup_service)
    return app


@pytest.fixture
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()
