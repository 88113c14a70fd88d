"""
Unit tests for backup routes (nsbackup/routes/backup_routes.py).
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from nsbackup.backup.results import ALREADY_RUNNING_MESSAGE, BackupOptions, rejection_result

AUTH = {'Authorization': 'Bearer test-token'}


class TestTriggerBackup:
    """Test POST /api/backup."""

    def test_requires_token(self, client, recording_storage):
        response = client.post('/api/backup', json={})

        assert response.status_code == 403
        assert response.get_json()['precondition'] == 'RequireApiToken'
        assert recording_storage.calls == []

    def test_wrong_token(self, client):
        response = client.post('/api/backup', json={}, headers={'Authorization': 'Bearer nope'})

        assert response.status_code == 403

    def test_non_ascii_token_refused(self, client, recording_storage):
        response = client.post('/api/backup', json={}, headers={'X-Backup-Token': 'café'})

        assert response.status_code == 403
        assert response.get_json()['precondition'] == 'RequireApiToken'
        assert recording_storage.calls == []

    def test_manual_backup(self, client, recording_storage):
        response = client.post('/api/backup', json={'collections': ['users', 'events']}, headers=AUTH)

        assert response.status_code == 200
        data = response.get_json()
        assert data['success'] is True
        assert data['collections_processed'] == ['users', 'events']
        assert data['total_documents_processed'] == 260
        assert data['s3_url'] == 'obj://backups/2024-01-01.tar'
        assert data['is_manual'] is True
        assert '-manual-' in recording_storage.calls[0][1]

    def test_token_header_alternative(self, client):
        response = client.post('/api/backup', json={'collections': 'users'}, headers={'X-Backup-Token': 'test-token'})

        assert response.status_code == 200
        assert response.get_json()['collections_processed'] == ['users']

    def test_invalid_collections(self, client):
        response = client.post('/api/backup', json={'collections': ['users', '']}, headers=AUTH)

        assert response.status_code == 400

    @pytest.mark.parametrize("body", [['users'], 'users', 42, True])
    def test_body_must_be_object(self, client, recording_storage, body):
        response = client.post('/api/backup', json=body, headers=AUTH)

        assert response.status_code == 400
        assert response.get_json()['error'] == 'Request body must be a JSON object'
        assert recording_storage.calls == []

    def test_string_create_thread_rejected(self, client, backup_service, recording_storage):
        response = client.post('/api/backup', json={'create_thread': 'false'}, headers=AUTH)

        assert response.status_code == 400
        assert 'create_thread' in response.get_json()['error']
        assert recording_storage.calls == []

    def test_create_thread_false(self, client, backup_service):
        with patch.object(backup_service, 'perform_backup', wraps=backup_service.perform_backup) as mock_run:
            response = client.post('/api/backup', json={'create_thread': False}, headers=AUTH)

        assert response.status_code == 200
        assert mock_run.call_args[0][0] == BackupOptions(create_thread=False, is_manual=True)

    def test_missing_collection_reports_failure(self, client):
        response = client.post('/api/backup', json={'collections': ['missing_coll']}, headers=AUTH)

        assert response.status_code == 500
        data = response.get_json()
        assert data['success'] is False
        assert data['collections_processed'] == []
        assert 'missing_coll' in data['error']

    def test_rejected_while_running(self, client, guard, recording_storage):
        guard.try_admit()

        response = client.post('/api/backup', json={}, headers=AUTH)

        assert response.status_code == 409
        assert response.get_json()['precondition'] == 'BackupRateLimit'
        assert recording_storage.calls == []

    def test_lost_admission_race_is_conflict(self, client, backup_service):
        rejected = rejection_result(ALREADY_RUNNING_MESSAGE, BackupOptions(is_manual=True), datetime.now(timezone.utc))

        with patch.object(backup_service, 'perform_backup', return_value=rejected):
            response = client.post('/api/backup', json={}, headers=AUTH)

        assert response.status_code == 409
        assert response.get_json()['error'] == ALREADY_RUNNING_MESSAGE

    def test_channel_restriction(self, app, client):
        app.config['BACKUP_CHANNEL_IDS'] = ['backups']

        refused = client.post('/api/backup', json={'channel': 'general'}, headers=AUTH)
        allowed = client.post('/api/backup', json={'channel': 'backups'}, headers=AUTH)

        assert refused.status_code == 403
        assert refused.get_json()['precondition'] == 'BackupChannelOnly'
        assert allowed.status_code == 200


class TestBackupStatus:
    """Test GET /api/backup/status."""

    def test_idle_status(self, client):
        response = client.get('/api/backup/status')

        assert response.status_code == 200
        data = response.get_json()
        assert data['running'] is False
        assert data['database'] == 'nightscout'
        assert data['scheduler_status'] == 'stopped'
        assert data['next_scheduled_run'] is None

    def test_running_status(self, client, guard):
        guard.try_admit()

        data = client.get('/api/backup/status').get_json()

        assert data['running'] is True
        assert data['started_at'] is not None

    def test_last_completed_after_backup(self, client):
        client.post('/api/backup', json={}, headers=AUTH)

        data = client.get('/api/backup/status').get_json()

        assert data['running'] is False
        assert data['last_completed_at'] is not None


def test_health(client):
    response = client.get('/health')

    assert response.status_code == 200
    assert response.get_json() == {'status': 'healthy'}
