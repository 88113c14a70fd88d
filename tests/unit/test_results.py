"""
Unit tests for the run data model and aggregation (nsbackup/backup/results.py).
"""

from datetime import datetime, timezone

import pytest

from nsbackup.backup.results import (
    ALREADY_RUNNING_MESSAGE,
    NO_UPLOAD_MESSAGE,
    BackupOptions,
    CollectionOutcome,
    UploadReceipt,
    aggregate,
    rejection_result,
)


COMPLETED_AT = datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc)


class TestBackupOptions:
    """Test BackupOptions validation."""

    def test_defaults_mean_all_collections(self):
        options = BackupOptions()

        assert options.collections is None
        assert options.create_thread is False
        assert options.is_manual is False

    def test_collections_are_deduplicated_in_order(self):
        options = BackupOptions(collections=['users', 'events', 'users', ' events '])

        assert options.collections == ('users', 'events')

    @pytest.mark.parametrize("bad_name", ['', '   ', None, 42])
    def test_invalid_collection_names_rejected(self, bad_name):
        with pytest.raises(ValueError, match="non-empty strings"):
            BackupOptions(collections=['users', bad_name])

    def test_from_request_comma_separated(self):
        options = BackupOptions.from_request('users, events,,', create_thread=True, is_manual=True)

        assert options.collections == ('users', 'events')
        assert options.create_thread is True
        assert options.is_manual is True

    def test_from_request_blank_string_means_all(self):
        assert BackupOptions.from_request(' , ').collections is None

    def test_from_request_rejects_other_types(self):
        with pytest.raises(ValueError):
            BackupOptions.from_request({'users': 1})

    @pytest.mark.parametrize("flag", ['false', 'true', 0, 1, None])
    def test_from_request_rejects_non_boolean_flags(self, flag):
        with pytest.raises(ValueError, match="create_thread must be true or false"):
            BackupOptions.from_request(create_thread=flag)


class TestCollectionOutcome:
    """Test CollectionOutcome invariants."""

    def test_failed_requires_error(self):
        with pytest.raises(ValueError):
            CollectionOutcome(name='users', status='failed')

    def test_succeeded_rejects_error(self):
        with pytest.raises(ValueError):
            CollectionOutcome(name='users', status='succeeded', error='boom')

    def test_negative_count_rejected(self):
        with pytest.raises(ValueError):
            CollectionOutcome.succeeded('users', -1)

    def test_not_found_is_unattempted_failure(self):
        outcome = CollectionOutcome.not_found('missing_coll')

        assert outcome.is_failed
        assert outcome.attempted is False
        assert 'not found' in outcome.error


class TestAggregate:
    """Test aggregate() partial-success rules."""

    def _receipt(self):
        return UploadReceipt(key='backups/2024/01/a.tar.gz', url='obj://backups/2024-01-01.tar', size_bytes=10)

    def test_all_succeeded(self):
        outcomes = [CollectionOutcome.succeeded('events', 250), CollectionOutcome.succeeded('users', 10)]
        options = BackupOptions(collections=['users', 'events'], create_thread=True, is_manual=True)

        result = aggregate(outcomes, self._receipt(), 'abc123', options, ['users', 'events'], COMPLETED_AT)

        assert result.success is True
        assert result.collections_processed == ('users', 'events')
        assert result.total_documents_processed == 260
        assert result.s3_url == 'obj://backups/2024-01-01.tar'
        assert result.thread_id == 'abc123'
        assert result.error is None
        assert result.timestamp == COMPLETED_AT

    def test_outcomes_sorted_to_canonical_order(self):
        outcomes = [
            CollectionOutcome.not_found('ghost'),
            CollectionOutcome.succeeded('c', 1),
            CollectionOutcome.succeeded('a', 1),
            CollectionOutcome.succeeded('b', 1),
        ]

        result = aggregate(outcomes, self._receipt(), None, BackupOptions(), ['b', 'a', 'c', 'ghost'], COMPLETED_AT)

        assert result.collections_processed == ('b', 'a', 'c')
        assert [o.name for o in result.outcomes] == ['b', 'a', 'c', 'ghost']

    def test_failed_collection_is_partial_success(self):
        outcomes = [
            CollectionOutcome.succeeded('users', 10),
            CollectionOutcome.failed('events', 'read error'),
        ]

        result = aggregate(outcomes, self._receipt(), None, BackupOptions(), ['users', 'events'], COMPLETED_AT)

        assert result.success is False
        assert result.s3_url is not None
        assert result.collections_processed == ('users', 'events')
        assert result.total_documents_processed == 10
        assert 'events (read error)' in result.error
        assert result.failed_collections == ['events']

    def test_upload_failure_keeps_document_counts(self):
        outcomes = [CollectionOutcome.succeeded('users', 10), CollectionOutcome.succeeded('events', 250)]

        result = aggregate(
            outcomes, None, None, BackupOptions(), ['users', 'events'], COMPLETED_AT,
            upload_error='Upload failed: boom'
        )

        assert result.success is False
        assert result.s3_url is None
        assert result.total_documents_processed == 260
        assert result.error == 'Upload failed: boom'

    def test_only_missing_collections(self):
        outcomes = [CollectionOutcome.not_found('missing_coll')]
        options = BackupOptions(collections=['missing_coll'])

        result = aggregate(outcomes, None, None, options, ['missing_coll'], COMPLETED_AT)

        assert result.success is False
        assert result.collections_processed == ()
        assert result.total_documents_processed == 0
        assert result.s3_url is None
        assert result.outcomes[0].name == 'missing_coll'

    def test_empty_run_succeeds(self):
        result = aggregate([], self._receipt(), None, BackupOptions(), [], COMPLETED_AT)

        assert result.success is True
        assert result.collections_processed == ()
        assert result.s3_url == 'obj://backups/2024-01-01.tar'

    def test_missing_upload_is_failure(self):
        outcomes = [CollectionOutcome.succeeded('users', 10)]

        result = aggregate(outcomes, None, None, BackupOptions(), ['users'], COMPLETED_AT)

        assert result.success is False
        assert result.error == NO_UPLOAD_MESSAGE
        assert result.total_documents_processed == 10

    def test_thread_id_dropped_when_not_requested(self):
        result = aggregate([], None, 'abc123', BackupOptions(create_thread=False), [], COMPLETED_AT)

        assert result.thread_id is None

    def test_aggregate_is_deterministic(self):
        outcomes = [
            CollectionOutcome.succeeded('events', 250),
            CollectionOutcome.failed('users', 'boom', attempts=3),
        ]
        options = BackupOptions(collections=['users', 'events'], create_thread=True)
        args = (outcomes, self._receipt(), 'abc123', options, ['users', 'events'], COMPLETED_AT)

        first = aggregate(*args)
        second = aggregate(*args)

        assert first == second
        assert first.to_dict() == second.to_dict()

    def test_to_dict_is_json_ready(self):
        result = aggregate([CollectionOutcome.succeeded('users', 1)], self._receipt(), None,
                           BackupOptions(), ['users'], COMPLETED_AT)

        data = result.to_dict()

        assert data['timestamp'] == '2024-01-01T03:00:00+00:00'
        assert data['collections_processed'] == ['users']
        assert data['outcomes'][0]['status'] == 'succeeded'


def test_rejection_result():
    result = rejection_result(ALREADY_RUNNING_MESSAGE, BackupOptions(is_manual=True), COMPLETED_AT)

    assert result.success is False
    assert result.error == ALREADY_RUNNING_MESSAGE
    assert result.collections_processed == ()
    assert result.s3_url is None
    assert result.is_manual is True
