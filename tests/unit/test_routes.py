"""
Unit tests for the HTTP API (volume_backup/routes/).

Engine entry points are patched where a docker daemon would be needed;
snapshot listings run against real files in a temporary directory.
"""

import threading
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from volume_backup.backup.restore import RestoreError, SnapshotNotFoundError
from volume_backup.models import BackupCycleResult, RestoreRecord, SnapshotArtifact, WorkloadOutcome
from volume_backup.runtime import DiscoveryError


DAY = 24 * 3600


def record(volume, reference):
    return RestoreRecord(
        volume_name=volume,
        artifact=SnapshotArtifact(
            volume_name=volume,
            destination='filesystem',
            reference=reference,
            created_at=datetime(2024, 7, 4, tzinfo=timezone.utc)
        ),
        restored_at=datetime(2024, 7, 5, tzinfo=timezone.utc)
    )


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestBackupRoutes:
    """Test /api/backups."""

    @patch('volume_backup.routes.backup_routes.run_backup_cycle')
    def test_run_synchronously_without_scheduler(self, mock_run, client, app):
        mock_run.return_value = BackupCycleResult(
            schedule='weekly', outcomes=[WorkloadOutcome('id', 'db')]
        )

        response = client.post('/api/backups/run', json={'schedule': 'weekly'})

        assert response.status_code == 200
        data = response.get_json()
        assert data['schedule'] == 'weekly'
        assert data['succeeded'] is True
        assert data['outcomes'][0]['workload_name'] == 'db'
        mock_run.assert_called_once_with(app.config, 'weekly', blocking=False)

    @patch('volume_backup.routes.backup_routes.run_backup_cycle')
    def test_run_defaults_to_first_schedule(self, mock_run, client, app):
        mock_run.return_value = BackupCycleResult(schedule='nightly')

        response = client.post('/api/backups/run')

        assert response.status_code == 200
        mock_run.assert_called_once_with(app.config, 'nightly', blocking=False)

    @patch('volume_backup.routes.backup_routes.trigger_backup_now')
    @patch('volume_backup.routes.backup_routes.is_scheduler_running', return_value=True)
    def test_run_is_queued_when_scheduler_runs(self, mock_running, mock_trigger, client):
        response = client.post('/api/backups/run', json={'schedule': 'nightly'})

        assert response.status_code == 202
        assert response.get_json()['schedule'] == 'nightly'
        mock_trigger.assert_called_once_with('nightly')

    def test_run_unknown_schedule(self, client):
        response = client.post('/api/backups/run', json={'schedule': 'hourly'})

        assert response.status_code == 400
        assert 'hourly' in response.get_json()['error']

    @patch('volume_backup.routes.backup_routes.run_backup_cycle')
    def test_run_discovery_failure(self, mock_run, client):
        mock_run.side_effect = DiscoveryError('daemon unreachable')

        response = client.post('/api/backups/run', json={})

        assert response.status_code == 500
        assert 'daemon unreachable' in response.get_json()['error']

    def test_concurrent_runs_do_not_overlap(self, app):
        """A second request while a cycle is running gets 409, not a second cycle."""
        entered = threading.Event()
        release = threading.Event()
        state = {'active': 0, 'max': 0}

        def slow_cycle():
            state['active'] += 1
            state['max'] = max(state['max'], state['active'])
            entered.set()
            release.wait(5)
            state['active'] -= 1
            return BackupCycleResult(schedule='nightly')

        responses = {}

        def post(key):
            responses[key] = app.test_client().post('/api/backups/run', json={})

        with patch('volume_backup.engine.create_coordinator') as mock_factory:
            mock_factory.return_value.run_backup_cycle.side_effect = slow_cycle

            first = threading.Thread(target=post, args=('first',))
            first.start()
            assert entered.wait(5)

            post('second')
            release.set()
            first.join(5)

        assert responses['second'].status_code == 409
        assert 'already in progress' in responses['second'].get_json()['error']
        assert responses['first'].status_code == 200
        assert state['max'] == 1
        assert mock_factory.return_value.run_backup_cycle.call_count == 1

    def test_run_after_previous_cycle_finished(self, client):
        with patch('volume_backup.engine.create_coordinator') as mock_factory:
            mock_factory.return_value.run_backup_cycle.return_value = BackupCycleResult(schedule='nightly')

            assert client.post('/api/backups/run').status_code == 200
            assert client.post('/api/backups/run').status_code == 200

    def test_list_schedules(self, client):
        response = client.get('/api/backups/schedules')

        assert response.status_code == 200
        data = response.get_json()
        assert data['scheduler_running'] is False
        assert [s['name'] for s in data['schedules']] == ['nightly', 'weekly']
        assert data['schedules'][1]['schedule_key'] == 'weekly'
        assert data['schedules'][1]['destinations'][0]['retention'] == 'keep newest only'
        assert data['jobs'] == []


class TestSnapshotRoutes:
    """Test /api/snapshots."""

    @pytest.fixture(autouse=True)
    def snapshots(self, backup_dir, archive_factory):
        now = time.time()
        archive_factory(backup_dir, 'db-3-7-2024.tar.gz', mtime=now - 2 * DAY)
        archive_factory(backup_dir, 'db-4-7-2024.tar.gz', mtime=now - DAY)
        archive_factory(backup_dir, 'cache-1-1-2023.tar.gz', mtime=now - 400 * DAY)

    def test_list_all(self, client):
        response = client.get('/api/snapshots')

        assert response.status_code == 200
        data = response.get_json()
        assert data['schedule'] == 'nightly'
        assert data['destination'] == 'local'
        assert data['count'] == 3
        assert data['snapshots'][0]['file_name'] == 'db-4-7-2024.tar.gz'

    def test_newest_only(self, client):
        response = client.get('/api/snapshots?newest_only=true')

        names = [s['file_name'] for s in response.get_json()['snapshots']]
        assert names == ['db-4-7-2024.tar.gz', 'cache-1-1-2023.tar.gz']

    def test_volume_filter(self, client):
        response = client.get('/api/snapshots?volume=cache&schedule=weekly')

        data = response.get_json()
        assert data['schedule'] == 'weekly'
        assert [s['volume_name'] for s in data['snapshots']] == ['cache']

    def test_unknown_destination(self, client):
        response = client.get('/api/snapshots?destination=tape')

        assert response.status_code == 400


class TestRestoreRoutes:
    """Test /api/restore."""

    @pytest.fixture
    def coordinator(self):
        with patch('volume_backup.routes.restore_routes.create_restore_coordinator') as factory:
            coordinator = MagicMock()
            factory.return_value = coordinator
            coordinator.factory = factory
            yield coordinator

    def test_restore_many(self, client, app, coordinator):
        coordinator.restore_many.return_value = [record('db', '/srv/db-4-7-2024.tar.gz')]

        response = client.post('/api/restore', json={
            'schedule': 'nightly', 'destination': 'local', 'volumes': ['db', ' db ']
        })

        assert response.status_code == 200
        assert response.get_json()['restored'] == [{
            'volume_name': 'db',
            'restored_from': '/srv/db-4-7-2024.tar.gz',
            'destination': 'filesystem',
            'restore_time': '2024-07-05T00:00:00+00:00'
        }]
        coordinator.restore_many.assert_called_once_with(['db'])
        coordinator.factory.assert_called_once_with(
            app.config, schedule_name='nightly', destination_name='local'
        )

    def test_restore_all_when_no_volumes(self, client, coordinator):
        coordinator.restore_many.return_value = []

        response = client.post('/api/restore', json={})

        assert response.status_code == 200
        coordinator.restore_many.assert_called_once_with([])

    def test_restore_explicit_artifact(self, client, coordinator):
        coordinator.restore.return_value = record('db', 'db-3-7-2024.tar.gz')

        response = client.post('/api/restore', json={'volumes': 'db', 'artifact': 'db-3-7-2024.tar.gz'})

        assert response.status_code == 200
        coordinator.restore.assert_called_once_with('db', 'db-3-7-2024.tar.gz')

    def test_explicit_artifact_needs_one_volume(self, client, coordinator):
        response = client.post('/api/restore', json={'volumes': ['db', 'cache'], 'artifact': 'x.tar.gz'})

        assert response.status_code == 400
        coordinator.restore.assert_not_called()

    def test_snapshot_not_found(self, client, coordinator):
        coordinator.restore_many.side_effect = SnapshotNotFoundError('No snapshots found for volume(s): web')

        response = client.post('/api/restore', json={'volumes': ['web']})

        assert response.status_code == 404
        assert 'web' in response.get_json()['error']

    def test_restore_failure(self, client, coordinator):
        coordinator.restore_many.side_effect = RestoreError('extraction failed', 'db')

        response = client.post('/api/restore', json={'volumes': ['db']})

        assert response.status_code == 500

    def test_invalid_volumes(self, client, coordinator):
        response = client.post('/api/restore', json={'volumes': {'db': True}})

        assert response.status_code == 400

    @patch('volume_backup.routes.restore_routes.create_archive_restorer')
    def test_volume_from_archive(self, mock_factory, client):
        mock_factory.return_value.create_volume_from_archive.return_value = record('app-data', '/srv/seed.tar.gz')

        response = client.post('/api/restore/volume-from-archive', json={
            'archive': '/srv/seed.tar.gz', 'volume': 'app-data'
        })

        assert response.status_code == 200
        assert response.get_json()['volume_name'] == 'app-data'
        mock_factory.return_value.create_volume_from_archive.assert_called_once_with('/srv/seed.tar.gz', 'app-data')

    def test_volume_from_archive_requires_fields(self, client):
        assert client.post('/api/restore/volume-from-archive', json={'volume': 'x'}).status_code == 400
        assert client.post('/api/restore/volume-from-archive', json={'archive': '/x'}).status_code == 400

    def test_volume_from_missing_archive(self, client, tmp_path):
        response = client.post('/api/restore/volume-from-archive', json={
            'archive': str(tmp_path / 'missing.tar.gz'), 'volume': 'app-data'
        })

        assert response.status_code == 404
