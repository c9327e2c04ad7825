"""
Shared pytest fixtures for docker-volume-backup tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Schedule configuration pointing at a temporary host directory
- A fake container runtime and a fake helper runner
- Mock fixtures for external services (S3)
"""

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from volume_backup import create_app
from volume_backup.backup.runner import HOST_MOUNT_PATH
from volume_backup.labels import label_key, parse_backup_labels
from volume_backup.models import Mount, MountKind, RunState, Workload
from volume_backup.schedules import parse_config


class FakeTaskRunner:
    """
    Stands in for TaskRunner without a docker daemon.

    Archive commands (tar -czf /backups/...) write a small file into the bind
    mounted host directory, like the real helper would. Every call is recorded.
    Volumes listed in `failures` raise the mapped exception instead.
    """

    def __init__(self, events=None):
        self.calls = []
        self.failures = {}
        self.events = events if events is not None else []
        self.ensure_image = MagicMock()

    def run_in_mounted_context(self, volume_name, host_path, command):
        self.calls.append((volume_name, host_path, list(command)))
        self.events.append(('task', volume_name))
        if volume_name in self.failures:
            raise self.failures[volume_name]

        if command[:2] == ['tar', '-czf']:
            relative = command[2][len(HOST_MOUNT_PATH) + 1:]
            target = Path(host_path) / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(f"archive of {volume_name}".encode())

    @property
    def archived_volumes(self):
        return [volume for volume, _, command in self.calls if command[:2] == ['tar', '-czf']]


def make_archive(directory, file_name, mtime=None, content=b'archive'):
    """Create an archive file on disk, optionally with a fixed modification time."""
    path = Path(directory) / file_name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def backup_dir(tmp_path):
    """Host directory used by the filesystem destination."""
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def backup_config(backup_dir):
    """
    Parsed schedule configuration.

    nightly: one filesystem destination named 'local' (keeps everything)
    weekly: schedule_key 'weekly', filesystem destination with newest-only retention
    """
    return parse_config({
        'periodic_backups': [
            {
                'name': 'nightly',
                'schedule': '0 2 * * *',
                'backups': [
                    {
                        'name': 'local',
                        'type': 'filesystem',
                        'filesystem_options': {'host_path': str(backup_dir)},
                    }
                ],
            },
            {
                'name': 'weekly',
                'schedule': '0 3 * * 0',
                'schedule_key': 'weekly',
                'backups': [
                    {
                        'name': 'local',
                        'type': 'filesystem',
                        'filesystem_options': {'host_path': str(backup_dir)},
                        'retention': 'keep_newest_only',
                    }
                ],
            },
        ]
    })


@pytest.fixture(scope='function')
def app(backup_config, tmp_path):
    """
    Create Flask app with test configuration.

    The scheduler is disabled and the schedule configuration is injected
    directly instead of being read from YAML.
    """
    app = create_app('testing', config_overrides={
        'BACKUP_CONFIG': backup_config,
        'LOG_DIR': str(tmp_path / 'logs'),
    })

    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def events():
    """Shared, ordered record of runtime and helper activity."""
    return []


@pytest.fixture
def fake_runtime(events):
    """
    MagicMock container runtime.

    stop/start calls are appended to `events` so tests can check ordering.
    """
    runtime = MagicMock()
    runtime.list_workloads.return_value = []
    runtime.ensure_volume.return_value = False
    runtime.stop.side_effect = lambda workload: events.append(('stop', workload.name))
    runtime.start.side_effect = lambda workload: events.append(('start', workload.name))
    return runtime


@pytest.fixture
def task_runner(events):
    """Fake helper runner writing archives into host directories."""
    return FakeTaskRunner(events)


@pytest.fixture
def make_workload():
    """
    Factory for Workload values.

    Usage:
        make_workload('db', volumes=['db-data'], binds=['/etc/db'],
                      labels={'volumes': 'db-data'})
    Label keys are given without the prefix; enabled defaults to 'true'.
    """
    counter = {'n': 0}

    def _make(name, volumes=(), binds=(), labels=None, running=True, enabled=True):
        counter['n'] += 1
        raw = {}
        if enabled:
            raw[label_key('enabled')] = 'true'
        for key, value in (labels or {}).items():
            raw[label_key(key)] = value

        mounts = tuple(Mount(v, MountKind.VOLUME, f"/var/lib/{v}") for v in volumes)
        mounts += tuple(Mount(b, MountKind.BIND, f"/mnt{b}") for b in binds)
        return Workload(
            id=f"{counter['n']:02d}" + 'a' * 62,
            name=name,
            state=RunState.RUNNING if running else RunState.STOPPED,
            mounts=mounts,
            labels=raw,
            backup=parse_backup_labels(raw),
        )

    return _make


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('volume_backup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


@pytest.fixture
def archive_factory():
    """make_archive(directory, file_name, mtime=None, content=b'archive')"""
    return make_archive
