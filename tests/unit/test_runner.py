"""
Unit tests for the ephemeral task runner (volume_backup/backup/runner.py).

Tests helper lifecycle: removal on success, retention on failure, forced
removal on timeout.
"""

import re
from unittest.mock import MagicMock

import pytest

from volume_backup.backup.runner import (
    TaskExitError,
    TaskInfrastructureError,
    TaskRunner,
    TaskTimeoutError
)
from volume_backup.runtime import RuntimeFault, WaitTimeoutError


HELPER_ID = 'e' * 64


@pytest.fixture
def runtime():
    runtime = MagicMock()
    runtime.create_container.return_value = HELPER_ID
    runtime.wait_container.return_value = 0
    return runtime


@pytest.fixture
def task_runner(runtime):
    return TaskRunner(runtime, image='busybox:1.36', timeout=60)


class TestRunInMountedContext:
    """Test TaskRunner.run_in_mounted_context()."""

    def test_success_removes_helper(self, task_runner, runtime):
        task_runner.run_in_mounted_context('db-data', '/srv/backups', ['tar', '-czf', '/backups/x.tar.gz', '/data'])

        args, kwargs = runtime.create_container.call_args
        assert args[0] == 'busybox:1.36'
        assert kwargs['command'] == ['tar', '-czf', '/backups/x.tar.gz', '/data']
        assert kwargs['volume_name'] == 'db-data'
        assert kwargs['host_path'] == '/srv/backups'
        assert kwargs['labels'] == {'docker-volume-backup.type': 'task'}
        assert kwargs['volume_target'] == '/data'
        assert kwargs['host_target'] == '/backups'
        assert re.match(r'^backup-db-data-[A-Za-z]{5}$', kwargs['name'])

        runtime.start_container.assert_called_once_with(HELPER_ID)
        runtime.wait_container.assert_called_once_with(HELPER_ID, timeout=60)
        runtime.remove_container.assert_called_once_with(HELPER_ID)

    def test_nonzero_exit_keeps_helper(self, task_runner, runtime):
        runtime.wait_container.return_value = 2

        with pytest.raises(TaskExitError) as exc_info:
            task_runner.run_in_mounted_context('db-data', None, ['false'])

        assert exc_info.value.exit_code == 2
        assert exc_info.value.container_id == HELPER_ID
        runtime.remove_container.assert_not_called()

    def test_timeout_force_removes_helper(self, task_runner, runtime):
        runtime.wait_container.side_effect = WaitTimeoutError('deadline')

        with pytest.raises(TaskTimeoutError):
            task_runner.run_in_mounted_context('db-data', None, ['sleep', '1000'])

        runtime.remove_container.assert_called_once_with(HELPER_ID, force=True)

    def test_timeout_is_an_infrastructure_error(self, task_runner, runtime):
        runtime.wait_container.side_effect = WaitTimeoutError('deadline')
        runtime.remove_container.side_effect = RuntimeFault('cannot remove')

        with pytest.raises(TaskInfrastructureError):
            task_runner.run_in_mounted_context('db-data', None, ['sleep', '1000'])

    def test_create_failure(self, task_runner, runtime):
        runtime.create_container.side_effect = RuntimeFault('no such volume')

        with pytest.raises(TaskInfrastructureError, match='no such volume'):
            task_runner.run_in_mounted_context('db-data', None, ['true'])

        runtime.start_container.assert_not_called()

    def test_start_failure_removes_helper(self, task_runner, runtime):
        runtime.start_container.side_effect = RuntimeFault('port in use')

        with pytest.raises(TaskInfrastructureError, match='failed to start'):
            task_runner.run_in_mounted_context('db-data', None, ['true'])

        runtime.remove_container.assert_called_once_with(HELPER_ID, force=True)
        runtime.wait_container.assert_not_called()

    def test_start_failure_survives_failed_removal(self, task_runner, runtime):
        runtime.start_container.side_effect = RuntimeFault('port in use')
        runtime.remove_container.side_effect = RuntimeFault('daemon gone')

        with pytest.raises(TaskInfrastructureError, match='port in use'):
            task_runner.run_in_mounted_context('db-data', None, ['true'])

    def test_unique_helper_names(self, task_runner, runtime):
        for _ in range(5):
            task_runner.run_in_mounted_context('db-data', None, ['true'])

        names = {c[1]['name'] for c in runtime.create_container.call_args_list}
        assert len(names) > 1


class TestEnsureImage:
    """Test helper image preparation."""

    def test_ensure_image_delegates(self, task_runner, runtime):
        task_runner.ensure_image()

        runtime.ensure_image.assert_called_once_with('busybox:1.36')

    def test_ensure_image_failure(self, task_runner, runtime):
        runtime.ensure_image.side_effect = RuntimeFault('pull failed')

        with pytest.raises(TaskInfrastructureError, match='pull failed'):
            task_runner.ensure_image()
