"""
Unit tests for engine wiring (volume_backup/engine.py).
"""

from unittest.mock import patch

import pytest

from volume_backup import engine
from volume_backup.models import BackupCycleResult


class TestRunBackupCycle:
    """Test the process-wide cycle lock."""

    @patch('volume_backup.engine.create_coordinator')
    def test_runs_and_releases_lock(self, mock_factory, app):
        mock_factory.return_value.run_backup_cycle.return_value = BackupCycleResult(schedule='nightly')

        result = engine.run_backup_cycle(app.config, 'nightly')

        assert result.schedule == 'nightly'
        mock_factory.assert_called_once_with(app.config, 'nightly')
        assert not engine._cycle_lock.locked()

    @patch('volume_backup.engine.create_coordinator')
    def test_non_blocking_call_refuses_while_cycle_runs(self, mock_factory, app):
        with engine._cycle_lock:
            with pytest.raises(engine.CycleInProgressError):
                engine.run_backup_cycle(app.config, 'nightly', blocking=False)

        mock_factory.assert_not_called()

    @patch('volume_backup.engine.create_coordinator')
    def test_lock_released_when_cycle_fails(self, mock_factory, app):
        mock_factory.return_value.run_backup_cycle.side_effect = RuntimeError('daemon unreachable')

        with pytest.raises(RuntimeError):
            engine.run_backup_cycle(app.config, 'nightly')

        assert not engine._cycle_lock.locked()
