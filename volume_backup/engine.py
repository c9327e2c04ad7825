"""
Wiring of the backup engine from application configuration.

Builds the runtime adapter, task runner, destinations and coordinators for a
named schedule. Used by the scheduler, the HTTP routes and the CLI.
"""

import os
import threading
from typing import Mapping, Optional

from .backup.coordinator import BackupCoordinator
from .backup.destinations import FilesystemDestination, create_destination, create_destinations
from .backup.restore import RestoreCoordinator
from .backup.runner import TaskRunner
from .runtime import DockerRuntime
from .schedules import BackupConfig, load_config


_cycle_lock = threading.Lock()


class CycleInProgressError(Exception):
    """Raised when a non-blocking cycle request finds another cycle running."""
    pass


def get_backup_config(app_config: Mapping) -> BackupConfig:
    """
    Load the schedules referenced by the application configuration.

    An already parsed BackupConfig stored under BACKUP_CONFIG wins over the
    YAML file at BACKUP_CONFIG_PATH.
    """
    backup_config = app_config.get('BACKUP_CONFIG')
    if backup_config is not None:
        return backup_config
    return load_config(app_config['BACKUP_CONFIG_PATH'])


def create_runtime(app_config: Mapping) -> DockerRuntime:
    return DockerRuntime(
        label_prefix=app_config['LABEL_PREFIX'],
        stop_timeout=app_config['STOP_TIMEOUT_SECONDS'],
    )


def create_runner(app_config: Mapping, runtime) -> TaskRunner:
    return TaskRunner(
        runtime,
        image=app_config['HELPER_IMAGE'],
        timeout=app_config['HELPER_TIMEOUT_SECONDS'] or None,
        label_prefix=app_config['LABEL_PREFIX'],
    )


def create_coordinator(app_config: Mapping, schedule_name: Optional[str] = None) -> BackupCoordinator:
    """
    Build the coordinator for one schedule.

    Raises:
        ConfigError: If the schedule does not exist
        StorageError: If an S3 destination cannot be initialized
    """
    schedule = get_backup_config(app_config).get(schedule_name)
    runtime = create_runtime(app_config)
    return BackupCoordinator(
        runtime,
        create_runner(app_config, runtime),
        create_destinations(schedule),
        schedule_name=schedule.name,
        schedule_key=schedule.schedule_key,
    )


def create_restore_coordinator(app_config: Mapping, schedule_name: Optional[str] = None,
                               destination_name: Optional[str] = None) -> RestoreCoordinator:
    """Build a restore coordinator reading from one destination of a schedule."""
    schedule = get_backup_config(app_config).get(schedule_name)
    runtime = create_runtime(app_config)
    return RestoreCoordinator(
        runtime,
        create_runner(app_config, runtime),
        create_destination(schedule.destination(destination_name)),
    )


def run_backup_cycle(app_config: Mapping, schedule_name: Optional[str] = None, blocking: bool = True):
    """
    Run one full cycle of a schedule.

    Cycles never overlap within a process: scheduler jobs, HTTP requests and
    CLI invocations all take the same lock.

    Args:
        app_config: Application configuration
        schedule_name: Schedule to run (default: first configured)
        blocking: Wait for a cycle already in progress instead of failing

    Raises:
        CycleInProgressError: If blocking is False and another cycle is running
    """
    if not _cycle_lock.acquire(blocking=blocking):
        raise CycleInProgressError("A backup cycle is already in progress")
    try:
        return create_coordinator(app_config, schedule_name).run_backup_cycle()
    finally:
        _cycle_lock.release()


def create_archive_restorer(app_config: Mapping, archive_path: str) -> RestoreCoordinator:
    """Build a restore coordinator for an arbitrary archive on the host; no schedule needed."""
    runtime = create_runtime(app_config)
    return RestoreCoordinator(
        runtime,
        create_runner(app_config, runtime),
        FilesystemDestination(os.path.dirname(os.path.abspath(archive_path))),
    )
