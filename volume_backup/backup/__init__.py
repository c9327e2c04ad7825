"""
Backup module for docker-volume-backup.

This module handles the core backup functionality including:
- Helper container execution
- Destinations (filesystem and S3)
- Workload stop/backup/restart orchestration
- Retention policy enforcement
- Restores
"""

from .coordinator import BackupCoordinator
from .destinations import FilesystemDestination, ObjectStoreDestination, create_destination
from .restore import RestoreCoordinator
from .retention import RetentionManager
from .runner import TaskRunner
from .storage import S3Storage

__all__ = [
    'BackupCoordinator',
    'FilesystemDestination',
    'ObjectStoreDestination',
    'create_destination',
    'RestoreCoordinator',
    'RetentionManager',
    'TaskRunner',
    'S3Storage'
]
