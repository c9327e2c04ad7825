"""
Ephemeral task runner.

Runs a short-lived helper container that mounts a volume (and optionally a
host directory) and executes one command to completion. Archival, extraction
and retention sweeps all go through TaskRunner.run_in_mounted_context().
"""

import logging
import random
import string
from typing import List, Optional

from ..labels import DEFAULT_LABEL_PREFIX, task_labels
from ..runtime import RuntimeFault, WaitTimeoutError


logger = logging.getLogger(__name__)

VOLUME_MOUNT_PATH = '/data'
HOST_MOUNT_PATH = '/backups'
DEFAULT_HELPER_IMAGE = 'busybox:latest'


class TaskError(Exception):
    """Base class for helper container failures."""
    pass


class TaskExitError(TaskError):
    """Raised when the helper process exits with a nonzero code."""

    def __init__(self, exit_code: int, container_id: str, container_name: str):
        self.exit_code = exit_code
        self.container_id = container_id
        self.container_name = container_name
        super().__init__(
            f"Helper container {container_name} ({container_id[:12]}) exited with code {exit_code}"
        )


class TaskInfrastructureError(TaskError):
    """Raised when the runtime fails independently of the helper process."""
    pass


class TaskTimeoutError(TaskInfrastructureError):
    """Raised when the helper did not finish before the deadline."""
    pass


def _random_suffix(length: int = 5) -> str:
    return ''.join(random.choice(string.ascii_letters) for _ in range(length))


class TaskRunner:
    """
    Create, run, wait and conditionally clean up helper containers.

    A helper that exits with code 0 is removed. A helper that exits nonzero is
    left in place so operators can inspect its logs. A helper that fails to start
    or exceeds the deadline is force removed.
    """

    def __init__(self, runtime, image: str = DEFAULT_HELPER_IMAGE,
                 timeout: Optional[float] = 3600,
                 label_prefix: str = DEFAULT_LABEL_PREFIX):
        """
        Initialize task runner.

        Args:
            runtime: DockerRuntime (or compatible) instance
            image: Minimal base image for helper containers
            timeout: Deadline in seconds for one helper, None waits forever
            label_prefix: Prefix for the task label stamped on helpers
        """
        self.runtime = runtime
        self.image = image
        self.timeout = timeout
        self.label_prefix = label_prefix

    def ensure_image(self):
        try:
            self.runtime.ensure_image(self.image)
        except RuntimeFault as e:
            raise TaskInfrastructureError(str(e)) from e

    def run_in_mounted_context(self, volume_name: str, host_path: Optional[str],
                               command: List[str]):
        """
        Run a command in a helper container with the volume mounted.

        The volume is mounted read-write at /data. When host_path is given it
        is bind mounted read-write at /backups.

        Args:
            volume_name: Named volume to mount
            host_path: Host directory to bind mount, or None
            command: Command executed by the helper

        Raises:
            TaskExitError: If the command exits nonzero (helper is kept)
            TaskTimeoutError: If the deadline expires (helper is force removed)
            TaskInfrastructureError: If the runtime fails to create/start/wait
        """
        name = f"backup-{volume_name}-{_random_suffix()}"
        logger.debug(f"Starting helper {name}: {' '.join(command)}")

        try:
            container_id = self.runtime.create_container(
                self.image,
                command=command,
                name=name,
                volume_name=volume_name,
                host_path=host_path,
                labels=task_labels(self.label_prefix),
                volume_target=VOLUME_MOUNT_PATH,
                host_target=HOST_MOUNT_PATH,
            )
        except RuntimeFault as e:
            raise TaskInfrastructureError(f"Could not create helper for volume {volume_name}: {e}") from e

        try:
            self.runtime.start_container(container_id)
        except RuntimeFault as e:
            # Never ran, nothing to inspect
            self._force_remove(container_id, name)
            raise TaskInfrastructureError(f"Helper {name} for volume {volume_name} failed to start: {e}") from e

        try:
            exit_code = self.runtime.wait_container(container_id, timeout=self.timeout)
        except WaitTimeoutError as e:
            self._force_remove(container_id, name)
            raise TaskTimeoutError(f"Helper {name} for volume {volume_name} timed out: {e}") from e
        except RuntimeFault as e:
            raise TaskInfrastructureError(f"Helper {name} for volume {volume_name} failed to run: {e}") from e

        if exit_code != 0:
            logger.error(f"Helper {name} exited with code {exit_code}, leaving it for inspection")
            raise TaskExitError(exit_code, container_id, name)

        try:
            self.runtime.remove_container(container_id)
        except RuntimeFault as e:
            raise TaskInfrastructureError(f"Helper {name} succeeded but could not be removed: {e}") from e
        logger.debug(f"Helper {name} completed")

    def _force_remove(self, container_id: str, name: str):
        try:
            self.runtime.remove_container(container_id, force=True)
        except RuntimeFault as e:
            logger.error(f"Failed to force remove helper {name}: {e}")
