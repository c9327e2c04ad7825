"""
Container runtime adapter backed by the Docker Engine API.

Supports:
- Discovery of opted-in containers and their mounts
- Stopping and starting workloads around the backup window
- Primitive helper-container operations used by the task runner
- Volume and image housekeeping
"""

import logging
from typing import Dict, List, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.types import Mount as DockerMount
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from .labels import DEFAULT_LABEL_PREFIX, enabled_filter, is_task, parse_backup_labels
from .models import Mount, MountKind, RunState, Workload


logger = logging.getLogger(__name__)

# Docker statuses that are stopped before archiving and started again afterwards
ACTIVE_STATUSES = ('running', 'restarting')
INACTIVE_STATUSES = ('exited', 'created', 'dead')


class RuntimeFault(Exception):
    """Raised when the container runtime cannot complete an operation."""
    pass


class DiscoveryError(RuntimeFault):
    """Raised when workloads cannot be listed. Fatal to a backup cycle."""
    pass


class WorkloadStateError(RuntimeFault):
    """Raised when a workload cannot be stopped or started."""

    def __init__(self, action: str, workload: Workload, cause: Exception):
        self.action = action
        self.workload = workload
        super().__init__(
            f"Failed to {action} workload {workload.name} ({workload.short_id}): {cause}"
        )


class WaitTimeoutError(RuntimeFault):
    """Raised when a container did not exit before the deadline."""
    pass


class DockerRuntime:
    """
    Thin wrapper around a docker client.

    Every docker failure is translated into a RuntimeFault subclass so callers
    never need to know about docker's own exception hierarchy.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None,
                 label_prefix: str = DEFAULT_LABEL_PREFIX,
                 stop_timeout: int = 30):
        """
        Initialize the runtime adapter.

        Args:
            client: Docker client, created from the environment when omitted
            label_prefix: Prefix of the backup labels
            stop_timeout: Seconds docker waits for a graceful stop
        """
        self.label_prefix = label_prefix
        self.stop_timeout = stop_timeout
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeFault(f"Failed to connect to docker: {e}")
        return self._client

    # -- discovery -------------------------------------------------------

    def list_workloads(self) -> List[Workload]:
        """
        List every container that opted into backups.

        Stopped containers are included; helper containers are not.

        Raises:
            DiscoveryError: If the runtime cannot be queried
        """
        try:
            containers = self.client.containers.list(
                all=True,
                filters=enabled_filter(self.label_prefix),
            )
        except (DockerException, RuntimeFault) as e:
            raise DiscoveryError(f"Failed to list containers: {e}")

        workloads = []
        for container in containers:
            labels = container.labels or {}
            if is_task(labels, self.label_prefix):
                continue
            workloads.append(self._to_workload(container))
        return workloads

    def _to_workload(self, container) -> Workload:
        mounts = []
        for entry in container.attrs.get('Mounts') or []:
            kind = entry.get('Type')
            if kind == 'volume':
                mounts.append(Mount(entry.get('Name', ''), MountKind.VOLUME, entry.get('Destination', '')))
            elif kind == 'bind':
                # Bind mounts have no name, the host path stands in for it.
                mounts.append(Mount(entry.get('Source', ''), MountKind.BIND, entry.get('Destination', '')))

        labels = dict(container.labels or {})
        status = container.status
        if status in ACTIVE_STATUSES:
            state = RunState.RUNNING
        else:
            state = RunState.STOPPED
            if status not in INACTIVE_STATUSES:
                logger.warning(
                    f"Container {container.name} is {status}, its volumes are backed up without stopping it"
                )
        return Workload(
            id=container.id,
            name=container.name,
            state=state,
            mounts=tuple(mounts),
            labels=labels,
            backup=parse_backup_labels(labels, self.label_prefix),
        )

    # -- workload state --------------------------------------------------

    def stop(self, workload: Workload):
        try:
            self.client.containers.get(workload.id).stop(timeout=self.stop_timeout)
        except (DockerException, RuntimeFault) as e:
            raise WorkloadStateError('stop', workload, e)

    def start(self, workload: Workload):
        try:
            self.client.containers.get(workload.id).start()
        except (DockerException, RuntimeFault) as e:
            raise WorkloadStateError('start', workload, e)

    # -- helper containers -----------------------------------------------

    def create_container(self, image: str, command: List[str], name: str,
                         volume_name: str, host_path: Optional[str] = None,
                         labels: Optional[Dict[str, str]] = None,
                         volume_target: str = '/data',
                         host_target: str = '/backups') -> str:
        """
        Create (but do not start) a container with the given mounts.

        Returns:
            Container ID
        """
        mounts = [DockerMount(target=volume_target, source=volume_name, type='volume', read_only=False)]
        if host_path:
            mounts.append(DockerMount(target=host_target, source=host_path, type='bind', read_only=False))

        try:
            container = self.client.containers.create(
                image,
                command=command,
                name=name,
                labels=labels or {},
                mounts=mounts,
            )
        except DockerException as e:
            raise RuntimeFault(f"Failed to create container {name}: {e}")
        return container.id

    def start_container(self, container_id: str):
        try:
            self.client.containers.get(container_id).start()
        except DockerException as e:
            raise RuntimeFault(f"Failed to start container {container_id[:12]}: {e}")

    def wait_container(self, container_id: str, timeout: Optional[float] = None) -> int:
        """
        Block until the container exits.

        Returns:
            Exit status code

        Raises:
            WaitTimeoutError: If the deadline passed first
            RuntimeFault: If the runtime reports an error while waiting
        """
        try:
            result = self.client.containers.get(container_id).wait(timeout=timeout)
        except (ReadTimeout, RequestsConnectionError) as e:
            raise WaitTimeoutError(f"Container {container_id[:12]} did not exit within {timeout}s: {e}")
        except DockerException as e:
            raise RuntimeFault(f"Failed waiting for container {container_id[:12]}: {e}")

        error = result.get('Error')
        if error and error.get('Message'):
            raise RuntimeFault(f"Runtime error waiting for {container_id[:12]}: {error['Message']}")
        return int(result.get('StatusCode', -1))

    def remove_container(self, container_id: str, force: bool = False):
        try:
            self.client.containers.get(container_id).remove(v=False, force=force)
        except NotFound:
            return
        except DockerException as e:
            raise RuntimeFault(f"Failed to remove container {container_id[:12]}: {e}")

    # -- images and volumes ----------------------------------------------

    def ensure_image(self, image: str):
        """Pull the image unless it is already present locally."""
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            pass
        except DockerException as e:
            raise RuntimeFault(f"Failed to inspect image {image}: {e}")

        repository, sep, tag = image.rpartition(':')
        if not sep or '/' in tag:
            repository, tag = image, 'latest'
        logger.info(f"Pulling helper image {image}")
        try:
            self.client.images.pull(repository, tag=tag)
        except DockerException as e:
            raise RuntimeFault(f"Failed to pull image {image}: {e}")

    def ensure_volume(self, volume_name: str) -> bool:
        """
        Create the named volume if it does not exist.

        Returns:
            True if the volume was created
        """
        try:
            self.client.volumes.get(volume_name)
            return False
        except NotFound:
            pass
        except DockerException as e:
            raise RuntimeFault(f"Failed to inspect volume {volume_name}: {e}")

        try:
            self.client.volumes.create(name=volume_name)
        except DockerException as e:
            raise RuntimeFault(f"Failed to create volume {volume_name}: {e}")
        logger.info(f"Created volume {volume_name}")
        return True
