"""
Restore coordinator.

Recreates or repopulates docker volumes from stored snapshots. The newest
snapshot of a volume is used unless a specific one is requested.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from ..models import RestoreRecord, SnapshotArtifact, newest_per_volume
from ..runtime import RuntimeFault
from .destinations import (
    ArtifactNotFoundError, Destination, DestinationError, FilesystemDestination, extract_command,
)
from .runner import TaskError


logger = logging.getLogger(__name__)


class RestoreError(Exception):
    """Raised when a restore request cannot be completed."""

    def __init__(self, message: str, volume_name: str = ''):
        self.volume_name = volume_name
        super().__init__(message)


class SnapshotNotFoundError(RestoreError):
    """Raised when no snapshot matches a restore request."""
    pass


def parse_volume_names(value: Optional[str]) -> List[str]:
    """Split a comma separated volume list, dropping blanks and duplicates."""
    names = []
    for part in (value or '').split(','):
        name = part.strip()
        if name and name not in names:
            names.append(name)
    return names


class RestoreCoordinator:
    """Restores volumes from one destination."""

    def __init__(self, runtime, runner, destination: Destination):
        self.runtime = runtime
        self.runner = runner
        self.destination = destination

    def resolve(self, volume_name: str, artifact_ref: Optional[str] = None) -> SnapshotArtifact:
        """
        Find the snapshot to restore a volume from.

        Raises:
            RestoreError: If no matching snapshot exists
        """
        try:
            if artifact_ref:
                return self.destination.resolve(artifact_ref)
            artifact = self.destination.latest(volume_name)
        except ArtifactNotFoundError as e:
            raise SnapshotNotFoundError(str(e), volume_name) from e
        except DestinationError as e:
            raise RestoreError(f"Cannot find snapshot for volume {volume_name}: {e}", volume_name) from e

        if artifact is None:
            raise SnapshotNotFoundError(
                f"No snapshot of volume {volume_name} found in {self.destination.type} "
                f"destination '{self.destination.name}'",
                volume_name,
            )
        return artifact

    def restore(self, volume_name: str, artifact_ref: Optional[str] = None) -> RestoreRecord:
        """
        Restore one volume.

        Args:
            volume_name: Volume to create or repopulate
            artifact_ref: Explicit snapshot path or key; newest when omitted

        Returns:
            RestoreRecord with the artifact used and the restore time

        Raises:
            RestoreError: If the snapshot cannot be found or extraction fails
        """
        artifact = self.resolve(volume_name, artifact_ref)
        return self._restore_artifact(volume_name, artifact)

    def restore_many(self, volume_names: Optional[Iterable[str]] = None) -> List[RestoreRecord]:
        """
        Restore several volumes from their newest snapshots.

        Every volume is restored at most once, from its single newest
        snapshot, even if several snapshots match it.

        Args:
            volume_names: Volumes to restore; all volumes with snapshots when empty

        Returns:
            One RestoreRecord per restored volume
        """
        wanted = [name for name in (volume_names or []) if name]
        try:
            artifacts = newest_per_volume(self.destination.list_artifacts())
        except DestinationError as e:
            raise RestoreError(f"Cannot list snapshots: {e}") from e

        if wanted:
            by_volume = {artifact.volume_name: artifact for artifact in artifacts}
            missing = [name for name in wanted if name not in by_volume]
            if missing:
                raise SnapshotNotFoundError(f"No snapshots found for volume(s): {', '.join(missing)}")
            artifacts = [by_volume[name] for name in dict.fromkeys(wanted)]

        return [self._restore_artifact(artifact.volume_name, artifact) for artifact in artifacts]

    def create_volume_from_archive(self, archive_path: str, volume_name: str) -> RestoreRecord:
        """
        Create a volume pre-populated with the contents of a host archive.

        The archive may live anywhere on the host; it does not have to follow
        the snapshot naming convention.
        """
        path = Path(archive_path)
        try:
            artifact = FilesystemDestination(str(path.parent)).resolve(str(path))
        except DestinationError as e:
            raise SnapshotNotFoundError(str(e), volume_name) from e
        return self._restore_artifact(volume_name, artifact)

    def _restore_artifact(self, volume_name: str, artifact: SnapshotArtifact) -> RestoreRecord:
        logger.info(f"Restoring volume {volume_name} from {artifact.reference}")
        try:
            self.runner.ensure_image()
            created = self.runtime.ensure_volume(volume_name)
        except (TaskError, RuntimeFault) as e:
            raise RestoreError(f"Cannot prepare restore of volume {volume_name}: {e}", volume_name) from e
        if created:
            logger.info(f"Volume {volume_name} did not exist and was created")

        destination = self.destination
        if artifact.destination != destination.type:
            destination = FilesystemDestination(str(Path(artifact.reference).parent))

        try:
            with destination.staged(artifact) as (host_dir, file_name):
                self.runner.run_in_mounted_context(volume_name, host_dir, extract_command(file_name))
        except (TaskError, DestinationError) as e:
            raise RestoreError(f"Restore of volume {volume_name} from {artifact.reference} failed: {e}", volume_name) from e

        record = RestoreRecord(
            volume_name=volume_name,
            artifact=artifact,
            restored_at=datetime.now(timezone.utc),
        )
        logger.info(f"Restored volume {volume_name} from {artifact.reference}")
        return record
