"""
Destinations for snapshot archives.

Supports:
- FilesystemDestination: archives written straight into a host directory
- ObjectStoreDestination: archives staged on the host, then uploaded to S3

Archives are named {volume}-{day}-{month}-{year}.tar.gz and contain a single
top-level ``data/`` directory. The file name (or object key) is the only
persisted state; listings are always derived by pattern matching.
"""

import logging
import os
import re
import shlex
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from ..models import Mount, RetentionPolicy, SnapshotArtifact, newest_first
from .retention import RetentionManager
from .runner import HOST_MOUNT_PATH, VOLUME_MOUNT_PATH, TaskError
from .storage import S3Storage, StorageError


logger = logging.getLogger(__name__)

ARCHIVE_PATTERN = re.compile(r'^(.*)-\d+-\d+-\d{4}.*\.tar\.gz$')
STAGING_DIR = '.s3tmp'

FILESYSTEM = 'filesystem'
S3 = 's3'


class DestinationError(Exception):
    """Raised when an archive cannot be stored or listed."""

    def __init__(self, message: str, destination: str = '', volume_name: str = ''):
        self.destination = destination
        self.volume_name = volume_name
        super().__init__(message)


class ArtifactNotFoundError(DestinationError):
    """Raised when a requested snapshot does not exist."""
    pass


def archive_name(volume_name: str, when: Optional[datetime] = None) -> str:
    """
    Generate the archive file name for a volume.

    Format: {volume}-{day}-{month}-{year}.tar.gz, without zero padding.
    """
    when = when or datetime.now()
    return f"{volume_name}-{when.day}-{when.month}-{when.year}.tar.gz"


def parse_volume_name(file_name: str) -> Optional[str]:
    """Extract the volume name from an archive file name, None if it does not match."""
    match = ARCHIVE_PATTERN.match(os.path.basename(file_name))
    if not match:
        return None
    return match.group(1)


def archive_command(archive_path: str) -> List[str]:
    return ['tar', '-czf', archive_path, VOLUME_MOUNT_PATH]


def extract_command(file_name: str) -> List[str]:
    """
    Command that replaces the volume contents with the archive contents.

    The archive's top-level directory is stripped so files land at the root
    of the volume. Existing contents (dotfiles included) are cleared first so
    repeated restores from one archive produce identical volumes.
    """
    archive = shlex.quote(f"{HOST_MOUNT_PATH}/{file_name}")
    return [
        '/bin/sh', '-c',
        f"find {VOLUME_MOUNT_PATH} -mindepth 1 -delete && "
        f"tar -xzf {archive} -C {VOLUME_MOUNT_PATH} --strip-components 1",
    ]


def _utc_from_timestamp(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class Destination(ABC):
    """Common behaviour of the two destination types."""

    type = ''

    def __init__(self, name: str, host_path: str, policy: RetentionPolicy,
                 retention: Optional[RetentionManager] = None):
        self.name = name
        self.host_path = Path(host_path)
        self.policy = policy
        self.retention = retention or RetentionManager()

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name} path={self.host_path} retention={self.policy.describe()}>"

    @abstractmethod
    def store(self, volume: Mount, runner) -> SnapshotArtifact:
        """Archive one volume and return the stored artifact."""

    @abstractmethod
    def list_artifacts(self, volume_filter: Optional[str] = None) -> List[SnapshotArtifact]:
        """List stored artifacts newest first, optionally by volume name substring."""

    @abstractmethod
    def resolve(self, reference: str) -> SnapshotArtifact:
        """Look up a single artifact by path or key."""

    @abstractmethod
    def staged(self, artifact: SnapshotArtifact):
        """Context manager yielding (host_dir, file_name) readable by a helper."""

    @abstractmethod
    def _delete(self, artifact: SnapshotArtifact):
        """Remove one artifact."""

    def artifacts_for(self, volume_name: str) -> List[SnapshotArtifact]:
        """Artifacts whose parsed volume name is exactly volume_name."""
        return [a for a in self.list_artifacts(volume_name) if a.volume_name == volume_name]

    def latest(self, volume_name: str) -> Optional[SnapshotArtifact]:
        artifacts = self.artifacts_for(volume_name)
        return artifacts[0] if artifacts else None

    def prune(self, volume_name: str, policy: Optional[RetentionPolicy] = None,
              keep: Optional[SnapshotArtifact] = None) -> List[SnapshotArtifact]:
        """
        Delete stale snapshots of a volume.

        Must only be called after a successful store. Individual deletion
        failures are logged and skipped.

        Args:
            volume_name: Volume whose snapshots are considered
            policy: Retention policy (default: the destination's own)
            keep: Artifact produced in this cycle, never deleted

        Returns:
            Artifacts that were deleted

        Raises:
            DestinationError: If the snapshots cannot be listed
        """
        policy = policy or self.policy
        if policy.is_disabled:
            return []

        expired = self.retention.select_expired(self.artifacts_for(volume_name), policy, keep=keep)
        deleted = []
        for artifact in expired:
            try:
                self._delete(artifact)
                deleted.append(artifact)
                logger.info(f"Deleted {self.type} snapshot {artifact.reference}")
            except (OSError, StorageError) as e:
                logger.warning(f"Failed to delete {self.type} snapshot {artifact.reference}: {e}")
        return deleted

    def _error(self, message: str, volume_name: str) -> DestinationError:
        return DestinationError(
            f"{self.type} destination '{self.name}', volume {volume_name}: {message}",
            destination=self.type,
            volume_name=volume_name,
        )


class FilesystemDestination(Destination):
    """
    Archives written directly into a host directory.

    The directory is bind mounted into the helper container, so the host path
    must be valid on the docker host as well as readable by this process.
    """

    type = FILESYSTEM

    def __init__(self, host_path: str, policy: Optional[RetentionPolicy] = None,
                 name: str = FILESYSTEM, retention: Optional[RetentionManager] = None):
        super().__init__(name, host_path, policy or RetentionPolicy.max_age(0), retention)

    def store(self, volume: Mount, runner) -> SnapshotArtifact:
        file_name = archive_name(volume.name)
        logger.info(f"Archiving volume {volume.name} to {self.host_path / file_name}")
        try:
            runner.run_in_mounted_context(
                volume.name,
                str(self.host_path),
                archive_command(f"{HOST_MOUNT_PATH}/{file_name}"),
            )
        except TaskError as e:
            raise self._error(f"archival failed: {e}", volume.name) from e

        path = self.host_path / file_name
        try:
            stat = path.stat()
        except OSError as e:
            raise self._error(f"archive missing after archival: {e}", volume.name) from e

        return SnapshotArtifact(
            volume_name=volume.name,
            destination=self.type,
            reference=str(path),
            created_at=_utc_from_timestamp(stat.st_mtime),
            size=stat.st_size,
        )

    def list_artifacts(self, volume_filter: Optional[str] = None) -> List[SnapshotArtifact]:
        if not self.host_path.exists():
            return []

        artifacts = []
        try:
            for file_path in self.host_path.rglob('*'):
                if STAGING_DIR in file_path.relative_to(self.host_path).parts:
                    continue
                if not file_path.is_file():
                    continue
                volume_name = parse_volume_name(file_path.name)
                if volume_name is None:
                    continue
                if volume_filter and volume_filter not in volume_name:
                    continue
                stat = file_path.stat()
                artifacts.append(SnapshotArtifact(
                    volume_name=volume_name,
                    destination=self.type,
                    reference=str(file_path),
                    created_at=_utc_from_timestamp(stat.st_mtime),
                    size=stat.st_size,
                ))
        except OSError as e:
            raise DestinationError(f"Failed to list {self.host_path}: {e}", destination=self.type)

        return newest_first(artifacts)

    def resolve(self, reference: str) -> SnapshotArtifact:
        path = Path(reference)
        if not path.is_absolute():
            path = self.host_path / reference
        if not path.is_file():
            raise ArtifactNotFoundError(f"Archive not found: {path}", destination=self.type)

        stat = path.stat()
        return SnapshotArtifact(
            volume_name=parse_volume_name(path.name) or '',
            destination=self.type,
            reference=str(path),
            created_at=_utc_from_timestamp(stat.st_mtime),
            size=stat.st_size,
        )

    @contextmanager
    def staged(self, artifact: SnapshotArtifact) -> Iterator[Tuple[str, str]]:
        path = Path(artifact.reference)
        yield str(path.parent), path.name

    def _delete(self, artifact: SnapshotArtifact):
        Path(artifact.reference).unlink(missing_ok=True)


class ObjectStoreDestination(Destination):
    """
    Archives uploaded to S3, keyed by file name.

    The helper writes the archive into a staging directory below host_path.
    The staged copy is removed only after a successful upload so a failed
    upload can be retried or inspected.
    """

    type = S3

    def __init__(self, host_path: str, storage: S3Storage,
                 policy: Optional[RetentionPolicy] = None, name: str = S3,
                 retention: Optional[RetentionManager] = None):
        super().__init__(name, host_path, policy or RetentionPolicy.newest_only(), retention)
        self.storage = storage

    @property
    def staging_path(self) -> Path:
        return self.host_path / STAGING_DIR

    def _ensure_staging(self, volume_name: str = ''):
        try:
            self.staging_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise self._error(f"cannot create staging directory {self.staging_path}: {e}", volume_name) from e

    def store(self, volume: Mount, runner) -> SnapshotArtifact:
        file_name = archive_name(volume.name)
        self._ensure_staging(volume.name)
        logger.info(f"Archiving volume {volume.name} for upload to bucket {self.storage.bucket_name}")

        try:
            runner.run_in_mounted_context(
                volume.name,
                str(self.host_path),
                archive_command(f"{HOST_MOUNT_PATH}/{STAGING_DIR}/{file_name}"),
            )
        except TaskError as e:
            raise self._error(f"archival failed: {e}", volume.name) from e

        local_path = self.staging_path / file_name
        try:
            size = local_path.stat().st_size
            key = self.storage.upload(str(local_path), key=file_name)
        except (OSError, StorageError) as e:
            raise self._error(f"upload failed, staged archive kept at {local_path}: {e}", volume.name) from e

        local_path.unlink(missing_ok=True)
        logger.info(f"Uploaded {key} to bucket {self.storage.bucket_name}")
        return SnapshotArtifact(
            volume_name=volume.name,
            destination=self.type,
            reference=key,
            created_at=datetime.now(timezone.utc),
            size=size,
        )

    def _to_artifact(self, obj: dict) -> Optional[SnapshotArtifact]:
        volume_name = parse_volume_name(obj['Key'])
        if volume_name is None:
            return None
        return SnapshotArtifact(
            volume_name=volume_name,
            destination=self.type,
            reference=obj['Key'],
            created_at=obj['LastModified'],
            size=obj.get('Size'),
        )

    def list_artifacts(self, volume_filter: Optional[str] = None) -> List[SnapshotArtifact]:
        try:
            objects = self.storage.list_objects(prefix='')
        except StorageError as e:
            raise DestinationError(str(e), destination=self.type)

        artifacts = []
        for obj in objects:
            artifact = self._to_artifact(obj)
            if artifact is None:
                continue
            if volume_filter and volume_filter not in artifact.volume_name:
                continue
            artifacts.append(artifact)
        return newest_first(artifacts)

    def artifacts_for(self, volume_name: str) -> List[SnapshotArtifact]:
        try:
            objects = self.storage.list_objects(prefix=volume_name)
        except StorageError as e:
            raise self._error(f"listing failed: {e}", volume_name) from e

        artifacts = [self._to_artifact(obj) for obj in objects]
        return newest_first(a for a in artifacts if a is not None and a.volume_name == volume_name)

    def resolve(self, reference: str) -> SnapshotArtifact:
        try:
            obj = self.storage.head(reference)
        except StorageError as e:
            raise ArtifactNotFoundError(str(e), destination=self.type)
        return SnapshotArtifact(
            volume_name=parse_volume_name(reference) or '',
            destination=self.type,
            reference=reference,
            created_at=obj['LastModified'],
            size=obj.get('Size'),
        )

    @contextmanager
    def staged(self, artifact: SnapshotArtifact) -> Iterator[Tuple[str, str]]:
        self._ensure_staging(artifact.volume_name)
        file_name = os.path.basename(artifact.reference)
        local_path = self.staging_path / file_name
        try:
            self.storage.download(artifact.reference, str(local_path))
        except StorageError as e:
            raise self._error(f"download failed: {e}", artifact.volume_name) from e
        try:
            yield str(self.staging_path), file_name
        finally:
            local_path.unlink(missing_ok=True)

    def _delete(self, artifact: SnapshotArtifact):
        self.storage.delete(artifact.reference)


def create_destination(config) -> Destination:
    """
    Factory function to create the destination described by a DestinationConfig.

    Args:
        config: DestinationConfig from the schedule configuration

    Returns:
        FilesystemDestination or ObjectStoreDestination instance

    Raises:
        ValueError: If the destination type is invalid
        StorageError: If the S3 client cannot be created
    """
    if config.type == FILESYSTEM:
        return FilesystemDestination(
            config.filesystem_options.host_path,
            policy=config.retention,
            name=config.name,
        )
    elif config.type == S3:
        options = config.s3_options.with_env_defaults()
        storage = S3Storage(
            bucket_name=options.aws_bucket,
            region=options.aws_default_region,
            access_key=options.aws_access_key_id,
            secret_key=options.aws_secret_access_key,
            endpoint_url=options.aws_endpoint,
        )
        return ObjectStoreDestination(
            options.host_path,
            storage,
            policy=config.retention,
            name=config.name,
        )
    else:
        raise ValueError(f"Invalid destination type: {config.type}")


def create_destinations(schedule) -> List[Destination]:
    """Build every destination of a ScheduleConfig, in declaration order."""
    return [create_destination(backup) for backup in schedule.backups]
