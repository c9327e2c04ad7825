"""
Data model shared by the backup engine.

Everything here is a plain value object. Workloads and mounts are snapshots
of container runtime state taken at discovery time; artifacts are created by
destinations and never mutated afterwards.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


class MountKind(str, Enum):
    """Kind of storage attached to a workload."""
    VOLUME = 'volume'
    BIND = 'bind'


class RunState(str, Enum):
    RUNNING = 'running'
    STOPPED = 'stopped'


class OutcomeStatus(str, Enum):
    """Per-workload result of one backup cycle."""
    SUCCEEDED = 'succeeded'
    PARTIALLY_FAILED = 'partially_failed'
    FAILED = 'failed'
    SKIPPED = 'skipped'


@dataclass(frozen=True)
class Mount:
    name: str
    kind: MountKind
    target: str = ''

    @property
    def is_volume(self) -> bool:
        return self.kind == MountKind.VOLUME


@dataclass(frozen=True)
class BackupLabels:
    """
    Typed view of the backup labels carried by a workload.

    Attributes:
        enabled: True only when the enabled label is exactly "true"
        volumes: Volume names from the volumes label, or None when the label
            is missing, empty or malformed (meaning "all named volumes")
        schedule: Schedule key the workload opted into, if any
    """
    enabled: bool = False
    volumes: Optional[Tuple[str, ...]] = None
    schedule: Optional[str] = None


@dataclass(frozen=True)
class Workload:
    id: str
    name: str
    state: RunState
    mounts: Tuple[Mount, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    backup: BackupLabels = field(default_factory=BackupLabels)

    @property
    def is_running(self) -> bool:
        return self.state == RunState.RUNNING

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass(frozen=True)
class BackupTarget:
    workload: Workload
    mounts: Tuple[Mount, ...]

    @property
    def is_empty(self) -> bool:
        return not self.mounts


@dataclass(frozen=True)
class SnapshotArtifact:
    """
    A stored archive of one volume.

    Attributes:
        volume_name: Volume the archive was taken from
        destination: Destination type that holds it ('filesystem' or 's3')
        reference: Absolute file path (filesystem) or object key (s3)
        created_at: Modification / upload time, timezone aware
        size: Size in bytes when known
    """
    volume_name: str
    destination: str
    reference: str
    created_at: datetime
    size: Optional[int] = None

    @property
    def file_name(self) -> str:
        return self.reference.rsplit('/', 1)[-1]

    def sort_key(self):
        return (self.created_at, self.reference)

    def to_dict(self) -> dict:
        return {
            'volume_name': self.volume_name,
            'destination': self.destination,
            'reference': self.reference,
            'file_name': self.file_name,
            'created_at': self.created_at.isoformat(),
            'size': self.size,
        }


def newest_first(artifacts) -> List[SnapshotArtifact]:
    """
    Order artifacts newest first.

    Ties on the timestamp are broken by the lexicographically greatest
    reference, so the ordering is total and stable across listings.
    """
    return sorted(artifacts, key=SnapshotArtifact.sort_key, reverse=True)


def newest_per_volume(artifacts) -> List[SnapshotArtifact]:
    """Keep only the newest artifact of every volume, newest first."""
    seen = set()
    result = []
    for artifact in newest_first(artifacts):
        if artifact.volume_name in seen:
            continue
        seen.add(artifact.volume_name)
        result.append(artifact)
    return result


@dataclass(frozen=True)
class RetentionPolicy:
    """
    How old snapshots of a volume are removed after a successful store.

    Exactly one of the two modes applies:
    - keep_newest_only: delete every other snapshot of the volume (dedup)
    - max_age_days: delete snapshots older than N days, 0 disables deletion
    """
    keep_newest_only: bool = False
    max_age_days: int = 0

    def __post_init__(self):
        if self.max_age_days < 0:
            raise ValueError(f"max_age_days must be >= 0, got {self.max_age_days}")
        if self.keep_newest_only and self.max_age_days:
            raise ValueError("keep_newest_only and max_age_days are mutually exclusive")

    @classmethod
    def newest_only(cls) -> 'RetentionPolicy':
        return cls(keep_newest_only=True)

    @classmethod
    def max_age(cls, days: int) -> 'RetentionPolicy':
        return cls(max_age_days=days)

    @property
    def is_disabled(self) -> bool:
        return not self.keep_newest_only and self.max_age_days == 0

    def describe(self) -> str:
        if self.keep_newest_only:
            return 'keep newest only'
        if self.max_age_days:
            return f"max age {self.max_age_days} days"
        return 'disabled'


@dataclass
class WorkloadOutcome:
    """Mutable record filled in while one workload is processed."""
    workload_id: str
    workload_name: str
    status: OutcomeStatus = OutcomeStatus.SUCCEEDED
    volumes: List[str] = field(default_factory=list)
    artifacts: List[SnapshotArtifact] = field(default_factory=list)
    backup_errors: List[str] = field(default_factory=list)
    prune_warnings: List[str] = field(default_factory=list)
    stop_error: Optional[str] = None
    start_error: Optional[str] = None
    stopped: bool = False
    restarted: bool = False

    @property
    def reason(self) -> Optional[str]:
        if self.stop_error:
            return self.stop_error
        if self.backup_errors:
            return self.backup_errors[0]
        return self.start_error

    def finalize(self) -> 'WorkloadOutcome':
        if self.status in (OutcomeStatus.SKIPPED, OutcomeStatus.FAILED):
            return self
        if self.backup_errors or self.start_error:
            self.status = OutcomeStatus.PARTIALLY_FAILED
        return self

    def to_dict(self) -> dict:
        return {
            'workload_id': self.workload_id,
            'workload_name': self.workload_name,
            'status': self.status.value,
            'reason': self.reason,
            'volumes': list(self.volumes),
            'artifacts': [artifact.to_dict() for artifact in self.artifacts],
            'backup_errors': list(self.backup_errors),
            'prune_warnings': list(self.prune_warnings),
            'stop_error': self.stop_error,
            'start_error': self.start_error,
            'stopped': self.stopped,
            'restarted': self.restarted,
        }


@dataclass
class BackupCycleResult:
    schedule: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    outcomes: List[WorkloadOutcome] = field(default_factory=list)

    def outcome_for(self, workload_id: str) -> Optional[WorkloadOutcome]:
        for outcome in self.outcomes:
            if outcome.workload_id == workload_id:
                return outcome
        return None

    @property
    def succeeded(self) -> bool:
        return all(
            outcome.status in (OutcomeStatus.SUCCEEDED, OutcomeStatus.SKIPPED)
            for outcome in self.outcomes
        )

    def to_dict(self) -> dict:
        return {
            'schedule': self.schedule,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'succeeded': self.succeeded,
            'outcomes': [outcome.to_dict() for outcome in self.outcomes],
        }


@dataclass(frozen=True)
class RestoreRecord:
    volume_name: str
    artifact: SnapshotArtifact
    restored_at: datetime

    def to_dict(self) -> dict:
        return {
            'volume_name': self.volume_name,
            'restored_from': self.artifact.reference,
            'destination': self.artifact.destination,
            'restore_time': self.restored_at.isoformat(),
        }
