"""
Label convention that opts containers into backups.

A container is backed up when it carries ``<prefix>.enabled=true``. The
optional ``<prefix>.volumes`` label narrows the backup to a comma separated
list of named volumes, and ``<prefix>.schedule`` ties the container to one
named schedule. Helper containers started by the engine are stamped with
``<prefix>.type=task``.
"""

from typing import Dict, Mapping, Optional, Tuple

from .models import BackupLabels, Mount, Workload


DEFAULT_LABEL_PREFIX = 'docker-volume-backup'

ENABLED = 'enabled'
VOLUMES = 'volumes'
SCHEDULE = 'schedule'
TYPE = 'type'

TASK_TYPE = 'task'


def label_key(name: str, prefix: str = DEFAULT_LABEL_PREFIX) -> str:
    return f"{prefix}.{name}"


def enabled_filter(prefix: str = DEFAULT_LABEL_PREFIX) -> Dict[str, list]:
    """Filter for the runtime's container listing: only opted-in containers."""
    return {'label': [f"{label_key(ENABLED, prefix)}=true"]}


def task_labels(prefix: str = DEFAULT_LABEL_PREFIX) -> Dict[str, str]:
    return {label_key(TYPE, prefix): TASK_TYPE}


def parse_volume_list(value: Optional[str]) -> Optional[Tuple[str, ...]]:
    """
    Parse the comma separated volumes label.

    Returns None for a missing, empty or malformed value (no usable names),
    which callers treat as "select every named volume".
    """
    if value is None:
        return None
    names = []
    for part in value.split(','):
        name = part.strip()
        if name and name not in names:
            names.append(name)
    return tuple(names) or None


def parse_backup_labels(labels: Optional[Mapping[str, str]],
                        prefix: str = DEFAULT_LABEL_PREFIX) -> BackupLabels:
    """
    Build the typed label value for a container.

    Args:
        labels: Raw label mapping reported by the runtime
        prefix: Label key prefix

    Returns:
        BackupLabels
    """
    labels = labels or {}
    schedule = (labels.get(label_key(SCHEDULE, prefix)) or '').strip() or None
    return BackupLabels(
        enabled=labels.get(label_key(ENABLED, prefix)) == 'true',
        volumes=parse_volume_list(labels.get(label_key(VOLUMES, prefix))),
        schedule=schedule,
    )


def is_backup_eligible(workload: Workload) -> bool:
    return workload.backup.enabled


def is_task(labels: Optional[Mapping[str, str]], prefix: str = DEFAULT_LABEL_PREFIX) -> bool:
    return (labels or {}).get(label_key(TYPE, prefix)) == TASK_TYPE


def select_volumes(workload: Workload) -> Tuple[Mount, ...]:
    """
    Pick the mounts of a workload that should be backed up.

    Only named volumes are ever selected. With an explicit volumes label the
    selection is further narrowed to the listed names, in mount order.
    """
    wanted = workload.backup.volumes
    selected = []
    for mount in workload.mounts:
        if not mount.is_volume:
            continue
        if wanted is not None and mount.name not in wanted:
            continue
        selected.append(mount)
    return tuple(selected)


def matches_schedule(workload: Workload, schedule_key: Optional[str]) -> bool:
    """A schedule without a key covers every eligible workload."""
    if not schedule_key:
        return True
    return workload.backup.schedule == schedule_key
