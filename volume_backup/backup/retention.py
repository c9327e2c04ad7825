"""
Retention policy enforcement for snapshot archives.

Decides which stored snapshots of a volume may be removed after a new one has
been stored. Two policies exist and are configured explicitly per
destination:

- max age: remove snapshots older than N days (0 disables removal)
- keep newest only: remove every snapshot except the one just stored
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from ..models import RetentionPolicy, SnapshotArtifact, newest_first


logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RetentionManager:
    """
    Selects expired snapshots for one volume.

    Regardless of policy, the snapshot produced in the current cycle (keep)
    and the newest snapshot in the listing are never selected.
    """

    def select_expired(self, artifacts: Iterable[SnapshotArtifact], policy: RetentionPolicy,
                       keep: Optional[SnapshotArtifact] = None,
                       now: Optional[datetime] = None) -> List[SnapshotArtifact]:
        """
        Pick the artifacts that the policy allows to delete.

        Args:
            artifacts: Every stored artifact of a single volume
            policy: Retention policy of the destination
            keep: Artifact stored in the current cycle, if any
            now: Reference time (default: current UTC time)

        Returns:
            Artifacts to delete, oldest first
        """
        ordered = newest_first(artifacts)
        if not ordered or policy.is_disabled:
            return []

        protected = {ordered[0].reference}
        if keep is not None:
            protected.add(keep.reference)

        if policy.keep_newest_only:
            if keep is not None and any(a.reference == keep.reference for a in ordered):
                protected = {keep.reference}
            candidates = [a for a in ordered if a.reference not in protected]
        else:
            cutoff = _aware(now or datetime.now(timezone.utc)) - timedelta(days=policy.max_age_days)
            candidates = [
                a for a in ordered
                if a.reference not in protected and _aware(a.created_at) < cutoff
            ]

        candidates.reverse()
        if candidates:
            logger.info(
                f"Retention ({policy.describe()}) selected {len(candidates)} snapshot(s) "
                f"of volume {ordered[0].volume_name} for deletion"
            )
        return candidates
