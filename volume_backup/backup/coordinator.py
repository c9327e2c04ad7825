"""
Backup coordinator - orchestrates one backup cycle.

Workflow per eligible workload:
1. Compute the volumes to back up (skip the workload if there are none)
2. Stop the workload if it is running
3. Store every selected volume in every destination, pruning after each store
4. Restart the workload, whatever happened in step 3
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

from ..labels import is_backup_eligible, matches_schedule, select_volumes
from ..models import (
    BackupCycleResult, BackupTarget, Mount, OutcomeStatus, Workload, WorkloadOutcome,
)
from ..runtime import DiscoveryError, WorkloadStateError
from .destinations import Destination, DestinationError
from .runner import TaskError


logger = logging.getLogger(__name__)


@contextmanager
def workload_paused(runtime, workload: Workload, outcome: WorkloadOutcome):
    """
    Keep a workload stopped for the duration of the block.

    A workload that is not running is left alone. A running one is stopped on
    entry and started exactly once on exit, on every exit path. A failed stop
    propagates WorkloadStateError before the block runs; a failed start is
    recorded on the outcome rather than raised, so it never masks an error
    raised inside the block.
    """
    if not workload.is_running:
        logger.info(f"Workload {workload.name} ({workload.short_id}) is not running, backing up in place")
        yield
        return

    logger.info(f"Stopping workload {workload.name} ({workload.short_id})")
    runtime.stop(workload)
    outcome.stopped = True
    try:
        yield
    finally:
        logger.info(f"Starting workload {workload.name} ({workload.short_id})")
        try:
            runtime.start(workload)
            outcome.restarted = True
        except WorkloadStateError as e:
            outcome.start_error = str(e)
            logger.critical(f"Workload {workload.name} ({workload.short_id}) is DOWN: {e}")


class BackupCoordinator:
    """
    Runs backup cycles for one schedule.

    Workloads are processed one after another and volumes one after another,
    so a volume is never archived by two helpers at the same time.
    """

    def __init__(self, runtime, runner, destinations: List[Destination],
                 schedule_name: str = 'default', schedule_key: Optional[str] = None):
        """
        Initialize backup coordinator.

        Args:
            runtime: DockerRuntime used for discovery and stop/start
            runner: TaskRunner used by destinations for archival
            destinations: Destinations every selected volume is stored in
            schedule_name: Name reported in cycle results
            schedule_key: Only workloads labelled with this key are processed
        """
        self.runtime = runtime
        self.runner = runner
        self.destinations = destinations
        self.schedule_name = schedule_name
        self.schedule_key = schedule_key

    def discover(self) -> List[Workload]:
        """
        List workloads eligible for this schedule.

        Raises:
            DiscoveryError: If the runtime cannot be queried
        """
        workloads = self.runtime.list_workloads()
        return [
            workload for workload in workloads
            if is_backup_eligible(workload) and matches_schedule(workload, self.schedule_key)
        ]

    def run_backup_cycle(self) -> BackupCycleResult:
        """
        Execute one backup cycle.

        Returns:
            BackupCycleResult with one outcome per eligible workload

        Raises:
            DiscoveryError: If workloads cannot be listed or the helper image
                cannot be pulled; nothing has been stopped at that point
        """
        result = BackupCycleResult(schedule=self.schedule_name)
        workloads = self.discover()
        logger.info(f"Schedule {self.schedule_name}: found {len(workloads)} workload(s) to back up")

        targets = [BackupTarget(workload, select_volumes(workload)) for workload in workloads]
        if any(not target.is_empty for target in targets):
            try:
                self.runner.ensure_image()
            except TaskError as e:
                raise DiscoveryError(f"Cannot prepare helper image: {e}") from e

        for target in targets:
            result.outcomes.append(self.backup_workload(target))

        result.finished_at = datetime.now(timezone.utc)
        failed = [o for o in result.outcomes if o.status not in (OutcomeStatus.SUCCEEDED, OutcomeStatus.SKIPPED)]
        logger.info(
            f"Schedule {self.schedule_name}: cycle complete. "
            f"Workloads: {len(result.outcomes)}, failed: {len(failed)}"
        )
        return result

    def backup_workload(self, target: BackupTarget) -> WorkloadOutcome:
        workload = target.workload
        outcome = WorkloadOutcome(workload_id=workload.id, workload_name=workload.name)

        if target.is_empty:
            logger.info(f"Workload {workload.name} ({workload.short_id}) has no volumes to back up, skipping")
            outcome.status = OutcomeStatus.SKIPPED
            return outcome

        outcome.volumes = [mount.name for mount in target.mounts]
        try:
            with workload_paused(self.runtime, workload, outcome):
                for mount in target.mounts:
                    self._backup_volume(workload, mount, outcome)
        except WorkloadStateError as e:
            # Only the stop can surface here; start failures are recorded by workload_paused.
            outcome.stop_error = str(e)
            outcome.status = OutcomeStatus.FAILED
            logger.error(str(e))

        return outcome.finalize()

    def _backup_volume(self, workload: Workload, mount: Mount, outcome: WorkloadOutcome):
        for destination in self.destinations:
            logger.info(f"Backing up volume {mount.name} ({workload.short_id}) to {destination.type} '{destination.name}'")
            try:
                artifact = destination.store(mount, self.runner)
            except DestinationError as e:
                message = f"workload {workload.name} ({workload.short_id}): {e}"
                outcome.backup_errors.append(message)
                logger.error(f"Backup failed for {message}")
                continue
            except Exception as e:
                message = (
                    f"workload {workload.name} ({workload.short_id}): {destination.type} destination "
                    f"'{destination.name}', volume {mount.name}: unexpected error: {e}"
                )
                outcome.backup_errors.append(message)
                logger.exception(f"Backup failed for {message}")
                continue

            outcome.artifacts.append(artifact)
            try:
                destination.prune(mount.name, keep=artifact)
            except DestinationError as e:
                outcome.prune_warnings.append(str(e))
                logger.warning(f"Retention failed for volume {mount.name}: {e}")
