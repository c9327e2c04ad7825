"""
APScheduler configuration and backup scheduling.

Manages:
- One cron job per configured backup schedule
- Manual "run now" triggers

Ticks never overlap: a single worker thread runs every job, and a schedule
that is still running when its next tick fires is coalesced instead of being
started a second time. Overlapping cycles could stop a workload twice.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from .engine import get_backup_config, run_backup_cycle


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Stored for use in background threads
    flask_app = app

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,
        'max_instances': 1,
        'misfire_grace_time': app.config.get('SCHEDULER_MISFIRE_GRACE_SECONDS', 300)
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} scheduled jobs:")
            for job in jobs:
                next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
                logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
        else:
            logger.info("No scheduled jobs loaded")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _job_id(schedule_name: str) -> str:
    return f"backup_{schedule_name}"


def sync_backup_schedules():
    """
    Synchronize configured backup schedules to the scheduler.

    Adds or reschedules one job per schedule and removes jobs whose schedule
    is no longer configured.

    Raises:
        ConfigError: If the schedule configuration cannot be loaded
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    backup_config = get_backup_config(flask_app.config)
    wanted = {_job_id(schedule.name) for schedule in backup_config.periodic_backups}

    for job in scheduler.get_jobs():
        if job.id.startswith('backup_') and job.id not in wanted:
            scheduler.remove_job(job.id)
            logger.info(f"Removed orphaned scheduled job: {job.id}")

    for schedule in backup_config.periodic_backups:
        scheduler.add_job(
            func=_execute_backup_wrapper,
            args=[schedule.name],
            trigger=CronTrigger.from_crontab(schedule.schedule, timezone='UTC'),
            id=_job_id(schedule.name),
            name=f"Backup: {schedule.name}",
            replace_existing=True
        )
        logger.info(f"Scheduled backup: {schedule.name} ({schedule.schedule})")


def remove_backup_schedule(schedule_name: str):
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    try:
        scheduler.remove_job(_job_id(schedule_name))
        logger.info(f"Removed scheduled backup: {schedule_name}")
    except JobLookupError:
        logger.warning(f"No scheduled backup named {schedule_name}")


def _execute_backup_wrapper(schedule_name: str):
    """
    Run one backup cycle from a scheduler thread.

    Errors are logged, never raised into APScheduler, so one failed cycle
    does not affect later ticks.

    Args:
        schedule_name: Schedule to run
    """
    with flask_app.app_context():
        logger.info(f"Scheduler executing backup schedule: {schedule_name}")
        try:
            result = run_backup_cycle(flask_app.config, schedule_name)
        except Exception:
            logger.exception(f"Backup cycle for schedule {schedule_name} failed")
            return None

        for outcome in result.outcomes:
            if outcome.start_error:
                logger.critical(f"Workload {outcome.workload_name} was not restarted: {outcome.start_error}")
        logger.info(
            f"Backup schedule {schedule_name} completed "
            f"({'success' if result.succeeded else 'with failures'})"
        )
        return result


def trigger_backup_now(schedule_name: str):
    """
    Manually trigger a backup schedule.

    The run goes through the scheduler's single worker, so it waits for any
    cycle already in progress instead of overlapping it.

    Raises:
        ConfigError: If the schedule is not configured
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    schedule = get_backup_config(flask_app.config).get(schedule_name)
    now = datetime.now(timezone.utc)

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[schedule.name],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{schedule.name}_{int(now.timestamp())}_{uuid.uuid4().hex[:8]}",
        name=f"Manual: {schedule.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup schedule: {schedule.name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        # Jobs added before start() have no next_run_time yet
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
