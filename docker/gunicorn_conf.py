# Gunicorn configuration for docker-volume-backup
# Run with: gunicorn -c docker/gunicorn_conf.py "volume_backup:create_app()"

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('BIND', '0.0.0.0:5000')

# One worker by default: a synchronous /api/backups/run in a worker without the
# scheduler could otherwise overlap a scheduled cycle.
workers = int(os.environ.get('GUNICORN_WORKERS', 1))
threads = int(os.environ.get('GUNICORN_THREADS', 4))

# Synchronous backup runs and restores can take as long as a helper container
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 3900))


def pre_fork(server, worker):
    """
    Called in the master before a worker is forked.

    Exactly one live worker owns the backup scheduler. When the owner dies,
    the next worker spawned takes over, so a schedule never runs twice per
    tick and never stops running.

    Args:
        server: Gunicorn arbiter
        worker: Worker about to be forked
    """
    owner_alive = any(getattr(w, 'owns_scheduler', False) for w in server.WORKERS.values())
    worker.owns_scheduler = not owner_alive


def post_fork(server, worker):
    """Called in the worker process, before the application is loaded."""
    if worker.owns_scheduler:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): owns the backup scheduler")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP only, scheduler disabled")
