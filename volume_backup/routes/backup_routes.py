"""
Backup routes - manual cycles and schedule overview.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from volume_backup.backup.storage import StorageError
from volume_backup.engine import CycleInProgressError, get_backup_config, run_backup_cycle
from volume_backup.routes import error_response
from volume_backup.runtime import RuntimeFault
from volume_backup.scheduler import get_scheduled_jobs, is_scheduler_running, trigger_backup_now
from volume_backup.schedules import ConfigError


logger = logging.getLogger(__name__)

bp = Blueprint('backups', __name__, url_prefix='/api/backups')


@bp.route('/run', methods=['POST'])
def run_backup():
    """
    Run one backup cycle of a schedule.

    Request body:
        - schedule: Schedule name (optional, default: first configured)

    When the scheduler is running the cycle is queued on it, so it never
    overlaps a scheduled tick, and 202 is returned. Otherwise the cycle runs
    in the request and its result is returned, or 409 if another cycle is
    already running.

    Returns:
        JSON with the queued schedule or the cycle result
    """
    data = request.get_json(silent=True) or {}

    try:
        schedule = get_backup_config(current_app.config).get(data.get('schedule'))

        if is_scheduler_running():
            trigger_backup_now(schedule.name)
            logger.info(f"Queued backup cycle for schedule {schedule.name} via API")
            return jsonify({
                'message': 'Backup cycle queued',
                'schedule': schedule.name
            }), 202

        result = run_backup_cycle(current_app.config, schedule.name, blocking=False)
    except (ConfigError, CycleInProgressError, RuntimeFault, StorageError) as e:
        return error_response(e)

    return jsonify(result.to_dict())


@bp.route('/schedules', methods=['GET'])
def list_schedules():
    """
    Get configured schedules and the jobs registered for them.

    Returns:
        JSON with schedules, their destinations and scheduler state
    """
    try:
        backup_config = get_backup_config(current_app.config)
    except ConfigError as e:
        return error_response(e)

    schedules = []
    for schedule in backup_config.periodic_backups:
        schedules.append({
            'name': schedule.name,
            'schedule': schedule.schedule,
            'schedule_key': schedule.schedule_key,
            'destinations': [
                {
                    'name': backup.name,
                    'type': backup.type,
                    'host_path': backup.host_path,
                    'retention': backup.retention.describe()
                }
                for backup in schedule.backups
            ]
        })

    return jsonify({
        'scheduler_running': is_scheduler_running(),
        'schedules': schedules,
        'jobs': get_scheduled_jobs()
    })
