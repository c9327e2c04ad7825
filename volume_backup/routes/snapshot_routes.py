"""
Snapshot routes - list stored volume archives.
"""

from flask import Blueprint, current_app, jsonify, request

from volume_backup.backup.destinations import DestinationError, create_destination
from volume_backup.backup.storage import StorageError
from volume_backup.engine import get_backup_config
from volume_backup.models import newest_per_volume
from volume_backup.routes import error_response, parse_bool
from volume_backup.schedules import ConfigError


bp = Blueprint('snapshots', __name__, url_prefix='/api/snapshots')


@bp.route('', methods=['GET'])
def list_snapshots():
    """
    List snapshots held by one destination of a schedule.

    Query params:
        - schedule: Schedule name (default: first configured)
        - destination: Destination name (default: first of the schedule)
        - volume: Only volumes whose name contains this substring
        - newest_only: Only the newest snapshot of each volume

    Returns:
        JSON with snapshots ordered newest first
    """
    volume_filter = request.args.get('volume') or None
    newest_only = parse_bool(request.args.get('newest_only', 'false'))

    try:
        schedule = get_backup_config(current_app.config).get(request.args.get('schedule'))
        destination = create_destination(schedule.destination(request.args.get('destination')))
        artifacts = destination.list_artifacts(volume_filter)
    except (ConfigError, DestinationError, StorageError) as e:
        return error_response(e)

    if newest_only:
        artifacts = newest_per_volume(artifacts)

    return jsonify({
        'schedule': schedule.name,
        'destination': destination.name,
        'type': destination.type,
        'count': len(artifacts),
        'snapshots': [artifact.to_dict() for artifact in artifacts]
    })
