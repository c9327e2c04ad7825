"""
Restore routes - repopulate volumes from snapshots.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from volume_backup.backup.restore import RestoreError, parse_volume_names
from volume_backup.backup.storage import StorageError
from volume_backup.engine import create_archive_restorer, create_restore_coordinator
from volume_backup.routes import error_response
from volume_backup.schedules import ConfigError


logger = logging.getLogger(__name__)

bp = Blueprint('restore', __name__, url_prefix='/api/restore')


def _volume_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        return parse_volume_names(value)
    if isinstance(value, list):
        return parse_volume_names(','.join(str(item) for item in value))
    raise ConfigError('volumes must be a list or a comma separated string')


@bp.route('', methods=['POST'])
def restore():
    """
    Restore volumes from one destination of a schedule.

    Request body:
        - schedule: Schedule name (optional)
        - destination: Destination name (optional)
        - volumes: Volume names; all volumes with snapshots when empty
        - artifact: Explicit snapshot path or key (requires exactly one volume)

    Returns:
        JSON with one restore record per volume
    """
    data = request.get_json(silent=True) or {}

    try:
        volumes = _volume_list(data.get('volumes'))
        artifact = data.get('artifact')
        if artifact and len(volumes) != 1:
            return jsonify({'error': 'An explicit artifact requires exactly one volume'}), 400

        coordinator = create_restore_coordinator(
            current_app.config,
            schedule_name=data.get('schedule'),
            destination_name=data.get('destination')
        )

        if artifact:
            records = [coordinator.restore(volumes[0], artifact)]
        else:
            records = coordinator.restore_many(volumes)
    except (ConfigError, RestoreError, StorageError) as e:
        return error_response(e)

    logger.info(f"Restored {len(records)} volume(s) via API")
    return jsonify({'restored': [record.to_dict() for record in records]})


@bp.route('/volume-from-archive', methods=['POST'])
def volume_from_archive():
    """
    Create a volume from an archive on the host.

    Request body:
        - archive: Host path of a .tar.gz archive (required)
        - volume: Name of the volume to create or repopulate (required)

    Returns:
        JSON restore record
    """
    data = request.get_json(silent=True) or {}

    if not data.get('archive'):
        return jsonify({'error': 'archive is required'}), 400
    if not data.get('volume'):
        return jsonify({'error': 'volume is required'}), 400

    try:
        coordinator = create_archive_restorer(current_app.config, data['archive'])
        record = coordinator.create_volume_from_archive(data['archive'], data['volume'])
    except RestoreError as e:
        return error_response(e)

    return jsonify(record.to_dict())
