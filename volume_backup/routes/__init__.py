"""
HTTP API blueprints.

Known engine errors are translated into JSON error responses:
configuration problems are the caller's fault (400), missing snapshots are
404, a cycle that is already running is a conflict (409), everything else
is a server side failure (500).
"""

import logging

from flask import jsonify

from volume_backup.backup.destinations import ArtifactNotFoundError
from volume_backup.backup.restore import SnapshotNotFoundError
from volume_backup.engine import CycleInProgressError
from volume_backup.schedules import ConfigError


logger = logging.getLogger(__name__)


def error_response(error: Exception):
    """Turn an exception raised by the engine into a (response, status) pair."""
    if isinstance(error, ConfigError):
        return jsonify({'error': str(error)}), 400
    if isinstance(error, (SnapshotNotFoundError, ArtifactNotFoundError)):
        return jsonify({'error': str(error)}), 404
    if isinstance(error, CycleInProgressError):
        return jsonify({'error': str(error)}), 409
    logger.error(f"Request failed: {error}")
    return jsonify({'error': str(error)}), 500


def parse_bool(value) -> bool:
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
