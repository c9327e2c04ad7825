"""
Flask CLI commands.

Usage:
    flask --app volume_backup run-backup --schedule nightly
    flask --app volume_backup list-backups --volume-name-filter db --newest-only
    flask --app volume_backup restore-backups --volumes db,cache
    flask --app volume_backup restore-volume --volume db --artifact db-4-7-2024.tar.gz
    flask --app volume_backup create-volume --archive /srv/db.tar.gz --volume db

Every command prints JSON on stdout. Failures exit with status 1.
"""

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .backup.destinations import DestinationError, create_destination
from .backup.restore import RestoreError, parse_volume_names
from .backup.storage import StorageError
from .engine import create_archive_restorer, create_restore_coordinator, get_backup_config, run_backup_cycle
from .models import newest_per_volume
from .runtime import RuntimeFault
from .schedules import ConfigError


def _echo_json(data):
    click.echo(json.dumps(data, indent=2))


schedule_option = click.option('--schedule', default=None, help='Schedule name (default: first configured)')
destination_option = click.option('--destination', default=None, help='Destination name (default: first of the schedule)')


@click.command('run-backup')
@schedule_option
@with_appcontext
def run_backup_command(schedule):
    """Run one backup cycle now."""
    try:
        result = run_backup_cycle(current_app.config, schedule)
    except (ConfigError, RuntimeFault, StorageError) as e:
        raise click.ClickException(str(e))

    _echo_json(result.to_dict())
    if not result.succeeded:
        raise SystemExit(1)


@click.command('list-backups')
@schedule_option
@destination_option
@click.option('--volume-name-filter', default=None, help='Only volumes whose name contains this text')
@click.option('--newest-only', is_flag=True, help='Only the newest snapshot of each volume')
@with_appcontext
def list_backups_command(schedule, destination, volume_name_filter, newest_only):
    """List stored snapshots, newest first."""
    try:
        schedule_config = get_backup_config(current_app.config).get(schedule)
        target = create_destination(schedule_config.destination(destination))
        artifacts = target.list_artifacts(volume_name_filter)
    except (ConfigError, DestinationError, StorageError) as e:
        raise click.ClickException(str(e))

    if newest_only:
        artifacts = newest_per_volume(artifacts)
    _echo_json([artifact.to_dict() for artifact in artifacts])


@click.command('restore-backups')
@schedule_option
@destination_option
@click.option('--volumes', default=None, help='Comma separated volume names (default: all)')
@with_appcontext
def restore_backups_command(schedule, destination, volumes):
    """Restore volumes from their newest snapshots."""
    try:
        coordinator = create_restore_coordinator(current_app.config, schedule, destination)
        records = coordinator.restore_many(parse_volume_names(volumes))
    except (ConfigError, RestoreError, StorageError) as e:
        raise click.ClickException(str(e))

    _echo_json([record.to_dict() for record in records])


@click.command('restore-volume')
@schedule_option
@destination_option
@click.option('--volume', required=True, help='Volume to restore')
@click.option('--artifact', default=None, help='Snapshot path or key (default: newest)')
@with_appcontext
def restore_volume_command(schedule, destination, volume, artifact):
    """Restore one volume."""
    try:
        coordinator = create_restore_coordinator(current_app.config, schedule, destination)
        record = coordinator.restore(volume, artifact)
    except (ConfigError, RestoreError, StorageError) as e:
        raise click.ClickException(str(e))

    _echo_json(record.to_dict())


@click.command('create-volume')
@click.option('--archive', required=True, help='Host path of a .tar.gz archive')
@click.option('--volume', required=True, help='Volume to create')
@with_appcontext
def create_volume_command(archive, volume):
    """Create a volume pre-populated from an archive."""
    try:
        record = create_archive_restorer(current_app.config, archive).create_volume_from_archive(archive, volume)
    except RestoreError as e:
        raise click.ClickException(str(e))

    _echo_json(record.to_dict())


def register_commands(app):
    for command in (run_backup_command, list_backups_command, restore_backups_command,
                    restore_volume_command, create_volume_command):
        app.cli.add_command(command)
