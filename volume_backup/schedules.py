"""
Backup schedule configuration.

Schedules are declared in a YAML document:

    periodic_backups:
      - name: nightly
        schedule: "0 2 * * *"
        schedule_key: nightly
        backups:
          - name: local
            type: filesystem
            filesystem_options:
              host_path: /backups
            retention:
              max_age_days: 7
          - name: offsite
            type: s3
            s3_options:
              host_path: /backups
              aws_bucket: volume-backups
            retention: keep_newest_only

Each destination carries its own retention policy. When omitted, filesystem
destinations keep everything and s3 destinations keep only the newest
snapshot of each volume.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml
from apscheduler.triggers.cron import CronTrigger

from .models import RetentionPolicy


DESTINATION_TYPES = ('filesystem', 's3')


class ConfigError(Exception):
    """Raised when the schedule configuration is missing or invalid."""
    pass


@dataclass
class FilesystemOptions:
    host_path: str


@dataclass
class S3Options:
    """S3 settings; unset values fall back to the AWS_* environment variables."""
    host_path: str
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_default_region: Optional[str] = None
    aws_bucket: Optional[str] = None
    aws_endpoint: Optional[str] = None

    def with_env_defaults(self) -> 'S3Options':
        return S3Options(
            host_path=self.host_path,
            aws_access_key_id=self.aws_access_key_id or os.environ.get('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=self.aws_secret_access_key or os.environ.get('AWS_SECRET_ACCESS_KEY'),
            aws_default_region=self.aws_default_region or os.environ.get('AWS_DEFAULT_REGION'),
            aws_bucket=self.aws_bucket or os.environ.get('AWS_BUCKET'),
            aws_endpoint=self.aws_endpoint or os.environ.get('AWS_ENDPOINT'),
        )


@dataclass
class DestinationConfig:
    name: str
    type: str
    retention: RetentionPolicy
    filesystem_options: Optional[FilesystemOptions] = None
    s3_options: Optional[S3Options] = None

    @property
    def host_path(self) -> str:
        options = self.filesystem_options if self.type == 'filesystem' else self.s3_options
        return options.host_path


@dataclass
class ScheduleConfig:
    name: str
    schedule: str
    schedule_key: Optional[str] = None
    backups: List[DestinationConfig] = field(default_factory=list)

    def destination(self, name: Optional[str] = None) -> DestinationConfig:
        """
        Find a destination by name, or the first one when name is None.

        Raises:
            ConfigError: If no such destination exists
        """
        if not self.backups:
            raise ConfigError(f"Schedule '{self.name}' has no destinations")
        if name is None:
            return self.backups[0]
        for backup in self.backups:
            if backup.name == name:
                return backup
        raise ConfigError(f"Schedule '{self.name}' has no destination named '{name}'")


@dataclass
class BackupConfig:
    periodic_backups: List[ScheduleConfig] = field(default_factory=list)

    def get(self, name: Optional[str] = None) -> ScheduleConfig:
        """
        Find a schedule by name, or the only/first one when name is None.

        Raises:
            ConfigError: If no such schedule exists
        """
        if not self.periodic_backups:
            raise ConfigError("No periodic backups configured")
        if name is None:
            return self.periodic_backups[0]
        for schedule in self.periodic_backups:
            if schedule.name == name:
                return schedule
        raise ConfigError(f"Unknown schedule: {name}")


def parse_retention(value: Any, destination_type: str, where: str) -> RetentionPolicy:
    """
    Parse a retention setting.

    Accepts None (type default), 'keep_newest_only', an integer number of
    days, or a mapping with either keep_newest_only or max_age_days.
    """
    if value is None:
        if destination_type == 's3':
            return RetentionPolicy.newest_only()
        return RetentionPolicy.max_age(0)

    try:
        if value == 'keep_newest_only':
            return RetentionPolicy.newest_only()
        if isinstance(value, bool):
            raise ValueError(f"unsupported retention value {value!r}")
        if isinstance(value, int):
            return RetentionPolicy.max_age(value)
        if isinstance(value, dict):
            unknown = set(value) - {'keep_newest_only', 'max_age_days'}
            if unknown:
                raise ValueError(f"unknown retention keys {sorted(unknown)}")
            return RetentionPolicy(
                keep_newest_only=bool(value.get('keep_newest_only', False)),
                max_age_days=int(value.get('max_age_days', 0)),
            )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{where}: invalid retention: {e}")

    raise ConfigError(f"{where}: invalid retention: {value!r}")


def _parse_destination(data: Dict[str, Any], where: str) -> DestinationConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected a mapping")

    destination_type = data.get('type')
    if destination_type not in DESTINATION_TYPES:
        raise ConfigError(
            f"{where}: unknown backup type {destination_type!r}. "
            f"Valid options: {list(DESTINATION_TYPES)}"
        )
    name = data.get('name') or destination_type
    where = f"{where} ({name})"
    retention = parse_retention(data.get('retention'), destination_type, where)

    if destination_type == 'filesystem':
        options = data.get('filesystem_options') or {}
        if not isinstance(options, dict):
            raise ConfigError(f"{where}: filesystem_options must be a mapping")
        if not options.get('host_path'):
            raise ConfigError(f"{where}: filesystem_options.host_path is required")
        return DestinationConfig(
            name=name,
            type=destination_type,
            retention=retention,
            filesystem_options=FilesystemOptions(host_path=options['host_path']),
        )

    options = data.get('s3_options') or {}
    if not isinstance(options, dict):
        raise ConfigError(f"{where}: s3_options must be a mapping")
    if not options.get('host_path'):
        raise ConfigError(f"{where}: s3_options.host_path is required")
    try:
        s3_options = S3Options(**options)
    except TypeError as e:
        raise ConfigError(f"{where}: invalid s3_options: {e}")
    return DestinationConfig(
        name=name,
        type=destination_type,
        retention=retention,
        s3_options=s3_options,
    )


def _parse_schedule(data: Dict[str, Any], index: int) -> ScheduleConfig:
    where = f"periodic_backups[{index}]"
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected a mapping")

    name = data.get('name')
    if not name:
        raise ConfigError(f"{where}: name is required")
    where = f"{where} ({name})"

    cron = data.get('schedule')
    if not cron:
        raise ConfigError(f"{where}: schedule is required")
    try:
        CronTrigger.from_crontab(cron, timezone='UTC')
    except ValueError as e:
        raise ConfigError(f"{where}: invalid cron expression {cron!r}: {e}")

    backups = data.get('backups') or []
    if not backups:
        raise ConfigError(f"{where}: at least one backup destination is required")

    return ScheduleConfig(
        name=name,
        schedule=cron,
        schedule_key=data.get('schedule_key') or None,
        backups=[
            _parse_destination(item, f"{where}.backups[{i}]")
            for i, item in enumerate(backups)
        ],
    )


def parse_config(data: Optional[Dict[str, Any]]) -> BackupConfig:
    """
    Build a BackupConfig from an already parsed YAML document.

    Raises:
        ConfigError: If the document is invalid
    """
    if data is None:
        return BackupConfig()
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    schedules = [
        _parse_schedule(item, index)
        for index, item in enumerate(data.get('periodic_backups') or [])
    ]
    names = [schedule.name for schedule in schedules]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate schedule names: {duplicates}")
    return BackupConfig(periodic_backups=schedules)


def load_config(path: str) -> BackupConfig:
    """
    Load schedules from a YAML file.

    Raises:
        ConfigError: If the file cannot be read or is invalid
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read configuration {path}: {e}")

    return parse_config(data)
