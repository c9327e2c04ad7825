import os


class Config:
    """Base configuration"""

    # Schedules (YAML)
    BACKUP_CONFIG_PATH = os.environ.get('BACKUP_CONFIG_PATH') or '/etc/docker-volume-backup/config.yml'

    # Container runtime
    LABEL_PREFIX = os.environ.get('LABEL_PREFIX') or 'docker-volume-backup'
    HELPER_IMAGE = os.environ.get('HELPER_IMAGE') or 'busybox:latest'
    HELPER_TIMEOUT_SECONDS = int(os.environ.get('HELPER_TIMEOUT_SECONDS') or 3600)
    STOP_TIMEOUT_SECONDS = int(os.environ.get('STOP_TIMEOUT_SECONDS') or 30)

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_MISFIRE_GRACE_SECONDS = 300


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    BACKUP_CONFIG_PATH = os.environ.get('BACKUP_CONFIG_PATH') or os.path.join(DATA_DIR, 'config.yml')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration: no scheduler thread, logs under the temp dir"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    LOG_DIR = os.path.join(os.environ.get('TMPDIR', '/tmp'), 'docker-volume-backup-tests', 'logs')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
