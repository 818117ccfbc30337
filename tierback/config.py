import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
DATA_DIR = os.environ.get('DATA_DIR') or os.path.join(BASE_DIR, 'data')

LAYOUTS = ('tiered', 'collapsing')
STORAGE_BACKENDS = ('s3', 'local')
FILES_SOURCE_TYPES = ('local', 'ssh')


class Config:
    """Base configuration"""

    # Sources
    FILES_SOURCES = os.environ.get('FILES_SOURCES', '')
    FILES_SOURCE_TYPE = os.environ.get('FILES_SOURCE_TYPE') or 'local'
    FILES_COMPRESSION = os.environ.get('FILES_COMPRESSION') or 'tar.gz'
    FILES_RETENTION_LAYOUT = os.environ.get('FILES_RETENTION_LAYOUT') or 'collapsing'
    FILES_NAME_PATTERN = os.environ.get('FILES_NAME_PATTERN')

    SSH_HOST = os.environ.get('SSH_HOST')
    SSH_PORT = os.environ.get('SSH_PORT') or 22
    SSH_USERNAME = os.environ.get('SSH_USERNAME')
    SSH_PASSWORD = os.environ.get('SSH_PASSWORD')
    SSH_PRIVATE_KEY = os.environ.get('SSH_PRIVATE_KEY')

    DATABASE_SOURCES = os.environ.get('DATABASE_SOURCES', '')
    DATABASE_RETENTION_LAYOUT = os.environ.get('DATABASE_RETENTION_LAYOUT') or 'tiered'
    DATABASE_NAME_PATTERN = os.environ.get('DATABASE_NAME_PATTERN') or '*.sql.gz'

    MYSQL_HOST = os.environ.get('MYSQL_HOST') or '127.0.0.1'
    MYSQL_PORT = os.environ.get('MYSQL_PORT') or 3306
    MYSQL_USER = os.environ.get('MYSQL_USER') or 'backupuser'
    MYSQL_PASSWORD = os.environ.get('MYSQL_PASSWORD')
    MYSQLDUMP_CMD = os.environ.get('MYSQLDUMP_CMD') or 'mysqldump'
    DUMP_TIMEOUT_SECONDS = os.environ.get('DUMP_TIMEOUT_SECONDS') or 3600

    # Storage
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND') or 's3'
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    LOCAL_STORAGE_DIR = os.environ.get('LOCAL_STORAGE_DIR') or os.path.join(DATA_DIR, 'storage')
    STORAGE_PREFIX = os.environ.get('STORAGE_PREFIX', '')
    WEEKLY_PREFIX = os.environ.get('WEEKLY_PREFIX') or 'weekly'
    MONTHLY_PREFIX = os.environ.get('MONTHLY_PREFIX') or 'monthly'

    # Retention (per-tier-prefix layout)
    DAILY_DELETE_AGE_DAYS = os.environ.get('DAILY_DELETE_AGE_DAYS') or 8
    WEEKLY_DELETE_AGE_DAYS = os.environ.get('WEEKLY_DELETE_AGE_DAYS') or 5 * 7
    MONTHLY_DELETE_AGE_MONTHS = os.environ.get('MONTHLY_DELETE_AGE_MONTHS') or 6

    # Retention (single shared prefix layout)
    COLLAPSE_DAILY_DAYS = os.environ.get('COLLAPSE_DAILY_DAYS') or 7
    COLLAPSE_WEEKLY_DAYS = os.environ.get('COLLAPSE_WEEKLY_DAYS') or 28
    COLLAPSE_MONTHLY_DAYS = os.environ.get('COLLAPSE_MONTHLY_DAYS') or 180

    # Tier calendar
    WEEKLY_DAY = os.environ.get('WEEKLY_DAY') or 6  # ISO weekday, 6 = Saturday
    MONTHLY_DAY = os.environ.get('MONTHLY_DAY') or 1

    # Working directories
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON') or '0 3 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND') or 'local'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    STORAGE_BACKEND = 'local'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid. Fatal before any run starts."""
    pass


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(',')
    return [item.strip() for item in value if item and item.strip()]


def _as_int(cfg: Mapping[str, Any], key: str, minimum: Optional[int] = None,
            maximum: Optional[int] = None) -> int:
    raw = cfg.get(key)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")

    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigurationError(f"{key} must be <= {maximum}, got {value}")
    return value


def _as_choice(cfg: Mapping[str, Any], key: str, choices) -> str:
    value = str(cfg.get(key) or '').strip().lower()
    if value not in choices:
        raise ConfigurationError(f"{key} must be one of {', '.join(choices)}, got {value!r}")
    return value


@dataclass(frozen=True)
class Settings:
    """Validated, typed view of the backup configuration."""
    files_sources: List[str] = field(default_factory=list)
    files_source_type: str = 'local'
    files_compression: str = 'tar.gz'
    files_layout: str = 'collapsing'
    files_name_pattern: str = '*-files-*.tar.gz'
    ssh_host: Optional[str] = None
    ssh_port: int = 22
    ssh_username: Optional[str] = None
    ssh_password: Optional[str] = None
    ssh_private_key: Optional[str] = None

    database_sources: List[str] = field(default_factory=list)
    database_layout: str = 'tiered'
    database_name_pattern: str = '*.sql.gz'
    mysql_host: str = '127.0.0.1'
    mysql_port: int = 3306
    mysql_user: str = 'backupuser'
    mysql_password: Optional[str] = None
    mysqldump_cmd: str = 'mysqldump'
    dump_timeout_seconds: int = 3600

    storage_backend: str = 's3'
    s3_bucket: Optional[str] = None
    s3_region: str = 'us-east-1'
    s3_endpoint_url: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    local_storage_dir: str = ''
    storage_prefix: str = ''
    weekly_prefix: str = 'weekly'
    monthly_prefix: str = 'monthly'

    daily_delete_age_days: int = 8
    weekly_delete_age_days: int = 35
    monthly_delete_age_months: int = 6
    collapse_daily_days: int = 7
    collapse_weekly_days: int = 28
    collapse_monthly_days: int = 180
    weekly_day: int = 6
    monthly_day: int = 1

    temp_dir: str = ''

    def ssh_config(self) -> Dict[str, Any]:
        return {
            'host': self.ssh_host,
            'port': self.ssh_port,
            'username': self.ssh_username,
            'password': self.ssh_password,
            'private_key': self.ssh_private_key,
        }


def load_settings(cfg: Mapping[str, Any]) -> Settings:
    """
    Parse and validate backup settings from a config mapping.

    Args:
        cfg: Flask app.config or any mapping with the Config keys

    Returns:
        Settings instance

    Raises:
        ConfigurationError: On the first missing or invalid value
    """
    from tierback.backup.compression import archive_extension

    files_sources = _as_list(cfg.get('FILES_SOURCES'))
    database_sources = _as_list(cfg.get('DATABASE_SOURCES'))
    if not files_sources and not database_sources:
        raise ConfigurationError("No sources configured: set FILES_SOURCES and/or DATABASE_SOURCES")

    files_source_type = _as_choice(cfg, 'FILES_SOURCE_TYPE', FILES_SOURCE_TYPES)
    files_compression = str(cfg.get('FILES_COMPRESSION') or 'tar.gz')
    try:
        extension = archive_extension(files_compression)
    except ValueError as e:
        raise ConfigurationError(f"FILES_COMPRESSION: {e}")

    if files_sources and files_source_type == 'ssh':
        if not cfg.get('SSH_HOST') or not cfg.get('SSH_USERNAME'):
            raise ConfigurationError("SSH_HOST and SSH_USERNAME are required for ssh file sources")
        if not cfg.get('SSH_PASSWORD') and not cfg.get('SSH_PRIVATE_KEY'):
            raise ConfigurationError("SSH_PASSWORD or SSH_PRIVATE_KEY is required for ssh file sources")

    storage_backend = _as_choice(cfg, 'STORAGE_BACKEND', STORAGE_BACKENDS)
    if storage_backend == 's3' and not cfg.get('S3_BUCKET'):
        raise ConfigurationError("S3_BUCKET is required when STORAGE_BACKEND is s3")
    if storage_backend == 'local' and not cfg.get('LOCAL_STORAGE_DIR'):
        raise ConfigurationError("LOCAL_STORAGE_DIR is required when STORAGE_BACKEND is local")

    collapse_daily = _as_int(cfg, 'COLLAPSE_DAILY_DAYS', minimum=0)
    collapse_weekly = _as_int(cfg, 'COLLAPSE_WEEKLY_DAYS', minimum=0)
    collapse_monthly = _as_int(cfg, 'COLLAPSE_MONTHLY_DAYS', minimum=0)
    if not collapse_daily < collapse_weekly < collapse_monthly:
        raise ConfigurationError(
            "COLLAPSE_DAILY_DAYS < COLLAPSE_WEEKLY_DAYS < COLLAPSE_MONTHLY_DAYS must hold"
        )

    return Settings(
        files_sources=files_sources,
        files_source_type=files_source_type,
        files_compression=files_compression,
        files_layout=_as_choice(cfg, 'FILES_RETENTION_LAYOUT', LAYOUTS),
        files_name_pattern=cfg.get('FILES_NAME_PATTERN') or f"*-files-*.{extension}",
        ssh_host=cfg.get('SSH_HOST'),
        ssh_port=_as_int(cfg, 'SSH_PORT', minimum=1, maximum=65535),
        ssh_username=cfg.get('SSH_USERNAME'),
        ssh_password=cfg.get('SSH_PASSWORD'),
        ssh_private_key=cfg.get('SSH_PRIVATE_KEY'),
        database_sources=database_sources,
        database_layout=_as_choice(cfg, 'DATABASE_RETENTION_LAYOUT', LAYOUTS),
        database_name_pattern=cfg.get('DATABASE_NAME_PATTERN') or '*.sql.gz',
        mysql_host=cfg.get('MYSQL_HOST') or '127.0.0.1',
        mysql_port=_as_int(cfg, 'MYSQL_PORT', minimum=1, maximum=65535),
        mysql_user=cfg.get('MYSQL_USER') or 'backupuser',
        mysql_password=cfg.get('MYSQL_PASSWORD'),
        mysqldump_cmd=cfg.get('MYSQLDUMP_CMD') or 'mysqldump',
        dump_timeout_seconds=_as_int(cfg, 'DUMP_TIMEOUT_SECONDS', minimum=1),
        storage_backend=storage_backend,
        s3_bucket=cfg.get('S3_BUCKET'),
        s3_region=cfg.get('S3_REGION') or 'us-east-1',
        s3_endpoint_url=cfg.get('S3_ENDPOINT_URL'),
        aws_access_key_id=cfg.get('AWS_ACCESS_KEY_ID'),
        aws_secret_access_key=cfg.get('AWS_SECRET_ACCESS_KEY'),
        local_storage_dir=cfg.get('LOCAL_STORAGE_DIR') or '',
        storage_prefix=(cfg.get('STORAGE_PREFIX') or '').strip('/'),
        weekly_prefix=(cfg.get('WEEKLY_PREFIX') or 'weekly').strip('/'),
        monthly_prefix=(cfg.get('MONTHLY_PREFIX') or 'monthly').strip('/'),
        daily_delete_age_days=_as_int(cfg, 'DAILY_DELETE_AGE_DAYS', minimum=1),
        weekly_delete_age_days=_as_int(cfg, 'WEEKLY_DELETE_AGE_DAYS', minimum=1),
        monthly_delete_age_months=_as_int(cfg, 'MONTHLY_DELETE_AGE_MONTHS', minimum=1),
        collapse_daily_days=collapse_daily,
        collapse_weekly_days=collapse_weekly,
        collapse_monthly_days=collapse_monthly,
        weekly_day=_as_int(cfg, 'WEEKLY_DAY', minimum=1, maximum=7),
        monthly_day=_as_int(cfg, 'MONTHLY_DAY', minimum=1, maximum=31),
        temp_dir=cfg.get('TEMP_DIR') or '',
    )
