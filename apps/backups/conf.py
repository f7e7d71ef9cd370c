"""
Configuration loading and environment preflight for the backup system.

Settings are merged from four layers, lowest precedence first:

1. Built-in defaults (DEFAULTS below)
2. An optional config file in dotenv format (BACKUP_CONFIG_FILE)
3. Django settings, which config/settings.py reads from the environment
4. Explicit overrides, usually command-line flags

The result is an immutable BackupConfig handed to every pipeline step.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote, urlparse

from django.conf import settings

from dotenv import dotenv_values

from .artifacts import RetentionPolicy, Tier
from .exceptions import ConfigurationError, EnvironmentValidationError

logger = logging.getLogger(__name__)

# Every setting the loader understands, with its default (None = unset)
DEFAULTS: Dict[str, Optional[str]] = {
    "DATABASE_URL": None,
    "DB_NAME": None,
    "DB_HOST": "localhost",
    "DB_PORT": "5432",
    "DB_USER": "postgres",
    "DB_PASSWORD": "",
    "DB_MAINTENANCE_NAME": "postgres",
    "BACKUP_DIR": "/var/backups/postgresql",
    "LOG_DIR": None,
    "BACKUP_STAGING_DIR": None,
    "BACKUP_FILE_PREFIX": None,
    "BACKUP_RETENTION_DAYS": "7",
    "BACKUP_RETENTION_WEEKS": "4",
    "BACKUP_RETENTION_MONTHS": "12",
    "COMPRESSION_LEVEL": "6",
    "PARALLEL_JOBS": "4",
    "BACKUP_ENCRYPTION_KEY": None,
    "VERIFY_BACKUP": "true",
    "BACKUP_MIN_FREE_BYTES": str(1024 * 1024 * 1024),
    "BACKUP_LOCK_TIMEOUT": str(6 * 60 * 60),
    "BACKUP_COMMAND_TIMEOUT": str(4 * 60 * 60),
    "PG_DUMP_BIN": "pg_dump",
    "PG_RESTORE_BIN": "pg_restore",
    "AWS_S3_BUCKET": None,
    "AWS_S3_PREFIX": "database-backups/",
    "AWS_S3_REGION": "us-east-1",
    "AWS_S3_ENDPOINT_URL": None,
    "ALERT_EMAIL": None,
    "ALERT_EMAIL_FROM": "backups@localhost",
    "SLACK_WEBHOOK_URL": None,
    "DISCORD_WEBHOOK_URL": None,
    "BACKUP_ALERT_WEBHOOK_URL": None,
    "ENVIRONMENT": "production",
}

TRUE_VALUES = ("1", "true", "yes", "on")

# Fixed thresholds used by verification and staging cleanup
SIZE_FLOOR_BYTES = 1024
AGE_WARNING_DAYS = 30
STAGING_MAX_AGE_DAYS = 1


@dataclass(frozen=True)
class DatabaseTarget:
    """Connection parameters of the database being protected."""

    name: str
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = field(default="", repr=False)
    maintenance_db: str = "postgres"

    @property
    def lock_key(self) -> str:
        return f"{self.host}:{self.port}:{self.name}"


@dataclass(frozen=True)
class BackupConfig:
    database: DatabaseTarget
    backup_root: Path
    log_dir: Path
    staging_dir: Path
    file_prefix: str
    retention: RetentionPolicy = RetentionPolicy()
    compression_level: int = 6
    parallel_jobs: int = 4
    encryption_key: Optional[str] = field(default=None, repr=False)
    verify_backup: bool = True
    min_free_bytes: int = 1024 * 1024 * 1024
    lock_timeout: int = 6 * 60 * 60
    command_timeout: int = 4 * 60 * 60
    pg_dump_bin: str = "pg_dump"
    pg_restore_bin: str = "pg_restore"
    s3_bucket: Optional[str] = None
    s3_prefix: str = "database-backups/"
    s3_region: str = "us-east-1"
    s3_endpoint_url: Optional[str] = None
    alert_email: Optional[str] = None
    alert_email_from: str = "backups@localhost"
    slack_webhook_url: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    alert_webhook_url: Optional[str] = None
    environment: str = "production"
    size_floor_bytes: int = SIZE_FLOOR_BYTES
    age_warning_days: int = AGE_WARNING_DAYS
    staging_max_age_days: int = STAGING_MAX_AGE_DAYS

    def tier_dir(self, tier: Tier) -> Path:
        return self.backup_root / tier.value

    @property
    def encryption_enabled(self) -> bool:
        return bool(self.encryption_key)

    @property
    def remote_enabled(self) -> bool:
        return bool(self.s3_bucket)

    @property
    def notification_channels(self) -> List[str]:
        channels = []
        if self.alert_email:
            channels.append("email")
        if self.slack_webhook_url:
            channels.append("slack")
        if self.discord_webhook_url:
            channels.append("discord")
        if self.alert_webhook_url:
            channels.append("webhook")
        return channels


@dataclass
class EnvironmentReport:
    """Outcome of validate_environment()."""

    tools: Dict[str, str]
    free_bytes: int
    encryption_enabled: bool
    remote_enabled: bool
    notification_channels: List[str]
    warnings: List[str] = field(default_factory=list)


def _setting(name: str) -> Optional[str]:
    if hasattr(settings, name):
        return getattr(settings, name)
    return os.environ.get(name)


def _merge_layers(config_file: Optional[str], overrides: Dict[str, object]) -> Dict[str, Optional[str]]:
    values = dict(DEFAULTS)

    file_path = config_file or _setting("BACKUP_CONFIG_FILE")
    if file_path:
        if not Path(file_path).is_file():
            raise ConfigurationError(f"Config file not found: {file_path}")
        logger.debug(f"Loading backup config file {file_path}")
        for key, value in dotenv_values(file_path).items():
            if key in values and value not in (None, ""):
                values[key] = value

    for key in DEFAULTS:
        value = _setting(key)
        if value not in (None, ""):
            values[key] = value

    for key, value in overrides.items():
        name = key.upper()
        if name not in DEFAULTS:
            raise ConfigurationError(f"Unknown configuration override: {key}")
        if value is not None:
            values[name] = value

    return values


def _as_int(values: Dict[str, Optional[str]], name: str, minimum: int, maximum: Optional[int] = None) -> int:
    raw = values[name]
    try:
        number = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e

    if number < minimum or (maximum is not None and number > maximum):
        bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ConfigurationError(f"{name} must be {bounds}, got {number}")
    return number


def _as_bool(value: Optional[object]) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


def _database_target(values: Dict[str, Optional[str]]) -> DatabaseTarget:
    url_parts = {}
    if values["DATABASE_URL"]:
        parsed = urlparse(values["DATABASE_URL"])
        if parsed.scheme not in ("postgres", "postgresql"):
            raise ConfigurationError(f"Unsupported DATABASE_URL scheme: {parsed.scheme!r}")
        url_parts = {
            "DB_NAME": parsed.path.lstrip("/") or None,
            "DB_HOST": parsed.hostname,
            "DB_PORT": str(parsed.port) if parsed.port else None,
            "DB_USER": unquote(parsed.username) if parsed.username else None,
            "DB_PASSWORD": unquote(parsed.password) if parsed.password else None,
        }

    # Explicit DB_* values win over DATABASE_URL, which wins over defaults
    def pick(name):
        explicit = values[name]
        if explicit != DEFAULTS[name]:
            return explicit
        return url_parts.get(name) or explicit

    name = pick("DB_NAME")
    if not name:
        raise ConfigurationError("Database name is not configured (set DB_NAME or DATABASE_URL)")

    return DatabaseTarget(
        name=name,
        host=pick("DB_HOST"),
        port=_as_int({"DB_PORT": pick("DB_PORT")}, "DB_PORT", 1, 65535),
        user=pick("DB_USER"),
        password=pick("DB_PASSWORD") or "",
        maintenance_db=values["DB_MAINTENANCE_NAME"],
    )


def load_config(config_file: Optional[str] = None, **overrides) -> BackupConfig:
    """
    Build the effective backup configuration.

    Args:
        config_file: Optional dotenv-format file layered above the defaults
        **overrides: Setting names (any case) mapped to explicit values.
            None values are ignored.

    Returns:
        Immutable BackupConfig

    Raises:
        ConfigurationError: If a required value is missing or a value is invalid
    """
    values = _merge_layers(config_file, overrides)
    database = _database_target(values)

    backup_root = Path(values["BACKUP_DIR"]).expanduser()
    log_dir = Path(values["LOG_DIR"]).expanduser() if values["LOG_DIR"] else backup_root / "logs"
    staging_dir = (
        Path(values["BACKUP_STAGING_DIR"]).expanduser()
        if values["BACKUP_STAGING_DIR"]
        else backup_root / ".staging"
    )

    retention = RetentionPolicy(
        daily_days=_as_int(values, "BACKUP_RETENTION_DAYS", 1),
        weekly_weeks=_as_int(values, "BACKUP_RETENTION_WEEKS", 1),
        monthly_months=_as_int(values, "BACKUP_RETENTION_MONTHS", 1),
    )

    return BackupConfig(
        database=database,
        backup_root=backup_root,
        log_dir=log_dir,
        staging_dir=staging_dir,
        file_prefix=values["BACKUP_FILE_PREFIX"] or database.name,
        retention=retention,
        compression_level=_as_int(values, "COMPRESSION_LEVEL", 1, 9),
        parallel_jobs=_as_int(values, "PARALLEL_JOBS", 1),
        encryption_key=values["BACKUP_ENCRYPTION_KEY"] or None,
        verify_backup=_as_bool(values["VERIFY_BACKUP"]),
        min_free_bytes=_as_int(values, "BACKUP_MIN_FREE_BYTES", 0),
        lock_timeout=_as_int(values, "BACKUP_LOCK_TIMEOUT", 1),
        command_timeout=_as_int(values, "BACKUP_COMMAND_TIMEOUT", 1),
        pg_dump_bin=values["PG_DUMP_BIN"],
        pg_restore_bin=values["PG_RESTORE_BIN"],
        s3_bucket=values["AWS_S3_BUCKET"] or None,
        s3_prefix=values["AWS_S3_PREFIX"] or "",
        s3_region=values["AWS_S3_REGION"],
        s3_endpoint_url=values["AWS_S3_ENDPOINT_URL"] or None,
        alert_email=values["ALERT_EMAIL"] or None,
        alert_email_from=values["ALERT_EMAIL_FROM"],
        slack_webhook_url=values["SLACK_WEBHOOK_URL"] or None,
        discord_webhook_url=values["DISCORD_WEBHOOK_URL"] or None,
        alert_webhook_url=values["BACKUP_ALERT_WEBHOOK_URL"] or None,
        environment=values["ENVIRONMENT"],
    )


def _ensure_writable_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise EnvironmentValidationError(f"Cannot create directory {path}: {e}") from e

    if not os.access(path, os.W_OK | os.X_OK):
        raise EnvironmentValidationError(f"Directory is not writable: {path}")


def validate_environment(config: BackupConfig) -> EnvironmentReport:
    """
    Preflight checks run before any backup or restore work.

    Required tools must be on PATH, the tier, log and staging directories
    must exist (they are created if absent) and be writable, and the
    staging area must have at least ``min_free_bytes`` free. Optional
    subsystems that are not configured are reported as disabled.

    Args:
        config: Effective configuration

    Returns:
        EnvironmentReport describing the environment

    Raises:
        EnvironmentValidationError: If a fatal precondition is not met
    """
    tools = {}
    for tool in (config.pg_dump_bin, config.pg_restore_bin):
        resolved = shutil.which(tool)
        if not resolved:
            raise EnvironmentValidationError(f"Required tool not found on PATH: {tool}")
        tools[tool] = resolved

    for directory in [config.tier_dir(tier) for tier in Tier] + [config.log_dir, config.staging_dir]:
        _ensure_writable_dir(directory)

    free_bytes = shutil.disk_usage(config.staging_dir).free
    if free_bytes < config.min_free_bytes:
        raise EnvironmentValidationError(
            f"Insufficient disk space in {config.staging_dir}: "
            f"{free_bytes} bytes free, {config.min_free_bytes} required"
        )

    report = EnvironmentReport(
        tools=tools,
        free_bytes=free_bytes,
        encryption_enabled=config.encryption_enabled,
        remote_enabled=config.remote_enabled,
        notification_channels=config.notification_channels,
    )

    if not report.encryption_enabled:
        report.warnings.append("Encryption disabled: BACKUP_ENCRYPTION_KEY is not set")
    if not report.remote_enabled:
        logger.info("Remote storage disabled: AWS_S3_BUCKET is not set")
    if not report.notification_channels:
        report.warnings.append("No notification channels configured")

    for warning in report.warnings:
        logger.warning(warning)

    return report


def describe_config(config: BackupConfig) -> Dict[str, str]:
    """Operator facing summary of the configuration. Secrets are never included."""
    db = config.database
    return {
        "database": f"{db.user}@{db.host}:{db.port}/{db.name}",
        "backup_root": str(config.backup_root),
        "log_dir": str(config.log_dir),
        "staging_dir": str(config.staging_dir),
        "file_prefix": config.file_prefix,
        "retention": (
            f"{config.retention.daily_days} days / {config.retention.weekly_weeks} weeks / "
            f"{config.retention.monthly_months} months"
        ),
        "compression_level": str(config.compression_level),
        "parallel_jobs": str(config.parallel_jobs),
        "encryption": "enabled" if config.encryption_enabled else "disabled",
        "verify_backup": "yes" if config.verify_backup else "no",
        "remote_storage": (
            f"s3://{config.s3_bucket}/{config.s3_prefix}" if config.remote_enabled else "disabled"
        ),
        "notifications": ", ".join(config.notification_channels) or "none",
        "environment": config.environment,
    }
