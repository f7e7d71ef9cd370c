"""
Django settings for the dbvault backup service.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-secret-key-change-in-production")

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv("DJANGO_DEBUG", "False") == "True"

ALLOWED_HOSTS = os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")

# Application definition
INSTALLED_APPS = [
    "apps.backups",
]

# The service keeps no ORM state: the backup root is its record. The
# protected database is configured separately below because a restore
# drops and recreates it.
DATABASES = {}

TIME_ZONE = os.getenv("TIME_ZONE", "UTC")
USE_TZ = True

# Cache (holds the per-database backup/restore lease)
CACHES = {
    "default": {
        "BACKEND": "django_redis.cache.RedisCache",
        "LOCATION": f"redis://{os.getenv('REDIS_HOST', 'localhost')}:{os.getenv('REDIS_PORT', '6379')}/{os.getenv('REDIS_DB', '0')}",
        "OPTIONS": {
            "CLIENT_CLASS": "django_redis.client.DefaultClient",
            "SOCKET_CONNECT_TIMEOUT": 5,
            "SOCKET_TIMEOUT": 5,
        },
        "KEY_PREFIX": "dbvault",
    }
}

# Database being protected. DATABASE_URL may supply any value not set here.
DATABASE_URL = os.getenv("DATABASE_URL")
DB_NAME = os.getenv("DB_NAME")
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_MAINTENANCE_NAME = os.getenv("DB_MAINTENANCE_NAME")

# Backup configuration. Unset values fall back to the defaults in
# apps.backups.conf, after any BACKUP_CONFIG_FILE.
BACKUP_CONFIG_FILE = os.getenv("BACKUP_CONFIG_FILE")
BACKUP_DIR = os.getenv("BACKUP_DIR")
BACKUP_STAGING_DIR = os.getenv("BACKUP_STAGING_DIR")
BACKUP_FILE_PREFIX = os.getenv("BACKUP_FILE_PREFIX")
BACKUP_RETENTION_DAYS = os.getenv("BACKUP_RETENTION_DAYS")
BACKUP_RETENTION_WEEKS = os.getenv("BACKUP_RETENTION_WEEKS")
BACKUP_RETENTION_MONTHS = os.getenv("BACKUP_RETENTION_MONTHS")
COMPRESSION_LEVEL = os.getenv("COMPRESSION_LEVEL")
PARALLEL_JOBS = os.getenv("PARALLEL_JOBS")
BACKUP_ENCRYPTION_KEY = os.getenv("BACKUP_ENCRYPTION_KEY")
VERIFY_BACKUP = os.getenv("VERIFY_BACKUP")
BACKUP_MIN_FREE_BYTES = os.getenv("BACKUP_MIN_FREE_BYTES")
BACKUP_LOCK_TIMEOUT = os.getenv("BACKUP_LOCK_TIMEOUT")
BACKUP_COMMAND_TIMEOUT = os.getenv("BACKUP_COMMAND_TIMEOUT")
PG_DUMP_BIN = os.getenv("PG_DUMP_BIN")
PG_RESTORE_BIN = os.getenv("PG_RESTORE_BIN")
ENVIRONMENT = os.getenv("ENVIRONMENT")

# Offsite copy (S3 compatible). Credentials come from the standard AWS
# environment variables or instance profile.
AWS_S3_BUCKET = os.getenv("AWS_S3_BUCKET")
AWS_S3_PREFIX = os.getenv("AWS_S3_PREFIX")
AWS_S3_REGION = os.getenv("AWS_S3_REGION")
AWS_S3_ENDPOINT_URL = os.getenv("AWS_S3_ENDPOINT_URL")

# Notifications
ALERT_EMAIL = os.getenv("ALERT_EMAIL")
ALERT_EMAIL_FROM = os.getenv("ALERT_EMAIL_FROM")
SLACK_WEBHOOK_URL = os.getenv("SLACK_WEBHOOK_URL")
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL")
BACKUP_ALERT_WEBHOOK_URL = os.getenv("BACKUP_ALERT_WEBHOOK_URL")

# Email
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "backups@localhost")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_USE_TLS = os.getenv("EMAIL_USE_TLS", "True") == "True"
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")

# Celery Configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 6 * 60 * 60  # dumps of large databases run for hours
CELERY_TASK_SOFT_TIME_LIMIT = 5 * 60 * 60 + 30 * 60
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_WORKER_MAX_TASKS_PER_CHILD = 100

# Logging Configuration with JSON formatting
LOG_DIR = os.getenv("LOG_DIR")
LOG_FILE_DIR = Path(LOG_DIR) if LOG_DIR else BASE_DIR / "logs"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
        },
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "level": "INFO",
            "class": "logging.StreamHandler",
            "formatter": "verbose" if DEBUG else "json",
        },
        "file": {
            "level": "INFO",
            "class": "logging.handlers.RotatingFileHandler",
            "filename": LOG_FILE_DIR / "dbvault.log",
            "maxBytes": 1024 * 1024 * 10,  # 10 MB
            "backupCount": 10,
            "formatter": "json",
        },
    },
    "root": {
        "handlers": ["console", "file"],
        "level": os.getenv("LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "apps.backups": {
            "handlers": ["console", "file"],
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "celery": {
            "handlers": ["console", "file"],
            "level": "INFO",
            "propagate": False,
        },
    },
}

# Create logs directory if it doesn't exist
LOG_FILE_DIR.mkdir(parents=True, exist_ok=True)
