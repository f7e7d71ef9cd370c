"""
Celery configuration for the dbvault backup service.
"""

import os

from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("dbvault")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Celery Beat Schedule for periodic tasks
app.conf.beat_schedule = {
    # Full database backup at 2:00 AM; the date decides the tier
    "scheduled-database-backup": {
        "task": "apps.backups.tasks.scheduled_database_backup",
        "schedule": crontab(hour=2, minute=0),
        "options": {"queue": "backups", "priority": 10},
    },
    # Audit the newest backup of each tier with a test restore, Mondays at 4:00 AM
    "verify-latest-backups": {
        "task": "apps.backups.tasks.verify_latest_backups",
        "schedule": crontab(hour=4, minute=0, day_of_week=1),
        "options": {"queue": "backups", "priority": 8},
    },
    # Retention pruning at 5:00 AM, so expired backups go even if a backup run failed
    "prune-expired-backups": {
        "task": "apps.backups.tasks.prune_expired_backups",
        "schedule": crontab(hour=5, minute=0),
        "options": {"queue": "backups", "priority": 5},
    },
}

app.conf.task_routes = {
    "apps.backups.tasks.*": {"queue": "backups"},
}
