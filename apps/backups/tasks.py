"""
Celery tasks for the backup system.

The beat schedule in config/celery.py invokes these tasks:
- Daily full database backup (tiered daily / weekly / monthly by date)
- Weekly verification audit of the newest artifact in each tier
- Daily retention pruning, for days when the backup itself did not run
"""

import logging

from celery import shared_task

from . import services
from .exceptions import (
    ConfigurationError,
    EnvironmentValidationError,
    IntegrityError,
    OperationInProgressError,
)

logger = logging.getLogger(__name__)

# Retrying cannot fix these; the operator has to
NON_RETRYABLE_ERRORS = (ConfigurationError, EnvironmentValidationError, IntegrityError)


@shared_task(
    bind=True,
    name="apps.backups.tasks.scheduled_database_backup",
    max_retries=3,
    default_retry_delay=300,  # 5 minutes
)
def scheduled_database_backup(self):
    """
    Take the scheduled full backup.

    Returns:
        Summary dict of the stored artifact, or None when another backup or
        restore of the database was already running
    """
    try:
        result = services.backup()

    except OperationInProgressError as e:
        logger.warning(f"Scheduled backup skipped: {e}")
        return None

    except NON_RETRYABLE_ERRORS:
        raise

    except Exception as e:
        logger.error(f"Scheduled backup failed (attempt {self.request.retries + 1}): {e}")
        raise self.retry(exc=e)

    return {
        "outcome": result.outcome.value,
        "artifact": str(result.artifact.path),
        "tier": result.artifact.tier.value,
        "size_bytes": result.artifact.size_bytes,
        "remote_uploaded": result.remote_uploaded,
        "pruned": result.prune.deleted_count if result.prune else 0,
        "duration_seconds": result.duration_seconds,
    }


@shared_task(name="apps.backups.tasks.verify_latest_backups")
def verify_latest_backups(test_restore: bool = True):
    """
    Audit the newest artifact of each tier, with a test restore by default.

    Returns:
        Verification counts and the path of the written report
    """
    run = services.verify(target="latest", test_restore=test_restore)
    return {
        "outcome": run.outcome.value,
        "counts": run.counts,
        "report": str(run.report_path) if run.report_path else None,
    }


@shared_task(name="apps.backups.tasks.prune_expired_backups")
def prune_expired_backups():
    """
    Apply the retention policy.

    Returns:
        Statistics about what was deleted
    """
    result = services.prune()
    return {
        "deleted": result.deleted_count,
        "skipped_active": len(result.skipped_active),
        "freed_bytes": result.freed_bytes,
        "errors": len(result.errors),
    }
