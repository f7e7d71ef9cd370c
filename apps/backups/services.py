"""
Service layer for backup operations.

This module provides the entry points used by the management commands and
the Celery tasks:
- backup(): dump, compress, encrypt, verify, store, copy offsite, prune
- restore(): run a restore session under the database lease
- verify(): audit one, all or the latest artifacts and write a report
- list_backups(): artifacts per tier

Each entry point writes its own run log and sends a notification when it
finishes, whether it succeeded or not.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .artifacts import (
    BackupArtifact,
    Outcome,
    Tier,
    VerificationStatus,
    artifact_from_path,
    checksum_path_for,
    dump_basename,
    format_timestamp,
    list_artifacts,
)
from .conf import BackupConfig, load_config, validate_environment
from .database import PostgresServer
from .dump import create_artifact_file
from .exceptions import BackupError, StorageError
from .locks import operation_lock
from .notifications import RunSummary, dispatch
from .restore import ConfirmCallback, RestoreEngine
from .retention import PruneResult, classify_tier, prune_expired, prune_staging
from .runlog import run_log
from .sessions import RestoreSession
from .storage import get_remote_storage
from .verification import (
    AUDIT,
    LIGHTWEIGHT,
    VerificationReport,
    VerificationRun,
    persist_report,
    require_valid,
    select_targets,
    verify_artifact,
    verify_many,
    write_report,
)

logger = logging.getLogger(__name__)


@dataclass
class BackupResult:
    outcome: Outcome
    artifact: BackupArtifact
    report: Optional[VerificationReport] = None
    remote_uploaded: Optional[bool] = None
    prune: Optional[PruneResult] = None
    notifications: Dict[str, bool] = field(default_factory=dict)
    log_path: Optional[Path] = None
    duration_seconds: float = 0.0


def _notify_failure(config: BackupConfig, operation: str, error: Exception, database: str, artifact=None):
    step = getattr(error, "step", None) or "unexpected"
    summary = RunSummary(
        operation=operation,
        outcome=Outcome.FAILURE,
        database=database,
        message=f"{operation.capitalize()} failed: {error}",
        artifact=str(artifact) if artifact else None,
        step=step,
        environment=config.environment,
    )
    return dispatch(summary, config)


def _move_into_tier(staged: Path, directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    final = directory / staged.name
    sidecar = checksum_path_for(staged)
    if sidecar.exists():
        shutil.move(str(sidecar), str(checksum_path_for(final)))
    shutil.move(str(staged), str(final))
    return final


def backup(config: Optional[BackupConfig] = None, server: Optional[PostgresServer] = None) -> BackupResult:  # noqa: C901
    """
    Take a full backup of the configured database.

    Pipeline: lock -> preflight -> dump -> compress -> encrypt -> checksum ->
    verify -> move into tier directory -> offsite copy -> prune -> notify.
    Any error removes the staged output, sends a failure notification
    naming the failed step, and is re-raised.

    Args:
        config: Effective configuration (loaded from settings if omitted)
        server: PostgresServer to dump from (built from config if omitted)

    Returns:
        BackupResult with the stored artifact and run outcome

    Raises:
        BackupError: If any required step fails
    """
    config = config or load_config()
    server = server or PostgresServer.from_config(config)
    database = config.database.name
    started = datetime.now()
    staged_dir = None
    artifact_name = None

    with run_log(config.log_dir, "backup") as log_path:
        logger.info("=" * 80)
        logger.info(f"Starting backup of {database} at {started.isoformat()}")
        logger.info("=" * 80)

        try:
            with operation_lock(config.database, "backup", timeout=config.lock_timeout):
                validate_environment(config)

                timestamp = format_timestamp(started)
                tier = classify_tier(started.date())
                basename = dump_basename(config.file_prefix, timestamp)
                artifact_name = basename
                logger.info(f"Backup tier: {tier.value}")

                staged_dir = Path(tempfile.mkdtemp(prefix=f"backup_{timestamp}_", dir=config.staging_dir))
                staged = create_artifact_file(
                    server,
                    database,
                    staged_dir,
                    basename,
                    jobs=config.parallel_jobs,
                    compression_level=config.compression_level,
                    encryption_key=config.encryption_key,
                )
                artifact_name = staged.name

                report = None
                if config.verify_backup:
                    report = verify_artifact(artifact_from_path(staged, tier), config, mode=LIGHTWEIGHT)
                    require_valid(persist_report(report, config.log_dir))
                else:
                    logger.warning("Post-backup verification disabled (VERIFY_BACKUP=false)")

                final = _move_into_tier(staged, config.tier_dir(tier))
                artifact = artifact_from_path(
                    final,
                    tier,
                    verified=report.overall_status if report else VerificationStatus.UNVERIFIED,
                )
                logger.info(f"Backup stored: {final} ({artifact.size_bytes} bytes)")

                remote_uploaded = None
                try:
                    storage = get_remote_storage(config)
                except StorageError as e:
                    logger.warning(f"Offsite copy of {artifact.filename} skipped: {e}")
                    storage = None
                    remote_uploaded = False
                if storage is not None:
                    remote_uploaded = storage.upload_artifact(artifact)
                    if not remote_uploaded:
                        logger.warning(f"Offsite copy of {artifact.filename} failed; local copy kept")

                prune_result = prune_expired(config)
                prune_staging(config)

        except BackupError as e:
            logger.error(f"Backup of {database} failed at {e.step}: {e}")
            _notify_failure(config, "backup", e, database, artifact_name)
            raise
        except Exception as e:
            logger.error(f"Backup of {database} failed unexpectedly: {e}", exc_info=True)
            _notify_failure(config, "backup", e, database, artifact_name)
            raise
        finally:
            if staged_dir is not None:
                shutil.rmtree(staged_dir, ignore_errors=True)

        warnings = []
        if remote_uploaded is False:
            warnings.append("offsite copy failed")
        if report is not None and report.overall_status == VerificationStatus.WARNING:
            warnings.append("verification reported warnings")
        outcome = Outcome.WARNING if warnings else Outcome.SUCCESS

        duration = (datetime.now() - started).total_seconds()
        summary = RunSummary(
            operation="backup",
            outcome=outcome,
            database=database,
            message=(
                f"Backup {artifact.filename} completed in {duration:.1f}s"
                + (f" with warnings: {', '.join(warnings)}" if warnings else "")
            ),
            artifact=artifact.filename,
            environment=config.environment,
            details={
                "Tier": artifact.tier.value,
                "Size": f"{artifact.size_bytes} bytes",
                "Encrypted": "yes" if artifact.encrypted else "no",
                "Pruned": prune_result.deleted_count,
            },
        )
        notifications = dispatch(summary, config)

        logger.info("=" * 80)
        logger.info(f"Backup finished with outcome {outcome.value} in {duration:.1f}s")
        logger.info("=" * 80)

    return BackupResult(
        outcome=outcome,
        artifact=artifact,
        report=report,
        remote_uploaded=remote_uploaded,
        prune=prune_result,
        notifications=notifications,
        log_path=log_path,
        duration_seconds=duration,
    )


def restore(
    artifact_ref: str,
    config: Optional[BackupConfig] = None,
    server: Optional[PostgresServer] = None,
    confirm: Optional[ConfirmCallback] = None,
    rollback_enabled: bool = False,
    skip_confirmation: bool = False,
    target_database: Optional[str] = None,
    skip_snapshot: bool = False,
) -> RestoreSession:
    """
    Restore an artifact over a database, holding the database lease.

    Returns:
        The committed RestoreSession

    Raises:
        BackupError: If the lease is taken, preflight fails, or the session
            does not commit
    """
    config = config or load_config()
    database = target_database or config.database.name
    target = replace(config.database, name=database)

    with run_log(config.log_dir, "restore"):
        try:
            with operation_lock(target, "restore", timeout=config.lock_timeout):
                validate_environment(config)
                engine = RestoreEngine(config, server=server, confirm=confirm)
                session = engine.run(
                    artifact_ref,
                    rollback_enabled=rollback_enabled,
                    skip_confirmation=skip_confirmation,
                    target_database=database,
                    skip_snapshot=skip_snapshot,
                )
        except BackupError as e:
            session = getattr(e, "session", None)
            outcome = Outcome.FAILURE
            details = {}
            if session is not None:
                details = {"Session": session.id, "Final state": session.status.value}
                if session.pre_restore_snapshot:
                    details["Pre-restore snapshot"] = session.pre_restore_snapshot
            dispatch(
                RunSummary(
                    operation="restore",
                    outcome=outcome,
                    database=database,
                    message=f"Restore failed: {e}",
                    artifact=str(artifact_ref),
                    step=e.step,
                    environment=config.environment,
                    details=details,
                ),
                config,
            )
            raise

        dispatch(
            RunSummary(
                operation="restore",
                outcome=Outcome.SUCCESS,
                database=database,
                message=f"Restore {session.id} committed",
                artifact=session.target_artifact,
                environment=config.environment,
                details={"Pre-restore snapshot": session.pre_restore_snapshot or "skipped"},
            ),
            config,
        )
    return session


def verify(
    target: str = "latest",
    path: Optional[str] = None,
    test_restore: bool = False,
    config: Optional[BackupConfig] = None,
    server: Optional[PostgresServer] = None,
) -> VerificationRun:
    """
    Audit artifacts and persist a verification report.

    Args:
        target: "one" (with path), "all", or "latest" (newest per tier)
        path: Artifact file for target "one"
        test_restore: Also restore each artifact into a throwaway database

    Returns:
        VerificationRun whose ``outcome`` is success, warning or failure
    """
    config = config or load_config()

    with run_log(config.log_dir, "verify"):
        logger.info("=" * 80)
        logger.info(f"Starting verification of {target} backups (test restore: {test_restore})")
        logger.info("=" * 80)

        artifacts = select_targets(config, target, path)
        if not artifacts:
            logger.error(f"No backups found under {config.backup_root}")

        run = verify_many(artifacts, config, mode=AUDIT, test_restore=test_restore, server=server)
        write_report(run, config.log_dir)

        counts = run.counts
        logger.info(
            f"Verification finished: {counts['passed']} passed, {counts['warning']} warning, "
            f"{counts['failed']} failed"
        )

        failed = [r.artifact.filename for r in run.reports if r.overall_status == VerificationStatus.FAILED]
        dispatch(
            RunSummary(
                operation="verification",
                outcome=run.outcome,
                database=config.database.name,
                message=(
                    f"{len(run.reports)} backup(s) verified: {counts['passed']} passed, "
                    f"{counts['warning']} warning, {counts['failed']} failed"
                ),
                environment=config.environment,
                details={"Report": run.report_path, "Failed": ", ".join(failed) or "none"},
            ),
            config,
        )
    return run


def list_backups(config: Optional[BackupConfig] = None) -> Dict[Tier, List[BackupArtifact]]:
    config = config or load_config()
    return list_artifacts(config.backup_root)


def prune(config: Optional[BackupConfig] = None) -> PruneResult:
    """Apply the retention policy outside a backup run."""
    config = config or load_config()
    with run_log(config.log_dir, "prune"):
        result = prune_expired(config)
        prune_staging(config)
    return result
