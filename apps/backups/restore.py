"""
Restore engine.

A restore moves through a fixed sequence of states::

    pending -> snapshotting -> staging -> swapping -> verifying -> committed

Nothing touches the production database before ``swapping``. The artifact
is verified in ``pending``, the live database is dumped to a pre-restore
snapshot in ``snapshotting``, and the artifact is restored into a scratch
database in ``staging``. Only a fully staged scratch database is swapped
in, by dropping production and renaming the scratch database into its
place.

A failure before the swap ends in ``failed`` with production untouched. A
failure after the swap started ends in ``rolled_back`` when rollback is
enabled and a snapshot exists, and in ``failed`` with a manual recovery
message otherwise. The scratch database and the work directory are
removed in every terminal state.
"""

import logging
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .artifacts import (
    PRE_RESTORE_PREFIX,
    BackupArtifact,
    artifact_from_path,
    checksum_path_for,
    dump_basename,
    format_timestamp,
    resolve_artifact,
)
from .database import DatabaseHandle, PostgresServer, unique_database_name
from .dump import create_artifact_file, restore_dump
from .encryption import restore_to_plain
from .exceptions import BackupError, IntegrityError, RestoreCancelled, RestoreError
from .sessions import RestoreSession, RestoreStatus, SessionStore
from .verification import LIGHTWEIGHT, persist_report, require_valid, verify_artifact

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[RestoreSession], bool]


class RestoreEngine:
    """
    Drives one restore session at a time against a PostgreSQL server.

    Args:
        config: Effective configuration
        server: PostgresServer to restore into (built from config if omitted)
        confirm: Called with the session before the destructive swap;
            returning False cancels the restore
        session_store: Where session records are persisted
    """

    def __init__(
        self,
        config,
        server: Optional[PostgresServer] = None,
        confirm: Optional[ConfirmCallback] = None,
        session_store: Optional[SessionStore] = None,
    ):
        self.config = config
        self.server = server or PostgresServer.from_config(config)
        self.confirm = confirm
        self.sessions = session_store or SessionStore(config.log_dir)

    def _advance(self, session: RestoreSession, status: RestoreStatus) -> None:
        session.advance(status)
        self.sessions.save(session)

    def run(  # noqa: C901
        self,
        artifact_ref: str,
        rollback_enabled: bool = False,
        skip_confirmation: bool = False,
        target_database: Optional[str] = None,
        skip_snapshot: bool = False,
    ) -> RestoreSession:
        """
        Restore an artifact over the production database.

        Args:
            artifact_ref: Artifact path or ``YYYYmmdd_HHMMSS`` timestamp
            rollback_enabled: Restore the pre-restore snapshot if the swap fails
            skip_confirmation: Do not ask before the destructive swap
            target_database: Database to replace (defaults to the configured one)
            skip_snapshot: Do not take a pre-restore snapshot

        Returns:
            The committed RestoreSession

        Raises:
            RestoreCancelled: If the operator declined the swap
            RestoreError: If the session ended in failed or rolled_back;
                the session is attached as ``exc.session``
        """
        database = target_database or self.config.database.name
        production = DatabaseHandle(self.server, database)
        session = RestoreSession.start(database, artifact_ref, rollback_enabled=rollback_enabled)
        self.sessions.save(session)

        self.config.staging_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"restore_{session.id}_", dir=self.config.staging_dir))

        logger.info("=" * 80)
        logger.info(f"Starting restore {session.id} of {artifact_ref} into {database}")
        logger.info("=" * 80)

        swap_started = False
        failure = None

        try:
            # pending: nothing may be mutated until the artifact checks out
            artifact = self._resolve(session, artifact_ref)

            self._advance(session, RestoreStatus.SNAPSHOTTING)
            if skip_snapshot:
                session.snapshot_skipped = True
                logger.warning(f"Restore {session.id}: pre-restore snapshot skipped, rollback will not be possible")
            else:
                snapshot = self._take_snapshot(production, work_dir / "snapshot")
                session.pre_restore_snapshot = str(snapshot)

            self._advance(session, RestoreStatus.STAGING)
            staged_tables = self._stage(session, artifact, work_dir / "staging")

            self._advance(session, RestoreStatus.SWAPPING)
            self._confirm(session, skip_confirmation)
            swap_started = True
            self._swap(session, production)

            self._advance(session, RestoreStatus.VERIFYING)
            self._verify_production(production, staged_tables)

            self._advance(session, RestoreStatus.COMMITTED)
            logger.info(f"Restore {session.id} committed: {database} now holds {artifact.filename}")

        except Exception as e:
            failure = e
            self._handle_failure(session, e, swap_started, production, work_dir)

        finally:
            self._cleanup(session, work_dir)

        if failure is None:
            return session

        if isinstance(failure, RestoreCancelled):
            raise RestoreCancelled(session.error, session=session, step=session.failed_step) from failure
        raise RestoreError(session.error, session=session, step=session.failed_step) from failure

    # States

    def _resolve(self, session: RestoreSession, artifact_ref: str) -> BackupArtifact:
        artifact = resolve_artifact(self.config.backup_root, artifact_ref)
        if artifact is None:
            raise RestoreError(f"Backup not found: {artifact_ref}")

        session.target_artifact = str(artifact.path)
        self.sessions.save(session)

        report = verify_artifact(artifact, self.config, mode=LIGHTWEIGHT, server=self.server)
        require_valid(persist_report(report, self.config.log_dir))
        return report.artifact

    def _take_snapshot(self, production: DatabaseHandle, work_dir: Path) -> Path:
        """Dump the live database into a pre-restore snapshot in the backup root."""
        if not production.exists():
            raise RestoreError(
                f"Production database {production.name} does not exist, so no pre-restore snapshot "
                f"can be taken. Use --skip-snapshot to restore into a new database."
            )

        work_dir.mkdir(parents=True, exist_ok=True)
        basename = dump_basename(PRE_RESTORE_PREFIX, format_timestamp(datetime.now()))
        try:
            staged = create_artifact_file(
                self.server,
                production.name,
                work_dir,
                basename,
                jobs=self.config.parallel_jobs,
                compression_level=self.config.compression_level,
                encryption_key=self.config.encryption_key,
            )
        except BackupError as e:
            raise RestoreError(
                f"Pre-restore snapshot failed: {e}. Use --skip-snapshot to restore without one."
            ) from e

        # No swap without a snapshot that passes verification
        report = verify_artifact(artifact_from_path(staged), self.config, mode=LIGHTWEIGHT, server=self.server)
        persist_report(report, self.config.log_dir)
        try:
            require_valid(report)
        except IntegrityError as e:
            raise RestoreError(f"Pre-restore snapshot is not usable: {e}") from e

        self.config.backup_root.mkdir(parents=True, exist_ok=True)
        snapshot = self.config.backup_root / staged.name
        shutil.move(str(checksum_path_for(staged)), str(checksum_path_for(snapshot)))
        shutil.move(str(staged), str(snapshot))

        logger.info(f"Pre-restore snapshot saved: {snapshot}")
        return snapshot

    def _stage(self, session: RestoreSession, artifact: BackupArtifact, work_dir: Path) -> int:
        """Restore the artifact into a scratch database and return its table count."""
        work_dir.mkdir(parents=True, exist_ok=True)
        scratch = unique_database_name(f"{session.production_database}_restore")
        session.scratch_database_name = scratch
        self.sessions.save(session)

        plain = restore_to_plain(artifact.path, self.config.encryption_key, work_dir)
        self.server.create_database(scratch)
        restore_dump(self.server, scratch, plain, work_dir, self.config.parallel_jobs)
        plain.unlink(missing_ok=True)

        tables = self.server.count_tables(scratch)
        if tables < 1:
            raise RestoreError(f"Scratch database {scratch} contains no tables after restore")

        logger.info(f"Staged {artifact.filename} into {scratch}: {tables} tables")
        return tables

    def _confirm(self, session: RestoreSession, skip_confirmation: bool) -> None:
        if skip_confirmation:
            return
        if self.confirm is None:
            raise RestoreCancelled(
                f"Restore of {session.production_database} requires confirmation; pass --yes to skip it"
            )
        if not self.confirm(session):
            raise RestoreCancelled(f"Restore of {session.production_database} cancelled by operator")

    def _swap(self, session: RestoreSession, production: DatabaseHandle) -> None:
        production.acquire_exclusive()
        self.server.drop_database(production.name)
        self.server.rename_database(session.scratch_database_name, production.name)
        logger.info(f"Swapped {session.scratch_database_name} into place as {production.name}")

    def _verify_production(self, production: DatabaseHandle, expected_tables: int) -> None:
        tables = production.table_count()
        if tables < 1:
            raise RestoreError(f"Restored database {production.name} contains no tables")
        if tables != expected_tables:
            raise RestoreError(
                f"Restored database {production.name} has {tables} tables, staging had {expected_tables}"
            )

    # Failure handling

    def _rollback(self, session: RestoreSession, production: DatabaseHandle, work_dir: Path) -> None:
        logger.warning(f"Rolling back {production.name} from {session.pre_restore_snapshot}")
        work_dir.mkdir(parents=True, exist_ok=True)

        plain = restore_to_plain(Path(session.pre_restore_snapshot), self.config.encryption_key, work_dir)
        production.acquire_exclusive()
        self.server.drop_database(production.name)
        self.server.create_database(production.name)
        restore_dump(self.server, production.name, plain, work_dir, self.config.parallel_jobs)

        logger.info(f"Rollback of {production.name} complete: {production.table_count()} tables")

    def _handle_failure(
        self,
        session: RestoreSession,
        error: Exception,
        swap_started: bool,
        production: DatabaseHandle,
        work_dir: Path,
    ) -> None:
        step = session.status.value
        message = str(error) or error.__class__.__name__

        if isinstance(error, BackupError):
            logger.error(f"Restore {session.id} failed during {step}: {message}")
        else:
            logger.error(f"Restore {session.id} failed during {step}: {message}", exc_info=True)

        if not swap_started:
            session.fail(message, step)
            return

        snapshot = session.pre_restore_snapshot
        if session.rollback_enabled and snapshot:
            try:
                self._rollback(session, production, work_dir / "rollback")
            except Exception as rollback_error:
                logger.critical(f"Rollback of {production.name} failed: {rollback_error}", exc_info=True)
                session.fail(
                    f"{message}; rollback failed ({rollback_error}). "
                    f"Restore {production.name} manually from {snapshot}",
                    step,
                )
                return
            session.fail(message, step, status=RestoreStatus.ROLLED_BACK)
            return

        if snapshot:
            hint = f"restore it manually from the pre-restore snapshot {snapshot}"
        else:
            hint = "no pre-restore snapshot was taken, so manual recovery is required"
        logger.critical(f"Production database {production.name} may be inconsistent: {hint}")
        session.fail(f"{message}; production database {production.name} may be inconsistent, {hint}", step)

    def _cleanup(self, session: RestoreSession, work_dir: Path) -> None:
        # After a successful swap the scratch name no longer exists and this is a no-op
        if session.scratch_database_name:
            try:
                self.server.drop_database(session.scratch_database_name)
            except Exception as e:
                logger.error(f"Failed to drop scratch database {session.scratch_database_name}: {e}")

        shutil.rmtree(work_dir, ignore_errors=True)
        self.sessions.save(session)
