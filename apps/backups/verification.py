"""
Backup integrity verification.

Every artifact is put through an ordered list of checks:

1. existence     - file exists, is a regular file and is readable
2. size_floor    - at least 1 KiB; anything smaller cannot be a real dump
3. age           - older than 30 days is a warning (audit only)
4. compression   - the gzip stream decompresses to the end (dry run)
5. encryption    - every encrypted chunk authenticates with the key
6. checksum      - matches the .sha256 sidecar when there is one
7. test_restore  - restores into a throwaway database (audit only, opt-in)

Lightweight mode (used after every backup and before every restore) runs
checks 1, 2, 4, 5 and 6. Audit mode runs all of them. A check that does
not run is recorded as skipped, so every report lists all seven.
"""

import json
import logging
import shutil
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .artifacts import (
    BackupArtifact,
    CheckResult,
    Outcome,
    TIMESTAMP_FORMAT,
    VerificationStatus,
    artifact_from_path,
    latest_per_tier,
    list_artifacts,
)
from .database import PostgresServer, unique_database_name
from .dump import restore_dump
from .encryption import (
    check_gzip_stream,
    iter_decrypted_chunks,
    iter_file_chunks,
    read_checksum_file,
    restore_to_plain,
    verify_checksum,
)
from .exceptions import BackupError, CompressionError, EncryptionError, IntegrityError

logger = logging.getLogger(__name__)

LIGHTWEIGHT = "lightweight"
AUDIT = "audit"

CHECK_ORDER = ("existence", "size_floor", "age", "compression", "encryption", "checksum", "test_restore")
LIGHTWEIGHT_CHECKS = ("existence", "size_floor", "compression", "encryption", "checksum")


@dataclass(frozen=True)
class CheckOutcome:
    name: str
    result: CheckResult
    detail: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "result": self.result.value, "detail": self.detail}


@dataclass(frozen=True)
class VerificationReport:
    """Immutable result of verifying one artifact."""

    artifact: BackupArtifact
    checks: Tuple[CheckOutcome, ...]
    overall_status: VerificationStatus
    mode: str
    created_at: datetime

    @property
    def passed(self) -> bool:
        return self.overall_status != VerificationStatus.FAILED

    @property
    def failed_checks(self) -> List[CheckOutcome]:
        return [c for c in self.checks if c.result == CheckResult.FAILED]

    def check(self, name: str) -> CheckOutcome:
        for outcome in self.checks:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    def summary(self) -> str:
        if self.overall_status == VerificationStatus.FAILED:
            reasons = "; ".join(f"{c.name}: {c.detail}" for c in self.failed_checks)
            return f"{self.artifact.filename} FAILED ({reasons})"
        return f"{self.artifact.filename} {self.overall_status.value.upper()}"

    def to_dict(self) -> dict:
        return {
            "artifact": self.artifact.to_dict(),
            "mode": self.mode,
            "overall_status": self.overall_status.value,
            "created_at": self.created_at.isoformat(),
            "checks": [c.to_dict() for c in self.checks],
        }


@dataclass
class VerificationRun:
    """Results of verifying a set of artifacts."""

    reports: List[VerificationReport]
    mode: str
    created_at: datetime = field(default_factory=datetime.now)
    report_path: Optional[Path] = None

    @property
    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in VerificationStatus if status != VerificationStatus.UNVERIFIED}
        for report in self.reports:
            counts[report.overall_status.value] += 1
        return counts

    @property
    def overall_status(self) -> VerificationStatus:
        # Nothing verified means nothing can be trusted
        if not self.reports:
            return VerificationStatus.FAILED
        return aggregate(r.overall_status for r in self.reports)

    @property
    def outcome(self) -> Outcome:
        return {
            VerificationStatus.PASSED: Outcome.SUCCESS,
            VerificationStatus.WARNING: Outcome.WARNING,
        }.get(self.overall_status, Outcome.FAILURE)

    def to_dict(self) -> dict:
        return {
            "created_at": self.created_at.isoformat(),
            "mode": self.mode,
            "overall_status": self.overall_status.value,
            "counts": self.counts,
            "reports": [r.to_dict() for r in self.reports],
        }


def aggregate(statuses: Iterable) -> VerificationStatus:
    """
    Combine check results or per-artifact statuses.

    Any failure fails the whole; otherwise any warning makes it a warning;
    otherwise it passed. Skipped checks do not count.
    """
    values = {getattr(s, "value", s) for s in statuses}
    if CheckResult.FAILED.value in values:
        return VerificationStatus.FAILED
    if CheckResult.WARNING.value in values:
        return VerificationStatus.WARNING
    return VerificationStatus.PASSED


class ArtifactVerifier:
    """Runs the verification checks for one configuration."""

    def __init__(self, config, server: Optional[PostgresServer] = None, now: Optional[datetime] = None):
        self.config = config
        self.server = server
        self.now = now

    def _server(self) -> PostgresServer:
        if self.server is None:
            self.server = PostgresServer.from_config(self.config)
        return self.server

    # Individual checks. Each returns (result, detail).

    def check_existence(self, artifact: BackupArtifact):
        path = artifact.path
        if not path.exists():
            return CheckResult.FAILED, f"{path} does not exist"
        if not path.is_file():
            return CheckResult.FAILED, f"{path} is not a regular file"
        try:
            with open(path, "rb") as f:
                f.read(1)
        except OSError as e:
            return CheckResult.FAILED, f"{path} is not readable: {e}"
        return CheckResult.PASSED, f"{path.stat().st_size} bytes"

    def check_size_floor(self, artifact: BackupArtifact):
        size = artifact.path.stat().st_size
        floor = self.config.size_floor_bytes
        if size < floor:
            return CheckResult.FAILED, f"{size} bytes is below the {floor} byte minimum"
        return CheckResult.PASSED, f"{size} bytes"

    def check_age(self, artifact: BackupArtifact):
        age = artifact.age(self.now)
        if age.days > self.config.age_warning_days:
            return CheckResult.WARNING, f"{age.days} days old (warning threshold {self.config.age_warning_days})"
        return CheckResult.PASSED, f"{age.days} days old"

    def check_compression(self, artifact: BackupArtifact):
        if not artifact.compressed:
            return CheckResult.SKIPPED, "artifact is not compressed"

        if artifact.encrypted:
            if not self.config.encryption_key:
                return CheckResult.SKIPPED, "encrypted stream cannot be read without a key"
            chunks = iter_decrypted_chunks(artifact.path, self.config.encryption_key)
        else:
            chunks = iter_file_chunks(artifact.path)

        try:
            size = check_gzip_stream(chunks)
        except EncryptionError as e:
            return CheckResult.SKIPPED, f"stream could not be decrypted: {e}"
        except CompressionError as e:
            return CheckResult.FAILED, str(e)
        return CheckResult.PASSED, f"decompresses to {size} bytes"

    def check_encryption(self, artifact: BackupArtifact):
        if not artifact.encrypted:
            return CheckResult.SKIPPED, "artifact is not encrypted"
        if not self.config.encryption_key:
            return CheckResult.FAILED, "artifact is encrypted but no encryption key is configured"

        try:
            for _ in iter_decrypted_chunks(artifact.path, self.config.encryption_key):
                pass
        except EncryptionError as e:
            return CheckResult.FAILED, str(e)
        return CheckResult.PASSED, "all chunks authenticated"

    def check_checksum(self, artifact: BackupArtifact):
        if not artifact.checksum_path.is_file():
            return CheckResult.SKIPPED, "no checksum sidecar"

        expected = read_checksum_file(artifact.path)
        if expected is None:
            return CheckResult.FAILED, "checksum sidecar is empty"
        if not verify_checksum(artifact.path, expected):
            return CheckResult.FAILED, f"checksum mismatch: expected {expected}"
        return CheckResult.PASSED, expected

    def check_test_restore(self, artifact: BackupArtifact):
        """Restore into a throwaway database that is always dropped."""
        server = self._server()
        database = unique_database_name("verify")
        self.config.staging_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="verify_", dir=self.config.staging_dir))
        created = False

        try:
            plain = restore_to_plain(artifact.path, self.config.encryption_key, work_dir)
            server.create_database(database)
            created = True
            restore_dump(server, database, plain, work_dir, self.config.parallel_jobs)
            tables = server.count_tables(database)
        except Exception as e:
            logger.error(f"Test restore of {artifact.filename} failed: {e}")
            return CheckResult.FAILED, f"test restore failed: {e}"
        finally:
            if created:
                try:
                    server.drop_database(database)
                except Exception as e:
                    logger.error(f"Failed to drop test restore database {database}: {e}")
            shutil.rmtree(work_dir, ignore_errors=True)

        if tables < 1:
            return CheckResult.FAILED, "restored database contains no tables"
        return CheckResult.PASSED, f"{tables} tables restored"

    def verify(self, artifact: BackupArtifact, mode: str = LIGHTWEIGHT, test_restore: bool = False) -> VerificationReport:
        """
        Verify one artifact.

        Args:
            artifact: Artifact to verify
            mode: LIGHTWEIGHT or AUDIT
            test_restore: In audit mode, also restore into a throwaway database

        Returns:
            VerificationReport whose ``artifact`` carries the new status
        """
        selected = CHECK_ORDER if mode == AUDIT else LIGHTWEIGHT_CHECKS
        outcomes = []
        readable = True

        for name in CHECK_ORDER:
            if name not in selected:
                outcomes.append(CheckOutcome(name, CheckResult.SKIPPED, f"not run in {mode} mode"))
                continue
            if name == "test_restore" and not test_restore:
                outcomes.append(CheckOutcome(name, CheckResult.SKIPPED, "test restore not requested"))
                continue
            if not readable:
                outcomes.append(CheckOutcome(name, CheckResult.SKIPPED, "artifact is not readable"))
                continue

            try:
                result, detail = getattr(self, f"check_{name}")(artifact)
            except OSError as e:
                result, detail = CheckResult.FAILED, f"I/O error: {e}"
            outcomes.append(CheckOutcome(name, result, detail))

            if name == "existence" and result == CheckResult.FAILED:
                readable = False

        status = aggregate(o.result for o in outcomes)
        checksum = artifact.checksum
        checksum_outcome = next(o for o in outcomes if o.name == "checksum")
        if checksum_outcome.result == CheckResult.PASSED:
            checksum = checksum_outcome.detail

        report = VerificationReport(
            artifact=replace(artifact, verified=status, checksum=checksum),
            checks=tuple(outcomes),
            overall_status=status,
            mode=mode,
            created_at=datetime.now(),
        )

        log = logger.error if status == VerificationStatus.FAILED else logger.info
        log(f"Verification ({mode}): {report.summary()}")
        return report


def verify_artifact(
    artifact: BackupArtifact,
    config,
    mode: str = LIGHTWEIGHT,
    test_restore: bool = False,
    server: Optional[PostgresServer] = None,
) -> VerificationReport:
    return ArtifactVerifier(config, server=server).verify(artifact, mode=mode, test_restore=test_restore)


def require_valid(report: VerificationReport) -> VerificationReport:
    """
    Raises:
        IntegrityError: If the report's overall status is FAILED
    """
    if report.overall_status == VerificationStatus.FAILED:
        raise IntegrityError(f"Artifact failed verification: {report.summary()}", report=report)
    return report


def verify_many(
    artifacts: Iterable[BackupArtifact],
    config,
    mode: str = AUDIT,
    test_restore: bool = False,
    server: Optional[PostgresServer] = None,
) -> VerificationRun:
    """
    Verify several artifacts. A failing artifact never stops the sweep.
    """
    verifier = ArtifactVerifier(config, server=server)
    reports = []
    for artifact in artifacts:
        try:
            reports.append(verifier.verify(artifact, mode=mode, test_restore=test_restore))
        except BackupError as e:
            logger.error(f"Verification of {artifact.filename} aborted: {e}")
            reports.append(
                VerificationReport(
                    artifact=replace(artifact, verified=VerificationStatus.FAILED),
                    checks=(CheckOutcome("existence", CheckResult.FAILED, str(e)),),
                    overall_status=VerificationStatus.FAILED,
                    mode=mode,
                    created_at=datetime.now(),
                )
            )
    return VerificationRun(reports=reports, mode=mode)


def select_targets(config, target: str, path: Optional[str] = None) -> List[BackupArtifact]:
    """
    Choose which artifacts to verify.

    Args:
        config: Effective configuration
        target: "one" (requires path), "all" or "latest" (newest per tier)
        path: Artifact file for target "one"

    Returns:
        Artifacts to verify, in a stable order
    """
    if target == "one":
        if not path:
            raise ValueError("A file path is required to verify a single artifact")
        return [artifact_from_path(Path(path))] if Path(path).exists() else [_missing_artifact(Path(path))]

    if target == "all":
        return [a for artifacts in list_artifacts(config.backup_root).values() for a in artifacts]

    if target == "latest":
        return list(latest_per_tier(config.backup_root).values())

    raise ValueError(f"Unknown verification target: {target}")


def _missing_artifact(path: Path) -> BackupArtifact:
    return BackupArtifact(id="", tier=None, path=path, size_bytes=0, created_at=datetime.now())


def write_report(run: VerificationRun, log_dir: Path) -> Path:
    """Persist a verification run as ``verification_report_<ts>.json``."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    stem = f"verification_report_{run.created_at.strftime(TIMESTAMP_FORMAT)}"
    path = log_dir / f"{stem}.json"
    # Several runs can finish within the same second
    counter = 1
    while path.exists():
        path = log_dir / f"{stem}_{counter}.json"
        counter += 1
    path.write_text(json.dumps(run.to_dict(), indent=2))
    run.report_path = path
    logger.info(f"Verification report written to {path}")
    return path


def persist_report(report: VerificationReport, log_dir: Path) -> VerificationReport:
    """Write a single-artifact report to the log directory and return it."""
    write_report(VerificationRun(reports=[report], mode=report.mode, created_at=report.created_at), log_dir)
    return report
