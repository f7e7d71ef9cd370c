"""
Backup artifact model and on-disk layout.

Artifacts live under the backup root in one directory per tier::

    <root>/daily/<prefix>_20250105_020000.dump.tar.gz.enc
    <root>/daily/<prefix>_20250105_020000.dump.tar.gz.enc.sha256
    <root>/weekly/...
    <root>/monthly/...
    <root>/pre_restore_20250106_101500.dump.tar.gz.enc

The tier of an artifact is decided once, when it is created, and is
recovered from the directory it was written to. Pre-restore snapshots sit
in the backup root and carry no tier.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
DUMP_SUFFIX = ".dump.tar"
COMPRESSED_SUFFIX = ".gz"
ENCRYPTED_SUFFIX = ".enc"
CHECKSUM_SUFFIX = ".sha256"
PRE_RESTORE_PREFIX = "pre_restore"

ARTIFACT_NAME_RE = re.compile(
    r"^(?P<prefix>.+)_(?P<timestamp>\d{8}_\d{6})\.dump\.tar(?P<gz>\.gz)?(?P<enc>\.enc)?$"
)


class Tier(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


class CheckResult(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"
    SKIPPED = "skipped"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


@dataclass(frozen=True)
class RetentionPolicy:
    """How long each tier keeps its artifacts."""

    daily_days: int = 7
    weekly_weeks: int = 4
    monthly_months: int = 12

    def window_for(self, tier: Optional[Tier]) -> timedelta:
        """
        Retention window for a tier.

        Weeks count as 7 days and months as 30 days. Artifacts without a
        tier (pre-restore snapshots) use the daily window.
        """
        if tier == Tier.WEEKLY:
            return timedelta(days=self.weekly_weeks * 7)
        if tier == Tier.MONTHLY:
            return timedelta(days=self.monthly_months * 30)
        return timedelta(days=self.daily_days)


@dataclass(frozen=True)
class BackupArtifact:
    """A single backup file and what is known about it."""

    id: str
    tier: Optional[Tier]
    path: Path
    size_bytes: int
    created_at: datetime
    compressed: bool = True
    encrypted: bool = False
    checksum: Optional[str] = None
    verified: VerificationStatus = VerificationStatus.UNVERIFIED

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def checksum_path(self) -> Path:
        return checksum_path_for(self.path)

    @property
    def is_pre_restore(self) -> bool:
        return self.path.name.startswith(f"{PRE_RESTORE_PREFIX}_")

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or datetime.now()) - self.created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tier": self.tier.value if self.tier else None,
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
            "compressed": self.compressed,
            "encrypted": self.encrypted,
            "checksum": self.checksum,
            "verified": self.verified.value,
        }


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def dump_basename(prefix: str, timestamp: str) -> str:
    """Base name shared by every stage of one artifact, e.g. ``shop_20250105_020000``."""
    return f"{prefix}_{timestamp}"


def checksum_path_for(path: Path) -> Path:
    return path.with_name(path.name + CHECKSUM_SUFFIX)


def is_artifact_name(name: str) -> bool:
    return ARTIFACT_NAME_RE.match(name) is not None


def tier_from_directory(path: Path) -> Optional[Tier]:
    try:
        return Tier(path.parent.name)
    except ValueError:
        return None


def artifact_from_path(
    path: Path,
    tier: Optional[Tier] = None,
    verified: VerificationStatus = VerificationStatus.UNVERIFIED,
) -> BackupArtifact:
    """
    Build a BackupArtifact for a file on disk.

    Args:
        path: Artifact file
        tier: Tier the artifact was created in. Defaults to the tier named
            by the parent directory, or None outside a tier directory.
        verified: Known verification status

    Returns:
        BackupArtifact describing the file

    Raises:
        FileNotFoundError: If the file does not exist
    """
    from .encryption import read_checksum_file

    path = Path(path)
    stat = path.stat()
    match = ARTIFACT_NAME_RE.match(path.name)

    if match:
        artifact_id = match.group("timestamp")
        created_at = datetime.strptime(artifact_id, TIMESTAMP_FORMAT)
        compressed = bool(match.group("gz"))
        encrypted = bool(match.group("enc"))
    else:
        created_at = datetime.fromtimestamp(stat.st_mtime)
        artifact_id = format_timestamp(created_at)
        compressed = path.name.endswith(COMPRESSED_SUFFIX) or ".gz." in path.name
        encrypted = path.name.endswith(ENCRYPTED_SUFFIX)

    return BackupArtifact(
        id=artifact_id,
        tier=tier if tier is not None else tier_from_directory(path),
        path=path,
        size_bytes=stat.st_size,
        created_at=created_at,
        compressed=compressed,
        encrypted=encrypted,
        checksum=read_checksum_file(path),
        verified=verified,
    )


def list_tier(backup_root: Path, tier: Tier) -> List[BackupArtifact]:
    """List the artifacts of one tier, oldest first."""
    directory = Path(backup_root) / tier.value
    if not directory.is_dir():
        return []

    artifacts = [
        artifact_from_path(entry, tier)
        for entry in directory.iterdir()
        if entry.is_file() and is_artifact_name(entry.name)
    ]
    return sorted(artifacts, key=lambda a: (a.created_at, a.filename))


def list_pre_restore_snapshots(backup_root: Path) -> List[BackupArtifact]:
    root = Path(backup_root)
    if not root.is_dir():
        return []

    snapshots = [
        artifact_from_path(entry, None)
        for entry in root.glob(f"{PRE_RESTORE_PREFIX}_*")
        if entry.is_file() and is_artifact_name(entry.name)
    ]
    return sorted(snapshots, key=lambda a: (a.created_at, a.filename))


def list_artifacts(backup_root: Path) -> Dict[Tier, List[BackupArtifact]]:
    """All tiered artifacts under the backup root, grouped by tier."""
    return {tier: list_tier(backup_root, tier) for tier in Tier}


def latest_per_tier(backup_root: Path) -> Dict[Tier, BackupArtifact]:
    latest = {}
    for tier, artifacts in list_artifacts(backup_root).items():
        if artifacts:
            latest[tier] = artifacts[-1]
    return latest


def find_by_timestamp(backup_root: Path, timestamp: str) -> Optional[BackupArtifact]:
    """
    Find an artifact by its timestamp across all tiers.

    Tier directories are searched daily, weekly, monthly, then the
    pre-restore snapshots in the backup root.
    """
    for tier in Tier:
        for artifact in list_tier(backup_root, tier):
            if artifact.id == timestamp:
                return artifact

    for artifact in list_pre_restore_snapshots(backup_root):
        if artifact.id == timestamp:
            return artifact

    return None


def resolve_artifact(backup_root: Path, reference: str) -> Optional[BackupArtifact]:
    """
    Resolve an operator supplied reference to an artifact.

    Args:
        backup_root: Backup root directory
        reference: A file path, or a ``YYYYmmdd_HHMMSS`` timestamp

    Returns:
        The matching artifact, or None if nothing matches
    """
    candidate = Path(reference)
    if candidate.is_file():
        return artifact_from_path(candidate)

    if not candidate.is_absolute():
        relative = Path(backup_root) / candidate
        if relative.is_file():
            return artifact_from_path(relative)

    if re.fullmatch(r"\d{8}_\d{6}", reference):
        return find_by_timestamp(backup_root, reference)

    return None


def format_size(size_bytes: int) -> str:
    """Human readable size, e.g. ``12.3 MB``."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
