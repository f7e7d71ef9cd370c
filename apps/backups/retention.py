"""
Tier classification and retention pruning.

Each tier keeps artifacts for its own window (daily in days, weekly in
weeks, monthly in months of 30 days). An artifact is deleted once its age,
measured from the file's modification time, strictly exceeds the window,
so an artifact exactly at the boundary is kept. Pruning is idempotent.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional, Set

from .artifacts import PRE_RESTORE_PREFIX, Tier, checksum_path_for, is_artifact_name
from .sessions import SessionStore

logger = logging.getLogger(__name__)


def classify_tier(day: date) -> Tier:
    """
    Tier for a backup taken on the given day.

    The first day of the month is monthly, any other Sunday is weekly,
    everything else is daily.
    """
    if day.day == 1:
        return Tier.MONTHLY
    if day.isoweekday() == 7:
        return Tier.WEEKLY
    return Tier.DAILY


@dataclass
class PruneResult:
    deleted: List[Path] = field(default_factory=list)
    skipped_active: List[Path] = field(default_factory=list)
    freed_bytes: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)

    def to_dict(self) -> dict:
        return {
            "deleted": [str(p) for p in self.deleted],
            "skipped_active": [str(p) for p in self.skipped_active],
            "freed_bytes": self.freed_bytes,
            "errors": self.errors,
        }


def _file_age(path: Path, now: datetime) -> timedelta:
    return now - datetime.fromtimestamp(path.stat().st_mtime)


def _delete_artifact(path: Path, result: PruneResult) -> None:
    try:
        size = path.stat().st_size
        path.unlink()
        checksum_path_for(path).unlink(missing_ok=True)
    except FileNotFoundError:
        # Removed by a concurrent prune
        return
    except OSError as e:
        result.errors.append(f"{path}: {e}")
        logger.error(f"Failed to delete expired backup {path}: {e}")
        return

    result.deleted.append(path)
    result.freed_bytes += size
    logger.info(f"Deleted expired backup {path.name} ({size} bytes)")


def _prune_files(
    candidates: List[Path],
    window: timedelta,
    now: datetime,
    protected: Set[Path],
    result: PruneResult,
) -> None:
    for path in candidates:
        try:
            expired = _file_age(path, now) > window
        except FileNotFoundError:
            continue
        if not expired:
            continue
        if path.resolve() in protected:
            logger.info(f"Keeping {path.name}: referenced by an active restore")
            result.skipped_active.append(path)
            continue
        _delete_artifact(path, result)


def prune_expired(config, now: Optional[datetime] = None) -> PruneResult:
    """
    Delete artifacts older than their tier's retention window.

    Artifacts that an in-flight restore depends on are never deleted.
    Pre-restore snapshots follow the daily window.

    Args:
        config: Effective configuration
        now: Reference time (defaults to the current time)

    Returns:
        PruneResult listing what was deleted and what was kept
    """
    now = now or datetime.now()
    result = PruneResult()
    protected = SessionStore(config.log_dir).referenced_paths(max_age=timedelta(seconds=config.lock_timeout))

    for tier in Tier:
        directory = config.tier_dir(tier)
        if not directory.is_dir():
            continue
        candidates = sorted(p for p in directory.iterdir() if p.is_file() and is_artifact_name(p.name))
        _prune_files(candidates, config.retention.window_for(tier), now, protected, result)

    if config.backup_root.is_dir():
        snapshots = sorted(
            p for p in config.backup_root.glob(f"{PRE_RESTORE_PREFIX}_*") if p.is_file() and is_artifact_name(p.name)
        )
        _prune_files(snapshots, config.retention.window_for(None), now, protected, result)

    logger.info(
        f"Retention pruning complete: {result.deleted_count} deleted, "
        f"{len(result.skipped_active)} kept for active restores, {result.freed_bytes} bytes freed"
    )
    return result


def prune_staging(config, now: Optional[datetime] = None) -> int:
    """
    Remove leftovers older than one day from the staging area.

    Returns:
        Number of entries removed
    """
    now = now or datetime.now()
    staging = config.staging_dir
    if not staging.is_dir():
        return 0

    max_age = timedelta(days=config.staging_max_age_days)
    removed = 0
    for entry in staging.iterdir():
        try:
            if _file_age(entry, now) <= max_age:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.error(f"Failed to remove staging leftover {entry}: {e}")
            continue
        removed += 1
        logger.info(f"Removed staging leftover {entry.name}")

    return removed
