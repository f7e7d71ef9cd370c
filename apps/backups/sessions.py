"""
Restore session records.

A RestoreSession follows one restore through its states. Every transition
is written to ``<log_dir>/restore_sessions/<id>.json`` so that an operator,
and the retention manager, can see which restores are in flight and which
artifacts they depend on.
"""

import json
import logging
import os
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set

from .artifacts import TIMESTAMP_FORMAT
from .exceptions import RestoreError

logger = logging.getLogger(__name__)


class RestoreStatus(str, Enum):
    PENDING = "pending"
    SNAPSHOTTING = "snapshotting"
    STAGING = "staging"
    SWAPPING = "swapping"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_STATES = {RestoreStatus.COMMITTED, RestoreStatus.ROLLED_BACK, RestoreStatus.FAILED}

TRANSITIONS = {
    RestoreStatus.PENDING: {RestoreStatus.SNAPSHOTTING, RestoreStatus.FAILED},
    RestoreStatus.SNAPSHOTTING: {RestoreStatus.STAGING, RestoreStatus.FAILED},
    RestoreStatus.STAGING: {RestoreStatus.SWAPPING, RestoreStatus.FAILED},
    RestoreStatus.SWAPPING: {RestoreStatus.VERIFYING, RestoreStatus.ROLLED_BACK, RestoreStatus.FAILED},
    RestoreStatus.VERIFYING: {RestoreStatus.COMMITTED, RestoreStatus.ROLLED_BACK, RestoreStatus.FAILED},
}


@dataclass
class RestoreSession:
    id: str
    production_database: str
    artifact_ref: str
    target_artifact: Optional[str] = None
    pre_restore_snapshot: Optional[str] = None
    scratch_database_name: Optional[str] = None
    status: RestoreStatus = RestoreStatus.PENDING
    snapshot_skipped: bool = False
    rollback_enabled: bool = False
    error: Optional[str] = None
    failed_step: Optional[str] = None
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())
    history: List[dict] = field(default_factory=list)

    @classmethod
    def start(cls, production_database: str, artifact_ref: str, rollback_enabled: bool = False) -> "RestoreSession":
        session_id = f"{datetime.now().strftime(TIMESTAMP_FORMAT)}_{secrets.token_hex(3)}"
        session = cls(
            id=session_id,
            production_database=production_database,
            artifact_ref=str(artifact_ref),
            rollback_enabled=rollback_enabled,
        )
        session.history.append({"status": session.status.value, "at": session.started_at})
        return session

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def advance(self, status: RestoreStatus, note: Optional[str] = None) -> None:
        """
        Move to a new state.

        Raises:
            RestoreError: If the transition is not allowed from the current state
        """
        if status not in TRANSITIONS.get(self.status, set()):
            raise RestoreError(f"Invalid restore transition {self.status.value} -> {status.value}", session=self)

        self.status = status
        self.updated_at = datetime.now().isoformat()
        entry = {"status": status.value, "at": self.updated_at}
        if note:
            entry["note"] = note
        self.history.append(entry)
        logger.info(f"Restore {self.id}: {status.value}" + (f" ({note})" if note else ""))

    def fail(self, error: str, step: str, status: RestoreStatus = RestoreStatus.FAILED) -> None:
        self.error = error
        self.failed_step = step
        self.advance(status, note=error)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RestoreSession":
        data = dict(data)
        data["status"] = RestoreStatus(data["status"])
        return cls(**data)


class SessionStore:
    """Restore session records stored as JSON files."""

    def __init__(self, log_dir: Path):
        self.directory = Path(log_dir) / "restore_sessions"

    def path_for(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def save(self, session: RestoreSession) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(session.id)
        partial = path.with_name(path.name + ".partial")
        partial.write_text(json.dumps(session.to_dict(), indent=2))
        os.replace(partial, path)
        return path

    def load(self, session_id: str) -> RestoreSession:
        return RestoreSession.from_dict(json.loads(self.path_for(session_id).read_text()))

    def all(self) -> List[RestoreSession]:
        if not self.directory.is_dir():
            return []

        sessions = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                sessions.append(RestoreSession.from_dict(json.loads(path.read_text())))
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Ignoring unreadable restore session record {path.name}: {e}")
        return sessions

    def active(self, max_age: Optional[timedelta] = None, now: Optional[datetime] = None) -> List[RestoreSession]:
        """
        Sessions that have not reached a terminal state.

        Args:
            max_age: Records not updated for longer than this are treated
                as abandoned by a crashed process
            now: Reference time
        """
        now = now or datetime.now()
        active = []
        for session in self.all():
            if session.is_terminal:
                continue
            if max_age is not None and now - datetime.fromisoformat(session.updated_at) > max_age:
                logger.warning(f"Restore session {session.id} looks abandoned (last update {session.updated_at})")
                continue
            active.append(session)
        return active

    def referenced_paths(self, max_age: Optional[timedelta] = None) -> Set[Path]:
        """Artifact files that active restore sessions still depend on."""
        paths = set()
        for session in self.active(max_age=max_age):
            for value in (session.target_artifact, session.pre_restore_snapshot):
                if value:
                    paths.add(Path(value).resolve())
        return paths
