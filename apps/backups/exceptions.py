"""
Exception hierarchy for the backup subsystem.

Every pipeline step raises a subclass of BackupError. The ``step`` attribute
records where in the pipeline the failure happened so that failure
notifications can carry it without parsing messages.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all backup subsystem failures."""

    default_step = "backup"

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step or self.default_step


class ConfigurationError(BackupError):
    """Raised when configuration is missing or invalid."""

    default_step = "configuration"


class EnvironmentValidationError(BackupError):
    """Raised when a preflight check fails (missing tool, unwritable directory, low disk)."""

    default_step = "preflight"


class DumpError(BackupError):
    """Raised when pg_dump exits non-zero or produces no output."""

    default_step = "dump"


class CompressionError(BackupError):
    """Raised when compression or decompression fails."""

    default_step = "compression"


class EncryptionError(BackupError):
    """Raised when encryption, decryption or key handling fails."""

    default_step = "encryption"


class IntegrityError(BackupError):
    """Raised when an artifact fails verification."""

    default_step = "verification"

    def __init__(self, message: str, report=None, step: Optional[str] = None):
        super().__init__(message, step=step)
        self.report = report


class StorageError(BackupError):
    """Raised when a storage backend operation fails."""

    default_step = "storage"


class NotificationError(BackupError):
    """Raised by a notification channel. Never escapes the dispatcher."""

    default_step = "notification"


class OperationInProgressError(BackupError):
    """Raised when another backup or restore already holds the database lease."""

    default_step = "lock"


class RestoreError(BackupError):
    """Raised when a restore session ends in the failed state."""

    default_step = "restore"

    def __init__(self, message: str, session=None, step: Optional[str] = None):
        super().__init__(message, step=step)
        self.session = session


class RestoreCancelled(RestoreError):
    """Raised when the operator declines the destructive swap."""

    default_step = "swapping"
