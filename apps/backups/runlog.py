"""
Per-run log files.

Each backup, restore, verification or prune run appends to its own file,
``<log_dir>/<operation>_<YYYYmmdd_HHMMSS>.log``, in addition to the
project-wide logging configured in settings.LOGGING.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from .artifacts import TIMESTAMP_FORMAT

RUN_LOGGER = "apps.backups"
RUN_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@contextmanager
def run_log(log_dir: Path, operation: str, level: int = logging.DEBUG):
    """
    Attach a timestamped append-only file handler to the backups logger.

    The handler is always removed and closed when the block exits.

    Yields:
        Path of the run log file
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / f"{operation}_{datetime.now().strftime(TIMESTAMP_FORMAT)}.log"

    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(RUN_LOG_FORMAT))

    target = logging.getLogger(RUN_LOGGER)
    previous_level = target.level
    if target.level == logging.NOTSET or target.level > level:
        target.setLevel(level)
    target.addHandler(handler)
    try:
        yield path
    finally:
        target.removeHandler(handler)
        target.setLevel(previous_level)
        handler.close()
