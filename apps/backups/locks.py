"""
Per-database operation lease.

Backups and restores of the same database must never overlap. The lease
is a cache key added atomically with ``cache.add``; with the django-redis
backend that is a Redis ``SET NX EX``. The timeout frees the lease if the
holder dies without releasing it.
"""

import logging
import os
import socket
import uuid
from contextlib import contextmanager
from typing import Optional

from django.core.cache import cache

from .exceptions import OperationInProgressError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "dbvault:lock"


def lock_key(target) -> str:
    return f"{LOCK_KEY_PREFIX}:{target.lock_key}"


@contextmanager
def operation_lock(target, operation: str, timeout: Optional[int] = None):
    """
    Hold the lease for a database for the duration of the block.

    Args:
        target: DatabaseTarget being backed up or restored
        operation: Name recorded as the holder, e.g. "backup" or "restore"
        timeout: Lease lifetime in seconds

    Raises:
        OperationInProgressError: If another operation holds the lease
    """
    key = lock_key(target)
    token = f"{operation}:{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}"

    if not cache.add(key, token, timeout):
        holder = cache.get(key) or "unknown"
        raise OperationInProgressError(
            f"Cannot start {operation} of {target.name}: operation already in progress ({holder.split(':')[0]})"
        )

    logger.debug(f"Acquired {operation} lock for {target.name}")
    try:
        yield token
    finally:
        # Only release a lease we still own; it may have expired and been retaken
        if cache.get(key) == token:
            cache.delete(key)
            logger.debug(f"Released {operation} lock for {target.name}")
        else:
            logger.warning(f"{operation} lock for {target.name} expired before release")
