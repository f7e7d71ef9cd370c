"""
Dump engine.

pg_dump only runs parallel workers for the directory format, so a dump is
taken as a directory and then packed into a single ``.dump.tar`` archive.
Restoring reverses this: the archive is unpacked and handed to pg_restore.
"""

import logging
import shutil
import tarfile
from pathlib import Path
from typing import Optional

from .artifacts import DUMP_SUFFIX
from .encryption import prepare_for_storage, write_checksum_file
from .exceptions import DumpError, RestoreError

logger = logging.getLogger(__name__)

ARCHIVE_ROOT = "dump"


def create_dump(server, database: str, output_dir: Path, basename: str, jobs: int) -> Path:
    """
    Produce a plain dump archive of a database.

    Args:
        server: PostgresServer that hosts the database
        database: Database to dump
        output_dir: Directory that receives the archive
        basename: Archive name without suffix
        jobs: Parallel dump workers

    Returns:
        Path to ``<output_dir>/<basename>.dump.tar``

    Raises:
        DumpError: If pg_dump fails or produces no output. Partial output
            is removed before the error propagates.
    """
    output_dir = Path(output_dir)
    dump_dir = output_dir / f"{basename}.d"
    archive = output_dir / f"{basename}{DUMP_SUFFIX}"

    logger.info(f"Dumping database {database} with {jobs} parallel job(s)")
    try:
        server.dump(database, dump_dir, jobs)

        if not dump_dir.is_dir() or not any(dump_dir.iterdir()):
            raise DumpError(f"pg_dump produced no output for {database}")

        with tarfile.open(archive, "w") as tar:
            tar.add(str(dump_dir), arcname=ARCHIVE_ROOT)
    except DumpError:
        archive.unlink(missing_ok=True)
        raise
    except (OSError, tarfile.TarError) as e:
        archive.unlink(missing_ok=True)
        raise DumpError(f"Failed to archive dump of {database}: {e}") from e
    finally:
        shutil.rmtree(dump_dir, ignore_errors=True)

    logger.info(f"Dump archive created: {archive.name} ({archive.stat().st_size} bytes)")
    return archive


def extract_dump(archive: Path, work_dir: Path) -> Path:
    """
    Unpack a dump archive.

    Returns:
        The directory format dump inside work_dir

    Raises:
        RestoreError: If the archive is unreadable or malformed
    """
    target = Path(work_dir) / "extracted"
    try:
        with tarfile.open(archive, "r") as tar:
            tar.extractall(target, filter="data")
    except (OSError, tarfile.TarError) as e:
        raise RestoreError(f"Cannot unpack dump archive {Path(archive).name}: {e}") from e

    dump_dir = target / ARCHIVE_ROOT
    if not dump_dir.is_dir():
        raise RestoreError(f"Dump archive {Path(archive).name} has no '{ARCHIVE_ROOT}' directory")
    return dump_dir


def restore_dump(server, database: str, archive: Path, work_dir: Path, jobs: int) -> None:
    """Unpack a plain dump archive and restore it into an existing database."""
    dump_dir = extract_dump(archive, work_dir)
    try:
        logger.info(f"Restoring {Path(archive).name} into {database} with {jobs} parallel job(s)")
        server.restore(database, dump_dir, jobs)
    finally:
        shutil.rmtree(dump_dir.parent, ignore_errors=True)


def create_artifact_file(
    server,
    database: str,
    output_dir: Path,
    basename: str,
    jobs: int,
    compression_level: int,
    encryption_key: Optional[str],
) -> Path:
    """
    Dump, compress and encrypt a database into one artifact file.

    A checksum sidecar is written next to the artifact.

    Returns:
        Path of the artifact inside output_dir
    """
    archive = create_dump(server, database, output_dir, basename, jobs)
    try:
        artifact = prepare_for_storage(archive, compression_level, encryption_key)
    finally:
        archive.unlink(missing_ok=True)

    write_checksum_file(artifact)
    return artifact
