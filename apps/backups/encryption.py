"""
Compression, encryption and checksum utilities for the backup system.

This module provides utilities for:
1. Streaming gzip compression with a configurable level
2. Authenticated encryption using Fernet (AES-128-CBC + HMAC-SHA256)
3. SHA-256 checksums with ``sha256sum`` compatible sidecar files

Backups are always compressed first, then encrypted:
Dump archive -> Gzip Compression -> Fernet Encryption -> Storage

Encrypted files are written in chunks so that multi-gigabyte dumps never
have to fit in memory::

    b"DBVAULT1" | salt (16 bytes) | (length:uint32 | fernet token)* | 0:uint32

The zero-length frame marks the end of the stream, so a truncated file is
detected even when it is cut on a frame boundary.
"""

import base64
import binascii
import gzip
import hashlib
import logging
import os
import struct
import zlib
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .artifacts import COMPRESSED_SUFFIX, ENCRYPTED_SUFFIX, checksum_path_for
from .exceptions import CompressionError, EncryptionError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1 MiB
MAGIC = b"DBVAULT1"
SALT_SIZE = 16
KDF_ITERATIONS = 480000
FRAME_HEADER = struct.Struct(">I")


def _partial_path(path: Path) -> Path:
    return path.with_name(path.name + ".partial")


def _finalize(partial: Path, output: Path) -> None:
    with open(partial, "rb+") as f:
        os.fsync(f.fileno())
    os.replace(partial, output)


def iter_file_chunks(path: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            yield chunk


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------


def compress_file(input_path: Path, level: int = 6, output_path: Optional[Path] = None) -> Path:
    """
    Compress a file with gzip.

    The original file is deleted only once the compressed file has been
    completely written and synced. On any failure the partial output is
    removed and the original is left untouched.

    Args:
        input_path: File to compress
        level: Compression level, 1 (fastest) to 9 (smallest)
        output_path: Destination (defaults to input_path + '.gz')

    Returns:
        Path of the compressed file

    Raises:
        CompressionError: If compression fails
    """
    input_path = Path(input_path)
    output_path = Path(output_path) if output_path else input_path.with_name(input_path.name + COMPRESSED_SUFFIX)
    partial = _partial_path(output_path)

    try:
        original_size = input_path.stat().st_size
        with gzip.open(partial, "wb", compresslevel=level) as f_out:
            for chunk in iter_file_chunks(input_path):
                f_out.write(chunk)
        _finalize(partial, output_path)
    except (OSError, zlib.error) as e:
        partial.unlink(missing_ok=True)
        raise CompressionError(f"Failed to compress {input_path}: {e}") from e

    input_path.unlink()

    compressed_size = output_path.stat().st_size
    ratio = (1 - compressed_size / original_size) * 100 if original_size > 0 else 0
    logger.info(
        f"Compressed {input_path.name}: {original_size} -> {compressed_size} bytes "
        f"({ratio:.1f}% reduction, level {level})"
    )
    return output_path


def decompress_file(input_path: Path, output_path: Optional[Path] = None) -> Path:
    """
    Decompress a gzip file. The input file is kept.

    Args:
        input_path: Compressed file
        output_path: Destination (defaults to input_path without '.gz')

    Returns:
        Path of the decompressed file

    Raises:
        CompressionError: If the stream is corrupt or truncated
    """
    input_path = Path(input_path)
    if output_path is None:
        if not input_path.name.endswith(COMPRESSED_SUFFIX):
            raise CompressionError(f"Not a gzip file name: {input_path}")
        output_path = input_path.with_name(input_path.name[: -len(COMPRESSED_SUFFIX)])
    output_path = Path(output_path)
    partial = _partial_path(output_path)

    try:
        with gzip.open(input_path, "rb") as f_in, open(partial, "wb") as f_out:
            while True:
                chunk = f_in.read(CHUNK_SIZE)
                if not chunk:
                    break
                f_out.write(chunk)
        _finalize(partial, output_path)
    except (OSError, EOFError, zlib.error) as e:
        partial.unlink(missing_ok=True)
        raise CompressionError(f"Failed to decompress {input_path}: {e}") from e

    logger.debug(f"Decompressed {input_path.name} -> {output_path.name}")
    return output_path


def check_gzip_stream(chunks: Iterable[bytes]) -> int:
    """
    Dry-run decompression of a gzip byte stream. Nothing is written.

    Args:
        chunks: Compressed bytes, in order

    Returns:
        Number of decompressed bytes

    Raises:
        CompressionError: If the stream is corrupt or ends early
    """
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    total = 0
    try:
        for chunk in chunks:
            data = chunk
            # A gzip file may hold several members back to back
            while data:
                total += len(decompressor.decompress(data))
                if not decompressor.eof:
                    break
                data = decompressor.unused_data
                if data:
                    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
        total += len(decompressor.flush())
    except zlib.error as e:
        raise CompressionError(f"Corrupt gzip stream: {e}") from e

    if not decompressor.eof:
        raise CompressionError("Truncated gzip stream: end of stream marker missing")
    return total


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


def _is_fernet_key(value: bytes) -> bool:
    try:
        return len(base64.urlsafe_b64decode(value)) == 32
    except (binascii.Error, ValueError):
        return False


def generate_key() -> str:
    """Generate a new random key suitable for BACKUP_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("ascii")


@contextmanager
def encryption_key(passphrase: str, salt: bytes):
    """
    Materialise the encryption key for the duration of one operation.

    A value that is already a Fernet key is used as is. Any other
    passphrase is stretched with PBKDF2-HMAC-SHA256 using the per-file salt.
    The derived key material is held in a mutable buffer that is zeroed
    on every exit path.

    Args:
        passphrase: Configured BACKUP_ENCRYPTION_KEY
        salt: Per-file salt from the encrypted file header

    Yields:
        Fernet cipher bound to the key
    """
    if not passphrase:
        raise EncryptionError("No encryption key configured")

    secret = bytearray(passphrase.encode("utf-8"))
    key = bytearray()
    try:
        if _is_fernet_key(bytes(secret)):
            key.extend(secret)
        else:
            kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=KDF_ITERATIONS)
            key.extend(base64.urlsafe_b64encode(kdf.derive(bytes(secret))))
        yield Fernet(bytes(key))
    finally:
        for buffer in (secret, key):
            for i in range(len(buffer)):
                buffer[i] = 0


def encrypt_file(input_path: Path, key: Optional[str], output_path: Optional[Path] = None) -> Path:
    """
    Encrypt a file in authenticated chunks.

    When no key is configured encryption is a reported no-op and the input
    path is returned unchanged.

    Args:
        input_path: File to encrypt
        key: Encryption key or passphrase, or None
        output_path: Destination (defaults to input_path + '.enc')

    Returns:
        Path of the encrypted file, or input_path if encryption is disabled

    Raises:
        EncryptionError: If encryption fails
    """
    input_path = Path(input_path)
    if not key:
        logger.info(f"Encryption disabled, leaving {input_path.name} unencrypted")
        return input_path

    output_path = Path(output_path) if output_path else input_path.with_name(input_path.name + ENCRYPTED_SUFFIX)
    partial = _partial_path(output_path)
    salt = os.urandom(SALT_SIZE)

    try:
        with encryption_key(key, salt) as cipher, open(partial, "wb") as f_out:
            f_out.write(MAGIC + salt)
            for chunk in iter_file_chunks(input_path):
                token = cipher.encrypt(chunk)
                f_out.write(FRAME_HEADER.pack(len(token)))
                f_out.write(token)
            f_out.write(FRAME_HEADER.pack(0))
        _finalize(partial, output_path)
    except OSError as e:
        partial.unlink(missing_ok=True)
        raise EncryptionError(f"Failed to encrypt {input_path}: {e}") from e
    except EncryptionError:
        partial.unlink(missing_ok=True)
        raise

    input_path.unlink()
    logger.info(f"Encrypted {input_path.name} -> {output_path.name}")
    return output_path


def _read_exact(f, size: int, what: str) -> bytes:
    data = f.read(size)
    if len(data) != size:
        raise EncryptionError(f"Truncated encrypted stream while reading {what}")
    return data


def iter_decrypted_chunks(input_path: Path, key: Optional[str]) -> Iterator[bytes]:
    """
    Decrypt an encrypted file chunk by chunk, authenticating every chunk.

    Raises:
        EncryptionError: If the key is missing or wrong, or the file is
            corrupt or truncated
    """
    if not key:
        raise EncryptionError(f"{Path(input_path).name} is encrypted but no encryption key is configured")

    with open(input_path, "rb") as f:
        header = f.read(len(MAGIC))
        if header != MAGIC:
            raise EncryptionError(f"{Path(input_path).name} is not a recognised encrypted backup")
        salt = _read_exact(f, SALT_SIZE, "salt")

        with encryption_key(key, salt) as cipher:
            while True:
                frame = f.read(FRAME_HEADER.size)
                if not frame:
                    raise EncryptionError("Truncated encrypted stream: end marker missing")
                if len(frame) != FRAME_HEADER.size:
                    raise EncryptionError("Truncated encrypted stream while reading frame header")

                (length,) = FRAME_HEADER.unpack(frame)
                if length == 0:
                    break

                token = _read_exact(f, length, "frame")
                try:
                    yield cipher.decrypt(token)
                except InvalidToken:
                    raise EncryptionError(
                        "Decryption failed: wrong encryption key or the file has been tampered with"
                    )


def decrypt_file(input_path: Path, key: Optional[str], output_path: Optional[Path] = None) -> Path:
    """
    Decrypt a file produced by encrypt_file(). The input file is kept.

    Args:
        input_path: Encrypted file
        key: Encryption key or passphrase
        output_path: Destination (defaults to input_path without '.enc')

    Returns:
        Path of the decrypted file

    Raises:
        EncryptionError: If decryption fails
    """
    input_path = Path(input_path)
    if output_path is None:
        if not input_path.name.endswith(ENCRYPTED_SUFFIX):
            raise EncryptionError(f"Not an encrypted file name: {input_path}")
        output_path = input_path.with_name(input_path.name[: -len(ENCRYPTED_SUFFIX)])
    output_path = Path(output_path)
    partial = _partial_path(output_path)

    try:
        with open(partial, "wb") as f_out:
            for chunk in iter_decrypted_chunks(input_path, key):
                f_out.write(chunk)
        _finalize(partial, output_path)
    except OSError as e:
        partial.unlink(missing_ok=True)
        raise EncryptionError(f"Failed to decrypt {input_path}: {e}") from e
    except EncryptionError:
        partial.unlink(missing_ok=True)
        raise

    logger.debug(f"Decrypted {input_path.name} -> {output_path.name}")
    return output_path


# ---------------------------------------------------------------------------
# Checksums
# ---------------------------------------------------------------------------


def calculate_checksum(file_path: Path) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    sha256 = hashlib.sha256()
    for chunk in iter_file_chunks(Path(file_path)):
        sha256.update(chunk)
    return sha256.hexdigest()


def write_checksum_file(file_path: Path, checksum: Optional[str] = None) -> Path:
    """
    Write a ``sha256sum`` compatible sidecar next to the file.

    Returns:
        Path of the sidecar
    """
    file_path = Path(file_path)
    checksum = checksum or calculate_checksum(file_path)
    sidecar = checksum_path_for(file_path)
    sidecar.write_text(f"{checksum}  {file_path.name}\n")
    return sidecar


def read_checksum_file(file_path: Path) -> Optional[str]:
    """Expected checksum from the sidecar, or None when there is no sidecar."""
    sidecar = checksum_path_for(Path(file_path))
    if not sidecar.is_file():
        return None

    content = sidecar.read_text().strip()
    if not content:
        return None
    return content.split()[0].lower()


def verify_checksum(file_path: Path, expected_checksum: str) -> bool:
    actual = calculate_checksum(file_path)
    if actual != expected_checksum.lower():
        logger.error(
            f"Checksum mismatch for {Path(file_path).name}: expected {expected_checksum}, got {actual}"
        )
        return False
    return True


# ---------------------------------------------------------------------------
# Combined stages
# ---------------------------------------------------------------------------


def prepare_for_storage(dump_path: Path, level: int, key: Optional[str]) -> Path:
    """
    Compress and then encrypt a dump archive, in place.

    Returns:
        Path of the final artifact (``.gz`` or ``.gz.enc``)
    """
    compressed = compress_file(dump_path, level=level)
    return encrypt_file(compressed, key)


def restore_to_plain(artifact_path: Path, key: Optional[str], work_dir: Path) -> Path:
    """
    Undo prepare_for_storage(): decrypt then decompress into work_dir.

    The artifact itself is never modified.

    Returns:
        Path of the plain dump archive inside work_dir

    Raises:
        EncryptionError: If the artifact cannot be decrypted
        CompressionError: If the artifact cannot be decompressed
    """
    artifact_path = Path(artifact_path)
    work_dir = Path(work_dir)
    name = artifact_path.name

    source = artifact_path
    intermediate = None
    if name.endswith(ENCRYPTED_SUFFIX):
        name = name[: -len(ENCRYPTED_SUFFIX)]
        intermediate = decrypt_file(artifact_path, key, work_dir / name)
        source = intermediate

    if name.endswith(COMPRESSED_SUFFIX):
        name = name[: -len(COMPRESSED_SUFFIX)]
        try:
            return decompress_file(source, work_dir / name)
        finally:
            if intermediate is not None:
                intermediate.unlink(missing_ok=True)

    if intermediate is not None:
        return intermediate
    raise CompressionError(f"{artifact_path.name} is neither compressed nor encrypted")

