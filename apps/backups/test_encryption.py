"""
Tests for backup compression, encryption and checksum utilities.

These tests verify:
1. Gzip compression keeps the original until the output is complete
2. Chunked Fernet encryption round trips and rejects wrong keys
3. Truncated and tampered encrypted streams are detected
4. SHA-256 checksum sidecars
5. prepare_for_storage / restore_to_plain mirror each other
"""

import gzip
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

from django.test import SimpleTestCase

from cryptography.fernet import Fernet

from apps.backups.encryption import (
    CHUNK_SIZE,
    MAGIC,
    calculate_checksum,
    check_gzip_stream,
    compress_file,
    decompress_file,
    decrypt_file,
    encrypt_file,
    encryption_key,
    iter_decrypted_chunks,
    iter_file_chunks,
    prepare_for_storage,
    read_checksum_file,
    restore_to_plain,
    verify_checksum,
    write_checksum_file,
)
from apps.backups.exceptions import CompressionError, EncryptionError


class TempDirMixin:
    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class CompressionTests(TempDirMixin, SimpleTestCase):
    """Test file compression and decompression."""

    def test_compress_file_replaces_original(self):
        test_file = self.temp_dir / "dump.tar"
        content = b"This is a test file. " * 1000
        test_file.write_bytes(content)

        compressed = compress_file(test_file, level=6)

        self.assertEqual(compressed, self.temp_dir / "dump.tar.gz")
        self.assertFalse(test_file.exists())
        self.assertLess(compressed.stat().st_size, len(content))
        with gzip.open(compressed, "rb") as f:
            self.assertEqual(f.read(), content)

    def test_compress_failure_keeps_original_and_removes_partial(self):
        test_file = self.temp_dir / "dump.tar"
        test_file.write_bytes(b"x" * 4096)

        with patch("apps.backups.encryption._finalize", side_effect=OSError("disk full")):
            with self.assertRaises(CompressionError):
                compress_file(test_file)

        self.assertTrue(test_file.exists())
        self.assertEqual(list(self.temp_dir.iterdir()), [test_file])

    def test_decompress_file_keeps_input(self):
        test_file = self.temp_dir / "dump.tar"
        content = b"payload " * 500
        test_file.write_bytes(content)
        compressed = compress_file(test_file)

        restored = decompress_file(compressed)

        self.assertEqual(restored.read_bytes(), content)
        self.assertTrue(compressed.exists())

    def test_decompress_truncated_file(self):
        test_file = self.temp_dir / "dump.tar"
        test_file.write_bytes(bytes(range(256)) * 400)
        compressed = compress_file(test_file, level=1)
        data = compressed.read_bytes()
        compressed.write_bytes(data[: len(data) // 2])

        with self.assertRaises(CompressionError):
            decompress_file(compressed)
        self.assertFalse((self.temp_dir / "dump.tar").exists())

    def test_check_gzip_stream(self):
        test_file = self.temp_dir / "dump.tar"
        test_file.write_bytes(b"abc" * 10000)
        compressed = compress_file(test_file)

        self.assertEqual(check_gzip_stream(iter_file_chunks(compressed, chunk_size=1000)), 30000)

    def test_check_gzip_stream_detects_truncation(self):
        test_file = self.temp_dir / "dump.tar"
        test_file.write_bytes(bytes(range(256)) * 400)
        compressed = compress_file(test_file, level=1)
        truncated = compressed.read_bytes()[:-20]

        with self.assertRaises(CompressionError):
            check_gzip_stream([truncated])

    def test_check_gzip_stream_rejects_garbage(self):
        with self.assertRaises(CompressionError):
            check_gzip_stream([b"definitely not gzip data"])


class EncryptionTests(TempDirMixin, SimpleTestCase):
    """Test chunked Fernet encryption."""

    def setUp(self):
        super().setUp()
        self.key = Fernet.generate_key().decode()

    def _plain_file(self, size=3 * CHUNK_SIZE + 123):
        path = self.temp_dir / "dump.tar.gz"
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return path

    def test_round_trip_across_chunks(self):
        plain = self._plain_file()
        original = plain.read_bytes()

        encrypted = encrypt_file(plain, self.key)

        self.assertEqual(encrypted.name, "dump.tar.gz.enc")
        self.assertFalse(plain.exists())
        self.assertTrue(encrypted.read_bytes().startswith(MAGIC))

        decrypted = decrypt_file(encrypted, self.key)
        self.assertEqual(decrypted.read_bytes(), original)

    def test_passphrase_is_stretched(self):
        plain = self._plain_file(size=5000)
        original = plain.read_bytes()

        encrypted = encrypt_file(plain, "correct horse battery staple")
        decrypted = decrypt_file(encrypted, "correct horse battery staple")

        self.assertEqual(decrypted.read_bytes(), original)

    def test_no_key_is_a_noop(self):
        plain = self._plain_file(size=100)

        result = encrypt_file(plain, None)

        self.assertEqual(result, plain)
        self.assertTrue(plain.exists())

    def test_wrong_key_fails(self):
        encrypted = encrypt_file(self._plain_file(size=5000), self.key)

        with self.assertRaises(EncryptionError) as context:
            decrypt_file(encrypted, Fernet.generate_key().decode())
        self.assertIn("wrong encryption key", str(context.exception))
        self.assertFalse((self.temp_dir / "dump.tar.gz").exists())

    def test_missing_key_fails(self):
        encrypted = encrypt_file(self._plain_file(size=5000), self.key)

        with self.assertRaises(EncryptionError):
            list(iter_decrypted_chunks(encrypted, None))

    def test_truncated_stream_detected(self):
        encrypted = encrypt_file(self._plain_file(), self.key)
        data = encrypted.read_bytes()

        # Cut exactly after the first frame: every remaining frame is gone
        first_frame_length = int.from_bytes(data[24:28], "big")
        encrypted.write_bytes(data[: 28 + first_frame_length])

        with self.assertRaises(EncryptionError) as context:
            list(iter_decrypted_chunks(encrypted, self.key))
        self.assertIn("Truncated", str(context.exception))

    def test_tampered_stream_detected(self):
        encrypted = encrypt_file(self._plain_file(size=5000), self.key)
        data = bytearray(encrypted.read_bytes())
        data[100] ^= 0xFF
        encrypted.write_bytes(bytes(data))

        with self.assertRaises(EncryptionError):
            list(iter_decrypted_chunks(encrypted, self.key))

    def test_not_an_encrypted_file(self):
        path = self.temp_dir / "random.enc"
        path.write_bytes(b"plain text pretending to be encrypted")

        with self.assertRaises(EncryptionError):
            list(iter_decrypted_chunks(path, self.key))

    def test_key_buffer_is_wiped(self):
        buffers = []

        def tracking_bytearray(*args):
            buffer = bytearray(*args)
            buffers.append(buffer)
            return buffer

        with patch("apps.backups.encryption.bytearray", side_effect=tracking_bytearray, create=True):
            with encryption_key(self.key, b"0" * 16) as cipher:
                self.assertIsInstance(cipher, Fernet)
                self.assertTrue(any(any(buffer) for buffer in buffers))

        self.assertEqual(len(buffers), 2)
        for buffer in buffers:
            self.assertFalse(any(buffer))

    def test_empty_key_rejected(self):
        with self.assertRaises(EncryptionError):
            with encryption_key("", b"0" * 16):
                pass


class ChecksumTests(TempDirMixin, SimpleTestCase):
    """Test SHA-256 checksums and sidecars."""

    def test_checksum_known_value(self):
        path = self.temp_dir / "data.bin"
        path.write_bytes(b"hello")

        self.assertEqual(
            calculate_checksum(path),
            "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824",
        )

    def test_sidecar_round_trip(self):
        path = self.temp_dir / "shop_20250105_020000.dump.tar.gz"
        path.write_bytes(b"backup bytes")

        sidecar = write_checksum_file(path)

        self.assertEqual(sidecar.name, "shop_20250105_020000.dump.tar.gz.sha256")
        self.assertEqual(sidecar.read_text(), f"{calculate_checksum(path)}  {path.name}\n")
        self.assertEqual(read_checksum_file(path), calculate_checksum(path))

    def test_read_missing_sidecar(self):
        self.assertIsNone(read_checksum_file(self.temp_dir / "nothing.gz"))

    def test_verify_checksum(self):
        path = self.temp_dir / "data.bin"
        path.write_bytes(b"hello")

        self.assertTrue(verify_checksum(path, calculate_checksum(path)))
        self.assertFalse(verify_checksum(path, "0" * 64))


class StorageStageTests(TempDirMixin, SimpleTestCase):
    """Test the combined compress/encrypt stage and its inverse."""

    def test_prepare_and_restore_with_encryption(self):
        key = Fernet.generate_key().decode()
        dump = self.temp_dir / "shop_20250105_020000.dump.tar"
        content = b"table data " * 20000
        dump.write_bytes(content)

        artifact = prepare_for_storage(dump, 6, key)
        self.assertEqual(artifact.name, "shop_20250105_020000.dump.tar.gz.enc")

        work_dir = self.temp_dir / "work"
        work_dir.mkdir()
        plain = restore_to_plain(artifact, key, work_dir)

        self.assertEqual(plain, work_dir / "shop_20250105_020000.dump.tar")
        self.assertEqual(plain.read_bytes(), content)
        self.assertTrue(artifact.exists())
        self.assertEqual(sorted(p.name for p in work_dir.iterdir()), [plain.name])

    def test_prepare_and_restore_without_encryption(self):
        dump = self.temp_dir / "shop_20250105_020000.dump.tar"
        dump.write_bytes(b"rows " * 1000)

        artifact = prepare_for_storage(dump, 1, None)
        self.assertEqual(artifact.name, "shop_20250105_020000.dump.tar.gz")

        work_dir = self.temp_dir / "work"
        work_dir.mkdir()
        self.assertEqual(restore_to_plain(artifact, None, work_dir).read_bytes(), b"rows " * 1000)
