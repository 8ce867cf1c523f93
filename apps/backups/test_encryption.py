"""
Tests for backup encryption and checksum utilities.

These tests verify:
1. AES-256-GCM encryption round trip with a fresh nonce per call
2. Tampered blobs and wrong keys are rejected with IntegrityFailure
3. Key validation (exactly 32 bytes, base64: prefix)
4. SHA-256 checksum calculation for bytes and files
"""

import base64
import tempfile
from pathlib import Path

from django.test import TestCase, override_settings

from apps.backups.encryption import (
    MAGIC,
    NONCE_SIZE,
    Encryptor,
    calculate_checksum,
    decrypt,
    encrypt,
    get_configured_encryptor,
    validate_encryption_key,
    verify_checksum,
)
from apps.backups.exceptions import EncryptionFailure, IntegrityFailure

KEY = b"0123456789abcdef0123456789abcdef"
OTHER_KEY = b"fedcba9876543210fedcba9876543210"


class EncryptionKeyTests(TestCase):
    """Test encryption key validation."""

    def test_accepts_32_byte_key(self):
        self.assertEqual(validate_encryption_key(KEY), KEY)

    def test_string_key_is_utf8_encoded(self):
        key = validate_encryption_key(KEY.decode("utf-8"))
        self.assertIsInstance(key, bytes)
        self.assertEqual(key, KEY)

    def test_base64_prefixed_key(self):
        encoded = "base64:" + base64.b64encode(KEY).decode("ascii")
        self.assertEqual(validate_encryption_key(encoded), KEY)

    def test_rejects_31_byte_key(self):
        with self.assertRaises(EncryptionFailure) as context:
            validate_encryption_key(b"x" * 31)
        self.assertIn("32 bytes", str(context.exception))

    def test_rejects_33_byte_key(self):
        with self.assertRaises(EncryptionFailure):
            validate_encryption_key("y" * 33)

    def test_rejects_empty_key(self):
        with self.assertRaises(EncryptionFailure):
            validate_encryption_key("")

    def test_rejects_invalid_base64(self):
        with self.assertRaises(EncryptionFailure):
            validate_encryption_key("base64:not*valid*base64")

    def test_configured_encryptor_none_without_key(self):
        with override_settings(BACKUP_ENCRYPTION_KEY=""):
            self.assertIsNone(get_configured_encryptor())

    def test_configured_encryptor_from_settings(self):
        with override_settings(BACKUP_ENCRYPTION_KEY=KEY.decode("utf-8")):
            encryptor = get_configured_encryptor()
            self.assertIsInstance(encryptor, Encryptor)


class EncryptionTests(TestCase):
    """Test AES-256-GCM encryption and decryption."""

    def setUp(self):
        self.encryptor = Encryptor(KEY)

    def test_round_trip(self):
        plaintext = b"backup archive bytes " * 100
        blob = self.encryptor.encrypt(plaintext)

        self.assertNotEqual(blob, plaintext)
        self.assertTrue(blob.startswith(MAGIC))
        self.assertEqual(self.encryptor.decrypt(blob), plaintext)

    def test_round_trip_empty_payload(self):
        self.assertEqual(self.encryptor.decrypt(self.encryptor.encrypt(b"")), b"")

    def test_fresh_nonce_per_call(self):
        first = self.encryptor.encrypt(b"same input")
        second = self.encryptor.encrypt(b"same input")

        self.assertNotEqual(first, second)
        self.assertNotEqual(
            first[len(MAGIC) : len(MAGIC) + NONCE_SIZE],
            second[len(MAGIC) : len(MAGIC) + NONCE_SIZE],
        )

    def test_tampered_ciphertext_rejected(self):
        blob = bytearray(self.encryptor.encrypt(b"important data"))
        blob[-1] ^= 0x01

        with self.assertRaises(IntegrityFailure):
            self.encryptor.decrypt(bytes(blob))

    def test_tampered_header_rejected(self):
        blob = self.encryptor.encrypt(b"important data")

        with self.assertRaises(IntegrityFailure):
            self.encryptor.decrypt(b"XXXX" + blob[len(MAGIC) :])

    def test_truncated_blob_rejected(self):
        with self.assertRaises(IntegrityFailure):
            self.encryptor.decrypt(MAGIC + b"\x00" * 10)

    def test_wrong_key_rejected(self):
        blob = encrypt(b"important data", KEY)

        with self.assertRaises(IntegrityFailure):
            decrypt(blob, OTHER_KEY)

    def test_module_helpers_round_trip(self):
        self.assertEqual(decrypt(encrypt(b"payload", KEY), KEY), b"payload")


class ChecksumTests(TestCase):
    """Test SHA-256 checksum calculation."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        import shutil

        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_checksum_of_bytes(self):
        # Known SHA-256 of b"abc"
        self.assertEqual(
            calculate_checksum(b"abc"),
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad",
        )

    def test_checksum_of_file_matches_bytes(self):
        content = b"x" * (3 * 1024 * 1024 + 7)  # Spans several read chunks
        test_file = Path(self.temp_dir) / "artifact.bin"
        test_file.write_bytes(content)

        self.assertEqual(calculate_checksum(test_file), calculate_checksum(content))

    def test_checksum_is_stable_across_reads(self):
        test_file = Path(self.temp_dir) / "artifact.bin"
        test_file.write_bytes(b"stable content")

        self.assertEqual(calculate_checksum(test_file), calculate_checksum(test_file))

    def test_checksum_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            calculate_checksum(Path(self.temp_dir) / "missing.bin")

    def test_verify_checksum(self):
        checksum = calculate_checksum(b"data")

        self.assertTrue(verify_checksum(b"data", checksum))
        self.assertTrue(verify_checksum(b"data", checksum.upper()))
        self.assertFalse(verify_checksum(b"other", checksum))
