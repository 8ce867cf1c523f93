"""
Encryption and checksum utilities for the backup system.

This module provides:
1. AES-256-GCM authenticated encryption of archive bytes
2. Encryption key validation (exactly 32 bytes)
3. SHA-256 checksum calculation and verification

Artifacts are produced in the order:
Dump Directory -> tar.gz Archive -> AES-256-GCM Encryption -> Checksum -> Storage

Encrypted blob layout:
    MAGIC (4 bytes) | NONCE (12 bytes) | CIPHERTEXT + TAG (16 bytes)

The magic header is bound as associated data, so a blob with a modified
header fails authentication just like a modified ciphertext.
"""

import base64
import binascii
import hashlib
import logging
import os
from pathlib import Path
from typing import Optional, Union

from django.conf import settings

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import EncryptionFailure, IntegrityFailure

logger = logging.getLogger(__name__)

MAGIC = b"SKE1"
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

CHUNK_SIZE = 1024 * 1024  # 1MB chunks


def validate_encryption_key(key: Union[str, bytes]) -> bytes:
    """
    Normalize and validate an AES-256 key.

    Accepts raw bytes, a plain string (UTF-8 encoded), or a string with a
    ``base64:`` prefix holding the base64 encoding of the key.

    Args:
        key: Configured key value

    Returns:
        The key as exactly 32 bytes

    Raises:
        EncryptionFailure: If the key is empty, not decodable, or not 32 bytes long
    """
    if not key:
        raise EncryptionFailure("Encryption key is empty")

    if isinstance(key, str):
        if key.startswith("base64:"):
            try:
                key = base64.b64decode(key[len("base64:"):], validate=True)
            except (binascii.Error, ValueError) as e:
                raise EncryptionFailure(f"Encryption key is not valid base64: {e}") from e
        else:
            key = key.encode("utf-8")

    if len(key) != KEY_SIZE:
        raise EncryptionFailure(
            f"Encryption key must be exactly {KEY_SIZE} bytes, got {len(key)} bytes"
        )

    return bytes(key)


class Encryptor:
    """
    AES-256-GCM encryptor bound to a single validated key.

    A fresh random nonce is generated for every call to ``encrypt``.
    """

    def __init__(self, key: Union[str, bytes]):
        self._key = validate_encryption_key(key)
        self._aead = AESGCM(self._key)

    def encrypt(self, plaintext: bytes) -> bytes:
        """
        Encrypt bytes.

        Args:
            plaintext: Bytes to encrypt

        Returns:
            Encrypted blob (magic + nonce + ciphertext/tag)

        Raises:
            EncryptionFailure: If the cryptography library fails
        """
        try:
            nonce = os.urandom(NONCE_SIZE)
            ciphertext = self._aead.encrypt(nonce, plaintext, MAGIC)
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionFailure(f"Encryption failed: {e}") from e

        blob = MAGIC + nonce + ciphertext
        logger.debug(f"Encrypted {len(plaintext)} bytes -> {len(blob)} bytes")
        return blob

    def decrypt(self, blob: bytes) -> bytes:
        """
        Decrypt a blob produced by ``encrypt``.

        Raises:
            IntegrityFailure: If the blob is malformed, tampered with, or the key is wrong
        """
        if len(blob) < len(MAGIC) + NONCE_SIZE + TAG_SIZE:
            raise IntegrityFailure("Encrypted blob is truncated")

        if blob[: len(MAGIC)] != MAGIC:
            raise IntegrityFailure("Encrypted blob has an unknown header")

        nonce = blob[len(MAGIC) : len(MAGIC) + NONCE_SIZE]
        ciphertext = blob[len(MAGIC) + NONCE_SIZE :]

        try:
            return self._aead.decrypt(nonce, ciphertext, MAGIC)
        except InvalidTag:
            raise IntegrityFailure("Authentication tag mismatch: wrong key or corrupted artifact")


def encrypt(plaintext: bytes, key: Union[str, bytes]) -> bytes:
    """Encrypt ``plaintext`` with ``key``."""
    return Encryptor(key).encrypt(plaintext)


def decrypt(blob: bytes, key: Union[str, bytes]) -> bytes:
    """Decrypt ``blob`` with ``key``."""
    return Encryptor(key).decrypt(blob)


def get_configured_encryptor() -> Optional[Encryptor]:
    """
    Build an Encryptor from settings.BACKUP_ENCRYPTION_KEY.

    Returns:
        Encryptor instance, or None when no key is configured (unencrypted mode)

    Raises:
        EncryptionFailure: If a key is configured but invalid
    """
    key = getattr(settings, "BACKUP_ENCRYPTION_KEY", None)

    if not key:
        return None

    return Encryptor(key)


def calculate_checksum(source: Union[bytes, str, Path]) -> str:
    """
    Calculate the SHA-256 checksum of bytes or of a file.

    Args:
        source: Raw bytes, or a path to a file

    Returns:
        Hexadecimal checksum string

    Raises:
        FileNotFoundError: If a path is given and the file doesn't exist
    """
    hasher = hashlib.sha256()

    if isinstance(source, (bytes, bytearray, memoryview)):
        hasher.update(source)
        return hasher.hexdigest()

    path = Path(source)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    with open(path, "rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)

    return hasher.hexdigest()


def verify_checksum(source: Union[bytes, str, Path], expected_checksum: str) -> bool:
    """
    Verify the checksum of bytes or a file.

    Returns:
        True if checksum matches, False otherwise
    """
    actual_checksum = calculate_checksum(source)
    matches = actual_checksum.lower() == (expected_checksum or "").lower()

    if not matches:
        logger.warning(f"Checksum mismatch: expected {expected_checksum}, got {actual_checksum}")

    return matches
