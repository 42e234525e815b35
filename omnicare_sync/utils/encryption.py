"""Encryption utilities for offline data using AES-GCM.

Note: This module handles PHI-related encryption operations. Each data
classification gets its own key derived from the master key, so revoking
one classification's key leaves the others readable.
"""

import base64
import binascii
import hashlib
import json
import os
from typing import Any, Dict, Optional, Set

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from omnicare_sync.config import Settings, get_settings
from omnicare_sync.core.exceptions import (
    EncryptionError,
    EncryptionKeyUnavailableError,
    IntegrityError,
)
from omnicare_sync.models.sync import DataClassification
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)

# Key length in bytes per classification
KEY_SIZES: Dict[DataClassification, int] = {
    DataClassification.PHI: 32,
    DataClassification.SENSITIVE: 32,
    DataClassification.GENERAL: 16,
}

IV_SIZE = 12
TAG_SIZE = 16


def canonical_json(data: Any) -> str:
    """Serialize deterministically so checksums are stable."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def checksum(data: Any) -> str:
    """SHA-256 over the canonical JSON form."""
    return hashlib.sha256(canonical_json(data).encode()).hexdigest()


class ClassifiedEncryptionService:
    """Encrypt and decrypt offline payloads with per-classification AES-GCM keys."""

    def __init__(
        self,
        master_key: Optional[str] = None,
        salt: Optional[str] = None,
        iterations: Optional[int] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """Initialize encryption service.

        Args:
            master_key: Master secret; defaults to the configured encryption key
            salt: Salt for key derivation; defaults to the configured salt
            iterations: PBKDF2 iterations
            settings: Settings to read defaults from
        """
        if master_key is None or salt is None or iterations is None:
            settings = settings or get_settings()
            master_key = settings.encryption_key if master_key is None else master_key
            salt = settings.encryption_salt if salt is None else salt
            iterations = (
                settings.encryption_kdf_iterations if iterations is None else iterations
            )
        self._master_key = master_key.encode() if master_key else b""
        self._salt = salt
        self._iterations = iterations
        self._keys: Dict[DataClassification, bytes] = {}
        self._revoked: Set[DataClassification] = set()

    def key_bits(self, classification: DataClassification) -> int:
        """Key strength used for a classification."""
        return KEY_SIZES[classification] * 8

    def key_available(self, classification: DataClassification) -> bool:
        """Whether data of this classification can be encrypted or read."""
        return bool(self._master_key) and classification not in self._revoked

    def _key(self, classification: DataClassification) -> bytes:
        """Get or derive the key for a classification."""
        if not self.key_available(classification):
            raise EncryptionKeyUnavailableError(
                f"No key available for {classification.value} data"
            )
        key = self._keys.get(classification)
        if key is None:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_SIZES[classification],
                salt=f"{self._salt}:{classification.value}".encode(),
                iterations=self._iterations,
                backend=default_backend(),
            )
            key = kdf.derive(self._master_key)
            self._keys[classification] = key
        return key

    def encrypt(
        self,
        data: str,
        classification: DataClassification,
        associated_data: Optional[bytes] = None,
    ) -> str:
        """Encrypt a string; returns base64 of IV + tag + ciphertext."""
        iv = os.urandom(IV_SIZE)
        cipher = Cipher(
            algorithms.AES(self._key(classification)),
            modes.GCM(iv),
            backend=default_backend(),
        )
        encryptor = cipher.encryptor()
        if associated_data:
            encryptor.authenticate_additional_data(associated_data)
        ciphertext = encryptor.update(data.encode()) + encryptor.finalize()
        return base64.urlsafe_b64encode(iv + encryptor.tag + ciphertext).decode()

    def decrypt(
        self,
        encrypted_data: str,
        classification: DataClassification,
        associated_data: Optional[bytes] = None,
    ) -> str:
        """Decrypt a string produced by ``encrypt``.

        Raises:
            IntegrityError: ciphertext is malformed or fails authentication
            EncryptionKeyUnavailableError: the classification key is gone
        """
        key = self._key(classification)
        try:
            data = base64.urlsafe_b64decode(encrypted_data.encode())
        except (binascii.Error, ValueError) as e:
            raise IntegrityError("Ciphertext is not valid base64") from e
        if len(data) < IV_SIZE + TAG_SIZE:
            raise IntegrityError("Ciphertext is truncated")

        iv = data[:IV_SIZE]
        tag = data[IV_SIZE : IV_SIZE + TAG_SIZE]
        ciphertext = data[IV_SIZE + TAG_SIZE :]

        cipher = Cipher(algorithms.AES(key), modes.GCM(iv, tag), backend=default_backend())
        decryptor = cipher.decryptor()
        if associated_data:
            decryptor.authenticate_additional_data(associated_data)
        try:
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag as e:
            raise IntegrityError("Ciphertext failed authentication") from e

        try:
            return plaintext.decode()
        except UnicodeDecodeError as e:
            raise EncryptionError("Decrypted data is not valid UTF-8") from e

    def revoke_key(self, classification: DataClassification) -> None:
        """Drop a classification key; later reads and writes fail closed."""
        self._keys.pop(classification, None)
        self._revoked.add(classification)
        logger.warning("encryption_key_revoked", classification=classification.value)

    def restore_key(self, classification: DataClassification) -> None:
        """Allow a revoked classification key to be derived again."""
        self._revoked.discard(classification)

    @staticmethod
    def generate_key() -> str:
        """Generate a new 32-character master key."""
        return base64.urlsafe_b64encode(os.urandom(24)).decode()
