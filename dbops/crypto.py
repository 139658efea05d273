"""Machine-bound symmetric encryption for secrets stored at rest.

Secrets are encrypted with AES-256-CBC under a key derived from a digest of
stable local machine attributes, so a copied registry file is only useful on
the machine that wrote it. Each blob is self-describing::

    base64( salt[32] || iv[16] || AES-256-CBC-PKCS7(plaintext) )
"""

from __future__ import annotations

import base64
import binascii
import getpass
import hashlib
import logging
import os
import platform
import socket
import struct
from typing import Protocol, runtime_checkable

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError, EncryptionError

LOG = logging.getLogger(__name__)

APP_IDENTIFIER = "DbOps-v1.0"
FALLBACK_PREFIX = "DbOps-Default-Entropy-"

SALT_SIZE = 32
IV_SIZE = 16
KEY_SIZE = 32
ITERATIONS = 10_000
BLOCK_BITS = 128

_SELF_TEST_PLAINTEXT = "Test encryption data 123!@#"


@runtime_checkable
class MachineEntropyProvider(Protocol):
    """Source of the machine-bound bytes mixed into key derivation."""

    def entropy(self) -> bytes:
        """Return a stable byte string for this machine."""


class SystemMachineEntropy:
    """Entropy derived from hostname, OS user, OS version and CPU count."""

    def __init__(self, app_identifier: str = APP_IDENTIFIER) -> None:
        self._app_identifier = app_identifier
        self._cached: bytes | None = None

    def entropy(self) -> bytes:
        if self._cached is None:
            self._cached = self._compute()
        return self._cached

    def _compute(self) -> bytes:
        try:
            cpu_count = os.cpu_count()
            if cpu_count is None:
                raise OSError("CPU count unavailable")
            parts = [
                _hostname().encode("utf-8"),
                getpass.getuser().encode("utf-8"),
                platform.platform().encode("utf-8"),
                struct.pack("<i", cpu_count),
                self._app_identifier.encode("utf-8"),
            ]
        except (OSError, KeyError, ImportError) as exc:
            LOG.warning("Machine attributes unavailable; using fallback entropy", extra={"error": str(exc)})
            return hashlib.sha256(f"{FALLBACK_PREFIX}{_hostname()}".encode("utf-8")).digest()
        return hashlib.sha256(b"".join(parts)).digest()


class StaticMachineEntropy:
    """Fixed entropy, useful for tests and reproducible setups."""

    def __init__(self, value: bytes) -> None:
        if not value:
            raise ValueError("Entropy must not be empty.")
        self._value = bytes(value)

    def entropy(self) -> bytes:
        return self._value


class EncryptionService:
    """Encrypts and decrypts single strings with a machine-derived key."""

    def __init__(self, entropy: MachineEntropyProvider | None = None) -> None:
        self._entropy = entropy or SystemMachineEntropy()

    def encrypt(self, plaintext: str) -> str:
        """Encrypt `plaintext`; a fresh salt and IV are drawn on every call."""

        if not plaintext:
            return ""
        try:
            salt = os.urandom(SALT_SIZE)
            iv = os.urandom(IV_SIZE)
            padder = padding.PKCS7(BLOCK_BITS).padder()
            padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
            encryptor = Cipher(algorithms.AES(self._derive_key(salt)), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
        except (ValueError, TypeError, UnicodeEncodeError) as exc:
            raise EncryptionError(f"Encryption failed: {exc}") from exc
        return base64.b64encode(salt + iv + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Decrypt a blob produced by :meth:`encrypt` on this machine."""

        if not blob:
            return ""
        try:
            raw = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise DecryptionError(f"Decryption failed: invalid base64 ({exc})") from exc
        if len(raw) < SALT_SIZE + IV_SIZE:
            raise DecryptionError("Decryption failed: invalid ciphertext format")
        salt = raw[:SALT_SIZE]
        iv = raw[SALT_SIZE:SALT_SIZE + IV_SIZE]
        ciphertext = raw[SALT_SIZE + IV_SIZE:]
        if not ciphertext or len(ciphertext) % IV_SIZE:
            raise DecryptionError("Decryption failed: ciphertext is not a whole number of blocks")
        try:
            decryptor = Cipher(algorithms.AES(self._derive_key(salt)), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise DecryptionError(f"Decryption failed: {exc}") from exc

    def can_decrypt(self, blob: str) -> bool:
        """Best-effort check that never raises."""

        if not blob:
            return True
        try:
            self.decrypt(blob)
        except DecryptionError:
            return False
        return True

    def self_test(self) -> bool:
        """Round-trip a known string to verify the crypto primitives work."""

        try:
            return self.decrypt(self.encrypt(_SELF_TEST_PLAINTEXT)) == _SELF_TEST_PLAINTEXT
        except (EncryptionError, DecryptionError) as exc:
            LOG.error("Encryption self-test failed", extra={"error": str(exc)})
            return False

    @staticmethod
    def validate_password(password: str) -> bool:
        """Any non-empty password is acceptable for a database connection."""

        return bool(password)

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=ITERATIONS,
        )
        return kdf.derive(self._entropy.entropy() + salt)


def _hostname() -> str:
    return socket.gethostname() or platform.node()


__all__ = [
    "EncryptionService",
    "MachineEntropyProvider",
    "StaticMachineEntropy",
    "SystemMachineEntropy",
]
