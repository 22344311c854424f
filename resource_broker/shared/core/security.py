import getpass
import hashlib
import os
import socket
from typing import cast
import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = structlog.get_logger()

# ============================================================================
# Machine-bound key derivation
# ============================================================================


class MachineKeyManager:
    """
    Derives the token-cache encryption key from a machine-specific secret.

    Features:
    - Key material bound to hostname + OS user (a copied cache file does not
      decrypt on another machine or account)
    - Slow KDF (scrypt) to make offline guessing expensive
    - Stateless; callers that need the key more than once keep it themselves
    """

    KEY_LENGTH = 32  # AES-256
    SCRYPT_N = 2**14
    SCRYPT_R = 8
    SCRYPT_P = 1

    @staticmethod
    def machine_secret() -> str:
        """Hostname + user name of the current process."""
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = str(os.getuid()) if hasattr(os, "getuid") else "unknown"
        return f"{socket.gethostname()}{user}"

    @classmethod
    def derive_key(cls, secret: str, salt: str) -> bytes:
        """Derive a 256-bit key from ``secret`` using scrypt."""
        kdf = Scrypt(
            salt=salt.encode(),
            length=cls.KEY_LENGTH,
            n=cls.SCRYPT_N,
            r=cls.SCRYPT_R,
            p=cls.SCRYPT_P,
        )
        return cast(bytes, kdf.derive(secret.encode()))


# ============================================================================
# Authenticated encryption
# ============================================================================

NONCE_LENGTH = 12
TAG_LENGTH = 16


class DecryptionError(ValueError):
    """Blob is truncated, tampered with, or was sealed under another key."""


def seal(plaintext: bytes, key: bytes) -> bytes:
    """
    Encrypt with AES-256-GCM.

    Format: nonce (12 bytes) + ciphertext + auth tag (16 bytes).
    """
    nonce = os.urandom(NONCE_LENGTH)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def unseal(blob: bytes, key: bytes) -> bytes:
    if len(blob) < NONCE_LENGTH + TAG_LENGTH + 1:
        raise DecryptionError("Invalid encrypted data: too short")
    nonce, ciphertext = blob[:NONCE_LENGTH], blob[NONCE_LENGTH:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Invalid encrypted data: authentication failed") from e


def fingerprint(value: str) -> str:
    """Stable, non-reversible identifier for secret-bearing keys (file names, logs)."""
    return hashlib.sha256(value.encode()).hexdigest()
