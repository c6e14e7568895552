"""Authenticated encryption of onboarding state at rest.

Blob layout (base64 for the TEXT column):

    salt (32) | nonce (16) | GCM tag (16) | ciphertext

Every call draws a fresh salt and nonce.  The per-record AES-256 key is
derived from the master secret and the salt with scrypt, which is slow on
purpose (tens of milliseconds) to raise brute-force cost.  Callers on the
event loop should run ``encrypt`` / ``decrypt`` in a worker thread.

Rotating the master secret makes every live blob undecryptable; live
records would need re-encrypting first.
"""

import base64
import binascii
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from onboarding.config import Settings
from onboarding.middleware.exceptions import ConfigurationError

logger = logging.getLogger("onboarding.encryption")

KEY_LENGTH = 32
SALT_LENGTH = 32
NONCE_LENGTH = 16
TAG_LENGTH = 16
HEADER_LENGTH = SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH

# scrypt cost (N=2^14, r=8, p=1: ~16 MiB, tens of ms)
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

DEV_FALLBACK_KEY = "dev-key-32chars-for-testing-only!!"


class DecryptFailure(Exception):
    """Blob could not be authenticated or decoded.  Carries no detail."""

    def __init__(self):
        super().__init__("Decryption failed")


class EncryptFailure(Exception):
    def __init__(self):
        super().__init__("Encryption failed")


def resolve_master_secret(settings: Settings) -> str:
    """Master secret from config; production refuses to run without one."""
    key = settings.onboarding_encryption_key
    if key:
        return key
    if settings.is_production:
        raise ConfigurationError(
            "ONBOARDING_ENCRYPTION_KEY environment variable is required in production"
        )
    logger.warning(
        "ONBOARDING_ENCRYPTION_KEY not set; using the development fallback key"
    )
    return DEV_FALLBACK_KEY


class StateCipher:
    """AES-256-GCM codec with scrypt-derived per-record keys."""

    def __init__(self, master_secret: str, scrypt_n: int = SCRYPT_N):
        if not master_secret:
            raise ConfigurationError("Encryption master secret must not be empty")
        self._secret = master_secret.encode("utf-8")
        self._scrypt_n = scrypt_n

    def _derive_key(self, salt: bytes) -> bytes:
        # Scrypt instances are single-use
        kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=self._scrypt_n, r=SCRYPT_R, p=SCRYPT_P)
        return kdf.derive(self._secret)

    def encrypt(self, value: Any) -> str:
        """Serialize ``value`` to JSON and seal it.  Returns base64 text."""
        try:
            plaintext = json.dumps(value, separators=(",", ":")).encode("utf-8")
            salt = os.urandom(SALT_LENGTH)
            nonce = os.urandom(NONCE_LENGTH)
            sealed = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext, None)
        except (TypeError, ValueError) as exc:
            logger.error("Failed to encrypt onboarding state: %s", type(exc).__name__)
            raise EncryptFailure() from None

        # AESGCM appends the tag; the stored layout puts it before the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(salt + nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> Any:
        """Open a blob produced by ``encrypt``.  Raises ``DecryptFailure``."""
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise DecryptFailure() from None

        if len(raw) < HEADER_LENGTH:
            raise DecryptFailure()

        salt = raw[:SALT_LENGTH]
        nonce = raw[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
        tag = raw[SALT_LENGTH + NONCE_LENGTH:HEADER_LENGTH]
        ciphertext = raw[HEADER_LENGTH:]

        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext + tag, None)
            return json.loads(plaintext.decode("utf-8"))
        except (InvalidTag, ValueError):
            # UnicodeDecodeError and JSONDecodeError are ValueErrors
            raise DecryptFailure() from None
