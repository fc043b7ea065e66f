"""
auth/cipher.py -- Authenticated encryption for sensitive persisted fields.

Scheme (per value):
  salt  = 64 random bytes
  iv    = 16 random bytes
  key   = PBKDF2-HMAC-SHA256(master_secret, salt, 100_000 iterations, 32 bytes)
  ct|tag = AES-256-GCM(key, iv, plaintext)
  blob  = base64(salt || iv || tag || ct)

Every value gets its own salt and therefore its own key. Nothing is cached
across calls: each encrypt/decrypt pays the full KDF cost (tens of
milliseconds). Do not call this in a per-record loop over large result sets.

GCM's tag makes tampering detectable: a flipped bit anywhere in iv, tag or
ciphertext -- or the wrong master secret -- raises DecryptionFailed. There is
no code path that returns unauthenticated plaintext.

Unconfigured (missing or < 32 char master secret) fails closed: encrypt and
decrypt raise EncryptionMisconfigured instead of passing plaintext through.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from auth.errors import DecryptionFailed, EncryptionMisconfigured

logger = logging.getLogger("hive.auth")

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
ITERATIONS = 100_000
MIN_SECRET_LENGTH = 32

_HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH


class FieldCipher:
    """AES-256-GCM field cipher keyed by a single master secret.

    Usage:
        cipher = FieldCipher(settings.encryption_key)
        blob = cipher.encrypt("alice@example.com")
        cipher.decrypt(blob)  # -> "alice@example.com"
    """

    def __init__(self, master_secret: str | None, *, iterations: int = ITERATIONS) -> None:
        self._master_secret = master_secret or ""
        self._iterations = iterations

    def is_configured(self) -> bool:
        return len(self._master_secret) >= MIN_SECRET_LENGTH

    def _require_configured(self) -> bytes:
        if not self.is_configured():
            logger.error("ENCRYPTION_KEY is missing or shorter than %d characters", MIN_SECRET_LENGTH)
            raise EncryptionMisconfigured()
        return self._master_secret.encode("utf-8")

    def _derive_key(self, secret: bytes, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(secret)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a non-empty string and return the base64 blob."""
        if not plaintext:
            raise ValueError("Cannot encrypt an empty value.")
        secret = self._require_configured()

        salt = secrets.token_bytes(SALT_LENGTH)
        iv = secrets.token_bytes(IV_LENGTH)
        key = self._derive_key(secret, salt)

        # AESGCM appends the tag to the ciphertext; the stored layout puts it first.
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Decrypt a blob produced by encrypt(). Raises DecryptionFailed on any mismatch."""
        secret = self._require_configured()
        try:
            raw = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, AttributeError) as exc:
            raise DecryptionFailed("Encrypted value is not valid base64.") from exc
        if len(raw) <= _HEADER_LENGTH:
            raise DecryptionFailed("Encrypted value is truncated.")

        salt = raw[:SALT_LENGTH]
        iv = raw[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
        tag = raw[SALT_LENGTH + IV_LENGTH : _HEADER_LENGTH]
        ciphertext = raw[_HEADER_LENGTH:]

        key = self._derive_key(secret, salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.warning("Decryption failed: authentication tag mismatch")
            raise DecryptionFailed() from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailed("Decrypted value is not valid UTF-8.") from exc
