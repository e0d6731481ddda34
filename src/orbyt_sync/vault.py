"""Credential vault: authenticated encryption of provider tokens at rest.

Tokens are sealed with AES-256-GCM under a single process-wide key and
stored as ``nonce:tag:ciphertext`` (all lowercase hex). The same key also
backs an HMAC-SHA256 signer used for OAuth ``state`` values and webhook
client state, so a deployment has exactly one secret to rotate.
"""

from __future__ import annotations

import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from orbyt_sync.errors import ConfigurationError, IntegrityError

KEY_SIZE_BYTES = 32
NONCE_SIZE_BYTES = 12
TAG_SIZE_BYTES = 16
_SEPARATOR = ":"


def generate_key() -> str:
    """Return a fresh random key encoded as 64 hex characters."""
    return os.urandom(KEY_SIZE_BYTES).hex()


def _parse_key(key_hex: str | None) -> bytes:
    if not key_hex:
        raise ConfigurationError("INTEGRATION_ENCRYPTION_KEY is not set")
    try:
        key = bytes.fromhex(key_hex.strip())
    except ValueError as exc:
        raise ConfigurationError("INTEGRATION_ENCRYPTION_KEY must be hex encoded") from exc
    if len(key) != KEY_SIZE_BYTES:
        raise ConfigurationError(
            f"INTEGRATION_ENCRYPTION_KEY must be {KEY_SIZE_BYTES * 2} hex characters "
            f"({KEY_SIZE_BYTES} bytes)"
        )
    return key


class CredentialVault:
    """Encrypts and decrypts OAuth tokens; signs short opaque messages."""

    def __init__(self, key_hex: str | None) -> None:
        self._key = _parse_key(key_hex)
        self._aead = AESGCM(self._key)

    def __repr__(self) -> str:
        return "CredentialVault(key=[REDACTED])"

    @classmethod
    def from_env(cls) -> CredentialVault:
        return cls(os.environ.get("INTEGRATION_ENCRYPTION_KEY"))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE_BYTES], sealed[-TAG_SIZE_BYTES:]
        return _SEPARATOR.join((nonce.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, token: str) -> str:
        """Reverse :meth:`encrypt`.

        Raises
        ------
        IntegrityError
            If *token* is not three hex parts, has the wrong nonce or tag
            length, or fails GCM authentication (tampered or wrong key).
        """
        parts = token.split(_SEPARATOR) if isinstance(token, str) else []
        if len(parts) != 3:
            raise IntegrityError("Stored credential is malformed")
        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as exc:
            raise IntegrityError("Stored credential is not hex encoded") from exc
        if len(nonce) != NONCE_SIZE_BYTES or len(tag) != TAG_SIZE_BYTES:
            raise IntegrityError("Stored credential has an invalid nonce or tag length")
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise IntegrityError("Stored credential failed authentication") from exc
        return plaintext.decode("utf-8")

    def sign(self, message: str) -> str:
        return hmac.new(self._key, message.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, message: str, signature: str | None) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(message), signature)
