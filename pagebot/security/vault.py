"""Symmetric encryption of stored credentials.

Page access tokens, webhook verify tokens and provider API keys are stored
encrypted with a Fernet key taken from ``ENCRYPTION_KEY``. Components that
talk to an external API receive a :class:`CredentialVault` and decrypt the
secret right before use.
"""

from __future__ import annotations

import logging
import os

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class VaultError(RuntimeError):
    """Raised when a secret cannot be encrypted or decrypted."""


def generate_key() -> str:
    """Return a new urlsafe base64 key suitable for ``ENCRYPTION_KEY``."""

    return Fernet.generate_key().decode("utf-8")


class CredentialVault:
    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise VaultError("Encryption key is required")
        raw = key.encode("utf-8") if isinstance(key, str) else key
        try:
            self._fernet = Fernet(raw)
        except (ValueError, TypeError) as exc:
            raise VaultError("Encryption key must be 32 url-safe base64-encoded bytes") from exc

    @classmethod
    def from_env(cls, env_var: str = "ENCRYPTION_KEY") -> "CredentialVault":
        key = os.getenv(env_var)
        if not key:
            raise VaultError(f"{env_var} environment variable is not set")
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        if plaintext is None:
            raise VaultError("Cannot encrypt an empty secret")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        if not token:
            raise VaultError("Cannot decrypt an empty value")
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            logger.warning("Failed to decrypt stored credential")
            raise VaultError("Stored credential could not be decrypted") from exc

    def decrypt_or_none(self, token: str | None) -> str | None:
        """Best-effort decryption used when scanning many stored tokens."""

        if not token:
            return None
        try:
            return self.decrypt(token)
        except VaultError:
            return None
