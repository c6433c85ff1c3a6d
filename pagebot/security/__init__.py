"""Secret handling helpers."""

from .vault import CredentialVault, VaultError, generate_key

__all__ = ["CredentialVault", "VaultError", "generate_key"]
