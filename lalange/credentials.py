"""Secure credential storage for the inference API key.

Responsibilities:
- Persist the inference API key in an OS-backed credential store via `keyring`.
- Provide deterministic read/write/delete operations that never log secrets.

Key types:
- `CredentialStore`: interface for API key persistence.
- `KeyringCredentialStore`: keyring-backed implementation.
"""

from __future__ import annotations

from dataclasses import dataclass

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

_DEFAULT_SERVICE_NAME = "lalange"
_DEFAULT_ACCOUNT_NAME = "api_key"


class CredentialStore:
    """Interface for secure API key operations."""

    def is_available(self) -> bool:
        """Return whether secure credential operations are available."""

        raise NotImplementedError

    def get_api_key(self) -> str | None:
        """Load the stored API key, when present."""

        raise NotImplementedError

    def set_api_key(self, api_key: str) -> None:
        """Persist an API key."""

        raise NotImplementedError

    def clear_api_key(self) -> bool:
        """Delete a stored API key and return whether one existed."""

        raise NotImplementedError


@dataclass(slots=True)
class KeyringCredentialStore(CredentialStore):
    """Credential store backed by the active `keyring` backend."""

    service_name: str = _DEFAULT_SERVICE_NAME
    account_name: str = _DEFAULT_ACCOUNT_NAME

    def _backend(self):
        """Return the keyring module used for storage operations."""

        return keyring

    def is_available(self) -> bool:
        """Return `False` when only the fail-safe keyring backend is configured."""

        backend = self._backend().get_keyring()
        return getattr(backend, "priority", 1) > 0

    def get_api_key(self) -> str | None:
        """Get the normalized API key, returning `None` when missing or unreadable."""

        try:
            value = self._backend().get_password(self.service_name, self.account_name)
        except KeyringError:
            return None
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    def set_api_key(self, api_key: str) -> None:
        """Persist a normalized API key.

        Raises:
            ValueError: If the key is blank.
            RuntimeError: If the keyring backend rejects the write.
        """

        normalized = api_key.strip()
        if not normalized:
            raise ValueError("API key must be a non-empty string.")
        try:
            self._backend().set_password(self.service_name, self.account_name, normalized)
        except KeyringError as exc:
            raise RuntimeError(
                "Secure credential storage is unavailable. Configure a keyring backend "
                "or pass the API key with `--api-key`."
            ) from exc

    def clear_api_key(self) -> bool:
        """Remove the stored API key and report whether one was present."""

        if self.get_api_key() is None:
            return False
        try:
            self._backend().delete_password(self.service_name, self.account_name)
        except PasswordDeleteError:
            return False
        return True


def create_credential_store() -> CredentialStore:
    """Create the default credential store implementation."""

    return KeyringCredentialStore()
