"""Secure credential manager for calendar provider tokens.

This module provides secure storage and retrieval of OAuth tokens using the
system keychain/keyring. Secrets are scoped by a provider namespace
(for example ``"remote-calendar"``) and a key (``"access_token"``).
"""

import logging
from typing import Any, Dict, Iterable, Optional, Protocol

import keyring
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError


logger = logging.getLogger(__name__)


class SecretStore(Protocol):
    """Namespaced secret storage consumed by the provider clients."""

    def get(self, namespace: str, key: str) -> Optional[str]:
        ...

    def set(self, namespace: str, key: str, value: str) -> bool:
        ...

    def delete(self, namespace: str, key: str) -> bool:
        ...


class CredentialManager:
    """Secure credential storage using system keyring."""

    SERVICE_NAME = "event_calendar_sync"

    def __init__(self, service_name: Optional[str] = None):
        """Initialize the credential manager.

        Args:
            service_name: Keyring service to store secrets under
        """
        self.service_name = service_name or self.SERVICE_NAME
        self.logger = logging.getLogger(__name__)
        self._keyring_available = False
        self._fallback_storage: Dict[str, str] = {}  # In-memory fallback if keyring is not usable

        self._init_keyring()

    def _init_keyring(self):
        """Check that a usable keyring backend is configured."""
        try:
            backend = keyring.get_keyring()
        except Exception as e:
            self.logger.warning(f"Keyring initialization failed: {e}, using in-memory storage")
            return

        if isinstance(backend, fail.Keyring):
            self.logger.warning("No keyring backend available, secrets will only live in memory")
            return

        self._keyring_available = True
        self.logger.debug(f"Keyring initialized with backend {backend.__class__.__name__}")

    def set(self, namespace: str, key: str, value: str) -> bool:
        """Store a credential securely.

        Args:
            namespace: Provider namespace (e.g., 'remote-calendar')
            key: Credential key (e.g., 'access_token')
            value: Credential value

        Returns:
            True if stored successfully, False otherwise
        """
        credential_key = self._make_credential_key(namespace, key)

        if self._keyring_available:
            try:
                keyring.set_password(self.service_name, credential_key, value)
                self.logger.debug(f"Stored credential {key} for {namespace} in keyring")
                return True
            except KeyringError as e:
                self.logger.error(f"Failed to store credential {key} for {namespace}: {e}")
                return False

        self._fallback_storage[credential_key] = value
        self.logger.debug(f"Stored credential {key} for {namespace} in memory")
        return True

    def get(self, namespace: str, key: str) -> Optional[str]:
        """Retrieve a credential.

        Args:
            namespace: Provider namespace
            key: Credential key

        Returns:
            Credential value if found, None otherwise
        """
        credential_key = self._make_credential_key(namespace, key)

        if self._keyring_available:
            try:
                value = keyring.get_password(self.service_name, credential_key)
            except KeyringError as e:
                self.logger.error(f"Failed to retrieve credential {key} for {namespace}: {e}")
                value = None
            if value:
                return value

        return self._fallback_storage.get(credential_key)

    def delete(self, namespace: str, key: str) -> bool:
        """Delete a credential.

        Args:
            namespace: Provider namespace
            key: Credential key

        Returns:
            True if something was deleted, False otherwise
        """
        credential_key = self._make_credential_key(namespace, key)
        deleted = False

        if self._keyring_available:
            try:
                keyring.delete_password(self.service_name, credential_key)
                deleted = True
                self.logger.debug(f"Deleted credential {key} for {namespace} from keyring")
            except PasswordDeleteError:
                self.logger.debug(f"Credential {key} for {namespace} not found in keyring")
            except KeyringError as e:
                self.logger.error(f"Failed to delete credential {key} for {namespace}: {e}")

        if self._fallback_storage.pop(credential_key, None) is not None:
            deleted = True

        return deleted

    def has_credential(self, namespace: str, key: str) -> bool:
        return self.get(namespace, key) is not None

    def delete_all_credentials(self, namespace: str, keys: Iterable[str]) -> int:
        """Delete several credentials of a namespace.

        Returns:
            Number of credentials deleted
        """
        deleted_count = sum(1 for key in keys if self.delete(namespace, key))
        if deleted_count > 0:
            self.logger.info(f"Deleted {deleted_count} credentials for {namespace}")
        return deleted_count

    def is_keyring_available(self) -> bool:
        """Check if keyring is available and working."""
        return self._keyring_available

    def get_storage_info(self) -> Dict[str, Any]:
        """Get information about credential storage."""
        return {
            'keyring_available': self._keyring_available,
            'keyring_backend': keyring.get_keyring().__class__.__name__ if self._keyring_available else None,
            'fallback_credentials_count': len(self._fallback_storage),
            'service_name': self.service_name,
        }

    def _make_credential_key(self, namespace: str, key: str) -> str:
        """Create a unique credential key for storage."""
        return f"{namespace}_{key}"
