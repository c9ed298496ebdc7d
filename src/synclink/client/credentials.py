"""Secret storage backed by the OS keyring.

This module provides:
- CredentialStore: get/set/delete secrets under one service name
- Helpers for the primary API key and per-project credential bundles
"""

from __future__ import annotations

import json
import logging
from typing import Any

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "synclink"
API_KEY_NAME = "api-key"
PROJECT_KEY_PREFIX = "project-"


class CredentialStoreError(Exception):
    """Exception raised when the keyring cannot store a secret."""


class CredentialStore:
    """Secrets scoped by a fixed keyring service name."""

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self._service = service

    @property
    def service(self) -> str:
        """Keyring service name."""
        return self._service

    def get(self, key: str) -> str | None:
        """Get a secret, or None if absent or the keyring is unavailable."""
        try:
            return keyring.get_password(self._service, key)
        except KeyringError as e:
            logger.error("Failed to read %s from keyring: %s", key, e)
            return None

    def set(self, key: str, secret: str) -> None:
        """Store a secret.

        Raises:
            CredentialStoreError: If the keyring rejects the write.
        """
        try:
            keyring.set_password(self._service, key, secret)
        except KeyringError as e:
            raise CredentialStoreError(f"Failed to securely store {key}: {e}") from e
        logger.debug("Stored %s in keyring", key)

    def delete(self, key: str) -> bool:
        """Delete a secret. Returns False if there was nothing to delete."""
        try:
            keyring.delete_password(self._service, key)
        except PasswordDeleteError:
            logger.debug("No %s found in keyring", key)
            return False
        except KeyringError as e:
            logger.error("Failed to delete %s from keyring: %s", key, e)
            return False
        logger.debug("Deleted %s from keyring", key)
        return True

    # === API key ===

    def get_api_key(self) -> str | None:
        return self.get(API_KEY_NAME)

    def store_api_key(self, api_key: str) -> None:
        self.set(API_KEY_NAME, api_key)

    def delete_api_key(self) -> bool:
        return self.delete(API_KEY_NAME)

    # === Project credentials ===

    def get_project_credentials(self, project_id: str) -> dict[str, Any] | None:
        """Get the credential bundle stored for a project."""
        raw = self.get(f"{PROJECT_KEY_PREFIX}{project_id}")
        if raw is None:
            return None
        try:
            data: dict[str, Any] = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("Corrupt credentials for project %s: %s", project_id, e)
            return None
        return data

    def store_project_credentials(self, project_id: str, credentials: dict[str, Any]) -> None:
        self.set(f"{PROJECT_KEY_PREFIX}{project_id}", json.dumps(credentials))

    def delete_project_credentials(self, project_id: str) -> bool:
        return self.delete(f"{PROJECT_KEY_PREFIX}{project_id}")
