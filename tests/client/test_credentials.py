"""Tests for keyring-backed credential storage."""

from __future__ import annotations

from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import pytest
from keyring.errors import KeyringError, PasswordDeleteError

from synclink.client.credentials import (
    API_KEY_NAME,
    KEYRING_SERVICE,
    CredentialStore,
    CredentialStoreError,
)


@pytest.fixture
def fake_keyring() -> Iterator[MagicMock]:
    """Replace the keyring module with an in-memory store."""
    secrets: dict[tuple[str, str], str] = {}

    def delete(service: str, key: str) -> None:
        if (service, key) not in secrets:
            raise PasswordDeleteError("not found")
        del secrets[(service, key)]

    with patch("synclink.client.credentials.keyring") as mock_keyring:
        mock_keyring.get_password.side_effect = lambda s, k: secrets.get((s, k))
        mock_keyring.set_password.side_effect = lambda s, k, v: secrets.__setitem__((s, k), v)
        mock_keyring.delete_password.side_effect = delete
        mock_keyring.secrets = secrets
        yield mock_keyring


class TestApiKey:
    """Tests for the primary API key."""

    def test_store_and_get(self, fake_keyring: MagicMock) -> None:
        store = CredentialStore()
        store.store_api_key("sk-123")

        assert store.get_api_key() == "sk-123"
        assert fake_keyring.secrets == {(KEYRING_SERVICE, API_KEY_NAME): "sk-123"}

    def test_missing_key(self, fake_keyring: MagicMock) -> None:
        assert CredentialStore().get_api_key() is None

    def test_delete(self, fake_keyring: MagicMock) -> None:
        store = CredentialStore()
        store.store_api_key("sk-123")

        assert store.delete_api_key() is True
        assert store.delete_api_key() is False
        assert store.get_api_key() is None


class TestKeyringFailures:
    """Tests for keyring backend errors."""

    def test_read_error_returns_none(self, fake_keyring: MagicMock) -> None:
        fake_keyring.get_password.side_effect = KeyringError("locked")
        assert CredentialStore().get("api-key") is None

    def test_write_error_raises(self, fake_keyring: MagicMock) -> None:
        fake_keyring.set_password.side_effect = KeyringError("no backend")
        with pytest.raises(CredentialStoreError, match="securely store"):
            CredentialStore().store_api_key("sk-123")

    def test_delete_error_returns_false(self, fake_keyring: MagicMock) -> None:
        fake_keyring.delete_password.side_effect = KeyringError("locked")
        assert CredentialStore().delete("api-key") is False


class TestProjectCredentials:
    """Tests for per-project credential bundles."""

    def test_round_trip(self, fake_keyring: MagicMock) -> None:
        store = CredentialStore()
        store.store_project_credentials("p1", {"token": "abc", "scopes": ["read"]})

        assert store.get_project_credentials("p1") == {"token": "abc", "scopes": ["read"]}
        assert (KEYRING_SERVICE, "project-p1") in fake_keyring.secrets

    def test_corrupt_bundle(self, fake_keyring: MagicMock) -> None:
        fake_keyring.secrets[(KEYRING_SERVICE, "project-p1")] = "{broken"
        assert CredentialStore().get_project_credentials("p1") is None

    def test_delete(self, fake_keyring: MagicMock) -> None:
        store = CredentialStore()
        store.store_project_credentials("p1", {"token": "abc"})

        assert store.delete_project_credentials("p1") is True
        assert store.get_project_credentials("p1") is None

    def test_custom_service(self, fake_keyring: MagicMock) -> None:
        store = CredentialStore("synclink-staging")
        store.store_api_key("sk-1")

        assert ("synclink-staging", API_KEY_NAME) in fake_keyring.secrets
        assert CredentialStore().get_api_key() is None
