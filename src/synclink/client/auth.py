"""Access-token management for the synclink API.

This module provides:
- TokenSet: Access/refresh token pair with expiry
- AuthService: Exchanges the stored API key for tokens and keeps them fresh

Both ResilientApiClient and RealtimeChannel get their bearer token from
here. Token requests use a dedicated httpx.Client so a refresh never goes
through the retrying client it is unblocking.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from synclink.client.api import AuthenticationError
from synclink.client.credentials import CredentialStore
from synclink.core.config import ServerConfig

logger = logging.getLogger(__name__)

TOKEN_PATH = "/auth/token"
REFRESH_THRESHOLD = 5 * 60.0  # seconds before expiry


@dataclass
class TokenSet:
    """Tokens issued by the server."""

    access_token: str
    refresh_token: str | None
    expires_at: float

    def expires_within(self, seconds: float, now: float) -> bool:
        return self.expires_at - now < seconds


class AuthService:
    """Holds tokens in memory and the API key in the credential store.

    Thread-safe. Concurrent refreshes collapse into one request: callers
    that queued behind a refresh get its result.
    """

    def __init__(
        self,
        config: ServerConfig,
        credentials: CredentialStore | None = None,
        clock: Callable[[], float] = time.time,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the auth service.

        Args:
            config: Server endpoint settings.
            credentials: Where the API key lives (default: OS keyring).
            clock: Wall clock; replaceable in tests.
            transport: Optional httpx transport, mainly for tests.
        """
        self._config = config
        self._credentials = credentials or CredentialStore()
        self._clock = clock
        self._client = httpx.Client(
            base_url=config.api_endpoint,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"User-Agent": config.user_agent},
            transport=transport,
        )
        self._tokens: TokenSet | None = None
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def tokens(self) -> TokenSet | None:
        """Currently held tokens, if any."""
        with self._lock:
            return self._tokens

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> AuthService:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request_tokens(self, body: dict[str, str]) -> TokenSet:
        """POST to the token endpoint and parse the result.

        Raises:
            AuthenticationError: On any transport, status or format problem.
        """
        try:
            response = self._client.post(TOKEN_PATH, json=body)
        except httpx.RequestError as e:
            raise AuthenticationError(f"Token request failed: {e}") from e
        if response.status_code != 200:
            raise AuthenticationError(
                f"Token request rejected with status {response.status_code}",
                response.status_code,
            )
        try:
            data = response.json()
            access_token = data["accessToken"]
            expires_in = float(data["expiresIn"])
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError("Invalid response from token endpoint") from e

        previous = self._tokens.refresh_token if self._tokens else None
        return TokenSet(
            access_token=access_token,
            refresh_token=data.get("refreshToken") or previous,
            expires_at=self._clock() + expires_in,
        )

    def authenticate_with_api_key(self, api_key: str) -> bool:
        """Exchange an API key for tokens and store the key on success.

        Returns:
            True if authentication succeeded.
        """
        try:
            tokens = self._request_tokens({"apiKey": api_key, "grant_type": "api_key"})
        except AuthenticationError as e:
            logger.error("Authentication failed: %s", e)
            return False

        with self._lock:
            self._tokens = tokens
        self._credentials.store_api_key(api_key)
        logger.debug("Authentication successful")
        return True

    def get_access_token(self) -> str:
        """Get a usable access token.

        Authenticates with the stored API key when no token is held, and
        refreshes when the token expires within five minutes.

        Raises:
            AuthenticationError: If no valid token can be obtained.
        """
        with self._lock:
            tokens = self._tokens

        if tokens is None:
            api_key = self._credentials.get_api_key()
            if not api_key:
                raise AuthenticationError("Not authenticated. Run 'synclink login' first.")
            if not self.authenticate_with_api_key(api_key):
                raise AuthenticationError("Authentication with stored API key failed")
            with self._lock:
                tokens = self._tokens
            assert tokens is not None

        if tokens.expires_within(REFRESH_THRESHOLD, self._clock()):
            return self.refresh_access_token()
        return tokens.access_token

    def refresh_access_token(self) -> str:
        """Get a new access token using the refresh token.

        On failure the held tokens are cleared so the next
        get_access_token() re-authenticates from the API key.

        Raises:
            AuthenticationError: If the refresh fails.
        """
        with self._lock:
            stale = self._tokens.access_token if self._tokens else None

        with self._refresh_lock:
            with self._lock:
                tokens = self._tokens
            if tokens is not None and tokens.access_token != stale:
                # Another caller refreshed while we waited
                return tokens.access_token
            if tokens is None or not tokens.refresh_token:
                raise AuthenticationError("No refresh token available")

            try:
                new_tokens = self._request_tokens(
                    {"refresh_token": tokens.refresh_token, "grant_type": "refresh_token"}
                )
            except AuthenticationError as e:
                logger.error("Failed to refresh token: %s", e)
                with self._lock:
                    self._tokens = None
                raise AuthenticationError("Failed to refresh access token") from e

            with self._lock:
                self._tokens = new_tokens
            logger.debug("Access token refreshed")
            return new_tokens.access_token

    def logout(self) -> bool:
        """Forget tokens and delete the stored API key.

        Returns:
            True if an API key was deleted.
        """
        with self._lock:
            self._tokens = None
        return self._credentials.delete_api_key()

    def is_authenticated(self) -> bool:
        """Check if a valid token can be obtained."""
        try:
            self.get_access_token()
        except AuthenticationError:
            return False
        return True

    def auth_headers(self) -> dict[str, str]:
        """Get the Authorization header for the current token."""
        return {"Authorization": f"Bearer {self.get_access_token()}"}
