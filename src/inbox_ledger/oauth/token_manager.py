"""
OAuth access token lifecycle for mailbox access.

An access token is reused while it stays valid for longer than the refresh
buffer; otherwise it is renewed with the stored refresh token. Refreshes
are serialized per user so concurrent callers never race each other to
the token endpoint.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import AuthRequired, InboxLedgerError
from ..schemas.budget import TokenRecord
from ..state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


class TokenRefreshError(InboxLedgerError):
    """Token endpoint unreachable or failing after retries."""

    pass


class TokenRejected(InboxLedgerError):
    """Token endpoint refused the refresh token (revoked or expired grant)."""

    def __init__(self, status_code: int, error: str, description: Optional[str] = None):
        self.status_code = status_code
        self.error = error
        self.description = description
        super().__init__(f"Refresh token rejected ({status_code}): {description or error}")


@dataclass
class TokenResponse:
    """Successful refresh response."""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "TokenResponse":
        if not data.get("access_token"):
            raise TokenRefreshError("Token response has no access_token")
        return cls(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in") or DEFAULT_EXPIRES_IN),
            refresh_token=data.get("refresh_token"),
        )


class OAuthClient:
    """
    Client for the OAuth 2.0 token endpoint (refresh_token grant).

    Transient failures (429/5xx, connection errors) are retried with
    exponential backoff; 400/401 are final.
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str = "https://oauth2.googleapis.com/token",
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Exchange a refresh token for a new access token.

        Raises:
            TokenRejected: 400/401 from the endpoint (no retry)
            TokenRefreshError: Network failure or 5xx after retries
        """
        try:
            response = self.session.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TokenRefreshError(f"Token endpoint request failed: {e}") from e

        if response.status_code in (400, 401):
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise TokenRejected(
                response.status_code,
                body.get("error", "invalid_grant"),
                body.get("error_description"),
            )
        if not response.ok:
            raise TokenRefreshError(
                f"Token endpoint returned {response.status_code}: {response.reason}"
            )

        try:
            return TokenResponse.from_api_response(response.json())
        except ValueError as e:
            raise TokenRefreshError(f"Invalid token response: {e}") from e


class TokenManager:
    """Owns access/refresh token validity and renewal per user."""

    def __init__(
        self,
        store: StateStore,
        oauth_client: OAuthClient,
        refresh_buffer_seconds: int = 300,
    ):
        self.store = store
        self.oauth_client = oauth_client
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            if user_id not in self._locks:
                self._locks[user_id] = threading.Lock()
            return self._locks[user_id]

    def _usable(self, record: Optional[TokenRecord]) -> bool:
        return bool(
            record
            and record.access_token
            and record.expiry
            and record.expiry > time.time() + self.refresh_buffer_seconds
        )

    def get_valid_access_token(self, user_id: str) -> str:
        """
        Return an access token valid for at least the refresh buffer.

        Raises:
            AuthRequired: No refresh token stored, or the refresh failed
        """
        record = self.store.get_token_record(user_id)
        if self._usable(record):
            return record.access_token

        with self._lock_for(user_id):
            # Another thread may have refreshed while we waited
            record = self.store.get_token_record(user_id)
            if self._usable(record):
                return record.access_token

            if record is None:
                raise AuthRequired(user_id, "no stored tokens")
            if not record.refresh_token:
                raise AuthRequired(user_id, "no refresh token")

            logger.info(f"Refreshing access token for user {user_id}")
            try:
                token = self.oauth_client.refresh(record.refresh_token)
            except TokenRejected as e:
                logger.warning(f"Refresh token rejected for user {user_id}: {e}")
                raise AuthRequired(user_id, str(e)) from e
            except TokenRefreshError as e:
                logger.warning(f"Token refresh failed for user {user_id}: {e}")
                raise AuthRequired(user_id, str(e)) from e

            expiry = time.time() + token.expires_in
            self.store.update_access_token(
                user_id,
                token.access_token,
                expiry,
                refresh_token=token.refresh_token,
            )
            if token.refresh_token:
                logger.info(f"Refresh token rotated for user {user_id}")
            return token.access_token

    def store_tokens(
        self,
        user_id: str,
        refresh_token: str,
        access_token: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> None:
        """Record tokens from a first (interactive) authorization."""
        expiry = None
        if access_token:
            expiry = time.time() + (expires_in or DEFAULT_EXPIRES_IN)
        self.store.save_tokens(user_id, refresh_token, access_token, expiry)
        logger.info(f"Stored tokens for user {user_id}")

    def revoke(self, user_id: str) -> bool:
        """Clear all stored tokens for a user."""
        with self._lock_for(user_id):
            cleared = self.store.clear_tokens(user_id)
        if cleared:
            logger.info(f"Revoked tokens for user {user_id}")
        return cleared

    def is_authorized(self, user_id: str) -> bool:
        record = self.store.get_token_record(user_id)
        return bool(record and record.refresh_token)
