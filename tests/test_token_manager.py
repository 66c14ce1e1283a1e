"""
Tests for OAuth token refresh.

The token endpoint is mocked with the responses library.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest
import responses

from inbox_ledger.errors import AuthRequired
from inbox_ledger.oauth import (
    OAuthClient,
    TokenManager,
    TokenRefreshError,
    TokenRejected,
    TokenResponse,
)

TOKEN_URL = "https://oauth.test/token"


@pytest.fixture
def oauth_client() -> OAuthClient:
    return OAuthClient("client-id", "client-secret", token_url=TOKEN_URL, max_retries=0)


@pytest.fixture
def manager(store, oauth_client) -> TokenManager:
    return TokenManager(store, oauth_client, refresh_buffer_seconds=300)


class TestOAuthClient:
    @responses.activate
    def test_refresh_posts_form(self, oauth_client):
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "new-access", "expires_in": 3599, "token_type": "Bearer"},
        )

        token = oauth_client.refresh("refresh-1")

        assert token.access_token == "new-access"
        assert token.expires_in == 3599
        assert token.refresh_token is None
        body = responses.calls[0].request.body
        assert "grant_type=refresh_token" in body
        assert "refresh_token=refresh-1" in body

    @responses.activate
    def test_invalid_grant_is_rejection(self, oauth_client):
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
            status=400,
        )
        with pytest.raises(TokenRejected) as exc_info:
            oauth_client.refresh("refresh-1")
        assert exc_info.value.error == "invalid_grant"

    @responses.activate
    def test_server_error(self, oauth_client):
        responses.add(responses.POST, TOKEN_URL, status=503)
        with pytest.raises(TokenRefreshError):
            oauth_client.refresh("refresh-1")

    def test_response_without_access_token(self):
        with pytest.raises(TokenRefreshError):
            TokenResponse.from_api_response({"expires_in": 3600})

    def test_default_lifetime(self):
        assert TokenResponse.from_api_response({"access_token": "a"}).expires_in == 3600


class TestTokenManager:
    @responses.activate
    def test_valid_token_reused_without_refresh(self, store, manager):
        """A token valid for 10 more minutes is returned as is."""
        store.save_tokens("u1", "refresh-1", "access-1", time.time() + 600)

        assert manager.get_valid_access_token("u1") == "access-1"
        assert len(responses.calls) == 0

    @responses.activate
    def test_expired_token_refreshed_once(self, store, manager):
        """An expired token triggers exactly one refresh and a new stored expiry."""
        store.save_tokens("u1", "refresh-1", "access-1", time.time() - 60)
        responses.add(
            responses.POST, TOKEN_URL, json={"access_token": "access-2", "expires_in": 3600}
        )

        assert manager.get_valid_access_token("u1") == "access-2"
        assert len(responses.calls) == 1

        record = store.get_token_record("u1")
        assert record.access_token == "access-2"
        assert record.refresh_token == "refresh-1"
        assert record.expiry > time.time() + 3000

        # Second call uses the stored token
        assert manager.get_valid_access_token("u1") == "access-2"
        assert len(responses.calls) == 1

    @responses.activate
    def test_token_inside_buffer_is_refreshed(self, store, manager):
        store.save_tokens("u1", "refresh-1", "access-1", time.time() + 120)
        responses.add(
            responses.POST, TOKEN_URL, json={"access_token": "access-2", "expires_in": 3600}
        )
        assert manager.get_valid_access_token("u1") == "access-2"

    @responses.activate
    def test_rotated_refresh_token_stored(self, store, manager):
        store.save_tokens("u1", "refresh-1", None, None)
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "access-2", "expires_in": 3600, "refresh_token": "refresh-2"},
        )
        manager.get_valid_access_token("u1")
        assert store.get_token_record("u1").refresh_token == "refresh-2"

    @responses.activate
    def test_revoked_refresh_token_requires_reauth(self, store, manager):
        store.save_tokens("u1", "refresh-1", "access-1", time.time() - 60)
        responses.add(responses.POST, TOKEN_URL, json={"error": "invalid_grant"}, status=400)

        with pytest.raises(AuthRequired) as exc_info:
            manager.get_valid_access_token("u1")
        assert exc_info.value.user_id == "u1"

    @responses.activate
    def test_unreachable_endpoint_requires_reauth(self, store, manager):
        store.save_tokens("u1", "refresh-1", None, None)
        responses.add(responses.POST, TOKEN_URL, status=500)
        with pytest.raises(AuthRequired):
            manager.get_valid_access_token("u1")

    def test_no_record(self, manager):
        with pytest.raises(AuthRequired):
            manager.get_valid_access_token("nobody")

    def test_revoked_user(self, store, manager):
        store.save_tokens("u1", "refresh-1", "access-1", time.time() - 60)
        assert manager.revoke("u1") is True
        assert manager.is_authorized("u1") is False
        with pytest.raises(AuthRequired):
            manager.get_valid_access_token("u1")

    def test_store_tokens(self, store, manager):
        manager.store_tokens("u1", "refresh-1", access_token="access-1", expires_in=600)
        record = store.get_token_record("u1")
        assert record.refresh_token == "refresh-1"
        assert time.time() + 500 < record.expiry < time.time() + 700
        assert manager.is_authorized("u1")

    def test_concurrent_callers_share_one_refresh(self, store):
        """Callers racing on an expired token cause a single refresh."""
        store.save_tokens("u1", "refresh-1", "access-1", time.time() - 60)

        def slow_refresh(refresh_token):
            time.sleep(0.05)
            return TokenResponse(access_token="access-2", expires_in=3600)

        client = MagicMock()
        client.refresh.side_effect = slow_refresh
        manager = TokenManager(store, client)

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(manager.get_valid_access_token("u1")))
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == ["access-2"] * 4
        assert client.refresh.call_count == 1
