"""
Tests for Exact Online OAuth token handling.

Covers token expiry, the authorization-code and refresh grants against a
mocked token endpoint, and ExactTokenManager's refresh behaviour with an
in-memory token store.
"""

import logging
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import Mock, patch

import pytest
from requests.exceptions import ConnectionError

from flowqi.utils.oauth import (
    NO_TOKEN_MESSAGE,
    REFRESH_FAILED_MESSAGE,
    ExactTokenManager,
    OAuthConfig,
    OAuthManager,
    OAuthToken,
    OAuthTokenError,
)

ORG_ID = "6f1c2a9e-0000-4000-8000-000000000001"


class InMemoryTokenStore:
    """Token store keeping one current token per organization."""

    def __init__(self, token=None):
        self.tokens = {ORG_ID: token} if token else {}
        self.saved = []
        self.locked_reads = 0

    def get_current(self, organization_id, session=None, for_update=False):
        if for_update:
            self.locked_reads += 1
        return self.tokens.get(organization_id)

    def save(self, organization_id, token, grant_type, session=None):
        self.tokens[organization_id] = token
        self.saved.append((organization_id, token, grant_type))
        return token

    @contextmanager
    def transaction(self):
        yield Mock()


@pytest.fixture
def oauth_config():
    return OAuthConfig(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://app.flowqi.nl/api/exact/callback",
        authorization_base_url="https://start.exactonline.nl/api/oauth2/auth",
        token_url="https://start.exactonline.nl/api/oauth2/token",
    )


@pytest.fixture
def oauth_manager(oauth_config):
    return OAuthManager(oauth_config)


def make_token(access="access-1", refresh="refresh-1", age_seconds=0, expires_in=600):
    return OAuthToken(
        access_token=access,
        refresh_token=refresh,
        expires_in=expires_in,
        division=123456,
        created_at=datetime.now(UTC) - timedelta(seconds=age_seconds),
    )


def token_response(status=200, payload=None, text=""):
    response = Mock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.reason = "OK" if response.ok else "Bad Request"
    response.text = text
    response.json.return_value = payload or {}
    return response


class TestOAuthToken:
    """Test token expiry and serialization."""

    def test_fresh_token_is_not_expired(self):
        assert make_token(age_seconds=10).is_expired() is False

    def test_token_past_expires_in_is_expired(self):
        assert make_token(age_seconds=601).is_expired() is True

    def test_token_exactly_at_expiry_is_still_valid(self):
        """Test that expiry needs strictly more than expires_in seconds."""
        issued = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        token = OAuthToken("a", "r", expires_in=600, created_at=issued)

        assert token.is_expired(now=issued + timedelta(seconds=600)) is False
        assert token.is_expired(now=issued + timedelta(seconds=601)) is True

    def test_naive_created_at_is_treated_as_utc(self):
        token = OAuthToken("a", "r", expires_in=600, created_at=datetime(2024, 1, 1, 12, 0))
        assert token.created_at.tzinfo == UTC

    def test_dict_round_trip(self):
        token = make_token()
        restored = OAuthToken.from_dict(token.to_dict())

        assert restored.access_token == token.access_token
        assert restored.refresh_token == token.refresh_token
        assert restored.division == 123456
        assert restored.created_at == token.created_at

    def test_authorization_header(self):
        assert make_token(access="abc").authorization_header == "Bearer abc"


class TestOAuthManager:
    """Test the OAuth grants against a mocked token endpoint."""

    def test_authorization_url(self, oauth_manager):
        url = oauth_manager.get_authorization_url(state=ORG_ID)

        assert url.startswith("https://start.exactonline.nl/api/oauth2/auth?")
        assert "client_id=client-id" in url
        assert "response_type=code" in url
        assert f"state={ORG_ID}" in url
        assert "force_login=1" in url

    @patch("flowqi.utils.oauth.requests.post")
    def test_exchange_code_for_token(self, mock_post, oauth_manager):
        mock_post.return_value = token_response(
            payload={
                "access_token": "new-access",
                "refresh_token": "new-refresh",
                "expires_in": "600",
                "token_type": "bearer",
            }
        )

        token = oauth_manager.exchange_code_for_token("auth-code")

        assert token.access_token == "new-access"
        assert token.expires_in == 600
        data = mock_post.call_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "auth-code"
        assert data["redirect_uri"] == "https://app.flowqi.nl/api/exact/callback"
        assert data["client_secret"] == "client-secret"

    @patch("flowqi.utils.oauth.requests.post")
    def test_refresh_posts_refresh_grant(self, mock_post, oauth_manager):
        mock_post.return_value = token_response(
            payload={"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 600}
        )

        token = oauth_manager.refresh_token(make_token())

        data = mock_post.call_args.kwargs["data"]
        assert data == {
            "grant_type": "refresh_token",
            "refresh_token": "refresh-1",
            "client_id": "client-id",
            "client_secret": "client-secret",
        }
        assert token.access_token == "access-2"
        assert token.refresh_token == "refresh-2"
        assert token.division == 123456

    @patch("flowqi.utils.oauth.requests.post")
    def test_refresh_failure_raises(self, mock_post, oauth_manager):
        mock_post.return_value = token_response(status=400, text='{"error":"invalid_grant"}')

        with pytest.raises(OAuthTokenError) as exc_info:
            oauth_manager.refresh_token(make_token())

        assert str(exc_info.value).startswith(REFRESH_FAILED_MESSAGE)
        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.body

    @patch("flowqi.utils.oauth.requests.post")
    def test_refresh_is_not_retried(self, mock_post, oauth_manager):
        """Test that a network error on the token endpoint surfaces after one attempt."""
        mock_post.side_effect = ConnectionError("connection reset")

        with pytest.raises(OAuthTokenError):
            oauth_manager.refresh_token(make_token())

        assert mock_post.call_count == 1

    @patch("flowqi.utils.oauth.requests.post")
    def test_response_without_access_token_raises(self, mock_post, oauth_manager):
        mock_post.return_value = token_response(payload={"error": "nope"})

        with pytest.raises(OAuthTokenError):
            oauth_manager.exchange_code_for_token("auth-code")


class TestExactTokenManager:
    """Test getting a valid token for an organization."""

    def test_missing_token_raises(self):
        oauth = Mock()
        manager = ExactTokenManager(oauth, InMemoryTokenStore(), ORG_ID)

        with pytest.raises(OAuthTokenError, match=NO_TOKEN_MESSAGE):
            manager.get_valid_token()

        oauth.refresh_token.assert_not_called()

    def test_fresh_token_is_returned_without_network_call(self):
        stored = make_token(age_seconds=30)
        oauth = Mock()
        store = InMemoryTokenStore(stored)
        manager = ExactTokenManager(oauth, store, ORG_ID)

        token = manager.get_valid_token()

        assert token is stored
        oauth.refresh_token.assert_not_called()
        assert store.saved == []

    def test_expired_token_is_refreshed_and_persisted(self):
        stored = make_token(age_seconds=700)
        refreshed = make_token(access="access-2", refresh="refresh-2")
        oauth = Mock()
        oauth.refresh_token.return_value = refreshed
        store = InMemoryTokenStore(stored)
        manager = ExactTokenManager(oauth, store, ORG_ID)

        token = manager.get_valid_token()

        assert token is refreshed
        oauth.refresh_token.assert_called_once_with(stored)
        assert store.saved == [(ORG_ID, refreshed, "refresh_token")]
        assert store.locked_reads == 1

    def test_refresh_failure_propagates(self):
        oauth = Mock()
        oauth.refresh_token.side_effect = OAuthTokenError(REFRESH_FAILED_MESSAGE)
        store = InMemoryTokenStore(make_token(age_seconds=700))
        manager = ExactTokenManager(oauth, store, ORG_ID)

        with pytest.raises(OAuthTokenError, match=REFRESH_FAILED_MESSAGE):
            manager.get_valid_token()

        assert store.saved == []

    def test_failed_save_after_refresh_is_logged_and_raised(self, caplog):
        """Test that losing a rotated token is reported instead of passing silently."""
        caplog.set_level(logging.INFO, logger="flowqi.utils.oauth")
        oauth = Mock()
        oauth.refresh_token.return_value = make_token(access="access-2", refresh="refresh-2")
        store = InMemoryTokenStore(make_token(age_seconds=700))
        store.save = Mock(side_effect=RuntimeError("could not serialize access"))
        manager = ExactTokenManager(oauth, store, ORG_ID)

        with pytest.raises(RuntimeError):
            manager.get_valid_token()

        oauth.refresh_token.assert_called_once()
        assert "Exact issued a new token" in caplog.text
        assert "must reconnect to Exact Online" in caplog.text

    def test_concurrently_refreshed_token_is_reused(self):
        """Test that a token replaced by another worker under the lock is not refreshed again."""
        stale = make_token(age_seconds=700)
        replaced = make_token(access="access-by-other-worker", refresh="refresh-2")

        store = InMemoryTokenStore(stale)
        original_get = store.get_current

        def get_current(organization_id, session=None, for_update=False):
            if for_update:
                store.tokens[organization_id] = replaced
            return original_get(organization_id, session=session, for_update=for_update)

        store.get_current = get_current
        oauth = Mock()
        manager = ExactTokenManager(oauth, store, ORG_ID)

        token = manager.get_valid_token()

        assert token is replaced
        oauth.refresh_token.assert_not_called()

    def test_store_authorization_code(self):
        issued = make_token(access="first-access")
        oauth = Mock()
        oauth.exchange_code_for_token.return_value = issued
        store = InMemoryTokenStore()
        manager = ExactTokenManager(oauth, store, ORG_ID)

        token = manager.store_authorization_code("auth-code")

        assert token is issued
        oauth.exchange_code_for_token.assert_called_once_with("auth-code")
        assert store.saved == [(ORG_ID, issued, "authorization_code")]
