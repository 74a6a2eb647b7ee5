"""
OAuth utilities for the Exact Online integration.

Provides token modelling, the authorization-code and refresh-token grants,
and ExactTokenManager, which hands out a valid bearer token per organization
and refreshes it transparently when it has expired.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Protocol
from urllib.parse import urlencode

import requests
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)

NO_TOKEN_MESSAGE = "No Exact Online token found. Please authenticate first."
REFRESH_FAILED_MESSAGE = "Failed to refresh Exact Online token"


class OAuthTokenError(Exception):
    """Error with OAuth token operations."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class OAuthConfig:
    """OAuth configuration for an API integration."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        authorization_base_url: str,
        token_url: str,
        timeout: float = 30,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.authorization_base_url = authorization_base_url
        self.token_url = token_url
        self.timeout = timeout

    @classmethod
    def from_exact_config(cls, exact_config) -> "OAuthConfig":
        return cls(
            client_id=exact_config.client_id,
            client_secret=exact_config.client_secret,
            redirect_uri=exact_config.redirect_uri,
            authorization_base_url=exact_config.authorization_url,
            token_url=exact_config.token_url,
            timeout=exact_config.timeout,
        )


class OAuthToken:
    """
    OAuth bearer token as issued by Exact Online.

    Expiry is relative to issuance: a token is expired once more than
    expires_in seconds have passed since created_at.
    """

    def __init__(
        self,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int = 0,
        token_type: str = "bearer",
        division: int | None = None,
        created_at: datetime | None = None,
    ):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.expires_in = int(expires_in or 0)
        self.token_type = token_type or "bearer"
        self.division = division
        self.created_at = created_at or datetime.now(UTC)
        if self.created_at.tzinfo is None:
            self.created_at = self.created_at.replace(tzinfo=UTC)

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(UTC)
        return (now - self.created_at).total_seconds()

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the token has outlived its declared expires_in."""
        return self.age_seconds(now) > self.expires_in

    @property
    def authorization_header(self) -> str:
        """Get authorization header value."""
        return f"Bearer {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        """Convert token to dictionary for storage."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
            "division": self.division,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthToken":
        """Create token from dictionary."""
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))

        division = data.get("division")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in") or 0),
            token_type=data.get("token_type", "bearer"),
            division=int(division) if division not in (None, "") else None,
            created_at=created_at,
        )

    def __repr__(self) -> str:
        return (
            f"OAuthToken(division={self.division}, expires_in={self.expires_in}, "
            f"created_at={self.created_at.isoformat()})"
        )


class OAuthManager:
    """Runs the OAuth2 grants against the provider's token endpoint."""

    def __init__(self, config: OAuthConfig):
        self.config = config

    def get_authorization_url(self, state: str | None = None, force_login: bool = True) -> str:
        """Generate authorization URL for OAuth flow."""
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
        }
        if state:
            params["state"] = state
        if force_login:
            params["force_login"] = "1"

        return f"{self.config.authorization_base_url}?{urlencode(params)}"

    def _post_token_request(self, data: dict[str, str], error_message: str) -> dict[str, Any]:
        payload = {
            **data,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }

        try:
            response = requests.post(
                self.config.token_url,
                data=payload,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
                timeout=self.config.timeout,
            )
        except RequestException as e:
            logger.error(f"{error_message}: {e}")
            raise OAuthTokenError(f"{error_message}: {e}") from e

        if not response.ok:
            logger.error(f"{error_message}: {response.status_code} {response.text}")
            raise OAuthTokenError(
                f"{error_message}: {response.status_code} {response.reason}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            token_data = response.json()
        except ValueError as e:
            raise OAuthTokenError(f"{error_message}: malformed token response") from e

        if not isinstance(token_data, dict) or "access_token" not in token_data:
            raise OAuthTokenError(f"{error_message}: no access token in response")

        return token_data

    def exchange_code_for_token(self, code: str) -> OAuthToken:
        """Exchange authorization code for access token."""
        token_data = self._post_token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.config.redirect_uri,
            },
            "Failed to exchange code for token",
        )
        logger.info("Successfully exchanged authorization code for access token")
        return OAuthToken.from_dict({**token_data, "created_at": datetime.now(UTC)})

    def refresh_token(self, token: OAuthToken) -> OAuthToken:
        """
        Exchange the refresh token for a new token.

        Exact rotates refresh tokens, so this is never retried automatically.
        The division of the old token is kept when the response has none.
        """
        if not token.refresh_token:
            raise OAuthTokenError(f"{REFRESH_FAILED_MESSAGE}: no refresh token available")

        token_data = self._post_token_request(
            {"grant_type": "refresh_token", "refresh_token": token.refresh_token},
            REFRESH_FAILED_MESSAGE,
        )

        new_token = OAuthToken.from_dict(
            {
                **token_data,
                "refresh_token": token_data.get("refresh_token", token.refresh_token),
                "division": token_data.get("division") or token.division,
                "created_at": datetime.now(UTC),
            }
        )
        logger.info("Successfully refreshed access token")
        return new_token


class TokenStore(Protocol):
    """Persistence used by ExactTokenManager (see flowqi.db.exact_tokens)."""

    def get_current(self, organization_id: str, session=None, for_update: bool = False):
        ...

    def save(self, organization_id: str, token: OAuthToken, grant_type: str, session=None):
        ...

    def transaction(self):
        ...


class ExactTokenManager:
    """
    Supplies a valid Exact Online bearer token for one organization.

    A fresh token is returned as stored without any network call. An expired
    one is refreshed while the stored row is locked; if another worker has
    already replaced it by then, that token is used instead of refreshing
    twice.
    """

    def __init__(self, oauth_manager: OAuthManager, token_store: TokenStore, organization_id: str):
        self.oauth_manager = oauth_manager
        self.token_store = token_store
        self.organization_id = organization_id

    def get_valid_token(self) -> OAuthToken:
        token = self.token_store.get_current(self.organization_id)
        if token is None:
            raise OAuthTokenError(NO_TOKEN_MESSAGE)

        if not token.is_expired():
            return token

        logger.info(
            f"Exact token for organization {self.organization_id} expired "
            f"({token.age_seconds():.0f}s old, valid {token.expires_in}s), refreshing"
        )
        return self._refresh(token)

    def _refresh(self, stale: OAuthToken) -> OAuthToken:
        # The row lock is held across the token request so only one worker
        # spends the single-use refresh token. If saving then fails, the
        # rotated token is lost and the organization must authorize again.
        with self.token_store.transaction() as session:
            current = self.token_store.get_current(
                self.organization_id, session=session, for_update=True
            )
            if current is None:
                raise OAuthTokenError(NO_TOKEN_MESSAGE)

            if current.access_token != stale.access_token and not current.is_expired():
                logger.info("Token was refreshed concurrently, using the stored one")
                return current

            new_token = self.oauth_manager.refresh_token(current)
            logger.info(
                f"Exact issued a new token for organization {self.organization_id} "
                f"at {new_token.created_at.isoformat()} (valid {new_token.expires_in}s)"
            )
            try:
                return self.token_store.save(
                    self.organization_id, new_token, grant_type="refresh_token", session=session
                )
            except Exception as e:
                logger.error(
                    f"Refreshed Exact token for organization {self.organization_id} could not "
                    f"be stored, the organization must reconnect to Exact Online: {e}"
                )
                raise

    def store_authorization_code(self, code: str) -> OAuthToken:
        """Complete the OAuth callback: exchange the code and persist the token."""
        token = self.oauth_manager.exchange_code_for_token(code)
        with self.token_store.transaction() as session:
            return self.token_store.save(
                self.organization_id, token, grant_type="authorization_code", session=session
            )


def create_exact_oauth_manager(exact_config=None) -> OAuthManager:
    """Build an OAuthManager for Exact Online from environment configuration."""
    if exact_config is None:
        from flowqi.config.loader import get_exact_config

        exact_config = get_exact_config()
    return OAuthManager(OAuthConfig.from_exact_config(exact_config))
