"""Exact Online REST (OData) API client for GL accounts and financial transactions."""
import logging
from datetime import date
from typing import Any

import requests
from requests.exceptions import HTTPError, RequestException
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.loader import ExactConfig, get_exact_config
from ..utils.oauth import ExactTokenManager, OAuthToken, create_exact_oauth_manager
from ..utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

GL_ACCOUNT_FIELDS = "ID,Code,Description,Type,TypeDescription,BalanceSide,BalanceType,IsBlocked"
TRANSACTION_LINE_FIELDS = (
    "ID,Date,EntryNumber,Description,AmountFC,AmountDC,GLAccount,GLAccountCode,"
    "GLAccountDescription,FinancialYear,FinancialPeriod"
)


class ExactError(Exception):
    """Base exception for Exact Online API errors."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ExactAuthError(ExactError):
    """Authentication error for Exact Online API."""

    pass


class ExactRateLimitError(ExactError):
    """Rate limit error for Exact Online API."""

    pass


class ExactFeatureUnavailableError(ExactError):
    """Endpoint not available to this user or division (403/404)."""

    pass


def build_date_filter(start_date: date, end_date: date, date_field: str = "Date") -> str:
    """Build an inclusive OData date range filter."""
    return (
        f"{date_field} ge datetime'{start_date.isoformat()}' and "
        f"{date_field} le datetime'{end_date.isoformat()}'"
    )


class ExactClient:
    """Exact Online API client with token refresh, rate limiting and OData paging."""

    def __init__(
        self,
        token_manager: ExactTokenManager,
        config: ExactConfig | None = None,
        session: requests.Session | None = None,
    ):
        """Initialize the client.

        Args:
            token_manager: Supplies (and refreshes) the organization's bearer token
            config: Exact settings; read from the environment when omitted
            session: Optional requests session (tests inject one)
        """
        self.token_manager = token_manager
        self.config = config or get_exact_config()
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "User-Agent": "FlowQi/1.0",
            }
        )
        self.rate_limiter = RateLimiter("exact", calls_per_minute=self.config.calls_per_minute)
        self._division: int | None = None

    def _current_token(self) -> OAuthToken:
        token = self.token_manager.get_valid_token()
        self.session.headers["Authorization"] = token.authorization_header
        return token

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2, min=1, max=10),
        retry=retry_if_exception_type(
            (requests.exceptions.Timeout, requests.exceptions.ConnectionError, ExactRateLimitError)
        ),
        reraise=True,
    )
    def _make_request(
        self, method: str, url: str, params: dict | None = None
    ) -> requests.Response:
        """Make an authenticated API request with retry logic.

        Args:
            method: HTTP method
            url: Absolute URL (OData next links are absolute already)
            params: Query parameters

        Raises:
            ExactAuthError: Authentication failed (401)
            ExactFeatureUnavailableError: Endpoint not available (403/404)
            ExactRateLimitError: Rate limit exceeded (429)
            ExactError: Other API errors
        """
        self._current_token()
        self.rate_limiter.wait_if_needed()

        try:
            logger.debug(f"Making {method} request to {url}")
            response = self.session.request(
                method=method, url=url, params=params, timeout=self.config.timeout
            )
            self.rate_limiter.process_response(response)

            if response.status_code == 401:
                raise ExactAuthError(
                    "Authentication failed - invalid or expired token",
                    status_code=401,
                    body=response.text,
                )
            elif response.status_code in [403, 404]:
                raise ExactFeatureUnavailableError(
                    f"Exact API error (HTTP {response.status_code}): {url}",
                    status_code=response.status_code,
                    body=response.text,
                )
            elif response.status_code == 429:
                raise ExactRateLimitError("Rate limit exceeded", status_code=429, body=response.text)
            elif response.status_code >= 400:
                raise ExactError(
                    f"Exact API error: {response.status_code} - {response.text}",
                    status_code=response.status_code,
                    body=response.text,
                )

            return response

        except requests.exceptions.Timeout:
            logger.error(f"Request timeout for {url}")
            raise
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error for {url}: {e}")
            raise
        except HTTPError as e:
            logger.error(f"HTTP error for {url}: {e}")
            raise ExactError(f"HTTP error: {e}") from e
        except RequestException as e:
            logger.error(f"Request exception for {url}: {e}")
            raise ExactError(f"Request error: {e}") from e

    def _url(self, endpoint: str, division: int | None = None) -> str:
        if division is None:
            return f"{self.config.api_url}/{endpoint.lstrip('/')}"
        return f"{self.config.api_url}/{division}/{endpoint.lstrip('/')}"

    def get_division(self) -> int:
        """Division of the stored token, or the user's current division."""
        if self._division is not None:
            return self._division

        token = self._current_token()
        if token.division:
            self._division = int(token.division)
        else:
            user = self.get_current_user()
            division = user.get("CurrentDivision")
            if not division:
                raise ExactFeatureUnavailableError("Geen toegang tot Exact divisie")
            self._division = int(division)
        return self._division

    def _paginate_results(self, endpoint: str, params: dict | None = None) -> list[dict]:
        """Collect d.results across pages by following the OData __next links."""
        url = self._url(endpoint, self.get_division())
        all_results: list[dict] = []
        page = 1

        while url:
            response = self._make_request("GET", url, params=params)
            payload = response.json().get("d", {})

            if isinstance(payload, list):
                results, next_url = payload, None
            else:
                results = payload.get("results", [])
                next_url = payload.get("__next")

            all_results.extend(results)
            logger.debug(f"Retrieved page {page} with {len(results)} records from {endpoint}")

            # Next links already carry the query
            url, params = next_url, None
            page += 1

        logger.info(f"Retrieved total of {len(all_results)} records from {endpoint}")
        return all_results

    def get_current_user(self) -> dict[str, Any]:
        """Get the authenticated user (current/Me)."""
        response = self._make_request(
            "GET",
            self._url("current/Me"),
            params={"$select": "CurrentDivision,FullName,Email,UserName"},
        )
        results = response.json().get("d", {}).get("results", [])
        if not results:
            raise ExactFeatureUnavailableError(
                "Geen toegang tot Exact Online API - Me endpoint niet bereikbaar"
            )
        return results[0]

    def get_division_details(self, division: int) -> dict[str, Any] | None:
        """Get code and description of a division."""
        response = self._make_request(
            "GET",
            self._url("system/Divisions", division),
            params={
                "$filter": f"Code eq {int(division)}",
                "$select": "Code,Description,CustomerName",
            },
        )
        results = response.json().get("d", {}).get("results", [])
        return results[0] if results else None

    def get_gl_accounts(self) -> list[dict]:
        """Get all GL accounts of the division."""
        return self._paginate_results(
            "financial/GLAccounts", params={"$select": GL_ACCOUNT_FIELDS}
        )

    def get_transactions(self, start_date: date, end_date: date) -> list[dict]:
        """Get all financial transaction lines dated within [start_date, end_date]."""
        return self._paginate_results(
            "financialtransaction/TransactionLines",
            params={
                "$select": TRANSACTION_LINE_FIELDS,
                "$filter": build_date_filter(start_date, end_date),
            },
        )

    def test_connection(self) -> dict[str, Any]:
        """Check that the token works and report user and division."""
        user = self.get_current_user()
        division = user.get("CurrentDivision")
        if not division:
            raise ExactFeatureUnavailableError("Geen toegang tot Exact divisie")

        details = self.get_division_details(division)
        return {
            "user": {
                "fullName": user.get("FullName"),
                "email": user.get("Email"),
                "userName": user.get("UserName"),
            },
            "division": {
                "code": division,
                "description": details.get("Description") if details else None,
            },
        }


def create_exact_client(
    organization_id: str,
    token_store=None,
    config: ExactConfig | None = None,
) -> ExactClient:
    """Factory function to create an Exact client for one organization.

    Args:
        organization_id: FlowQi organization whose token is used
        token_store: Token persistence; the database store when omitted
        config: Exact settings; read from the environment when omitted

    Returns:
        Configured ExactClient instance
    """
    config = config or get_exact_config()
    if token_store is None:
        from ..db.exact_tokens import DatabaseTokenStore

        token_store = DatabaseTokenStore()

    token_manager = ExactTokenManager(
        oauth_manager=create_exact_oauth_manager(config),
        token_store=token_store,
        organization_id=organization_id,
    )
    return ExactClient(token_manager=token_manager, config=config)
