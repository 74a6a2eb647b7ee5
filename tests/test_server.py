"""
Tests for the HTTP API.

Routes are exercised with FastAPI's TestClient; jobs, Exact clients and
persistence are patched and the database dependency is overridden.
"""

from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from flowqi.adapters.exact import ExactAuthError, ExactFeatureUnavailableError
from flowqi.db.deps import get_db
from flowqi.importers.excel_gl_accounts import ExcelImportError, ImportResult
from flowqi.server import FORBIDDEN_MESSAGE, TOKEN_INVALID_MESSAGE, app
from flowqi.utils.oauth import NO_TOKEN_MESSAGE, OAuthToken, OAuthTokenError

ORG_ID = "6f1c2a9e-0000-4000-8000-000000000001"
HEADERS = {"X-Organization-Id": ORG_ID}


@pytest.fixture
def db_session():
    return MagicMock()


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestExactOAuthRoutes:
    """Test the authorization redirect and callback."""

    @patch("flowqi.server.create_exact_oauth_manager")
    def test_authorize_redirects_with_organization_as_state(self, mock_factory, client):
        mock_factory.return_value.get_authorization_url.return_value = (
            "https://start.exactonline.nl/api/oauth2/auth?state=x"
        )

        response = client.get("/api/exact/authorize", headers=HEADERS, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://start.exactonline.nl")
        mock_factory.return_value.get_authorization_url.assert_called_once_with(state=ORG_ID)

    def test_callback_without_code(self, client):
        response = client.get("/api/exact/callback", params={"state": ORG_ID})

        assert response.status_code == 400
        assert response.json()["status"] == "error"

    @patch("flowqi.server.create_exact_oauth_manager")
    @patch("flowqi.server.ExactTokenManager")
    def test_callback_stores_token(self, mock_manager_cls, mock_factory, client):
        mock_manager_cls.return_value.store_authorization_code.return_value = OAuthToken(
            access_token="a", refresh_token="r", expires_in=600, division=123456
        )

        response = client.get("/api/exact/callback", params={"code": "abc", "state": ORG_ID})

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert mock_manager_cls.call_args.kwargs["organization_id"] == ORG_ID
        mock_manager_cls.return_value.store_authorization_code.assert_called_once_with("abc")

    @patch("flowqi.server.create_exact_oauth_manager")
    @patch("flowqi.server.ExactTokenManager")
    def test_callback_exchange_failure(self, mock_manager_cls, mock_factory, client):
        mock_manager_cls.return_value.store_authorization_code.side_effect = OAuthTokenError(
            "Failed to exchange code for token: 400 Bad Request"
        )

        response = client.get("/api/exact/callback", params={"code": "abc", "state": ORG_ID})

        assert response.status_code == 401
        assert response.json() == {"status": "error", "error": TOKEN_INVALID_MESSAGE}


class TestSyncRoutes:
    """Test the sync endpoints and their error mapping."""

    @patch("flowqi.server.run_exact_gl_accounts_etl")
    def test_sync_gl_accounts(self, mock_job, client, db_session):
        mock_job.return_value = {"processed": 3, "created": 2, "updated": 1, "failed": 0}

        response = client.post("/api/exact/sync-gl-accounts", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "recordsProcessed": 3,
            "recordsCreated": 2,
            "recordsUpdated": 1,
            "recordsFailed": 0,
        }
        mock_job.assert_called_once_with(ORG_ID, session=db_session)

    def test_sync_requires_organization(self, client):
        response = client.post("/api/exact/sync-gl-accounts")

        assert response.status_code == 400
        assert response.json()["error"] == "X-Organization-Id header is required"

    @patch("flowqi.server.run_exact_gl_accounts_etl")
    def test_missing_token_maps_to_401(self, mock_job, client):
        mock_job.side_effect = OAuthTokenError(NO_TOKEN_MESSAGE)

        response = client.post("/api/exact/sync-gl-accounts", headers=HEADERS)

        assert response.status_code == 401
        assert response.json() == {"status": "error", "error": TOKEN_INVALID_MESSAGE}

    @patch("flowqi.server.run_exact_gl_accounts_etl")
    def test_forbidden_maps_to_403(self, mock_job, client):
        mock_job.side_effect = ExactFeatureUnavailableError("Forbidden", status_code=403)

        response = client.post("/api/exact/sync-gl-accounts", headers=HEADERS)

        assert response.status_code == 403
        assert response.json() == {"status": "error", "error": FORBIDDEN_MESSAGE}

    @patch("flowqi.server.run_exact_gl_accounts_etl")
    def test_unexpected_error_maps_to_500(self, mock_job, client):
        mock_job.side_effect = RuntimeError("connection pool exhausted")

        response = client.post("/api/exact/sync-gl-accounts", headers=HEADERS)

        assert response.status_code == 500
        assert response.json() == {"status": "error", "error": "connection pool exhausted"}

    @patch("flowqi.server.run_exact_transactions_etl")
    def test_sync_transactions(self, mock_job, client, db_session):
        mock_job.return_value = {"processed": 1, "created": 1, "updated": 0, "failed": 0}

        response = client.post(
            "/api/exact/sync-transactions",
            headers=HEADERS,
            json={"startDate": "2024-01-01", "endDate": "2024-01-31"},
        )

        assert response.status_code == 200
        assert response.json()["recordsCreated"] == 1
        mock_job.assert_called_once_with(
            ORG_ID, start_date="2024-01-01", end_date="2024-01-31", session=db_session
        )

    @pytest.mark.parametrize("body", [{}, {"startDate": "2024-01-01"}, None])
    @patch("flowqi.server.run_exact_transactions_etl")
    def test_sync_transactions_requires_dates(self, mock_job, body, client):
        response = client.post("/api/exact/sync-transactions", headers=HEADERS, json=body)

        assert response.status_code == 400
        assert response.json() == {"status": "error", "error": "Start and end dates are required"}
        mock_job.assert_not_called()

    @patch("flowqi.server.run_exact_transactions_etl")
    def test_sync_transactions_invalid_range(self, mock_job, client):
        mock_job.side_effect = ValueError("Start date 2024-02-01 is after end date 2024-01-01")

        response = client.post(
            "/api/exact/sync-transactions",
            headers=HEADERS,
            json={"startDate": "2024-02-01", "endDate": "2024-01-01"},
        )

        assert response.status_code == 400


class TestConnectionRoute:
    """Test the connection check."""

    @patch("flowqi.server.create_exact_client")
    def test_success(self, mock_factory, client):
        data = {"user": {"fullName": "Jan"}, "division": {"code": 123456}}
        mock_factory.return_value.test_connection.return_value = data

        response = client.get("/api/exact/test-connection", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["data"] == data
        assert body["message"]

    @patch("flowqi.server.create_exact_client")
    def test_expired_token(self, mock_factory, client):
        mock_factory.return_value.test_connection.side_effect = ExactAuthError("expired", 401)

        response = client.get("/api/exact/test-connection", headers=HEADERS)

        assert response.status_code == 401
        assert response.json()["error"] == TOKEN_INVALID_MESSAGE


class TestGLAccountRoutes:
    """Test the Excel import and hierarchy endpoints."""

    @patch("flowqi.server.import_gl_accounts")
    def test_import(self, mock_import, client, db_session):
        mock_import.return_value = ImportResult(imported=10, skipped=2, errors=0)

        response = client.post(
            "/api/gl-accounts/import",
            headers=HEADERS,
            files={"file": ("grootboek.xlsx", b"fake-bytes", "application/octet-stream")},
        )

        assert response.status_code == 200
        body = response.json()
        assert (body["imported"], body["skipped"], body["errors"]) == (10, 2, 0)
        assert mock_import.call_args.args[0].read() == b"fake-bytes"
        assert mock_import.call_args.kwargs["session"] is db_session

    @patch("flowqi.server.import_gl_accounts")
    def test_import_of_invalid_workbook(self, mock_import, client):
        mock_import.side_effect = ExcelImportError(
            'Vereiste kolom "Code" ontbreekt in het Excel bestand.'
        )

        response = client.post(
            "/api/gl-accounts/import",
            headers=HEADERS,
            files={"file": ("grootboek.xlsx", b"fake-bytes", "application/octet-stream")},
        )

        assert response.status_code == 400
        assert "Code" in response.json()["error"]

    @patch("flowqi.server.get_gl_accounts")
    def test_hierarchy(self, mock_accounts, client):
        mock_accounts.return_value = [
            {"code": "4300", "level": 1, "parent_code": None, "name": "Kantoor"},
            {"code": "4310", "level": 2, "parent_code": "4300", "name": "Communicatie"},
            {"code": "8110", "level": 2, "parent_code": "8100", "name": "Webshop"},
        ]

        response = client.get("/api/gl-accounts/hierarchy", headers=HEADERS)

        body = response.json()
        assert body["data"][0]["code"] == "4300"
        assert body["data"][0]["children"][0]["code"] == "4310"
        assert body["orphans"] == ["8110"]

    @patch("flowqi.server.get_recent_sync_logs")
    def test_sync_logs(self, mock_logs, client, db_session):
        mock_logs.return_value = [{"id": 1, "sync_type": "gl_accounts", "status": "completed"}]

        response = client.get(
            "/api/exact/sync-logs", headers=HEADERS, params={"sync_type": "gl_accounts"}
        )

        assert response.json()["data"][0]["status"] == "completed"
        mock_logs.assert_called_once_with(
            ORG_ID, sync_type="gl_accounts", limit=20, session=db_session
        )


class TestObservabilityRoutes:
    """Test health, metrics and root endpoints."""

    @patch("flowqi.server.check_database_health", return_value=True)
    def test_healthz(self, mock_health, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "healthy"

    @patch("flowqi.server.check_database_health", return_value=False)
    def test_healthz_unhealthy(self, mock_health, client):
        response = client.get("/healthz")

        assert response.status_code == 503

    @patch("flowqi.server.check_database_health", return_value=True)
    def test_metrics(self, mock_health, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "job_runs_total" in response.text

    def test_root(self, client):
        response = client.get("/")

        assert response.json()["service"] == "FlowQi Ledger Service"
