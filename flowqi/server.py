"""
HTTP API for the FlowQi ledger service.

Exposes the Exact Online OAuth flow, the sync jobs, the Excel import and the
GL account hierarchy, plus health and Prometheus metrics endpoints. The
organization a request acts for is passed in the X-Organization-Id header.
"""

import io
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from flowqi.adapters.exact import (
    ExactAuthError,
    ExactFeatureUnavailableError,
    ExactRateLimitError,
    create_exact_client,
)
from flowqi.common.gl_accounts import build_hierarchy, find_orphans
from flowqi.db.deps import get_db, get_session
from flowqi.db.exact_tokens import DatabaseTokenStore
from flowqi.db.sync_log import get_recent_sync_logs
from flowqi.db.upserts import get_gl_accounts
from flowqi.importers.excel_gl_accounts import ExcelImportError, import_gl_accounts
from flowqi.jobs.exact_gl_accounts import run_exact_gl_accounts_etl
from flowqi.jobs.exact_transactions import run_exact_transactions_etl
from flowqi.utils.oauth import ExactTokenManager, OAuthTokenError, create_exact_oauth_manager

logger = logging.getLogger(__name__)

TOKEN_INVALID_MESSAGE = (
    "Token verlopen of ongeldig. Probeer opnieuw in te loggen bij Exact Online."
)
FORBIDDEN_MESSAGE = (
    "Geen toegang tot deze Exact Online functionaliteit. Controleer de machtigingen."
)

# Prometheus metrics
REGISTRY = CollectorRegistry()

job_runs_total = Counter(
    "job_runs_total", "Total number of job runs", ["job", "status"], registry=REGISTRY
)

job_duration_seconds = Histogram(
    "job_duration_seconds", "Job execution duration in seconds", ["job"], registry=REGISTRY
)

records_upserted_total = Counter(
    "records_upserted_total",
    "Total number of records upserted",
    ["table", "operation"],
    registry=REGISTRY,
)

scheduler_running = Gauge(
    "scheduler_running", "Whether the scheduler is running", registry=REGISTRY
)

database_connection_healthy = Gauge(
    "database_connection_healthy", "Database connection health status", registry=REGISTRY
)

_scheduler_running = False
_app_start_time = datetime.now(UTC)


def set_scheduler_running(running: bool) -> None:
    """Update scheduler running status."""
    global _scheduler_running
    _scheduler_running = running
    scheduler_running.set(1 if running else 0)


def check_database_health() -> bool:
    """Check database connectivity."""
    try:
        with get_session() as session:
            session.execute(text("SELECT 1")).fetchone()
            database_connection_healthy.set(1)
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connection_healthy.set(0)
        return False


def get_health_status() -> dict[str, Any]:
    db_healthy = check_database_health()
    return {
        "status": "healthy" if db_healthy else "unhealthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "uptime_seconds": (datetime.now(UTC) - _app_start_time).total_seconds(),
        "checks": {
            "database": "healthy" if db_healthy else "unhealthy",
            "scheduler": "running" if _scheduler_running else "stopped",
        },
    }


# Metrics helpers for use in jobs
def record_job_start(job_name: str) -> float:
    """Record job start and return start time."""
    return datetime.now(UTC).timestamp()


def record_job_success(job_name: str, start_time: float, result: dict[str, int] | None = None):
    """Record successful job completion and the rows it wrote."""
    duration = datetime.now(UTC).timestamp() - start_time

    job_runs_total.labels(job=job_name, status="success").inc()
    job_duration_seconds.labels(job=job_name).observe(duration)

    if result:
        record_upsert_operation(job_name, result.get("created", 0), result.get("updated", 0))


def record_job_error(job_name: str, start_time: float, error: str) -> None:
    duration = datetime.now(UTC).timestamp() - start_time

    job_runs_total.labels(job=job_name, status="error").inc()
    job_duration_seconds.labels(job=job_name).observe(duration)


def record_upsert_operation(table: str, inserted: int, updated: int) -> None:
    """Record upsert operation metrics."""
    if inserted > 0:
        records_upserted_total.labels(table=table, operation="insert").inc(inserted)
    if updated > 0:
        records_upserted_total.labels(table=table, operation="update").inc(updated)


def error_response(error: Exception) -> JSONResponse:
    """
    Map an exception onto the API's {status: "error", error} body.

    Token problems become 401 and missing permissions 403, both with a
    message meant for the end user; bad input is 400; anything else is 500
    with the raw message.
    """
    if isinstance(error, (OAuthTokenError, ExactAuthError)):
        status_code, message = 401, TOKEN_INVALID_MESSAGE
    elif isinstance(error, ExactFeatureUnavailableError):
        if error.status_code == 404:
            status_code, message = 404, str(error)
        else:
            status_code, message = 403, FORBIDDEN_MESSAGE
    elif isinstance(error, ExactRateLimitError):
        status_code, message = 429, str(error)
    elif isinstance(error, (ValueError, ExcelImportError)):
        status_code, message = 400, str(error)
    else:
        status_code, message = 500, str(error) or "Internal server error"

    if status_code >= 500:
        logger.exception(f"Request failed: {error}")
    else:
        logger.warning(f"Request rejected ({status_code}): {error}")
    return JSONResponse(status_code=status_code, content={"status": "error", "error": message})


def _sync_counts(result: dict[str, int]) -> dict[str, Any]:
    return {
        "success": True,
        "recordsProcessed": result.get("processed", 0),
        "recordsCreated": result.get("created", 0),
        "recordsUpdated": result.get("updated", 0),
        "recordsFailed": result.get("failed", 0),
    }


def require_organization(x_organization_id: str | None = Header(default=None)) -> str:
    if not x_organization_id:
        raise HTTPException(status_code=400, detail="X-Organization-Id header is required")
    return x_organization_id


class SyncTransactionsRequest(BaseModel):
    startDate: str | None = None
    endDate: str | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting FlowQi ledger API")
    yield
    logger.info("Stopping FlowQi ledger API")


app = FastAPI(
    title="FlowQi Ledger Service",
    description="Exact Online integration and GL account management",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    return JSONResponse(
        status_code=exc.status_code, content={"status": "error", "error": exc.detail}
    )


@app.get("/api/exact/authorize")
def exact_authorize(
    org: str | None = Query(default=None),
    x_organization_id: str | None = Header(default=None),
):
    """Redirect to Exact Online's consent screen; state carries the organization."""
    organization_id = org or x_organization_id
    if not organization_id:
        raise HTTPException(status_code=400, detail="Organization is required")
    try:
        url = create_exact_oauth_manager().get_authorization_url(state=organization_id)
    except Exception as e:
        return error_response(e)
    return RedirectResponse(url, status_code=302)


@app.get("/api/exact/callback")
def exact_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    """Complete the OAuth flow: exchange the code and store the organization's token."""
    if error:
        raise HTTPException(status_code=400, detail=f"Exact Online authorization failed: {error}")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")
    if not state:
        raise HTTPException(status_code=400, detail="Missing state (organization)")

    try:
        manager = ExactTokenManager(
            oauth_manager=create_exact_oauth_manager(),
            token_store=DatabaseTokenStore(db),
            organization_id=state,
        )
        token = manager.store_authorization_code(code)
    except Exception as e:
        return error_response(e)

    logger.info(f"Exact Online connected for organization {state} (division {token.division})")
    return {"status": "success", "message": "Exact Online koppeling is succesvol ingesteld."}


@app.post("/api/exact/sync-gl-accounts")
def sync_gl_accounts(
    organization_id: str = Depends(require_organization),
    db: Session = Depends(get_db),
):
    start_time = record_job_start("exact_gl_accounts")
    try:
        result = run_exact_gl_accounts_etl(organization_id, session=db)
    except Exception as e:
        record_job_error("exact_gl_accounts", start_time, str(e))
        return error_response(e)

    record_job_success("exact_gl_accounts", start_time, result)
    return _sync_counts(result)


@app.post("/api/exact/sync-transactions")
def sync_transactions(
    body: SyncTransactionsRequest | None = None,
    organization_id: str = Depends(require_organization),
    db: Session = Depends(get_db),
):
    if body is None or not body.startDate or not body.endDate:
        raise HTTPException(status_code=400, detail="Start and end dates are required")

    start_time = record_job_start("exact_transactions")
    try:
        result = run_exact_transactions_etl(
            organization_id, start_date=body.startDate, end_date=body.endDate, session=db
        )
    except Exception as e:
        record_job_error("exact_transactions", start_time, str(e))
        return error_response(e)

    record_job_success("exact_transactions", start_time, result)
    return _sync_counts(result)


@app.get("/api/exact/test-connection")
def exact_test_connection(organization_id: str = Depends(require_organization)):
    try:
        data = create_exact_client(organization_id).test_connection()
    except Exception as e:
        return error_response(e)

    return {
        "status": "success",
        "message": "Verbinding met Exact Online is succesvol.",
        "data": data,
    }


@app.post("/api/gl-accounts/import")
async def gl_accounts_import(
    file: UploadFile = File(...),
    organization_id: str = Depends(require_organization),
    db: Session = Depends(get_db),
):
    content = await file.read()
    try:
        result = import_gl_accounts(io.BytesIO(content), organization_id, session=db)
    except Exception as e:
        return error_response(e)

    return {
        "status": "success",
        "message": f"{result.imported} regels succesvol geïmporteerd!",
        **result.to_dict(),
    }


@app.get("/api/gl-accounts/hierarchy")
def gl_accounts_hierarchy(
    organization_id: str = Depends(require_organization),
    db: Session = Depends(get_db),
):
    accounts = get_gl_accounts(organization_id, session=db)
    return {
        "status": "success",
        "data": [node.to_dict() for node in build_hierarchy(accounts)],
        "orphans": [account["code"] for account in find_orphans(accounts)],
    }


@app.get("/api/exact/sync-logs")
def exact_sync_logs(
    sync_type: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    organization_id: str = Depends(require_organization),
    db: Session = Depends(get_db),
):
    logs = get_recent_sync_logs(organization_id, sync_type=sync_type, limit=limit, session=db)
    return {"status": "success", "data": logs}


@app.get("/healthz")
async def health_check():
    """Health check endpoint."""
    health = get_health_status()

    if health["status"] == "healthy":
        return health
    raise HTTPException(status_code=503, detail=health)


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    check_database_health()
    return generate_latest(REGISTRY)


@app.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "FlowQi Ledger Service",
        "version": "1.0.0",
        "timestamp": datetime.now(UTC).isoformat(),
        "endpoints": [
            "/api/exact/authorize",
            "/api/exact/callback",
            "/api/exact/sync-gl-accounts",
            "/api/exact/sync-transactions",
            "/api/exact/test-connection",
            "/api/exact/sync-logs",
            "/api/gl-accounts/import",
            "/api/gl-accounts/hierarchy",
            "/healthz",
            "/metrics",
        ],
    }
