"""
Sync log management for Exact Online jobs.

Every run of a GL-account or transaction sync gets one exact_sync_logs row:
created as in_progress, finished as completed (with record counts) or
failed (with the error message).
"""

import logging
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy.orm import Session

from .deps import get_session
from .models import ExactSyncLog

logger = logging.getLogger(__name__)

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def start_sync_log(
    organization_id: str,
    sync_type: str,
    start_date: date | None = None,
    end_date: date | None = None,
    session: Session | None = None,
) -> int:
    """
    Create an in-progress sync log and return its id.

    The row is committed straight away so a crashed run stays visible.
    """

    def _create(sess: Session) -> int:
        log = ExactSyncLog(
            organization_id=organization_id,
            sync_type=sync_type,
            status=STATUS_IN_PROGRESS,
            start_date=start_date,
            end_date=end_date,
            started_at=datetime.now(UTC),
        )
        sess.add(log)
        sess.flush()
        logger.debug(f"Started {sync_type} sync log {log.id} for organization {organization_id}")
        return log.id

    if session:
        return _create(session)

    with get_session() as sess:
        return _create(sess)


def complete_sync_log(
    log_id: int,
    counts: dict[str, int],
    session: Session | None = None,
) -> None:
    """Mark a sync log completed with processed/created/updated/failed counts."""

    def _complete(sess: Session) -> None:
        sess.query(ExactSyncLog).filter(ExactSyncLog.id == log_id).update(
            {
                "status": STATUS_COMPLETED,
                "records_processed": counts.get("processed", 0),
                "records_created": counts.get("created", 0),
                "records_updated": counts.get("updated", 0),
                "records_failed": counts.get("failed", 0),
                "completed_at": datetime.now(UTC),
            },
            synchronize_session=False,
        )

    if session:
        _complete(session)
    else:
        with get_session() as sess:
            _complete(sess)


def fail_sync_log(
    log_id: int,
    error_message: str,
    counts: dict[str, int] | None = None,
    session: Session | None = None,
) -> None:
    """Mark a sync log failed, keeping whatever counts were reached."""
    values: dict[str, Any] = {
        "status": STATUS_FAILED,
        "error_message": error_message,
        "completed_at": datetime.now(UTC),
    }
    if counts:
        values.update(
            {
                "records_processed": counts.get("processed", 0),
                "records_created": counts.get("created", 0),
                "records_updated": counts.get("updated", 0),
                "records_failed": counts.get("failed", 0),
            }
        )

    def _fail(sess: Session) -> None:
        sess.query(ExactSyncLog).filter(ExactSyncLog.id == log_id).update(
            values, synchronize_session=False
        )

    if session:
        _fail(session)
    else:
        with get_session() as sess:
            _fail(sess)


def sync_log_to_dict(log: ExactSyncLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "sync_type": log.sync_type,
        "status": log.status,
        "start_date": log.start_date.isoformat() if log.start_date else None,
        "end_date": log.end_date.isoformat() if log.end_date else None,
        "records_processed": log.records_processed,
        "records_created": log.records_created,
        "records_updated": log.records_updated,
        "records_failed": log.records_failed,
        "error_message": log.error_message,
        "started_at": log.started_at.isoformat() if log.started_at else None,
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
    }


def get_recent_sync_logs(
    organization_id: str,
    sync_type: str | None = None,
    limit: int = 20,
    session: Session | None = None,
) -> list[dict[str, Any]]:
    """Most recent sync logs of an organization, newest first."""

    def _query(sess: Session) -> list[dict[str, Any]]:
        query = sess.query(ExactSyncLog).filter(ExactSyncLog.organization_id == organization_id)
        if sync_type:
            query = query.filter(ExactSyncLog.sync_type == sync_type)
        logs = query.order_by(ExactSyncLog.started_at.desc()).limit(limit).all()
        return [sync_log_to_dict(log) for log in logs]

    if session:
        return _query(session)

    with get_session() as sess:
        return _query(sess)


def get_last_successful_sync(
    organization_id: str, sync_type: str, session: Session | None = None
) -> datetime | None:
    """Completion time of the last completed sync of this type, if any."""

    def _query(sess: Session) -> datetime | None:
        log = (
            sess.query(ExactSyncLog)
            .filter(
                ExactSyncLog.organization_id == organization_id,
                ExactSyncLog.sync_type == sync_type,
                ExactSyncLog.status == STATUS_COMPLETED,
            )
            .order_by(ExactSyncLog.completed_at.desc())
            .first()
        )
        return log.completed_at if log else None

    if session:
        return _query(session)

    with get_session() as sess:
        return _query(sess)
