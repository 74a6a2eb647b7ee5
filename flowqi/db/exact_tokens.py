"""
Exact Online token storage.

Keeps exactly one current token per organization in exact_tokens (upserted
on organization_id) and appends every issued token's metadata to
exact_token_history.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from flowqi.utils.oauth import OAuthToken

from .deps import get_session
from .models import ExactToken, ExactTokenHistory

logger = logging.getLogger(__name__)


def _to_oauth_token(row: ExactToken) -> OAuthToken:
    return OAuthToken(
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_in=row.expires_in,
        token_type=row.token_type,
        division=row.division,
        created_at=row.created_at,
    )


def get_current_token(
    organization_id: str, session: Session | None = None, for_update: bool = False
) -> OAuthToken | None:
    """
    Get the current token of an organization, or None if it never connected.

    With for_update the row stays locked until the session's transaction ends.
    """

    def _query(sess: Session) -> OAuthToken | None:
        query = sess.query(ExactToken).filter(ExactToken.organization_id == organization_id)
        if for_update:
            query = query.with_for_update()
        row = query.first()
        return _to_oauth_token(row) if row else None

    if session:
        return _query(session)

    with get_session() as sess:
        return _query(sess)


def lock_current_token(organization_id: str, session: Session) -> OAuthToken | None:
    """Read the current token and lock its row for the rest of session's transaction."""
    return get_current_token(organization_id, session, for_update=True)


def save_token(
    organization_id: str,
    token: OAuthToken,
    grant_type: str,
    session: Session | None = None,
) -> OAuthToken:
    """Make token the organization's current token and record it in the history."""

    def _save(sess: Session) -> OAuthToken:
        values = {
            "organization_id": organization_id,
            "access_token": token.access_token,
            "refresh_token": token.refresh_token,
            "expires_in": token.expires_in,
            "token_type": token.token_type,
            "division": token.division,
            "created_at": token.created_at,
            "updated_at": datetime.now(UTC),
        }
        stmt = pg_insert(ExactToken).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["organization_id"],
            set_={k: getattr(stmt.excluded, k) for k in values if k != "organization_id"},
        )
        sess.execute(stmt)

        sess.add(
            ExactTokenHistory(
                organization_id=organization_id,
                grant_type=grant_type,
                token_type=token.token_type,
                expires_in=token.expires_in,
                division=token.division,
                issued_at=token.created_at,
            )
        )
        sess.flush()

        logger.debug(f"Stored Exact token for organization {organization_id} ({grant_type})")
        return token

    if session:
        return _save(session)

    with get_session() as sess:
        return _save(sess)


def purge_token_history(days: int = 90, session: Session | None = None) -> int:
    """Delete history rows older than the given number of days."""
    cutoff = datetime.now(UTC) - timedelta(days=days)

    def _purge(sess: Session) -> int:
        return (
            sess.query(ExactTokenHistory)
            .filter(ExactTokenHistory.issued_at < cutoff)
            .delete(synchronize_session=False)
        )

    if session:
        return _purge(session)

    with get_session() as sess:
        return _purge(sess)


class DatabaseTokenStore:
    """TokenStore backed by PostgreSQL, for ExactTokenManager."""

    def __init__(self, session: Session | None = None):
        self.session = session

    def get_current(
        self, organization_id: str, session: Session | None = None, for_update: bool = False
    ) -> OAuthToken | None:
        session = session or self.session
        if for_update and session is not None:
            return lock_current_token(organization_id, session)
        return get_current_token(organization_id, session, for_update=for_update)

    def save(
        self,
        organization_id: str,
        token: OAuthToken,
        grant_type: str,
        session: Session | None = None,
    ) -> OAuthToken:
        return save_token(organization_id, token, grant_type, session or self.session)

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Yield a session whose transaction holds row locks until it ends.

        An injected session is reused as-is; the caller owns its commit.
        """
        if self.session is not None:
            yield self.session
            return
        with get_session() as sess:
            yield sess
