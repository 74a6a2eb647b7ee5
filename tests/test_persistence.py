"""
Tests for the persistence helpers with a mocked SQLAlchemy session.
"""

from datetime import UTC, datetime
from unittest.mock import MagicMock, Mock, patch

from sqlalchemy.dialects import postgresql

from flowqi.db.exact_tokens import DatabaseTokenStore, save_token
from flowqi.db.sync_log import (
    STATUS_IN_PROGRESS,
    get_last_successful_sync,
    start_sync_log,
)
from flowqi.db.upserts import upsert_gl_accounts
from flowqi.utils.oauth import OAuthToken

ORG_ID = "6f1c2a9e-0000-4000-8000-000000000001"


def compiled(statement):
    return str(statement.compile(dialect=postgresql.dialect()))


class TestUpserts:
    """Test the bulk upsert statement and insert/update counting."""

    def test_counts_inserts_and_updates_from_xmax(self):
        session = MagicMock()
        session.execute.return_value.fetchall.return_value = [(0,), ("1234",), (0,)]
        rows = [
            {"organization_id": ORG_ID, "code": code, "name": code, "level": 1, "type": "Balans"}
            for code in ("0100", "0200", "0300")
        ]

        assert upsert_gl_accounts(rows, session=session) == (2, 1)

        sql = compiled(session.execute.call_args.args[0])
        assert "ON CONFLICT (organization_id, code) DO UPDATE" in sql
        assert "RETURNING xmax" in sql

    def test_only_present_columns_are_updated(self):
        """Test that an import without exact_id leaves the stored exact_id alone."""
        session = MagicMock()
        session.execute.return_value.fetchall.return_value = [(0,)]

        upsert_gl_accounts(
            [{"organization_id": ORG_ID, "code": "4300", "name": "Kantoor", "level": 1}],
            session=session,
        )

        sql = compiled(session.execute.call_args.args[0])
        update_clause = sql.split("DO UPDATE SET", 1)[1]
        assert "name = excluded.name" in update_clause
        assert "exact_id" not in update_clause

    def test_empty_rows_do_not_touch_the_database(self):
        session = MagicMock()

        assert upsert_gl_accounts([], session=session) == (0, 0)
        session.execute.assert_not_called()


class TestSyncLog:
    """Test sync log helpers."""

    def test_start_sync_log_adds_in_progress_row(self):
        session = MagicMock()

        def assign_id():
            session.add.call_args.args[0].id = 7

        session.flush.side_effect = assign_id

        log_id = start_sync_log(ORG_ID, "gl_accounts", session=session)

        assert log_id == 7
        log = session.add.call_args.args[0]
        assert log.status == STATUS_IN_PROGRESS
        assert log.sync_type == "gl_accounts"

    def test_last_successful_sync(self):
        session = MagicMock()
        completed_at = datetime(2024, 2, 1, 5, 3, tzinfo=UTC)
        query = session.query.return_value.filter.return_value.order_by.return_value
        query.first.return_value = Mock(completed_at=completed_at)

        assert get_last_successful_sync(ORG_ID, "transactions", session=session) == completed_at

    def test_last_successful_sync_without_history(self):
        session = MagicMock()
        query = session.query.return_value.filter.return_value.order_by.return_value
        query.first.return_value = None

        assert get_last_successful_sync(ORG_ID, "transactions", session=session) is None


class TestTokenStorage:
    """Test the database token store."""

    def test_save_token_upserts_current_and_appends_history(self):
        session = MagicMock()
        token = OAuthToken("access", "refresh", expires_in=600, division=123456)

        save_token(ORG_ID, token, "refresh_token", session=session)

        sql = compiled(session.execute.call_args.args[0])
        assert "ON CONFLICT (organization_id) DO UPDATE" in sql
        history = session.add.call_args.args[0]
        assert history.grant_type == "refresh_token"
        assert history.division == 123456

    @patch("flowqi.db.exact_tokens.lock_current_token")
    def test_locked_read_uses_store_session(self, mock_lock):
        session = MagicMock()
        store = DatabaseTokenStore(session)

        store.get_current(ORG_ID, for_update=True)

        mock_lock.assert_called_once_with(ORG_ID, session)

    def test_transaction_reuses_injected_session(self):
        session = MagicMock()
        store = DatabaseTokenStore(session)

        with store.transaction() as sess:
            assert sess is session
