"""
UPSERT helpers for the FlowQi ledger tables.

Implements conflict resolution using SQLAlchemy's PostgreSQL
insert().on_conflict_do_update for idempotent loading from Exact Online
and Excel imports.
"""

from collections.abc import Sequence

from sqlalchemy import literal_column
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from .deps import get_session
from .models import ActualEntry, GLAccount

GL_ACCOUNT_UPDATE_COLS = [
    "name",
    "parent_code",
    "level",
    "category",
    "type",
    "balans_type",
    "debet_credit",
    "is_blocked",
    "is_compressed",
    "exact_id",
    "last_synced_at",
]

ACTUAL_ENTRY_UPDATE_COLS = [
    "entry_number",
    "date",
    "description",
    "amount",
    "is_expense",
    "gl_account_code",
    "gl_account_description",
    "last_synced_at",
]


def _exec_upsert(
    session: Session,
    table,
    rows: Sequence[dict],
    conflict_cols: Sequence[str],
    update_cols: Sequence[str],
) -> tuple[int, int]:
    """Execute a bulk upsert and return (inserted_count, updated_count).

    Uses RETURNING xmax to distinguish inserts (xmax=0) from updates.
    Only columns present in the rows are updated on conflict, so a partial
    row (e.g. an import without exact_id) keeps existing values.
    """
    if not rows:
        return 0, 0

    present = set().union(*(row.keys() for row in rows))
    stmt = pg_insert(table).values(list(rows))
    update_values = {c: getattr(stmt.excluded, c) for c in update_cols if c in present}
    if "updated_at" in table.c:
        update_values["updated_at"] = literal_column("now()")
    stmt = stmt.on_conflict_do_update(index_elements=list(conflict_cols), set_=update_values)

    result = session.execute(stmt.returning(literal_column("xmax")))
    xmax_values = [row[0] for row in result.fetchall()]
    updated_count = sum(1 for x in xmax_values if str(x) != "0")
    inserted_count = len(xmax_values) - updated_count
    return inserted_count, updated_count


def upsert_gl_accounts(rows: list[dict], session: Session | None = None) -> tuple[int, int]:
    """
    Upsert GL accounts with conflict on (organization_id, code).
    Returns (inserted_count, updated_count).
    """

    def _run(sess: Session) -> tuple[int, int]:
        return _exec_upsert(
            sess,
            GLAccount.__table__,
            rows,
            conflict_cols=["organization_id", "code"],
            update_cols=GL_ACCOUNT_UPDATE_COLS,
        )

    if session is not None:
        return _run(session)
    with get_session() as sess:
        return _run(sess)


def upsert_actual_entries(rows: list[dict], session: Session | None = None) -> tuple[int, int]:
    """
    Upsert actual entries with conflict on (organization_id, exact_id).
    Returns (inserted_count, updated_count).
    """

    def _run(sess: Session) -> tuple[int, int]:
        return _exec_upsert(
            sess,
            ActualEntry.__table__,
            rows,
            conflict_cols=["organization_id", "exact_id"],
            update_cols=ACTUAL_ENTRY_UPDATE_COLS,
        )

    if session is not None:
        return _run(session)
    with get_session() as sess:
        return _run(sess)


def get_gl_accounts(organization_id: str, session: Session | None = None) -> list[dict]:
    """Return an organization's GL accounts as plain dicts, ordered by code."""

    def _query(sess: Session) -> list[dict]:
        accounts = (
            sess.query(GLAccount)
            .filter(GLAccount.organization_id == organization_id)
            .order_by(GLAccount.code)
            .all()
        )
        return [
            {
                "code": a.code,
                "name": a.name,
                "level": a.level,
                "parent_code": a.parent_code,
                "type": a.type,
                "category": a.category,
                "is_blocked": a.is_blocked,
            }
            for a in accounts
        ]

    if session is not None:
        return _query(session)
    with get_session() as sess:
        return _query(sess)
