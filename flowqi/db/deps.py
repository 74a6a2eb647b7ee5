"""
Database session management for the FlowQi ledger service.

Provides context managers for jobs and scripts, and a generator dependency
for FastAPI routes.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from .config import SessionLocal


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager that yields a database session and ensures proper cleanup.

    Commits on success, rolls back on any exception and always closes.

    Usage:
        with get_session() as session:
            session.add(account)
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """Session dependency for FastAPI routes."""
    with get_session() as session:
        yield session
