"""
Database configuration for the FlowQi ledger service.

Builds the SQLAlchemy engine and session factory on first use, so importing
persistence modules never requires a database.
"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker

from flowqi.config.loader import get_database_url


class DatabaseConfig:
    """Database configuration singleton."""

    _engine: Engine | None = None
    _session_factory: sessionmaker | None = None

    @classmethod
    def get_engine(cls) -> Engine:
        """Get SQLAlchemy engine (singleton)."""
        if cls._engine is None:
            cls._engine = create_engine(
                get_database_url(),
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,
                echo=False,
            )
        return cls._engine

    @classmethod
    def get_session_factory(cls) -> sessionmaker:
        """Get session factory."""
        if cls._session_factory is None:
            cls._session_factory = sessionmaker(
                bind=cls.get_engine(),
                autoflush=False,
                autocommit=False,
                expire_on_commit=False,
            )
        return cls._session_factory

    @classmethod
    def reset(cls) -> None:
        """Dispose of the engine; the next session rebuilds it."""
        if cls._engine is not None:
            cls._engine.dispose()
        cls._engine = None
        cls._session_factory = None


def SessionLocal():
    """Create a new session from the shared factory."""
    return DatabaseConfig.get_session_factory()()
