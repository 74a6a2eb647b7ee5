"""
SQLAlchemy models for the FlowQi ledger service.

Tables owned by this service:
- organizations (tenant)
- gl_accounts (three-level GL account hierarchy)
- actual_entries (booked transactions from Exact Online)
- exact_tokens / exact_token_history (OAuth tokens)
- exact_sync_logs (one row per sync run)
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Organization(Base):
    """A FlowQi tenant. Every ledger row belongs to exactly one organization."""

    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()"))
    name = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    gl_accounts = relationship("GLAccount", back_populates="organization")


class GLAccount(Base):
    """
    General-ledger account.

    level/parent_code/type are derived from the code by
    flowqi.common.gl_accounts; parent_code is not a foreign key, the parent
    may not have been imported (yet).
    """

    __tablename__ = "gl_accounts"

    id = Column(UUID(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()"))
    organization_id = Column(
        UUID(as_uuid=False), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    code = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    parent_code = Column(Text)
    level = Column(Integer, nullable=False)
    category = Column(Text)
    type = Column(Text, nullable=False)  # 'Inkomsten' | 'Uitgaven' | 'Balans'
    balans_type = Column(Text)  # 'Winst & Verlies' | 'Balans'
    debet_credit = Column(Text)  # 'Debet' | 'Credit'
    is_blocked = Column(Boolean, nullable=False, server_default=text("false"))
    is_compressed = Column(Boolean, nullable=False, server_default=text("false"))

    # Exact Online reference
    exact_id = Column(Text)
    last_synced_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    organization = relationship("Organization", back_populates="gl_accounts")

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_gl_accounts_org_code"),
        Index("ix_gl_accounts_org_parent_code", "organization_id", "parent_code"),
        Index("ix_gl_accounts_exact_id", "exact_id"),
    )


class ActualEntry(Base):
    """Booked (actual) amount on a GL account, synced from Exact Online."""

    __tablename__ = "actual_entries"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    organization_id = Column(
        UUID(as_uuid=False), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    exact_id = Column(Text, nullable=False)
    entry_number = Column(Integer)
    date = Column(Date, nullable=False)
    description = Column(Text)
    amount = Column(Numeric(14, 2), nullable=False)
    is_expense = Column(Boolean, nullable=False)
    gl_account_code = Column(Text)
    gl_account_description = Column(Text)
    last_synced_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "exact_id", name="uq_actual_entries_org_exact_id"),
        Index("ix_actual_entries_org_date", "organization_id", "date"),
        Index("ix_actual_entries_gl_account_code", "gl_account_code"),
    )


class ExactToken(Base):
    """The current Exact Online OAuth token of an organization (one row each)."""

    __tablename__ = "exact_tokens"

    organization_id = Column(
        UUID(as_uuid=False), ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True
    )
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_in = Column(Integer, nullable=False)  # seconds, as issued
    token_type = Column(Text, nullable=False, server_default="bearer")
    division = Column(Integer)
    created_at = Column(DateTime(timezone=True), nullable=False)  # issuance time
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ExactTokenHistory(Base):
    """Append-only record of every token issued. Holds no credentials."""

    __tablename__ = "exact_token_history"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    organization_id = Column(UUID(as_uuid=False), nullable=False)
    grant_type = Column(Text, nullable=False)  # 'authorization_code' | 'refresh_token'
    token_type = Column(Text)
    expires_in = Column(Integer)
    division = Column(Integer)
    issued_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_exact_token_history_org_issued_at", "organization_id", "issued_at"),
    )


class ExactSyncLog(Base):
    """One execution of a GL-account or transaction sync job."""

    __tablename__ = "exact_sync_logs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    organization_id = Column(UUID(as_uuid=False), nullable=False)
    sync_type = Column(Text, nullable=False)  # 'gl_accounts' | 'transactions'
    status = Column(Text, nullable=False)  # 'in_progress' | 'completed' | 'failed'

    # Requested window (transactions only)
    start_date = Column(Date)
    end_date = Column(Date)

    records_processed = Column(Integer, nullable=False, server_default="0")
    records_created = Column(Integer, nullable=False, server_default="0")
    records_updated = Column(Integer, nullable=False, server_default="0")
    records_failed = Column(Integer, nullable=False, server_default="0")
    error_message = Column(Text)

    started_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_exact_sync_logs_org_type_started", "organization_id", "sync_type", "started_at"),
        Index("ix_exact_sync_logs_status", "status"),
    )
