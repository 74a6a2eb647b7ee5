"""Initial FlowQi ledger schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create organizations, GL accounts, actual entries and Exact Online tables."""
    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')

    op.create_table('organizations',
        sa.Column('id', postgresql.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id')
    )

    # GL accounts: level/parent_code/type derived from the code
    op.create_table('gl_accounts',
        sa.Column('id', postgresql.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('organization_id', postgresql.UUID(), nullable=False),
        sa.Column('code', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('parent_code', sa.Text()),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('category', sa.Text()),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('balans_type', sa.Text()),
        sa.Column('debet_credit', sa.Text()),
        sa.Column('is_blocked', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('is_compressed', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('exact_id', sa.Text()),
        sa.Column('last_synced_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'code', name='uq_gl_accounts_org_code'),
        sa.CheckConstraint('level BETWEEN 1 AND 3', name='ck_gl_accounts_level'),
        sa.CheckConstraint("type IN ('Inkomsten', 'Uitgaven', 'Balans')", name='ck_gl_accounts_type')
    )
    op.create_index('ix_gl_accounts_org_parent_code', 'gl_accounts', ['organization_id', 'parent_code'])
    op.create_index('ix_gl_accounts_exact_id', 'gl_accounts', ['exact_id'])

    op.create_table('actual_entries',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('organization_id', postgresql.UUID(), nullable=False),
        sa.Column('exact_id', sa.Text(), nullable=False),
        sa.Column('entry_number', sa.Integer()),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('is_expense', sa.Boolean(), nullable=False),
        sa.Column('gl_account_code', sa.Text()),
        sa.Column('gl_account_description', sa.Text()),
        sa.Column('last_synced_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'exact_id', name='uq_actual_entries_org_exact_id')
    )
    op.create_index('ix_actual_entries_org_date', 'actual_entries', ['organization_id', 'date'])
    op.create_index('ix_actual_entries_gl_account_code', 'actual_entries', ['gl_account_code'])

    # One current token per organization
    op.create_table('exact_tokens',
        sa.Column('organization_id', postgresql.UUID(), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=False),
        sa.Column('expires_in', sa.Integer(), nullable=False),
        sa.Column('token_type', sa.Text(), server_default='bearer', nullable=False),
        sa.Column('division', sa.Integer()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('organization_id')
    )

    op.create_table('exact_token_history',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('organization_id', postgresql.UUID(), nullable=False),
        sa.Column('grant_type', sa.Text(), nullable=False),
        sa.Column('token_type', sa.Text()),
        sa.Column('expires_in', sa.Integer()),
        sa.Column('division', sa.Integer()),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_exact_token_history_org_issued_at', 'exact_token_history', ['organization_id', 'issued_at'])

    op.create_table('exact_sync_logs',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('organization_id', postgresql.UUID(), nullable=False),
        sa.Column('sync_type', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('start_date', sa.Date()),
        sa.Column('end_date', sa.Date()),
        sa.Column('records_processed', sa.Integer(), server_default='0', nullable=False),
        sa.Column('records_created', sa.Integer(), server_default='0', nullable=False),
        sa.Column('records_updated', sa.Integer(), server_default='0', nullable=False),
        sa.Column('records_failed', sa.Integer(), server_default='0', nullable=False),
        sa.Column('error_message', sa.Text()),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_exact_sync_logs_org_type_started', 'exact_sync_logs', ['organization_id', 'sync_type', 'started_at'])
    op.create_index('ix_exact_sync_logs_status', 'exact_sync_logs', ['status'])


def downgrade() -> None:
    """Drop the FlowQi ledger schema."""
    op.drop_table('exact_sync_logs')
    op.drop_table('exact_token_history')
    op.drop_table('exact_tokens')
    op.drop_table('actual_entries')
    op.drop_table('gl_accounts')
    op.drop_table('organizations')
