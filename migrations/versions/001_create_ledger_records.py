"""Create the append-only ledger_records table.

Revision ID: 001_create_ledger_records
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision = '001_create_ledger_records'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create ledger_records with per-chain sequence uniqueness."""

    op.create_table(
        'ledger_records',
        sa.Column('record_id', sa.Text(), primary_key=True),
        sa.Column('schema_version', sa.Text(), nullable=False),
        sa.Column('scope_id', sa.Text(), nullable=False),
        sa.Column('category', sa.Text(), nullable=False),
        sa.Column('sequence_num', sa.BigInteger(), nullable=False),
        sa.Column('timestamp', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('actor_user_id', sa.Text()),
        sa.Column('actor_email', sa.Text()),
        sa.Column('actor_name', sa.Text()),
        sa.Column('action', sa.Text(), nullable=False),
        sa.Column('resource', sa.Text()),
        sa.Column('resource_id', sa.Text()),
        sa.Column('ip_address', sa.Text()),
        sa.Column('user_agent', sa.Text()),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('severity', sa.Text(), nullable=False),
        sa.Column('audit_category', sa.Text()),
        sa.Column('previous_hash', sa.Text()),
        sa.Column('hash', sa.Text()),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint(
            'scope_id', 'category', 'sequence_num',
            name='ledger_records_chain_seq_key',
        ),
    )
    op.create_index('ledger_records_timestamp_idx', 'ledger_records', ['timestamp'])
    op.create_index(
        'ledger_records_scope_timestamp_idx', 'ledger_records', ['scope_id', 'timestamp']
    )

    # Rows are never updated or deleted once written
    op.execute("""
        CREATE OR REPLACE FUNCTION ledger_records_block_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_records is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER ledger_records_append_only
            BEFORE UPDATE OR DELETE ON ledger_records
            FOR EACH ROW EXECUTE FUNCTION ledger_records_block_mutation();
    """)


def downgrade() -> None:
    """Drop the ledger table and its append-only trigger."""

    op.execute("DROP TRIGGER IF EXISTS ledger_records_append_only ON ledger_records")
    op.execute("DROP FUNCTION IF EXISTS ledger_records_block_mutation()")
    op.drop_index('ledger_records_scope_timestamp_idx', table_name='ledger_records')
    op.drop_index('ledger_records_timestamp_idx', table_name='ledger_records')
    op.drop_table('ledger_records')
