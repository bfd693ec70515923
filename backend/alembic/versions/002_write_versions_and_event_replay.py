"""ingredient versions, event processing state, usage ingestion order

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Optimistic versions for composition and ingredient writes
    with op.batch_alter_table('ingredients') as batch:
        batch.add_column(sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'))
    with op.batch_alter_table('formulations') as batch:
        batch.add_column(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True))

    # Subscriber outcome per outbox row
    with op.batch_alter_table('domain_events') as batch:
        batch.add_column(sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True))
        batch.add_column(sa.Column('processing_attempts', sa.Integer(), nullable=False, server_default='0'))
        batch.add_column(sa.Column('processing_error', sa.JSON(), nullable=True))
        batch.create_index('idx_domain_events_unprocessed', ['processed_at', 'created_at'])
    # Rows written before this revision were published by the old bus
    op.execute("UPDATE domain_events SET processed_at = created_at, processing_attempts = 1")

    with op.batch_alter_table('settlement_payouts') as batch:
        batch.add_column(sa.Column('paid_by', sa.String(255), nullable=True))

    # Ingestion order per deal; existing rows are numbered by recorded_at
    with op.batch_alter_table('usage_events') as batch:
        batch.add_column(sa.Column('sequence', sa.Integer(), nullable=True))
        batch.add_column(sa.Column('ingested_at', sa.DateTime(timezone=True), nullable=True))
    op.execute(
        "UPDATE usage_events SET ingested_at = recorded_at, sequence = ("
        " SELECT COUNT(*) FROM usage_events earlier"
        " WHERE earlier.deal_id = usage_events.deal_id"
        " AND (earlier.recorded_at < usage_events.recorded_at"
        " OR (earlier.recorded_at = usage_events.recorded_at AND earlier.id <= usage_events.id)))"
    )
    with op.batch_alter_table('usage_events') as batch:
        batch.alter_column('sequence', existing_type=sa.Integer(), nullable=False)
        batch.alter_column(
            'ingested_at',
            existing_type=sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        )
        batch.create_index('idx_usage_events_deal_sequence', ['deal_id', 'sequence'], unique=True)


def downgrade() -> None:
    with op.batch_alter_table('usage_events') as batch:
        batch.drop_index('idx_usage_events_deal_sequence')
        batch.drop_column('ingested_at')
        batch.drop_column('sequence')
    with op.batch_alter_table('settlement_payouts') as batch:
        batch.drop_column('paid_by')
    with op.batch_alter_table('domain_events') as batch:
        batch.drop_index('idx_domain_events_unprocessed')
        batch.drop_column('processing_error')
        batch.drop_column('processing_attempts')
        batch.drop_column('processed_at')
    with op.batch_alter_table('formulations') as batch:
        batch.drop_column('updated_at')
    with op.batch_alter_table('ingredients') as batch:
        batch.drop_column('version_id')
