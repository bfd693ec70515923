"""initial deal room schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # Deals and participants
    op.create_table(
        'deals',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        _created_at(),
    )

    op.create_table(
        'deal_participants',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('participant_id', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), nullable=False, server_default='member'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('left_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
    )
    op.create_index('idx_deal_participant', 'deal_participants', ['deal_id', 'participant_id'], unique=True)

    # Ingredient registry
    op.create_table(
        'ingredients',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('ingredient_type', sa.String(50), nullable=False, server_default='other'),
        sa.Column('ownership_status', sa.String(20), nullable=False, server_default='sole'),
        sa.Column('value_category', sa.String(100), nullable=True),
        sa.Column('contribution_weight', sa.Numeric(10, 4), nullable=False, server_default='1'),
        sa.Column('credit_multiplier', sa.Numeric(10, 4), nullable=False, server_default='1'),
        sa.Column('contributed_by', sa.String(255), nullable=True),
        sa.Column('is_retired', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('retired_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
    )
    op.create_index('idx_ingredients_deal', 'ingredients', ['deal_id'])

    # Formulations
    op.create_table(
        'formulations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('parent_formulation_id', sa.Uuid(), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        _created_at(),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('activated_by', sa.String(255), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_by', sa.String(255), nullable=True),
        sa.Column('composition_snapshot', sa.JSON(), nullable=True),
        sa.Column('snapshot_revision', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['parent_formulation_id'], ['formulations.id']),
        sa.CheckConstraint(
            "status IN ('draft', 'pending_review', 'active', 'archived')",
            name='formulations_status_check'
        ),
    )
    op.create_index('idx_formulations_deal_status', 'formulations', ['deal_id', 'status'])

    op.create_table(
        'formulation_ingredients',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('formulation_id', sa.Uuid(), nullable=False),
        sa.Column('ingredient_id', sa.Uuid(), nullable=True),
        sa.Column('contributor_id', sa.String(255), nullable=True),
        sa.Column('contributor_type', sa.String(20), nullable=True),
        sa.Column('label', sa.String(255), nullable=True),
        sa.Column('ownership_percent', sa.Numeric(7, 4), nullable=False, server_default='0'),
        sa.Column('value_weight', sa.Numeric(10, 4), nullable=False, server_default='1'),
        sa.Column('credit_multiplier', sa.Numeric(10, 4), nullable=False, server_default='1'),
        _created_at(),
        sa.ForeignKeyConstraint(['formulation_id'], ['formulations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['ingredient_id'], ['ingredients.id']),
        sa.CheckConstraint(
            "ingredient_id IS NOT NULL OR contributor_id IS NOT NULL",
            name='formulation_ingredients_target_check'
        ),
    )
    op.create_index('idx_formulation_ingredients_formulation', 'formulation_ingredients', ['formulation_id'])

    op.create_table(
        'formulation_reviews',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('formulation_id', sa.Uuid(), nullable=False),
        sa.Column('participant_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['formulation_id'], ['formulations.id'], ondelete='CASCADE'),
    )
    op.create_index(
        'idx_formulation_review_participant', 'formulation_reviews', ['formulation_id', 'participant_id'], unique=True
    )

    # Attribution
    op.create_table(
        'attribution_rules',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('formulation_id', sa.Uuid(), nullable=True),
        sa.Column('participant_id', sa.String(255), nullable=False),
        sa.Column('credit_type', sa.String(20), nullable=False),
        sa.Column('payout_percentage', sa.Numeric(7, 4), nullable=False),
        sa.Column('min_payout', sa.Numeric(18, 2), nullable=True),
        sa.Column('max_payout', sa.Numeric(18, 2), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_by', sa.String(255), nullable=True),
        _created_at(),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['formulation_id'], ['formulations.id']),
        sa.CheckConstraint(
            "payout_percentage >= 0 AND payout_percentage <= 100",
            name='attribution_rules_percentage_check'
        ),
    )
    op.create_index('idx_attribution_rules_deal_active', 'attribution_rules', ['deal_id', 'is_active'])

    op.create_table(
        'payout_calculations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('batch_id', sa.Uuid(), nullable=False),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('participant_id', sa.String(255), nullable=False),
        sa.Column('pool_value', sa.Numeric(18, 2), nullable=False),
        sa.Column('attribution_percentage', sa.Numeric(7, 4), nullable=False),
        sa.Column('calculated_payout', sa.Numeric(18, 2), nullable=False),
        sa.Column('min_applied', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('max_applied', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        _created_at(),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_payout_calculations_batch_id', 'payout_calculations', ['batch_id'])

    # Change proposals
    op.create_table(
        'change_proposals',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('ingredient_id', sa.Uuid(), nullable=True),
        sa.Column('proposed_by', sa.String(255), nullable=False),
        sa.Column('change_type', sa.String(20), nullable=False),
        sa.Column('proposed_changes', sa.JSON(), nullable=False),
        sa.Column('justification', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('approvals', sa.JSON(), nullable=False),
        _created_at(),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('applied_ingredient_id', sa.Uuid(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['ingredient_id'], ['ingredients.id']),
    )
    op.create_index('idx_change_proposals_deal_status', 'change_proposals', ['deal_id', 'status'])

    # Usage ledger
    op.create_table(
        'usage_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('ingredient_id', sa.Uuid(), nullable=False),
        sa.Column('usage_type', sa.String(100), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 4), nullable=False),
        sa.Column('cost_incurred', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('event_key', sa.String(255), nullable=False, unique=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['ingredient_id'], ['ingredients.id']),
    )
    op.create_index('idx_usage_events_deal_recorded', 'usage_events', ['deal_id', 'recorded_at'])

    op.create_table(
        'usage_summaries',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('ingredient_id', sa.Uuid(), nullable=False),
        sa.Column('usage_type', sa.String(100), nullable=False),
        sa.Column('total_quantity', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('total_cost', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('event_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_recorded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['ingredient_id'], ['ingredients.id']),
    )
    op.create_index(
        'idx_usage_summary_key', 'usage_summaries', ['deal_id', 'ingredient_id', 'usage_type'], unique=True
    )

    # Credit ledger
    op.create_table(
        'credit_contributions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('participant_id', sa.String(255), nullable=False),
        sa.Column('ingredient_id', sa.Uuid(), nullable=True),
        sa.Column('amount', sa.Numeric(18, 4), nullable=False),
        sa.Column('classification', sa.String(100), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['ingredient_id'], ['ingredients.id']),
    )
    op.create_index('idx_credit_contributions_participant', 'credit_contributions', ['deal_id', 'participant_id'])

    op.create_table(
        'credit_usage',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('participant_id', sa.String(255), nullable=False),
        sa.Column('ingredient_id', sa.Uuid(), nullable=True),
        sa.Column('usage_type', sa.String(100), nullable=False),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('amount', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('classification', sa.String(100), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['ingredient_id'], ['ingredients.id']),
    )
    op.create_index('idx_credit_usage_participant', 'credit_usage', ['deal_id', 'participant_id'])

    op.create_table(
        'credit_values',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('participant_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.Numeric(18, 4), nullable=False),
        sa.Column('classification', sa.String(100), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verified_by', sa.String(255), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
    )
    op.create_index('idx_credit_values_participant', 'credit_values', ['deal_id', 'participant_id'])

    # Settlement
    op.create_table(
        'settlement_contracts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('trigger_type', sa.String(30), nullable=False),
        sa.Column('trigger_conditions', sa.JSON(), nullable=False),
        sa.Column('distribution_logic', sa.JSON(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('total_distributed', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('last_triggered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        _created_at(),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id'], ondelete='CASCADE'),
    )
    op.create_index(
        'idx_settlement_contracts_deal_trigger', 'settlement_contracts', ['deal_id', 'trigger_type', 'is_active']
    )

    op.create_table(
        'settlement_executions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('contract_id', sa.Uuid(), nullable=False),
        sa.Column('trigger_event', sa.JSON(), nullable=False),
        sa.Column('total_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('distributed_amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_details', sa.JSON(), nullable=True),
        _created_at(),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['contract_id'], ['settlement_contracts.id'], ondelete='CASCADE'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='settlement_executions_status_check'
        ),
    )

    op.create_table(
        'settlement_payouts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('execution_id', sa.Uuid(), nullable=False),
        sa.Column('participant_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('attribution_percentage', sa.Numeric(7, 4), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_reference', sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(['execution_id'], ['settlement_executions.id'], ondelete='CASCADE'),
    )
    op.create_index('idx_settlement_payouts_execution', 'settlement_payouts', ['execution_id'])
    op.create_index('idx_settlement_payouts_participant', 'settlement_payouts', ['participant_id'])

    # Domain event outbox
    op.create_table(
        'domain_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), nullable=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('aggregate_type', sa.String(50), nullable=False),
        sa.Column('aggregate_id', sa.String(64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        _created_at(),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_domain_events_undelivered', 'domain_events', ['delivered_at', 'created_at'])
    op.create_index('idx_domain_events_deal_type', 'domain_events', ['deal_id', 'event_type'])


def downgrade() -> None:
    op.drop_table('domain_events')
    op.drop_table('settlement_payouts')
    op.drop_table('settlement_executions')
    op.drop_table('settlement_contracts')
    op.drop_table('credit_values')
    op.drop_table('credit_usage')
    op.drop_table('credit_contributions')
    op.drop_table('usage_summaries')
    op.drop_table('usage_events')
    op.drop_table('change_proposals')
    op.drop_table('payout_calculations')
    op.drop_table('attribution_rules')
    op.drop_table('formulation_reviews')
    op.drop_table('formulation_ingredients')
    op.drop_table('formulations')
    op.drop_table('ingredients')
    op.drop_table('deal_participants')
    op.drop_table('deals')
