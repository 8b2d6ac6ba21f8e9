"""create_autogrowth_ledger

Revision ID: 3f2a9c1d7b40
Revises:
Create Date: 2026-10-17 09:12:41.518204

"""
from decimal import Decimal
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


MONEY = sa.Numeric(precision=20, scale=8)
RATE = sa.Numeric(precision=10, scale=8)
NOW_UTC = sa.text("(now() at time zone 'utc')")


def upgrade() -> None:
    """Upgrade schema."""
    # Tier catalog (administered, read-only to the engine)
    investment_tiers = op.create_table(
        'investment_tiers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False, comment='Display name'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('min_amount', MONEY, nullable=False, comment='Minimum qualifying equity (USD)'),
        sa.Column('max_amount', MONEY, nullable=True, comment='Upper bound (NULL = unbounded)'),
        sa.Column('investment_period_days', sa.Integer(), nullable=False, comment='Term length in days'),
        sa.Column('daily_roi', RATE, nullable=False, comment='Flat daily rate applied to principal'),
        sa.Column('allocation_mix', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Asset symbol -> percentage (sums to 100)'),
        sa.Column('features', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='Inactive tiers are not upgrade targets'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW_UTC),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW_UTC),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('max_amount IS NULL OR max_amount >= min_amount', name='ck_investment_tiers_range'),
        sa.CheckConstraint('daily_roi > 0', name='ck_investment_tiers_daily_roi'),
        sa.CheckConstraint('investment_period_days > 0', name='ck_investment_tiers_days'),
    )

    # One row per user: tier pointer + claim-check lock
    op.create_table(
        'user_ledgers',
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('current_tier_id', sa.Integer(), nullable=True, comment='Tier of the last committed upgrade'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('lock_token', sa.String(length=36), nullable=True, comment='Holder of the ledger lock (NULL = free)'),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW_UTC),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW_UTC),
        sa.ForeignKeyConstraint(['current_tier_id'], ['investment_tiers.id']),
        sa.PrimaryKeyConstraint('user_id'),
    )

    op.create_table(
        'user_positions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('tier_id', sa.Integer(), nullable=False),
        sa.Column('principal', MONEY, nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False, server_default='USD'),
        sa.Column('accrued_roi', MONEY, nullable=False, server_default='0'),
        sa.Column('claimed_roi', MONEY, nullable=False, server_default='0', comment='Part of accrued_roi already paid out'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('source', sa.String(length=20), nullable=False, server_default='deposit'),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('matures_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_roi_calculation', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW_UTC),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW_UTC),
        sa.ForeignKeyConstraint(['tier_id'], ['investment_tiers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('principal >= 0', name='ck_user_positions_principal'),
        sa.CheckConstraint('accrued_roi >= 0', name='ck_user_positions_accrued'),
        sa.CheckConstraint('claimed_roi >= 0 AND claimed_roi <= accrued_roi', name='ck_user_positions_claimed'),
        sa.CheckConstraint('matures_at >= opened_at', name='ck_user_positions_term'),
        sa.CheckConstraint(
            "status IN ('active', 'matured', 'claimed', 'closed')", name='ck_user_positions_status'
        ),
    )
    op.create_index(op.f('ix_user_positions_user_id'), 'user_positions', ['user_id'], unique=False)
    op.create_index(op.f('ix_user_positions_status'), 'user_positions', ['status'], unique=False)
    op.create_index('ix_user_positions_user_status', 'user_positions', ['user_id', 'status'], unique=False)

    op.create_table(
        'tier_upgrades',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('from_tier_id', sa.Integer(), nullable=True),
        sa.Column('to_tier_id', sa.Integer(), nullable=False),
        sa.Column('new_position_id', sa.Integer(), nullable=True),
        sa.Column('equity_before', MONEY, nullable=False),
        sa.Column('claimed_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('invested_amount', MONEY, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW_UTC),
        sa.ForeignKeyConstraint(['from_tier_id'], ['investment_tiers.id']),
        sa.ForeignKeyConstraint(['to_tier_id'], ['investment_tiers.id']),
        sa.ForeignKeyConstraint(['new_position_id'], ['user_positions.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_tier_upgrades_user_id'), 'tier_upgrades', ['user_id'], unique=False)

    op.create_table(
        'roi_claims',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('position_id', sa.Integer(), nullable=False),
        sa.Column('upgrade_id', sa.Integer(), nullable=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('reason', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW_UTC),
        sa.ForeignKeyConstraint(['position_id'], ['user_positions.id']),
        sa.ForeignKeyConstraint(['upgrade_id'], ['tier_upgrades.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('amount > 0', name='ck_roi_claims_amount'),
    )
    op.create_index(op.f('ix_roi_claims_user_id'), 'roi_claims', ['user_id'], unique=False)
    op.create_index(op.f('ix_roi_claims_position_id'), 'roi_claims', ['position_id'], unique=False)

    op.create_table(
        'accrual_runs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('as_of', sa.DateTime(timezone=True), nullable=False, comment="The 'now' the pass accrued up to"),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('positions_updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('positions_matured', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('positions_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('positions_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('roi_distributed', MONEY, nullable=False, server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('triggered_by', sa.String(length=64), nullable=False, server_default='scheduler'),
        sa.PrimaryKeyConstraint('id'),
    )

    # Seed tier catalog
    op.bulk_insert(
        investment_tiers,
        [
            {'id': 1, 'name': 'Tier 1', 'min_amount': Decimal('150.00'), 'max_amount': Decimal('1000.00'),
             'investment_period_days': 3, 'daily_roi': Decimal('0.1'), 'sort_order': 1, 'is_active': True,
             'allocation_mix': {'BTC': 40, 'ETH': 30, 'USDT': 30}},
            {'id': 2, 'name': 'Tier 2', 'min_amount': Decimal('1000.01'), 'max_amount': Decimal('10000.00'),
             'investment_period_days': 7, 'daily_roi': Decimal('0.0643'), 'sort_order': 2, 'is_active': True,
             'allocation_mix': {'BTC': 35, 'ETH': 35, 'USDT': 30}},
            {'id': 3, 'name': 'Tier 3', 'min_amount': Decimal('10000.01'), 'max_amount': Decimal('20000.00'),
             'investment_period_days': 14, 'daily_roi': Decimal('0.0357'), 'sort_order': 3, 'is_active': True,
             'allocation_mix': {'BTC': 30, 'ETH': 40, 'USDT': 30}},
            {'id': 4, 'name': 'Tier 4', 'min_amount': Decimal('20000.01'), 'max_amount': Decimal('50000.00'),
             'investment_period_days': 30, 'daily_roi': Decimal('0.0333'), 'sort_order': 4, 'is_active': True,
             'allocation_mix': {'BTC': 25, 'ETH': 45, 'USDT': 30}},
            {'id': 5, 'name': 'Tier 5', 'min_amount': Decimal('50000.01'), 'max_amount': Decimal('10000000.00'),
             'investment_period_days': 60, 'daily_roi': Decimal('0.0333'), 'sort_order': 5, 'is_active': True,
             'allocation_mix': {'BTC': 20, 'ETH': 50, 'USDT': 30}},
        ],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('accrual_runs')
    op.drop_index(op.f('ix_roi_claims_position_id'), table_name='roi_claims')
    op.drop_index(op.f('ix_roi_claims_user_id'), table_name='roi_claims')
    op.drop_table('roi_claims')
    op.drop_index(op.f('ix_tier_upgrades_user_id'), table_name='tier_upgrades')
    op.drop_table('tier_upgrades')
    op.drop_index('ix_user_positions_user_status', table_name='user_positions')
    op.drop_index(op.f('ix_user_positions_status'), table_name='user_positions')
    op.drop_index(op.f('ix_user_positions_user_id'), table_name='user_positions')
    op.drop_table('user_positions')
    op.drop_table('user_ledgers')
    op.drop_table('investment_tiers')
