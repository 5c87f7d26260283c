"""create accounts, plans and settlements

Revision ID: 20251019_0001
Revises:
Create Date: 2025-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20251019_0001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(14, 4)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'accounts',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('phone', sa.String(20), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('pin', sa.String(6), nullable=False),
        sa.Column('referral_code', sa.String(12), nullable=False),
        sa.Column('wallet_balance', AMOUNT, nullable=False, server_default='0'),
        sa.Column('total_minutes_used', AMOUNT, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('phone', name='uq_accounts_phone'),
        sa.UniqueConstraint('email', name='uq_accounts_email'),
        sa.UniqueConstraint('pin', name='uq_accounts_pin'),
        sa.UniqueConstraint('referral_code', name='uq_accounts_referral_code'),
    )

    op.create_table(
        'plans',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('account_id', sa.BigInteger(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('name', sa.String(32), nullable=False),
        sa.Column('minutes_granted', AMOUNT, nullable=False),
        sa.Column('minutes_remaining', AMOUNT, nullable=False),
        sa.Column('purchased_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('minutes_remaining >= 0', name='ck_plans_minutes_remaining_nonneg'),
    )
    op.create_index('ix_plans_account_id_expires_at', 'plans', ['account_id', 'expires_at'])

    # One row per billed leg; the unique leg_id is what makes settlement idempotent
    op.create_table(
        'settlements',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('leg_id', sa.String(128), nullable=False),
        sa.Column('account_id', sa.BigInteger(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=False),
        sa.Column('minutes_billed', AMOUNT, nullable=False),
        sa.Column('plan_minutes_used', AMOUNT, nullable=False),
        sa.Column('wallet_debit', AMOUNT, nullable=False),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('leg_id', name='uq_settlements_leg_id'),
    )
    op.create_index('ix_settlements_settled_at', 'settlements', ['settled_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_settlements_settled_at', table_name='settlements')
    op.drop_table('settlements')
    op.drop_index('ix_plans_account_id_expires_at', table_name='plans')
    op.drop_table('plans')
    op.drop_table('accounts')
