"""Bank STK push, match-attempt tracking and fractional plan rates

Revision ID: 002_bank_stk
Revises: 001_billing
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '002_bank_stk'
down_revision = '001_billing'
branch_labels = None
depends_on = None


def upgrade():
    """Add bank STK columns, last match attempt, and widen percentage_rate"""

    op.alter_column(
        'billing_plans', 'percentage_rate',
        existing_type=sa.Numeric(12, 2),
        type_=sa.Numeric(7, 4),
        existing_nullable=True,
    )

    op.add_column('inbound_payments', sa.Column('last_match_attempt_at', sa.DateTime(timezone=True), nullable=True))
    op.create_index(
        'ix_inbound_payments_match_attempt', 'inbound_payments', ['processed', 'last_match_attempt_at']
    )

    op.add_column(
        'mpesa_transactions',
        sa.Column('provider', sa.String(20), server_default='mpesa', nullable=False),
    )

    op.add_column(
        'landlord_bank_configs',
        sa.Column('environment', sa.String(20), server_default='sandbox', nullable=False),
    )
    op.add_column('landlord_bank_configs', sa.Column('api_key_encrypted', sa.Text, nullable=True))
    op.add_column('landlord_bank_configs', sa.Column('consumer_secret_encrypted', sa.Text, nullable=True))


def downgrade():
    """Drop bank STK columns and last match attempt"""
    op.drop_column('landlord_bank_configs', 'consumer_secret_encrypted')
    op.drop_column('landlord_bank_configs', 'api_key_encrypted')
    op.drop_column('landlord_bank_configs', 'environment')
    op.drop_column('mpesa_transactions', 'provider')
    op.drop_index('ix_inbound_payments_match_attempt', table_name='inbound_payments')
    op.drop_column('inbound_payments', 'last_match_attempt_at')
    op.alter_column(
        'billing_plans', 'percentage_rate',
        existing_type=sa.Numeric(7, 4),
        type_=sa.Numeric(12, 2),
        existing_nullable=True,
    )
