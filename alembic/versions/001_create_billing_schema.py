"""Create billing and reconciliation schema

Revision ID: 001_billing
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '001_billing'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    ]


def upgrade():
    """Create billing, property, payment and audit tables"""

    # ====================
    # PROPERTY MANAGEMENT (read by billing and matching)
    # ====================
    op.create_table(
        'properties',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('owner_id', UUID(as_uuid=True), nullable=False),
        sa.Column('manager_id', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_properties_owner_id', 'properties', ['owner_id'])
    op.create_index('ix_properties_manager_id', 'properties', ['manager_id'])

    op.create_table(
        'units',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('property_id', UUID(as_uuid=True), sa.ForeignKey('properties.id', ondelete='CASCADE'), nullable=False),
        sa.Column('unit_number', sa.String(50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_units_property_unit_number', 'units', ['property_id', 'unit_number'])

    op.create_table(
        'tenants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_tenants_phone', 'tenants', ['phone'])

    op.create_table(
        'leases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('unit_id', UUID(as_uuid=True), sa.ForeignKey('units.id'), nullable=False),
        sa.Column('tenant_id', UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('monthly_rent', sa.Numeric(12, 2), nullable=True),
        sa.Column('start_date', sa.Date, nullable=True),
        sa.Column('end_date', sa.Date, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_leases_unit_id', 'leases', ['unit_id'])
    op.create_index('ix_leases_tenant_id', 'leases', ['tenant_id'])

    op.create_table(
        'invoices',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('invoice_number', sa.String(50), unique=True, nullable=False),
        sa.Column('tenant_id', UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('lease_id', UUID(as_uuid=True), sa.ForeignKey('leases.id'), nullable=True),
        sa.Column('landlord_id', UUID(as_uuid=True), nullable=True),
        sa.Column('invoice_date', sa.Date, nullable=False),
        sa.Column('due_date', sa.Date, nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('outstanding_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), server_default='KES', nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('outstanding_amount >= 0', name='ck_invoices_outstanding_non_negative'),
    )
    op.create_index('ix_invoices_tenant_status', 'invoices', ['tenant_id', 'status'])
    op.create_index('ix_invoices_landlord_status', 'invoices', ['landlord_id', 'status'])

    op.create_table(
        'rent_payments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('lease_id', UUID(as_uuid=True), sa.ForeignKey('leases.id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payment_type', sa.String(20), server_default='rent', nullable=False),
        sa.Column('status', sa.String(20), server_default='completed', nullable=False),
        sa.Column('reference', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_rent_payments_lease_date', 'rent_payments', ['lease_id', 'payment_date'])

    # ====================
    # SERVICE-CHARGE BILLING
    # ====================
    op.create_table(
        'billing_plans',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('billing_model', sa.String(20), nullable=False),
        sa.Column('percentage_rate', sa.Numeric(12, 2), nullable=True),
        sa.Column('fixed_amount_per_unit', sa.Numeric(12, 2), nullable=True),
        sa.Column('tier_pricing', JSONB, server_default='[]', nullable=True),
        sa.Column('sms_credits_included', sa.Integer, server_default='0', nullable=False),
        sa.Column('currency', sa.String(3), server_default='KES', nullable=False),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'landlord_subscriptions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('landlord_id', UUID(as_uuid=True), unique=True, nullable=False),
        sa.Column('billing_plan_id', UUID(as_uuid=True), sa.ForeignKey('billing_plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(20), server_default='trial', nullable=False),
        sa.Column('trial_end_date', sa.Date, nullable=True),
        sa.Column('next_billing_date', sa.Date, nullable=True),
        sa.Column('sms_credits_balance', sa.Integer, server_default='0', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_landlord_subscriptions_status', 'landlord_subscriptions', ['status'])

    op.create_table(
        'service_charge_invoices',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('landlord_id', UUID(as_uuid=True), nullable=False),
        sa.Column('invoice_number', sa.String(50), unique=True, nullable=False),
        sa.Column('billing_period_start', sa.Date, nullable=False),
        sa.Column('billing_period_end', sa.Date, nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('sms_charges', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), server_default='KES', nullable=False),
        sa.Column('billing_model', sa.String(20), nullable=False),
        sa.Column('rent_collected', sa.Numeric(12, 2), nullable=True),
        sa.Column('unit_count', sa.Integer, nullable=True),
        sa.Column('explanation', sa.Text, nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('due_date', sa.Date, nullable=False),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_method', sa.String(30), nullable=True),
        sa.Column('mpesa_receipt_number', sa.String(50), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            'landlord_id', 'billing_period_start', 'billing_period_end',
            name='uq_service_charge_invoice_period'
        ),
    )
    op.create_index('ix_service_charge_invoices_landlord_id', 'service_charge_invoices', ['landlord_id'])
    op.create_index('ix_service_charge_invoices_status', 'service_charge_invoices', ['status'])

    op.create_table(
        'sms_usage',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('landlord_id', UUID(as_uuid=True), nullable=False),
        sa.Column('recipient', sa.String(20), nullable=True),
        sa.Column('message_id', sa.String(100), nullable=True),
        sa.Column('cost', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_sms_usage_landlord_sent_at', 'sms_usage', ['landlord_id', 'sent_at'])

    op.create_table(
        'automated_billing_settings',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('enabled', sa.Boolean, server_default='true', nullable=False),
        sa.Column('minimum_invoice_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('due_days', sa.Integer, nullable=True),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )

    # ====================
    # PAYMENTS
    # ====================
    op.create_table(
        'inbound_payments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('transaction_reference', sa.String(100), nullable=False),
        sa.Column('merchant_reference', sa.String(100), nullable=True),
        sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), server_default='KES', nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('customer_name', sa.String(200), nullable=True),
        sa.Column('customer_mobile', sa.String(20), nullable=True),
        sa.Column('allocated_amount', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('processed', sa.Boolean, server_default='false', nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('invoice_id', UUID(as_uuid=True), sa.ForeignKey('invoices.id', ondelete='SET NULL'), nullable=True),
        sa.Column('landlord_id', UUID(as_uuid=True), nullable=True),
        sa.Column('tenant_id', UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='SET NULL'), nullable=True),
        sa.Column('match_quality', sa.String(20), nullable=True),
        sa.Column('match_reason', sa.Text, nullable=True),
        sa.Column('raw_payload', JSONB, nullable=True),
        sa.Column('ip_address', sa.String(50), nullable=True),
        # Provider specific
        sa.Column('checkout_request_id', sa.String(100), nullable=True),
        sa.Column('payment_mode', sa.String(30), nullable=True),
        sa.Column('bank_reference', sa.String(100), nullable=True),
        sa.Column('bank_code', sa.String(20), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('source', 'transaction_reference', name='uq_inbound_payment_source_reference'),
        sa.CheckConstraint('allocated_amount <= amount', name='ck_inbound_payments_allocation_within_amount'),
    )
    op.create_index('ix_inbound_payments_unmatched', 'inbound_payments', ['status', 'processed', 'invoice_id'])
    op.create_index('ix_inbound_payments_tenant', 'inbound_payments', ['tenant_id'])
    op.create_index('ix_inbound_payments_landlord_id', 'inbound_payments', ['landlord_id'])

    op.create_table(
        'payment_allocations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('payment_id', UUID(as_uuid=True), sa.ForeignKey('inbound_payments.id'), nullable=False),
        sa.Column('invoice_id', UUID(as_uuid=True), sa.ForeignKey('invoices.id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('method', sa.String(20), server_default='automatic', nullable=False),
        sa.Column('match_quality', sa.String(20), nullable=True),
        sa.Column('allocated_by', UUID(as_uuid=True), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_payment_allocations_positive'),
    )
    op.create_index('ix_payment_allocations_payment', 'payment_allocations', ['payment_id'])
    op.create_index('ix_payment_allocations_invoice', 'payment_allocations', ['invoice_id'])

    op.create_table(
        'mpesa_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('checkout_request_id', sa.String(100), unique=True, nullable=False),
        sa.Column('merchant_request_id', sa.String(100), nullable=True),
        sa.Column('phone_number', sa.String(20), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('account_reference', sa.String(50), nullable=True),
        sa.Column('payment_type', sa.String(20), server_default='rent', nullable=False),
        sa.Column('invoice_id', UUID(as_uuid=True), sa.ForeignKey('invoices.id', ondelete='SET NULL'), nullable=True),
        sa.Column(
            'service_charge_invoice_id',
            UUID(as_uuid=True),
            sa.ForeignKey('service_charge_invoices.id', ondelete='SET NULL'),
            nullable=True
        ),
        sa.Column('landlord_id', UUID(as_uuid=True), nullable=True),
        sa.Column('initiated_by', UUID(as_uuid=True), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('result_code', sa.Integer, nullable=True),
        sa.Column('result_desc', sa.Text, nullable=True),
        sa.Column('mpesa_receipt_number', sa.String(50), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'landlord_bank_configs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('landlord_id', UUID(as_uuid=True), nullable=False),
        sa.Column('bank_code', sa.String(20), nullable=False),
        sa.Column('merchant_code', sa.String(50), nullable=False),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_landlord_bank_configs_landlord_id', 'landlord_bank_configs', ['landlord_id'])
    op.create_index('ix_landlord_bank_configs_merchant_code', 'landlord_bank_configs', ['merchant_code'])

    op.create_table(
        'landlord_mpesa_configs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('landlord_id', UUID(as_uuid=True), nullable=False),
        sa.Column('shortcode', sa.String(20), nullable=False),
        sa.Column('shortcode_type', sa.String(20), server_default='paybill', nullable=False),
        sa.Column('environment', sa.String(20), server_default='sandbox', nullable=False),
        sa.Column('consumer_key_encrypted', sa.Text, nullable=False),
        sa.Column('consumer_secret_encrypted', sa.Text, nullable=False),
        sa.Column('passkey_encrypted', sa.Text, nullable=False),
        sa.Column('callback_url', sa.String(500), nullable=True),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_landlord_mpesa_configs_landlord_id', 'landlord_mpesa_configs', ['landlord_id'])

    # ====================
    # NOTIFICATIONS & AUDIT
    # ====================
    op.create_table(
        'notifications',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('notification_type', sa.String(50), server_default='system', nullable=False),
        sa.Column('related_type', sa.String(50), nullable=True),
        sa.Column('related_id', UUID(as_uuid=True), nullable=True),
        sa.Column('extra_data', JSONB, server_default='{}', nullable=True),
        sa.Column('is_read', sa.Boolean, server_default='false', nullable=False),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_user_unread', 'notifications', ['user_id', 'is_read'])
    op.create_index('ix_notifications_related', 'notifications', ['related_type', 'related_id'])

    op.create_table(
        'activity_logs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', UUID(as_uuid=True), nullable=True),
        sa.Column('details', JSONB, nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_activity_logs_action', 'activity_logs', ['action'])
    op.create_index('ix_activity_logs_entity_type', 'activity_logs', ['entity_type'])
    op.create_index('ix_activity_logs_created_at', 'activity_logs', ['created_at'])


def downgrade():
    """Drop all billing and reconciliation tables"""
    for table in [
        'activity_logs',
        'notifications',
        'landlord_mpesa_configs',
        'landlord_bank_configs',
        'mpesa_transactions',
        'payment_allocations',
        'inbound_payments',
        'automated_billing_settings',
        'sms_usage',
        'service_charge_invoices',
        'landlord_subscriptions',
        'billing_plans',
        'rent_payments',
        'invoices',
        'leases',
        'tenants',
        'units',
        'properties',
    ]:
        op.drop_table(table)
