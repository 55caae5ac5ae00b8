"""Recurring billing and payment reconciliation models migration.

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

Creates merchants, subscriptions, subscription_amount_overrides,
subscription_invoices, payment_transactions and webhook_events.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create merchants table
    op.create_table(
        'merchants',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('business_name', sa.String(255), nullable=False),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='UTC'),
        sa.Column('last_invoice_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )

    # Create subscriptions table
    op.create_table(
        'subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('merchant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        # Pricing
        sa.Column('amount', sa.Numeric(18, 8), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False, server_default='USD'),
        sa.Column('accepted_cryptos', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('charge_customer_fee', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('auto_convert_enabled', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('preferred_payout_currency', sa.String(20), nullable=True),
        # Cycle definition
        sa.Column('interval', sa.String(10), nullable=False),
        sa.Column('interval_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('billing_anchor', sa.DateTime(timezone=True), nullable=False),
        sa.Column('next_billing_at', sa.DateTime(timezone=True), nullable=True),
        # Status and counters
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('cycles_completed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('paid_cycles', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_cycles', sa.Integer(), nullable=True),
        # Timing configuration
        sa.Column('invoice_due_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('generate_days_in_advance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('past_due_after_days', sa.Integer(), nullable=False, server_default='2'),
        # Dunning
        sa.Column('pause_after_missed_payments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('auto_resume_on_payment', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('last_dunning_at', sa.DateTime(timezone=True), nullable=True),
        # Lifecycle timestamps
        sa.Column('paused_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscriptions_merchant_id', 'subscriptions', ['merchant_id'])
    op.create_index('ix_subscriptions_customer_id', 'subscriptions', ['customer_id'])
    op.create_index('ix_subscriptions_next_billing_at', 'subscriptions', ['next_billing_at'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_status_next_billing', 'subscriptions', ['status', 'next_billing_at'])

    # Create subscription_amount_overrides table
    op.create_table(
        'subscription_amount_overrides',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_until', sa.Date(), nullable=True),
        sa.Column('amount', sa.Numeric(18, 8), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('notice_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_subscription_amount_overrides_subscription_id',
        'subscription_amount_overrides',
        ['subscription_id'],
    )
    op.create_index(
        'ix_amount_overrides_subscription_from',
        'subscription_amount_overrides',
        ['subscription_id', 'effective_from'],
    )

    # Create subscription_invoices table
    op.create_table(
        'subscription_invoices',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('merchant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('invoice_number', sa.Integer(), nullable=False),
        sa.Column('cycle_start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('amount', sa.Numeric(18, 8), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False),
        sa.Column('payment_link_id', sa.String(64), nullable=False),
        sa.Column('payment_url', sa.String(512), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='sent'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscription_id', 'cycle_start_at', name='uq_invoice_subscription_cycle'),
        sa.UniqueConstraint('merchant_id', 'invoice_number', name='uq_invoice_merchant_number'),
    )
    op.create_index('ix_subscription_invoices_subscription_id', 'subscription_invoices', ['subscription_id'])
    op.create_index('ix_subscription_invoices_merchant_id', 'subscription_invoices', ['merchant_id'])
    op.create_index('ix_subscription_invoices_payment_link_id', 'subscription_invoices', ['payment_link_id'])
    op.create_index('ix_subscription_invoices_status', 'subscription_invoices', ['status'])

    # Create payment_transactions table
    op.create_table(
        'payment_transactions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False, server_default='nowpayments'),
        sa.Column('payment_id', sa.String(64), nullable=False),
        sa.Column('order_id', sa.String(128), nullable=True),
        sa.Column('payment_link_id', sa.String(64), nullable=True),
        sa.Column('merchant_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='waiting'),
        # Requested amounts
        sa.Column('price_amount', sa.Numeric(24, 8), nullable=True),
        sa.Column('price_currency', sa.String(20), nullable=True),
        sa.Column('pay_amount', sa.Numeric(36, 18), nullable=True),
        sa.Column('pay_currency', sa.String(20), nullable=True),
        sa.Column('pay_address', sa.String(255), nullable=True),
        # Chain references
        sa.Column('payin_hash', sa.String(255), nullable=True),
        sa.Column('payout_hash', sa.String(255), nullable=True),
        sa.Column('tx_hash', sa.String(255), nullable=True),
        # Settlement
        sa.Column('amount_received', sa.Numeric(36, 18), nullable=True),
        sa.Column('currency_received', sa.String(20), nullable=True),
        sa.Column('payout_amount', sa.Numeric(36, 18), nullable=True),
        sa.Column('payout_currency', sa.String(20), nullable=True),
        sa.Column('gateway_fee', sa.Numeric(36, 18), nullable=True),
        sa.Column('gateway_response', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id'),
    )
    op.create_index('ix_payment_transactions_payment_link_id', 'payment_transactions', ['payment_link_id'])
    op.create_index('ix_payment_transactions_merchant_id', 'payment_transactions', ['merchant_id'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])
    op.create_index('ix_payment_transactions_tx_hash', 'payment_transactions', ['tx_hash'])
    op.create_index('ix_payment_tx_status_created', 'payment_transactions', ['status', 'created_at'])

    # Create webhook_events table
    op.create_table(
        'webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(128), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('payload', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('result', sa.String(30), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_event_provider_event'),
    )


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('payment_transactions')
    op.drop_table('subscription_invoices')
    op.drop_table('subscription_amount_overrides')
    op.drop_table('subscriptions')
    op.drop_table('merchants')
