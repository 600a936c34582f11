"""Create payment core tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name, nullable=False, zero_default=False):
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default='0' if zero_default else None
    )


def upgrade() -> None:
    # Tables may already exist when Base.metadata.create_all ran first
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('payer_id', sa.String(length=64), nullable=False),
            sa.Column('creator_id', sa.String(length=64), nullable=False),
            sa.Column('processor_subscription_id', sa.String(length=255), nullable=False),
            sa.Column('tier', sa.String(length=50), nullable=False),
            _money('amount'),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
            sa.Column('billing_cycle', sa.String(length=20), nullable=False, server_default='monthly'),
            sa.Column('cycle_length_days', sa.Integer(), nullable=False, server_default='30'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=False),
            sa.Column('last_billing_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('failed_payment_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_failed_payment_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancellation_reason', sa.Text(), nullable=True),
            sa.Column('suspended_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('suspension_reason', sa.Text(), nullable=True),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
        op.create_index('ix_subscriptions_payer_id', 'subscriptions', ['payer_id'])
        op.create_index('ix_subscriptions_creator_id', 'subscriptions', ['creator_id'])
        op.create_index('ix_subscriptions_processor_subscription_id', 'subscriptions',
                        ['processor_subscription_id'], unique=True)
        op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
        op.create_index('ix_subscriptions_next_billing_date', 'subscriptions', ['next_billing_date'])
        op.create_index('ix_subscriptions_status_next_billing', 'subscriptions', ['status', 'next_billing_date'])
        # At most one active subscription per (payer, creator)
        op.create_index(
            'uq_subscriptions_active_pair',
            'subscriptions',
            ['payer_id', 'creator_id'],
            unique=True,
            postgresql_where=sa.text("status = 'active'"),
            sqlite_where=sa.text("status = 'active'")
        )

    if 'transactions' not in existing_tables:
        op.create_table(
            'transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('processor_transaction_id', sa.String(length=255), nullable=True),
            sa.Column('payer_id', sa.String(length=64), nullable=False),
            sa.Column('creator_id', sa.String(length=64), nullable=False),
            sa.Column('kind', sa.String(length=50), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            _money('amount'),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
            _money('platform_fee', nullable=True),
            _money('creator_earnings', nullable=True),
            _money('reversal_amount', nullable=True),
            _money('penalty_fee', nullable=True),
            sa.Column('target_id', sa.String(length=64), nullable=True),
            sa.Column('subscription_id', sa.Integer(), nullable=True),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('chargedback_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
            sa.CheckConstraint('amount > 0', name='ck_transactions_amount_positive'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_transactions_id', 'transactions', ['id'])
        op.create_index('ix_transactions_processor_transaction_id', 'transactions',
                        ['processor_transaction_id'], unique=True)
        op.create_index('ix_transactions_payer_id', 'transactions', ['payer_id'])
        op.create_index('ix_transactions_creator_id', 'transactions', ['creator_id'])
        op.create_index('ix_transactions_status', 'transactions', ['status'])
        op.create_index('ix_transactions_subscription_id', 'transactions', ['subscription_id'])
        op.create_index('ix_transactions_creator_status', 'transactions', ['creator_id', 'status'])

    if 'billing_records' not in existing_tables:
        op.create_table(
            'billing_records',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=False),
            sa.Column('billed_at', sa.DateTime(timezone=True), nullable=False),
            _money('amount'),
            sa.Column('outcome', sa.String(length=20), nullable=False),
            sa.Column('transaction_id', sa.Integer(), nullable=True),
            sa.Column('processor_transaction_id', sa.String(length=255), nullable=True),
            sa.Column('reason', sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id']),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_billing_records_id', 'billing_records', ['id'])
        op.create_index('ix_billing_records_subscription_id', 'billing_records', ['subscription_id'])

    if 'earnings_ledgers' not in existing_tables:
        op.create_table(
            'earnings_ledgers',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('creator_id', sa.String(length=64), nullable=False),
            _money('lifetime_earnings', zero_default=True),
            _money('available_balance', zero_default=True),
            _money('pending_balance', zero_default=True),
            _money('total_refunds', zero_default=True),
            _money('total_chargebacks', zero_default=True),
            _money('content_sales', zero_default=True),
            _money('tips', zero_default=True),
            _money('messages', zero_default=True),
            _money('subscriptions', zero_default=True),
            _money('credits', zero_default=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_earnings_ledgers_id', 'earnings_ledgers', ['id'])
        op.create_index('ix_earnings_ledgers_creator_id', 'earnings_ledgers', ['creator_id'], unique=True)

    if 'ledger_entries' not in existing_tables:
        op.create_table(
            'ledger_entries',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('creator_id', sa.String(length=64), nullable=False),
            sa.Column('transaction_id', sa.Integer(), nullable=False),
            _money('amount_delta'),
            sa.Column('balance', sa.String(length=20), nullable=False),
            sa.Column('bucket', sa.String(length=30), nullable=False),
            sa.Column('reason', sa.String(length=20), nullable=False),
            _money('penalty_amount', zero_default=True),
            sa.Column('underflow', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id']),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_ledger_entries_id', 'ledger_entries', ['id'])
        op.create_index('ix_ledger_entries_creator_id', 'ledger_entries', ['creator_id'])
        op.create_index('ix_ledger_entries_transaction_id', 'ledger_entries', ['transaction_id'])
        op.create_index('ix_ledger_entries_created_at', 'ledger_entries', ['created_at'])
        op.create_index('ix_ledger_entries_creator_created', 'ledger_entries', ['creator_id', 'created_at'])
        op.create_index('ix_ledger_entries_transaction_reason', 'ledger_entries', ['transaction_id', 'reason'])

    if 'processor_events' not in existing_tables:
        op.create_table(
            'processor_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('processor_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_kind', sa.String(length=50), nullable=False),
            sa.Column('processor_transaction_id', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='applied'),
            sa.Column('result', sa.JSON(), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_processor_events_id', 'processor_events', ['id'])
        op.create_index('ix_processor_events_processor_event_id', 'processor_events',
                        ['processor_event_id'], unique=True)
        op.create_index('ix_processor_events_event_kind', 'processor_events', ['event_kind'])
        op.create_index('ix_processor_events_processor_transaction_id', 'processor_events',
                        ['processor_transaction_id'])
        op.create_index('ix_processor_events_status', 'processor_events', ['status'])

    if 'anomalies' not in existing_tables:
        op.create_table(
            'anomalies',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('processor_event_id', sa.String(length=255), nullable=True),
            sa.Column('error_type', sa.String(length=50), nullable=False),
            sa.Column('severity', sa.String(length=20), nullable=False),
            sa.Column('message', sa.Text(), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='open'),
            sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('last_retry_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_anomalies_id', 'anomalies', ['id'])
        op.create_index('ix_anomalies_processor_event_id', 'anomalies', ['processor_event_id'])
        op.create_index('ix_anomalies_error_type', 'anomalies', ['error_type'])
        op.create_index('ix_anomalies_status', 'anomalies', ['status'])


def downgrade() -> None:
    # Financial records: downgrade drops everything, only for throwaway databases
    for table in ('anomalies', 'processor_events', 'ledger_entries', 'earnings_ledgers',
                  'billing_records', 'transactions', 'subscriptions'):
        op.drop_table(table)
