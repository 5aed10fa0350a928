"""add profile billing and guest checkout tables

Revision ID: 202501010900
Revises: None (initial migration)
Create Date: 2025-01-01 09:00:00.000000

This migration creates the core tables for:
- Profiles (one per Supabase auth user, with the primary Stripe customer)
- Stripe customers (tracking table of every customer linked to a user)
- Subscriptions (read copy synced from Stripe)
- Guest sessions (checkouts completed before signup)
- Reconciliation logs (append-only audit trail)
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic
revision = '202501010900'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list:
    return [
        sa.Column(
            'created_at',
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.Column(
            'updated_at',
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # Ensure citext extension for case-insensitive emails
    op.execute('CREATE EXTENSION IF NOT EXISTS citext')

    # =========================================================================
    # Profiles - one per auth user
    # =========================================================================
    op.create_table(
        'profiles',
        sa.Column('id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('email', postgresql.CITEXT(), nullable=False),
        sa.Column('full_name', sa.Text(), nullable=True),
        sa.Column('stripe_customer_id', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_profiles_user_id', 'profiles', ['user_id'], unique=True)
    op.create_index('ix_profiles_stripe_customer_id', 'profiles', ['stripe_customer_id'])

    # =========================================================================
    # Stripe customers - every customer ever linked to a user
    # =========================================================================
    op.create_table(
        'stripe_customers',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('stripe_customer_id', sa.Text(), nullable=False),
        sa.Column('email', postgresql.CITEXT(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'user_id', 'stripe_customer_id',
            name='stripe_customers_user_customer_uniq',
        ),
    )
    op.create_index('ix_stripe_customers_user_id', 'stripe_customers', ['user_id'])
    op.create_index(
        'ix_stripe_customers_stripe_customer_id',
        'stripe_customers',
        ['stripe_customer_id'],
    )

    # =========================================================================
    # Subscriptions - read copy of Stripe state
    # =========================================================================
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('profile_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('stripe_customer_id', sa.Text(), nullable=False),
        sa.Column('stripe_subscription_id', sa.Text(), nullable=False),
        sa.Column('stripe_price_id', sa.Text(), server_default='', nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('plan_name', sa.Text(), nullable=False),
        sa.Column('interval', sa.Text(), server_default='month', nullable=False),
        sa.Column('unit_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('currency', sa.Text(), server_default='usd', nullable=False),
        sa.Column('current_period_start', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('current_period_end', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('trial_end', postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), server_default='false', nullable=False),
        sa.Column(
            'metadata',
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['profile_id'], ['profiles.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('stripe_subscription_id'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    # =========================================================================
    # Guest sessions - checkouts awaiting reconciliation
    # =========================================================================
    op.create_table(
        'guest_sessions',
        sa.Column('session_id', sa.Text(), nullable=False),
        sa.Column('stripe_customer_id', sa.Text(), nullable=False),
        sa.Column('subscription_id', sa.Text(), nullable=True),
        sa.Column('customer_email', postgresql.CITEXT(), nullable=False),
        sa.Column('plan_name', sa.Text(), nullable=True),
        sa.Column('price_id', sa.Text(), nullable=True),
        sa.Column('payment_status', sa.Text(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=True),
        sa.Column('currency', sa.Text(), nullable=True),
        sa.Column(
            'metadata',
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('expires_at', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('consumed', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('consumed_by_user_id', postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column('consumed_at', postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('session_id'),
    )
    op.create_index('ix_guest_sessions_stripe_customer_id', 'guest_sessions', ['stripe_customer_id'])
    op.create_index('ix_guest_sessions_customer_email', 'guest_sessions', ['customer_email'])
    op.create_index('ix_guest_sessions_expires_at', 'guest_sessions', ['expires_at'])

    # =========================================================================
    # Reconciliation logs - append-only audit trail
    # =========================================================================
    op.create_table(
        'reconciliation_logs',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('operation_type', sa.Text(), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('session_id', sa.Text(), nullable=False),
        sa.Column('stripe_customer_id', sa.Text(), nullable=True),
        sa.Column('subscription_id', sa.Text(), nullable=True),
        sa.Column('email', postgresql.CITEXT(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column(
            'additional_data',
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            'created_at',
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'reconciliation_logs_user_time_idx',
        'reconciliation_logs',
        ['user_id', 'created_at'],
    )


def downgrade() -> None:
    op.drop_index('reconciliation_logs_user_time_idx', table_name='reconciliation_logs')
    op.drop_table('reconciliation_logs')

    op.drop_index('ix_guest_sessions_expires_at', table_name='guest_sessions')
    op.drop_index('ix_guest_sessions_customer_email', table_name='guest_sessions')
    op.drop_index('ix_guest_sessions_stripe_customer_id', table_name='guest_sessions')
    op.drop_table('guest_sessions')

    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_stripe_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')

    op.drop_index('ix_stripe_customers_stripe_customer_id', table_name='stripe_customers')
    op.drop_index('ix_stripe_customers_user_id', table_name='stripe_customers')
    op.drop_table('stripe_customers')

    op.drop_index('ix_profiles_stripe_customer_id', table_name='profiles')
    op.drop_index('ix_profiles_user_id', table_name='profiles')
    op.drop_table('profiles')

    # Note: citext extension intentionally left installed
