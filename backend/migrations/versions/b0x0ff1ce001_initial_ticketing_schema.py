"""initial ticketing schema

Revision ID: b0x0ff1ce001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the ticketing core:
- users / session_tokens: identity, role and bearer sessions
- events: the columns the ticketing core reads (organizer, date, approval)
- ticket_types: inventory counters with CHECK 0 <= sold <= quantity
- promotions: discount codes with CHECK used <= max_uses
- orders / order_items: purchase documents; order items double as bookings
- payment_transactions: provider attempts keyed by (provider, transaction_id)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b0x0ff1ce001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable,
                     server_default=sa.text('CURRENT_TIMESTAMP') if not nullable else None)


def upgrade():
    # ============================================================================
    # users / session_tokens
    # ============================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        _timestamp('created_at'),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("role IN ('attendee', 'organizer', 'admin')", name='ck_users_role'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=255), nullable=False),
        _timestamp('created_at'),
        _timestamp('last_used_at'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_session_tokens_user_id', 'session_tokens', ['user_id'])
    op.create_index('ix_session_tokens_token_hash', 'session_tokens', ['token_hash'], unique=True)
    op.create_index('ix_session_tokens_expires_at', 'session_tokens', ['expires_at'])
    op.create_index('ix_session_tokens_is_revoked', 'session_tokens', ['is_revoked'])
    op.create_index('ix_session_tokens_user_active', 'session_tokens', ['user_id', 'is_revoked'])

    # ============================================================================
    # events
    # ============================================================================
    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organizer_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('event_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('approval_status', sa.String(length=16), nullable=False),
        _timestamp('created_at'),
        sa.CheckConstraint(
            "approval_status IN ('draft', 'pending', 'approved', 'rejected', 'cancelled')",
            name='ck_events_approval_status',
        ),
        sa.ForeignKeyConstraint(['organizer_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_events_organizer_id', 'events', ['organizer_id'])
    op.create_index('ix_events_event_date', 'events', ['event_date'])
    op.create_index('ix_events_approval_status', 'events', ['approval_status'])

    # ============================================================================
    # ticket_types: 0 <= sold <= quantity
    # ============================================================================
    op.create_table(
        'ticket_types',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('sold', sa.Integer(), nullable=False),
        sa.Column('min_per_order', sa.Integer(), nullable=False),
        sa.Column('max_per_order', sa.Integer(), nullable=True),
        sa.Column('sales_start_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sales_end_at', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.CheckConstraint('sold >= 0', name='ck_ticket_types_sold_non_negative'),
        sa.CheckConstraint('sold <= quantity', name='ck_ticket_types_sold_within_quantity'),
        sa.CheckConstraint('price_cents >= 0', name='ck_ticket_types_price_non_negative'),
        sa.CheckConstraint('min_per_order >= 1', name='ck_ticket_types_min_per_order'),
        sa.ForeignKeyConstraint(['event_id'], ['events.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_ticket_types_event_id', 'ticket_types', ['event_id'])

    # ============================================================================
    # promotions: used <= max_uses
    # ============================================================================
    op.create_table(
        'promotions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('discount_type', sa.String(length=16), nullable=False),
        sa.Column('discount_value', sa.Integer(), nullable=False),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('used', sa.Integer(), nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.CheckConstraint('used >= 0', name='ck_promotions_used_non_negative'),
        sa.CheckConstraint('max_uses IS NULL OR used <= max_uses', name='ck_promotions_used_within_max'),
        sa.CheckConstraint('discount_value >= 0', name='ck_promotions_discount_non_negative'),
        sa.CheckConstraint("discount_type IN ('percentage', 'fixed')", name='ck_promotions_discount_type'),
        sa.ForeignKeyConstraint(['event_id'], ['events.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_promotions_event_id', 'promotions', ['event_id'])
    op.create_index('ix_promotions_code', 'promotions', ['code'], unique=True)
    op.create_index('ix_promotions_is_active', 'promotions', ['is_active'])

    # ============================================================================
    # orders / order_items
    # ============================================================================
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('reference', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.Integer(), nullable=False),
        sa.Column('promotion_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('discount_amount_cents', sa.Integer(), nullable=False),
        sa.Column('total_amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('promotion_released', sa.Boolean(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('billing_name', sa.String(length=255), nullable=False),
        sa.Column('billing_email', sa.String(length=255), nullable=False),
        sa.Column('billing_address', sa.String(length=512), nullable=True),
        _timestamp('created_at'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_amount_cents', sa.Integer(), nullable=True),
        sa.Column('refund_reason', sa.String(length=255), nullable=True),
        sa.CheckConstraint('discount_amount_cents >= 0', name='ck_orders_discount_non_negative'),
        sa.CheckConstraint('total_amount_cents >= 0', name='ck_orders_total_non_negative'),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'cancelled', 'refunded', 'failed')",
            name='ck_orders_status',
        ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['event_id'], ['events.id']),
        sa.ForeignKeyConstraint(['promotion_id'], ['promotions.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_reference', 'orders', ['reference'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_event_id', 'orders', ['event_id'])
    op.create_index('ix_orders_promotion_id', 'orders', ['promotion_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('ticket_type_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('total_price_cents', sa.Integer(), nullable=False),
        sa.Column('ticket_code', sa.String(length=32), nullable=False),
        sa.Column('attendee_name', sa.String(length=255), nullable=True),
        sa.Column('attendee_email', sa.String(length=255), nullable=True),
        sa.Column('check_in_status', sa.String(length=16), nullable=False),
        sa.Column('checked_in_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('checked_in_by_user_id', sa.Integer(), nullable=True),
        sa.Column('inventory_released', sa.Boolean(), nullable=False),
        _timestamp('created_at'),
        sa.CheckConstraint('quantity >= 1', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint(
            "check_in_status IN ('not_checked', 'checked_in', 'cancelled')",
            name='ck_order_items_check_in_status',
        ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['ticket_type_id'], ['ticket_types.id']),
        sa.ForeignKeyConstraint(['checked_in_by_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_ticket_type_id', 'order_items', ['ticket_type_id'])
    op.create_index('ix_order_items_ticket_code', 'order_items', ['ticket_code'], unique=True)
    op.create_index('ix_order_items_check_in_status', 'order_items', ['check_in_status'])

    # ============================================================================
    # payment_transactions
    # ============================================================================
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('transaction_id', sa.String(length=64), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('checkout_url', sa.String(length=1024), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('refund_reference', sa.String(length=64), nullable=True),
        sa.Column('refunded_amount_cents', sa.Integer(), nullable=True),
        _timestamp('created_at'),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'refunding', 'failed', 'refunded')",
            name='ck_payment_transactions_status',
        ),
        sa.UniqueConstraint('provider', 'transaction_id', name='uq_payment_transactions_provider_txn'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payment_transactions_order_id', 'payment_transactions', ['order_id'])
    op.create_index('ix_payment_transactions_transaction_id', 'payment_transactions', ['transaction_id'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])


def downgrade():
    op.drop_table('payment_transactions')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('promotions')
    op.drop_table('ticket_types')
    op.drop_table('events')
    op.drop_table('session_tokens')
    op.drop_table('users')
