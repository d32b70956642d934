"""create_settlement_tables

Revision ID: 4c1e9b2a7d30
Revises:
Create Date: 2026-10-12 14:08:51.204117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c1e9b2a7d30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('users',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('display_name', sa.String(length=200), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=30), nullable=True),
        sa.Column('push_endpoint', sa.Text(), nullable=True),
        sa.Column('email_order_updates', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('sms_order_updates', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('push_enabled', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('vendors',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('user_id', sa.String(length=50), nullable=False),
        sa.Column('business_name', sa.String(length=200), nullable=False),
        sa.Column('payment_account_id', sa.String(length=100), nullable=True),
        sa.Column('payments_enabled', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.UniqueConstraint('payment_account_id')
    )

    op.create_table('listings',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('vendor_id', sa.String(length=50), nullable=False),
        sa.Column('title', sa.String(length=300), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=True),
        sa.CheckConstraint('quantity IS NULL OR quantity >= 0', name='ck_listings_quantity_non_negative'),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_listings_vendor', 'listings', ['vendor_id'], unique=False)

    op.create_table('orders',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('order_number', sa.String(length=30), nullable=False),
        sa.Column('buyer_id', sa.String(length=50), nullable=False),
        sa.Column('vertical', sa.String(length=50), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(length=20), nullable=False, server_default='processor'),
        sa.Column('payment_reference', sa.String(length=100), nullable=True),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('buyer_fee_cents', sa.Integer(), nullable=False),
        sa.Column('tip_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tip_on_platform_fee_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['buyer_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number')
    )
    op.create_index('idx_orders_buyer', 'orders', ['buyer_id'], unique=False)
    op.create_index('idx_orders_status', 'orders', ['status'], unique=False)

    op.create_table('order_items',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('order_id', sa.String(length=50), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('listing_id', sa.String(length=50), nullable=False),
        sa.Column('vendor_id', sa.String(length=50), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.String(length=20), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('refund_amount_cents', sa.Integer(), nullable=True),
        sa.Column('cancellation_fee_cents', sa.Integer(), nullable=True),
        sa.Column('platform_fee_share_cents', sa.Integer(), nullable=True),
        sa.Column('vendor_fee_share_cents', sa.Integer(), nullable=True),
        sa.Column('inventory_restored_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['listing_id'], ['listings.id']),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_order_items_order', 'order_items', ['order_id'], unique=False)
    op.create_index('idx_order_items_vendor_status', 'order_items', ['vendor_id', 'status'], unique=False)
    op.create_index('idx_order_items_status_expires', 'order_items', ['status', 'expires_at'], unique=False)

    op.create_table('vendor_fee_ledger',
        sa.Column('seq', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('vendor_id', sa.String(length=50), nullable=False),
        sa.Column('order_id', sa.String(length=50), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('entry_type', sa.String(length=30), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('paid', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('seq'),
        sa.UniqueConstraint('id')
    )
    op.create_index('idx_fee_ledger_vendor_paid', 'vendor_fee_ledger', ['vendor_id', 'paid', 'created_at'], unique=False)
    op.create_index('idx_fee_ledger_vendor_order', 'vendor_fee_ledger', ['vendor_id', 'order_id'], unique=False)
    op.create_index(
        'uq_fee_ledger_order_charge', 'vendor_fee_ledger', ['vendor_id', 'order_id'], unique=True,
        sqlite_where=sa.text("entry_type = 'charge' AND order_id IS NOT NULL"),
        postgresql_where=sa.text("entry_type = 'charge' AND order_id IS NOT NULL")
    )

    op.create_table('vendor_payouts',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('vendor_id', sa.String(length=50), nullable=False),
        sa.Column('order_id', sa.String(length=50), nullable=False),
        sa.Column('order_item_id', sa.String(length=50), nullable=False),
        sa.Column('kind', sa.String(length=30), nullable=False),
        sa.Column('gross_cents', sa.Integer(), nullable=False),
        sa.Column('deduction_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('transfer_reference', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['order_item_id'], ['order_items.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_payouts_item_kind', 'vendor_payouts', ['order_item_id', 'kind'], unique=True)
    op.create_index('idx_payouts_vendor', 'vendor_payouts', ['vendor_id'], unique=False)
    op.create_index('idx_payouts_transfer', 'vendor_payouts', ['transfer_reference'], unique=False)

    op.create_table('notifications',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('user_id', sa.String(length=50), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.Column('urgency', sa.String(length=20), nullable=False),
        sa.Column('audience', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('action_url', sa.String(length=500), nullable=False),
        sa.Column('channels', sa.JSON(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_notifications_user_created', 'notifications', ['user_id', 'created_at'], unique=False)
    op.create_index('idx_notifications_user_unread', 'notifications', ['user_id', 'read_at'], unique=False)

    op.create_table('processed_webhook_events',
        sa.Column('event_id', sa.String(length=100), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('event_id')
    )


def downgrade() -> None:
    op.drop_table('processed_webhook_events')
    op.drop_index('idx_notifications_user_unread', table_name='notifications')
    op.drop_index('idx_notifications_user_created', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('idx_payouts_transfer', table_name='vendor_payouts')
    op.drop_index('idx_payouts_vendor', table_name='vendor_payouts')
    op.drop_index('idx_payouts_item_kind', table_name='vendor_payouts')
    op.drop_table('vendor_payouts')
    op.drop_index('uq_fee_ledger_order_charge', table_name='vendor_fee_ledger')
    op.drop_index('idx_fee_ledger_vendor_order', table_name='vendor_fee_ledger')
    op.drop_index('idx_fee_ledger_vendor_paid', table_name='vendor_fee_ledger')
    op.drop_table('vendor_fee_ledger')
    op.drop_index('idx_order_items_status_expires', table_name='order_items')
    op.drop_index('idx_order_items_vendor_status', table_name='order_items')
    op.drop_index('idx_order_items_order', table_name='order_items')
    op.drop_table('order_items')
    op.drop_index('idx_orders_status', table_name='orders')
    op.drop_index('idx_orders_buyer', table_name='orders')
    op.drop_table('orders')
    op.drop_index('idx_listings_vendor', table_name='listings')
    op.drop_table('listings')
    op.drop_table('vendors')
    op.drop_table('users')
