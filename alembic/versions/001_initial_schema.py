"""Initial schema - products, stock ledger, locks, idempotency, orders, webhooks, audit

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sku', sa.String(length=100), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('location', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('stock_quantity >= 0', name='ck_products_stock_non_negative'),
    )
    op.create_index('ix_products_sku', 'products', ['sku'], unique=True)

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('marketplace', sa.String(length=50), nullable=False),
        sa.Column('marketplace_order_id', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('observed_status', sa.String(length=20), nullable=True),
        sa.Column('raw_status', sa.String(length=100), nullable=True),
        sa.Column('order_date', sa.DateTime(), nullable=True),
        sa.Column('total_amount', sa.Float(), nullable=True),
        sa.Column('stock_debited_at', sa.DateTime(), nullable=True),
        sa.Column('stock_credited_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('marketplace', 'marketplace_order_id', name='uq_orders_marketplace_order'),
    )
    op.create_index('ix_orders_marketplace', 'orders', ['marketplace'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=True),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])

    op.create_table(
        'stock_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('old_stock', sa.Integer(), nullable=False),
        sa.Column('new_stock', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('reference', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_stock_logs_product_id', 'stock_logs', ['product_id'])
    op.create_index('ix_stock_logs_order_id', 'stock_logs', ['order_id'])
    op.create_index('ix_stock_logs_type', 'stock_logs', ['type'])
    op.create_index('ix_stock_logs_created_at', 'stock_logs', ['created_at'])
    op.create_index('ix_stock_logs_product_order_quantity', 'stock_logs', ['product_id', 'order_id', 'quantity'])

    op.create_table(
        'stock_locks',
        sa.Column('product_id', sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column('locked_by', sa.String(length=100), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_stock_locks_expires_at', 'stock_locks', ['expires_at'])

    op.create_table(
        'idempotency_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('key', sa.String(length=255), nullable=False, unique=True),
        sa.Column('result', JSON_TYPE, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_idempotency_records_expires_at', 'idempotency_records', ['expires_at'])

    op.create_table(
        'product_mappings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('marketplace', sa.String(length=50), nullable=False),
        sa.Column('remote_sku', sa.String(length=100), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('sync_stock', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('marketplace', 'remote_sku', name='uq_product_mappings_marketplace_sku'),
    )
    op.create_index('ix_product_mappings_product_id', 'product_mappings', ['product_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('marketplace', sa.String(length=50), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('payload', JSON_TYPE, nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('marketplace', 'event_type', 'event_id', name='uq_webhook_events_delivery'),
    )
    op.create_index('ix_webhook_events_marketplace', 'webhook_events', ['marketplace'])
    op.create_index('ix_webhook_events_status', 'webhook_events', ['status'])

    op.create_table(
        'activity_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('resource', sa.String(length=50), nullable=False),
        sa.Column('resource_id', sa.String(length=100), nullable=True),
        sa.Column('details', JSON_TYPE, nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('error_code', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_activity_log_user_id', 'activity_log', ['user_id'])
    op.create_index('ix_activity_log_action', 'activity_log', ['action'])
    op.create_index('ix_activity_log_resource', 'activity_log', ['resource'])
    op.create_index('ix_activity_log_resource_id', 'activity_log', ['resource_id'])
    op.create_index('ix_activity_log_created_at', 'activity_log', ['created_at'])


def downgrade() -> None:
    op.drop_table('activity_log')
    op.drop_table('webhook_events')
    op.drop_table('product_mappings')
    op.drop_table('idempotency_records')
    op.drop_table('stock_locks')
    op.drop_table('stock_logs')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('products')
