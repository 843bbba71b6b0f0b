"""Initial dairy delivery schema

Revision ID: 20260301_initial
Revises:
Create Date: 2026-03-01

Creates:
1. Tenancy and auth: organizations, users, session_tokens
2. Catalog: addresses, products
3. Orders: orders, order_items
4. Subscriptions: subscriptions, subscription_deliveries
5. Routing: routes, route_stops
6. Billing: invoices, payments, ledger_entries
7. Documents and outbox: document_sequences, domain_events
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20260301_initial'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(with_updated=True):
    cols = [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    ]
    if with_updated:
        cols.append(
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False)
        )
    return cols


def upgrade():
    # ==========================================================================
    # 1. TENANCY & AUTH
    # ==========================================================================
    op.create_table('organizations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('organizations', schema=None) as batch_op:
        batch_op.create_index('ix_organizations_code', ['code'], unique=True)
        batch_op.create_index('ix_organizations_is_active', ['is_active'], unique=False)

    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='user'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('payment_mode', sa.String(length=16), nullable=False, server_default='prepaid'),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        *_timestamps(with_updated=False),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'phone', name='uq_users_org_phone'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index('ix_users_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_users_org_role_status', ['org_id', 'role', 'status'], unique=False)

    op.create_table('session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        *_timestamps(with_updated=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('session_tokens', schema=None) as batch_op:
        batch_op.create_index('ix_session_tokens_token_hash', ['token_hash'], unique=True)
        batch_op.create_index('ix_session_tokens_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_session_tokens_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_session_tokens_expires_at', ['expires_at'], unique=False)
        batch_op.create_index('ix_session_tokens_is_revoked', ['is_revoked'], unique=False)

    # ==========================================================================
    # 2. CATALOG
    # ==========================================================================
    op.create_table('addresses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('label', sa.String(length=32), nullable=True),
        sa.Column('line1', sa.String(length=255), nullable=False),
        sa.Column('line2', sa.String(length=255), nullable=True),
        sa.Column('area', sa.String(length=120), nullable=True),
        sa.Column('city', sa.String(length=120), nullable=False),
        sa.Column('state', sa.String(length=120), nullable=True),
        sa.Column('pincode', sa.String(length=12), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='0'),
        *_timestamps(with_updated=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('addresses', schema=None) as batch_op:
        batch_op.create_index('ix_addresses_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_addresses_area', ['area'], unique=False)

    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('unit', sa.String(length=32), nullable=False, server_default='1L'),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('is_subscribable', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.create_index('ix_products_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_products_org_status', ['org_id', 'status'], unique=False)

    # ==========================================================================
    # 3. INVOICES (referenced by orders and deliveries)
    # ==========================================================================
    op.create_table('invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('invoice_date', sa.Date(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('billing_cycle', sa.String(length=16), nullable=True),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('paid_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('balance_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='draft'),
        sa.Column('line_items', sa.JSON(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'invoice_number', name='uq_invoices_org_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('invoices', schema=None) as batch_op:
        batch_op.create_index('ix_invoices_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_invoices_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_invoices_user_status', ['user_id', 'status'], unique=False)
        batch_op.create_index('ix_invoices_status_due', ['status', 'due_date'], unique=False)

    # ==========================================================================
    # 4. ORDERS
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('address_id', sa.Integer(), nullable=False),
        sa.Column('delivery_date', sa.Date(), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivery_fee_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_mode', sa.String(length=16), nullable=False, server_default='prepaid'),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='pending'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('invoice_id', sa.Integer(), nullable=True),
        sa.Column('charged_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['address_id'], ['addresses.id'], ),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'order_number', name='uq_orders_org_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index('ix_orders_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_orders_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_orders_delivery_date', ['delivery_date'], unique=False)
        batch_op.create_index('ix_orders_status', ['status'], unique=False)
        batch_op.create_index('ix_orders_invoice_id', ['invoice_id'], unique=False)
        batch_op.create_index('ix_orders_org_status_date', ['org_id', 'status', 'delivery_date'], unique=False)

    op.create_table('order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        *_timestamps(with_updated=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('order_items', schema=None) as batch_op:
        batch_op.create_index('ix_order_items_order_id', ['order_id'], unique=False)

    # ==========================================================================
    # 5. SUBSCRIPTIONS
    # ==========================================================================
    op.create_table('subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('address_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('default_quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('billing_cycle', sa.String(length=16), nullable=False, server_default='weekly'),
        sa.Column('delivery_days', sa.JSON(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('payment_mode', sa.String(length=16), nullable=False, server_default='prepaid'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('paused_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['address_id'], ['addresses.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.create_index('ix_subscriptions_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_subscriptions_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_subscriptions_status', ['status'], unique=False)
        batch_op.create_index('ix_subscriptions_org_status', ['org_id', 'status'], unique=False)

    op.create_table('subscription_deliveries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('address_id', sa.Integer(), nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=True),
        sa.Column('delivery_date', sa.Date(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='scheduled'),
        sa.Column('cancel_reason', sa.String(length=64), nullable=True),
        sa.Column('picked_up_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('in_transit_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('proof_type', sa.String(length=16), nullable=True),
        sa.Column('proof_data', sa.Text(), nullable=True),
        sa.Column('delivery_notes', sa.Text(), nullable=True),
        sa.Column('customer_rating', sa.Integer(), nullable=True),
        sa.Column('customer_feedback', sa.Text(), nullable=True),
        sa.Column('invoice_id', sa.Integer(), nullable=True),
        sa.Column('charged_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['address_id'], ['addresses.id'], ),
        sa.ForeignKeyConstraint(['agent_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscription_id', 'delivery_date', name='uq_subscription_deliveries_sub_date'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('subscription_deliveries', schema=None) as batch_op:
        batch_op.create_index('ix_subscription_deliveries_subscription_id', ['subscription_id'], unique=False)
        batch_op.create_index('ix_subscription_deliveries_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_subscription_deliveries_invoice_id', ['invoice_id'], unique=False)
        batch_op.create_index('ix_subscription_deliveries_date_status', ['delivery_date', 'status'], unique=False)
        batch_op.create_index('ix_subscription_deliveries_agent_date', ['agent_id', 'delivery_date'], unique=False)

    # ==========================================================================
    # 6. ROUTES
    # ==========================================================================
    op.create_table('routes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=False),
        sa.Column('route_date', sa.Date(), nullable=False),
        sa.Column('route_name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='planned'),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_distance_km', sa.Float(), nullable=False, server_default='0'),
        sa.Column('estimated_duration_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('depot_location', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['agent_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('agent_id', 'route_date', name='uq_routes_agent_date'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('routes', schema=None) as batch_op:
        batch_op.create_index('ix_routes_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_routes_agent_id', ['agent_id'], unique=False)
        batch_op.create_index('ix_routes_org_date_status', ['org_id', 'route_date', 'status'], unique=False)

    op.create_table('route_stops',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('route_id', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('stop_type', sa.String(length=16), nullable=False),
        sa.Column('subscription_delivery_id', sa.Integer(), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('address_id', sa.Integer(), nullable=False),
        sa.Column('delivery_items', sa.JSON(), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('distance_from_previous_km', sa.Float(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('arrived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_notes', sa.Text(), nullable=True),
        sa.Column('proof_image', sa.String(length=500), nullable=True),
        sa.Column('customer_rating', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('subscription_delivery_id IS NULL OR order_id IS NULL', name='ck_route_stops_single_target'),
        sa.CheckConstraint("stop_type IN ('subscription', 'order')", name='ck_route_stops_stop_type'),
        sa.ForeignKeyConstraint(['route_id'], ['routes.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_delivery_id'], ['subscription_deliveries.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['address_id'], ['addresses.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('route_stops', schema=None) as batch_op:
        batch_op.create_index('ix_route_stops_route_id', ['route_id'], unique=False)
        # One live stop per delivery/order; cancelled stops stay as history
        batch_op.create_index(
            'uq_route_stops_active_delivery', ['subscription_delivery_id'], unique=True,
            sqlite_where=sa.text("status != 'cancelled' AND subscription_delivery_id IS NOT NULL"),
            postgresql_where=sa.text("status != 'cancelled' AND subscription_delivery_id IS NOT NULL"),
        )
        batch_op.create_index(
            'uq_route_stops_active_order', ['order_id'], unique=True,
            sqlite_where=sa.text("status != 'cancelled' AND order_id IS NOT NULL"),
            postgresql_where=sa.text("status != 'cancelled' AND order_id IS NOT NULL"),
        )

    # ==========================================================================
    # 7. PAYMENTS & LEDGER
    # ==========================================================================
    op.create_table('payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=True),
        sa.Column('reference_number', sa.String(length=32), nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=128), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('refunded_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('payment_type', sa.String(length=24), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('refund_of_payment_id', sa.Integer(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ),
        sa.ForeignKeyConstraint(['refund_of_payment_id'], ['payments.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'reference_number', name='uq_payments_org_reference'),
        sa.UniqueConstraint('gateway_payment_id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.create_index('ix_payments_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_payments_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_payments_invoice_id', ['invoice_id'], unique=False)
        batch_op.create_index('ix_payments_refund_of_payment_id', ['refund_of_payment_id'], unique=False)
        batch_op.create_index('ix_payments_user_created', ['user_id', 'created_at'], unique=False)

    op.create_table('ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('entry_type', sa.String(length=8), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('running_balance_cents', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('reference_number', sa.String(length=32), nullable=True),
        sa.Column('invoice_id', sa.Integer(), nullable=True),
        sa.Column('payment_id', sa.Integer(), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('subscription_delivery_id', sa.Integer(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(with_updated=False),
        sa.CheckConstraint('amount_cents > 0', name='ck_ledger_entries_amount_positive'),
        sa.CheckConstraint("entry_type IN ('debit', 'credit')", name='ck_ledger_entries_entry_type'),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['subscription_delivery_id'], ['subscription_deliveries.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'sequence', name='uq_ledger_entries_user_sequence'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('ledger_entries', schema=None) as batch_op:
        batch_op.create_index('ix_ledger_entries_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_ledger_entries_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_ledger_entries_invoice_id', ['invoice_id'], unique=False)
        batch_op.create_index('ix_ledger_entries_payment_id', ['payment_id'], unique=False)
        batch_op.create_index('ix_ledger_entries_order_id', ['order_id'], unique=False)
        batch_op.create_index('ix_ledger_entries_subscription_delivery_id', ['subscription_delivery_id'], unique=False)

    # ==========================================================================
    # 8. DOCUMENT NUMBERING & EVENT OUTBOX
    # ==========================================================================
    op.create_table('document_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(with_updated=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'document_type', name='uq_document_sequences_org_type'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('document_sequences', schema=None) as batch_op:
        batch_op.create_index('ix_document_sequences_org_id', ['org_id'], unique=False)

    op.create_table('domain_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.String(length=255), nullable=True),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(with_updated=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('domain_events', schema=None) as batch_op:
        batch_op.create_index('ix_domain_events_org_id', ['org_id'], unique=False)
        batch_op.create_index('ix_domain_events_event_type', ['event_type'], unique=False)
        batch_op.create_index('ix_domain_events_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_domain_events_undispatched', ['dispatched_at', 'id'], unique=False)


def downgrade():
    for table in (
        'domain_events',
        'document_sequences',
        'ledger_entries',
        'payments',
        'route_stops',
        'routes',
        'subscription_deliveries',
        'subscriptions',
        'order_items',
        'orders',
        'invoices',
        'products',
        'addresses',
        'session_tokens',
        'users',
        'organizations',
    ):
        op.drop_table(table)
