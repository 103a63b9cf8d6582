"""Initial marketplace schema: catalog, orders, balance ledger, commissions

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

This migration adds:
1. Users with payout details and referral attributes
2. Products and per-variant stock (optimistic version column on both)
3. Orders with stock reservation expiry and frozen order lines
4. Balance accounts and the append-only balance transaction ledger
5. Referral commissions
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. USERS
    # ==========================================================================
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False),
        sa.Column('account_number', sa.String(length=64), nullable=True),
        sa.Column('identification_number', sa.String(length=32), nullable=True),
        sa.Column('beneficiary_bank_code', sa.String(length=16), nullable=True),
        sa.Column('sales_ref_code', sa.String(length=32), nullable=True),
        sa.Column('commission_rate_bps', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sa.UniqueConstraint('sales_ref_code'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index('ix_users_role', ['role'], unique=False)

    # ==========================================================================
    # 2. CATALOG
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('count_in_stock', sa.Integer(), nullable=False),
        sa.Column('delivery_type', sa.String(length=16), nullable=False),
        sa.Column('min_delivery_days', sa.Integer(), nullable=True),
        sa.Column('max_delivery_days', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('count_in_stock >= 0', name='ck_products_stock_nonnegative'),
        sa.ForeignKeyConstraint(['seller_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.create_index('ix_products_seller', ['seller_id'], unique=False)

    op.create_table('product_variants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('size', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('color', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('age_group', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('stock', sa.Integer(), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('stock >= 0', name='ck_variants_stock_nonnegative'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'size', 'color', 'age_group', name='uq_variants_product_attrs'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('product_variants', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_product_variants_product_id'), ['product_id'], unique=False)

    # ==========================================================================
    # 3. ORDERS
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('is_guest', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('guest_email', sa.String(length=255), nullable=True),
        sa.Column('guest_name', sa.String(length=255), nullable=True),
        sa.Column('guest_phone', sa.String(length=64), nullable=True),
        sa.Column('shipping_details', sa.JSON(), nullable=True),
        sa.Column('payment_method', sa.String(length=64), nullable=True),
        sa.Column('items_price_cents', sa.Integer(), nullable=False),
        sa.Column('shipping_price_cents', sa.Integer(), nullable=False),
        sa.Column('tax_price_cents', sa.Integer(), nullable=False),
        sa.Column('total_price_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('status_reason', sa.String(length=255), nullable=True),
        sa.Column('is_paid', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_result', sa.JSON(), nullable=True),
        sa.Column('is_delivered', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stock_reservation_expires', sa.DateTime(timezone=True), nullable=True),
        sa.Column('external_order_id', sa.String(length=128), nullable=True),
        sa.Column('sales_ref_code', sa.String(length=32), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_order_id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index('ix_orders_status_expires', ['status', 'stock_reservation_expires'], unique=False)
        batch_op.create_index('ix_orders_user', ['user_id'], unique=False)

    op.create_table('order_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('size', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('color', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('age_group', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('delivery_type', sa.String(length=16), nullable=False),
        sa.Column('min_delivery_days', sa.Integer(), nullable=True),
        sa.Column('max_delivery_days', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['seller_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('order_lines', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_order_lines_order_id'), ['order_id'], unique=False)
        batch_op.create_index('ix_order_lines_seller', ['seller_id'], unique=False)

    # ==========================================================================
    # 4. BALANCE LEDGER
    # ==========================================================================
    op.create_table('balance_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False),
        sa.Column('ledger', sa.String(length=16), nullable=False),
        sa.Column('available_cents', sa.Integer(), nullable=False),
        sa.Column('pending_cents', sa.Integer(), nullable=False),
        sa.Column('total_earnings_cents', sa.Integer(), nullable=False),
        sa.Column('total_withdrawn_cents', sa.Integer(), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('pending_cents >= 0', name='ck_balance_accounts_pending_nonnegative'),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id', 'ledger', name='uq_balance_accounts_owner_ledger'),
        sqlite_autoincrement=True
    )

    op.create_table('balance_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False),
        sa.Column('ledger', sa.String(length=16), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('order_line_id', sa.Integer(), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('description', sa.String(length=512), nullable=True),
        sa.Column('gross_cents', sa.Integer(), nullable=True),
        sa.Column('platform_fee_cents', sa.Integer(), nullable=True),
        sa.Column('delivery_fee_cents', sa.Integer(), nullable=True),
        sa.Column('rate_bps', sa.Integer(), nullable=True),
        sa.Column('bank_document_key', sa.String(length=64), nullable=True),
        sa.Column('bank_document_id', sa.String(length=64), nullable=True),
        sa.Column('failure_reason', sa.String(length=512), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['balance_accounts.id'], ),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['order_line_id'], ['order_lines.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_line_id', 'kind', name='uq_balance_tx_line_kind'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('balance_transactions', schema=None) as batch_op:
        batch_op.create_index('ix_balance_tx_account_created', ['account_id', 'created_at'], unique=False)
        batch_op.create_index('ix_balance_tx_kind', ['kind'], unique=False)
        batch_op.create_index('ix_balance_tx_order', ['order_id'], unique=False)
        batch_op.create_index(
            'uq_balance_tx_order_ledger_kind', ['order_id', 'ledger', 'kind'], unique=True,
            sqlite_where=sa.text("ledger = 'COMMISSION'"),
            postgresql_where=sa.text("ledger = 'COMMISSION'"),
        )
        batch_op.create_index(batch_op.f('ix_balance_transactions_owner_id'), ['owner_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_balance_transactions_bank_document_key'), ['bank_document_key'], unique=False)

    # ==========================================================================
    # 5. COMMISSIONS
    # ==========================================================================
    op.create_table('commissions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('guest_email', sa.String(length=255), nullable=True),
        sa.Column('sales_ref_code', sa.String(length=32), nullable=False),
        sa.Column('order_total_cents', sa.Integer(), nullable=False),
        sa.Column('rate_bps', sa.Integer(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_by_transaction_id', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['customer_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['paid_by_transaction_id'], ['balance_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', name='uq_commissions_order'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('commissions', schema=None) as batch_op:
        batch_op.create_index('ix_commissions_owner_status_created', ['owner_id', 'status', 'created_at'], unique=False)


def downgrade():
    with op.batch_alter_table('commissions', schema=None) as batch_op:
        batch_op.drop_index('ix_commissions_owner_status_created')
    op.drop_table('commissions')

    with op.batch_alter_table('balance_transactions', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_balance_transactions_bank_document_key'))
        batch_op.drop_index(batch_op.f('ix_balance_transactions_owner_id'))
        batch_op.drop_index('uq_balance_tx_order_ledger_kind')
        batch_op.drop_index('ix_balance_tx_order')
        batch_op.drop_index('ix_balance_tx_kind')
        batch_op.drop_index('ix_balance_tx_account_created')
    op.drop_table('balance_transactions')
    op.drop_table('balance_accounts')

    with op.batch_alter_table('order_lines', schema=None) as batch_op:
        batch_op.drop_index('ix_order_lines_seller')
        batch_op.drop_index(batch_op.f('ix_order_lines_order_id'))
    op.drop_table('order_lines')

    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.drop_index('ix_orders_user')
        batch_op.drop_index('ix_orders_status_expires')
    op.drop_table('orders')

    with op.batch_alter_table('product_variants', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_product_variants_product_id'))
    op.drop_table('product_variants')

    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.drop_index('ix_products_seller')
    op.drop_table('products')

    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.drop_index('ix_users_role')
    op.drop_table('users')
