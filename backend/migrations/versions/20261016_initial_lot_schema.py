"""initial lot schema

Revision ID: 20261016_lot_schema
Revises:
Create Date: 2026-10-16 00:00:00.000000

Creates the batch-tracked stock schema:
- products: catalog stand-in (barcode, active flag)
- lots: physical batches with current/reserved quantities
- lot_movements: append-only ledger, one row per quantity change
- offline_sales: idempotency records for replayed offline sales
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261016_lot_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # products
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('requires_prescription', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('barcode', name='uq_products_barcode'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # lots: 0 <= reserved_quantity <= current_quantity <= initial_quantity
    # ============================================================================
    op.create_table(
        'lots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('lot_number', sa.String(length=50), nullable=False),
        sa.Column('lot_barcode', sa.String(length=64), nullable=True),

        sa.Column('initial_quantity', sa.Integer(), nullable=False),
        sa.Column('current_quantity', sa.Integer(), nullable=False),
        sa.Column('reserved_quantity', sa.Integer(), nullable=False, server_default='0'),

        sa.Column('manufacture_date', sa.Date(), nullable=False),
        sa.Column('expiration_date', sa.Date(), nullable=False),

        sa.Column('unit_cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),

        # Optimistic locking; bumped by every conditional quantity update
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),

        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'lot_number', name='uq_lots_product_lot_number'),
        sa.UniqueConstraint('lot_barcode', name='uq_lots_lot_barcode'),
        sa.CheckConstraint('reserved_quantity >= 0', name='ck_lots_reserved_nonneg'),
        sa.CheckConstraint('reserved_quantity <= current_quantity', name='ck_lots_reserved_le_current'),
        sa.CheckConstraint('current_quantity <= initial_quantity', name='ck_lots_current_le_initial'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_lots_product_id', 'lots', ['product_id'])
    op.create_index('ix_lots_supplier_id', 'lots', ['supplier_id'])
    op.create_index('ix_lots_product_expiration', 'lots', ['product_id', 'expiration_date'])
    op.create_index('ix_lots_active_expiration', 'lots', ['is_active', 'expiration_date'])

    # ============================================================================
    # lot_movements: append-only ledger
    # ============================================================================
    # SUM(current_delta) per lot == lots.current_quantity
    # SUM(reserved_delta) per lot == lots.reserved_quantity
    # ============================================================================
    op.create_table(
        'lot_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('lot_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),

        # ENTRY, RESERVE, RELEASE, CONSUME, ADJUST, EXPIRE, RETURN
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('current_delta', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved_delta', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_after', sa.Integer(), nullable=False),
        sa.Column('reserved_after', sa.Integer(), nullable=False),

        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('actor', sa.String(length=64), nullable=False),
        sa.Column('sale_ref', sa.String(length=64), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['lot_id'], ['lots.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity > 0', name='ck_lot_movements_quantity_pos'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_lot_movements_lot_id', 'lot_movements', ['lot_id'])
    op.create_index('ix_lot_movements_product_id', 'lot_movements', ['product_id'])
    op.create_index('ix_lot_movements_kind', 'lot_movements', ['kind'])
    op.create_index('ix_lot_movements_sale_ref', 'lot_movements', ['sale_ref'])
    op.create_index('ix_lot_movements_occurred_at', 'lot_movements', ['occurred_at'])
    op.create_index('ix_lot_movements_lot_occurred', 'lot_movements', ['lot_id', 'occurred_at'])

    # ============================================================================
    # offline_sales: idempotency keys for offline replay
    # ============================================================================
    op.create_table(
        'offline_sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('integrity_hash', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('client_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('submitted_by', sa.String(length=64), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('first_seen_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_by', sa.String(length=64), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sale_id', name='uq_offline_sales_sale_id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_offline_sales_status', 'offline_sales', ['status'])


def downgrade():
    op.drop_index('ix_offline_sales_status', table_name='offline_sales')
    op.drop_table('offline_sales')

    for name in (
        'ix_lot_movements_lot_occurred',
        'ix_lot_movements_occurred_at',
        'ix_lot_movements_sale_ref',
        'ix_lot_movements_kind',
        'ix_lot_movements_product_id',
        'ix_lot_movements_lot_id',
    ):
        op.drop_index(name, table_name='lot_movements')
    op.drop_table('lot_movements')

    for name in (
        'ix_lots_active_expiration',
        'ix_lots_product_expiration',
        'ix_lots_supplier_id',
        'ix_lots_product_id',
    ):
        op.drop_index(name, table_name='lots')
    op.drop_table('lots')

    op.drop_table('products')
