"""Initial schema: products, movement ledger, collaborators, sync queue

Revision ID: 20261017_initial
Revises:
Create Date: 2026-10-17

This migration adds:
1. products and categories (master data + cached quantity projection)
2. movements (append-only ledger)
3. collaborators and collaborator_periodicities
4. pending_operations and id_mappings (sync queue)
5. audit_events
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261017_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. PRODUCTS / CATEGORIES
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=120), nullable=False),
        sa.Column('unit', sa.String(length=8), nullable=False),
        sa.Column('location', sa.String(length=120), nullable=True),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('min_stock', sa.Float(), nullable=False),
        sa.Column('tag', sa.String(length=64), nullable=True),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('lessor', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku'),
        sa.UniqueConstraint('tag'),
        sa.UniqueConstraint('barcode'),
    )
    op.create_index('ix_products_category_name', 'products', ['category', 'name'])
    op.create_index('ix_products_active', 'products', ['is_active'])

    op.create_table('categories',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    # ==========================================================================
    # 2. MOVEMENTS
    # ==========================================================================
    op.create_table('movements',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('quantity_before', sa.Float(), nullable=False),
        sa.Column('quantity_after', sa.Float(), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('actor', sa.String(length=120), nullable=False),
        sa.Column('collaborator_code', sa.String(length=64), nullable=True),
        sa.Column('handled_by_code', sa.String(length=64), nullable=True),
        sa.Column('tag', sa.String(length=64), nullable=True),
        sa.Column('lessor', sa.String(length=255), nullable=True),
        sa.Column('unit_price', sa.Float(), nullable=True),
        sa.Column('total_value', sa.Float(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('purpose', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], onupdate='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_movements_code', 'movements', ['code'])
    op.create_index('ix_movements_seq', 'movements', ['seq'])
    op.create_index('ix_movements_product_id', 'movements', ['product_id'])
    op.create_index('ix_movements_kind', 'movements', ['kind'])
    op.create_index('ix_movements_occurred_at', 'movements', ['occurred_at'])
    op.create_index('ix_movements_collaborator_code', 'movements', ['collaborator_code'])
    op.create_index('ix_movements_status', 'movements', ['status'])
    op.create_index('ix_movements_product_occurred', 'movements', ['product_id', 'occurred_at'])
    op.create_index('ix_movements_collaborator_occurred', 'movements', ['collaborator_code', 'occurred_at'])

    # ==========================================================================
    # 3. COLLABORATORS / PERIODICITIES
    # ==========================================================================
    op.create_table('collaborators',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=120), nullable=True),
        sa.Column('contract', sa.String(length=120), nullable=True),
        sa.Column('is_storekeeper', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('can_handle_deliveries', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_collaborators_code', 'collaborators', ['code'], unique=True)

    op.create_table('collaborator_periodicities',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('collaborator_code', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('max_days', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], onupdate='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('collaborator_code', 'product_id', name='uq_periodicity_pair'),
    )
    op.create_index('ix_collaborator_periodicities_collaborator_code', 'collaborator_periodicities', ['collaborator_code'])
    op.create_index('ix_collaborator_periodicities_product_id', 'collaborator_periodicities', ['product_id'])

    # ==========================================================================
    # 4. SYNC QUEUE
    # ==========================================================================
    op.create_table('pending_operations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('collection', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('remote_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_pending_operations_collection', 'pending_operations', ['collection'])
    op.create_index('ix_pending_operations_status', 'pending_operations', ['status'])

    op.create_table('id_mappings',
        sa.Column('temp_id', sa.String(length=64), nullable=False),
        sa.Column('collection', sa.String(length=64), nullable=False),
        sa.Column('permanent_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('temp_id'),
    )
    op.create_index('ix_id_mappings_permanent_id', 'id_mappings', ['permanent_id'])

    # ==========================================================================
    # 5. AUDIT
    # ==========================================================================
    op.create_table('audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation', sa.String(length=32), nullable=False),
        sa.Column('collection', sa.String(length=64), nullable=False),
        sa.Column('record_id', sa.String(length=64), nullable=True),
        sa.Column('before', sa.JSON(), nullable=True),
        sa.Column('after', sa.JSON(), nullable=True),
        sa.Column('actor', sa.String(length=120), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_audit_events_operation', 'audit_events', ['operation'])
    op.create_index('ix_audit_events_collection', 'audit_events', ['collection'])
    op.create_index('ix_audit_events_record_id', 'audit_events', ['record_id'])
    op.create_index('ix_audit_events_occurred_at', 'audit_events', ['occurred_at'])


def downgrade():
    op.drop_table('audit_events')
    op.drop_table('id_mappings')
    op.drop_table('pending_operations')
    op.drop_table('collaborator_periodicities')
    op.drop_table('collaborators')
    op.drop_table('movements')
    op.drop_table('categories')
    op.drop_table('products')
