"""initial sync engine schema

Revision ID: 0001_initial_sync_schema
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_initial_sync_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_JOB_CLAUSE = sa.text("status IN ('queued', 'processing')")


def upgrade() -> None:
    op.create_table(
        'inventory_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('store_key', sa.String(length=64), nullable=False, index=True),
        sa.Column('location_key', sa.String(length=255), nullable=True, index=True),
        sa.Column('sku', sa.String(length=128), nullable=True, index=True),
        sa.Column('natural_key', sa.String(length=128), nullable=True, index=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('item_type', sa.String(length=32), nullable=True),
        sa.Column('grade', sa.String(length=32), nullable=True),
        sa.Column('brand_title', sa.String(length=255), nullable=True),
        sa.Column('main_category', sa.String(length=128), nullable=True),
        sa.Column('sub_category', sa.String(length=128), nullable=True),
        sa.Column('subject', sa.String(length=255), nullable=True),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('sold_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column('deleted_reason', sa.Text(), nullable=True),
    )

    op.create_table(
        'marketplace_listings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('inventory_item_id', sa.Integer(),
                  sa.ForeignKey('inventory_items.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('marketplace', sa.String(length=32), nullable=False, index=True),
        sa.Column('listing_ref', sa.String(length=255), nullable=True, index=True),
        sa.Column('product_ref', sa.String(length=255), nullable=True),
        sa.Column('variant_ref', sa.String(length=255), nullable=True),
        sa.Column('inventory_item_ref', sa.String(length=255), nullable=True),
        sa.Column('location_ref', sa.String(length=255), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=True),
        sa.Column('sync_status', sa.String(length=32), nullable=False, server_default='pending', index=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('removed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('inventory_item_id', 'marketplace', name='uq_marketplace_listing_item'),
    )

    op.create_table(
        'inventory_aggregates',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('store_key', sa.String(length=64), nullable=False, index=True),
        sa.Column('marketplace', sa.String(length=32), nullable=False, index=True),
        sa.Column('sku', sa.String(length=128), nullable=False, index=True),
        sa.Column('total_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('location_quantities', sa.JSON(), nullable=False),
        sa.Column('marketplace_quantity', sa.Integer(), nullable=True),
        sa.Column('needs_sync', sa.Boolean(), nullable=False, server_default=sa.false(), index=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('store_key', 'marketplace', 'sku', name='uq_inventory_aggregate_scope'),
    )

    op.create_table(
        'location_priorities',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('store_key', sa.String(length=64), nullable=False, index=True),
        sa.Column('location_key', sa.String(length=255), nullable=False),
        sa.Column('location_name', sa.String(length=255), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('store_key', 'location_key', name='uq_location_priority'),
    )

    op.create_table(
        'sync_queue',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('inventory_item_id', sa.Integer(),
                  sa.ForeignKey('inventory_items.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('marketplace', sa.String(length=32), nullable=False, index=True),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='queued', index=True),
        sa.Column('queue_position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('retry_after', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_type', sa.String(length=32), nullable=True, index=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('processor_id', sa.String(length=64), nullable=True),
        sa.Column('processor_heartbeat', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dead_lettered_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        'uq_sync_queue_active_item',
        'sync_queue',
        ['inventory_item_id', 'marketplace'],
        unique=True,
        postgresql_where=ACTIVE_JOB_CLAUSE,
        sqlite_where=ACTIVE_JOB_CLAUSE,
    )
    op.create_index('ix_sync_queue_claim', 'sync_queue', ['status', 'queue_position', 'created_at'])

    op.create_table(
        'sync_dead_letters',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('original_job_id', sa.Integer(), nullable=False, index=True),
        sa.Column('inventory_item_id', sa.Integer(), nullable=False, index=True),
        sa.Column('marketplace', sa.String(length=32), nullable=False, index=True),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('error_type', sa.String(length=32), nullable=True, index=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_context', sa.JSON(), nullable=True),
        sa.Column('item_snapshot', sa.JSON(), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
    )

    op.create_table(
        'sync_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('store_key', sa.String(length=64), nullable=False, index=True),
        sa.Column('marketplace', sa.String(length=32), nullable=False, index=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('rule_type', sa.String(length=16), nullable=False, server_default='include'),
        sa.Column('category_match', sa.JSON(), nullable=False),
        sa.Column('brand_match', sa.JSON(), nullable=False),
        sa.Column('min_price', sa.Float(), nullable=True),
        sa.Column('max_price', sa.Float(), nullable=True),
        sa.Column('graded_only', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        sa.Column('auto_queue', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'processor_locks',
        sa.Column('name', sa.String(length=64), primary_key=True),
        sa.Column('holder_id', sa.String(length=64), nullable=True),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_drain_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'sync_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('store_key', sa.String(length=64), nullable=True, index=True),
        sa.Column('marketplace', sa.String(length=32), nullable=True, index=True),
        sa.Column('sku', sa.String(length=128), nullable=True, index=True),
        sa.Column('inventory_item_id', sa.Integer(), nullable=True, index=True),
        sa.Column('operation', sa.String(length=64), nullable=False, index=True),
        sa.Column('dry_run', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('before_state', sa.JSON(), nullable=True),
        sa.Column('after_state', sa.JSON(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, index=True),
    )


def downgrade() -> None:
    op.drop_table('sync_log')
    op.drop_table('processor_locks')
    op.drop_table('sync_rules')
    op.drop_table('sync_dead_letters')
    op.drop_index('ix_sync_queue_claim', table_name='sync_queue')
    op.drop_index('uq_sync_queue_active_item', table_name='sync_queue')
    op.drop_table('sync_queue')
    op.drop_table('location_priorities')
    op.drop_table('inventory_aggregates')
    op.drop_table('marketplace_listings')
    op.drop_table('inventory_items')
