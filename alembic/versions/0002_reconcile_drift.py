"""reconciliation drift tracking on marketplace listings

Revision ID: 0002_reconcile_drift
Revises: 0001_initial_sync_schema
Create Date: 2026-10-17 14:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0002_reconcile_drift'
down_revision: Union[str, None] = '0001_initial_sync_schema'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table('marketplace_listings') as batch_op:
        batch_op.add_column(sa.Column('last_reconciled_at', sa.DateTime(timezone=True), nullable=True))
        batch_op.add_column(
            sa.Column('drift_detected', sa.Boolean(), nullable=False, server_default=sa.false())
        )
        batch_op.add_column(sa.Column('drift_detected_at', sa.DateTime(timezone=True), nullable=True))
        batch_op.add_column(sa.Column('drift_details', sa.JSON(), nullable=True))
        batch_op.create_index('ix_marketplace_listings_drift_detected', ['drift_detected'])


def downgrade() -> None:
    with op.batch_alter_table('marketplace_listings') as batch_op:
        batch_op.drop_index('ix_marketplace_listings_drift_detected')
        batch_op.drop_column('drift_details')
        batch_op.drop_column('drift_detected_at')
        batch_op.drop_column('drift_detected')
        batch_op.drop_column('last_reconciled_at')
