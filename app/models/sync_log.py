# app/models/sync_log.py
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text

from app.core.utils import utcnow
from app.database import Base


class SyncLog(Base):
    """
    Audit log of sync operations: pushes, reconciliation outcomes,
    duplicate removals, waterfall decrements and rule applications.
    """
    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True)
    store_key = Column(String(64), nullable=True, index=True)
    marketplace = Column(String(32), nullable=True, index=True)
    sku = Column(String(128), nullable=True, index=True)
    inventory_item_id = Column(Integer, nullable=True, index=True)

    operation = Column(String(64), nullable=False, index=True)  # e.g. 'push', 'reconcile', 'duplicate_removed'
    dry_run = Column(Boolean, nullable=False, default=False)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    success = Column(Boolean, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return (f"<SyncLog(id={self.id}, op='{self.operation}', item={self.inventory_item_id}, "
                f"success={self.success})>")
