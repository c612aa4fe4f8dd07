from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, text

from app.core.enums import SyncJobStatus
from app.core.utils import utcnow
from app.database import Base

_ACTIVE_JOB_CLAUSE = text("status IN ('queued', 'processing')")


class SyncQueueJob(Base):
    """
    One pending marketplace mutation for an inventory item.

    Lifecycle: queued -> processing -> done, or processing -> error which either
    goes back to queued with ``retry_after`` set or stays in error with
    ``dead_lettered_at`` stamped once a dead letter entry has been archived.
    """

    __tablename__ = "sync_queue"
    __table_args__ = (
        # At most one queued/processing job per item and marketplace
        Index(
            "uq_sync_queue_active_item",
            "inventory_item_id",
            "marketplace",
            unique=True,
            postgresql_where=_ACTIVE_JOB_CLAUSE,
            sqlite_where=_ACTIVE_JOB_CLAUSE,
        ),
        Index("ix_sync_queue_claim", "status", "queue_position", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    inventory_item_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    marketplace = Column(String(32), nullable=False, index=True)
    action = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=SyncJobStatus.QUEUED.value, index=True)
    queue_position = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    retry_after = Column(DateTime(timezone=True), nullable=True)

    error_type = Column(String(32), nullable=True, index=True)
    error_message = Column(Text, nullable=True)

    processor_id = Column(String(64), nullable=True)
    processor_heartbeat = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    dead_lettered_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status in SyncJobStatus.active()

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def __repr__(self) -> str:
        return (f"<SyncQueueJob(id={self.id}, item={self.inventory_item_id}, marketplace={self.marketplace}, "
                f"action={self.action}, status={self.status}, retries={self.retry_count}/{self.max_retries})>")
