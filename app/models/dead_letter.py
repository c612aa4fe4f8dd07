from sqlalchemy import Column, DateTime, Integer, JSON, String, Text

from app.core.utils import utcnow
from app.database import Base


class DeadLetterEntry(Base):
    """
    Archive of a sync job that exhausted its retries or failed permanently.

    Everything except ``resolved_at`` / ``resolution_notes`` is written once.
    """

    __tablename__ = "sync_dead_letters"

    id = Column(Integer, primary_key=True)
    original_job_id = Column(Integer, nullable=False, index=True)
    inventory_item_id = Column(Integer, nullable=False, index=True)
    marketplace = Column(String(32), nullable=False, index=True)
    action = Column(String(16), nullable=False)

    error_type = Column(String(32), nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    failure_context = Column(JSON, nullable=True)
    item_snapshot = Column(JSON, nullable=True)

    archived_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True, index=True)
    resolution_notes = Column(Text, nullable=True)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def __repr__(self) -> str:
        return (f"<DeadLetterEntry(id={self.id}, job={self.original_job_id}, item={self.inventory_item_id}, "
                f"error_type={self.error_type}, resolved={self.is_resolved})>")
