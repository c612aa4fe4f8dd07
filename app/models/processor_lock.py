from sqlalchemy import Boolean, Column, DateTime, String

from app.core.utils import utcnow
from app.database import Base


class ProcessorLock(Base):
    """
    Named lease guarding queue draining.

    The auto-drain toggle lives on the same row so that "is auto-drain on"
    and "who is draining" are read and written together.
    """

    __tablename__ = "processor_locks"

    name = Column(String(64), primary_key=True)
    holder_id = Column(String(64), nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    auto_drain_enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<ProcessorLock(name={self.name}, holder={self.holder_id}, expires_at={self.expires_at})>"
