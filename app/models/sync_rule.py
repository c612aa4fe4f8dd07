from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String

from app.core.enums import RuleType
from app.core.utils import utcnow
from app.database import Base


class SyncRule(Base):
    """Include/exclude predicate deciding whether an item is listed on a marketplace."""

    __tablename__ = "sync_rules"

    id = Column(Integer, primary_key=True)
    store_key = Column(String(64), nullable=False, index=True)
    marketplace = Column(String(32), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    rule_type = Column(String(16), nullable=False, default=RuleType.INCLUDE.value)

    category_match = Column(JSON, nullable=False, default=list)
    brand_match = Column(JSON, nullable=False, default=list)
    min_price = Column(Float, nullable=True)
    max_price = Column(Float, nullable=True)
    graded_only = Column(Boolean, nullable=False, default=False)

    priority = Column(Integer, nullable=False, default=0)  # higher is evaluated first
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    auto_queue = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<SyncRule(id={self.id}, name={self.name}, type={self.rule_type}, priority={self.priority})>"
