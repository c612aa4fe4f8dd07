"""
Named processor lease, one row in ``processor_locks``.

acquire only succeeds when the row is free or its lease has expired, so at
expiry the last acquirer wins. The previous holder finds out when its next
renew matches no row.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.utils import as_utc, utcnow
from app.models.processor_lock import ProcessorLock

logger = logging.getLogger(__name__)

SYNC_PROCESSOR_LOCK = "sync-processor"


class ProcessorLease:
    def __init__(self, db: AsyncSession, name: str = SYNC_PROCESSOR_LOCK, ttl_seconds: int = 600):
        self.db = db
        self.name = name
        self.ttl_seconds = ttl_seconds

    async def _get_row(self) -> Optional[ProcessorLock]:
        stmt = select(ProcessorLock).where(ProcessorLock.name == self.name)
        return (await self.db.execute(stmt.execution_options(populate_existing=True))).scalars().first()

    async def _ensure_row(self) -> ProcessorLock:
        row = await self._get_row()
        if row is not None:
            return row
        self.db.add(ProcessorLock(name=self.name, auto_drain_enabled=False))
        try:
            await self.db.commit()
        except IntegrityError:
            # Created concurrently, which is fine
            await self.db.rollback()
        return await self._get_row()

    async def acquire(self, holder_id: str) -> bool:
        """Take the lease if it is free or expired. Fails fast otherwise."""
        await self._ensure_row()
        now = utcnow()
        result = await self.db.execute(
            update(ProcessorLock)
            .where(
                ProcessorLock.name == self.name,
                or_(
                    ProcessorLock.holder_id.is_(None),
                    ProcessorLock.expires_at.is_(None),
                    ProcessorLock.expires_at < now,
                ),
            )
            .values(holder_id=holder_id, acquired_at=now, expires_at=now + timedelta(seconds=self.ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        acquired = result.rowcount == 1
        if acquired:
            logger.info(f"{holder_id} acquired lease '{self.name}'")
        else:
            logger.info(f"{holder_id} could not acquire lease '{self.name}': held by another worker")
        return acquired

    async def renew(self, holder_id: str) -> bool:
        """Extend our lease. False means it expired and someone else took it."""
        now = utcnow()
        result = await self.db.execute(
            update(ProcessorLock)
            .where(ProcessorLock.name == self.name, ProcessorLock.holder_id == holder_id)
            .values(expires_at=now + timedelta(seconds=self.ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            logger.warning(f"{holder_id} lost lease '{self.name}'")
            return False
        return True

    async def release(self, holder_id: str) -> bool:
        result = await self.db.execute(
            update(ProcessorLock)
            .where(ProcessorLock.name == self.name, ProcessorLock.holder_id == holder_id)
            .values(holder_id=None, acquired_at=None, expires_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def set_auto_drain(self, enabled: bool) -> bool:
        await self._ensure_row()
        await self.db.execute(
            update(ProcessorLock)
            .where(ProcessorLock.name == self.name)
            .values(auto_drain_enabled=enabled)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info(f"Auto-drain {'enabled' if enabled else 'disabled'}")
        return enabled

    async def status(self) -> Dict[str, Any]:
        row = await self._get_row()
        if row is None:
            return {"name": self.name, "held": False, "holder_id": None, "acquired_at": None,
                    "expires_at": None, "auto_drain_enabled": False}
        expires_at = as_utc(row.expires_at)
        held = row.holder_id is not None and expires_at is not None and expires_at > utcnow()
        return {
            "name": self.name,
            "held": held,
            "holder_id": row.holder_id if held else None,
            "acquired_at": as_utc(row.acquired_at) if held else None,
            "expires_at": expires_at if held else None,
            "auto_drain_enabled": bool(row.auto_drain_enabled),
        }
