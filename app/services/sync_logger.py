# app/services/sync_logger.py
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.utils import utcnow
from app.models.sync_log import SyncLog

logger = logging.getLogger(__name__)


class SyncLogger:
    """
    Writes the sync audit trail.

    Every push, reconciliation outcome, duplicate removal, waterfall decrement
    and rule application leaves one SyncLog row behind. Rows are flushed, never
    committed here: they belong to the caller's transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log_operation(
        self,
        operation: str,
        *,
        store_key: Optional[str] = None,
        marketplace: Optional[str] = None,
        sku: Optional[str] = None,
        inventory_item_id: Optional[int] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        success: Optional[bool] = True,
        error_message: Optional[str] = None,
        dry_run: bool = False,
    ) -> Optional[SyncLog]:
        """
        Record one sync operation.

        Args:
            operation: What happened (push, reconcile:<action>, duplicate_removed, ...)
            before: State snapshot before the change
            after: State snapshot after the change
            success: Whether the operation succeeded
            dry_run: True when the operation was only simulated

        Returns:
            The created SyncLog instance, or None if it could not be written
        """
        try:
            entry = SyncLog(
                operation=operation,
                store_key=store_key,
                marketplace=marketplace,
                sku=sku,
                inventory_item_id=inventory_item_id,
                before_state=before,
                after_state=after,
                success=success,
                error_message=error_message[:2000] if error_message else None,
                dry_run=dry_run,
                created_at=utcnow(),
            )
            self.db.add(entry)
            await self.db.flush()

            logger.debug(
                f"Sync logged: {operation} item={inventory_item_id} "
                f"(marketplace: {marketplace or 'N/A'}, success: {success})"
            )
            return entry

        except Exception as e:
            logger.error(f"Error logging sync operation: {str(e)}")
            # Audit logging should not interrupt the main flow
            return None

    async def log_push(
        self,
        *,
        store_key: str,
        marketplace: str,
        sku: Optional[str],
        inventory_item_id: int,
        action: str,
        quantity: Optional[int],
        remote_id: Optional[str] = None,
    ) -> Optional[SyncLog]:
        """Log a successful marketplace mutation made by the queue."""
        return await self.log_operation(
            f"queue:{action}",
            store_key=store_key,
            marketplace=marketplace,
            sku=sku,
            inventory_item_id=inventory_item_id,
            after={"quantity": quantity, "remote_id": remote_id},
        )
