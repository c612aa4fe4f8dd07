from .inventory_item import InventoryItem, MarketplaceListing
from .inventory_aggregate import InventoryAggregate, LocationPriority
from .sync_queue import SyncQueueJob
from .dead_letter import DeadLetterEntry
from .sync_rule import SyncRule
from .processor_lock import ProcessorLock
from .sync_log import SyncLog

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'InventoryItem',
    'MarketplaceListing',
    'InventoryAggregate',
    'LocationPriority',
    'SyncQueueJob',
    'DeadLetterEntry',
    'SyncRule',
    'ProcessorLock',
    'SyncLog',
]
