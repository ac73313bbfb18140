"""Database models."""

from inventory_sync.models.product import Product
from inventory_sync.models.sync_record import SyncRecord, SyncStatus, SyncType, SyncDirection
from inventory_sync.models.sync_setting import SyncSetting

__all__ = [
    "Product",
    "SyncRecord",
    "SyncStatus",
    "SyncType",
    "SyncDirection",
    "SyncSetting",
]
