"""Sync record model: one row per synchronization attempt."""

from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index

from inventory_sync.database import Base
from inventory_sync.utils.clock import utcnow


class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


TERMINAL_STATUSES = (SyncStatus.SUCCESS.value, SyncStatus.FAILED.value, SyncStatus.PARTIAL.value)
RETRYABLE_STATUSES = (SyncStatus.FAILED.value, SyncStatus.PARTIAL.value)


class SyncType(str, Enum):
    PRODUCTS = "products"
    STOCK = "stock"
    MANUAL = "manual"
    SALE_TRIGGERED = "sale-triggered"


class SyncDirection(str, Enum):
    POS_TO_INVENTORY = "pos-to-inventory"
    INVENTORY_TO_POS = "inventory-to-pos"


class SyncRecord(Base):
    """Audit trail of every synchronization attempt with retry bookkeeping."""

    __tablename__ = "sync_records"

    id = Column(Integer, primary_key=True, index=True)

    # What was synchronized
    entity_type = Column(String(50), nullable=False)  # 'ProductBatch', 'StockBatch', 'Sale'
    entity_id = Column(String(100), nullable=False)
    sync_type = Column(String(30), nullable=False)
    sync_direction = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value)

    # Statistics
    items_processed = Column(Integer, default=0, nullable=False)
    items_succeeded = Column(Integer, default=0, nullable=False)
    items_failed = Column(Integer, default=0, nullable=False)

    # Execution timestamps (naive UTC)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    # Request snapshot for replay/audit
    payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    # Retry bookkeeping
    retry_count = Column(Integer, default=0, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)

    # Attribution, null for system-triggered syncs
    performed_by_id = Column(String(100), nullable=True)
    performed_by_username = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_sync_records_entity', 'entity_type', 'entity_id'),
        Index('idx_sync_records_status_retry', 'status', 'next_retry_at'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<SyncRecord(id={self.id}, type='{self.sync_type}', entity='{self.entity_type}:{self.entity_id}', status='{self.status}')>"
