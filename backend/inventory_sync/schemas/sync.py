from datetime import datetime
from typing import Any, List, Literal, Optional, Union

from pydantic import Field

from inventory_sync.constants.error_kinds import SyncErrorKind
from inventory_sync.models.sync_record import SyncStatus
from inventory_sync.schemas.base import CamelModel


class UserContext(CamelModel):
    """Who triggered a cycle; absent for system-triggered syncs."""
    id: Optional[Union[int, str]] = None
    username: Optional[str] = None


class ConnectionStatus(CamelModel):
    connected: bool
    message: str


class SyncRecordResponse(CamelModel):
    id: int
    entity_type: str
    entity_id: str
    sync_type: str
    sync_direction: str
    status: str
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    payload: Optional[dict] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    performed_by_id: Optional[str] = None
    performed_by_username: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FieldDiff(CamelModel):
    field: str
    pos_value: Any = None
    inventory_value: Any = None
    authority: Literal["pos", "inventory"]


class ProductSyncResult(CamelModel):
    inventory_id: int
    product_id: Optional[int] = None
    action: str = Field(..., description="created, updated, linked, unchanged, skipped or failed")
    changes: List[FieldDiff] = Field(default_factory=list)
    success: bool = True
    error: Optional[str] = None


class ProductReconcileSummary(CamelModel):
    created: int = 0
    updated: int = 0
    linked: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0


class SyncResult(CamelModel):
    """Outcome of a cycle or maintenance operation.

    ``error_kind`` is None exactly when ``success`` is True.
    """
    success: bool
    message: str
    error_kind: Optional[SyncErrorKind] = None
    status: Optional[SyncStatus] = None
    record_ids: List[int] = Field(default_factory=list)
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    data: Any = None

    @classmethod
    def ok(cls, message: str, **kwargs) -> "SyncResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def failure(cls, kind: SyncErrorKind, message: str, **kwargs) -> "SyncResult":
        return cls(success=False, error_kind=kind, message=message, **kwargs)
