from typing import Dict, Optional

from pydantic import Field

from inventory_sync.schemas.base import CamelModel


class SyncConfig(CamelModel):
    """Process-wide tunable synchronization state."""
    enabled: bool = Field(..., description="Whether cycles run at all")
    auto_update_on_sale: bool = Field(..., description="Push stock to inventory when a sale completes")
    sync_interval: int = Field(..., gt=0, description="Periodic cycle interval in milliseconds")
    last_sync: Optional[str] = Field(None, description="ISO timestamp of the last successful cycle")


class FullSyncConfig(SyncConfig):
    connection_status: str = "not_checked"
    all_settings: Dict[str, Optional[str]] = Field(default_factory=dict)
