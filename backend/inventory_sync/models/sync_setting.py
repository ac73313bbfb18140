"""Key/value settings backing the typed SyncConfig."""

from sqlalchemy import Column, Integer, String, DateTime, Text

from inventory_sync.database import Base
from inventory_sync.utils.clock import utcnow


class SyncSetting(Base):
    """Persisted synchronization setting."""

    __tablename__ = "sync_settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), nullable=False, unique=True, index=True)
    value = Column(Text, nullable=True)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<SyncSetting(key='{self.key}', value='{self.value}')>"
