"""Durable log of synchronization attempts."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func, or_
from sqlalchemy.orm import Session, sessionmaker

from inventory_sync.exceptions import SyncRecordNotFoundError
from inventory_sync.models.sync_record import (
    RETRYABLE_STATUSES,
    TERMINAL_STATUSES,
    SyncRecord,
    SyncStatus,
)
from inventory_sync.schemas.sync import UserContext
from inventory_sync.utils.clock import utcnow

log = logging.getLogger(__name__)

TIME_RANGES = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


def derive_status(items_processed: int, items_failed: int) -> SyncStatus:
    """Batch outcome from item counts: no failures, some failures, or all failed."""
    if items_failed <= 0:
        return SyncStatus.SUCCESS
    if items_failed < items_processed:
        return SyncStatus.PARTIAL
    return SyncStatus.FAILED


class SyncRecordStore:
    """
    Persists one SyncRecord per unit of work and its retry metadata.

    Every method opens its own short session so records are committed as soon
    as an outcome is known, independently of the POS-side cycle session.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _session(self) -> Session:
        return self.session_factory()

    def record_start(
        self,
        entity_type: str,
        entity_id: str,
        sync_type: str,
        direction: str,
        payload: Optional[Dict[str, Any]] = None,
        user: Optional[UserContext] = None,
    ) -> SyncRecord:
        """Create a pending record for an accepted unit of work."""
        now = utcnow()
        with self._session() as db:
            record = SyncRecord(
                entity_type=entity_type,
                entity_id=str(entity_id),
                sync_type=sync_type,
                sync_direction=direction,
                status=SyncStatus.PENDING.value,
                payload=payload,
                started_at=now,
                performed_by_id=str(user.id) if user and user.id is not None else None,
                performed_by_username=user.username if user else None,
                created_at=now,
                updated_at=now,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
        log.debug(f"Sync record #{record.id} started: {sync_type} {entity_type}:{entity_id}")
        return record

    def record_outcome(
        self,
        record_id: int,
        items_processed: int,
        items_succeeded: int,
        items_failed: int,
        error_message: Optional[str] = None,
        payload_updates: Optional[Dict[str, Any]] = None,
        next_retry_at: Optional[datetime] = None,
        freeze: bool = False,
    ) -> SyncRecord:
        """
        Move a pending record to its terminal status.

        The status is derived from the counters so that
        ``items_succeeded + items_failed == items_processed`` always holds
        for terminal records. With ``freeze`` an unsuccessful outcome is stored
        as failed with no next retry, whatever the counters say.
        """
        if items_succeeded + items_failed != items_processed:
            raise ValueError(
                f"Inconsistent counters for record {record_id}: "
                f"{items_succeeded} + {items_failed} != {items_processed}"
            )
        if error_message and items_failed == 0:
            # A cycle-level error with no item accounting counts as one failed unit
            items_processed, items_failed = items_processed + 1, 1

        status = derive_status(items_processed, items_failed)
        if freeze and status != SyncStatus.SUCCESS:
            status, next_retry_at = SyncStatus.FAILED, None
        now = utcnow()
        with self._session() as db:
            record = self._get(db, record_id)
            record.status = status.value
            record.items_processed = items_processed
            record.items_succeeded = items_succeeded
            record.items_failed = items_failed
            record.completed_at = now
            record.updated_at = now
            if items_succeeded > 0:
                record.last_synced_at = now
            if status == SyncStatus.SUCCESS:
                record.error_message = None
                record.next_retry_at = None
            else:
                record.error_message = error_message or f"{items_failed} of {items_processed} items failed to sync"
                record.next_retry_at = next_retry_at
            if payload_updates:
                record.payload = {**(record.payload or {}), **payload_updates}
            db.commit()
            db.refresh(record)
        log.info(
            f"Sync record #{record.id} {record.status}: "
            f"{record.items_succeeded}/{record.items_processed} succeeded"
        )
        return record

    def begin_retry_attempt(self, record_id: int) -> SyncRecord:
        """Put a failed/partial record back into pending for one more attempt."""
        now = utcnow()
        with self._session() as db:
            record = self._get(db, record_id)
            record.retry_count = record.retry_count + 1
            record.status = SyncStatus.PENDING.value
            record.started_at = now
            record.completed_at = None
            record.next_retry_at = None
            record.updated_at = now
            db.commit()
            db.refresh(record)
        log.info(f"Retry attempt {record.retry_count} for sync record #{record.id}")
        return record

    def get(self, record_id: int) -> SyncRecord:
        with self._session() as db:
            return self._get(db, record_id)

    @staticmethod
    def _get(db: Session, record_id: int) -> SyncRecord:
        record = db.get(SyncRecord, record_id)
        if record is None:
            raise SyncRecordNotFoundError(f"Sync record {record_id} not found")
        return record

    def get_pending_syncs(self, entity_type: Optional[str] = None, direction: Optional[str] = None) -> List[SyncRecord]:
        """In-flight records plus failed/partial records waiting for a scheduled retry."""
        with self._session() as db:
            q = db.query(SyncRecord).filter(
                or_(
                    SyncRecord.status == SyncStatus.PENDING.value,
                    and_(
                        SyncRecord.status.in_(RETRYABLE_STATUSES),
                        SyncRecord.next_retry_at.isnot(None),
                    ),
                )
            )
            if entity_type:
                q = q.filter(SyncRecord.entity_type == entity_type)
            if direction:
                q = q.filter(SyncRecord.sync_direction == direction)
            return q.order_by(SyncRecord.created_at.asc(), SyncRecord.id.asc()).all()

    def get_due_retries(self, max_retries: int, now: Optional[datetime] = None) -> List[SyncRecord]:
        """Retry-eligible records whose next attempt is due, oldest first."""
        now = now or utcnow()
        with self._session() as db:
            return db.query(SyncRecord).filter(
                SyncRecord.status.in_(RETRYABLE_STATUSES),
                SyncRecord.retry_count < max_retries,
                or_(SyncRecord.next_retry_at.is_(None), SyncRecord.next_retry_at <= now),
            ).order_by(SyncRecord.created_at.asc(), SyncRecord.id.asc()).all()

    def get_sync_history(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None, limit: int = 50) -> List[SyncRecord]:
        with self._session() as db:
            q = db.query(SyncRecord)
            if entity_type:
                q = q.filter(SyncRecord.entity_type == entity_type)
            if entity_id:
                q = q.filter(SyncRecord.entity_id == str(entity_id))
            return q.order_by(SyncRecord.created_at.desc(), SyncRecord.id.desc()).limit(limit).all()

    def get_sync_stats(self, time_range: str = "day") -> Dict[str, Any]:
        """Counts per status grouped by direction and entity type since the range start."""
        start_date = utcnow() - TIME_RANGES.get(time_range, TIME_RANGES["day"])

        def _count(status: SyncStatus):
            return func.sum(case((SyncRecord.status == status.value, 1), else_=0))

        with self._session() as db:
            rows = db.query(
                SyncRecord.sync_direction,
                SyncRecord.entity_type,
                func.count(SyncRecord.id).label("total"),
                _count(SyncStatus.SUCCESS).label("success"),
                _count(SyncStatus.FAILED).label("failed"),
                _count(SyncStatus.PARTIAL).label("partial"),
                _count(SyncStatus.PENDING).label("pending"),
            ).filter(
                SyncRecord.created_at >= start_date
            ).group_by(SyncRecord.sync_direction, SyncRecord.entity_type).all()

        stats = [
            {
                "syncDirection": row.sync_direction,
                "entityType": row.entity_type,
                "total": int(row.total or 0),
                "success": int(row.success or 0),
                "failed": int(row.failed or 0),
                "partial": int(row.partial or 0),
                "pending": int(row.pending or 0),
            }
            for row in rows
        ]
        summary = {
            key: sum(item[key] for item in stats)
            for key in ("total", "success", "failed", "partial", "pending")
        }
        return {
            "timeRange": time_range,
            "startDate": start_date.isoformat(),
            "stats": stats,
            "summary": summary,
        }

    def reset_failed_syncs(self, entity_type: Optional[str] = None) -> int:
        """Clear retry bookkeeping of failed/partial records; statuses stay untouched."""
        with self._session() as db:
            q = db.query(SyncRecord).filter(SyncRecord.status.in_(RETRYABLE_STATUSES))
            if entity_type:
                q = q.filter(SyncRecord.entity_type == entity_type)
            count = q.update(
                {
                    SyncRecord.retry_count: 0,
                    SyncRecord.next_retry_at: None,
                    SyncRecord.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
            db.commit()
        log.info(f"Reset retry state of {count} failed sync records" + (f" for {entity_type}" if entity_type else ""))
        return count

    def clean_old_records(self, days_to_keep: int = 30) -> int:
        """Delete terminal records completed before the cutoff; pending records are kept."""
        cutoff_date = utcnow() - timedelta(days=days_to_keep)
        with self._session() as db:
            deleted = db.query(SyncRecord).filter(
                SyncRecord.status.in_(TERMINAL_STATUSES),
                SyncRecord.completed_at.isnot(None),
                SyncRecord.completed_at < cutoff_date,
            ).delete(synchronize_session=False)
            db.commit()
        log.info(f"Sync record cleanup: deleted {deleted} records completed before {cutoff_date.isoformat()}")
        return deleted
