"""Retry policy for failed and partial sync records."""

import logging
from datetime import datetime, timedelta
from typing import AsyncContextManager, Awaitable, Callable, Optional

from inventory_sync.constants.error_kinds import SyncErrorKind, explain_error
from inventory_sync.exceptions import RetryNotAllowedError, SyncInProgressError, SyncRecordNotFoundError
from inventory_sync.models.sync_record import RETRYABLE_STATUSES, SyncRecord, SyncStatus
from inventory_sync.schemas.sync import SyncResult
from inventory_sync.services.connection_probe import ConnectionProbe
from inventory_sync.services.sync_record_store import SyncRecordStore
from inventory_sync.utils.clock import utcnow

log = logging.getLogger(__name__)

ReplayFn = Callable[[SyncRecord], Awaitable[SyncResult]]
GuardFn = Callable[[str], AsyncContextManager]


class RetryScheduler:
    """
    Decides which records are retried and when.

    Backoff is ``min(base * 2**retry_count, max)`` seconds. Records that
    reached ``max_retries`` keep their status and get no next_retry_at until
    reset_failed_syncs() clears their bookkeeping.
    """

    def __init__(
        self,
        store: SyncRecordStore,
        probe: ConnectionProbe,
        replay: ReplayFn,
        guard: GuardFn,
        max_retries: int = 5,
        base_delay_seconds: int = 300,
        max_delay_seconds: int = 7200,
    ):
        if base_delay_seconds <= 0:
            raise ValueError("Retry base delay must be positive")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("Retry max delay must not be smaller than the base delay")
        self.store = store
        self.probe = probe
        self.replay = replay
        self.guard = guard
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    def compute_backoff(self, retry_count: int) -> int:
        """Delay in seconds before the next attempt after ``retry_count`` retries."""
        return min(self.base_delay_seconds * (2 ** max(retry_count, 0)), self.max_delay_seconds)

    def next_retry_at(self, retry_count: int, now: Optional[datetime] = None) -> Optional[datetime]:
        """None once the record is at the retry ceiling."""
        if retry_count >= self.max_retries:
            return None
        return (now or utcnow()) + timedelta(seconds=self.compute_backoff(retry_count))

    def is_eligible(self, record: SyncRecord) -> bool:
        return record.status in RETRYABLE_STATUSES and record.retry_count < self.max_retries

    async def _retry_one(self, record: SyncRecord) -> SyncResult:
        attempt = self.store.begin_retry_attempt(record.id)
        return await self.replay(attempt)

    async def force_retry(self, sync_id: int) -> SyncResult:
        """Re-run one failed/partial record now, ignoring its next_retry_at."""
        try:
            record = self.store.get(int(sync_id))
        except (SyncRecordNotFoundError, TypeError, ValueError) as e:
            return SyncResult.failure(SyncErrorKind.NOT_FOUND, explain_error(SyncErrorKind.NOT_FOUND, {"detail": str(e)}))

        try:
            if record.status not in RETRYABLE_STATUSES:
                raise RetryNotAllowedError(f"Sync record {record.id} has status '{record.status}' and cannot be retried")
            if record.retry_count >= self.max_retries:
                raise RetryNotAllowedError(
                    f"Sync record {record.id} reached the retry limit ({self.max_retries}); reset it first"
                )
        except RetryNotAllowedError as e:
            log.warning(str(e))
            return SyncResult.failure(SyncErrorKind.VALIDATION, explain_error(SyncErrorKind.VALIDATION, {"detail": str(e)}))

        try:
            async with self.guard(f"force retry #{record.id}"):
                connection = await self.probe.test_connection()
                if not connection.connected:
                    return SyncResult.failure(
                        SyncErrorKind.CONNECTIVITY,
                        explain_error(SyncErrorKind.CONNECTIVITY, {"detail": connection.message}),
                    )
                log.info(f"Force retrying sync record #{record.id}")
                return await self._retry_one(record)
        except SyncInProgressError:
            return SyncResult.failure(
                SyncErrorKind.CONCURRENCY_CONFLICT, explain_error(SyncErrorKind.CONCURRENCY_CONFLICT, {})
            )

    async def retry_pending_syncs(self) -> SyncResult:
        """Run every due retry one after the other."""
        due = self.store.get_due_retries(self.max_retries)
        if not due:
            return SyncResult.ok("No pending syncs to retry", data={"retried": 0, "succeeded": 0, "failed": 0, "results": []})

        try:
            async with self.guard("retry pending syncs"):
                connection = await self.probe.test_connection()
                if not connection.connected:
                    return SyncResult.failure(
                        SyncErrorKind.CONNECTIVITY,
                        explain_error(SyncErrorKind.CONNECTIVITY, {"detail": connection.message}),
                    )

                log.info(f"Retrying {len(due)} pending sync records")
                results = []
                for record in due:
                    result = await self._retry_one(record)
                    results.append({
                        "syncId": record.id,
                        "success": result.success,
                        "status": result.status.value if result.status else None,
                        "message": result.message,
                    })
        except SyncInProgressError:
            return SyncResult.failure(
                SyncErrorKind.CONCURRENCY_CONFLICT, explain_error(SyncErrorKind.CONCURRENCY_CONFLICT, {})
            )

        succeeded = sum(1 for r in results if r["status"] == SyncStatus.SUCCESS.value)
        return SyncResult.ok(
            f"Retried {len(results)} syncs: {succeeded} succeeded, {len(results) - succeeded} still failing",
            record_ids=[r["syncId"] for r in results],
            data={"retried": len(results), "succeeded": succeeded, "failed": len(results) - succeeded, "results": results},
        )

    def reset_failed_syncs(self, entity_type: Optional[str] = None) -> int:
        return self.store.reset_failed_syncs(entity_type)

    def clean_old_records(self, days_to_keep: int = 30) -> int:
        if days_to_keep < 0:
            raise ValueError("daysToKeep must not be negative")
        return self.store.clean_old_records(days_to_keep)
