"""Orchestrates synchronization cycles between the POS cache and the inventory system."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from inventory_sync.config import Settings
from inventory_sync.connectors.base import BaseInventoryConnector, Warehouse
from inventory_sync.constants.error_kinds import SyncErrorKind, explain_error
from inventory_sync.exceptions import InventoryError, SyncInProgressError
from inventory_sync.models.sync_record import SyncDirection, SyncRecord, SyncStatus, SyncType
from inventory_sync.schemas.stock import SaleData, SaleValidationResult, StockUpdate
from inventory_sync.schemas.sync import SyncRecordResponse, SyncResult, UserContext
from inventory_sync.services.connection_probe import ConnectionProbe
from inventory_sync.services.event_notifier import (
    MANUAL_COMPLETED,
    PRODUCTS_COMPLETED,
    STOCK_COMPLETED,
    EventNotifier,
)
from inventory_sync.services.retry_scheduler import RetryScheduler
from inventory_sync.services.stock_reconciler import StockReconciler
from inventory_sync.services.sync_config import SyncConfigService
from inventory_sync.services.sync_record_store import SyncRecordStore
from inventory_sync.utils.clock import utcnow

log = logging.getLogger(__name__)

RECONCILE_PRODUCTS = "reconcile_products"
PULL_STOCK = "pull_stock"
PUSH_STOCK = "push_stock"

CYCLE_JOB_ID = "inventory_sync_cycle"
RETRY_JOB_ID = "inventory_sync_retry"

EVENT_BY_TYPE = {
    SyncType.MANUAL.value: MANUAL_COMPLETED,
    SyncType.PRODUCTS.value: PRODUCTS_COMPLETED,
}


class CycleOutcome(NamedTuple):
    succeeded: int
    failed: int
    failed_items: Optional[List[Any]]
    result: Dict[str, Any]
    errors: List[str]
    # POS-side follow-up run once the per-item outcome is recorded
    after_record: Optional[Callable[[], Any]] = None


def _batch_id(prefix: str) -> str:
    return f"{prefix}-{utcnow():%Y%m%d%H%M%S%f}"


class SyncCoordinator:
    """
    Engine handle owning the single-flight flag, the timer and the services.

    At most one cycle runs at a time; a second request while one is in
    flight is rejected with a concurrency_conflict result and creates no
    record.
    """

    def __init__(
        self,
        app_settings: Settings,
        session_factory: sessionmaker,
        connector: BaseInventoryConnector,
        notifier: Optional[EventNotifier] = None,
    ):
        self.settings = app_settings
        self.session_factory = session_factory
        self.connector = connector
        self.notifier = notifier or EventNotifier()

        self.store = SyncRecordStore(session_factory)
        self.probe = ConnectionProbe(connector, timeout=app_settings.inventory_timeout_seconds)
        self.reconciler = StockReconciler(
            connector,
            session_factory,
            concurrency=app_settings.bulk_update_concurrency,
            performed_by=app_settings.pos_system_user,
        )
        self.config_service = SyncConfigService(session_factory, app_settings, self.notifier)
        self.retry_scheduler = RetryScheduler(
            self.store,
            self.probe,
            replay=self._replay_record,
            guard=self._single_flight,
            max_retries=app_settings.max_retries,
            base_delay_seconds=app_settings.retry_base_delay_seconds,
            max_delay_seconds=app_settings.retry_max_delay_seconds,
        )

        self.is_syncing = False
        self.current_operation: Optional[str] = None
        self.last_sync_time: Optional[datetime] = None
        self._scheduler: Optional[AsyncIOScheduler] = None

    # ---- single-flight ----

    @asynccontextmanager
    async def _single_flight(self, operation: str):
        # Check and set happen without an await in between
        if self.is_syncing:
            log.info(f"Rejecting {operation}: {self.current_operation} is in progress")
            raise SyncInProgressError(f"{self.current_operation} is in progress")
        self.is_syncing = True
        self.current_operation = operation
        try:
            yield
        finally:
            self.is_syncing = False
            self.current_operation = None

    # ---- timer ----

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.get_job(CYCLE_JOB_ID) is not None

    async def start(self) -> bool:
        """Arm the periodic cycle and retry poll; returns False when sync is disabled."""
        config = self.config_service.get_sync_config()
        if not config.enabled:
            log.info("Sync timer not started: inventory sync disabled by configuration")
            return False

        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        if not self._scheduler.running:
            self._scheduler.start()

        first_run = datetime.now(timezone.utc) + timedelta(seconds=self.settings.initial_sync_delay_seconds)
        self._scheduler.add_job(
            self._scheduled_cycle,
            IntervalTrigger(seconds=config.sync_interval / 1000),
            id=CYCLE_JOB_ID,
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._scheduled_retry,
            IntervalTrigger(seconds=self.settings.retry_poll_seconds),
            id=RETRY_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        log.info(f"Sync timer started. Interval: {config.sync_interval}ms")
        return True

    def stop(self) -> None:
        """Disarm future triggers; a cycle already running completes normally."""
        if self._scheduler is not None:
            for job_id in (CYCLE_JOB_ID, RETRY_JOB_ID):
                if self._scheduler.get_job(job_id):
                    self._scheduler.remove_job(job_id)
        log.info("Sync timer stopped")

    async def restart(self) -> bool:
        self.stop()
        return await self.start()

    def shutdown(self) -> None:
        self.stop()
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log.info("APScheduler shut down successfully")
        self._scheduler = None

    async def _scheduled_cycle(self) -> None:
        if self.is_syncing:
            log.warning("Scheduled sync skipped: previous cycle still active")
            return
        try:
            result = await self.sync_products(trigger="scheduled")
            log.info(f"Scheduled sync finished: {result.message}")
        except Exception as e:
            log.error(f"Scheduled sync failed: {e}", exc_info=True)

    async def _scheduled_retry(self) -> None:
        if self.is_syncing:
            log.debug("Retry poll skipped: a cycle is in progress")
            return
        try:
            result = await self.retry_scheduler.retry_pending_syncs()
            log.debug(f"Retry poll: {result.message}")
        except Exception as e:
            log.error(f"Retry poll failed: {e}", exc_info=True)

    # ---- cycles ----

    async def manual_sync(self, context: Optional[UserContext] = None, options: Optional[Dict[str, Any]] = None) -> SyncResult:
        options = dict(options or {})
        product_ids = options.get("product_ids", options.get("productIds"))
        log.info(f"Manual sync requested by: {context.username if context and context.username else 'system'}")
        return await self._run_cycle(
            sync_type=SyncType.MANUAL,
            direction=SyncDirection.INVENTORY_TO_POS,
            entity_type="ProductBatch",
            entity_id=_batch_id("manual"),
            operation=RECONCILE_PRODUCTS,
            request={"product_ids": product_ids, "options": options},
            context=context,
        )

    async def sync_products(self, context: Optional[UserContext] = None, trigger: str = "manual") -> SyncResult:
        return await self._run_cycle(
            sync_type=SyncType.PRODUCTS,
            direction=SyncDirection.INVENTORY_TO_POS,
            entity_type="ProductBatch",
            entity_id=_batch_id("batch"),
            operation=RECONCILE_PRODUCTS,
            request={"product_ids": None, "trigger": trigger},
            context=context,
        )

    async def sync_products_from_warehouse(self, warehouse_id: int, context: Optional[UserContext] = None) -> SyncResult:
        """Reconcile the POS cache against the products stocked in one warehouse."""
        warehouse_id = int(warehouse_id)
        try:
            warehouse = await self.connector.get_warehouse(warehouse_id)
        except InventoryError as e:
            return SyncResult.failure(SyncErrorKind.CONNECTIVITY, explain_error(SyncErrorKind.CONNECTIVITY, {"detail": str(e)}))
        if warehouse is None:
            return SyncResult.failure(
                SyncErrorKind.NOT_FOUND,
                explain_error(SyncErrorKind.NOT_FOUND, {"detail": f"Warehouse {warehouse_id} not found in inventory"}),
            )

        log.info(f"Warehouse sync requested for {warehouse.name} (#{warehouse_id})")
        return await self._run_cycle(
            sync_type=SyncType.PRODUCTS,
            direction=SyncDirection.INVENTORY_TO_POS,
            entity_type="Warehouse",
            entity_id=str(warehouse_id),
            operation=RECONCILE_PRODUCTS,
            request={"product_ids": None, "warehouse_id": warehouse_id, "trigger": "warehouse"},
            context=context,
        )

    async def get_available_warehouses(self) -> List[Warehouse]:
        return await self.connector.fetch_warehouses()

    async def get_warehouse_sync_status(self, warehouse_id: int) -> Dict[str, Any]:
        warehouse_id = int(warehouse_id)
        connection = await self.probe.test_connection()
        if not connection.connected:
            return {"connected": False, "message": connection.message}

        warehouse = await self.connector.get_warehouse(warehouse_id)
        if warehouse is None:
            raise LookupError(f"Warehouse {warehouse_id} not found in inventory")
        products = await self.connector.fetch_products(warehouse_id=warehouse_id)
        last = self.store.get_sync_history("Warehouse", str(warehouse_id), limit=1)
        return {
            "connected": True,
            "warehouse": warehouse.to_wire(),
            "productCount": len(products),
            "hasProducts": bool(products),
            "lastSync": SyncRecordResponse.model_validate(last[0]).to_wire() if last else None,
        }

    async def validate_sale_items(self, sale_data: SaleData, warehouse_id: Optional[int] = None) -> SaleValidationResult:
        return await self.reconciler.validate_sale_items(sale_data, warehouse_id=warehouse_id)

    async def sync_stock(self, product_ids: Optional[List[int]] = None, context: Optional[UserContext] = None) -> SyncResult:
        inventory_ids = [int(i) for i in (product_ids or [])] or self.reconciler.linked_inventory_ids()
        return await self._run_cycle(
            sync_type=SyncType.STOCK,
            direction=SyncDirection.INVENTORY_TO_POS,
            entity_type="StockBatch",
            entity_id=_batch_id("stock"),
            operation=PULL_STOCK,
            request={"inventory_ids": inventory_ids},
            context=context,
        )

    async def update_stock_from_sale(self, sale_data: SaleData, context: Optional[UserContext] = None) -> SyncResult:
        """Push the stock movements of a completed sale (or refund) to the inventory."""
        config = self.config_service.get_sync_config()
        if not config.enabled or not config.auto_update_on_sale:
            log.debug(f"Sale {sale_data.id}: automatic inventory update disabled")
            return SyncResult.ok("Automatic inventory update on sale is disabled", data={"skipped": True})

        is_refund = sale_data.type == "refund"
        updates = []
        for line in sale_data.items:
            if not line.product.stock_item_id:
                continue
            try:
                inventory_id = int(line.product.stock_item_id)
            except ValueError:
                log.warning(f"Sale {sale_data.id}: product {line.product.id} has invalid stock_item_id {line.product.stock_item_id!r}")
                continue
            updates.append(StockUpdate(
                inventory_id=inventory_id,
                quantity_change=line.quantity if is_refund else -line.quantity,
                action="refund" if is_refund else "sale",
                product_name=line.product.name,
                sale_id=sale_data.id,
                item_id=line.id,
            ))

        if not updates:
            return SyncResult.ok("No inventory-linked items in sale", data={"skipped": True})

        return await self._run_cycle(
            sync_type=SyncType.SALE_TRIGGERED,
            direction=SyncDirection.POS_TO_INVENTORY,
            entity_type="Sale",
            entity_id=str(sale_data.id),
            operation=PUSH_STOCK,
            request={
                "updates": [u.model_dump(mode="json") for u in updates],
                "performed_by": self._performed_by(context),
            },
            context=context,
        )

    async def bulk_update_stock(self, updates: List[StockUpdate], context: Optional[UserContext] = None) -> SyncResult:
        """Operator stock batch; runs even when periodic sync is disabled."""
        return await self._run_cycle(
            sync_type=SyncType.STOCK,
            direction=SyncDirection.POS_TO_INVENTORY,
            entity_type="StockBatch",
            entity_id=_batch_id("stock-update"),
            operation=PUSH_STOCK,
            request={
                "updates": [u.model_dump(mode="json") for u in updates],
                "performed_by": self._performed_by(context),
            },
            context=context,
            require_enabled=False,
        )

    def _performed_by(self, context: Optional[UserContext]) -> str:
        if context and (context.username or context.id):
            return context.username or str(context.id)
        return self.settings.pos_system_user

    async def _run_cycle(
        self,
        *,
        sync_type: SyncType,
        direction: SyncDirection,
        entity_type: str,
        entity_id: str,
        operation: str,
        request: Dict[str, Any],
        context: Optional[UserContext],
        require_enabled: bool = True,
    ) -> SyncResult:
        if require_enabled and not self.config_service.get_sync_config().enabled:
            log.info(f"{sync_type.value} sync skipped: inventory sync disabled")
            return SyncResult.ok("Inventory sync is disabled", data={"skipped": True})

        try:
            async with self._single_flight(f"{sync_type.value} sync"):
                connection = await self.probe.test_connection()
                if not connection.connected:
                    log.warning(f"{sync_type.value} sync aborted: {connection.message}")
                    return SyncResult.failure(
                        SyncErrorKind.CONNECTIVITY,
                        explain_error(SyncErrorKind.CONNECTIVITY, {"detail": connection.message}),
                    )

                record = self.store.record_start(
                    entity_type,
                    entity_id,
                    sync_type.value,
                    direction.value,
                    payload={"operation": operation, "request": request, "failed_items": None, "result": None},
                    user=context,
                )
                result = await self._execute(record)
        except SyncInProgressError:
            return SyncResult.failure(
                SyncErrorKind.CONCURRENCY_CONFLICT, explain_error(SyncErrorKind.CONCURRENCY_CONFLICT, {})
            )

        self.notifier.publish(EVENT_BY_TYPE.get(sync_type.value, STOCK_COMPLETED), result.to_wire())
        return result

    async def _replay_record(self, record: SyncRecord) -> SyncResult:
        """Re-execute a record put back into pending by the retry scheduler."""
        result = await self._execute(record, retry=True)
        self.notifier.publish(STOCK_COMPLETED, result.to_wire())
        return result

    async def _execute(self, record: SyncRecord, retry: bool = False) -> SyncResult:
        """
        Run the record's operation and write its terminal status.

        On a retry of a record with known failed items only those items are
        re-run and the earlier successes are carried over.
        """
        payload = record.payload or {}
        operation = payload.get("operation")
        request = payload.get("request") or {}
        failed_items = payload.get("failed_items") if retry else None
        carried = record.items_succeeded if retry and failed_items is not None else 0
        # At the retry ceiling anything short of success is frozen as failed
        frozen = record.retry_count >= self.retry_scheduler.max_retries

        try:
            outcome = await self._perform(operation, request, failed_items)
        except Exception as e:
            log.error(f"Sync record #{record.id} ({operation}) failed: {e}", exc_info=True)
            message = explain_error(SyncErrorKind.CYCLE_FAILED, {"detail": str(e) or type(e).__name__})
            if retry and failed_items is not None:
                # The attempt produced no item accounting; the earlier one still describes the unit
                counters = (record.items_processed, record.items_succeeded, record.items_failed)
            else:
                counters = (0, 0, 0)
            failed_record = self.store.record_outcome(
                record.id,
                *counters,
                error_message=message,
                next_retry_at=self.retry_scheduler.next_retry_at(record.retry_count),
                freeze=frozen,
            )
            return SyncResult.failure(
                SyncErrorKind.CYCLE_FAILED,
                message,
                status=SyncStatus(failed_record.status),
                record_ids=[failed_record.id],
                items_processed=failed_record.items_processed,
                items_succeeded=failed_record.items_succeeded,
                items_failed=failed_record.items_failed,
            )

        succeeded = carried + outcome.succeeded
        processed = succeeded + outcome.failed
        error_message = None
        if outcome.failed:
            error_message = explain_error(SyncErrorKind.ITEM_FAILED, {"failed": outcome.failed, "total": processed})
            if outcome.errors:
                error_message = f"{error_message}: {'; '.join(outcome.errors[:5])}"

        updated = self.store.record_outcome(
            record.id,
            processed,
            succeeded,
            outcome.failed,
            error_message=error_message,
            payload_updates={"failed_items": outcome.failed_items or None, "result": outcome.result},
            next_retry_at=self.retry_scheduler.next_retry_at(record.retry_count) if outcome.failed else None,
            freeze=frozen,
        )
        status = SyncStatus(updated.status)

        if outcome.after_record is not None:
            try:
                outcome.after_record()
            except Exception as e:
                # The inventory already confirmed these items; they must not be re-sent
                log.error(f"Sync record #{record.id}: updating POS rows after the push failed: {e}", exc_info=True)

        if status != SyncStatus.FAILED or outcome.succeeded:
            self.config_service.update_last_sync()
            self.last_sync_time = utcnow()

        counters = dict(
            status=status,
            record_ids=[updated.id],
            items_processed=processed,
            items_succeeded=succeeded,
            items_failed=outcome.failed,
            data=outcome.result,
        )
        if status == SyncStatus.FAILED:
            return SyncResult.failure(SyncErrorKind.ITEM_FAILED, error_message, **counters)
        if status == SyncStatus.PARTIAL:
            return SyncResult.ok(f"Sync partially completed: {error_message}", **counters)
        return SyncResult.ok(f"Sync completed: {succeeded} of {processed} items synchronized", **counters)

    async def _perform(self, operation: str, request: Dict[str, Any], failed_items: Optional[List[Any]]) -> CycleOutcome:
        if operation == RECONCILE_PRODUCTS:
            only_ids = failed_items if failed_items is not None else request.get("product_ids")
            warehouse_id = request.get("warehouse_id")
            if warehouse_id is not None and await self.connector.get_warehouse(warehouse_id) is None:
                raise LookupError(f"Warehouse {warehouse_id} not found in inventory")
            inventory_products = await self.connector.fetch_products(warehouse_id=warehouse_id)
            results, summary = await self.reconciler.reconcile_products(inventory_products, only_ids=only_ids)
            failed = [r for r in results if not r.success]
            return CycleOutcome(
                succeeded=len(results) - len(failed),
                failed=len(failed),
                failed_items=[r.inventory_id for r in failed],
                result={
                    "summary": summary.to_wire(),
                    "results": [r.to_wire() for r in results if r.action != "unchanged"],
                },
                errors=[f"{r.inventory_id}: {r.error}" for r in failed],
            )

        if operation == PULL_STOCK:
            inventory_ids = failed_items if failed_items is not None else request.get("inventory_ids") or []
            results = await self.reconciler.pull_stock([int(i) for i in inventory_ids])
            failed = [r for r in results if not r.success]
            return CycleOutcome(
                succeeded=len(results) - len(failed),
                failed=len(failed),
                failed_items=[r.inventory_id for r in failed],
                result={"results": [r.to_wire() for r in results]},
                errors=[f"{r.inventory_id}: {r.error}" for r in failed],
            )

        if operation == PUSH_STOCK:
            raw_updates = failed_items if failed_items is not None else request.get("updates") or []
            updates = [StockUpdate.model_validate(u) for u in raw_updates]
            bulk = await self.reconciler.bulk_update_stock(updates, performed_by=request.get("performed_by"))
            failed = [r for r in bulk.results if not r.success]
            return CycleOutcome(
                succeeded=bulk.summary.success_count,
                failed=bulk.summary.failed_count,
                failed_items=[StockUpdate.model_validate(r.model_dump()).model_dump(mode="json") for r in failed],
                result=bulk.to_wire(),
                errors=[f"{r.inventory_id}: {r.error}" for r in failed],
                after_record=lambda: self.reconciler.mirror_stock(bulk.results),
            )

        raise ValueError(f"Unknown sync operation '{operation}'")

    # ---- config ----

    async def set_sync_enabled(self, enabled: Any) -> bool:
        value = self.config_service.set_enabled(enabled)
        if value:
            await self.start()
        else:
            self.stop()
        return value

    async def set_sync_interval(self, interval_ms: Any) -> int:
        value = self.config_service.set_sync_interval(interval_ms)
        if self.is_running:
            await self.restart()
        return value

    async def update_setting(self, key: str, value: Any, description: Optional[str] = None):
        setting = self.config_service.update_setting(key, value, description)
        if setting.key == "inventory_sync_enabled":
            if setting.value == "true":
                await self.start()
            else:
                self.stop()
        elif setting.key == "inventory_sync_interval" and self.is_running:
            await self.restart()
        return setting

    async def test_connection(self):
        """Probe and persist the connection status."""
        status = await self.probe.test_connection()
        self.config_service.set_connection_status("connected" if status.connected else "disconnected")
        return status

    # ---- status ----

    def get_status(self) -> Dict[str, Any]:
        full = self.config_service.get_full_config()
        return {
            "enabled": full.enabled,
            "lastSync": full.last_sync,
            "isSyncing": self.is_syncing,
            "isRunning": self.is_running,
            "pendingSyncs": len(self.store.get_pending_syncs()),
            "connectionStatus": full.connection_status,
            "recentStats": self.store.get_sync_stats("hour")["summary"],
            "lastSyncTime": self.last_sync_time.isoformat() if self.last_sync_time else None,
        }

    def get_detailed_status(self) -> Dict[str, Any]:
        status = self.get_status()
        jobs = []
        if self._scheduler is not None:
            for job in self._scheduler.get_jobs():
                jobs.append({
                    "id": job.id,
                    "nextRunTime": job.next_run_time.isoformat() if job.next_run_time else None,
                })
        status.update({
            "currentOperation": self.current_operation,
            "config": self.config_service.get_sync_config().to_wire(),
            "jobs": jobs,
            "retryPolicy": {
                "maxRetries": self.retry_scheduler.max_retries,
                "baseDelaySeconds": self.retry_scheduler.base_delay_seconds,
                "maxDelaySeconds": self.retry_scheduler.max_delay_seconds,
            },
            "dailyStats": self.store.get_sync_stats("day")["summary"],
        })
        return status

    async def close(self) -> None:
        self.shutdown()
        await self.connector.close()


def build_sync_coordinator(
    app_settings: Settings,
    session_factory: sessionmaker,
    connector: Optional[BaseInventoryConnector] = None,
) -> SyncCoordinator:
    """Create the engine handle; the default connector talks to the configured inventory URL."""
    if connector is None:
        from inventory_sync.connectors.inventory_connector import InventoryConnector

        connector = InventoryConnector({
            "base_url": app_settings.inventory_base_url,
            "api_token": app_settings.inventory_api_token,
            "timeout": app_settings.inventory_timeout_seconds,
        })
    return SyncCoordinator(app_settings, session_factory, connector)
