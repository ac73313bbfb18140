"""Method dispatch surface: ``{method, params}`` in, ``{status, message, data}`` out."""

import functools
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from inventory_sync.exceptions import InventoryError, InventorySyncError
from inventory_sync.schemas.dispatch import DispatchResponse
from inventory_sync.schemas.stock import SaleData, StockUpdate
from inventory_sync.schemas.sync import SyncRecordResponse, SyncResult, UserContext
from inventory_sync.services.sync_coordinator import SyncCoordinator
from inventory_sync.services.sync_record_store import TIME_RANGES

log = logging.getLogger(__name__)


def _ok(message: str, data: Any = None) -> DispatchResponse:
    return DispatchResponse(status=True, message=message, data=data)


def _fail(message: str, data: Any = None) -> DispatchResponse:
    return DispatchResponse(status=False, message=message, data=data)


def _from_result(result: SyncResult) -> DispatchResponse:
    return DispatchResponse(status=result.success, message=result.message, data=result.to_wire())


def _records(records) -> List[Dict[str, Any]]:
    return [SyncRecordResponse.model_validate(r).to_wire() for r in records]


def _user(params: Dict[str, Any]) -> Optional[UserContext]:
    raw = params.get("userInfo")
    return UserContext.model_validate(raw) if raw else None


def envelope(error_prefix: str):
    """Turn expected exceptions of a handler into a status=false response."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, params: Dict[str, Any]) -> DispatchResponse:
            try:
                return await func(self, params)
            except ValidationError as e:
                errors = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                )
                return _fail(f"{error_prefix}: invalid request ({errors})")
            except (InventorySyncError, InventoryError, ValueError, TypeError, LookupError) as e:
                log.warning(f"{error_prefix}: {e}")
                return _fail(f"{error_prefix}: {e}")

        return wrapper

    return decorator


class SyncDispatcher:
    """
    Routes case-sensitive method names to the sync engine.

    Nothing raises across this boundary: unknown methods, invalid params and
    unexpected errors all come back as ``status=False`` with a message.
    """

    METHODS = {
        # status & info
        "getStatus": "get_status",
        "getDetailedStatus": "get_detailed_status",
        "getSyncConfig": "get_sync_config",
        "getFullConfig": "get_full_config",
        # sync operations
        "manualSync": "manual_sync",
        "syncProducts": "sync_products",
        "syncStock": "sync_stock",
        "updateStockFromSale": "update_stock_from_sale",
        "stopSync": "stop_sync",
        "startSync": "start_sync",
        # history & stats
        "getSyncHistory": "get_sync_history",
        "getSyncStats": "get_sync_stats",
        "getPendingSyncs": "get_pending_syncs",
        "getEntitySyncHistory": "get_entity_sync_history",
        # connection
        "testConnection": "test_connection",
        "checkInventoryConnection": "check_inventory_connection",
        "getInventoryInfo": "get_inventory_info",
        # configuration
        "updateSyncSetting": "update_sync_setting",
        "setSyncEnabled": "set_sync_enabled",
        "setAutoUpdateOnSale": "set_auto_update_on_sale",
        "setSyncInterval": "set_sync_interval",
        "initializeSettings": "initialize_settings",
        # retry management
        "forceRetry": "force_retry",
        "resetFailedSyncs": "reset_failed_syncs",
        "retryPendingSyncs": "retry_pending_syncs",
        "cleanOldRecords": "clean_old_records",
        # inventory data
        "getInventoryProducts": "get_inventory_products",
        "getProductStock": "get_product_stock",
        "updateProductStock": "update_product_stock",
        "bulkUpdateStock": "bulk_update_stock",
        "getProductVariants": "get_product_variants",
        "getWarehouses": "get_warehouses",
        # warehouses
        "syncProductsFromWarehouse": "sync_products_from_warehouse",
        "getAvailableWarehouses": "get_available_warehouses",
        "getWarehouseSyncStatus": "get_warehouse_sync_status",
        "validateSaleItems": "validate_sale_items",
        # maintenance
        "cleanupSyncData": "cleanup_sync_data",
    }

    def __init__(self, coordinator: SyncCoordinator):
        self.coordinator = coordinator

    async def dispatch(self, method: str, params: Optional[Dict[str, Any]] = None) -> DispatchResponse:
        handler_name = self.METHODS.get(method)
        if handler_name is None:
            log.warning(f"Unknown sync method: {method}")
            return _fail(f"Unknown method: {method}")

        log.debug(f"Dispatching {method}")
        try:
            return await getattr(self, handler_name)(params or {})
        except Exception as e:
            log.error(f"Sync handler {method} failed: {e}", exc_info=True)
            return _fail(str(e) or "Internal error")

    # ---- status & info ----

    @envelope("Failed to get sync status")
    async def get_status(self, params):
        return _ok("Sync status retrieved", self.coordinator.get_status())

    @envelope("Failed to get detailed status")
    async def get_detailed_status(self, params):
        return _ok("Detailed sync status retrieved", self.coordinator.get_detailed_status())

    @envelope("Failed to get sync config")
    async def get_sync_config(self, params):
        return _ok("Sync configuration retrieved", self.coordinator.config_service.get_sync_config().to_wire())

    @envelope("Failed to get full config")
    async def get_full_config(self, params):
        return _ok("Full configuration retrieved", self.coordinator.config_service.get_full_config().to_wire())

    # ---- sync operations ----

    @envelope("Manual sync failed")
    async def manual_sync(self, params):
        result = await self.coordinator.manual_sync(_user(params), params.get("options") or {})
        return _from_result(result)

    @envelope("Products sync failed")
    async def sync_products(self, params):
        return _from_result(await self.coordinator.sync_products(_user(params)))

    @envelope("Stock sync failed")
    async def sync_stock(self, params):
        product_ids = params.get("productIds") or []
        if not isinstance(product_ids, list):
            return _fail("Stock sync failed: productIds must be a list")
        result = await self.coordinator.sync_stock(product_ids, _user(params))
        if result.success and result.error_kind is None and result.record_ids:
            return DispatchResponse(
                status=True,
                message=f"Stock sync completed for {result.items_processed} products",
                data=result.to_wire(),
            )
        return _from_result(result)

    @envelope("Failed to update stock from sale")
    async def update_stock_from_sale(self, params):
        if not params.get("saleData"):
            return _fail("Sale data is required")
        sale = SaleData.model_validate(params["saleData"])
        return _from_result(await self.coordinator.update_stock_from_sale(sale, _user(params)))

    @envelope("Failed to stop sync")
    async def stop_sync(self, params):
        self.coordinator.stop()
        return _ok("Sync manager stopped")

    @envelope("Failed to start sync")
    async def start_sync(self, params):
        if await self.coordinator.start():
            return _ok("Sync manager started")
        return _fail("Failed to start sync: inventory sync is disabled by configuration")

    # ---- history & stats ----

    @envelope("Failed to get sync history")
    async def get_sync_history(self, params):
        history = self.coordinator.store.get_sync_history(
            params.get("entityType"), params.get("entityId"), int(params.get("limit") or 50)
        )
        return _ok(f"Retrieved {len(history)} sync records", _records(history))

    @envelope("Failed to get sync stats")
    async def get_sync_stats(self, params):
        time_range = params.get("timeRange") or "day"
        if time_range not in TIME_RANGES:
            return _fail(f"Failed to get sync stats: timeRange must be one of {', '.join(TIME_RANGES)}")
        return _ok(f"Sync statistics for {time_range}", self.coordinator.store.get_sync_stats(time_range))

    @envelope("Failed to get pending syncs")
    async def get_pending_syncs(self, params):
        pending = self.coordinator.store.get_pending_syncs()
        return _ok(f"Found {len(pending)} pending syncs", _records(pending))

    @envelope("Failed to get entity sync history")
    async def get_entity_sync_history(self, params):
        entity_type, entity_id = params.get("entityType"), params.get("entityId")
        if not entity_type or not entity_id:
            return _fail("Entity type and ID are required")
        history = self.coordinator.store.get_sync_history(entity_type, entity_id, int(params.get("limit") or 20))
        return _ok(f"Retrieved {len(history)} records for {entity_type} {entity_id}", _records(history))

    # ---- connection ----

    @envelope("Connection test failed")
    async def test_connection(self, params):
        status = await self.coordinator.test_connection()
        if status.connected:
            return _ok("Connected to inventory system", status.to_wire())
        return _fail(f"Connection test failed: {status.message}", status.to_wire())

    @envelope("Inventory connection check failed")
    async def check_inventory_connection(self, params):
        status = await self.coordinator.probe.test_connection()
        if status.connected:
            return _ok("Inventory system is reachable", status.to_wire())
        return _fail(f"Inventory connection check failed: {status.message}", status.to_wire())

    @envelope("Failed to get inventory info")
    async def get_inventory_info(self, params):
        products = await self.coordinator.connector.fetch_products()
        warehouses = await self.coordinator.connector.fetch_warehouses()
        return _ok(
            f"Inventory info retrieved: {len(products)} products, {len(warehouses)} warehouses",
            {
                "productCount": len(products),
                "warehouseCount": len(warehouses),
                "sampleProducts": [p.to_wire() for p in products[:5]],
                "warehouses": [w.to_wire() for w in warehouses[:5]],
            },
        )

    # ---- configuration ----

    @envelope("Failed to update setting")
    async def update_sync_setting(self, params):
        key = params.get("key")
        if not key:
            return _fail("Setting key is required")
        setting = await self.coordinator.update_setting(key, params.get("value"), params.get("description"))
        return _ok(f"Setting '{key}' updated successfully", {"key": setting.key, "value": setting.value})

    @envelope("Failed to set sync enabled")
    async def set_sync_enabled(self, params):
        enabled = await self.coordinator.set_sync_enabled(params.get("enabled"))
        return _ok(f"Sync {'enabled' if enabled else 'disabled'}", {"enabled": enabled})

    @envelope("Failed to set auto-update")
    async def set_auto_update_on_sale(self, params):
        enabled = self.coordinator.config_service.set_auto_update_on_sale(params.get("enabled"))
        return _ok(f"Auto-update on sale {'enabled' if enabled else 'disabled'}", {"autoUpdateOnSale": enabled})

    @envelope("Failed to set sync interval")
    async def set_sync_interval(self, params):
        interval = await self.coordinator.set_sync_interval(params.get("intervalMs"))
        return _ok(f"Sync interval set to {interval}ms", {"syncInterval": interval})

    @envelope("Failed to initialize settings")
    async def initialize_settings(self, params):
        created = self.coordinator.config_service.initialize_default_settings()
        return _ok("Default sync settings initialized", {"created": created})

    # ---- retry management ----

    @envelope("Force retry failed")
    async def force_retry(self, params):
        if not params.get("syncId"):
            return _fail("Sync ID is required")
        return _from_result(await self.coordinator.retry_scheduler.force_retry(params["syncId"]))

    @envelope("Failed to reset syncs")
    async def reset_failed_syncs(self, params):
        entity_type = params.get("entityType")
        count = self.coordinator.retry_scheduler.reset_failed_syncs(entity_type)
        message = f"Failed syncs reset for {entity_type}" if entity_type else "All failed syncs reset"
        return _ok(message, {"count": count})

    @envelope("Failed to retry pending syncs")
    async def retry_pending_syncs(self, params):
        return _from_result(await self.coordinator.retry_scheduler.retry_pending_syncs())

    @envelope("Failed to clean old records")
    async def clean_old_records(self, params):
        days_to_keep = int(params.get("daysToKeep", 30))
        deleted = self.coordinator.retry_scheduler.clean_old_records(days_to_keep)
        return _ok(f"Old sync records cleaned (keeping {days_to_keep} days)", {"deleted": deleted})

    # ---- inventory data ----

    @envelope("Failed to get inventory products")
    async def get_inventory_products(self, params):
        products = await self.coordinator.connector.fetch_products()
        return _ok(f"Retrieved {len(products)} products from inventory", [p.to_wire() for p in products])

    @envelope("Failed to get product stock")
    async def get_product_stock(self, params):
        inventory_id = params.get("inventoryId")
        if not inventory_id:
            return _fail("Inventory ID is required")
        stock = await self.coordinator.connector.get_product_stock(int(inventory_id))
        return _ok(f"Stock for product {inventory_id}: {stock}", {"inventoryId": inventory_id, "stock": stock})

    @envelope("Failed to update product stock")
    async def update_product_stock(self, params):
        if not params.get("inventoryId") or params.get("quantityChange") is None:
            return _fail("Inventory ID and quantity change are required")
        update = StockUpdate(
            inventory_id=params["inventoryId"],
            quantity_change=params["quantityChange"],
            action=params.get("action") or "sale",
        )
        result = await self.coordinator.bulk_update_stock([update], self._operator(params))
        if not result.data:
            return _from_result(result)
        item = result.data["results"][0]
        if item["success"]:
            return _ok(f"Stock updated: {item['previousStock']} → {item['newStock']}", {**item, "syncId": result.record_ids[0]})
        return _fail(f"Stock update failed: {item['error']}", {**item, "syncId": result.record_ids[0]})

    @envelope("Failed to bulk update stock")
    async def bulk_update_stock(self, params):
        raw_updates = params.get("updates")
        if not raw_updates or not isinstance(raw_updates, list):
            return _fail("Updates array is required and must not be empty")
        updates = [StockUpdate.model_validate(u) for u in raw_updates]
        result = await self.coordinator.bulk_update_stock(updates, self._operator(params))
        if not result.data:
            return _from_result(result)
        summary = result.data["summary"]
        return DispatchResponse(
            status=summary["failedCount"] == 0,
            message=f"Bulk update: {summary['successCount']} success, {summary['failedCount']} failed",
            data={**result.data, "syncId": result.record_ids[0], "status": result.status.value},
        )

    @staticmethod
    def _operator(params) -> Optional[UserContext]:
        if params.get("userInfo"):
            return _user(params)
        if params.get("userId") is not None:
            return UserContext(id=params["userId"])
        return None

    @envelope("Failed to get product variants")
    async def get_product_variants(self, params):
        product_id = params.get("productId")
        if not product_id:
            return _fail("Product ID is required")
        variants = await self.coordinator.connector.fetch_variants(int(product_id))
        return _ok(f"Retrieved {len(variants)} variants for product {product_id}", [v.to_wire() for v in variants])

    @envelope("Failed to get warehouses")
    async def get_warehouses(self, params):
        warehouses = await self.coordinator.connector.fetch_warehouses()
        return _ok(f"Retrieved {len(warehouses)} warehouses", [w.to_wire() for w in warehouses])

    # ---- warehouses ----

    @envelope("Warehouse sync failed")
    async def sync_products_from_warehouse(self, params):
        warehouse_id = params.get("warehouseId")
        if warehouse_id is None:
            return _fail("Warehouse ID is required")
        return _from_result(await self.coordinator.sync_products_from_warehouse(int(warehouse_id), _user(params)))

    @envelope("Failed to get available warehouses")
    async def get_available_warehouses(self, params):
        warehouses = await self.coordinator.get_available_warehouses()
        active = [w for w in warehouses if w.is_active]
        return _ok(
            f"Found {len(active)} active warehouses",
            {"warehouses": [w.to_wire() for w in active], "count": len(active)},
        )

    @envelope("Failed to get warehouse sync status")
    async def get_warehouse_sync_status(self, params):
        warehouse_id = params.get("warehouseId")
        if warehouse_id is None:
            return _fail("Warehouse ID is required")
        status = await self.coordinator.get_warehouse_sync_status(int(warehouse_id))
        if not status["connected"]:
            return _fail(f"Inventory system unreachable: {status['message']}", status)
        return _ok(f"Sync status for warehouse {warehouse_id}", status)

    @envelope("Failed to validate sale items")
    async def validate_sale_items(self, params):
        if not params.get("saleData"):
            return _fail("Sale data is required")
        sale = SaleData.model_validate(params["saleData"])
        warehouse_id = params.get("warehouseId")
        result = await self.coordinator.validate_sale_items(sale, int(warehouse_id) if warehouse_id is not None else None)
        if result.valid:
            return _ok(f"All {len(result.validations)} linked items are available", result.to_wire())
        return _fail(f"{result.insufficient_items} items have insufficient stock", result.to_wire())

    # ---- maintenance ----

    @envelope("Cleanup failed")
    async def cleanup_sync_data(self, params):
        days_to_keep = int(params.get("daysToKeep", 30))
        results = [{"action": "cleanOldRecords", "result": self.coordinator.retry_scheduler.clean_old_records(days_to_keep)}]
        if params.get("resetFailed"):
            results.append({"action": "resetFailedSyncs", "result": self.coordinator.retry_scheduler.reset_failed_syncs()})
        return _ok("Sync data cleanup completed", results)
