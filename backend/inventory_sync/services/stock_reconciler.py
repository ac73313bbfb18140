"""Applies stock and product changes between the POS cache and the inventory system."""

import asyncio
import logging
import math
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session, sessionmaker

from inventory_sync.connectors.base import BaseInventoryConnector, InventoryProduct
from inventory_sync.exceptions import InventoryItemNotFoundError
from inventory_sync.models.product import Product
from inventory_sync.schemas.stock import (
    BulkSummary,
    BulkUpdateResult,
    SaleData,
    SaleItemValidation,
    SaleValidationResult,
    StockPullResult,
    StockUpdate,
    StockUpdateResult,
)
from inventory_sync.schemas.sync import FieldDiff, ProductReconcileSummary, ProductSyncResult
from inventory_sync.utils.clock import utcnow

log = logging.getLogger(__name__)

# Inventory is the system of record for these; values flow into the POS row
INVENTORY_AUTHORITATIVE = ("price", "stock", "cost_price", "min_stock")
# POS owns these; differences are pushed to the inventory product
POS_AUTHORITATIVE = ("name", "description", "is_active")


def _inventory_value(inv: InventoryProduct, field: str) -> Any:
    if field == "stock":
        return inv.total_stock
    return getattr(inv, field)


def _differs(pos_value: Any, inventory_value: Any) -> bool:
    if isinstance(pos_value, float) or isinstance(inventory_value, float):
        if pos_value is None or inventory_value is None:
            return pos_value is not inventory_value
        return not math.isclose(float(pos_value), float(inventory_value), abs_tol=0.005)
    return pos_value != inventory_value


class StockReconciler:
    """
    Per-item stock mutation and product reconciliation.

    Nothing here is atomic across items: every item is applied, committed or
    rolled back on its own and failures are reported in the per-item results.
    """

    def __init__(
        self,
        connector: BaseInventoryConnector,
        session_factory: sessionmaker,
        concurrency: int = 5,
        performed_by: str = "pos_system",
    ):
        self.connector = connector
        self.session_factory = session_factory
        self.concurrency = max(1, concurrency)
        self.performed_by = performed_by

    # ---- stock pushes (POS -> inventory) ----

    async def bulk_update_stock(self, updates: List[StockUpdate], performed_by: Optional[str] = None) -> BulkUpdateResult:
        """Apply each stock delta independently; results are in input order."""
        semaphore = asyncio.Semaphore(self.concurrency)
        actor = performed_by or self.performed_by
        results = await asyncio.gather(
            *(self._apply_update(update, semaphore, actor) for update in updates)
        )
        success_count = sum(1 for r in results if r.success)
        summary = BulkSummary(
            success_count=success_count,
            failed_count=len(results) - success_count,
            total=len(results),
        )
        log.info(f"Bulk stock update: {summary.success_count}/{summary.total} succeeded")
        return BulkUpdateResult(results=list(results), summary=summary)

    async def _apply_update(self, update: StockUpdate, semaphore: asyncio.Semaphore, performed_by: str) -> StockUpdateResult:
        async with semaphore:
            try:
                adjustment = await self.connector.adjust_stock(
                    update.inventory_id, update.quantity_change, update.action, performed_by
                )
            except Exception as e:
                log.warning(f"Stock update for inventory {update.inventory_id} failed: {e}")
                return StockUpdateResult(**update.model_dump(), success=False, error=str(e))

        return StockUpdateResult(
            **update.model_dump(),
            success=True,
            previous_stock=adjustment.previous_stock,
            new_stock=adjustment.new_stock,
            applied_change=update.quantity_change,
            warehouse_id=adjustment.warehouse_id,
        )

    def mirror_stock(self, results: Iterable[StockUpdateResult]) -> int:
        """Write the inventory's post-update stock into the linked POS rows."""
        mirrored = 0
        with self.session_factory() as db:
            for result in results:
                if not result.success or result.new_stock is None:
                    continue
                product = self._find_linked(db, result.inventory_id)
                if product is None:
                    log.debug(f"No POS product linked to inventory {result.inventory_id}, nothing to mirror")
                    continue
                product.stock = result.new_stock
                product.updated_at = utcnow()
                mirrored += 1
            db.commit()
        return mirrored

    async def validate_sale_items(self, sale: SaleData, warehouse_id: Optional[int] = None) -> SaleValidationResult:
        """Check that the inventory holds enough stock for each linked sale line."""
        validations = []
        unlinked = 0
        for line in sale.items:
            try:
                inventory_id = int(line.product.stock_item_id)
            except (TypeError, ValueError):
                unlinked += 1
                continue
            try:
                available = await self.connector.get_product_stock(inventory_id, warehouse_id=warehouse_id)
            except InventoryItemNotFoundError as e:
                validations.append(SaleItemValidation(
                    inventory_id=inventory_id,
                    product_id=line.product.id,
                    product_name=line.product.name,
                    requested_quantity=line.quantity,
                    sufficient=False,
                    deficit=line.quantity,
                    error=str(e),
                ))
                continue
            sufficient = available >= line.quantity
            validations.append(SaleItemValidation(
                inventory_id=inventory_id,
                product_id=line.product.id,
                product_name=line.product.name,
                available_stock=available,
                requested_quantity=line.quantity,
                sufficient=sufficient,
                deficit=0 if sufficient else line.quantity - available,
            ))

        insufficient = sum(1 for v in validations if not v.sufficient)
        if insufficient:
            log.info(f"Sale {sale.id}: {insufficient} of {len(validations)} linked items lack stock")
        return SaleValidationResult(
            valid=insufficient == 0,
            warehouse_id=warehouse_id,
            validations=validations,
            total_items=len(sale.items),
            insufficient_items=insufficient,
            unlinked_items=unlinked,
        )

    # ---- stock pulls (inventory -> POS) ----

    def linked_inventory_ids(self) -> List[int]:
        with self.session_factory() as db:
            rows = db.query(Product.stock_item_id).filter(Product.stock_item_id.isnot(None)).order_by(Product.id).all()
        ids = []
        for (stock_item_id,) in rows:
            try:
                ids.append(int(stock_item_id))
            except ValueError:
                log.warning(f"Ignoring non-numeric stock_item_id {stock_item_id!r}")
        return ids

    async def pull_stock(self, inventory_ids: List[int]) -> List[StockPullResult]:
        """Read the inventory stock of each id and store it on the linked POS row."""
        results = []
        for inventory_id in inventory_ids:
            try:
                stock = await self.connector.get_product_stock(inventory_id)
            except Exception as e:
                log.warning(f"Reading stock of inventory {inventory_id} failed: {e}")
                results.append(StockPullResult(inventory_id=inventory_id, success=False, error=str(e)))
                continue

            with self.session_factory() as db:
                product = self._find_linked(db, inventory_id)
                if product is None:
                    results.append(StockPullResult(
                        inventory_id=inventory_id,
                        success=False,
                        stock=stock,
                        error=f"No POS product linked to inventory product {inventory_id}",
                    ))
                    continue
                if product.stock != stock:
                    log.debug(f"POS product {product.id} stock {product.stock} -> {stock}")
                    product.stock = stock
                    product.updated_at = utcnow()
                    db.commit()
                results.append(StockPullResult(inventory_id=inventory_id, success=True, stock=stock, product_id=product.id))
        return results

    # ---- product reconciliation ----

    async def reconcile_products(
        self,
        inventory_products: List[InventoryProduct],
        only_ids: Optional[Iterable[int]] = None,
    ) -> Tuple[List[ProductSyncResult], ProductReconcileSummary]:
        """
        Reconcile inventory products against the POS cache.

        Lookup order is stock_item_id, then SKU or barcode (the row gets
        linked), then a new POS product for active inventory products.
        """
        if only_ids is not None:
            wanted = {int(i) for i in only_ids}
            inventory_products = [p for p in inventory_products if p.inventory_id in wanted]

        results: List[ProductSyncResult] = []
        summary = ProductReconcileSummary(total=len(inventory_products))
        for inv in inventory_products:
            result = await self._reconcile_one(inv)
            results.append(result)
            setattr(summary, result.action, getattr(summary, result.action) + 1)

        log.info(
            f"Product reconciliation: {summary.created} created, {summary.updated} updated, "
            f"{summary.linked} linked, {summary.unchanged} unchanged, {summary.skipped} skipped, "
            f"{summary.failed} failed of {summary.total}"
        )
        return results, summary

    async def _reconcile_one(self, inv: InventoryProduct) -> ProductSyncResult:
        db: Session = self.session_factory()
        try:
            action = "updated"
            product = self._find_linked(db, inv.inventory_id)
            if product is None:
                product = self._find_by_sku_or_barcode(db, inv.sku, inv.barcode)
                if product is not None:
                    log.info(f"Linking POS product {product.id} to inventory product {inv.inventory_id}")
                    product.stock_item_id = str(inv.inventory_id)
                    action = "linked"

            if product is None:
                if not inv.is_active:
                    return ProductSyncResult(inventory_id=inv.inventory_id, action="skipped")
                product = self._create_product(db, inv)
                db.commit()
                log.info(f"Created POS product {product.id} for inventory product {inv.inventory_id}")
                return ProductSyncResult(inventory_id=inv.inventory_id, product_id=product.id, action="created")

            changes = self._apply_inventory_fields(product, inv)
            if changes:
                product.updated_at = utcnow()
            # Inventory-owned values are kept even if the push below fails
            db.commit()

            pushed = self._pos_field_diffs(product, inv)
            if pushed:
                try:
                    await self.connector.update_product(
                        inv.inventory_id, {diff.field: diff.pos_value for diff in pushed}
                    )
                except Exception as e:
                    log.error(f"Pushing POS fields of product {product.id} to inventory {inv.inventory_id} failed: {e}")
                    return ProductSyncResult(
                        inventory_id=inv.inventory_id,
                        product_id=product.id,
                        action="failed",
                        changes=changes,
                        success=False,
                        error=str(e),
                    )
            changes.extend(pushed)

            if not changes and action != "linked":
                action = "unchanged"
            return ProductSyncResult(inventory_id=inv.inventory_id, product_id=product.id, action=action, changes=changes)

        except Exception as e:
            db.rollback()
            log.error(f"Reconciling inventory product {inv.inventory_id} failed: {e}")
            return ProductSyncResult(inventory_id=inv.inventory_id, action="failed", success=False, error=str(e))
        finally:
            db.close()

    @staticmethod
    def _find_linked(db: Session, inventory_id: int) -> Optional[Product]:
        return db.query(Product).filter(Product.stock_item_id == str(inventory_id)).first()

    @staticmethod
    def _find_by_sku_or_barcode(db: Session, sku: Optional[str], barcode: Optional[str]) -> Optional[Product]:
        conditions = []
        if sku:
            conditions.append(Product.sku == sku)
        if barcode:
            conditions.append(Product.barcode == barcode)
        if not conditions:
            return None
        return db.query(Product).filter(
            Product.stock_item_id.is_(None), or_(*conditions)
        ).order_by(Product.id).first()

    @staticmethod
    def _create_product(db: Session, inv: InventoryProduct) -> Product:
        now = utcnow()
        product = Product(
            sku=inv.sku,
            barcode=inv.barcode,
            name=inv.name,
            description=inv.description,
            price=inv.price,
            cost_price=inv.cost_price,
            stock=inv.total_stock,
            min_stock=inv.min_stock,
            category_name=inv.category_name,
            supplier_name=inv.supplier_name,
            stock_item_id=str(inv.inventory_id),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        db.add(product)
        db.flush()
        return product

    @staticmethod
    def _apply_inventory_fields(product: Product, inv: InventoryProduct) -> List[FieldDiff]:
        changes = []
        for field in INVENTORY_AUTHORITATIVE:
            pos_value = getattr(product, field)
            inventory_value = _inventory_value(inv, field)
            if _differs(pos_value, inventory_value):
                changes.append(FieldDiff(field=field, pos_value=pos_value, inventory_value=inventory_value, authority="inventory"))
                setattr(product, field, inventory_value)
        # Descriptive extras are only filled in, never overwritten
        if not product.category_name and inv.category_name:
            product.category_name = inv.category_name
        if not product.supplier_name and inv.supplier_name:
            product.supplier_name = inv.supplier_name
        return changes

    @staticmethod
    def _pos_field_diffs(product: Product, inv: InventoryProduct) -> List[FieldDiff]:
        diffs = []
        for field in POS_AUTHORITATIVE:
            pos_value = getattr(product, field)
            inventory_value = getattr(inv, field)
            if field == "description" and not pos_value:
                continue
            if pos_value != inventory_value:
                diffs.append(FieldDiff(field=field, pos_value=pos_value, inventory_value=inventory_value, authority="pos"))
        return diffs
