from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from inventory_sync.config import Settings
from inventory_sync.connectors.base import (
    BaseInventoryConnector,
    InventoryProduct,
    ProductVariant,
    StockAdjustment,
    Warehouse,
)
from inventory_sync.database import Base, get_db, init_db, make_engine, make_session_factory
from inventory_sync.exceptions import InsufficientStockError, InventoryConnectionError, InventoryItemNotFoundError
from inventory_sync.main import app
from inventory_sync.models.product import Product
from inventory_sync.schemas.sync import ConnectionStatus
from inventory_sync.services.sync_coordinator import SyncCoordinator


class FakeInventoryConnector(BaseInventoryConnector):
    """In-memory inventory system used by the engine tests."""

    def __init__(self, products: Optional[List[InventoryProduct]] = None):
        super().__init__({"base_url": "memory://inventory"})
        self.products: Dict[int, InventoryProduct] = {p.inventory_id: p for p in (products or [])}
        self.connected = True
        self.unavailable_ids = set()
        self.fetch_error: Optional[Exception] = None
        self.adjust_calls: List[Dict[str, Any]] = []
        self.update_calls: List[Dict[str, Any]] = []
        self.connection_checks = 0
        self.closed = False
        self.warehouses = [Warehouse(id=1, name="Main warehouse", type="main")]
        # warehouse id -> {inventory id: quantity held there}
        self.warehouse_stock: Dict[int, Dict[int, int]] = {}

    async def check_connection(self) -> ConnectionStatus:
        self.connection_checks += 1
        if not self.connected:
            return ConnectionStatus(connected=False, message="Failed to connect: connection refused")
        return ConnectionStatus(connected=True, message="Inventory system connected successfully")

    def _get(self, inventory_id: int) -> InventoryProduct:
        if inventory_id in self.unavailable_ids:
            raise InventoryConnectionError(f"Inventory request error for product {inventory_id}: timed out")
        if inventory_id not in self.products:
            raise InventoryItemNotFoundError(f"Inventory resource not found: /api/products/{inventory_id}")
        return self.products[inventory_id]

    async def fetch_products(self, warehouse_id: Optional[int] = None) -> List[InventoryProduct]:
        if self.fetch_error is not None:
            raise self.fetch_error
        if warehouse_id is None:
            return [p.model_copy() for p in self.products.values()]
        stocked = self.warehouse_stock.get(warehouse_id, {})
        return [
            p.model_copy(update={"total_stock": stocked[p.inventory_id]})
            for p in self.products.values()
            if p.inventory_id in stocked
        ]

    async def get_product_stock(self, inventory_id: int, warehouse_id: Optional[int] = None) -> int:
        product = self._get(inventory_id)
        if warehouse_id is None:
            return product.total_stock
        return self.warehouse_stock.get(warehouse_id, {}).get(inventory_id, 0)

    async def adjust_stock(self, inventory_id: int, quantity_change: int, action: str, performed_by: str) -> StockAdjustment:
        self.adjust_calls.append({
            "inventory_id": inventory_id,
            "quantity_change": quantity_change,
            "action": action,
            "performed_by": performed_by,
        })
        product = self._get(inventory_id)
        new_stock = product.total_stock + quantity_change
        if new_stock < 0:
            raise InsufficientStockError(f"Insufficient stock for product {inventory_id}: {product.total_stock} available")
        previous = product.total_stock
        product.total_stock = new_stock
        return StockAdjustment(previous_stock=previous, new_stock=new_stock, warehouse_id=1)

    async def update_product(self, inventory_id: int, fields: Dict[str, Any]) -> Optional[InventoryProduct]:
        self.update_calls.append({"inventory_id": inventory_id, "fields": dict(fields)})
        product = self._get(inventory_id)
        for key, value in fields.items():
            setattr(product, key, value)
        return product

    async def fetch_variants(self, product_id: int) -> List[ProductVariant]:
        self._get(product_id)
        return [ProductVariant(variant_id=product_id * 10, name="Default", sku=f"V-{product_id}")]

    async def fetch_warehouses(self) -> List[Warehouse]:
        return list(self.warehouses)

    async def close(self) -> None:
        self.closed = True


def make_inventory_product(inventory_id: int, **overrides) -> InventoryProduct:
    data = {
        "inventory_id": inventory_id,
        "name": f"Product {inventory_id}",
        "sku": f"SKU-{inventory_id}",
        "price": 10.0,
        "cost_price": 6.0,
        "total_stock": 20,
        "min_stock": 2,
    }
    data.update(overrides)
    return InventoryProduct(**data)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        max_retries=5,
        retry_base_delay_seconds=300,
        retry_max_delay_seconds=7200,
        bulk_update_concurrency=3,
        initial_sync_delay_seconds=3600,
        inventory_timeout_seconds=5.0,
    )


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def connector() -> FakeInventoryConnector:
    return FakeInventoryConnector([make_inventory_product(i) for i in (101, 102, 103)])


@pytest.fixture
def coordinator(test_settings, session_factory, connector) -> SyncCoordinator:
    coordinator = SyncCoordinator(test_settings, session_factory, connector)
    yield coordinator
    coordinator.shutdown()


@pytest.fixture
def linked_products(session_factory):
    """POS products linked to inventory products 101-103."""
    with session_factory() as session:
        products = [
            Product(name=f"Product {i}", sku=f"SKU-{i}", price=10.0, cost_price=6.0, stock=20, min_stock=2, stock_item_id=str(i))
            for i in (101, 102, 103)
        ]
        session.add_all(products)
        session.commit()
        return [p.id for p in products]


@pytest.fixture
def client(coordinator, session_factory) -> TestClient:
    def override_get_db() -> Session:
        session = session_factory()
        try:
            yield session
        finally:
            session.rollback()
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.sync_coordinator = coordinator
    yield TestClient(app)
    app.dependency_overrides.clear()
