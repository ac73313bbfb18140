import httpx
import pytest

from inventory_sync.connectors.inventory_connector import InventoryConnector
from inventory_sync.models.product import Product
from inventory_sync.schemas.stock import SaleData, StockUpdate
from inventory_sync.services.stock_reconciler import StockReconciler

from tests.conftest import make_inventory_product


@pytest.fixture
def reconciler(connector, session_factory) -> StockReconciler:
    return StockReconciler(connector, session_factory, concurrency=2)


@pytest.mark.asyncio
async def test_bulk_update_collects_item_failures(reconciler):
    updates = [
        StockUpdate(inventory_id=101, quantity_change=-2, action="sale"),
        StockUpdate(inventory_id=999, quantity_change=-1, action="sale"),
        StockUpdate(inventory_id=103, quantity_change=5, action="adjustment"),
    ]

    bulk = await reconciler.bulk_update_stock(updates)

    assert len(bulk.results) == len(updates)
    assert bulk.summary.success_count == 2
    assert bulk.summary.failed_count == 1
    assert bulk.summary.success_count + bulk.summary.failed_count == len(updates)
    assert [r.inventory_id for r in bulk.results] == [101, 999, 103]

    first, missing, third = bulk.results
    assert (first.previous_stock, first.new_stock, first.applied_change) == (20, 18, -2)
    assert missing.success is False
    assert missing.applied_change == 0
    assert "not found" in missing.error
    assert third.new_stock == 25


@pytest.mark.asyncio
async def test_bulk_update_reports_insufficient_stock(reconciler):
    bulk = await reconciler.bulk_update_stock([StockUpdate(inventory_id=102, quantity_change=-50, action="sale")])

    assert bulk.summary.failed_count == 1
    assert "Insufficient stock" in bulk.results[0].error


@pytest.mark.asyncio
async def test_bulk_update_passes_operator(reconciler, connector):
    await reconciler.bulk_update_stock([StockUpdate(inventory_id=101, quantity_change=-1, action="sale")], performed_by="alice")

    assert connector.adjust_calls[0]["performed_by"] == "alice"


@pytest.mark.asyncio
async def test_mirror_stock_updates_linked_products(reconciler, linked_products, session_factory):
    bulk = await reconciler.bulk_update_stock([
        StockUpdate(inventory_id=101, quantity_change=-3, action="sale"),
        StockUpdate(inventory_id=999, quantity_change=-1, action="sale"),
    ])

    assert reconciler.mirror_stock(bulk.results) == 1
    with session_factory() as session:
        product = session.query(Product).filter(Product.stock_item_id == "101").one()
    assert product.stock == 17


@pytest.mark.asyncio
async def test_pull_stock_mirrors_inventory_quantities(reconciler, connector, linked_products, session_factory):
    connector.products[102].total_stock = 7

    results = await reconciler.pull_stock([102, 555])

    assert [r.success for r in results] == [True, False]
    assert results[0].stock == 7
    assert "not found" in results[1].error
    with session_factory() as session:
        assert session.query(Product).filter(Product.stock_item_id == "102").one().stock == 7


def test_linked_inventory_ids(reconciler, linked_products):
    assert reconciler.linked_inventory_ids() == [101, 102, 103]


@pytest.mark.asyncio
async def test_reconcile_creates_missing_active_products(reconciler, connector, session_factory):
    connector.products[104] = make_inventory_product(104, is_active=False)

    results, summary = await reconciler.reconcile_products(await connector.fetch_products())

    assert summary.created == 3
    assert summary.skipped == 1
    assert summary.total == 4
    assert {r.action for r in results} == {"created", "skipped"}
    with session_factory() as session:
        assert session.query(Product).count() == 3


@pytest.mark.asyncio
async def test_reconcile_links_by_sku_and_applies_inventory_fields(reconciler, connector, session_factory):
    with session_factory() as session:
        session.add(Product(name="Product 101", sku="SKU-101", price=8.5, stock=3))
        session.commit()

    results, summary = await reconciler.reconcile_products(await connector.fetch_products(), only_ids=[101])

    assert summary.total == 1
    assert summary.linked == 1
    changed = {c.field: c for c in results[0].changes}
    assert changed["price"].authority == "inventory"
    assert changed["stock"].inventory_value == 20
    with session_factory() as session:
        product = session.query(Product).filter(Product.sku == "SKU-101").one()
    assert product.stock_item_id == "101"
    assert product.price == 10.0
    assert product.stock == 20
    assert product.cost_price == 6.0


@pytest.mark.asyncio
async def test_reconcile_pushes_pos_descriptive_fields(reconciler, connector, linked_products, session_factory):
    with session_factory() as session:
        product = session.query(Product).filter(Product.stock_item_id == "102").one()
        product.name = "Renamed at the till"
        session.commit()
    connector.products[102].price = 12.5

    results, summary = await reconciler.reconcile_products(await connector.fetch_products())

    assert summary.updated == 1
    assert summary.unchanged == 2
    assert connector.update_calls == [{"inventory_id": 102, "fields": {"name": "Renamed at the till"}}]
    assert connector.products[102].name == "Renamed at the till"
    with session_factory() as session:
        product = session.query(Product).filter(Product.stock_item_id == "102").one()
    assert product.name == "Renamed at the till"
    assert product.price == 12.5


@pytest.mark.asyncio
async def test_reconcile_push_failure_keeps_inventory_fields(reconciler, connector, linked_products, session_factory):
    with session_factory() as session:
        product = session.query(Product).filter(Product.stock_item_id == "101").one()
        product.name = "Local name"
        session.commit()
    connector.products[101].price = 99.0
    connector.products[103].price = 11.0
    # Pushing the POS name fails for 101
    connector.unavailable_ids.add(101)

    results, summary = await reconciler.reconcile_products(await connector.fetch_products())

    assert summary.failed == 1
    assert summary.updated == 1
    assert results[0].success is False
    with session_factory() as session:
        by_item = {p.stock_item_id: p for p in session.query(Product).all()}
    assert by_item["101"].price == 99.0
    assert by_item["101"].name == "Local name"
    assert by_item["103"].price == 11.0


@pytest.mark.asyncio
async def test_reconcile_accepts_update_without_response_body(session_factory, linked_products):
    with session_factory() as session:
        product = session.query(Product).filter(Product.stock_item_id == "101").one()
        product.name = "Renamed at the till"
        session.commit()
    patches = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PATCH":
            patches.append(request.url.path)
            return httpx.Response(204)
        return httpx.Response(200, json=[{"id": 101, "name": "Product 101", "sku": "SKU-101", "price": 14.0, "total_stock": 20}])

    connector = InventoryConnector({"base_url": "http://inventory.local"}, transport=httpx.MockTransport(handler))
    reconciler = StockReconciler(connector, session_factory)
    try:
        results, summary = await reconciler.reconcile_products(await connector.fetch_products())
    finally:
        await connector.close()

    assert patches == ["/api/products/101"]
    assert summary.updated == 1
    assert results[0].success is True
    assert {c.field for c in results[0].changes} >= {"price", "name"}
    with session_factory() as session:
        product = session.query(Product).filter(Product.stock_item_id == "101").one()
    assert product.price == 14.0


def _sale(*lines):
    return SaleData.model_validate({
        "id": "S-1",
        "items": [
            {"id": n, "quantity": qty, "product": {"id": n, "name": f"Line {n}", "stockItemId": item}}
            for n, (item, qty) in enumerate(lines, start=1)
        ],
    })


@pytest.mark.asyncio
async def test_validate_sale_items_reports_shortfall(reconciler, connector):
    connector.products[102].total_stock = 1

    result = await reconciler.validate_sale_items(_sale(("101", 3), ("102", 4), (None, 1), ("999", 1)))

    assert result.valid is False
    assert result.total_items == 4
    assert result.unlinked_items == 1
    assert result.insufficient_items == 2
    by_id = {v.inventory_id: v for v in result.validations}
    assert by_id[101].sufficient is True
    assert by_id[101].available_stock == 20
    assert (by_id[102].available_stock, by_id[102].deficit) == (1, 3)
    assert by_id[999].error is not None


@pytest.mark.asyncio
async def test_validate_sale_items_in_one_warehouse(reconciler, connector):
    connector.warehouse_stock = {2: {101: 2}}

    result = await reconciler.validate_sale_items(_sale(("101", 2)), warehouse_id=2)
    short = await reconciler.validate_sale_items(_sale(("101", 3)), warehouse_id=2)

    assert result.valid is True
    assert result.warehouse_id == 2
    assert short.valid is False
    assert short.validations[0].deficit == 1
    assert connector.adjust_calls == []
