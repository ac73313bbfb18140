import httpx
import logging
from typing import Dict, Any, List, Optional

from inventory_sync.connectors.base import (
    BaseInventoryConnector,
    InventoryProduct,
    ProductVariant,
    StockAdjustment,
    Warehouse,
)
from inventory_sync.exceptions import (
    InsufficientStockError,
    InventoryConnectionError,
    InventoryItemNotFoundError,
    InventoryRequestError,
)
from inventory_sync.schemas.sync import ConnectionStatus

log = logging.getLogger(__name__)

# Fields the inventory API accepts on PATCH /api/products/{id}
DESCRIPTIVE_FIELDS = ("name", "description", "is_active")


def _first(raw: Dict[str, Any], *keys, default=None):
    """Return the first key present and not None; the API has renamed columns over time."""
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return default


def _nested_name(raw: Dict[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    if isinstance(value, dict):
        return value.get("name")
    return raw.get(f"{key}_name")


def normalize_product(raw: Dict[str, Any]) -> InventoryProduct:
    """Map a raw inventory product payload onto InventoryProduct."""
    return InventoryProduct(
        inventory_id=int(_first(raw, "inventory_id", "id")),
        name=raw.get("name") or f"Product {_first(raw, 'inventory_id', 'id')}",
        sku=raw.get("sku"),
        barcode=raw.get("barcode"),
        description=raw.get("description"),
        price=float(_first(raw, "price", "net_price", default=0) or 0),
        cost_price=_first(raw, "cost_price", "cost_per_item"),
        total_stock=int(_first(raw, "total_stock", "quantity", default=0) or 0),
        min_stock=int(_first(raw, "min_stock", "low_stock_threshold", default=0) or 0),
        category_name=_nested_name(raw, "category"),
        supplier_name=_nested_name(raw, "supplier"),
        is_active=bool(_first(raw, "is_active", "is_published", default=True)),
    )


class InventoryConnector(BaseInventoryConnector):
    """
    Connector for the inventory / warehouse REST service.

    Translates HTTP failures into the connector exception hierarchy so the
    engine can tell unreachable endpoints (InventoryConnectionError) from
    per-item problems (InventoryItemNotFoundError, InsufficientStockError).
    """

    def __init__(self, config: Dict[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self.base_url = self._normalize_base_url(self.config["base_url"])
        self.api_token = self.config.get("api_token") or ""

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            follow_redirects=True,
            timeout=self.config.get("timeout", 30.0),
            transport=transport,
        )
        self.headers = {"Content-Type": "application/json"}
        if self.api_token:
            self.headers["Authorization"] = f"Bearer {self.api_token}"

        log.info(f"Inventory connector initialized with base URL: {self.base_url}")

    def _normalize_base_url(self, url: str) -> str:
        url = url.strip()
        if not url.startswith(("http://", "https://")):
            raise ValueError(
                f"Invalid inventory base URL: {url}\n"
                f"URL must start with http:// or https://"
            )
        return url.rstrip("/")

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """
        Helper to make authenticated requests to the inventory API.
        Maps HTTP errors onto the connector exception hierarchy.
        """
        if not path.startswith("/"):
            path = f"/{path}"

        try:
            log.trace(f"Inventory API {method} {self.base_url}{path}")
            response = await self.client.request(method, path, headers=self.headers, **kwargs)
            log.trace(f"Inventory API response: {response.status_code}")
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            url = str(e.request.url)
            detail = self._error_detail(e.response)

            if status == 404:
                error_msg = f"Inventory resource not found: {url}"
                log.warning(error_msg)
                raise InventoryItemNotFoundError(error_msg)

            elif status == 409:
                error_msg = detail or f"Inventory conflict for {url}"
                log.warning(f"Inventory API conflict: {error_msg}")
                raise InsufficientStockError(error_msg)

            elif status == 401:
                error_msg = f"Inventory authentication failed: Invalid API token for {url}"
                log.error(error_msg)
                raise InventoryRequestError(error_msg)

            elif status == 403:
                error_msg = f"Inventory permission denied: Insufficient permissions for {url}"
                log.error(error_msg)
                raise InventoryRequestError(error_msg)

            elif status in (400, 422):
                error_msg = f"Inventory API rejected request to {url}: {detail}"
                log.error(error_msg)
                raise InventoryRequestError(error_msg)

            elif status >= 500:
                error_msg = f"Inventory server error {status} for {url}: {detail}"
                log.error(error_msg)
                raise InventoryRequestError(error_msg)

            else:
                error_msg = f"Inventory HTTP {status} error for {url}: {detail}"
                log.error(error_msg)
                raise InventoryRequestError(error_msg)

        except httpx.RequestError as e:
            error_msg = f"Inventory request error for {e.request.url}: {str(e) or type(e).__name__}"
            log.error(error_msg)
            raise InventoryConnectionError(error_msg)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("message") or body)
        return str(body)

    async def check_connection(self) -> ConnectionStatus:
        try:
            await self._request("GET", "/api/health")
        except InventoryConnectionError as e:
            return ConnectionStatus(connected=False, message=f"Failed to connect: {e}")
        except InventoryItemNotFoundError:
            # Older inventory builds have no health route; the product list proves reachability
            await self._request("GET", "/api/products", params={"limit": 1})
        return ConnectionStatus(connected=True, message="Inventory system connected successfully")

    async def fetch_products(self, warehouse_id: Optional[int] = None) -> List[InventoryProduct]:
        params = {"warehouse_id": warehouse_id} if warehouse_id is not None else None
        response_data = await self._request("GET", "/api/products", params=params)
        if isinstance(response_data, dict):
            response_data = response_data.get("data") or response_data.get("items") or []
        raw_products = response_data or []
        if warehouse_id is not None:
            # Warehouse-scoped listings report the quantity held in that warehouse
            raw_products = [
                {**raw, "total_stock": _first(raw, "warehouse_stock", "total_stock", "quantity", default=0)}
                for raw in raw_products
            ]
        products = [normalize_product(raw) for raw in raw_products]
        scope = f" in warehouse {warehouse_id}" if warehouse_id is not None else ""
        log.info(f"Fetched {len(products)} products from inventory{scope}")
        return products

    async def get_product_stock(self, inventory_id: int, warehouse_id: Optional[int] = None) -> int:
        params = {"warehouse_id": warehouse_id} if warehouse_id is not None else None
        data = await self._request("GET", f"/api/products/{inventory_id}/stock", params=params)
        return int(_first(data or {}, "warehouse_stock", "total_stock", "stock", default=0) or 0)

    async def adjust_stock(self, inventory_id: int, quantity_change: int, action: str, performed_by: str) -> StockAdjustment:
        payload = {
            "quantity_change": quantity_change,
            "action": action,
            "performed_by": performed_by,
        }
        data = await self._request("POST", f"/api/products/{inventory_id}/stock/adjustments", json=payload)
        data = data or {}
        adjustment = StockAdjustment(
            previous_stock=int(_first(data, "previous_stock", "quantity_before", default=0)),
            new_stock=int(_first(data, "new_stock", "quantity_after", default=0)),
            warehouse_id=data.get("warehouse_id"),
        )
        log.debug(f"Adjusted inventory {inventory_id} by {quantity_change} ({action}): {adjustment.previous_stock} -> {adjustment.new_stock}")
        return adjustment

    async def update_product(self, inventory_id: int, fields: Dict[str, Any]) -> Optional[InventoryProduct]:
        payload = {k: v for k, v in fields.items() if k in DESCRIPTIVE_FIELDS}
        if not payload:
            raise ValueError(f"No updatable fields in {sorted(fields)}")
        data = await self._request("PATCH", f"/api/products/{inventory_id}", json=payload)
        if not data:
            # 204 No Content: the update was applied but nothing was echoed back
            log.debug(f"Inventory product {inventory_id} updated without response body")
            return None
        return normalize_product(data)

    async def fetch_variants(self, product_id: int) -> List[ProductVariant]:
        data = await self._request("GET", f"/api/products/{product_id}/variants") or []
        return [
            ProductVariant(
                variant_id=int(_first(raw, "variant_id", "id")),
                name=raw.get("name") or "",
                sku=raw.get("sku"),
                barcode=raw.get("barcode"),
                price=float(_first(raw, "price", "net_price", default=0) or 0),
                cost_price=_first(raw, "cost_price", "cost_per_item"),
                total_stock=int(_first(raw, "total_stock", default=0) or 0),
            )
            for raw in data
        ]

    async def fetch_warehouses(self) -> List[Warehouse]:
        data = await self._request("GET", "/api/warehouses") or []
        return [Warehouse(**raw) for raw in data]

    async def get_warehouse(self, warehouse_id: int) -> Optional[Warehouse]:
        try:
            data = await self._request("GET", f"/api/warehouses/{warehouse_id}")
        except InventoryItemNotFoundError:
            return None
        return Warehouse(**data) if data else None

    async def close(self) -> None:
        await self.client.aclose()
