from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

from pydantic import Field

from inventory_sync.schemas.base import CamelModel
from inventory_sync.schemas.sync import ConnectionStatus


class InventoryProduct(CamelModel):
    """Product as reported by the inventory system of record."""
    inventory_id: int = Field(..., description="Product ID in the inventory system")
    name: str = Field(..., description="Product name")
    sku: Optional[str] = Field(None, description="Stock keeping unit")
    barcode: Optional[str] = Field(None, description="Barcode / EAN")
    description: Optional[str] = Field(None, description="Free-text description")
    price: float = Field(0.0, description="Net selling price")
    cost_price: Optional[float] = Field(None, description="Cost per item")
    total_stock: int = Field(0, description="Quantity summed over all warehouses")
    min_stock: int = Field(0, description="Low stock threshold")
    category_name: Optional[str] = None
    supplier_name: Optional[str] = None
    is_active: bool = Field(True, description="Published in the inventory system")


class StockAdjustment(CamelModel):
    previous_stock: int
    new_stock: int
    warehouse_id: Optional[int] = None


class ProductVariant(CamelModel):
    variant_id: int
    name: str
    sku: Optional[str] = None
    barcode: Optional[str] = None
    price: float = 0.0
    cost_price: Optional[float] = None
    total_stock: int = 0


class Warehouse(CamelModel):
    id: int
    name: str
    type: Optional[str] = None
    location: Optional[str] = None
    is_active: bool = True


class BaseInventoryConnector(ABC):
    """Abstract Base Class for inventory system connectors."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    async def check_connection(self) -> ConnectionStatus:
        """Checks that the inventory system is reachable and healthy."""
        pass

    @abstractmethod
    async def fetch_products(self, warehouse_id: Optional[int] = None) -> List[InventoryProduct]:
        """
        Fetches all non-deleted products with their aggregated stock.

        With a warehouse_id only the products stocked in that warehouse are
        returned and ``total_stock`` is the quantity held there.
        """
        pass

    @abstractmethod
    async def get_product_stock(self, inventory_id: int, warehouse_id: Optional[int] = None) -> int:
        """Returns the total stock of one product, or its stock in one warehouse."""
        pass

    @abstractmethod
    async def adjust_stock(self, inventory_id: int, quantity_change: int, action: str, performed_by: str) -> StockAdjustment:
        """Applies a signed stock delta to one product."""
        pass

    @abstractmethod
    async def update_product(self, inventory_id: int, fields: Dict[str, Any]) -> Optional[InventoryProduct]:
        """Updates descriptive fields of one product; None when the API returns no body."""
        pass

    @abstractmethod
    async def fetch_variants(self, product_id: int) -> List[ProductVariant]:
        pass

    @abstractmethod
    async def fetch_warehouses(self) -> List[Warehouse]:
        pass

    async def get_warehouse(self, warehouse_id: int) -> Optional[Warehouse]:
        for warehouse in await self.fetch_warehouses():
            if warehouse.id == int(warehouse_id):
                return warehouse
        return None

    async def close(self) -> None:
        pass
