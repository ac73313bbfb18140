from typing import Any, List, Literal, Optional, Union

from pydantic import Field

from inventory_sync.schemas.base import CamelModel


class StockUpdate(CamelModel):
    inventory_id: int = Field(..., description="Inventory product identifier")
    quantity_change: int = Field(..., description="Signed delta; negative for sales")
    action: str = Field("adjustment", description="Classification tag: sale, refund, adjustment, ...")
    product_name: Optional[str] = None
    sale_id: Optional[Any] = None
    item_id: Optional[Any] = None


class StockUpdateResult(StockUpdate):
    success: bool
    previous_stock: Optional[int] = None
    new_stock: Optional[int] = None
    applied_change: int = Field(0, description="Delta actually applied; 0 when the item failed")
    warehouse_id: Optional[int] = None
    error: Optional[str] = None


class BulkSummary(CamelModel):
    success_count: int = 0
    failed_count: int = 0
    total: int = 0


class BulkUpdateResult(CamelModel):
    results: List[StockUpdateResult] = Field(default_factory=list)
    summary: BulkSummary = Field(default_factory=BulkSummary)


class StockPullResult(CamelModel):
    inventory_id: int
    success: bool
    stock: Optional[int] = None
    product_id: Optional[int] = None
    error: Optional[str] = None


class SaleProduct(CamelModel):
    id: Optional[int] = None
    name: Optional[str] = None
    stock_item_id: Optional[Union[int, str]] = None


class SaleLine(CamelModel):
    id: Optional[Any] = None
    quantity: int = Field(..., gt=0)
    product: SaleProduct


class SaleData(CamelModel):
    id: Any
    type: Literal["sale", "refund"] = "sale"
    items: List[SaleLine] = Field(default_factory=list)


class SaleItemValidation(CamelModel):
    inventory_id: int
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    available_stock: Optional[int] = None
    requested_quantity: int
    sufficient: bool
    deficit: int = 0
    error: Optional[str] = None


class SaleValidationResult(CamelModel):
    """Availability of every inventory-linked sale line, optionally in one warehouse."""
    valid: bool
    warehouse_id: Optional[int] = None
    validations: List[SaleItemValidation] = Field(default_factory=list)
    total_items: int = 0
    insufficient_items: int = 0
    unlinked_items: int = 0
