"""POS product cache reconciled against the inventory system."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, Text

from inventory_sync.database import Base
from inventory_sync.utils.clock import utcnow


class Product(Base):
    """Product as known to the POS ledger."""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(100), nullable=True, index=True)
    barcode = Column(String(100), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Inventory is authoritative for these
    price = Column(Float, nullable=False, default=0.0)
    cost_price = Column(Float, nullable=True)
    stock = Column(Integer, nullable=False, default=0)
    min_stock = Column(Integer, nullable=False, default=0)

    category_name = Column(String(100), nullable=True)
    supplier_name = Column(String(100), nullable=True)

    # Inventory product id this row is linked to
    stock_item_id = Column(String(50), nullable=True, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Product(id={self.id}, sku='{self.sku}', stock_item_id='{self.stock_item_id}', stock={self.stock})>"
