#!/usr/bin/env python
"""
Seed script for a demo POS product cache and the default sync settings.
Run with: pip install -e . && python backend/scripts/seed_products.py
Uses DATABASE_URL from .env (defaults to a local SQLite file).
"""

from inventory_sync.config import settings
from inventory_sync.database import SessionLocal, init_db
from inventory_sync.models.product import Product
from inventory_sync.services.sync_config import SyncConfigService

DEMO_PRODUCTS = [
    # linked to inventory products 1-3, unlinked local item last
    {"name": "Espresso beans 1kg", "sku": "COF-001", "barcode": "4006381333931", "price": 18.9, "stock": 12, "stock_item_id": "1"},
    {"name": "Oat milk 1l", "sku": "MLK-002", "barcode": "4006381333948", "price": 2.49, "stock": 40, "stock_item_id": "2"},
    {"name": "Paper cups (50)", "sku": "CUP-003", "price": 4.2, "stock": 25, "stock_item_id": "3"},
    {"name": "House cake slice", "sku": None, "price": 3.5, "stock": 0, "stock_item_id": None},
]


def seed_products():
    init_db()
    db = SessionLocal()
    try:
        if db.query(Product).count() > 0:
            print("Products already exist. Skipping seed.")
            return

        for data in DEMO_PRODUCTS:
            product = Product(**data)
            db.add(product)
            print(f"Created demo product: {product.name} (inventory id: {product.stock_item_id or '-'})")
        db.commit()
    except Exception as e:
        db.rollback()
        print(f"Error seeding products: {e}")
        raise
    finally:
        db.close()

    created = SyncConfigService(SessionLocal, settings).initialize_default_settings()
    print(f"Initialized {created} default sync settings")
    print("Demo data seeded successfully.")


if __name__ == "__main__":
    seed_products()
