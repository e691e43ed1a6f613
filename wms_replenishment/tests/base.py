"""
Shared fixtures for database-backed tests.
"""
import unittest

from sqlalchemy.orm import sessionmaker

from wms_replenishment.db import build_engine
from wms_replenishment.events import bus
from wms_replenishment.models import (
    Base, LocationType, Product, ProductVariant, ReplenRule, ReplenTierDefault,
    Warehouse, WarehouseLocation, WarehouseSettings
)
from wms_replenishment.services.inventory_ledger import InventoryLedger


class DatabaseTestCase(unittest.TestCase):
    """Runs each test against a fresh in-memory SQLite schema."""

    def setUp(self):
        self.engine = build_engine('sqlite://')
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, autoflush=False)
        self.session = self.Session()
        self.ledger = InventoryLedger(self.session)
        bus.clear()

    def tearDown(self):
        bus.clear()
        self.session.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    # Fixture builders

    def add(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def make_warehouse(self, code='WH1'):
        return self.add(Warehouse(code=code, name=f"Warehouse {code}"))

    def make_location(self, warehouse, code, location_type=LocationType.PICK, **kwargs):
        kwargs.setdefault('is_pickable', str(location_type) == LocationType.PICK.value)
        return self.add(WarehouseLocation(
            warehouse_id=warehouse.id,
            code=code,
            location_type=str(location_type),
            **kwargs
        ))

    def make_product(self, sku='WIDGET', levels=((1, 1), (2, 12), (3, 144)), dims=None):
        """Create a product with one variant per (hierarchy_level, units_per_variant).

        Returns:
            List of variants ordered by hierarchy level
        """
        product = self.add(Product(sku=sku, name=sku.title()))
        variants = []
        parent = None
        names = {1: 'each', 2: 'box', 3: 'pallet', 4: 'container'}
        # Build top-down so each variant can point at its parent
        for level, upv in sorted(levels, reverse=True):
            variant = ProductVariant(
                product_id=product.id,
                sku=f"{sku}-{names.get(level, level)}".upper(),
                name=f"{sku} {names.get(level, level)}",
                units_per_variant=upv,
                hierarchy_level=level,
                parent_variant_id=parent.id if parent else None
            )
            if dims and level in dims:
                variant.width_mm, variant.height_mm, variant.length_mm = dims[level]
            self.add(variant)
            variants.append(variant)
            parent = variant
        variants.reverse()
        return variants

    def make_tier(self, hierarchy_level=1, **kwargs):
        kwargs.setdefault('auto_replen', 0)
        return self.add(ReplenTierDefault(hierarchy_level=hierarchy_level, **kwargs))

    def make_rule(self, pick_variant, **kwargs):
        return self.add(ReplenRule(
            product_id=pick_variant.product_id,
            pick_product_variant_id=pick_variant.id,
            **kwargs
        ))

    def make_settings(self, warehouse=None, replen_mode='queue', **kwargs):
        return self.add(WarehouseSettings(
            warehouse_id=warehouse.id if warehouse else None,
            replen_mode=replen_mode,
            **kwargs
        ))

    def stock(self, variant, location, qty):
        self.ledger.receive_inventory(variant.id, location.id, qty, reference_id='TEST')

    def on_hand(self, variant, location):
        return self.ledger.get_on_hand(variant.id, location.id)
