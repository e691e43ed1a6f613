"""
Tests for the source locator.
"""
import unittest
from datetime import datetime, timedelta

from wms_replenishment.models import LocationType, SourcePriority
from wms_replenishment.services.source_locator import SourceLocator
from wms_replenishment.tests.base import DatabaseTestCase


class TestSourceLocator(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.warehouse = self.make_warehouse()
        self.other_warehouse = self.make_warehouse('WH2')
        self.each, self.box, self.pallet = self.make_product()
        self.reserve_a = self.make_location(self.warehouse, 'R-A', LocationType.RESERVE)
        self.reserve_b = self.make_location(self.warehouse, 'R-B', LocationType.RESERVE)
        self.pick = self.make_location(self.warehouse, 'P-01', parent_location_id=self.reserve_b.id)
        self.locator = SourceLocator(self.session)

    def age(self, variant, location, days):
        level = self.ledger.get_level(variant.id, location.id)
        level.updated_at = datetime.now() - timedelta(days=days)
        self.session.commit()

    def find(self, **kwargs):
        params = dict(
            variant_id=self.box.id,
            warehouse_id=self.warehouse.id,
            source_location_type=LocationType.RESERVE.value
        )
        params.update(kwargs)
        return self.locator.find_source_location(**params)

    def test_no_stock_returns_none(self):
        self.assertIsNone(self.find())

    def test_fifo_prefers_oldest_stock(self):
        self.stock(self.box, self.reserve_a, 10)
        self.stock(self.box, self.reserve_b, 2)
        self.age(self.box, self.reserve_a, 1)
        self.age(self.box, self.reserve_b, 5)

        match = self.find(source_priority=SourcePriority.FIFO.value)

        self.assertEqual(match.location.id, self.reserve_b.id)
        self.assertEqual(match.available_qty, 2)

    def test_smallest_first(self):
        self.stock(self.box, self.reserve_a, 3)
        self.stock(self.box, self.reserve_b, 8)

        match = self.find(source_priority=SourcePriority.SMALLEST_FIRST.value)

        self.assertEqual(match.location_id, self.reserve_a.id)
        self.assertEqual(match.available_qty, 3)

    def test_dedicated_parent_wins(self):
        self.stock(self.box, self.reserve_a, 1)
        self.stock(self.box, self.reserve_b, 50)
        self.age(self.box, self.reserve_a, 10)

        match = self.find(
            parent_location_id=self.reserve_b.id,
            source_priority=SourcePriority.SMALLEST_FIRST.value
        )

        self.assertEqual(match.location.id, self.reserve_b.id)

    def test_empty_parent_falls_back_to_scan(self):
        self.stock(self.box, self.reserve_a, 4)

        match = self.find(parent_location_id=self.reserve_b.id)

        self.assertEqual(match.location.id, self.reserve_a.id)

    def test_excluded_location_never_returned(self):
        self.stock(self.box, self.reserve_a, 4)

        self.assertIsNone(self.find(exclude_location_id=self.reserve_a.id))
        self.assertIsNone(self.find(parent_location_id=self.reserve_a.id, exclude_location_id=self.reserve_a.id))

    def test_filters_type_and_warehouse(self):
        self.stock(self.box, self.pick, 9)
        other_reserve = self.make_location(self.other_warehouse, 'R-X', LocationType.RESERVE)
        self.stock(self.box, other_reserve, 9)

        self.assertIsNone(self.find())
        self.assertEqual(self.find(warehouse_id=None).location.id, other_reserve.id)

    def test_ignores_non_positive_stock(self):
        self.stock(self.box, self.reserve_a, 2)
        self.ledger.adjust_inventory(self.box.id, self.reserve_a.id, -3, reason='lost')

        self.assertIsNone(self.find())


if __name__ == '__main__':
    unittest.main()
