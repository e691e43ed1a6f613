"""
Tests for cascade replenishment through the packaging hierarchy.
"""
import unittest
from unittest.mock import patch

from wms_replenishment.exceptions import InsufficientStockError, TaskStateError
from wms_replenishment.models import LocationType, ReplenTask, TaskStatus, TriggeredBy
from wms_replenishment.services.replenishment_service import ReplenishmentService
from wms_replenishment.tests.base import DatabaseTestCase


class TestCascadeReplenishment(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.warehouse = self.make_warehouse()
        self.each, self.box, self.pallet = self.make_product()
        self.pick = self.make_location(self.warehouse, 'P-01')
        self.reserve = self.make_location(self.warehouse, 'R-01', LocationType.RESERVE)
        self.make_tier(1, trigger_value=5, max_qty=20, replen_method='case_break')
        self.service = ReplenishmentService(self.session, ledger=self.ledger)

        self.stock(self.each, self.pick, 3)

    def cascade_pair(self):
        upstream = self.session.query(ReplenTask).filter_by(triggered_by=TriggeredBy.CASCADE.value).one()
        downstream = self.session.query(ReplenTask).filter_by(depends_on_task_id=upstream.id).one()
        return upstream, downstream

    def test_cascade_creates_linked_tasks(self):
        self.stock(self.pallet, self.reserve, 1)

        result = self.service.check_thresholds()

        self.assertEqual(result['created'], 1)
        self.assertEqual(result['blocked'], 0)
        upstream, downstream = self.cascade_pair()

        self.assertEqual(upstream.source_product_variant_id, self.pallet.id)
        self.assertEqual(upstream.pick_product_variant_id, self.box.id)
        self.assertEqual(upstream.from_location_id, self.reserve.id)
        self.assertEqual(upstream.to_location_id, self.reserve.id)
        self.assertEqual(upstream.qty_source_units, 1)
        self.assertEqual(upstream.qty_target_units, 12)
        self.assertEqual(upstream.replen_method, 'case_break')
        self.assertEqual(upstream.status, TaskStatus.PENDING.value)

        self.assertEqual(downstream.status, TaskStatus.BLOCKED.value)
        self.assertEqual(downstream.source_product_variant_id, self.box.id)
        self.assertEqual(downstream.pick_product_variant_id, self.each.id)
        self.assertEqual(downstream.from_location_id, self.reserve.id)
        self.assertEqual(downstream.to_location_id, self.pick.id)
        self.assertEqual(downstream.qty_source_units, 2)
        self.assertEqual(downstream.qty_target_units, 24)

    def test_upstream_completion_releases_downstream(self):
        self.stock(self.pallet, self.reserve, 1)
        self.service.check_thresholds()
        upstream, downstream = self.cascade_pair()

        result = self.service.execute_task(upstream.id)

        self.assertEqual(result['unblocked'], [downstream.id])
        self.assertEqual(result['auto_executed'], [])
        self.assertEqual(self.on_hand(self.pallet, self.reserve), 0)
        self.assertEqual(self.on_hand(self.box, self.reserve), 12)
        self.assertEqual(self.service.get_task(downstream.id).status, TaskStatus.PENDING.value)

        self.service.execute_task(downstream.id)

        self.assertEqual(self.on_hand(self.each, self.pick), 27)
        self.assertEqual(self.on_hand(self.box, self.reserve), 10)

    def test_blocked_downstream_cannot_run_first(self):
        self.stock(self.pallet, self.reserve, 1)
        self.service.check_thresholds()
        _, downstream = self.cascade_pair()

        with self.assertRaises(TaskStateError):
            self.service.execute_task(downstream.id)

    def test_scan_leaves_dependent_task_alone(self):
        self.stock(self.pallet, self.reserve, 1)
        self.service.check_thresholds()

        result = self.service.check_thresholds()

        self.assertEqual(result['created'], 0)
        self.assertEqual(result['unblocked'], 0)
        self.assertEqual(self.session.query(ReplenTask).count(), 2)

    def test_inline_cascade_runs_end_to_end(self):
        self.make_settings(self.warehouse, replen_mode='inline')
        self.stock(self.pallet, self.reserve, 1)

        result = self.service.check_thresholds()

        self.assertEqual(result['auto_executed'], 1)
        upstream, downstream = self.cascade_pair()
        self.assertEqual(upstream.status, TaskStatus.COMPLETED.value)
        self.assertEqual(self.service.get_task(downstream.id).status, TaskStatus.COMPLETED.value)
        self.assertEqual(self.on_hand(self.each, self.pick), 27)
        self.assertEqual(self.on_hand(self.box, self.reserve), 10)

    def test_blocked_task_converted_to_cascade(self):
        self.service.check_thresholds()
        blocked = self.session.query(ReplenTask).one()
        self.assertEqual(blocked.status, TaskStatus.BLOCKED.value)
        self.assertIsNone(blocked.depends_on_task_id)

        self.stock(self.pallet, self.reserve, 1)
        result = self.service.check_thresholds()

        self.assertEqual(result['unblocked'], 1)
        upstream, downstream = self.cascade_pair()
        self.assertEqual(downstream.id, blocked.id)
        self.assertEqual(downstream.status, TaskStatus.BLOCKED.value)
        self.assertEqual(downstream.qty_source_units, 2)
        self.assertIn(f"Waiting on cascade task #{upstream.id}", downstream.notes)

    def test_cancel_upstream_cancels_downstream(self):
        self.stock(self.pallet, self.reserve, 1)
        self.service.check_thresholds()
        upstream, downstream = self.cascade_pair()

        self.service.cancel_task(upstream.id, user_id='erin')

        self.assertEqual(self.service.get_task(downstream.id).status, TaskStatus.CANCELLED.value)

    def failed_inline_cascade(self):
        self.make_settings(self.warehouse, replen_mode='inline')
        self.stock(self.pallet, self.reserve, 1)
        with patch.object(self.ledger, 'break_case', side_effect=InsufficientStockError('pallet missing')):
            self.service.check_thresholds()

        upstream, downstream = self.cascade_pair()
        self.assertEqual(upstream.status, TaskStatus.BLOCKED.value)
        self.assertEqual(downstream.status, TaskStatus.BLOCKED.value)
        return upstream, downstream

    def test_failed_upstream_is_replaced_by_scan(self):
        upstream, downstream = self.failed_inline_cascade()
        second = self.make_location(self.warehouse, 'R-02', LocationType.RESERVE)
        self.stock(self.pallet, second, 1)

        result = self.service.check_thresholds()

        self.assertEqual(result['unblocked'], 1)
        self.assertEqual(self.service.get_task(upstream.id).status, TaskStatus.CANCELLED.value)
        self.assertIn(f"downstream task #{downstream.id} re-sourced", upstream.notes)
        task = self.service.get_task(downstream.id)
        self.assertEqual(task.status, TaskStatus.COMPLETED.value)
        self.assertNotEqual(task.depends_on_task_id, upstream.id)
        self.assertIn(f"Upstream task #{upstream.id} did not complete", task.notes)
        self.assertEqual(self.on_hand(self.each, self.pick), 27)

    def test_failed_upstream_is_replaced_after_pick(self):
        upstream, downstream = self.failed_inline_cascade()

        task = self.service.check_and_trigger_after_pick(self.each.id, self.pick.id)

        self.assertEqual(task.id, downstream.id)
        self.assertEqual(task.status, TaskStatus.COMPLETED.value)
        self.assertEqual(self.service.get_task(upstream.id).status, TaskStatus.CANCELLED.value)
        self.assertEqual(self.on_hand(self.each, self.pick), 27)

    def test_live_upstream_keeps_dependency(self):
        self.stock(self.pallet, self.reserve, 1)
        self.service.check_thresholds()
        upstream, downstream = self.cascade_pair()

        self.assertIsNone(self.service.check_and_trigger_after_pick(self.each.id, self.pick.id))
        self.assertEqual(self.service.get_task(downstream.id).depends_on_task_id, upstream.id)

    def test_orphaned_upstream_cancelled(self):
        self.stock(self.pallet, self.reserve, 1)
        self.service.check_thresholds()
        upstream, downstream = self.cascade_pair()
        self.service.report_exception(upstream.id, 'damaged')
        self.service.cancel_task(downstream.id)
        self.ledger.adjust_inventory(self.each.id, self.pick.id, 20, reason='found stock')

        result = self.service.check_thresholds()

        self.assertEqual(result['cancelled'], 1)
        self.assertEqual(result['tasks'], [upstream.id])
        upstream = self.service.get_task(upstream.id)
        self.assertEqual(upstream.status, TaskStatus.CANCELLED.value)
        self.assertIn('No downstream task waiting', upstream.notes)

    def test_no_cascade_from_top_level(self):
        self.assertIsNone(self.service.try_cascade_replen(
            self.box, self.pick, self.pallet,
            self.service.policy_service.resolve(self.box, self.pick),
            self.service.policy_service.get_settings(self.warehouse.id),
            self.service._load_hierarchy([self.each.product_id])
        ))


if __name__ == '__main__':
    unittest.main()
