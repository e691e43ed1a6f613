"""
Tests for the batch job, the command line and input validation helpers.
"""
import io
import unittest
from contextlib import contextmanager, redirect_stdout
from unittest.mock import patch

from wms_replenishment import main as cli
from wms_replenishment.batch import replen_job
from wms_replenishment.exceptions import BatchProcessError, ValidationError
from wms_replenishment.models import LocationType, ProductVariant, ReplenTask, TaskStatus, WarehouseLocation
from wms_replenishment.tests.base import DatabaseTestCase
from wms_replenishment.utils.validation import (
    validate_exception_reason, validate_location, validate_nonzero_delta,
    validate_positive_qty, validate_replen_method, validate_variant
)


class ScopedTestCase(DatabaseTestCase):
    """Routes module-level session_scope() calls to the test session."""

    def setUp(self):
        super().setUp()
        self.warehouse = self.make_warehouse()
        self.each, self.box, _ = self.make_product()
        self.pick = self.make_location(self.warehouse, 'P-01')
        self.reserve = self.make_location(self.warehouse, 'R-01', LocationType.RESERVE)
        self.make_tier(1, trigger_value=5, max_qty=20)
        self.stock(self.each, self.pick, 3)
        self.stock(self.box, self.reserve, 2)

    @contextmanager
    def scope(self):
        try:
            yield self.session
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise


class TestReplenJob(ScopedTestCase):
    def test_threshold_run(self):
        with patch.object(replen_job, 'session_scope', self.scope):
            results = replen_job.run_replen_job(warehouse_id=self.warehouse.id)

        self.assertTrue(results['success'])
        self.assertEqual(results['processes']['check_thresholds']['created'], 1)
        self.assertIsNotNone(results['duration'])
        self.assertEqual(results['end_time'], results['start_time'] + results['duration'])

    def test_capacity_run(self):
        with patch.object(replen_job, 'session_scope', self.scope):
            results = replen_job.run_replen_job(with_capacity=True)

        self.assertIn('generate_tasks', results['processes'])
        self.assertEqual(self.session.query(ReplenTask).count(), 1)

    def test_failure_reported(self):
        @contextmanager
        def broken_scope():
            raise RuntimeError('database unavailable')
            yield

        with patch.object(replen_job, 'session_scope', broken_scope), \
                patch.object(replen_job, 'log_exception') as log_exception:
            results = replen_job.run_replen_job()
            self.assertFalse(results['success'])
            self.assertEqual(results['error'], 'database unavailable')
            self.assertEqual(log_exception.call_args[0][0], 'replen_job')

            with self.assertRaises(BatchProcessError):
                replen_job.run_replen_job(fail_on_errors=True)


class TestCommandLine(ScopedTestCase):
    def run_cli(self, *argv):
        out = io.StringIO()
        with patch.object(cli, 'session_scope', self.scope), \
                patch.object(cli, 'init_application', return_value=True), \
                redirect_stdout(out):
            code = cli.main(list(argv))
        return code, out.getvalue()

    def test_parser(self):
        args = cli.build_parser().parse_args(['execute', '7', '--user', 'alice'])
        self.assertEqual(args.task_id, 7)
        self.assertEqual(args.user, 'alice')

        args = cli.build_parser().parse_args(['tasks', '--status', 'blocked'])
        self.assertEqual(args.status, 'blocked')
        self.assertIsNone(args.warehouse_id)

    def test_scan_then_list_then_execute(self):
        code, output = self.run_cli('scan')
        self.assertEqual(code, 0)
        self.assertIn('created', output)

        code, output = self.run_cli('tasks')
        self.assertEqual(code, 0)
        self.assertIn('Total Tasks: 1', output)

        task = self.session.query(ReplenTask).one()
        code, output = self.run_cli('execute', str(task.id), '--user', 'alice')
        self.assertEqual(code, 0)
        self.assertEqual(self.session.get(ReplenTask, task.id).status, TaskStatus.COMPLETED.value)

    def test_cancel_unknown_task_fails(self):
        code, _ = self.run_cli('cancel', '404')
        self.assertEqual(code, 1)

    def test_no_command_prints_help(self):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(cli.main([]), 1)


class TestValidation(unittest.TestCase):
    def test_quantities(self):
        self.assertEqual(validate_positive_qty(3), 3)
        for bad in (0, -1, 1.5, True, None):
            with self.assertRaises(ValidationError):
                validate_positive_qty(bad)

        self.assertEqual(validate_nonzero_delta(-4), -4)
        with self.assertRaises(ValidationError):
            validate_nonzero_delta(0)

    def test_enumerations(self):
        self.assertEqual(validate_replen_method('pallet_drop'), 'pallet_drop')
        self.assertEqual(validate_exception_reason('wrong_product'), 'wrong_product')
        with self.assertRaises(ValidationError):
            validate_replen_method('drone_drop')

    def test_validate_variant(self):
        variant = ProductVariant(product_id=1, units_per_variant=12, hierarchy_level=2)
        self.assertEqual(validate_variant(variant), {})

        errors = validate_variant(ProductVariant(units_per_variant=0, hierarchy_level=0))
        self.assertEqual(set(errors), {'product_id', 'units_per_variant', 'hierarchy_level'})

    def test_validate_location(self):
        self.assertEqual(validate_location(WarehouseLocation(code='P-01', warehouse_id=1)), {})
        self.assertEqual(set(validate_location(WarehouseLocation())), {'code', 'warehouse_id'})


if __name__ == '__main__':
    unittest.main()
