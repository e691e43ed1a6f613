"""
Tests for policy resolution and replenishment arithmetic.
"""
import unittest

from wms_replenishment.core.policy import (
    PolicyDefaults, PolicyLayer, ReplenSettings, calculate_replen_quantities,
    calculate_velocity, convert_case_break, needs_replenishment,
    resolve_auto_execute, resolve_policy, with_overrides
)
from wms_replenishment.exceptions import ValidationError


class TestResolvePolicy(unittest.TestCase):
    def test_first_non_null_layer_wins_per_field(self):
        layers = [
            PolicyLayer(name='location_variant', trigger_value=3),
            PolicyLayer(name='location', trigger_value=7, max_qty=40),
            PolicyLayer(name='rule', max_qty=30, replen_method='case_break', auto_replen=2, record_id=11),
            PolicyLayer(name='tier', trigger_value=10, max_qty=20, replen_method='full_case',
                        source_location_type='bulk', priority=2, auto_replen=1),
        ]

        policy = resolve_policy(layers)

        self.assertEqual(policy.trigger_value, 3)
        self.assertEqual(policy.trigger_layer, 'location_variant')
        self.assertEqual(policy.max_qty, 40)
        self.assertEqual(policy.replen_method, 'case_break')
        self.assertEqual(policy.source_location_type, 'bulk')
        self.assertEqual(policy.priority, 2)
        self.assertEqual(policy.rule_auto_replen, 2)
        self.assertEqual(policy.tier_auto_replen, 1)
        self.assertEqual(policy.rule_id, 11)

    def test_defaults_when_no_layer_defines_field(self):
        policy = resolve_policy([PolicyLayer(name='tier', trigger_value=5)])

        self.assertEqual(policy.replen_method, 'full_case')
        self.assertEqual(policy.source_location_type, 'reserve')
        self.assertEqual(policy.source_priority, 'fifo')
        self.assertEqual(policy.priority, 5)
        self.assertIsNone(policy.max_qty)
        self.assertIsNone(policy.rule_id)

    def test_custom_defaults(self):
        policy = resolve_policy([], PolicyDefaults(replen_method='case_break', priority=9))

        self.assertFalse(policy.has_trigger)
        self.assertEqual(policy.replen_method, 'case_break')
        self.assertEqual(policy.priority, 9)

    def test_zero_trigger_is_a_value(self):
        policy = resolve_policy([
            PolicyLayer(name='location', trigger_value=0),
            PolicyLayer(name='tier', trigger_value=5),
        ])
        self.assertEqual(policy.trigger_value, 0)

    def test_with_overrides(self):
        policy = resolve_policy([PolicyLayer(name='tier', trigger_value=5)])

        self.assertEqual(with_overrides(policy, max_qty=12).max_qty, 12)
        with self.assertRaises(ValidationError):
            with_overrides(policy, bogus=1)


class TestResolveAutoExecute(unittest.TestCase):
    def test_rule_override_wins(self):
        decision = resolve_auto_execute(1, 2, ReplenSettings(replen_mode='queue'), 500)
        self.assertTrue(decision.should_auto_execute)
        self.assertEqual(decision.execution_mode, 'inline')
        self.assertEqual(decision.decided_by, 'rule')

        decision = resolve_auto_execute(2, 1, ReplenSettings(replen_mode='inline'), 1)
        self.assertFalse(decision.should_auto_execute)
        self.assertEqual(decision.execution_mode, 'queue')

    def test_tier_override_when_rule_defers(self):
        for rule_value in (None, 0):
            decision = resolve_auto_execute(rule_value, 1, ReplenSettings(replen_mode='queue'), 10)
            self.assertTrue(decision.should_auto_execute)
            self.assertEqual(decision.decided_by, 'tier')

    def test_settings_modes(self):
        self.assertTrue(resolve_auto_execute(None, 0, ReplenSettings(replen_mode='inline'), 999).should_auto_execute)
        self.assertFalse(resolve_auto_execute(None, 0, ReplenSettings(replen_mode='queue'), 1).should_auto_execute)

    def test_hybrid_threshold_is_inclusive(self):
        settings = ReplenSettings(replen_mode='hybrid', inline_replen_max_units=50)

        self.assertTrue(resolve_auto_execute(None, None, settings, 50).should_auto_execute)
        self.assertFalse(resolve_auto_execute(None, None, settings, 51).should_auto_execute)

    def test_hybrid_defaults_to_fifty(self):
        settings = ReplenSettings(replen_mode='hybrid', inline_replen_max_units=None)

        self.assertTrue(resolve_auto_execute(None, None, settings, 50).should_auto_execute)
        self.assertFalse(resolve_auto_execute(None, None, settings, 51).should_auto_execute)

    def test_missing_settings_queue(self):
        decision = resolve_auto_execute(None, None, None, 1)
        self.assertFalse(decision.should_auto_execute)
        self.assertEqual(decision.execution_mode, 'queue')


class TestNeedsReplenishment(unittest.TestCase):
    def test_unit_threshold_is_inclusive(self):
        self.assertTrue(needs_replenishment('case_break', 5, 5))
        self.assertTrue(needs_replenishment('full_case', 4, 5))
        self.assertFalse(needs_replenishment('full_case', 6, 5))

    def test_zero_trigger_fires_on_empty(self):
        self.assertTrue(needs_replenishment('case_break', 0, 0))
        self.assertFalse(needs_replenishment('case_break', 1, 0))

    def test_no_trigger_never_fires(self):
        self.assertFalse(needs_replenishment('full_case', -10, None))

    def test_pallet_drop_coverage_days(self):
        # 30 units at 10/day is 3 days of cover
        self.assertTrue(needs_replenishment('pallet_drop', 30, 4, velocity=10))
        self.assertFalse(needs_replenishment('pallet_drop', 30, 3, velocity=10))

    def test_pallet_drop_without_velocity_skips(self):
        self.assertFalse(needs_replenishment('pallet_drop', 0, 5, velocity=0))
        self.assertFalse(needs_replenishment('pallet_drop', 0, 5, velocity=None))

    def test_calculate_velocity(self):
        self.assertEqual(calculate_velocity(28, 14), 2)
        self.assertEqual(calculate_velocity(-28, 14), 2)
        with self.assertRaises(ValidationError):
            calculate_velocity(10, 0)


class TestQuantities(unittest.TestCase):
    def test_full_case_scenario(self):
        # on-hand 3, max 20, cases of 12, two cases available
        self.assertEqual(calculate_replen_quantities(3, 5, 20, 1, 12, 2), (2, 24))

    def test_fallback_to_twice_trigger(self):
        self.assertEqual(calculate_replen_quantities(2, 5, None, 1, 4), (2, 8))

    def test_at_least_one_source_unit(self):
        self.assertEqual(calculate_replen_quantities(30, 5, 20, 1, 12), (1, 12))

    def test_capped_by_availability(self):
        self.assertEqual(calculate_replen_quantities(0, 5, 100, 1, 12, 3), (3, 36))
        self.assertEqual(calculate_replen_quantities(0, 5, 100, 1, 12, 0), (0, 0))

    def test_target_in_pick_units(self):
        # boxes of 6 feeding packs of 4: 3 boxes give 18 base units, 4 packs
        self.assertEqual(calculate_replen_quantities(0, 1, 4, 4, 6), (3, 4))

    def test_convert_case_break(self):
        self.assertEqual(convert_case_break(5, 12, 5), (12, 0))
        self.assertEqual(convert_case_break(1, 12, 5), (2, 2))
        self.assertEqual(convert_case_break(0, 12, 1), (0, 0))

    def test_convert_case_break_conserves_base_units(self):
        for source_units, source_upv, pick_upv in ((3, 7, 2), (10, 24, 5), (1, 144, 12)):
            pick_units, remainder = convert_case_break(source_units, source_upv, pick_upv)
            self.assertEqual(pick_units, (source_units * source_upv) // pick_upv)
            self.assertEqual(pick_units * pick_upv + remainder, source_units * source_upv)

    def test_convert_case_break_validation(self):
        with self.assertRaises(ValidationError):
            convert_case_break(-1, 12, 1)
        with self.assertRaises(ValidationError):
            convert_case_break(1, 0, 1)


if __name__ == '__main__':
    unittest.main()
