# wms_replenishment/core/policy.py
"""Replenishment policy resolution.

Policy comes from an ordered list of typed layers, most specific first:
location config (variant-specific), location config (location-wide),
SKU rule, tier default. Each layer answers every field with a value or
None; the first non-None answer wins.
"""
import math
from dataclasses import dataclass, fields, replace
from typing import Iterable, Optional, Sequence, Tuple

from ..exceptions import ValidationError
from ..models import AutoReplen, ExecutionMode, ReplenMethod, ReplenMode, SourcePriority

POLICY_FIELDS = (
    'trigger_value',
    'max_qty',
    'replen_method',
    'source_location_type',
    'source_priority',
    'source_variant_id',
    'source_hierarchy_level',
    'priority',
)


@dataclass(frozen=True)
class PolicyLayer:
    """One source of policy values. None means the layer has no opinion."""
    name: str
    trigger_value: Optional[float] = None
    max_qty: Optional[int] = None
    replen_method: Optional[str] = None
    source_location_type: Optional[str] = None
    source_priority: Optional[str] = None
    source_variant_id: Optional[int] = None
    source_hierarchy_level: Optional[int] = None
    priority: Optional[int] = None
    auto_replen: Optional[int] = None
    record_id: Optional[int] = None

    def value(self, field_name: str):
        return getattr(self, field_name)


@dataclass(frozen=True)
class EffectivePolicy:
    trigger_value: Optional[float]
    max_qty: Optional[int]
    replen_method: str
    source_location_type: str
    source_priority: str
    source_variant_id: Optional[int]
    source_hierarchy_level: Optional[int]
    priority: int
    trigger_layer: Optional[str] = None
    rule_auto_replen: Optional[int] = None
    tier_auto_replen: Optional[int] = None
    rule_id: Optional[int] = None

    @property
    def has_trigger(self) -> bool:
        return self.trigger_value is not None


@dataclass(frozen=True)
class PolicyDefaults:
    replen_method: str = ReplenMethod.FULL_CASE.value
    source_location_type: str = 'reserve'
    source_priority: str = SourcePriority.FIFO.value
    priority: int = 5


@dataclass(frozen=True)
class ReplenSettings:
    """Warehouse-level execution fallback, resolved once per call."""
    replen_mode: str = ReplenMode.QUEUE.value
    inline_replen_max_units: Optional[int] = 50
    velocity_lookback_days: int = 14
    warehouse_id: Optional[int] = None
    source: str = 'default'


@dataclass(frozen=True)
class AutoExecuteDecision:
    should_auto_execute: bool
    execution_mode: str
    decided_by: str


def resolve_policy(
    layers: Sequence[PolicyLayer],
    defaults: Optional[PolicyDefaults] = None
) -> EffectivePolicy:
    """Merge policy layers in the given precedence order.

    Args:
        layers: Policy layers, most specific first
        defaults: Hard defaults for fields no layer defines

    Returns:
        EffectivePolicy
    """
    defaults = defaults or PolicyDefaults()
    resolved = {}
    trigger_layer = None

    for field_name in POLICY_FIELDS:
        for layer in layers:
            value = layer.value(field_name)
            if value is not None:
                resolved[field_name] = value
                if field_name == 'trigger_value':
                    trigger_layer = layer.name
                break

    rule = _find_layer(layers, 'rule')
    tier = _find_layer(layers, 'tier')

    return EffectivePolicy(
        trigger_value=resolved.get('trigger_value'),
        max_qty=resolved.get('max_qty'),
        replen_method=resolved.get('replen_method', defaults.replen_method),
        source_location_type=resolved.get('source_location_type', defaults.source_location_type),
        source_priority=resolved.get('source_priority', defaults.source_priority),
        source_variant_id=resolved.get('source_variant_id'),
        source_hierarchy_level=resolved.get('source_hierarchy_level'),
        priority=resolved.get('priority', defaults.priority),
        trigger_layer=trigger_layer,
        rule_auto_replen=rule.auto_replen if rule else None,
        tier_auto_replen=tier.auto_replen if tier else None,
        rule_id=rule.record_id if rule else None,
    )


def _find_layer(layers: Iterable[PolicyLayer], name: str) -> Optional[PolicyLayer]:
    for layer in layers:
        if layer.name == name:
            return layer
    return None


def _override_decision(value: Optional[int], layer_name: str) -> Optional[AutoExecuteDecision]:
    if value == AutoReplen.FORCE_AUTO:
        return AutoExecuteDecision(True, ExecutionMode.INLINE.value, layer_name)
    if value == AutoReplen.FORCE_MANUAL:
        return AutoExecuteDecision(False, ExecutionMode.QUEUE.value, layer_name)
    return None


def resolve_auto_execute(
    rule_override: Optional[int],
    tier_override: Optional[int],
    settings: Optional[ReplenSettings],
    qty_target_units: int
) -> AutoExecuteDecision:
    """Decide whether a task should be executed immediately.

    SKU override, then tier override, then warehouse settings. 0 or None at
    a layer defers to the next one.

    Args:
        rule_override: SKU rule auto_replen (0/None, 1 force auto, 2 force manual)
        tier_override: Tier default auto_replen
        settings: Resolved warehouse settings
        qty_target_units: Task quantity in pick-variant units

    Returns:
        AutoExecuteDecision
    """
    decision = _override_decision(rule_override, 'rule')
    if decision:
        return decision

    decision = _override_decision(tier_override, 'tier')
    if decision:
        return decision

    settings = settings or ReplenSettings()
    mode = settings.replen_mode

    if mode == ReplenMode.INLINE.value:
        return AutoExecuteDecision(True, ExecutionMode.INLINE.value, 'settings')

    if mode == ReplenMode.HYBRID.value:
        max_units = settings.inline_replen_max_units
        if max_units is None:
            max_units = 50
        if qty_target_units <= max_units:
            return AutoExecuteDecision(True, ExecutionMode.INLINE.value, 'settings')
        return AutoExecuteDecision(False, ExecutionMode.QUEUE.value, 'settings')

    return AutoExecuteDecision(False, ExecutionMode.QUEUE.value, 'settings')


def calculate_velocity(total_picked: float, lookback_days: int) -> float:
    """Average daily pick velocity over the lookback window."""
    if lookback_days <= 0:
        raise ValidationError("Lookback days must be positive")
    return abs(total_picked) / lookback_days


def needs_replenishment(
    replen_method: str,
    on_hand: int,
    trigger_value: Optional[float],
    velocity: Optional[float] = None
) -> bool:
    """Compare on-hand against the resolved trigger.

    pallet_drop triggers are coverage days: replenish when
    on_hand / velocity < trigger, never when velocity is zero.
    Other methods use an inclusive unit threshold, so a trigger of 0
    still fires on an empty bin.
    """
    if trigger_value is None:
        return False

    if replen_method == ReplenMethod.PALLET_DROP.value:
        if not velocity or velocity <= 0:
            return False
        coverage_days = on_hand / velocity
        return coverage_days < trigger_value

    return on_hand <= trigger_value


def convert_case_break(source_units: int, source_upv: int, pick_upv: int) -> Tuple[int, int]:
    """Convert source variant units to pick variant units.

    Returns:
        Tuple of (pick units produced, base units left over)
    """
    if source_units < 0:
        raise ValidationError("Source units cannot be negative")
    if source_upv <= 0 or pick_upv <= 0:
        raise ValidationError("Units per variant must be positive")

    base_units = source_units * source_upv
    return base_units // pick_upv, base_units % pick_upv


def calculate_replen_quantities(
    on_hand: int,
    trigger_value: Optional[float],
    max_qty: Optional[int],
    pick_upv: int,
    source_upv: int,
    source_available: Optional[int] = None
) -> Tuple[int, int]:
    """Work out how much to move.

    Fills up to max_qty (or twice the trigger when no max is set),
    rounding up to whole source units and never below one source unit.

    Args:
        on_hand: Current pick-face quantity in pick-variant units
        trigger_value: Resolved trigger
        max_qty: Resolved fill target in pick-variant units
        pick_upv: Base units per pick variant
        source_upv: Base units per source variant
        source_available: Source on-hand, caps the result when given

    Returns:
        Tuple of (qty in source units, qty in pick-variant units)
    """
    if pick_upv <= 0 or source_upv <= 0:
        raise ValidationError("Units per variant must be positive")

    if max_qty is not None:
        fill_to = max_qty
    elif trigger_value is not None:
        fill_to = int(math.ceil(trigger_value * 2))
    else:
        fill_to = 0

    needed_pick_units = max(fill_to - on_hand, 0)
    needed_base = needed_pick_units * pick_upv
    qty_source_units = max(1, int(math.ceil(needed_base / source_upv)))

    if source_available is not None:
        qty_source_units = max(0, min(qty_source_units, source_available))

    qty_target_units = (qty_source_units * source_upv) // pick_upv
    return qty_source_units, qty_target_units


def with_overrides(policy: EffectivePolicy, **changes) -> EffectivePolicy:
    """Return a copy of a resolved policy with selected fields replaced."""
    valid = {f.name for f in fields(EffectivePolicy)}
    unknown = set(changes) - valid
    if unknown:
        raise ValidationError(f"Unknown policy fields: {', '.join(sorted(unknown))}")
    return replace(policy, **changes)
