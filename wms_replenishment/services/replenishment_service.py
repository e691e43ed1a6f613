# wms_replenishment/services/replenishment_service.py
"""Replenishment engine.

Scans pick faces against their resolved policy, sources stock (directly or
through a one-level cascade up the packaging hierarchy), creates tasks and
executes them through the inventory ledger.

Task lifecycle::

    pending -> assigned -> in_progress -> completed
    pending | assigned | in_progress | blocked -> cancelled
    blocked -> pending   (source found, or upstream task completed)
"""
import math
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Any
import logging

from sqlalchemy.orm import Session

from wms_replenishment.db import atomic
from wms_replenishment.events import ReplenTaskChanged, record_event
from wms_replenishment.exceptions import (
    NotFoundError, ReplenishmentError, TaskStateError, ValidationError
)
from wms_replenishment.logging_setup import log_exception
from wms_replenishment.models import (
    ACTIVE_TASK_STATUSES, EXECUTABLE_TASK_STATUSES, TERMINAL_TASK_STATUSES,
    CycleCount, CycleCountItem, ExecutionMode, InventoryLevel, InventoryTransaction,
    LocationType, ProductVariant, ReplenMethod, ReplenTask, TaskStatus,
    TransactionType, TriggeredBy, WarehouseLocation
)
from wms_replenishment.core.capacity import (
    location_capacity, pick_overflow_bin, remaining_capacity, split_for_capacity,
    variant_cube
)
from wms_replenishment.core.hierarchy import PackagingHierarchy
from wms_replenishment.core.policy import (
    EffectivePolicy, ReplenSettings, calculate_replen_quantities, convert_case_break,
    needs_replenishment, resolve_auto_execute, with_overrides
)
from wms_replenishment.services.inventory_ledger import InventoryLedger
from wms_replenishment.services.policy_service import ReplenPolicyService
from wms_replenishment.services.source_locator import SourceLocator
from wms_replenishment.utils.validation import (
    validate_exception_reason, validate_location, validate_positive_qty, validate_replen_method,
    validate_variant
)

logger = logging.getLogger(__name__)

# Per-task failures are written to their own log file
TASK_LOG = 'replen_tasks'


class ReplenishmentService:
    """Service for replenishment task planning and execution."""

    def __init__(
        self,
        session: Session,
        ledger: Optional[InventoryLedger] = None,
        policy_service: Optional[ReplenPolicyService] = None,
        source_locator: Optional[SourceLocator] = None
    ):
        """Initialize the replenishment service.

        Args:
            session: Database session
            ledger: Optional inventory ledger sharing the session
            policy_service: Optional policy loader
            source_locator: Optional source locator
        """
        self.session = session
        self.ledger = ledger or InventoryLedger(session)
        self.policy_service = policy_service or ReplenPolicyService(session)
        self.source_locator = source_locator or SourceLocator(session)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_task(self, task_id: int) -> Optional[ReplenTask]:
        return self.session.get(ReplenTask, task_id)

    def _require_task(self, task_id: int) -> ReplenTask:
        task = self.get_task(task_id)
        if not task:
            raise NotFoundError(f"Replen task {task_id} not found")
        return task

    def get_active_tasks(
        self,
        warehouse_id: Optional[int] = None,
        status: Optional[str] = None
    ) -> List[ReplenTask]:
        """Get tasks ordered by priority then creation time.

        Args:
            warehouse_id: Optional warehouse filter
            status: Optional status filter, defaults to every non-terminal status

        Returns:
            List of tasks
        """
        query = self.session.query(ReplenTask)

        if warehouse_id is not None:
            query = query.filter(ReplenTask.warehouse_id == warehouse_id)

        if status is not None:
            query = query.filter(ReplenTask.status == str(status))
        else:
            query = query.filter(ReplenTask.status.in_(ACTIVE_TASK_STATUSES))

        return query.order_by(ReplenTask.priority, ReplenTask.created_at, ReplenTask.id).all()

    def find_active_task(self, pick_variant_id: int, to_location_id: int) -> Optional[ReplenTask]:
        return self.session.query(ReplenTask).filter(
            ReplenTask.pick_product_variant_id == pick_variant_id,
            ReplenTask.to_location_id == to_location_id,
            ReplenTask.status.in_(ACTIVE_TASK_STATUSES)
        ).order_by(ReplenTask.id).first()

    def _active_task_map(self, warehouse_id: Optional[int]) -> Dict[Tuple[int, int], ReplenTask]:
        query = self.session.query(ReplenTask).filter(ReplenTask.status.in_(ACTIVE_TASK_STATUSES))
        if warehouse_id is not None:
            query = query.filter(ReplenTask.warehouse_id == warehouse_id)

        tasks = {}
        for task in query.order_by(ReplenTask.id).all():
            tasks.setdefault(task.dedup_key, task)
        return tasks

    def _pick_pairs(self, warehouse_id: Optional[int]) -> List[Tuple[InventoryLevel, WarehouseLocation]]:
        """Every (level, location) at a pickable pick face."""
        query = self.session.query(InventoryLevel, WarehouseLocation).join(
            WarehouseLocation, InventoryLevel.warehouse_location_id == WarehouseLocation.id
        ).filter(
            WarehouseLocation.location_type == LocationType.PICK.value,
            WarehouseLocation.is_pickable.is_(True)
        )

        if warehouse_id is not None:
            query = query.filter(WarehouseLocation.warehouse_id == warehouse_id)

        return query.order_by(WarehouseLocation.id, InventoryLevel.product_variant_id).all()

    def _load_hierarchy(self, product_ids) -> PackagingHierarchy:
        product_ids = list(set(product_ids))
        if not product_ids:
            return PackagingHierarchy()

        variants = self.session.query(ProductVariant).filter(
            ProductVariant.product_id.in_(product_ids)
        ).order_by(ProductVariant.hierarchy_level, ProductVariant.id).all()
        return PackagingHierarchy.from_variants(variants)

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    def _publish(self, task: ReplenTask) -> None:
        record_event(self.session, ReplenTaskChanged(
            task_id=task.id,
            status=task.status,
            pick_product_variant_id=task.pick_product_variant_id,
            to_location_id=task.to_location_id
        ))

    def _set_status(self, task: ReplenTask, status: TaskStatus, note: Optional[str] = None) -> None:
        task.status = status.value
        if note:
            task.append_note(note)
        self.session.flush()
        self._publish(task)

    def _create_task(self, **fields) -> ReplenTask:
        fields.setdefault('created_at', datetime.now())
        task = ReplenTask(**fields)
        self.session.add(task)
        self.session.flush()
        self._publish(task)
        logger.info(
            f"Created replen task #{task.id} ({task.status}) for variant {task.pick_product_variant_id} "
            f"at location {task.to_location_id}: {task.qty_source_units} source units"
        )
        return task

    def _apply_decision(self, task: ReplenTask, policy: EffectivePolicy, settings: ReplenSettings) -> bool:
        decision = resolve_auto_execute(
            policy.rule_auto_replen, policy.tier_auto_replen, settings, task.qty_target_units
        )
        task.execution_mode = decision.execution_mode
        task.auto_replen = 1 if decision.should_auto_execute else 0
        return decision.should_auto_execute

    def _auto_execute(self, task_id: int, user_id: Optional[str] = None) -> bool:
        """Execute a task immediately, demoting it to blocked on failure.

        Must be called outside any open unit of work.
        """
        try:
            self.execute_task(task_id, user_id=user_id)
            return True
        except Exception as e:
            error = str(e)
            log_exception(TASK_LOG, e, f"Auto-execution of replen task #{task_id} failed")

        with atomic(self.session):
            task = self._require_task(task_id)
            if task.status not in TERMINAL_TASK_STATUSES:
                self._set_status(task, TaskStatus.BLOCKED, f"Auto-execution failed: {error}")
        return False

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _velocity(self, policy: EffectivePolicy, variant_id: int, location_id: int,
                  settings: ReplenSettings) -> Optional[float]:
        if policy.replen_method != ReplenMethod.PALLET_DROP.value:
            return None
        return self.ledger.get_pick_velocity(variant_id, location_id, settings.velocity_lookback_days)

    def _should_replenish(self, policy, variant, location, on_hand, settings) -> bool:
        if not policy.has_trigger:
            return False
        velocity = self._velocity(policy, variant.id, location.id, settings)
        return needs_replenishment(policy.replen_method, on_hand, policy.trigger_value, velocity)

    def _find_source(self, source_variant, location, policy):
        return self.source_locator.find_source_location(
            source_variant.id,
            location.warehouse_id,
            policy.source_location_type,
            parent_location_id=location.parent_location_id,
            source_priority=policy.source_priority,
            exclude_location_id=location.id
        )

    def _evaluate_pair(
        self,
        variant: ProductVariant,
        location: WarehouseLocation,
        settings: ReplenSettings,
        hierarchy: PackagingHierarchy,
        triggered_by: TriggeredBy,
        apply_capacity: bool = False,
        counters: Optional[Dict[str, Any]] = None
    ) -> Tuple[Optional[ReplenTask], List[int]]:
        """Plan one pair inside the caller's unit of work.

        Returns:
            Tuple of (task for the pick face or None, ids of tasks to auto-execute)
        """
        policy = self.policy_service.resolve(variant, location)
        on_hand = self.ledger.get_on_hand(variant.id, location.id)

        if not self._should_replenish(policy, variant, location, on_hand, settings):
            return None, []

        source_variant = hierarchy.source_variant_for(
            variant, policy.source_hierarchy_level, policy.source_variant_id
        )
        match = self._find_source(source_variant, location, policy)

        if match is None:
            downstream = self.try_cascade_replen(
                variant, location, source_variant, policy, settings, hierarchy,
                on_hand=on_hand, triggered_by=triggered_by
            )
            if downstream is not None:
                upstream = self.get_task(downstream.depends_on_task_id)
                to_execute = [upstream.id] if upstream.auto_replen == 1 else []
                return downstream, to_execute

            task = self._create_task(
                replen_rule_id=policy.rule_id,
                warehouse_id=location.warehouse_id,
                from_location_id=None,
                to_location_id=location.id,
                source_product_variant_id=source_variant.id,
                pick_product_variant_id=variant.id,
                qty_source_units=0,
                qty_target_units=0,
                status=TaskStatus.BLOCKED.value,
                priority=policy.priority,
                triggered_by=triggered_by.value,
                execution_mode=ExecutionMode.QUEUE.value,
                replen_method=policy.replen_method,
                notes=f"No source stock: on_hand={on_hand}, trigger={policy.trigger_value}"
            )
            return task, []

        qty_source, qty_target = calculate_replen_quantities(
            on_hand,
            policy.trigger_value,
            policy.max_qty,
            variant.units_per_variant,
            source_variant.units_per_variant,
            match.available_qty
        )

        overflow_units = 0
        overflow_bin = None
        if apply_capacity:
            qty_source, overflow_units, overflow_bin = self._fit_to_capacity(
                policy.replen_method, qty_source, variant, source_variant, location
            )
            if qty_source == 0 and overflow_bin is None:
                if counters is not None:
                    counters['skipped_capacity'] += 1
                logger.info(f"Location {location.code} has no room for variant {variant.id}, skipping")
                return None, []
            qty_target = (qty_source * source_variant.units_per_variant) // variant.units_per_variant

        to_execute = []
        task = None
        if qty_source > 0:
            task = self._create_task(
                replen_rule_id=policy.rule_id,
                warehouse_id=location.warehouse_id,
                from_location_id=match.location.id,
                to_location_id=location.id,
                source_product_variant_id=source_variant.id,
                pick_product_variant_id=variant.id,
                qty_source_units=qty_source,
                qty_target_units=qty_target,
                status=TaskStatus.PENDING.value,
                priority=policy.priority,
                triggered_by=triggered_by.value,
                replen_method=policy.replen_method,
                notes=f"Auto-generated: on_hand={on_hand}, trigger={policy.trigger_value}"
            )
            if self._apply_decision(task, policy, settings):
                to_execute.append(task.id)

        if overflow_units > 0 and overflow_bin is not None:
            self._create_task(
                replen_rule_id=policy.rule_id,
                warehouse_id=location.warehouse_id,
                from_location_id=match.location.id,
                to_location_id=overflow_bin.id,
                source_product_variant_id=source_variant.id,
                pick_product_variant_id=source_variant.id,
                qty_source_units=overflow_units,
                qty_target_units=overflow_units,
                status=TaskStatus.PENDING.value,
                priority=policy.priority,
                triggered_by=TriggeredBy.OVERFLOW.value,
                execution_mode=ExecutionMode.QUEUE.value,
                replen_method=ReplenMethod.FULL_CASE.value,
                notes=f"Overflow for location {location.code}: {overflow_units} source units did not fit"
            )
            if counters is not None:
                counters['overflow'] += 1

        return task, to_execute

    def _location_remaining(self, location: WarehouseLocation) -> Optional[int]:
        if location_capacity(location) is None:
            return None
        contents = self.session.query(InventoryLevel.variant_qty, ProductVariant).join(
            ProductVariant, InventoryLevel.product_variant_id == ProductVariant.id
        ).filter(InventoryLevel.warehouse_location_id == location.id).all()
        return remaining_capacity(location, contents)

    def find_overflow_bin(self, warehouse_id: Optional[int], variant: ProductVariant,
                          exclude_location_id: Optional[int] = None) -> Optional[WarehouseLocation]:
        """Overflow location with the most free cube that holds at least one unit of variant."""
        query = self.session.query(WarehouseLocation).filter(
            WarehouseLocation.location_type == LocationType.OVERFLOW.value
        )
        if warehouse_id is not None:
            query = query.filter(WarehouseLocation.warehouse_id == warehouse_id)
        if exclude_location_id is not None:
            query = query.filter(WarehouseLocation.id != exclude_location_id)

        candidates = [(loc, self._location_remaining(loc)) for loc in query.order_by(WarehouseLocation.id).all()]
        return pick_overflow_bin(candidates, variant_cube(variant))

    def _fit_to_capacity(self, replen_method, qty_source, pick_variant, source_variant, location):
        """Returns (source units for the pick face, overflow source units, overflow bin)."""
        remaining = self._location_remaining(location)
        fit, overflow = split_for_capacity(
            replen_method,
            qty_source,
            source_variant.units_per_variant,
            pick_variant.units_per_variant,
            source_variant,
            pick_variant,
            remaining
        )
        if overflow == 0:
            return fit, 0, None

        overflow_bin = self.find_overflow_bin(location.warehouse_id, source_variant, exclude_location_id=location.id)
        if overflow_bin is None:
            logger.warning(
                f"No overflow bin for {overflow} units of variant {source_variant.id}; "
                f"capping task for location {location.code} at {fit}"
            )
            return fit, 0, None

        return fit, overflow, overflow_bin

    def try_cascade_replen(
        self,
        pick_variant: ProductVariant,
        location: WarehouseLocation,
        source_variant: ProductVariant,
        policy: EffectivePolicy,
        settings: ReplenSettings,
        hierarchy: PackagingHierarchy,
        on_hand: Optional[int] = None,
        triggered_by: TriggeredBy = TriggeredBy.MIN_MAX,
        downstream: Optional[ReplenTask] = None
    ) -> Optional[ReplenTask]:
        """Source through the packaging level above the empty source variant.

        Creates an upstream case-break task executed in place at the bin
        holding the higher level, and a downstream task from that bin to the
        pick face, blocked until the upstream task completes. An existing
        blocked task may be passed as the downstream task.

        Returns:
            The downstream task, or None if the level above has no stock either
        """
        upper = hierarchy.next_level_up(source_variant)
        if upper is None:
            return None

        match = self._find_source(upper, location, policy)
        if match is None:
            return None

        if on_hand is None:
            on_hand = self.ledger.get_on_hand(pick_variant.id, location.id)

        source_units, _ = calculate_replen_quantities(
            on_hand, policy.trigger_value, policy.max_qty,
            pick_variant.units_per_variant, source_variant.units_per_variant
        )

        upper_units = int(math.ceil(source_units * source_variant.units_per_variant / upper.units_per_variant))
        upper_units = max(1, min(upper_units, match.available_qty))
        produced, remainder = convert_case_break(upper_units, upper.units_per_variant, source_variant.units_per_variant)

        source_units = min(source_units, produced)
        target_units = (source_units * source_variant.units_per_variant) // pick_variant.units_per_variant

        upstream = self._create_task(
            replen_rule_id=policy.rule_id,
            warehouse_id=location.warehouse_id,
            from_location_id=match.location.id,
            to_location_id=match.location.id,
            source_product_variant_id=upper.id,
            pick_product_variant_id=source_variant.id,
            qty_source_units=upper_units,
            qty_target_units=produced,
            status=TaskStatus.PENDING.value,
            priority=policy.priority,
            triggered_by=TriggeredBy.CASCADE.value,
            replen_method=ReplenMethod.CASE_BREAK.value,
            notes=f"Cascade: break {upper_units} x {upper.name} into {produced} x {source_variant.name}"
                  + (f" ({remainder} base units left over)" if remainder else "")
        )
        self._apply_decision(upstream, policy, settings)

        fields = dict(
            replen_rule_id=policy.rule_id,
            warehouse_id=location.warehouse_id,
            from_location_id=match.location.id,
            to_location_id=location.id,
            source_product_variant_id=source_variant.id,
            pick_product_variant_id=pick_variant.id,
            qty_source_units=source_units,
            qty_target_units=target_units,
            priority=policy.priority,
            replen_method=policy.replen_method,
            depends_on_task_id=upstream.id
        )

        if downstream is None:
            downstream = self._create_task(
                status=TaskStatus.BLOCKED.value,
                triggered_by=triggered_by.value,
                notes=f"Waiting on cascade task #{upstream.id}",
                **fields
            )
        else:
            for key, value in fields.items():
                setattr(downstream, key, value)
            self._set_status(downstream, TaskStatus.BLOCKED, f"Waiting on cascade task #{upstream.id}")

        self._apply_decision(downstream, policy, settings)
        logger.info(f"Cascade replen: upstream task #{upstream.id}, downstream task #{downstream.id}")
        return downstream

    def _reevaluate_blocked(
        self,
        task: ReplenTask,
        variant: ProductVariant,
        location: WarehouseLocation,
        settings: ReplenSettings,
        hierarchy: PackagingHierarchy
    ) -> Tuple[Optional[str], List[int]]:
        """Retry sourcing for a blocked task.

        A task waiting on a live upstream task is left alone. One whose
        upstream task was blocked or cancelled drops the dependency and is
        sourced again. A task blocked by an exception report waits until
        its count is resolved or the source bin is adjusted.

        Returns:
            Tuple of (action taken or None, ids of tasks to auto-execute)
        """
        if task.depends_on_task_id is not None and not self._release_failed_upstream(task):
            return None, []

        if task.exception_reason is not None:
            if not self._exception_resolved(task):
                return None, []
            task.append_note(f"Exception '{task.exception_reason}' resolved, re-sourcing")
            task.exception_reason = None

        policy = self.policy_service.resolve(variant, location)
        on_hand = self.ledger.get_on_hand(variant.id, location.id)

        if not self._should_replenish(policy, variant, location, on_hand, settings):
            self._set_status(task, TaskStatus.CANCELLED, f"No longer below trigger (on_hand={on_hand})")
            return 'cancelled', []

        source_variant = hierarchy.get(task.source_product_variant_id) or hierarchy.source_variant_for(
            variant, policy.source_hierarchy_level, policy.source_variant_id
        )
        match = self._find_source(source_variant, location, policy)

        if match is None:
            downstream = self.try_cascade_replen(
                variant, location, source_variant, policy, settings, hierarchy,
                on_hand=on_hand, downstream=task
            )
            if downstream is None:
                return None, []
            upstream = self.get_task(downstream.depends_on_task_id)
            return 'unblocked', [upstream.id] if upstream.auto_replen == 1 else []

        qty_source, qty_target = calculate_replen_quantities(
            on_hand, policy.trigger_value, policy.max_qty,
            variant.units_per_variant, source_variant.units_per_variant, match.available_qty
        )
        task.from_location_id = match.location.id
        task.source_product_variant_id = source_variant.id
        task.qty_source_units = qty_source
        task.qty_target_units = qty_target
        self._set_status(task, TaskStatus.PENDING, f"Unblocked: source found at {match.location.code}")

        to_execute = [task.id] if self._apply_decision(task, policy, settings) else []
        return 'unblocked', to_execute

    def _release_failed_upstream(self, task: ReplenTask) -> bool:
        """Drop a dependency on an upstream task that can no longer complete.

        A blocked upstream task is cancelled. Returns True when the task is
        free to be sourced again.
        """
        upstream = self.get_task(task.depends_on_task_id)
        if upstream is not None and upstream.status not in (
            TaskStatus.BLOCKED.value, TaskStatus.CANCELLED.value
        ):
            return False

        if upstream is not None and upstream.status == TaskStatus.BLOCKED.value:
            self._set_status(upstream, TaskStatus.CANCELLED, f"Superseded: downstream task #{task.id} re-sourced")

        task.append_note(f"Upstream task #{task.depends_on_task_id} did not complete")
        task.depends_on_task_id = None
        return True

    def _exception_resolved(self, task: ReplenTask) -> bool:
        """An exception is resolved once its count is closed or the source bin was adjusted after the report."""
        cycle_count = self.session.get(CycleCount, task.linked_cycle_count_id) if task.linked_cycle_count_id else None
        if cycle_count is None or cycle_count.status != 'in_progress':
            return True

        location_id = task.from_location_id or task.to_location_id
        variant_id = task.source_product_variant_id or task.pick_product_variant_id
        adjustment = self.session.query(InventoryTransaction.id).filter(
            InventoryTransaction.product_variant_id == variant_id,
            InventoryTransaction.to_location_id == location_id,
            InventoryTransaction.transaction_type == TransactionType.ADJUSTMENT.value,
            InventoryTransaction.created_at >= cycle_count.created_at
        ).first()
        return adjustment is not None

    def _release_orphan_cascades(self, warehouse_id: Optional[int], result: Dict[str, Any]) -> None:
        """Cancel blocked cascade tasks that no active task depends on."""
        query = self.session.query(ReplenTask).filter(
            ReplenTask.status == TaskStatus.BLOCKED.value,
            ReplenTask.triggered_by == TriggeredBy.CASCADE.value
        )
        if warehouse_id is not None:
            query = query.filter(ReplenTask.warehouse_id == warehouse_id)

        with atomic(self.session):
            for upstream in query.order_by(ReplenTask.id).all():
                waiting = self.session.query(ReplenTask.id).filter(
                    ReplenTask.depends_on_task_id == upstream.id,
                    ReplenTask.status.in_(ACTIVE_TASK_STATUSES)
                ).first()
                if waiting is None:
                    self._set_status(upstream, TaskStatus.CANCELLED, "No downstream task waiting")
                    result['cancelled'] += 1
                    result['tasks'].append(upstream.id)

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def _settings_for(self, cache: Dict, warehouse_id: Optional[int]) -> ReplenSettings:
        if warehouse_id not in cache:
            cache[warehouse_id] = self.policy_service.get_settings(warehouse_id)
        return cache[warehouse_id]

    def _new_result(self) -> Dict[str, Any]:
        return {
            'created': 0,
            'unblocked': 0,
            'auto_executed': 0,
            'blocked': 0,
            'cancelled': 0,
            'overflow': 0,
            'skipped_capacity': 0,
            'errors': [],
            'tasks': []
        }

    def _scan(self, warehouse_id: Optional[int], apply_capacity: bool, sweep: bool) -> Dict[str, Any]:
        result = self._new_result()
        settings_cache = {}

        pairs = self._pick_pairs(warehouse_id)
        active = self._active_task_map(warehouse_id)
        hierarchy = self._load_hierarchy(level.variant.product_id for level, _ in pairs)
        touched = set()

        for level, location in pairs:
            variant = level.variant
            settings = self._settings_for(settings_cache, location.warehouse_id)

            try:
                with atomic(self.session):
                    to_execute = self._process_pair(
                        variant, location, settings, hierarchy, active, apply_capacity, result, touched
                    )
            except Exception as e:
                log_exception(TASK_LOG, e, f"Replen check failed for variant {variant.id} at location {location.id}")
                result['errors'].append({
                    'variant_id': variant.id,
                    'location_id': location.id,
                    'error': str(e)
                })
                continue

            for task_id in to_execute:
                touched.add(task_id)
                if self._auto_execute(task_id):
                    result['auto_executed'] += 1

        self._release_orphan_cascades(warehouse_id, result)

        if sweep:
            result['auto_executed'] += self._sweep_pending(warehouse_id, settings_cache, touched, result)

        return result

    def _process_pair(self, variant, location, settings, hierarchy, active, apply_capacity,
                      result, touched) -> List[int]:
        """Scan step for one pair. Returns ids of tasks to auto-execute."""
        key = (variant.id, location.id)
        existing = active.get(key)

        if existing is not None:
            if existing.status != TaskStatus.BLOCKED.value:
                return []
            action, to_execute = self._reevaluate_blocked(existing, variant, location, settings, hierarchy)
            if action:
                result[action] += 1
                result['tasks'].append(existing.id)
                touched.add(existing.id)
            return to_execute

        task, to_execute = self._evaluate_pair(
            variant, location, settings, hierarchy, TriggeredBy.MIN_MAX,
            apply_capacity=apply_capacity, counters=result
        )
        if task is None:
            return to_execute

        active[key] = task
        touched.add(task.id)
        result['tasks'].append(task.id)
        if task.status == TaskStatus.BLOCKED.value and task.depends_on_task_id is None:
            result['blocked'] += 1
        else:
            result['created'] += 1
        return to_execute

    def _sweep_pending(self, warehouse_id, settings_cache, skip_ids, result) -> int:
        """Execute queued tasks that current settings now allow to run inline."""
        query = self.session.query(ReplenTask).filter(
            ReplenTask.status == TaskStatus.PENDING.value,
            ReplenTask.depends_on_task_id.is_(None),
            ReplenTask.triggered_by.in_([
                TriggeredBy.MIN_MAX.value, TriggeredBy.INLINE_PICK.value
            ])
        )
        if warehouse_id is not None:
            query = query.filter(ReplenTask.warehouse_id == warehouse_id)

        executed = 0
        for task_id in [t.id for t in query.order_by(ReplenTask.priority, ReplenTask.id).all()]:
            if task_id in skip_ids:
                continue
            try:
                with atomic(self.session):
                    task = self._require_task(task_id)
                    variant = self.session.get(ProductVariant, task.pick_product_variant_id)
                    location = self.session.get(WarehouseLocation, task.to_location_id)
                    policy = self.policy_service.resolve(variant, location)
                    settings = self._settings_for(settings_cache, task.warehouse_id)
                    should_execute = self._apply_decision(task, policy, settings)
            except Exception as e:
                log_exception(TASK_LOG, e, f"Pending sweep failed for task #{task_id}")
                result['errors'].append({'task_id': task_id, 'error': str(e)})
                continue

            if should_execute and self._auto_execute(task_id):
                executed += 1

        return executed

    def check_thresholds(self, warehouse_id: Optional[int] = None) -> Dict[str, Any]:
        """Scan every pick face and create, unblock or execute tasks.

        Each pair runs in its own transaction; a failure on one pair is
        logged and reported without stopping the scan.

        Args:
            warehouse_id: Optional warehouse filter

        Returns:
            Dictionary with scan results
        """
        logger.info(f"Checking replenishment thresholds (warehouse={warehouse_id})")
        result = self._scan(warehouse_id, apply_capacity=False, sweep=True)
        logger.info(
            f"Threshold check complete: {result['created']} created, {result['unblocked']} unblocked, "
            f"{result['blocked']} blocked, {result['auto_executed']} auto-executed, "
            f"{len(result['errors'])} errors"
        )
        return result

    def generate_tasks(self, warehouse_id: Optional[int] = None) -> Dict[str, Any]:
        """Bulk task generation honouring destination cube capacity.

        Quantity that does not fit the pick face is routed to an overflow
        bin. Without an overflow bin the task is capped to what fits.

        Args:
            warehouse_id: Optional warehouse filter

        Returns:
            Dictionary with generation results
        """
        logger.info(f"Generating replenishment tasks (warehouse={warehouse_id})")
        result = self._scan(warehouse_id, apply_capacity=True, sweep=False)
        logger.info(
            f"Task generation complete: {result['created']} created, {result['overflow']} overflow, "
            f"{result['skipped_capacity']} skipped for capacity, {len(result['errors'])} errors"
        )
        return result

    def check_and_trigger_after_pick(self, variant_id: int, location_id: int) -> Optional[ReplenTask]:
        """Check one pick face after a pick or count and react.

        Returns:
            The created or unblocked task, or None if nothing was needed
        """
        location = self.session.get(WarehouseLocation, location_id)
        if not location or location.location_type != LocationType.PICK.value:
            return None

        variant = self.session.get(ProductVariant, variant_id)
        if not variant:
            return None

        settings = self.policy_service.get_settings(location.warehouse_id)
        hierarchy = self._load_hierarchy([variant.product_id])

        with atomic(self.session):
            existing = self.find_active_task(variant_id, location_id)
            if existing is not None:
                if existing.status != TaskStatus.BLOCKED.value:
                    return None
                action, to_execute = self._reevaluate_blocked(existing, variant, location, settings, hierarchy)
                task = existing if action == 'unblocked' else None
            else:
                task, to_execute = self._evaluate_pair(
                    variant, location, settings, hierarchy, TriggeredBy.INLINE_PICK
                )

        if task is None:
            return None

        task_id = task.id
        for execute_id in to_execute:
            self._auto_execute(execute_id)

        return self.get_task(task_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_task(self, task_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Move stock for a task through the ledger.

        case_break consumes source units and puts the converted pick units
        away; other methods transfer the source variant unchanged. On
        completion every task blocked on this one becomes pending and is
        executed if it was flagged for auto-execution.

        Args:
            task_id: Task ID
            user_id: Optional user executing the task

        Returns:
            Dictionary with execution results

        Raises:
            NotFoundError: If the task does not exist
            TaskStateError: If the task is not executable
            InsufficientStockError: If the source no longer holds the stock
        """
        with atomic(self.session):
            task = self._require_task(task_id)

            if task.status not in EXECUTABLE_TASK_STATUSES:
                raise TaskStateError(
                    f"Replen task {task_id} cannot be executed (status: {task.status})",
                    details={'task_id': task_id, 'status': task.status}
                )
            if task.from_location_id is None:
                raise TaskStateError(f"Replen task {task_id} has no source location")

            pick_variant = self.session.get(ProductVariant, task.pick_product_variant_id)
            source_variant = self.session.get(
                ProductVariant, task.source_product_variant_id or task.pick_product_variant_id
            )

            remainder = 0
            if task.replen_method == ReplenMethod.CASE_BREAK.value and source_variant.id != pick_variant.id:
                pick_units, remainder = convert_case_break(
                    task.qty_source_units, source_variant.units_per_variant, pick_variant.units_per_variant
                )
                if pick_units == 0:
                    raise ReplenishmentError(
                        f"Breaking {task.qty_source_units} x {source_variant.name} yields no whole {pick_variant.name}",
                        details={'task_id': task.id}
                    )
                self.ledger.break_case(
                    source_variant.id,
                    pick_variant.id,
                    task.from_location_id,
                    task.to_location_id,
                    task.qty_source_units,
                    pick_units,
                    base_units_remainder=remainder,
                    replen_task_id=task.id,
                    user_id=user_id,
                    notes=f"Case break: {task.qty_source_units} x {source_variant.name} -> "
                          f"{pick_units} x {pick_variant.name}"
                )
                task.qty_target_units = pick_units
            else:
                self.ledger.transfer(
                    source_variant.id,
                    task.from_location_id,
                    task.to_location_id,
                    task.qty_source_units,
                    user_id=user_id,
                    notes=f"Replen task #{task.id} ({task.replen_method})",
                    replen_task_id=task.id
                )

            moved_base_units = task.qty_source_units * source_variant.units_per_variant
            task.qty_completed = moved_base_units
            task.completed_at = datetime.now()
            task.assigned_to = user_id or task.assigned_to
            self._set_status(task, TaskStatus.COMPLETED)

            dependants = self.session.query(ReplenTask).filter(
                ReplenTask.depends_on_task_id == task.id,
                ReplenTask.status == TaskStatus.BLOCKED.value
            ).order_by(ReplenTask.id).all()

            unblocked = []
            for dependant in dependants:
                self._set_status(dependant, TaskStatus.PENDING, f"Unblocked by completion of task #{task.id}")
                unblocked.append((dependant.id, dependant.auto_replen == 1))

        logger.info(f"Executed replen task #{task_id}: {moved_base_units} base units moved")

        auto_executed = []
        for dependant_id, auto in unblocked:
            if auto and self._auto_execute(dependant_id, user_id=user_id):
                auto_executed.append(dependant_id)

        return {
            'task_id': task_id,
            'status': TaskStatus.COMPLETED.value,
            'moved_base_units': moved_base_units,
            'base_units_remainder': remainder,
            'unblocked': [dependant_id for dependant_id, _ in unblocked],
            'auto_executed': auto_executed
        }

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def create_manual_task(
        self,
        pick_variant_id: int,
        to_location_id: int,
        qty_source_units: int,
        from_location_id: Optional[int] = None,
        source_variant_id: Optional[int] = None,
        replen_method: Optional[str] = None,
        priority: Optional[int] = None,
        user_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> ReplenTask:
        """Create a task on request, outside the threshold scan.

        Missing fields are filled from the resolved policy. Without a
        source location the locator is consulted, and a task with no source
        is created blocked.
        """
        validate_positive_qty(qty_source_units, 'qty_source_units')
        if replen_method is not None:
            validate_replen_method(replen_method)

        pick_variant = self.session.get(ProductVariant, pick_variant_id)
        location = self.session.get(WarehouseLocation, to_location_id)
        if not pick_variant:
            raise NotFoundError(f"Product variant {pick_variant_id} not found")
        if not location:
            raise NotFoundError(f"Location {to_location_id} not found")

        errors = {**validate_variant(pick_variant), **validate_location(location)}
        if errors:
            raise ValidationError("Cannot create a task for an incomplete variant or location", details=errors)

        overrides = {'replen_method': replen_method, 'priority': priority}
        policy = with_overrides(
            self.policy_service.resolve(pick_variant, location),
            **{field: value for field, value in overrides.items() if value is not None}
        )
        hierarchy = self._load_hierarchy([pick_variant.product_id])
        source_variant = hierarchy.source_variant_for(
            pick_variant, policy.source_hierarchy_level, source_variant_id or policy.source_variant_id
        )

        if from_location_id is None:
            match = self._find_source(source_variant, location, policy)
            from_location_id = match.location.id if match else None

        qty_target_units, _ = convert_case_break(
            qty_source_units, source_variant.units_per_variant, pick_variant.units_per_variant
        )

        with atomic(self.session):
            task = self._create_task(
                replen_rule_id=policy.rule_id,
                warehouse_id=location.warehouse_id,
                from_location_id=from_location_id,
                to_location_id=location.id,
                source_product_variant_id=source_variant.id,
                pick_product_variant_id=pick_variant.id,
                qty_source_units=qty_source_units,
                qty_target_units=qty_target_units,
                status=(TaskStatus.PENDING if from_location_id else TaskStatus.BLOCKED).value,
                priority=policy.priority,
                triggered_by=TriggeredBy.MANUAL.value,
                execution_mode=ExecutionMode.QUEUE.value,
                replen_method=policy.replen_method,
                created_by=user_id,
                notes=notes
            )
        return task

    def assign_task(self, task_id: int, user_id: str) -> ReplenTask:
        with atomic(self.session):
            task = self._require_task(task_id)
            if task.status not in (TaskStatus.PENDING.value, TaskStatus.ASSIGNED.value):
                raise TaskStateError(f"Replen task {task_id} cannot be assigned (status: {task.status})")
            task.assigned_to = user_id
            task.assigned_at = datetime.now()
            self._set_status(task, TaskStatus.ASSIGNED)
        return task

    def start_task(self, task_id: int, user_id: Optional[str] = None) -> ReplenTask:
        with atomic(self.session):
            task = self._require_task(task_id)
            if task.status not in (TaskStatus.PENDING.value, TaskStatus.ASSIGNED.value):
                raise TaskStateError(f"Replen task {task_id} cannot be started (status: {task.status})")
            task.started_at = datetime.now()
            if user_id:
                task.assigned_to = user_id
            self._set_status(task, TaskStatus.IN_PROGRESS)
        return task

    def cancel_task(self, task_id: int, user_id: Optional[str] = None) -> ReplenTask:
        """Cancel a non-terminal task.

        Tasks still blocked on the cancelled task are cancelled with it,
        they could never become eligible.
        """
        with atomic(self.session):
            task = self._require_task(task_id)
            if task.status in TERMINAL_TASK_STATUSES:
                raise TaskStateError(f"Replen task {task_id} cannot be cancelled (status: {task.status})")

            self._set_status(task, TaskStatus.CANCELLED, f"Cancelled by {user_id or 'system'}")

            dependants = self.session.query(ReplenTask).filter(
                ReplenTask.depends_on_task_id == task.id,
                ReplenTask.status.in_(ACTIVE_TASK_STATUSES)
            ).all()
            for dependant in dependants:
                self._set_status(dependant, TaskStatus.CANCELLED, f"Upstream task #{task.id} cancelled")

        logger.info(f"Cancelled replen task #{task_id}")
        return task

    def report_exception(
        self,
        task_id: int,
        reason: str,
        counted_qty: Optional[int] = None,
        user_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Report a problem found at the source bin while working a task.

        Opens a one-bin spot cycle count seeded with the system quantity and
        the operator's count, links it to the task and blocks the task until
        the count is reconciled.

        Args:
            task_id: Task ID
            reason: short, empty, wrong_product or damaged
            counted_qty: Optional quantity the operator found
            user_id: Optional reporting user
            notes: Optional free text

        Returns:
            Dictionary with the task and cycle count IDs
        """
        validate_exception_reason(reason)
        if counted_qty is not None and counted_qty < 0:
            raise ValidationError("Counted quantity cannot be negative")

        with atomic(self.session):
            task = self._require_task(task_id)
            if task.status in TERMINAL_TASK_STATUSES:
                raise TaskStateError(
                    f"Cannot report an exception on replen task {task_id} (status: {task.status})"
                )

            location_id = task.from_location_id or task.to_location_id
            variant_id = task.source_product_variant_id or task.pick_product_variant_id
            expected_qty = self.ledger.get_on_hand(variant_id, location_id)
            variance_qty = counted_qty - expected_qty if counted_qty is not None else None
            task_note = f"task expected {task.qty_source_units} source units"

            cycle_count = CycleCount(
                name=f"Replen exception - task #{task.id}",
                description=f"{reason} reported at location {location_id}, {task_note}" + (f": {notes}" if notes else ""),
                status='in_progress',
                warehouse_id=task.warehouse_id,
                total_bins=1,
                counted_bins=1 if counted_qty is not None else 0,
                variance_count=1 if variance_qty else 0,
                created_by=user_id
            )
            self.session.add(cycle_count)
            self.session.flush()

            if counted_qty is None:
                item_status = 'pending'
            else:
                item_status = 'variance' if variance_qty else 'counted'

            self.session.add(CycleCountItem(
                cycle_count_id=cycle_count.id,
                warehouse_location_id=location_id,
                product_variant_id=variant_id,
                expected_qty=expected_qty,
                counted_qty=counted_qty,
                variance_qty=variance_qty,
                variance_reason=reason,
                variance_notes=f"{task_note}: {notes}" if notes else task_note,
                status=item_status,
                counted_by=user_id if counted_qty is not None else None,
                counted_at=datetime.now() if counted_qty is not None else None
            ))

            task.exception_reason = reason
            task.linked_cycle_count_id = cycle_count.id
            self._set_status(
                task, TaskStatus.BLOCKED,
                f"Exception '{reason}' reported by {user_id or 'system'}, cycle count #{cycle_count.id}"
            )

        logger.warning(f"Replen task #{task_id} blocked: {reason} exception, cycle count #{cycle_count.id}")
        return {
            'task_id': task_id,
            'cycle_count_id': cycle_count.id,
            'expected_qty': expected_qty,
            'counted_qty': counted_qty,
            'variance_qty': variance_qty,
            'task_qty_source_units': task.qty_source_units
        }
