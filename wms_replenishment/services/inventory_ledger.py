# wms_replenishment/services/inventory_ledger.py
"""Inventory ledger: quantity buckets per (variant, location) plus an
append-only transaction log.

Two rules govern mutations. Manual corrections (``adjust_inventory``) are
permissive and may drive on-hand negative to record known shrinkage.
Consumption paths (picks, reservations, transfers, case breaks, shipments)
are strict: each is a single guarded UPDATE of the form
``SET q = q - n WHERE q >= n``, so two concurrent callers can never both
succeed against the same stock. Zero affected rows is the expected
"not enough stock" outcome.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging

from sqlalchemy import update, case, func, true
from sqlalchemy.orm import Session

from wms_replenishment.db import atomic
from wms_replenishment.events import InventoryChanged, record_event
from wms_replenishment.exceptions import (
    InsufficientStockError, NotFoundError, ValidationError
)
from wms_replenishment.models import (
    InventoryLevel, InventoryTransaction, TransactionType
)
from wms_replenishment.core.policy import calculate_velocity
from wms_replenishment.utils.validation import validate_positive_qty, validate_nonzero_delta

logger = logging.getLogger(__name__)

BUCKETS = ('variant_qty', 'reserved_qty', 'picked_qty', 'packed_qty', 'backorder_qty')

_levels = InventoryLevel.__table__


class InventoryLedger:
    """Service for quantity buckets and the audit trail."""

    def __init__(self, session: Session):
        """Initialize the ledger.

        Args:
            session: Database session
        """
        self.session = session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_level(self, variant_id: int, location_id: int) -> Optional[InventoryLevel]:
        """Get the level row for a (variant, location) pair.

        Args:
            variant_id: Product variant ID
            location_id: Warehouse location ID

        Returns:
            Inventory level or None if none exists yet
        """
        return self.session.query(InventoryLevel).populate_existing().filter(
            InventoryLevel.product_variant_id == variant_id,
            InventoryLevel.warehouse_location_id == location_id
        ).first()

    def get_levels_by_variant(self, variant_id: int) -> List[InventoryLevel]:
        return self.session.query(InventoryLevel).populate_existing().filter(
            InventoryLevel.product_variant_id == variant_id
        ).order_by(InventoryLevel.warehouse_location_id).all()

    def get_levels_by_location(self, location_id: int) -> List[InventoryLevel]:
        return self.session.query(InventoryLevel).populate_existing().filter(
            InventoryLevel.warehouse_location_id == location_id
        ).order_by(InventoryLevel.product_variant_id).all()

    def get_on_hand(self, variant_id: int, location_id: int) -> int:
        level = self.get_level(variant_id, location_id)
        return level.variant_qty if level else 0

    # ------------------------------------------------------------------
    # Low-level bucket operations
    # ------------------------------------------------------------------

    def upsert_level(
        self,
        variant_id: int,
        location_id: int,
        seed: Optional[Dict[str, int]] = None
    ) -> InventoryLevel:
        """Get the level for a pair, creating it if absent.

        An existing row is returned unmodified; ``seed`` only applies to a
        newly created row.

        Args:
            variant_id: Product variant ID
            location_id: Warehouse location ID
            seed: Optional initial bucket values for a new row

        Returns:
            Inventory level
        """
        level = self.get_level(variant_id, location_id)
        if level:
            return level

        values = {bucket: 0 for bucket in BUCKETS}
        for bucket, value in (seed or {}).items():
            if bucket not in BUCKETS:
                raise ValidationError(f"Unknown inventory bucket: {bucket}")
            values[bucket] = value

        level = InventoryLevel(
            product_variant_id=variant_id,
            warehouse_location_id=location_id,
            updated_at=datetime.now(),
            **values
        )
        self.session.add(level)
        self.session.flush()
        return level

    def adjust_level(self, level_id: int, **deltas) -> InventoryLevel:
        """Apply signed deltas to one or more buckets in a single UPDATE.

        Args:
            level_id: Inventory level ID
            **deltas: Bucket name to signed delta

        Returns:
            Updated inventory level

        Raises:
            ValidationError: If a bucket name is unknown
            NotFoundError: If the level does not exist
        """
        unknown = [name for name in deltas if name not in BUCKETS]
        if unknown:
            raise ValidationError(f"Unknown inventory bucket(s): {', '.join(unknown)}")

        values = {_levels.c[name]: _levels.c[name] + delta for name, delta in deltas.items()}
        values[_levels.c.updated_at] = datetime.now()

        result = self.session.execute(
            update(_levels).where(_levels.c.id == level_id).values(values)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Inventory level {level_id} not found")

        return self.session.get(InventoryLevel, level_id, populate_existing=True)

    def _expire_level(self, level_id: int) -> None:
        """Drop cached bucket values after a statement-level update."""
        key = self.session.identity_key(InventoryLevel, level_id)
        cached = self.session.identity_map.get(key)
        if cached is not None:
            self.session.expire(cached)

    def _guarded_update(self, variant_id: int, location_id: int, guard, values):
        """Run a guarded UPDATE on one pair. Returns the new row or None."""
        values = dict(values)
        values[_levels.c.updated_at] = datetime.now()
        row = self.session.execute(
            update(_levels)
            .where(
                _levels.c.product_variant_id == variant_id,
                _levels.c.warehouse_location_id == location_id,
                guard
            )
            .values(values)
            .returning(_levels.c.id, _levels.c.variant_qty, _levels.c.reserved_qty, _levels.c.picked_qty)
        ).first()
        if row is not None:
            self._expire_level(row.id)
        return row

    def _increment_on_hand(self, variant_id: int, location_id: int, qty: int):
        """Add to on-hand, creating the level when needed. Returns the new row."""
        row = self._guarded_update(
            variant_id, location_id, true(),
            {_levels.c.variant_qty: _levels.c.variant_qty + qty}
        )
        if row is not None:
            return row

        self.upsert_level(variant_id, location_id)
        return self._guarded_update(
            variant_id, location_id, true(),
            {_levels.c.variant_qty: _levels.c.variant_qty + qty}
        )

    def _decrement_on_hand(self, variant_id: int, location_id: int, qty: int):
        return self._guarded_update(
            variant_id, location_id, _levels.c.variant_qty >= qty,
            {_levels.c.variant_qty: _levels.c.variant_qty - qty}
        )

    def log_transaction(self, **fields) -> InventoryTransaction:
        """Write one audit row in the current transaction.

        A failed insert propagates and aborts the enclosing transaction.

        Returns:
            The new transaction row
        """
        if 'transaction_type' not in fields:
            raise ValidationError("transaction_type is required")

        txn_type = fields['transaction_type']
        fields['transaction_type'] = txn_type.value if isinstance(txn_type, TransactionType) else txn_type
        fields.setdefault('created_at', datetime.now())

        txn = InventoryTransaction(**fields)
        self.session.add(txn)
        self.session.flush()

        location_id = fields.get('to_location_id') or fields.get('from_location_id')
        record_event(self.session, InventoryChanged(
            product_variant_id=fields.get('product_variant_id'),
            warehouse_location_id=location_id,
            transaction_type=fields['transaction_type'],
            variant_qty_delta=fields.get('variant_qty_delta', 0),
            reference_type=fields.get('reference_type'),
            reference_id=fields.get('reference_id')
        ))
        return txn

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def receive_inventory(
        self,
        variant_id: int,
        location_id: int,
        qty: int,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> InventoryTransaction:
        """Receive stock into a location.

        Args:
            variant_id: Product variant ID
            location_id: Receiving location ID
            qty: Quantity in variant units, must be positive
            reference_id: Receipt reference (PO, ASN...)
            notes: Optional notes
            user_id: Optional user performing the receipt

        Returns:
            The receipt transaction
        """
        validate_positive_qty(qty)

        with atomic(self.session):
            row = self._increment_on_hand(variant_id, location_id, qty)
            txn = self.log_transaction(
                product_variant_id=variant_id,
                to_location_id=location_id,
                transaction_type=TransactionType.RECEIPT,
                variant_qty_delta=qty,
                variant_qty_before=row.variant_qty - qty,
                variant_qty_after=row.variant_qty,
                target_state='on_hand',
                reference_type='receipt',
                reference_id=reference_id,
                notes=notes,
                user_id=user_id
            )

        logger.info(f"Received {qty} of variant {variant_id} at location {location_id}")
        return txn

    def pick_item(
        self,
        variant_id: int,
        location_id: int,
        qty: int,
        order_id: Optional[int] = None,
        order_item_id: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> bool:
        """Pick stock for an order.

        Decrements on-hand, increments picked and releases up to ``qty`` of
        any reservation, all in one guarded statement.

        Returns:
            True if picked, False if stock was insufficient or the pair has no level
        """
        validate_positive_qty(qty)

        with atomic(self.session):
            row = self._guarded_update(
                variant_id, location_id, _levels.c.variant_qty >= qty,
                {
                    _levels.c.variant_qty: _levels.c.variant_qty - qty,
                    _levels.c.picked_qty: _levels.c.picked_qty + qty,
                    _levels.c.reserved_qty: case(
                        (_levels.c.reserved_qty > qty, _levels.c.reserved_qty - qty),
                        else_=0
                    )
                }
            )
            if row is None:
                logger.warning(
                    f"Pick of {qty} for variant {variant_id} at location {location_id} rejected: insufficient stock"
                )
                return False

            self.log_transaction(
                product_variant_id=variant_id,
                from_location_id=location_id,
                transaction_type=TransactionType.PICK,
                variant_qty_delta=-qty,
                variant_qty_before=row.variant_qty + qty,
                variant_qty_after=row.variant_qty,
                source_state='on_hand',
                target_state='picked',
                order_id=order_id,
                order_item_id=order_item_id,
                reference_type='order' if order_id is not None else None,
                reference_id=str(order_id) if order_id is not None else None,
                user_id=user_id
            )

        return True

    def record_shipment(
        self,
        variant_id: int,
        location_id: int,
        qty: int,
        order_id: Optional[int] = None,
        order_item_id: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> InventoryTransaction:
        """Ship picked stock.

        Raises:
            NotFoundError: If the pair has no level
            InsufficientStockError: If picked quantity is below qty
        """
        validate_positive_qty(qty)

        with atomic(self.session):
            row = self._guarded_update(
                variant_id, location_id, _levels.c.picked_qty >= qty,
                {_levels.c.picked_qty: _levels.c.picked_qty - qty}
            )
            if row is None:
                self._raise_guard_failure(variant_id, location_id, qty, 'picked_qty')

            txn = self.log_transaction(
                product_variant_id=variant_id,
                from_location_id=location_id,
                transaction_type=TransactionType.SHIP,
                variant_qty_delta=0,
                variant_qty_before=row.variant_qty,
                variant_qty_after=row.variant_qty,
                source_state='picked',
                target_state='shipped',
                order_id=order_id,
                order_item_id=order_item_id,
                reference_type='order' if order_id is not None else None,
                reference_id=str(order_id) if order_id is not None else None,
                notes=f"Shipped {qty}",
                user_id=user_id
            )

        return txn

    def adjust_inventory(
        self,
        variant_id: int,
        location_id: int,
        qty_delta: int,
        reason: str,
        cycle_count_id: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> InventoryTransaction:
        """Apply a manual correction. Permissive: on-hand may go negative.

        Args:
            variant_id: Product variant ID
            location_id: Location ID
            qty_delta: Signed, non-zero correction
            reason: Reason recorded on the transaction
            cycle_count_id: Optional originating cycle count
            user_id: Optional user

        Returns:
            The adjustment transaction
        """
        validate_nonzero_delta(qty_delta)

        with atomic(self.session):
            row = self._increment_on_hand(variant_id, location_id, qty_delta)
            txn = self.log_transaction(
                product_variant_id=variant_id,
                to_location_id=location_id,
                transaction_type=TransactionType.ADJUSTMENT,
                variant_qty_delta=qty_delta,
                variant_qty_before=row.variant_qty - qty_delta,
                variant_qty_after=row.variant_qty,
                source_state='on_hand',
                target_state='on_hand',
                cycle_count_id=cycle_count_id,
                reference_type='cycle_count' if cycle_count_id is not None else 'manual',
                reference_id=str(cycle_count_id) if cycle_count_id is not None else None,
                notes=reason,
                user_id=user_id
            )

        if row.variant_qty < 0:
            logger.warning(
                f"Adjustment left variant {variant_id} at location {location_id} negative ({row.variant_qty})"
            )
        return txn

    def reserve_for_order(
        self,
        variant_id: int,
        location_id: int,
        qty: int,
        order_id: Optional[int] = None,
        order_item_id: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> bool:
        """Reserve available stock for an order.

        Returns:
            True if reserved, False if on-hand minus reserved is below qty
        """
        validate_positive_qty(qty)

        with atomic(self.session):
            row = self._guarded_update(
                variant_id, location_id,
                (_levels.c.variant_qty - _levels.c.reserved_qty) >= qty,
                {_levels.c.reserved_qty: _levels.c.reserved_qty + qty}
            )
            if row is None:
                return False

            self.log_transaction(
                product_variant_id=variant_id,
                from_location_id=location_id,
                transaction_type=TransactionType.RESERVE,
                variant_qty_delta=0,
                variant_qty_before=row.variant_qty,
                variant_qty_after=row.variant_qty,
                source_state='available',
                target_state='reserved',
                order_id=order_id,
                order_item_id=order_item_id,
                reference_type='order' if order_id is not None else None,
                reference_id=str(order_id) if order_id is not None else None,
                notes=f"Reserved {qty}",
                user_id=user_id
            )

        return True

    def release_reservation(
        self,
        variant_id: int,
        location_id: int,
        qty: int,
        order_id: Optional[int] = None,
        order_item_id: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> InventoryTransaction:
        """Release part of a reservation.

        Raises:
            NotFoundError: If the pair has no level
            InsufficientStockError: If reserved quantity is below qty
        """
        validate_positive_qty(qty)

        with atomic(self.session):
            row = self._guarded_update(
                variant_id, location_id, _levels.c.reserved_qty >= qty,
                {_levels.c.reserved_qty: _levels.c.reserved_qty - qty}
            )
            if row is None:
                self._raise_guard_failure(variant_id, location_id, qty, 'reserved_qty')

            txn = self.log_transaction(
                product_variant_id=variant_id,
                from_location_id=location_id,
                transaction_type=TransactionType.UNRESERVE,
                variant_qty_delta=0,
                variant_qty_before=row.variant_qty,
                variant_qty_after=row.variant_qty,
                source_state='reserved',
                target_state='available',
                order_id=order_id,
                order_item_id=order_item_id,
                reference_type='order' if order_id is not None else None,
                reference_id=str(order_id) if order_id is not None else None,
                notes=f"Released {qty}",
                user_id=user_id
            )

        return txn

    def transfer(
        self,
        variant_id: int,
        from_location_id: int,
        to_location_id: int,
        qty: int,
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
        replen_task_id: Optional[int] = None
    ) -> InventoryTransaction:
        """Move stock between two locations.

        Raises:
            ValidationError: If source and destination are the same
            InsufficientStockError: If the source holds less than qty
        """
        validate_positive_qty(qty)
        if from_location_id == to_location_id:
            raise ValidationError("Cannot transfer to the same location")

        with atomic(self.session):
            source = self._decrement_on_hand(variant_id, from_location_id, qty)
            if source is None:
                raise InsufficientStockError(
                    f"Insufficient stock to transfer {qty} of variant {variant_id} "
                    f"from location {from_location_id}",
                    details={'variant_id': variant_id, 'location_id': from_location_id, 'qty': qty}
                )

            self._increment_on_hand(variant_id, to_location_id, qty)

            txn = self.log_transaction(
                product_variant_id=variant_id,
                from_location_id=from_location_id,
                to_location_id=to_location_id,
                transaction_type=TransactionType.TRANSFER,
                variant_qty_delta=qty,
                variant_qty_before=source.variant_qty + qty,
                variant_qty_after=source.variant_qty,
                source_state='on_hand',
                target_state='on_hand',
                replen_task_id=replen_task_id,
                reference_type='replen_task' if replen_task_id is not None else 'transfer',
                reference_id=str(replen_task_id) if replen_task_id is not None else None,
                notes=notes,
                user_id=user_id
            )

        return txn

    def break_case(
        self,
        source_variant_id: int,
        pick_variant_id: int,
        from_location_id: int,
        to_location_id: int,
        source_units: int,
        pick_units: int,
        base_units_remainder: int = 0,
        replen_task_id: Optional[int] = None,
        user_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, InventoryTransaction]:
        """Consume source-variant units and put the converted pick units away.

        Writes a ``break`` row at the source and a ``replenish`` row at the
        destination. The source and destination may be the same bin.

        Raises:
            InsufficientStockError: If the source holds fewer than source_units
        """
        validate_positive_qty(source_units, 'source_units')

        reference = str(replen_task_id) if replen_task_id is not None else None

        with atomic(self.session):
            source = self._decrement_on_hand(source_variant_id, from_location_id, source_units)
            if source is None:
                raise InsufficientStockError(
                    f"Insufficient source stock at location {from_location_id} for variant {source_variant_id}",
                    details={
                        'variant_id': source_variant_id,
                        'location_id': from_location_id,
                        'qty': source_units
                    }
                )

            break_txn = self.log_transaction(
                product_variant_id=source_variant_id,
                from_location_id=from_location_id,
                transaction_type=TransactionType.BREAK,
                variant_qty_delta=-source_units,
                variant_qty_before=source.variant_qty + source_units,
                variant_qty_after=source.variant_qty,
                base_units_remainder=base_units_remainder,
                source_state='on_hand',
                target_state='on_hand',
                replen_task_id=replen_task_id,
                reference_type='replen_task' if replen_task_id is not None else None,
                reference_id=reference,
                notes=notes,
                user_id=user_id
            )

            replenish_txn = None
            if pick_units > 0:
                dest = self._increment_on_hand(pick_variant_id, to_location_id, pick_units)
                replenish_txn = self.log_transaction(
                    product_variant_id=pick_variant_id,
                    to_location_id=to_location_id,
                    transaction_type=TransactionType.REPLENISH,
                    variant_qty_delta=pick_units,
                    variant_qty_before=dest.variant_qty - pick_units,
                    variant_qty_after=dest.variant_qty,
                    source_state='on_hand',
                    target_state='on_hand',
                    replen_task_id=replen_task_id,
                    reference_type='replen_task' if replen_task_id is not None else None,
                    reference_id=reference,
                    notes=f"Case break from location {from_location_id}",
                    user_id=user_id
                )

        if base_units_remainder:
            logger.warning(
                f"Case break of {source_units} x variant {source_variant_id} left "
                f"{base_units_remainder} base units unconverted"
            )

        return {'break': break_txn, 'replenish': replenish_txn}

    def _raise_guard_failure(self, variant_id: int, location_id: int, qty: int, bucket: str):
        level = self.get_level(variant_id, location_id)
        if level is None:
            raise NotFoundError(
                f"No inventory level for variant {variant_id} at location {location_id}"
            )
        raise InsufficientStockError(
            f"Insufficient {bucket} for variant {variant_id} at location {location_id}: "
            f"have {getattr(level, bucket)}, need {qty}",
            details={'variant_id': variant_id, 'location_id': location_id, 'qty': qty, 'bucket': bucket}
        )

    # ------------------------------------------------------------------
    # Audit read-back
    # ------------------------------------------------------------------

    def get_transactions(
        self,
        variant_id: int,
        location_id: Optional[int] = None,
        transaction_type: Optional[str] = None
    ) -> List[InventoryTransaction]:
        """Get audit rows for a variant, optionally touching one location."""
        query = self.session.query(InventoryTransaction).filter(
            InventoryTransaction.product_variant_id == variant_id
        )

        if location_id is not None:
            query = query.filter(
                (InventoryTransaction.from_location_id == location_id)
                | (InventoryTransaction.to_location_id == location_id)
            )

        if transaction_type is not None:
            query = query.filter(InventoryTransaction.transaction_type == str(transaction_type))

        return query.order_by(InventoryTransaction.id).all()

    def replay_on_hand(self, variant_id: int, location_id: int) -> int:
        """Rebuild on-hand for a pair from the transaction log.

        Transfer rows subtract at their source and add at their
        destination. Every other row applies its signed delta to its
        destination when set, else to its source.
        """
        total = 0
        for txn in self.get_transactions(variant_id, location_id):
            if txn.transaction_type == TransactionType.TRANSFER.value:
                if txn.from_location_id == location_id:
                    total -= txn.variant_qty_delta
                if txn.to_location_id == location_id:
                    total += txn.variant_qty_delta
                continue

            target = txn.to_location_id if txn.to_location_id is not None else txn.from_location_id
            if target == location_id:
                total += txn.variant_qty_delta

        return total

    def get_pick_velocity(
        self,
        variant_id: int,
        location_id: int,
        lookback_days: int,
        now: Optional[datetime] = None
    ) -> float:
        """Average units picked per day from a location over the lookback window."""
        now = now or datetime.now()
        since = now - timedelta(days=lookback_days)

        total = self.session.query(
            func.coalesce(func.sum(func.abs(InventoryTransaction.variant_qty_delta)), 0)
        ).filter(
            InventoryTransaction.product_variant_id == variant_id,
            InventoryTransaction.from_location_id == location_id,
            InventoryTransaction.transaction_type == TransactionType.PICK.value,
            InventoryTransaction.created_at >= since,
            InventoryTransaction.created_at <= now
        ).scalar()

        return calculate_velocity(total or 0, lookback_days)
