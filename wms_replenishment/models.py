# wms_replenishment/models.py
from datetime import datetime
import enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Float, DateTime, Boolean, ForeignKey,
    Text, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class LocationType(str, enum.Enum):
    """Warehouse location taxonomy.

    Values:
        PICK: Forward pick face, replenished by the engine
        RESERVE: Bulk storage feeding pick faces
        RECEIVING: Dock / receiving staging
        STAGING: Outbound staging
        OVERFLOW: Secondary bin absorbing replenishment that does not fit
    """
    PICK = 'pick'
    RESERVE = 'reserve'
    RECEIVING = 'receiving'
    STAGING = 'staging'
    OVERFLOW = 'overflow'

    def __str__(self):
        return self.value


class TransactionType(str, enum.Enum):
    RECEIPT = 'receipt'
    PICK = 'pick'
    ADJUSTMENT = 'adjustment'
    BREAK = 'break'
    REPLENISH = 'replenish'
    TRANSFER = 'transfer'
    RESERVE = 'reserve'
    UNRESERVE = 'unreserve'
    SHIP = 'ship'

    def __str__(self):
        return self.value


class ReplenMethod(str, enum.Enum):
    """How stock moves from the source to the pick face.

    Values:
        FULL_CASE: Source variant is transferred as-is
        CASE_BREAK: Source variant is broken into pick-variant units
        PALLET_DROP: Whole pallet moved; trigger is expressed in coverage days
    """
    FULL_CASE = 'full_case'
    CASE_BREAK = 'case_break'
    PALLET_DROP = 'pallet_drop'

    def __str__(self):
        return self.value


class SourcePriority(str, enum.Enum):
    FIFO = 'fifo'
    SMALLEST_FIRST = 'smallest_first'

    def __str__(self):
        return self.value


class ReplenMode(str, enum.Enum):
    INLINE = 'inline'
    QUEUE = 'queue'
    HYBRID = 'hybrid'

    def __str__(self):
        return self.value


class ExecutionMode(str, enum.Enum):
    INLINE = 'inline'
    QUEUE = 'queue'

    def __str__(self):
        return self.value


class TaskStatus(str, enum.Enum):
    """Replenishment task lifecycle.

    pending -> in_progress -> completed; any non-terminal -> cancelled;
    blocked -> pending when a source appears or a dependency completes.
    """
    PENDING = 'pending'
    ASSIGNED = 'assigned'
    IN_PROGRESS = 'in_progress'
    BLOCKED = 'blocked'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    def __str__(self):
        return self.value


class TriggeredBy(str, enum.Enum):
    MIN_MAX = 'min_max'
    INLINE_PICK = 'inline_pick'
    MANUAL = 'manual'
    CASCADE = 'cascade'
    OVERFLOW = 'overflow'

    def __str__(self):
        return self.value


class AutoReplen(enum.IntEnum):
    """Per-layer execution override. DEFER passes the decision down."""
    DEFER = 0
    FORCE_AUTO = 1
    FORCE_MANUAL = 2


class ExceptionReason(str, enum.Enum):
    SHORT = 'short'
    EMPTY = 'empty'
    WRONG_PRODUCT = 'wrong_product'
    DAMAGED = 'damaged'

    def __str__(self):
        return self.value


ACTIVE_TASK_STATUSES = (
    TaskStatus.PENDING.value,
    TaskStatus.ASSIGNED.value,
    TaskStatus.IN_PROGRESS.value,
    TaskStatus.BLOCKED.value,
)

EXECUTABLE_TASK_STATUSES = (
    TaskStatus.PENDING.value,
    TaskStatus.ASSIGNED.value,
    TaskStatus.IN_PROGRESS.value,
)

TERMINAL_TASK_STATUSES = (
    TaskStatus.COMPLETED.value,
    TaskStatus.CANCELLED.value,
)


class Warehouse(Base):
    __tablename__ = 'warehouse'

    id = Column(Integer, primary_key=True)
    code = Column(String(20), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    locations = relationship("WarehouseLocation", back_populates="warehouse")


class Product(Base):
    __tablename__ = 'product'

    id = Column(Integer, primary_key=True)
    sku = Column(String(100))
    name = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    """A sellable unit at one packaging level (each, pack, case, pallet)."""
    __tablename__ = 'product_variant'

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey('product.id'), nullable=False)
    sku = Column(String(100), unique=True)
    name = Column(Text, nullable=False)
    units_per_variant = Column(Integer, default=1, nullable=False)  # base units in one variant unit
    hierarchy_level = Column(Integer, default=1, nullable=False)  # 1=each, 2=pack/box, 3=case...
    parent_variant_id = Column(Integer, ForeignKey('product_variant.id'))

    # Physical dimensions, used for cube capacity checks
    width_mm = Column(Integer)
    height_mm = Column(Integer)
    length_mm = Column(Integer)
    weight_grams = Column(Integer)

    is_active = Column(Boolean, default=True, nullable=False)

    product = relationship("Product", back_populates="variants")


class WarehouseLocation(Base):
    __tablename__ = 'warehouse_location'

    id = Column(Integer, primary_key=True)
    warehouse_id = Column(Integer, ForeignKey('warehouse.id'))
    code = Column(String(50), nullable=False, unique=True)
    name = Column(Text)
    zone = Column(String(10))

    location_type = Column(String(30), default=LocationType.PICK.value, nullable=False)
    is_pickable = Column(Boolean, default=True, nullable=False)

    # Dedicated upstream bin that feeds this pick face
    parent_location_id = Column(Integer, ForeignKey('warehouse_location.id'))

    # Capacity: explicit cube, or derived from dimensions
    capacity_cubic_mm = Column(BigInteger)
    width_mm = Column(Integer)
    height_mm = Column(Integer)
    depth_mm = Column(Integer)

    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, nullable=False)

    warehouse = relationship("Warehouse", back_populates="locations")

    __table_args__ = (
        Index('idx_location_type_warehouse', 'warehouse_id', 'location_type'),
    )


class InventoryLevel(Base):
    """Quantity buckets for one (variant, location) pair, in variant units."""
    __tablename__ = 'inventory_level'

    id = Column(Integer, primary_key=True)
    product_variant_id = Column(Integer, ForeignKey('product_variant.id'), nullable=False)
    warehouse_location_id = Column(Integer, ForeignKey('warehouse_location.id'), nullable=False)

    variant_qty = Column(Integer, default=0, nullable=False)  # physical on-hand
    reserved_qty = Column(Integer, default=0, nullable=False)
    picked_qty = Column(Integer, default=0, nullable=False)
    packed_qty = Column(Integer, default=0, nullable=False)
    backorder_qty = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime, default=datetime.now, nullable=False)

    variant = relationship("ProductVariant")
    location = relationship("WarehouseLocation")

    __table_args__ = (
        UniqueConstraint('product_variant_id', 'warehouse_location_id', name='uq_level_variant_location'),
        Index('idx_level_location', 'warehouse_location_id'),
    )

    @property
    def available_qty(self) -> int:
        """On-hand that is not held by a reservation."""
        return self.variant_qty - self.reserved_qty


class InventoryTransaction(Base):
    """Append-only audit ledger. One row per state-changing operation."""
    __tablename__ = 'inventory_transaction'

    id = Column(Integer, primary_key=True)
    product_variant_id = Column(Integer, ForeignKey('product_variant.id'))

    # Transfers use both; receipts and picks use one
    from_location_id = Column(Integer, ForeignKey('warehouse_location.id'))
    to_location_id = Column(Integer, ForeignKey('warehouse_location.id'))

    transaction_type = Column(String(30), nullable=False)

    # On-hand movement in variant units
    variant_qty_delta = Column(Integer, default=0, nullable=False)
    variant_qty_before = Column(Integer)
    variant_qty_after = Column(Integer)
    base_units_remainder = Column(Integer)  # case-break units lost in conversion

    source_state = Column(String(20))
    target_state = Column(String(20))

    order_id = Column(Integer)
    order_item_id = Column(Integer)
    cycle_count_id = Column(Integer, ForeignKey('cycle_count.id'))
    replen_task_id = Column(Integer, ForeignKey('replen_task.id'))

    reference_type = Column(String(30))
    reference_id = Column(String(100))
    notes = Column(Text)
    user_id = Column(String(100))
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    __table_args__ = (
        Index('idx_txn_variant_type_date', 'product_variant_id', 'transaction_type', 'created_at'),
    )


class WarehouseSettings(Base):
    __tablename__ = 'warehouse_settings'

    id = Column(Integer, primary_key=True)
    warehouse_id = Column(Integer, ForeignKey('warehouse.id'))  # null = global DEFAULT row
    replen_mode = Column(String(20), default=ReplenMode.QUEUE.value, nullable=False)
    inline_replen_max_units = Column(Integer, default=50)
    velocity_lookback_days = Column(Integer, default=14, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, nullable=False)


class ReplenTierDefault(Base):
    """Default replenishment policy for every variant at a packaging tier."""
    __tablename__ = 'replen_tier_default'

    id = Column(Integer, primary_key=True)
    warehouse_id = Column(Integer, ForeignKey('warehouse.id'))  # null = all warehouses
    hierarchy_level = Column(Integer, nullable=False)
    source_hierarchy_level = Column(Integer)
    source_location_type = Column(String(30))
    source_priority = Column(String(20))
    trigger_value = Column(Float)  # units, or coverage days for pallet_drop
    max_qty = Column(Integer)
    replen_method = Column(String(30))
    priority = Column(Integer)
    auto_replen = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class ReplenRule(Base):
    """SKU-level override of the tier default."""
    __tablename__ = 'replen_rule'

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey('product.id'))
    pick_product_variant_id = Column(Integer, ForeignKey('product_variant.id'), nullable=False)
    source_product_variant_id = Column(Integer, ForeignKey('product_variant.id'))
    source_location_type = Column(String(30))
    source_priority = Column(String(20))
    trigger_value = Column(Float)
    max_qty = Column(Integer)
    replen_method = Column(String(30))
    priority = Column(Integer)
    auto_replen = Column(Integer)
    is_active = Column(Boolean, default=True, nullable=False)


class LocationReplenConfig(Base):
    """Per-bin override. A null variant means the row applies to the whole bin."""
    __tablename__ = 'location_replen_config'

    id = Column(Integer, primary_key=True)
    warehouse_location_id = Column(Integer, ForeignKey('warehouse_location.id'), nullable=False)
    product_variant_id = Column(Integer, ForeignKey('product_variant.id'))
    trigger_value = Column(Float)
    max_qty = Column(Integer)
    replen_method = Column(String(30))
    is_active = Column(Boolean, default=True, nullable=False)
    notes = Column(Text)

    __table_args__ = (
        UniqueConstraint('warehouse_location_id', 'product_variant_id', name='uq_lrc_location_variant'),
    )


class ReplenTask(Base):
    __tablename__ = 'replen_task'

    id = Column(Integer, primary_key=True)
    replen_rule_id = Column(Integer, ForeignKey('replen_rule.id'))
    warehouse_id = Column(Integer, ForeignKey('warehouse.id'))

    from_location_id = Column(Integer, ForeignKey('warehouse_location.id'))  # null while no source found
    to_location_id = Column(Integer, ForeignKey('warehouse_location.id'), nullable=False)
    source_product_variant_id = Column(Integer, ForeignKey('product_variant.id'))
    pick_product_variant_id = Column(Integer, ForeignKey('product_variant.id'), nullable=False)

    qty_source_units = Column(Integer, default=0, nullable=False)
    qty_target_units = Column(Integer, default=0, nullable=False)
    qty_completed = Column(Integer, default=0, nullable=False)

    status = Column(String(20), default=TaskStatus.PENDING.value, nullable=False)
    priority = Column(Integer, default=5, nullable=False)
    triggered_by = Column(String(20), default=TriggeredBy.MIN_MAX.value, nullable=False)
    execution_mode = Column(String(20), default=ExecutionMode.QUEUE.value, nullable=False)
    replen_method = Column(String(30), default=ReplenMethod.FULL_CASE.value, nullable=False)
    auto_replen = Column(Integer, default=0, nullable=False)

    depends_on_task_id = Column(Integer, ForeignKey('replen_task.id'))

    exception_reason = Column(String(30))
    linked_cycle_count_id = Column(Integer, ForeignKey('cycle_count.id'))

    created_by = Column(String(100))
    assigned_to = Column(String(100))
    notes = Column(Text)

    created_at = Column(DateTime, default=datetime.now, nullable=False)
    assigned_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('idx_replen_task_dedup', 'pick_product_variant_id', 'to_location_id', 'status'),
        Index('idx_replen_task_depends', 'depends_on_task_id'),
    )

    @property
    def dedup_key(self):
        return (self.pick_product_variant_id, self.to_location_id)

    def append_note(self, note: str) -> None:
        """Append a line to the task's audit notes."""
        self.notes = f"{self.notes}\n{note}" if self.notes else note


class CycleCount(Base):
    __tablename__ = 'cycle_count'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    status = Column(String(20), default='draft', nullable=False)
    warehouse_id = Column(Integer, ForeignKey('warehouse.id'))
    total_bins = Column(Integer, default=0, nullable=False)
    counted_bins = Column(Integer, default=0, nullable=False)
    variance_count = Column(Integer, default=0, nullable=False)
    created_by = Column(String(100))
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    items = relationship("CycleCountItem", back_populates="cycle_count")


class CycleCountItem(Base):
    __tablename__ = 'cycle_count_item'

    id = Column(Integer, primary_key=True)
    cycle_count_id = Column(Integer, ForeignKey('cycle_count.id'), nullable=False)
    warehouse_location_id = Column(Integer, ForeignKey('warehouse_location.id'), nullable=False)
    product_variant_id = Column(Integer, ForeignKey('product_variant.id'))

    expected_qty = Column(Integer, default=0, nullable=False)
    counted_qty = Column(Integer)
    variance_qty = Column(Integer)
    variance_reason = Column(String(50))
    variance_notes = Column(Text)
    status = Column(String(20), default='pending', nullable=False)  # pending, counted, variance

    counted_by = Column(String(100))
    counted_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    cycle_count = relationship("CycleCount", back_populates="items")
