# wms_replenishment/services/source_locator.py
from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy.orm import Session

from wms_replenishment.models import (
    InventoryLevel, SourcePriority, WarehouseLocation
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceMatch:
    location: WarehouseLocation
    available_qty: int

    @property
    def location_id(self) -> int:
        return self.location.id


class SourceLocator:
    """Read-only search for bins holding replenishment stock."""

    def __init__(self, session: Session):
        self.session = session

    def find_source_location(
        self,
        variant_id: int,
        warehouse_id: Optional[int],
        source_location_type: str,
        parent_location_id: Optional[int] = None,
        source_priority: str = SourcePriority.FIFO.value,
        exclude_location_id: Optional[int] = None
    ) -> Optional[SourceMatch]:
        """Find a location to replenish from.

        A dedicated parent bin with stock wins outright. Otherwise locations
        of the source type in the warehouse are scanned, ordered by
        quantity ascending for ``smallest_first`` and by oldest stock
        (``updated_at``) for FIFO.

        Args:
            variant_id: Source variant ID
            warehouse_id: Warehouse to search, None searches every warehouse
            source_location_type: Location type to scan
            parent_location_id: Dedicated upstream bin of the destination
            source_priority: fifo or smallest_first
            exclude_location_id: Location never returned, usually the destination

        Returns:
            SourceMatch or None if nothing holds stock
        """
        if parent_location_id is not None and parent_location_id != exclude_location_id:
            row = self.session.query(InventoryLevel, WarehouseLocation).join(
                WarehouseLocation, InventoryLevel.warehouse_location_id == WarehouseLocation.id
            ).filter(
                InventoryLevel.product_variant_id == variant_id,
                InventoryLevel.warehouse_location_id == parent_location_id,
                InventoryLevel.variant_qty > 0
            ).first()
            if row:
                level, location = row
                return SourceMatch(location=location, available_qty=level.variant_qty)

        query = self.session.query(InventoryLevel, WarehouseLocation).join(
            WarehouseLocation, InventoryLevel.warehouse_location_id == WarehouseLocation.id
        ).filter(
            InventoryLevel.product_variant_id == variant_id,
            InventoryLevel.variant_qty > 0,
            WarehouseLocation.location_type == str(source_location_type)
        )

        if warehouse_id is not None:
            query = query.filter(WarehouseLocation.warehouse_id == warehouse_id)

        if exclude_location_id is not None:
            query = query.filter(WarehouseLocation.id != exclude_location_id)

        if source_priority == SourcePriority.SMALLEST_FIRST.value:
            query = query.order_by(InventoryLevel.variant_qty.asc(), InventoryLevel.id.asc())
        else:
            query = query.order_by(InventoryLevel.updated_at.asc(), InventoryLevel.id.asc())

        row = query.first()
        if not row:
            logger.debug(
                f"No {source_location_type} stock of variant {variant_id} in warehouse {warehouse_id}"
            )
            return None

        level, location = row
        return SourceMatch(location=location, available_qty=level.variant_qty)
