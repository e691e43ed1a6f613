# wms_replenishment/services/policy_service.py
from typing import List, Optional
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from wms_replenishment.config import config
from wms_replenishment.core.policy import (
    PolicyDefaults, PolicyLayer, EffectivePolicy, ReplenSettings, resolve_policy
)
from wms_replenishment.models import (
    LocationReplenConfig, ProductVariant, ReplenRule, ReplenTierDefault,
    WarehouseLocation, WarehouseSettings
)

logger = logging.getLogger(__name__)


class ReplenPolicyService:
    """Loads policy layers and warehouse settings from the database."""

    def __init__(self, session: Session):
        """Initialize the policy service.

        Args:
            session: Database session
        """
        self.session = session

    @property
    def defaults(self) -> PolicyDefaults:
        replen_config = config.replen_config
        return PolicyDefaults(
            replen_method=replen_config['default_replen_method'],
            source_location_type=replen_config['default_source_location_type'],
            source_priority=replen_config['default_source_priority'],
            priority=replen_config['default_priority']
        )

    def get_settings(self, warehouse_id: Optional[int] = None) -> ReplenSettings:
        """Resolve warehouse execution settings.

        Warehouse row, then the global row (null warehouse), then the
        REPLENISHMENT config section.

        Args:
            warehouse_id: Optional warehouse ID

        Returns:
            ReplenSettings
        """
        row = None
        if warehouse_id is not None:
            row = self.session.query(WarehouseSettings).filter(
                WarehouseSettings.warehouse_id == warehouse_id,
                WarehouseSettings.is_active.is_(True)
            ).first()

        if row is None:
            row = self.session.query(WarehouseSettings).filter(
                WarehouseSettings.warehouse_id.is_(None),
                WarehouseSettings.is_active.is_(True)
            ).first()

        if row is not None:
            return ReplenSettings(
                replen_mode=row.replen_mode,
                inline_replen_max_units=row.inline_replen_max_units,
                velocity_lookback_days=row.velocity_lookback_days,
                warehouse_id=row.warehouse_id,
                source='warehouse' if row.warehouse_id is not None else 'global'
            )

        replen_config = config.replen_config
        return ReplenSettings(
            replen_mode=replen_config['default_replen_mode'],
            inline_replen_max_units=replen_config['inline_replen_max_units'],
            velocity_lookback_days=replen_config['velocity_lookback_days'],
            warehouse_id=warehouse_id,
            source='config'
        )

    def get_tier_default(self, hierarchy_level: int, warehouse_id: Optional[int] = None) -> Optional[ReplenTierDefault]:
        """Get the tier default for a hierarchy level, warehouse-specific first."""
        query = self.session.query(ReplenTierDefault).filter(
            ReplenTierDefault.hierarchy_level == hierarchy_level,
            ReplenTierDefault.is_active.is_(True)
        )

        if warehouse_id is not None:
            specific = query.filter(ReplenTierDefault.warehouse_id == warehouse_id).first()
            if specific:
                return specific

        return query.filter(ReplenTierDefault.warehouse_id.is_(None)).first()

    def get_rule(self, pick_variant_id: int) -> Optional[ReplenRule]:
        return self.session.query(ReplenRule).filter(
            ReplenRule.pick_product_variant_id == pick_variant_id,
            ReplenRule.is_active.is_(True)
        ).first()

    def get_location_configs(self, location_id: int, variant_id: int) -> List[LocationReplenConfig]:
        """Location overrides for a bin, variant-specific row first."""
        rows = self.session.query(LocationReplenConfig).filter(
            LocationReplenConfig.warehouse_location_id == location_id,
            LocationReplenConfig.is_active.is_(True),
            or_(
                LocationReplenConfig.product_variant_id == variant_id,
                LocationReplenConfig.product_variant_id.is_(None)
            )
        ).all()
        return sorted(rows, key=lambda r: 0 if r.product_variant_id is not None else 1)

    def build_layers(self, variant: ProductVariant, location: WarehouseLocation) -> List[PolicyLayer]:
        """Build the ordered policy layers for a (variant, location) pair.

        Args:
            variant: Pick variant
            location: Pick location

        Returns:
            Layers, most specific first
        """
        layers = []

        for row in self.get_location_configs(location.id, variant.id):
            layers.append(PolicyLayer(
                name='location_variant' if row.product_variant_id is not None else 'location',
                trigger_value=row.trigger_value,
                max_qty=row.max_qty,
                replen_method=row.replen_method,
                record_id=row.id
            ))

        rule = self.get_rule(variant.id)
        if rule:
            layers.append(PolicyLayer(
                name='rule',
                trigger_value=rule.trigger_value,
                max_qty=rule.max_qty,
                replen_method=rule.replen_method,
                source_location_type=rule.source_location_type,
                source_priority=rule.source_priority,
                source_variant_id=rule.source_product_variant_id,
                priority=rule.priority,
                auto_replen=rule.auto_replen,
                record_id=rule.id
            ))

        tier = self.get_tier_default(variant.hierarchy_level, location.warehouse_id)
        if tier:
            layers.append(PolicyLayer(
                name='tier',
                trigger_value=tier.trigger_value,
                max_qty=tier.max_qty,
                replen_method=tier.replen_method,
                source_location_type=tier.source_location_type,
                source_priority=tier.source_priority,
                source_hierarchy_level=tier.source_hierarchy_level,
                priority=tier.priority,
                auto_replen=tier.auto_replen,
                record_id=tier.id
            ))

        return layers

    def resolve(self, variant: ProductVariant, location: WarehouseLocation) -> EffectivePolicy:
        """Resolve the effective policy for a (variant, location) pair."""
        policy = resolve_policy(self.build_layers(variant, location), self.defaults)
        logger.debug(
            f"Policy for variant {variant.id} at location {location.id}: "
            f"trigger={policy.trigger_value} ({policy.trigger_layer}), method={policy.replen_method}"
        )
        return policy
