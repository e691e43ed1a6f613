# wms_replenishment/core/hierarchy.py
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import ProductVariant


class PackagingHierarchy:
    """Packaging tiers of each product, keyed by (product_id, hierarchy_level).

    Tiers form a shallow tree (each < pack < case < pallet), so every lookup
    is a dictionary hit instead of a walk along parent pointers.
    """

    def __init__(self):
        self._by_level: Dict[Tuple[int, int], ProductVariant] = {}
        self._levels: Dict[int, List[int]] = {}
        self._by_id: Dict[int, ProductVariant] = {}

    @classmethod
    def from_variants(cls, variants: Iterable[ProductVariant]) -> 'PackagingHierarchy':
        hierarchy = cls()
        for variant in variants:
            hierarchy.add(variant)
        return hierarchy

    def add(self, variant: ProductVariant) -> None:
        self._by_id[variant.id] = variant

        key = (variant.product_id, variant.hierarchy_level)
        # First active variant wins a tier
        if key in self._by_level and self._by_level[key].is_active is not False:
            return
        self._by_level[key] = variant

        levels = self._levels.setdefault(variant.product_id, [])
        if variant.hierarchy_level not in levels:
            levels.append(variant.hierarchy_level)
            levels.sort()

    def get(self, variant_id: Optional[int]) -> Optional[ProductVariant]:
        if variant_id is None:
            return None
        return self._by_id.get(variant_id)

    def variant_at(self, product_id: int, hierarchy_level: int) -> Optional[ProductVariant]:
        return self._by_level.get((product_id, hierarchy_level))

    def levels(self, product_id: int) -> List[int]:
        return list(self._levels.get(product_id, []))

    def next_level_up(self, variant: ProductVariant) -> Optional[ProductVariant]:
        """The variant one packaging tier above, or None at the top."""
        for level in self._levels.get(variant.product_id, []):
            if level > variant.hierarchy_level:
                return self._by_level[(variant.product_id, level)]
        return None

    def source_variant_for(
        self,
        pick_variant: ProductVariant,
        source_hierarchy_level: Optional[int] = None,
        explicit_source_id: Optional[int] = None
    ) -> ProductVariant:
        """Resolve which variant feeds a pick variant.

        An explicit SKU-rule source wins, then the tier's source level,
        then the parent variant, then the pick variant itself.
        """
        explicit = self.get(explicit_source_id)
        if explicit is not None:
            return explicit

        if source_hierarchy_level is not None and source_hierarchy_level != pick_variant.hierarchy_level:
            at_level = self.variant_at(pick_variant.product_id, source_hierarchy_level)
            if at_level is not None:
                return at_level

        if source_hierarchy_level is not None and source_hierarchy_level == pick_variant.hierarchy_level:
            return pick_variant

        parent = self.get(pick_variant.parent_variant_id)
        if parent is not None:
            return parent

        return pick_variant
