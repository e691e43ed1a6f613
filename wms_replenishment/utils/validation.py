from typing import Dict

from wms_replenishment.exceptions import ValidationError
from wms_replenishment.models import ProductVariant, WarehouseLocation, ReplenMethod, ExceptionReason


def validate_positive_qty(qty, field: str = 'qty') -> int:
    """Ensure a quantity is a positive integer.

    Args:
        qty: Quantity to check
        field: Field name used in the error

    Returns:
        The quantity

    Raises:
        ValidationError: If qty is not a positive integer
    """
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise ValidationError(
            f"{field} must be a positive integer, got {qty!r}",
            details={field: qty}
        )
    return qty


def validate_nonzero_delta(delta, field: str = 'qty_delta') -> int:
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError(
            f"{field} must be a non-zero integer, got {delta!r}",
            details={field: delta}
        )
    return delta


def validate_replen_method(method: str) -> str:
    valid = {m.value for m in ReplenMethod}
    if method not in valid:
        raise ValidationError(f"Unknown replenishment method: {method}", details={'replen_method': method})
    return method


def validate_exception_reason(reason: str) -> str:
    valid = {r.value for r in ExceptionReason}
    if reason not in valid:
        raise ValidationError(f"Unknown exception reason: {reason}", details={'reason': reason})
    return reason


def validate_variant(variant: ProductVariant) -> Dict[str, str]:
    """Validate a product variant.

    Args:
        variant: Variant to validate

    Returns:
        Dictionary with validation errors
    """
    errors = {}

    if not variant.product_id:
        errors['product_id'] = 'Product ID is required'

    if not variant.units_per_variant or variant.units_per_variant < 1:
        errors['units_per_variant'] = 'Units per variant must be at least 1'

    if variant.hierarchy_level is None or variant.hierarchy_level < 1:
        errors['hierarchy_level'] = 'Hierarchy level must be at least 1'

    return errors


def validate_location(location: WarehouseLocation) -> Dict[str, str]:
    errors = {}

    if not location.code:
        errors['code'] = 'Location code is required'

    if not location.warehouse_id:
        errors['warehouse_id'] = 'Warehouse ID is required'

    return errors
