from .validation import (
    validate_positive_qty,
    validate_nonzero_delta,
    validate_replen_method,
    validate_exception_reason,
    validate_variant,
    validate_location
)

__all__ = [
    'validate_positive_qty',
    'validate_nonzero_delta',
    'validate_replen_method',
    'validate_exception_reason',
    'validate_variant',
    'validate_location'
]
