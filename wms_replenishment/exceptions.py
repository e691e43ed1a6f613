class WMSError(Exception):
    """Base exception for the WMS inventory and replenishment engine."""

    def __init__(self, message=None, code=None, details=None):
        """Initialize the exception.

        Args:
            message: Error message
            code: Error code
            details: Additional error details
        """
        self.message = message or "An error occurred in the WMS replenishment engine"
        self.code = code
        self.details = details
        super().__init__(self.message)

    def __str__(self):
        """String representation of the error."""
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message

    def to_dict(self):
        """Convert the exception to a dictionary."""
        error_dict = {
            'error': self.__class__.__name__,
            'message': self.message,
        }

        if self.code:
            error_dict['code'] = self.code

        if self.details:
            error_dict['details'] = self.details

        return error_dict


class ConfigError(WMSError):
    """Exception raised for configuration errors."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Configuration error"
        super().__init__(message, code, details)


class DatabaseError(WMSError):
    """Exception raised for database-related errors."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Database error"
        super().__init__(message, code, details)


class ValidationError(WMSError):
    """Exception raised for invalid arguments."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Validation error"
        super().__init__(message, code, details)


class NotFoundError(WMSError):
    """Exception raised when a requested resource is not found."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Resource not found"
        super().__init__(message, code, details)


class InventoryError(WMSError):
    """Exception raised for inventory ledger errors."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Inventory error"
        super().__init__(message, code, details)


class InsufficientStockError(InventoryError):
    """Exception raised when a strict consumption would overdraw a bucket."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Insufficient stock"
        super().__init__(message, code or 'INSUFFICIENT_STOCK', details)


class ReplenishmentError(WMSError):
    """Exception raised for replenishment errors."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Replenishment error"
        super().__init__(message, code, details)


class TaskStateError(ReplenishmentError):
    """Exception raised when a task is not in a state that allows the operation."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Invalid replenishment task state"
        super().__init__(message, code or 'INVALID_TASK_STATE', details)


class BatchProcessError(WMSError):
    """Exception raised for batch process errors."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Batch process error"
        super().__init__(message, code, details)
