from .config import config
from .db import db, session_scope, atomic
from .logging_setup import logger, get_logger
from .exceptions import (
    WMSError, ValidationError, NotFoundError, InventoryError,
    InsufficientStockError, ReplenishmentError, TaskStateError
)
from .events import bus

__all__ = [
    'config',
    'db',
    'session_scope',
    'atomic',
    'logger',
    'get_logger',
    'bus',
    'WMSError',
    'ValidationError',
    'NotFoundError',
    'InventoryError',
    'InsufficientStockError',
    'ReplenishmentError',
    'TaskStateError'
]
