from .inventory_ledger import InventoryLedger
from .policy_service import ReplenPolicyService
from .source_locator import SourceLocator, SourceMatch
from .replenishment_service import ReplenishmentService

__all__ = [
    'InventoryLedger',
    'ReplenPolicyService',
    'SourceLocator',
    'SourceMatch',
    'ReplenishmentService'
]
