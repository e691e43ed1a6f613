"""Post-commit notification channel.

Ledger and replenishment operations return their result synchronously and
record events on the session. Events are delivered to subscribers only after
the surrounding transaction commits; a rollback discards them.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Type
import logging

from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_PENDING_KEY = 'pending_events'


@dataclass(frozen=True)
class InventoryChanged:
    product_variant_id: int
    warehouse_location_id: int
    transaction_type: str
    variant_qty_delta: int
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ReplenTaskChanged:
    task_id: int
    status: str
    pick_product_variant_id: int
    to_location_id: int
    occurred_at: datetime = field(default_factory=datetime.now)


class EventBus:
    """In-process subscriber registry keyed by event type."""

    def __init__(self):
        self._subscribers: Dict[Type, List[Callable]] = {}

    def subscribe(self, event_type: Type, handler: Callable) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type, handler: Callable) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        self._subscribers.clear()

    def publish(self, evt) -> None:
        """Deliver one event. Handler failures are logged and do not propagate,
        the transaction that produced the event has already committed."""
        for handler in list(self._subscribers.get(type(evt), [])):
            try:
                handler(evt)
            except Exception as e:
                logger.error(f"Event handler {handler!r} failed for {type(evt).__name__}: {str(e)}")


bus = EventBus()


def record_event(session: Session, evt) -> None:
    """Queue an event for delivery when the session commits."""
    session.info.setdefault(_PENDING_KEY, []).append(evt)


@event.listens_for(Session, 'after_commit')
def _dispatch_after_commit(session):
    pending = session.info.pop(_PENDING_KEY, [])
    for evt in pending:
        bus.publish(evt)


@event.listens_for(Session, 'after_soft_rollback')
def _discard_after_rollback(session, previous_transaction):
    session.info.pop(_PENDING_KEY, None)
