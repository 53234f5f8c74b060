"""
Event System Module

Publish/subscribe dispatcher for ledger domain events. Reconciliation alerts
are delivered through it so operators can hook paging or notification
handlers without the engine knowing about them.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the ledger"""

    ACCOUNT_OPENED = "account.opened"

    TRANSFER_COMPLETED = "transfer.completed"
    TRANSFER_FAILED = "transfer.failed"

    RECONCILIATION_REQUIRED = "ledger.reconciliation_required"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


Handler = Callable[[EventPayload], None]


class EventDispatcher:
    """Central event dispatcher - publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Handler]] = {}
        self._global_handlers: List[Handler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("fintech_ledger.events")

    def subscribe(self, event_type: DomainEvent, handler: Handler) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {getattr(handler, '__name__', repr(handler))} to {event_type.value}")

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Handler) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # Subscriber failures are logged, never raised
                self.logger.exception(
                    f"Error in event handler {getattr(handler, '__name__', repr(handler))} for {event.event_type.value}"
                )

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def create_transaction_event(event_type: DomainEvent, transaction) -> EventPayload:
    """Create a transaction-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="transaction",
        entity_id=transaction.id,
        data={
            "source_account_id": transaction.source_account_id,
            "destination_account_id": transaction.destination_account_id,
            "amount": str(transaction.amount),
            "currency": transaction.currency.code,
            "status": transaction.status.value,
            "initiated_by": transaction.initiated_by,
            "failure_reason": transaction.failure_reason
        }
    )


def create_account_event(event_type: DomainEvent, account) -> EventPayload:
    """Create an account-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="account",
        entity_id=account.id,
        data={
            "account_number": account.account_number,
            "owner_id": account.owner_id,
            "account_type": account.account_type.value,
            "currency": account.currency.code,
            "balance": str(account.balance)
        }
    )
