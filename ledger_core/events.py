"""
Event System Module

Publish/subscribe dispatcher for ledger domain events. Events are published
only after the unit of work that produced them has committed; handler
failures are logged and never affect the committed money movement.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events emitted by the ledger"""

    # Single-account events
    DEPOSIT_COMPLETED = "deposit.completed"
    WITHDRAWAL_COMPLETED = "withdrawal.completed"
    TOPUP_COMPLETED = "topup.completed"

    # Money movement
    TRANSFER_COMPLETED = "transfer.completed"
    TRANSFER_FAILED = "transfer.failed"
    EXCHANGE_COMPLETED = "exchange.completed"

    # Loan events
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_PAYMENT_APPLIED = "loan.payment_applied"
    LOAN_PAYMENT_FAILED = "loan.payment_failed"
    LOAN_PAID_OFF = "loan.paid_off"
    LOAN_DEFAULTED = "loan.defaulted"

    # Investment events
    INVESTMENT_APPROVED = "investment.approved"
    INVESTMENT_REJECTED = "investment.rejected"
    INVESTMENT_PAYOUT_COMPLETED = "investment.payout_completed"
    INVESTMENT_PAYOUT_FAILED = "investment.payout_failed"
    INVESTMENT_MATURED = "investment.matured"
    INVESTMENT_WITHDRAWN = "investment.withdrawn"
    INVESTMENT_RATE_CHANGED = "investment.rate_changed"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    correlation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'correlation_id': self.correlation_id,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            correlation_id=data.get('correlation_id'),
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("ledger.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

    def emit(self, event_type: DomainEvent, entity_type: str, entity_id: str,
             data: Dict[str, Any], correlation_id: Optional[str] = None) -> EventPayload:
        """Build and publish an event in one call"""
        event = EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data,
            correlation_id=correlation_id
        )
        self.publish(event)
        return event

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


class RecordingHandler:
    """Collects published events; handy for tests and replay tooling"""

    def __init__(self):
        self.events: List[EventPayload] = []
        self._lock = RLock()

    def __call__(self, event: EventPayload) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: DomainEvent) -> List[EventPayload]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]
