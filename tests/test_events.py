"""
Tests for the event dispatcher

Domain events are published only after the unit of work commits; a failing
handler never breaks the operation that emitted the event.
"""

import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

from ledger_core.config import LedgerConfig
from ledger_core.currency import Currency
from ledger_core.errors import InsufficientFundsError
from ledger_core.events import DomainEvent, EventDispatcher, EventPayload, RecordingHandler
from ledger_core.rates import StaticRateSource
from ledger_core.service import LedgerService
from ledger_core.storage import InMemoryStorage


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = EventPayload(
            event_type=DomainEvent.DEPOSIT_COMPLETED,
            entity_type="account",
            entity_id="acc-1",
            data={"amount": "100.00"}
        )

        assert event.entity_id == "acc-1"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0
        assert event.correlation_id is None

    def test_event_payload_serialization(self):
        original = EventPayload(
            event_type=DomainEvent.TRANSFER_COMPLETED,
            entity_type="transfer",
            entity_id="corr-1",
            data={"amount": {"amount": "5.00", "currency": "USD"}},
            correlation_id="corr-1"
        )

        data = original.to_dict()
        assert data["event_type"] == "transfer.completed"

        restored = EventPayload.from_dict(data)
        assert restored.event_type == original.event_type
        assert restored.data == original.data
        assert restored.correlation_id == "corr-1"
        assert restored.event_id == original.event_id


class TestEventDispatcher:
    """Test the event dispatcher"""

    def test_subscribe_and_emit(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.LOAN_APPROVED, handler)

        event = dispatcher.emit(DomainEvent.LOAN_APPROVED, "loan", "loan-1", {"rate": "5.0"})

        handler.assert_called_once_with(event)
        assert dispatcher.get_handler_count(DomainEvent.LOAN_APPROVED) == 1

    def test_handlers_only_see_their_event_type(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.LOAN_APPROVED, handler)

        dispatcher.emit(DomainEvent.LOAN_REJECTED, "loan", "loan-1", {})
        handler.assert_not_called()

    def test_global_handler_and_unsubscribe(self):
        dispatcher = EventDispatcher()
        recorder = RecordingHandler()
        handler = Mock()
        dispatcher.subscribe_all(recorder)
        dispatcher.subscribe(DomainEvent.DEPOSIT_COMPLETED, handler)

        dispatcher.emit(DomainEvent.DEPOSIT_COMPLETED, "account", "a", {})
        dispatcher.unsubscribe(DomainEvent.DEPOSIT_COMPLETED, handler)
        dispatcher.unsubscribe(DomainEvent.DEPOSIT_COMPLETED, handler)
        dispatcher.emit(DomainEvent.DEPOSIT_COMPLETED, "account", "a", {})

        assert handler.call_count == 1
        assert len(recorder.of_type(DomainEvent.DEPOSIT_COMPLETED)) == 2
        assert dispatcher.get_handler_count() == 1

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0

    def test_failing_handler_does_not_stop_others(self):
        dispatcher = EventDispatcher()
        broken = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        dispatcher.subscribe(DomainEvent.DEPOSIT_COMPLETED, broken)
        dispatcher.subscribe(DomainEvent.DEPOSIT_COMPLETED, healthy)

        dispatcher.emit(DomainEvent.DEPOSIT_COMPLETED, "account", "a", {})
        healthy.assert_called_once()


class TestEventsFromOperations:
    """Events emitted by the service"""

    def setup_method(self):
        self.service = LedgerService.create(
            storage=InMemoryStorage(),
            rate_source=StaticRateSource(),
            config=LedgerConfig()
        )
        self.recorder = RecordingHandler()
        self.service.event_dispatcher.subscribe_all(self.recorder)
        self.source = self.service.accounts.create_account("alice", Currency.USD)
        self.target = self.service.accounts.create_account("bob", Currency.USD)

    def test_events_carry_the_correlation_id(self):
        self.service.deposit(self.source.id, "50.00", "USD")
        result = self.service.transfer("alice", self.source.id, self.target.id, "20.00")

        event = self.recorder.of_type(DomainEvent.TRANSFER_COMPLETED)[0]
        assert event.correlation_id == result.correlation_id
        assert event.data["amount"] == {"amount": "20.00", "currency": "USD"}

    def test_no_completion_event_for_rolled_back_operation(self):
        with pytest.raises(InsufficientFundsError):
            self.service.withdraw(self.source.id, "1.00", "USD")
        assert self.recorder.of_type(DomainEvent.WITHDRAWAL_COMPLETED) == []

    def test_handler_sees_committed_state(self):
        seen = []

        def check_balance(event):
            seen.append(self.service.get_balance(event.entity_id).amount)

        self.service.event_dispatcher.subscribe(DomainEvent.DEPOSIT_COMPLETED, check_balance)
        self.service.deposit(self.source.id, "12.00", "USD")
        assert seen == [Decimal("12.00")]

    def test_failing_handler_does_not_undo_the_deposit(self):
        self.service.event_dispatcher.subscribe(DomainEvent.DEPOSIT_COMPLETED,
                                                Mock(side_effect=RuntimeError("down")))
        self.service.deposit(self.source.id, "5.00", "USD")
        assert self.service.get_balance(self.source.id).amount == Decimal("5.00")
