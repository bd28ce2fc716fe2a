"""
Test suite for the audit trail

Tests hash chaining, tamper detection and the entries written by committed
money movements.
"""

import pytest
from decimal import Decimal

from ledger_core.audit import AuditEventType, AuditTrail
from ledger_core.config import LedgerConfig
from ledger_core.currency import Currency
from ledger_core.errors import InsufficientFundsError
from ledger_core.rates import StaticRateSource
from ledger_core.service import LedgerService
from ledger_core.storage import InMemoryStorage


class TestAuditTrail:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_log_first_event(self):
        event = self.audit_trail.log_event(
            AuditEventType.DEPOSIT_POSTED, "account", "acc-1",
            metadata={"amount": Decimal("10.00")}, user_id="user-1", correlation_id="corr-1"
        )

        assert event.sequence == 1
        assert event.previous_hash == ""
        assert len(event.current_hash) == 64
        assert event.verify_hash()
        assert event.metadata == {"amount": "10.00"}

    def test_chain_links_events(self):
        first = self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "acc-1")
        second = self.audit_trail.log_event(AuditEventType.DEPOSIT_POSTED, "account", "acc-1")

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 2

    def test_tampered_metadata_detected(self):
        event = self.audit_trail.log_event(AuditEventType.DEPOSIT_POSTED, "account", "acc-1",
                                           metadata={"amount": "10.00"})
        self.audit_trail.log_event(AuditEventType.WITHDRAWAL_POSTED, "account", "acc-1")

        data = self.storage.load("audit_events", event.id)
        data["metadata"]["amount"] = "1000.00"
        self.storage.save("audit_events", event.id, data)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_deleted_event_breaks_chain(self):
        self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "acc-1")
        middle = self.audit_trail.log_event(AuditEventType.DEPOSIT_POSTED, "account", "acc-1")
        self.audit_trail.log_event(AuditEventType.WITHDRAWAL_POSTED, "account", "acc-1")

        self.storage.delete("audit_events", middle.id)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_chain_resumes_after_restart(self):
        first = self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "acc-1")

        reopened = AuditTrail(self.storage)
        second = reopened.log_event(AuditEventType.DEPOSIT_POSTED, "account", "acc-1")

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert reopened.verify_integrity()["valid"]

    def test_queries(self):
        self.audit_trail.log_event(AuditEventType.DEPOSIT_POSTED, "account", "acc-1", correlation_id="c1")
        self.audit_trail.log_event(AuditEventType.DEPOSIT_POSTED, "account", "acc-2", correlation_id="c2")
        self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "loan-1")

        assert len(self.audit_trail.get_events_for_entity("account", "acc-1")) == 1
        assert len(self.audit_trail.get_events_by_type(AuditEventType.DEPOSIT_POSTED)) == 2
        assert self.audit_trail.get_events_by_correlation("c2")[0].entity_id == "acc-2"
        assert self.audit_trail.count_events() == 3

    def test_disabled_trail_records_nothing(self):
        trail = AuditTrail(InMemoryStorage(), enabled=False)
        assert trail.log_event(AuditEventType.DEPOSIT_POSTED, "account", "acc-1") is None
        assert trail.count_events() == 0


class TestAuditFromOperations:

    def setup_method(self):
        self.service = LedgerService.create(
            storage=InMemoryStorage(),
            rate_source=StaticRateSource(),
            config=LedgerConfig()
        )
        self.alice = self.service.accounts.create_account("alice", Currency.USD)
        self.bob = self.service.accounts.create_account("bob", Currency.USD)

    def test_committed_transfer_is_audited_once(self):
        self.service.deposit(self.alice.id, "30.00", "USD")
        result = self.service.transfer("alice", self.alice.id, self.bob.id, "10.00", idempotency_key="t")
        self.service.transfer("alice", self.alice.id, self.bob.id, "10.00", idempotency_key="t")

        events = self.service.audit_trail.get_events_by_correlation(result.correlation_id)
        assert [e.event_type for e in events] == [AuditEventType.TRANSFER_POSTED]
        assert events[0].user_id == "alice"

    def test_failed_operation_is_not_audited(self):
        before = self.service.audit_trail.count_events()
        with pytest.raises(InsufficientFundsError):
            self.service.transfer("alice", self.alice.id, self.bob.id, "10.00")
        assert self.service.audit_trail.count_events() == before
        assert self.service.audit_trail.verify_integrity()["valid"]

    def test_audit_disabled_by_config(self):
        service = LedgerService.create(
            storage=InMemoryStorage(),
            rate_source=StaticRateSource(),
            config=LedgerConfig(enable_audit_logging=False)
        )
        account = service.accounts.create_account("alice", Currency.USD)
        service.deposit(account.id, "1.00", "USD")
        assert service.audit_trail.count_events() == 0
