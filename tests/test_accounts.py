"""
Test suite for account management

Tests account creation, priority accounts, lookup by number and the
ownership policy used by money movement.
"""

import pytest
import threading
from decimal import Decimal
from unittest.mock import patch

from ledger_core.accounts import AccountManager, OwnershipPolicy
from ledger_core.audit import AuditTrail, AuditEventType
from ledger_core.currency import Currency, Money
from ledger_core.errors import AccountNotFoundError, LockTimeoutError, ValidationError
from ledger_core.locks import AccountLockManager
from ledger_core.storage import InMemoryStorage


class TestAccountManager:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.accounts = AccountManager(self.storage, self.audit_trail)

    def test_create_account(self):
        account = self.accounts.create_account("user-1", Currency.USD, name="Main")

        assert account.user_id == "user-1"
        assert account.currency == Currency.USD
        assert account.balance == Money.zero(Currency.USD)
        assert account.is_active
        assert len(account.account_number) == 10
        assert account.account_number.isdigit()

        loaded = self.accounts.get_account(account.id)
        assert loaded.name == "Main"
        assert loaded.balance.amount == Decimal("0.00")

    def test_first_account_per_currency_is_priority(self):
        first = self.accounts.create_account("user-1", Currency.USD)
        second = self.accounts.create_account("user-1", Currency.USD)
        euro = self.accounts.create_account("user-1", "EUR")

        assert first.is_priority
        assert not second.is_priority
        assert euro.is_priority
        assert self.accounts.get_priority_account("user-1", Currency.USD).id == first.id

    def test_set_priority_account_moves_the_flag(self):
        first = self.accounts.create_account("user-1", Currency.USD)
        second = self.accounts.create_account("user-1", Currency.USD)

        self.accounts.set_priority_account("user-1", second.id)

        assert self.accounts.get_priority_account("user-1", Currency.USD).id == second.id
        assert not self.accounts.get_account(first.id).is_priority
        events = self.audit_trail.get_events_by_type(AuditEventType.PRIORITY_ACCOUNT_CHANGED)
        assert events[-1].entity_id == second.id

    def test_priority_change_keeps_balance_written_meanwhile(self):
        first = self.accounts.create_account("user-1", Currency.USD)
        second = self.accounts.create_account("user-1", Currency.USD)
        get_priority_account = self.accounts.get_priority_account

        def credit_after_read(user_id, currency):
            current = get_priority_account(user_id, currency)
            row = self.storage.load("accounts", first.id)
            if row["balance"] != "75.00":
                # A posting lands after the unlocked read
                row["balance"] = "75.00"
                self.storage.save("accounts", first.id, row)
            return current

        with patch.object(self.accounts, "get_priority_account", side_effect=credit_after_read):
            self.accounts.set_priority_account("user-1", second.id)

        first = self.accounts.get_account(first.id)
        assert not first.is_priority
        assert first.balance == Money(Decimal("75.00"), Currency.USD)

    def test_flag_updates_wait_for_the_account_section(self):
        locks = AccountLockManager(timeout=0.05)
        accounts = AccountManager(self.storage, self.audit_trail, locks)
        first = accounts.create_account("user-1", Currency.USD)
        second = accounts.create_account("user-1", Currency.USD)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.acquire(first.id):
                held.set()
                release.wait(2)

        worker = threading.Thread(target=holder)
        worker.start()
        held.wait(2)
        try:
            with pytest.raises(LockTimeoutError):
                accounts.deactivate_account(first.id)
            with pytest.raises(LockTimeoutError):
                accounts.set_priority_account("user-1", second.id)
        finally:
            release.set()
            worker.join()

        assert accounts.get_account(first.id).is_active
        assert accounts.get_priority_account("user-1", Currency.USD).id == first.id

    def test_set_priority_rejects_foreign_account(self):
        account = self.accounts.create_account("user-1", Currency.USD)
        with pytest.raises(ValidationError):
            self.accounts.set_priority_account("user-2", account.id)

    def test_lookup_by_number_and_resolve(self):
        account = self.accounts.create_account("user-1", Currency.GBP, account_number="1234567890")

        assert self.accounts.get_account_by_number("1234567890").id == account.id
        assert self.accounts.resolve("1234567890").id == account.id
        assert self.accounts.resolve(account.id).id == account.id
        with pytest.raises(AccountNotFoundError):
            self.accounts.resolve("0000000000")

    def test_duplicate_account_number_rejected(self):
        self.accounts.create_account("user-1", Currency.USD, account_number="1111111111")
        with pytest.raises(ValidationError):
            self.accounts.create_account("user-2", Currency.USD, account_number="1111111111")

    def test_require_account_missing(self):
        with pytest.raises(AccountNotFoundError):
            self.accounts.require_account("nope")

    def test_deactivate_and_activate(self):
        account = self.accounts.create_account("user-1", Currency.USD)

        assert not self.accounts.deactivate_account(account.id).is_active
        assert not self.accounts.get_account(account.id).is_active
        assert self.accounts.activate_account(account.id).is_active

        types = [e.event_type for e in self.audit_trail.get_events_for_entity("account", account.id)]
        assert AuditEventType.ACCOUNT_DEACTIVATED in types
        assert AuditEventType.ACCOUNT_ACTIVATED in types

    def test_get_user_accounts(self):
        self.accounts.create_account("user-1", Currency.USD)
        self.accounts.create_account("user-1", Currency.EUR)
        self.accounts.create_account("user-2", Currency.USD)
        assert len(self.accounts.get_user_accounts("user-1")) == 2


class TestOwnershipPolicy:

    def test_owns_account(self):
        accounts = AccountManager(InMemoryStorage())
        policy = OwnershipPolicy(accounts)
        account = accounts.create_account("user-1", Currency.USD)

        assert policy.owns_account("user-1", account.id)
        assert not policy.owns_account("user-2", account.id)
        assert not policy.owns_account("user-1", "missing")
