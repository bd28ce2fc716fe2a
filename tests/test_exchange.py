"""
Test suite for currency exchange
"""

import pytest
from decimal import Decimal

from ledger_core.config import LedgerConfig
from ledger_core.currency import Currency, Money
from ledger_core.errors import (
    CurrencyMismatchError, InsufficientFundsError, UnauthorizedError, ValidationError
)
from ledger_core.events import DomainEvent, RecordingHandler
from ledger_core.rates import StaticRateSource
from ledger_core.service import LedgerService
from ledger_core.storage import InMemoryStorage
from ledger_core.transaction_log import TransactionType


def eur(amount):
    return Money(Decimal(amount), Currency.EUR)


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


class TestExchange:

    def setup_method(self):
        self.rates = StaticRateSource()
        self.service = LedgerService.create(
            storage=InMemoryStorage(),
            rate_source=self.rates,
            config=LedgerConfig()
        )
        self.recorder = RecordingHandler()
        self.service.event_dispatcher.subscribe(DomainEvent.EXCHANGE_COMPLETED, self.recorder)

        self.usd_account = self.service.accounts.create_account("alice", Currency.USD)
        self.eur_account = self.service.accounts.create_account("alice", Currency.EUR)
        self.service.deposit(self.usd_account.id, "2000.00", "USD")

    def test_quote(self):
        quote = self.service.exchange_engine.quote("USD", "EUR", "1000.00")

        assert quote.rate == Decimal("0.92")
        assert quote.converted_amount == eur("920.00")
        assert quote.fee == eur("4.60")
        assert quote.net_amount == eur("915.40")
        assert self.service.get_balance(self.usd_account.id) == usd("2000.00")

    def test_minimum_fee_converted_from_fee_currency(self):
        quote = self.service.exchange_engine.quote("USD", "EUR", "10.00")
        # 0.5% of 9.20 is 0.05, below the 0.50 USD floor (0.46 EUR)
        assert quote.fee == eur("0.46")

    def test_amount_below_fee_rejected(self):
        with pytest.raises(ValidationError):
            self.service.exchange_engine.quote("USD", "EUR", "0.50")
        with pytest.raises(ValidationError):
            self.service.exchange_engine.quote("USD", "USD", "10.00")

    def test_exchange_posts_three_rows(self):
        result = self.service.exchange("alice", self.usd_account.id, None, "1000.00", "EUR",
                                       idempotency_key="x-1")

        assert result.to_account_id == self.eur_account.id
        assert result.from_balance == usd("1000.00")
        assert result.to_balance == eur("915.40")
        assert self.service.get_balance(self.eur_account.id) == eur("915.40")

        rows = self.service.transaction_log.by_correlation(result.correlation_id)
        types = sorted(r.transaction_type.value for r in rows)
        assert types == ["exchange", "exchange", "fee"]
        assert all(r.exchange_rate == Decimal("0.92") for r in rows
                   if r.transaction_type == TransactionType.EXCHANGE)

        assert len(self.recorder.events) == 1
        assert self.service.verify_balances()["valid"]

    def test_rate_is_fixed_for_both_legs(self):
        quote = self.service.exchange_engine.quote("USD", "EUR", "100.00")
        self.rates.set_rate(Currency.EUR, Decimal("0.50"))

        # Cached quote still valid: the new table value is not picked up mid-window
        result = self.service.exchange("alice", self.usd_account.id, self.eur_account.id,
                                       "100.00", "EUR")
        assert result.exchange_rate == quote.rate
        assert result.converted_amount == eur("92.00")

    def test_replay_returns_original_result(self):
        first = self.service.exchange("alice", self.usd_account.id, None, "100.00", "EUR",
                                      idempotency_key="x-2")
        again = self.service.exchange("alice", self.usd_account.id, None, "100.00", "EUR",
                                      idempotency_key="x-2")

        assert again.replayed
        assert again == first
        assert self.service.get_balance(self.usd_account.id) == usd("1900.00")
        assert len(self.recorder.events) == 1

    def test_insufficient_funds_rolls_back_everything(self):
        with pytest.raises(InsufficientFundsError):
            self.service.exchange("alice", self.usd_account.id, None, "2000.01", "EUR")

        assert self.service.get_balance(self.eur_account.id).is_zero()
        assert self.service.transaction_log.for_account(self.eur_account.id) == []

    def test_destination_must_belong_to_caller_and_match_currency(self):
        other = self.service.accounts.create_account("bob", Currency.EUR)
        gbp = self.service.accounts.create_account("alice", Currency.GBP)

        with pytest.raises(UnauthorizedError):
            self.service.exchange("alice", self.usd_account.id, other.id, "10.00", "EUR")
        with pytest.raises(CurrencyMismatchError):
            self.service.exchange("alice", self.usd_account.id, gbp.id, "10.00", "EUR")
        with pytest.raises(UnauthorizedError):
            self.service.exchange("bob", self.usd_account.id, None, "10.00", "EUR")

    def test_missing_target_account(self):
        with pytest.raises(ValidationError):
            self.service.exchange("alice", self.usd_account.id, None, "10.00", "JPY")
