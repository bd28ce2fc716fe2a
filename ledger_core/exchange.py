"""
Currency Exchange Module

Converts funds between two accounts of the same owner held in different
currencies. Uses the same quote/lock/commit protocol as transfers, plus a
fee: ``max(minimum fee, converted x fee rate)`` in the target currency, where
the minimum is configured in the fee currency (USD) and converted.

Posting per exchange, all sharing one correlation id:
  * EXCHANGE debit on the source for the requested amount
  * EXCHANGE credit on the destination for the gross converted amount
  * FEE debit on the destination for the fee
The destination therefore nets ``converted - fee`` and every row stays part
of the balance reconstruction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union
import uuid

from .accounts import Account, AccountManager, AuthorizationPolicy
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .currency import Currency, Money, to_decimal
from .errors import (
    AccountInactiveError, CurrencyMismatchError, LedgerError, UnauthorizedError, ValidationError
)
from .events import DomainEvent, EventDispatcher
from .idempotency import IdempotencyGuard, derive_key, fingerprint
from .ledger import AccountLedger
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .rates import CurrencyConverter, Quote
from .storage import StorageInterface
from .transaction_log import TransactionType
from .unit_of_work import CancellationToken, UnitOfWork


@dataclass(frozen=True)
class ExchangeQuote:
    """What an exchange would yield right now"""
    from_currency: Currency
    to_currency: Currency
    amount: Money
    rate: Decimal
    converted_amount: Money
    fee: Money
    net_amount: Money
    valid_until: datetime


@dataclass(frozen=True)
class ExchangeResult:
    correlation_id: str
    from_account_id: str
    to_account_id: str
    amount: Money
    converted_amount: Money
    fee: Money
    net_amount: Money
    exchange_rate: Decimal
    from_balance: Money
    to_balance: Money
    debit_transaction_id: str
    credit_transaction_id: str
    fee_transaction_id: str
    replayed: bool = field(default=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "from_account_id": self.from_account_id,
            "to_account_id": self.to_account_id,
            "amount": self.amount.to_dict(),
            "converted_amount": self.converted_amount.to_dict(),
            "fee": self.fee.to_dict(),
            "net_amount": self.net_amount.to_dict(),
            "exchange_rate": str(self.exchange_rate),
            "from_balance": self.from_balance.to_dict(),
            "to_balance": self.to_balance.to_dict(),
            "debit_transaction_id": self.debit_transaction_id,
            "credit_transaction_id": self.credit_transaction_id,
            "fee_transaction_id": self.fee_transaction_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], replayed: bool = False) -> 'ExchangeResult':
        return cls(
            correlation_id=data["correlation_id"],
            from_account_id=data["from_account_id"],
            to_account_id=data["to_account_id"],
            amount=Money.from_dict(data["amount"]),
            converted_amount=Money.from_dict(data["converted_amount"]),
            fee=Money.from_dict(data["fee"]),
            net_amount=Money.from_dict(data["net_amount"]),
            exchange_rate=Decimal(data["exchange_rate"]),
            from_balance=Money.from_dict(data["from_balance"]),
            to_balance=Money.from_dict(data["to_balance"]),
            debit_transaction_id=data["debit_transaction_id"],
            credit_transaction_id=data["credit_transaction_id"],
            fee_transaction_id=data["fee_transaction_id"],
            replayed=replayed
        )


class ExchangeEngine:
    """Same-owner currency exchange with fee"""

    OPERATION = "exchange"

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        ledger: AccountLedger,
        converter: CurrencyConverter,
        guard: IdempotencyGuard,
        locks: AccountLockManager,
        policy: AuthorizationPolicy,
        event_dispatcher: Optional[EventDispatcher] = None,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.converter = converter
        self.guard = guard
        self.locks = locks
        self.policy = policy
        self.event_dispatcher = event_dispatcher
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.logger = get_logger("ledger.exchange")

    @property
    def fee_rate(self) -> Decimal:
        return Decimal(self.config.exchange_fee_rate)

    def calculate_fee(self, converted: Money) -> Money:
        """Percentage fee with a floor, both in the target currency"""
        fee_currency = Currency.from_code(self.config.fee_currency)
        min_fee = Money(Decimal(self.config.exchange_min_fee), fee_currency)
        if converted.currency != fee_currency:
            min_quote = self.converter.get_rate(fee_currency, converted.currency)
            min_fee = self.converter.convert(min_fee, min_quote.rate, converted.currency)
        percentage_fee = converted * self.fee_rate
        return max(percentage_fee, min_fee)

    def _price(self, amount: Money, quote: Quote) -> tuple:
        converted = self.converter.convert(amount, quote.rate, quote.to_currency)
        fee = self.calculate_fee(converted)
        if fee >= converted:
            raise ValidationError(
                f"Amount too small to cover the exchange fee of {fee.to_string()}",
                {"converted": converted.amount, "fee": fee.amount}
            )
        return converted, fee, converted - fee

    def quote(self, from_currency: Currency, to_currency: Currency,
              amount: Union[Money, Decimal, str]) -> ExchangeQuote:
        """Preview an exchange without locking or posting anything"""
        from_currency = Currency.from_code(from_currency)
        to_currency = Currency.from_code(to_currency)
        if from_currency == to_currency:
            raise ValidationError("Cannot exchange a currency into itself")
        money = amount if isinstance(amount, Money) else Money(to_decimal(amount), from_currency)
        if not money.is_positive():
            raise ValidationError("Exchange amount must be positive")
        quote = self.converter.get_rate(from_currency, to_currency)
        converted, fee, net = self._price(money, quote)
        return ExchangeQuote(from_currency, to_currency, money, quote.rate,
                             converted, fee, net, quote.expires_at)

    def exchange(
        self,
        caller_id: str,
        from_account_id: str,
        amount: Union[Money, Decimal, str],
        to_currency: Union[Currency, str],
        to_account_id: Optional[str] = None,
        request_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        description: str = "",
        cancel_token: Optional[CancellationToken] = None
    ) -> ExchangeResult:
        """
        Exchange ``amount`` of the source currency into ``to_currency``

        The destination defaults to the caller's priority account in the
        target currency. One rate value, fixed before locking, is used for
        both legs.
        """
        key = idempotency_key or derive_key(caller_id, request_id or str(uuid.uuid4()))
        source, destination, money = self._validate(caller_id, from_account_id, amount,
                                                    Currency.from_code(to_currency), to_account_id)
        request_fp = fingerprint(source=source.id, destination=destination.id,
                                 amount=money.amount, currency=money.currency.code)

        prior = self.guard.lookup(self.OPERATION, key, request_fp)
        if prior is not None:
            return ExchangeResult.from_dict(prior, replayed=True)

        quote = self.converter.get_rate(source.currency, destination.currency)
        pricing = self._price(money, quote)
        correlation_id = str(uuid.uuid4())

        try:
            with self.locks.acquire(source.id, destination.id):
                prior = self.guard.lookup(self.OPERATION, key, request_fp)
                if prior is not None:
                    return ExchangeResult.from_dict(prior, replayed=True)
                self.converter.ensure_fresh(quote)
                result = self._commit(caller_id, key, request_fp, correlation_id,
                                      source, destination, money, quote, pricing,
                                      description, cancel_token)
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"Exchange rolled back: {e.message}",
                user_id=caller_id, action="exchange", correlation_id=correlation_id,
                extra={"code": e.code}
            )
            raise

        log_action(
            self.logger, "info", "Exchange committed",
            user_id=caller_id, action="exchange", correlation_id=correlation_id,
            resource=f"account:{source.id}",
            extra={"amount": money.to_string(), "net": result.net_amount.to_string(),
                   "fee": result.fee.to_string(), "rate": str(quote.rate)}
        )
        return result

    def _validate(self, caller_id: str, from_account_id: str, amount, to_currency: Currency,
                  to_account_id: Optional[str]) -> tuple:
        source = self.accounts.require_account(from_account_id)
        if source.user_id != caller_id or not self.policy.owns_account(caller_id, source.id):
            raise UnauthorizedError("You don't own this account", {"account_id": source.id})
        if not source.is_active:
            raise AccountInactiveError("Source account is not active", {"account_id": source.id})

        if to_account_id:
            destination = self.accounts.require_account(to_account_id)
            if destination.user_id != caller_id:
                raise UnauthorizedError("You don't own the destination account",
                                        {"account_id": destination.id})
            if destination.currency != to_currency:
                raise CurrencyMismatchError(
                    f"Destination account currency ({destination.currency.code}) doesn't match "
                    f"requested currency ({to_currency.code})"
                )
        else:
            destination = self.accounts.get_priority_account(caller_id, to_currency)
            if destination is None:
                raise ValidationError(f"No {to_currency.code} account found. Create one or "
                                      f"specify a destination account.")

        if not destination.is_active:
            raise AccountInactiveError("Destination account is not active",
                                       {"account_id": destination.id})
        if destination.id == source.id:
            raise ValidationError("Cannot exchange to the same account")
        if destination.currency == source.currency:
            raise ValidationError("Accounts have the same currency")

        money = amount if isinstance(amount, Money) else Money(to_decimal(amount), source.currency)
        if money.currency != source.currency:
            raise CurrencyMismatchError("Exchange amount must be in the source account currency")
        if not money.is_positive():
            raise ValidationError("Exchange amount must be positive")
        return source, destination, money

    def _commit(self, caller_id: str, key: str, request_fp: str, correlation_id: str,
                source: Account, destination: Account, money: Money, quote: Quote,
                pricing: tuple, description: str,
                cancel_token: Optional[CancellationToken]) -> ExchangeResult:
        converted, fee, net = pricing
        debit_id, credit_id, fee_id = (str(uuid.uuid4()) for _ in range(3))
        description = description or f"Currency exchange {source.currency.code} to {destination.currency.code}"

        with UnitOfWork(self.storage, cancel_token) as uow:
            debit = self.ledger.debit(
                source.id, money, f"{key}:debit",
                transaction_type=TransactionType.EXCHANGE, correlation_id=correlation_id,
                transaction_id=debit_id, linked_transaction_id=credit_id,
                counterparty_account_id=destination.id, exchange_rate=quote.rate,
                description=description
            )
            credit = self.ledger.credit(
                destination.id, converted, f"{key}:credit",
                transaction_type=TransactionType.EXCHANGE, correlation_id=correlation_id,
                transaction_id=credit_id, linked_transaction_id=debit_id,
                counterparty_account_id=source.id, exchange_rate=quote.rate,
                description=description
            )
            fee_leg = self.ledger.debit(
                destination.id, fee, f"{key}:fee",
                transaction_type=TransactionType.FEE, correlation_id=correlation_id,
                transaction_id=fee_id, linked_transaction_id=credit_id,
                description="Exchange fee"
            )
            result = ExchangeResult(
                correlation_id=correlation_id,
                from_account_id=source.id,
                to_account_id=destination.id,
                amount=money,
                converted_amount=converted,
                fee=fee,
                net_amount=net,
                exchange_rate=quote.rate,
                from_balance=debit.new_balance,
                to_balance=fee_leg.new_balance,
                debit_transaction_id=debit.transaction_id,
                credit_transaction_id=credit.transaction_id,
                fee_transaction_id=fee_leg.transaction_id
            )
            self.guard.record(self.OPERATION, key, result.to_dict(), request_fp)
            self.converter.record_history(quote, correlation_id)
            uow.on_commit(lambda: self._completed(caller_id, result))
        return result

    def _completed(self, caller_id: str, result: ExchangeResult) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.EXCHANGE_POSTED, "account", result.from_account_id,
                metadata=result.to_dict(), user_id=caller_id, correlation_id=result.correlation_id
            )
        if self.event_dispatcher:
            data = result.to_dict()
            data["user_id"] = caller_id
            self.event_dispatcher.emit(
                DomainEvent.EXCHANGE_COMPLETED, "exchange", result.correlation_id,
                data, correlation_id=result.correlation_id
            )
