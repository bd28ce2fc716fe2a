"""
Ledger Service Module

Facade over the ledger components: single-account operations (deposit,
withdrawal, top-up) live here, multi-account ones delegate to the
orchestrators. ``LedgerService.create`` wires a complete engine from config.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone, date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import uuid

from .accounts import AccountManager, AuthorizationPolicy, OwnershipPolicy
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .currency import Currency, Money, to_decimal
from .errors import (
    CurrencyMismatchError, LimitExceededError, UnauthorizedError, ValidationError
)
from .events import DomainEvent, EventDispatcher
from .exchange import ExchangeEngine, ExchangeResult
from .idempotency import IdempotencyGuard
from .investments import InvestmentAccrual, PayoutResult, RateResolver
from .ledger import AccountLedger
from .loans import LoanAmortizer, LoanPaymentResult
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .rates import CurrencyConverter, HttpRateSource, Quote, RateSource, StaticRateSource
from .storage import StorageInterface, create_storage
from .transaction_log import TransactionLog, TransactionType
from .transfers import TransferOrchestrator, TransferResult
from .unit_of_work import CancellationToken, UnitOfWork


class PaymentMethod(Enum):
    """Top-up funding methods: (label, fee rate, min fee, max fee); fees in USD"""
    CREDIT_CARD = ("credit_card", "0.029", "0.50", "100.00")
    BANK_TRANSFER = ("bank_transfer", "0.005", "1.00", "25.00")

    def __init__(self, label: str, fee_rate: str, min_fee: str, max_fee: str):
        self.label = label
        self.fee_rate = Decimal(fee_rate)
        self.min_fee = Decimal(min_fee)
        self.max_fee = Decimal(max_fee)

    @classmethod
    def from_label(cls, label: str) -> 'PaymentMethod':
        for method in cls:
            if method.label == label:
                return method
        raise ValidationError(f"Unknown payment method: {label}")


@dataclass(frozen=True)
class TransactionResult:
    """Outcome of a single-account operation"""
    transaction_id: str
    account_id: str
    transaction_type: TransactionType
    amount: Money
    balance: Money
    correlation_id: str
    fee: Optional[Money] = None
    fee_transaction_id: Optional[str] = None
    replayed: bool = field(default=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "transaction_type": self.transaction_type.value,
            "amount": self.amount.to_dict(),
            "balance": self.balance.to_dict(),
            "correlation_id": self.correlation_id,
            "fee": self.fee.to_dict() if self.fee else None,
            "fee_transaction_id": self.fee_transaction_id
        }


class LedgerService:
    """Entry point for every balance-changing operation"""

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        transaction_log: TransactionLog,
        ledger: AccountLedger,
        converter: CurrencyConverter,
        guard: IdempotencyGuard,
        locks: AccountLockManager,
        transfers: TransferOrchestrator,
        exchange_engine: ExchangeEngine,
        loans: LoanAmortizer,
        investments: InvestmentAccrual,
        policy: AuthorizationPolicy,
        event_dispatcher: EventDispatcher,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.transaction_log = transaction_log
        self.ledger = ledger
        self.converter = converter
        self.guard = guard
        self.locks = locks
        self.transfers = transfers
        self.exchange_engine = exchange_engine
        self.loans = loans
        self.investments = investments
        self.policy = policy
        self.event_dispatcher = event_dispatcher
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.topups_table = "topups"
        self.logger = get_logger("ledger.service")

    @classmethod
    def create(
        cls,
        storage: Optional[StorageInterface] = None,
        rate_source: Optional[RateSource] = None,
        config: Optional[LedgerConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        policy: Optional[AuthorizationPolicy] = None
    ) -> 'LedgerService':
        """Wire every component from config"""
        config = config or get_config()
        storage = storage or create_storage(config.database_url)
        if rate_source is None:
            if config.rate_source_url:
                rate_source = HttpRateSource(config.rate_source_url, config.rate_source_timeout,
                                             config.rate_source_api_key or None)
            else:
                rate_source = StaticRateSource()

        audit_trail = AuditTrail(storage, enabled=config.enable_audit_logging)
        event_dispatcher = event_dispatcher or EventDispatcher()
        locks = AccountLockManager(config.lock_timeout_seconds)
        accounts = AccountManager(storage, audit_trail, locks)
        policy = policy or OwnershipPolicy(accounts)
        transaction_log = TransactionLog(storage)
        ledger = AccountLedger(storage, accounts, transaction_log, locks)
        converter = CurrencyConverter(rate_source, config.quote_validity_seconds, storage)
        guard = IdempotencyGuard(storage)

        transfers = TransferOrchestrator(storage, accounts, ledger, converter, guard, locks, policy,
                                         event_dispatcher, audit_trail, config)
        exchange_engine = ExchangeEngine(storage, accounts, ledger, converter, guard, locks, policy,
                                         event_dispatcher, audit_trail, config)
        loans = LoanAmortizer(storage, accounts, ledger, guard, locks, policy,
                              event_dispatcher, audit_trail, config)
        investments = InvestmentAccrual(storage, accounts, ledger, locks, RateResolver(storage), policy,
                                        event_dispatcher, audit_trail)

        return cls(storage, accounts, transaction_log, ledger, converter, guard, locks, transfers,
                   exchange_engine, loans, investments, policy, event_dispatcher, audit_trail, config)

    # -- single-account operations -------------------------------------------

    def deposit(self, account_id: str, amount: Union[Money, Decimal, str],
                currency: Optional[Union[Currency, str]] = None,
                idempotency_key: Optional[str] = None, description: str = "") -> TransactionResult:
        """Credit external funds to an account"""
        money = self._money(amount, currency)
        key = idempotency_key or str(uuid.uuid4())
        self.accounts.require_account(account_id)

        with self.locks.acquire(account_id):
            prior = self._prior(account_id, f"{key}:credit")
            if prior is not None:
                return prior

            correlation_id = str(uuid.uuid4())
            with UnitOfWork(self.storage) as uow:
                leg = self.ledger.credit(
                    account_id, money, f"{key}:credit", transaction_type=TransactionType.DEPOSIT,
                    correlation_id=correlation_id, description=description or "Deposit"
                )
                result = self._result(leg, account_id, TransactionType.DEPOSIT, money, correlation_id)
                uow.on_commit(lambda: self._posted(
                    DomainEvent.DEPOSIT_COMPLETED, AuditEventType.DEPOSIT_POSTED, result))
        return result

    def withdraw(self, account_id: str, amount: Union[Money, Decimal, str],
                 currency: Optional[Union[Currency, str]] = None,
                 idempotency_key: Optional[str] = None, description: str = "") -> TransactionResult:
        """
        Debit funds to an external destination

        Raises:
            InsufficientFundsError: balance below the amount
            LimitExceededError: the daily withdrawal limit would be exceeded
        """
        money = self._money(amount, currency)
        key = idempotency_key or str(uuid.uuid4())
        self.accounts.require_account(account_id)
        limit_quote = self.converter.get_rate(money.currency, Currency.from_code(self.config.limit_currency))

        with self.locks.acquire(account_id):
            prior = self._prior(account_id, f"{key}:debit")
            if prior is not None:
                return prior

            self._check_withdrawal_limit(account_id, money, limit_quote)
            correlation_id = str(uuid.uuid4())
            with UnitOfWork(self.storage) as uow:
                leg = self.ledger.debit(
                    account_id, money, f"{key}:debit", transaction_type=TransactionType.WITHDRAWAL,
                    correlation_id=correlation_id, description=description or "Withdrawal"
                )
                result = self._result(leg, account_id, TransactionType.WITHDRAWAL, money, correlation_id)
                uow.on_commit(lambda: self._posted(
                    DomainEvent.WITHDRAWAL_COMPLETED, AuditEventType.WITHDRAWAL_POSTED, result))
        return result

    def top_up(self, caller_id: str, account_id: str, amount: Union[Money, Decimal, str],
               currency: Optional[Union[Currency, str]] = None,
               payment_method: Union[PaymentMethod, str] = PaymentMethod.BANK_TRANSFER,
               idempotency_key: Optional[str] = None) -> TransactionResult:
        """
        Fund an account from a card or bank transfer

        The gross amount is credited and the processing fee debited as a FEE
        row in the same unit of work. Amount bounds and the daily/monthly
        totals are valued in the limit currency.
        """
        method = payment_method if isinstance(payment_method, PaymentMethod) else PaymentMethod.from_label(payment_method)
        money = self._money(amount, currency)
        if not self.policy.owns_account(caller_id, account_id):
            raise UnauthorizedError("Caller does not own the account", {"account_id": account_id})
        key = idempotency_key or str(uuid.uuid4())

        limit_currency = Currency.from_code(self.config.limit_currency)
        valued = self.converter.convert_at_market(money, limit_currency)
        fee = self.calculate_topup_fee(money, method)
        if fee >= money:
            raise ValidationError("Top-up amount does not cover the processing fee")

        with self.locks.acquire(account_id):
            prior = self.transaction_log.find_by_idempotency_key(account_id, f"{key}:credit")
            if prior is not None:
                fee_row = self.transaction_log.find_by_idempotency_key(account_id, f"{key}:fee")
                balance = fee_row.balance_after if fee_row else prior.balance_after
                return TransactionResult(
                    prior.id, account_id, prior.transaction_type, prior.amount, balance,
                    prior.correlation_id, fee=fee_row.amount if fee_row else None,
                    fee_transaction_id=fee_row.id if fee_row else None, replayed=True
                )

            self._check_topup_limits(caller_id, valued, limit_currency)
            correlation_id = str(uuid.uuid4())
            with UnitOfWork(self.storage) as uow:
                credit = self.ledger.credit(
                    account_id, money, f"{key}:credit", transaction_type=TransactionType.DEPOSIT,
                    correlation_id=correlation_id, description=f"Top-up via {method.label}"
                )
                fee_leg = self.ledger.debit(
                    account_id, fee, f"{key}:fee", transaction_type=TransactionType.FEE,
                    correlation_id=correlation_id, linked_transaction_id=credit.transaction_id,
                    description=f"Top-up processing fee ({method.label})"
                )
                now = datetime.now(timezone.utc).isoformat()
                self.storage.save(self.topups_table, correlation_id, {
                    'id': correlation_id,
                    'user_id': caller_id,
                    'account_id': account_id,
                    'amount': str(money.amount),
                    'currency': money.currency.code,
                    'valued_amount': str(valued.amount),
                    'fee': str(fee.amount),
                    'payment_method': method.label,
                    'created_at': now,
                    'updated_at': now
                })
                result = TransactionResult(
                    transaction_id=credit.transaction_id,
                    account_id=account_id,
                    transaction_type=TransactionType.DEPOSIT,
                    amount=money,
                    balance=fee_leg.new_balance,
                    correlation_id=correlation_id,
                    fee=fee,
                    fee_transaction_id=fee_leg.transaction_id
                )
                uow.on_commit(lambda: self._posted(
                    DomainEvent.TOPUP_COMPLETED, AuditEventType.TOPUP_POSTED, result, caller_id))
        return result

    def calculate_topup_fee(self, amount: Money, method: PaymentMethod) -> Money:
        """Percentage fee clamped to the method's bounds (bounds converted from USD)"""
        usd = Currency.USD

        def bound(value: Decimal) -> Money:
            return self.converter.convert_at_market(Money(value, usd), amount.currency)

        fee = amount * method.fee_rate
        return min(max(fee, bound(method.min_fee)), bound(method.max_fee))

    def get_topup_totals(self, user_id: str, as_of: Optional[datetime] = None) -> Dict[str, Money]:
        """Daily and monthly top-up totals in the limit currency"""
        now = as_of or datetime.now(timezone.utc)
        limit_currency = Currency.from_code(self.config.limit_currency)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)
        daily = monthly = Money.zero(limit_currency)
        for record in self.storage.find(self.topups_table, {"user_id": user_id}):
            created = datetime.fromisoformat(record["created_at"])
            valued = Money(Decimal(record["valued_amount"]), limit_currency)
            if created >= month_start:
                monthly = monthly + valued
                if day_start <= created < day_start + timedelta(days=1):
                    daily = daily + valued
        return {"daily": daily, "monthly": monthly}

    def _check_topup_limits(self, user_id: str, valued: Money, limit_currency: Currency) -> None:
        minimum = Money(Decimal(self.config.topup_min_amount), limit_currency)
        maximum = Money(Decimal(self.config.topup_max_amount), limit_currency)
        if valued < minimum or valued > maximum:
            raise ValidationError(
                f"Top-up must be between {minimum.to_string()} and {maximum.to_string()}",
                {"amount": valued.amount}
            )
        totals = self.get_topup_totals(user_id)
        daily_limit = Money(Decimal(self.config.topup_daily_limit), limit_currency)
        monthly_limit = Money(Decimal(self.config.topup_monthly_limit), limit_currency)
        if totals["daily"] + valued > daily_limit:
            raise LimitExceededError(f"Daily top-up limit of {daily_limit.to_string()} exceeded",
                                     {"used": totals["daily"].amount, "requested": valued.amount})
        if totals["monthly"] + valued > monthly_limit:
            raise LimitExceededError(f"Monthly top-up limit of {monthly_limit.to_string()} exceeded",
                                     {"used": totals["monthly"].amount, "requested": valued.amount})

    def _check_withdrawal_limit(self, account_id: str, money: Money, limit_quote: Quote) -> None:
        # Runs under the account section: values with the quote fetched before locking
        limit_currency = limit_quote.to_currency
        limit = Money(Decimal(self.config.daily_withdrawal_limit), limit_currency)
        day_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        withdrawn = Money.zero(money.currency)
        for row in self.transaction_log.for_account(account_id, transaction_type=TransactionType.WITHDRAWAL,
                                                    since=day_start):
            withdrawn = withdrawn + row.amount
        used = self.converter.convert(withdrawn, limit_quote.rate, limit_currency)
        requested = self.converter.convert(money, limit_quote.rate, limit_currency)
        if used + requested > limit:
            raise LimitExceededError(
                f"Withdrawal would exceed daily limit of {limit.to_string()}",
                {"limit": limit.amount, "used": used.amount, "requested": requested.amount}
            )

    # -- delegated operations ------------------------------------------------

    def transfer(self, caller_id: str, from_account_id: str, to_account_identifier: str,
                 amount: Union[Money, Decimal, str], idempotency_key: Optional[str] = None,
                 request_id: Optional[str] = None, description: str = "",
                 cancel_token: Optional[CancellationToken] = None) -> TransferResult:
        return self.transfers.transfer(caller_id, from_account_id, to_account_identifier, amount,
                                       request_id=request_id, idempotency_key=idempotency_key,
                                       description=description, cancel_token=cancel_token)

    def exchange(self, caller_id: str, from_account_id: str, to_account_id: Optional[str],
                 amount: Union[Money, Decimal, str], to_currency: Union[Currency, str],
                 idempotency_key: Optional[str] = None, request_id: Optional[str] = None,
                 cancel_token: Optional[CancellationToken] = None) -> ExchangeResult:
        return self.exchange_engine.exchange(caller_id, from_account_id, amount, to_currency,
                                             to_account_id=to_account_id, request_id=request_id,
                                             idempotency_key=idempotency_key, cancel_token=cancel_token)

    def apply_loan_payment(self, loan_id: str, amount: Union[Money, Decimal, str], account_id: str,
                           idempotency_key: Optional[str] = None,
                           caller_id: Optional[str] = None) -> LoanPaymentResult:
        return self.loans.apply_payment(loan_id, amount, account_id, idempotency_key=idempotency_key,
                                        caller_id=caller_id)

    def process_investment_payout(self, investment_id: str, as_of: Optional[date] = None) -> PayoutResult:
        return self.investments.process_payout(investment_id, as_of)

    def run_scheduled_jobs(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """Loan autopay and investment payouts/maturities due on ``as_of``"""
        return {
            "loans": self.loans.process_due_payments(as_of),
            "investments": self.investments.process_due_payouts(as_of)
        }

    # -- queries -------------------------------------------------------------

    def get_balance(self, account_id: str) -> Money:
        return self.accounts.require_account(account_id).balance

    def get_history(self, account_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self.transaction_log.for_account(account_id, limit=limit)]

    def verify_balances(self) -> Dict[str, Any]:
        """Stored balance vs transaction-log reconstruction for every account"""
        mismatches = []
        checked = 0
        for data in self.storage.load_all(self.accounts.accounts_table):
            checked += 1
            if not self.ledger.verify_balance(data['id'])["consistent"]:
                mismatches.append(data['id'])
        return {"valid": not mismatches, "accounts_checked": checked, "mismatches": mismatches}

    # -- helpers -------------------------------------------------------------

    def _money(self, amount: Union[Money, Decimal, str],
               currency: Optional[Union[Currency, str]]) -> Money:
        if isinstance(amount, Money):
            if currency is not None and amount.currency != Currency.from_code(currency):
                raise CurrencyMismatchError("Amount currency does not match the requested currency")
            return amount
        if currency is None:
            raise ValidationError("Currency is required")
        return Money(to_decimal(amount), Currency.from_code(currency))

    def _prior(self, account_id: str, leg_key: str) -> Optional[TransactionResult]:
        row = self.transaction_log.find_by_idempotency_key(account_id, leg_key)
        if row is None:
            return None
        return TransactionResult(row.id, account_id, row.transaction_type, row.amount,
                                 row.balance_after, row.correlation_id, replayed=True)

    @staticmethod
    def _result(leg, account_id: str, transaction_type: TransactionType, money: Money,
                correlation_id: str) -> TransactionResult:
        return TransactionResult(
            transaction_id=leg.transaction_id,
            account_id=account_id,
            transaction_type=transaction_type,
            amount=money,
            balance=leg.new_balance,
            correlation_id=correlation_id
        )

    def _posted(self, event: DomainEvent, audit_type: AuditEventType, result: TransactionResult,
                user_id: Optional[str] = None) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(audit_type, "account", result.account_id, metadata=result.to_dict(),
                                       user_id=user_id, correlation_id=result.correlation_id)
        if self.event_dispatcher:
            self.event_dispatcher.emit(event, "account", result.account_id, result.to_dict(),
                                       correlation_id=result.correlation_id)
        log_action(self.logger, "info", f"{result.transaction_type.value} posted", user_id=user_id,
                   action=event.value, account_id=result.account_id, correlation_id=result.correlation_id,
                   extra={"amount": result.amount.to_string(), "balance": result.balance.to_string()})
