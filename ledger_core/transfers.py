"""
Transfer Orchestrator Module

Moves funds between two accounts, same owner (internal) or different owners
(external). Each attempt walks the state machine

    VALIDATED -> LOCKED -> COMMITTED
    VALIDATED -> LOCKED -> ROLLED_BACK -> FAILED

The quote (when currencies differ) is fetched before any lock is taken, the
idempotency record is checked again inside the locked section, and both legs
plus the idempotency record commit in one unit of work.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import uuid

from .accounts import Account, AccountManager, AuthorizationPolicy
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .currency import Currency, Money, to_decimal
from .errors import (
    AccountInactiveError, CurrencyMismatchError, LedgerError, LimitExceededError,
    UnauthorizedError, ValidationError
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


class TransferState(Enum):
    VALIDATED = "validated"
    LOCKED = "locked"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a committed transfer"""
    correlation_id: str
    from_account_id: str
    to_account_id: str
    amount: Money
    converted_amount: Money
    from_balance: Money
    to_balance: Money
    exchange_rate: Optional[Decimal]
    is_internal: bool
    debit_transaction_id: str
    credit_transaction_id: str
    replayed: bool = field(default=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "from_account_id": self.from_account_id,
            "to_account_id": self.to_account_id,
            "amount": self.amount.to_dict(),
            "converted_amount": self.converted_amount.to_dict(),
            "from_balance": self.from_balance.to_dict(),
            "to_balance": self.to_balance.to_dict(),
            "exchange_rate": str(self.exchange_rate) if self.exchange_rate is not None else None,
            "is_internal": self.is_internal,
            "debit_transaction_id": self.debit_transaction_id,
            "credit_transaction_id": self.credit_transaction_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], replayed: bool = False) -> 'TransferResult':
        return cls(
            correlation_id=data["correlation_id"],
            from_account_id=data["from_account_id"],
            to_account_id=data["to_account_id"],
            amount=Money.from_dict(data["amount"]),
            converted_amount=Money.from_dict(data["converted_amount"]),
            from_balance=Money.from_dict(data["from_balance"]),
            to_balance=Money.from_dict(data["to_balance"]),
            exchange_rate=Decimal(data["exchange_rate"]) if data.get("exchange_rate") else None,
            is_internal=data["is_internal"],
            debit_transaction_id=data["debit_transaction_id"],
            credit_transaction_id=data["credit_transaction_id"],
            replayed=replayed
        )


@dataclass
class TransferValidation:
    """Non-mutating preview of a transfer"""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    is_internal: bool = False
    exchange_rate: Optional[Decimal] = None
    converted_amount: Optional[Money] = None


class TransferOrchestrator:
    """Two-account money movement with ordered locking and idempotency"""

    OPERATION = "transfer"

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
        self.transfers_table = "transfers"
        self.logger = get_logger("ledger.transfers")

    def transfer(
        self,
        caller_id: str,
        from_account_id: str,
        to_account_identifier: str,
        amount: Union[Money, Decimal, str],
        request_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        description: str = "",
        cancel_token: Optional[CancellationToken] = None
    ) -> TransferResult:
        """
        Move ``amount`` (source currency) to the destination account

        Args:
            caller_id: User performing the transfer; must own the source
            from_account_id: Source account id
            to_account_identifier: Destination account id or account number
            amount: Amount in source currency
            request_id: Client request id; combined with caller_id into the key
            idempotency_key: Explicit key (takes precedence over request_id)
            description: Free text stored on both legs
            cancel_token: Honored until the commit step starts

        Returns:
            TransferResult; a replay of an earlier request has replayed=True
        """
        key = idempotency_key or derive_key(caller_id, request_id or str(uuid.uuid4()))

        source, destination, money = self._validate(caller_id, from_account_id, to_account_identifier, amount)
        request_fp = fingerprint(source=source.id, destination=destination.id, amount=money.amount,
                                 currency=money.currency.code)

        prior = self.guard.lookup(self.OPERATION, key, request_fp)
        if prior is not None:
            return TransferResult.from_dict(prior, replayed=True)

        quote = None
        if source.currency != destination.currency:
            quote = self.converter.get_rate(source.currency, destination.currency)
        limit_quote = self.converter.get_rate(source.currency, Currency.from_code(self.config.limit_currency))

        state = TransferState.VALIDATED
        correlation_id = str(uuid.uuid4())
        try:
            with self.locks.acquire(source.id, destination.id):
                state = TransferState.LOCKED

                prior = self.guard.lookup(self.OPERATION, key, request_fp)
                if prior is not None:
                    return TransferResult.from_dict(prior, replayed=True)

                result = self._commit(caller_id, key, request_fp, correlation_id, source.id,
                                      destination.id, money, quote, limit_quote, description,
                                      cancel_token)
                state = TransferState.COMMITTED
        except LedgerError as e:
            if state == TransferState.LOCKED:
                state = TransferState.ROLLED_BACK
                self._failed(caller_id, correlation_id, source, destination, money, e)
                state = TransferState.FAILED
            raise

        log_action(
            self.logger, "info", "Transfer committed",
            user_id=caller_id, action="transfer", correlation_id=correlation_id,
            resource=f"account:{source.id}",
            extra={"to_account": destination.id, "amount": money.to_string(),
                   "converted": result.converted_amount.to_string(),
                   "rate": str(result.exchange_rate) if result.exchange_rate else None,
                   "internal": result.is_internal}
        )
        return result

    def _validate(self, caller_id: str, from_account_id: str, to_account_identifier: str,
                  amount) -> tuple:
        source = self.accounts.require_account(from_account_id)
        if not self.policy.owns_account(caller_id, source.id):
            raise UnauthorizedError("Caller does not own the source account",
                                    {"account_id": source.id})
        destination = self.accounts.resolve(to_account_identifier)
        if destination.id == source.id:
            raise ValidationError("Cannot transfer to the same account")
        if not source.is_active:
            raise AccountInactiveError("Source account is inactive", {"account_id": source.id})
        if not destination.is_active:
            raise AccountInactiveError("Destination account is inactive",
                                       {"account_id": destination.id})

        money = amount if isinstance(amount, Money) else Money(to_decimal(amount), source.currency)
        if money.currency != source.currency:
            raise CurrencyMismatchError("Transfer amount must be in the source account currency",
                                        {"currency": money.currency.code})
        if not money.is_positive():
            raise ValidationError("Transfer amount must be positive", {"amount": money.amount})
        return source, destination, money

    def _commit(self, caller_id: str, key: str, request_fp: str, correlation_id: str,
                source_id: str, destination_id: str, money: Money, quote: Optional[Quote],
                limit_quote: Quote, description: str, cancel_token: Optional[CancellationToken]) -> TransferResult:
        # Re-read under the locks
        source = self.accounts.require_account(source_id)
        destination = self.accounts.require_account(destination_id)
        if not destination.is_active:
            raise AccountInactiveError("Destination account is inactive",
                                       {"account_id": destination.id})

        rate = None
        converted = money
        if quote is not None:
            self.converter.ensure_fresh(quote)
            rate = quote.rate
            converted = self.converter.convert(money, rate, destination.currency)
            if not converted.is_positive():
                raise ValidationError("Converted amount rounds to zero",
                                      {"amount": money.amount, "rate": rate})

        is_internal = source.user_id == destination.user_id
        valued = self.converter.convert(money, limit_quote.rate, limit_quote.to_currency)
        if not is_internal:
            self._check_daily_limit(source.user_id, valued)

        debit_id = str(uuid.uuid4())
        credit_id = str(uuid.uuid4())
        with UnitOfWork(self.storage, cancel_token) as uow:
            debit = self.ledger.debit(
                source.id, money, f"{key}:debit",
                transaction_type=TransactionType.TRANSFER, correlation_id=correlation_id,
                transaction_id=debit_id, linked_transaction_id=credit_id,
                counterparty_account_id=destination.id, exchange_rate=rate,
                description=description or f"Transfer to {destination.account_number}"
            )
            credit = self.ledger.credit(
                destination.id, converted, f"{key}:credit",
                transaction_type=TransactionType.TRANSFER, correlation_id=correlation_id,
                transaction_id=credit_id, linked_transaction_id=debit_id,
                counterparty_account_id=source.id, exchange_rate=rate,
                description=description or f"Transfer from {source.account_number}"
            )
            result = TransferResult(
                correlation_id=correlation_id,
                from_account_id=source.id,
                to_account_id=destination.id,
                amount=money,
                converted_amount=converted,
                from_balance=debit.new_balance,
                to_balance=credit.new_balance,
                exchange_rate=rate,
                is_internal=is_internal,
                debit_transaction_id=debit.transaction_id,
                credit_transaction_id=credit.transaction_id
            )
            self._save_transfer_record(caller_id, source, destination, result, valued, description)
            self.guard.record(self.OPERATION, key, result.to_dict(), request_fp)
            if quote is not None:
                self.converter.record_history(quote, correlation_id)
            uow.on_commit(lambda: self._completed(caller_id, source, destination, result))
        return result

    def _check_daily_limit(self, user_id: str, requested: Money) -> None:
        """requested is already valued in the limit currency"""
        limit = Money(Decimal(self.config.daily_transfer_limit), requested.currency)
        sent_today = self.get_daily_external_total(user_id)
        if sent_today + requested > limit:
            raise LimitExceededError(
                f"Transfer would exceed daily limit of {limit.to_string()}",
                {"limit": limit.amount, "used": sent_today.amount, "requested": requested.amount}
            )

    def get_daily_external_total(self, user_id: str, as_of: Optional[datetime] = None) -> Money:
        """Today's (UTC) external transfers for a user, valued in the limit currency"""
        limit_currency = Currency.from_code(self.config.limit_currency)
        day_start = (as_of or datetime.now(timezone.utc)).replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + timedelta(days=1)
        total = Money.zero(limit_currency)
        for record in self.storage.find(self.transfers_table, {"from_user_id": user_id, "is_internal": False}):
            created = datetime.fromisoformat(record["created_at"])
            if day_start <= created < day_end:
                total = total + Money(Decimal(record["valued_amount"]), limit_currency)
        return total

    def validate_transfer(self, caller_id: str, from_account_id: str, to_account_identifier: str,
                          amount) -> TransferValidation:
        """Dry run: collect everything that would make the transfer fail"""
        validation = TransferValidation(is_valid=True)
        try:
            source, destination, money = self._validate(caller_id, from_account_id,
                                                        to_account_identifier, amount)
        except LedgerError as e:
            validation.errors.append(e.message)
            validation.is_valid = False
            return validation

        validation.is_internal = source.user_id == destination.user_id
        if source.balance < money:
            validation.errors.append(f"Insufficient funds. Available: {source.balance.to_string()}")
        try:
            if source.currency != destination.currency:
                quote = self.converter.get_rate(source.currency, destination.currency)
                validation.exchange_rate = quote.rate
                validation.converted_amount = self.converter.convert(money, quote.rate, destination.currency)
            else:
                validation.converted_amount = money
            if not validation.is_internal:
                limit_quote = self.converter.get_rate(source.currency,
                                                      Currency.from_code(self.config.limit_currency))
                self._check_daily_limit(source.user_id, self.converter.convert(
                    money, limit_quote.rate, limit_quote.to_currency))
        except LedgerError as e:
            validation.errors.append(e.message)

        validation.is_valid = not validation.errors
        return validation

    def get_transfer_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Transfers sent or received by a user, newest first"""
        rows = self.storage.find(self.transfers_table, {"from_user_id": user_id})
        rows += [r for r in self.storage.find(self.transfers_table, {"to_user_id": user_id})
                 if r["from_user_id"] != user_id]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows[:limit]

    def get_account_transfers(self, account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.storage.find(self.transfers_table, {"from_account_id": account_id})
        rows += self.storage.find(self.transfers_table, {"to_account_id": account_id})
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows[:limit]

    def _save_transfer_record(self, caller_id: str, source: Account, destination: Account,
                              result: TransferResult, valued: Money, description: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.transfers_table, result.correlation_id, {
            "id": result.correlation_id,
            "initiated_by": caller_id,
            "from_account_id": source.id,
            "to_account_id": destination.id,
            "from_user_id": source.user_id,
            "to_user_id": destination.user_id,
            "amount": str(result.amount.amount),
            "currency": result.amount.currency.code,
            "valued_amount": str(valued.amount),
            "converted_amount": str(result.converted_amount.amount),
            "converted_currency": result.converted_amount.currency.code,
            "exchange_rate": str(result.exchange_rate) if result.exchange_rate is not None else None,
            "is_internal": result.is_internal,
            "description": description,
            "created_at": now,
            "updated_at": now
        })

    def _completed(self, caller_id: str, source: Account, destination: Account,
                   result: TransferResult) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TRANSFER_POSTED, "account", source.id,
                metadata=result.to_dict(), user_id=caller_id,
                correlation_id=result.correlation_id
            )
        if self.event_dispatcher:
            data = result.to_dict()
            data["from_user_id"] = source.user_id
            data["to_user_id"] = destination.user_id
            self.event_dispatcher.emit(
                DomainEvent.TRANSFER_COMPLETED, "transfer", result.correlation_id,
                data, correlation_id=result.correlation_id
            )

    def _failed(self, caller_id: str, correlation_id: str, source: Account, destination: Account,
                money: Money, error: LedgerError) -> None:
        log_action(
            self.logger, "warning", f"Transfer rolled back: {error.message}",
            user_id=caller_id, action="transfer", correlation_id=correlation_id,
            resource=f"account:{source.id}", extra={"code": error.code, "amount": money.to_string()}
        )
        if self.event_dispatcher:
            self.event_dispatcher.emit(
                DomainEvent.TRANSFER_FAILED, "transfer", correlation_id,
                {"from_account_id": source.id, "to_account_id": destination.id,
                 "amount": money.to_dict(), "error": error.code},
                correlation_id=correlation_id
            )
