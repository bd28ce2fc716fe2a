"""
Account Ledger Module

The only component that changes an account balance. ``debit`` and ``credit``
check their preconditions, update the balance and append a COMPLETED row to
the transaction log as one atomic step, under the account's exclusive
section. A repeated idempotency key returns the earlier leg unchanged.

Callers composing several legs (transfers, exchanges) take all account
sections up front through AccountLockManager and wrap the legs in a single
UnitOfWork; the sections here are reentrant so the nested acquire is free.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import uuid

from .accounts import Account, AccountManager
from .currency import Money
from .errors import (
    AccountInactiveError, CurrencyMismatchError, InsufficientFundsError, ValidationError
)
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .storage import StorageInterface
from .transaction_log import (
    LedgerTransaction, TransactionDirection, TransactionLog, TransactionStatus, TransactionType
)


@dataclass(frozen=True)
class LegResult:
    """Outcome of a single debit or credit"""
    transaction_id: str
    new_balance: Money
    replayed: bool = field(default=False, compare=False)


class AccountLedger:
    """Atomic debit/credit primitives with exactly-once semantics per key"""

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        transaction_log: TransactionLog,
        locks: AccountLockManager
    ):
        self.storage = storage
        self.accounts = accounts
        self.transaction_log = transaction_log
        self.locks = locks
        self.logger = get_logger("ledger.ledger")

    def debit(self, account_id: str, amount: Money, idempotency_key: str, **kwargs) -> LegResult:
        """
        Remove funds from an account

        Raises:
            InsufficientFundsError: balance is below the amount
            AccountInactiveError: account is disabled
            CurrencyMismatchError: amount is not in the account currency
        """
        return self._post(TransactionDirection.DEBIT, account_id, amount, idempotency_key, **kwargs)

    def credit(self, account_id: str, amount: Money, idempotency_key: str, **kwargs) -> LegResult:
        """Add funds to an account; same rules as debit without the balance floor"""
        return self._post(TransactionDirection.CREDIT, account_id, amount, idempotency_key, **kwargs)

    def _post(
        self,
        direction: TransactionDirection,
        account_id: str,
        amount: Money,
        idempotency_key: str,
        transaction_type: TransactionType = TransactionType.DEPOSIT,
        correlation_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        linked_transaction_id: Optional[str] = None,
        counterparty_account_id: Optional[str] = None,
        exchange_rate: Optional[Decimal] = None,
        description: str = ""
    ) -> LegResult:
        if not idempotency_key:
            raise ValidationError("Idempotency key is required")
        if not amount.is_positive():
            raise ValidationError("Amount must be positive", {"amount": amount.amount})

        with self.locks.acquire(account_id):
            prior = self.transaction_log.find_by_idempotency_key(account_id, idempotency_key)
            if prior is not None:
                return LegResult(prior.id, prior.balance_after, replayed=True)

            account = self.accounts.require_account(account_id)
            self._check_preconditions(direction, account, amount)

            if direction == TransactionDirection.DEBIT:
                new_balance = account.balance - amount
            else:
                new_balance = account.balance + amount

            now = datetime.now(timezone.utc)
            transaction = LedgerTransaction(
                id=transaction_id or str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account_id,
                transaction_type=transaction_type,
                direction=direction,
                amount=amount,
                balance_after=new_balance,
                correlation_id=correlation_id or str(uuid.uuid4()),
                idempotency_key=idempotency_key,
                status=TransactionStatus.COMPLETED,
                exchange_rate=exchange_rate,
                linked_transaction_id=linked_transaction_id,
                counterparty_account_id=counterparty_account_id,
                description=description
            )

            with self.storage.atomic():
                account.balance = new_balance
                account.updated_at = now
                self.accounts.save_account(account)
                self.transaction_log.append(transaction)

        log_action(
            self.logger, "debug", f"{direction.value} posted",
            action=direction.value, account_id=account_id,
            correlation_id=transaction.correlation_id,
            extra={"transaction_id": transaction.id, "amount": amount.to_string(),
                   "balance_after": new_balance.to_string(), "type": transaction_type.value}
        )
        return LegResult(transaction.id, new_balance)

    def _check_preconditions(self, direction: TransactionDirection, account: Account, amount: Money) -> None:
        if not account.is_active:
            raise AccountInactiveError(f"Account {account.account_number} is inactive",
                                       {"account_id": account.id})
        if amount.currency != account.currency:
            raise CurrencyMismatchError(
                f"Amount in {amount.currency.code} but account holds {account.currency.code}",
                {"account_id": account.id, "currency": amount.currency.code}
            )
        if direction == TransactionDirection.DEBIT and account.balance < amount:
            raise InsufficientFundsError(
                f"Insufficient funds: balance {account.balance.to_string()}, requested {amount.to_string()}",
                {"account_id": account.id, "balance": account.balance.amount, "requested": amount.amount}
            )

    def balance_of(self, account_id: str) -> Money:
        return self.accounts.require_account(account_id).balance

    def verify_balance(self, account_id: str) -> Dict[str, Any]:
        """Compare the stored balance with the one rebuilt from the log"""
        with self.locks.acquire(account_id):
            account = self.accounts.require_account(account_id)
            rebuilt = self.transaction_log.reconstruct_balance(account_id, account.currency)
        return {
            "account_id": account_id,
            "stored_balance": account.balance,
            "reconstructed_balance": rebuilt,
            "consistent": rebuilt == account.balance
        }
