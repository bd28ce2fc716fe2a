"""
Transaction Log Module

Append-only record of every balance mutation. Rows are never updated or
deleted; an account's balance can always be rebuilt as the signed sum of its
COMPLETED rows, which is what reconciliation and audits rely on.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .currency import Money, Currency
from .errors import ValidationError
from .storage import StorageInterface, StorageRecord


class TransactionType(Enum):
    """Kinds of ledger rows"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    EXCHANGE = "exchange"
    LOAN_PAYMENT = "loan_payment"
    LOAN_DISBURSEMENT = "loan_disbursement"
    INTEREST = "interest"
    INVESTMENT = "investment"
    FEE = "fee"


class TransactionDirection(Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class LedgerTransaction(StorageRecord):
    """One leg of a money movement against a single account"""
    account_id: str
    transaction_type: TransactionType
    direction: TransactionDirection
    amount: Money
    balance_after: Money
    correlation_id: str
    idempotency_key: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    exchange_rate: Optional[Decimal] = None
    linked_transaction_id: Optional[str] = None
    counterparty_account_id: Optional[str] = None
    description: str = ""

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def signed_amount(self) -> Decimal:
        if self.direction == TransactionDirection.CREDIT:
            return self.amount.amount
        return -self.amount.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'account_id': self.account_id,
            'transaction_type': self.transaction_type.value,
            'direction': self.direction.value,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'balance_after': str(self.balance_after.amount),
            'correlation_id': self.correlation_id,
            'idempotency_key': self.idempotency_key,
            'status': self.status.value,
            'exchange_rate': str(self.exchange_rate) if self.exchange_rate is not None else None,
            'linked_transaction_id': self.linked_transaction_id,
            'counterparty_account_id': self.counterparty_account_id,
            'description': self.description
        }


class TransactionLog:
    """Append-only store of LedgerTransaction rows"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "ledger_transactions"

    def append(self, transaction: LedgerTransaction) -> LedgerTransaction:
        """Append a row; existing rows are immutable"""
        if self.storage.exists(self.table_name, transaction.id):
            raise ValidationError(f"Transaction {transaction.id} already recorded")
        if not transaction.amount.is_positive():
            raise ValidationError("Transaction amount must be positive")
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction

    def get(self, transaction_id: str) -> Optional[LedgerTransaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return self._from_dict(data) if data else None

    def find_by_idempotency_key(self, account_id: str, idempotency_key: str) -> Optional[LedgerTransaction]:
        """Prior row for this account with the same key, if any"""
        rows = self.storage.find(self.table_name, {
            "account_id": account_id, "idempotency_key": idempotency_key
        })
        return self._from_dict(rows[0]) if rows else None

    def by_correlation(self, correlation_id: str) -> List[LedgerTransaction]:
        """All legs (and fee rows) of one operation"""
        return self._sorted(self.storage.find(self.table_name, {"correlation_id": correlation_id}))

    def for_account(
        self,
        account_id: str,
        transaction_type: Optional[TransactionType] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None
    ) -> List[LedgerTransaction]:
        """
        Account history, oldest first

        Args:
            account_id: Account to query
            transaction_type: Only rows of this type
            since: Inclusive lower bound on created_at
            until: Exclusive upper bound on created_at
            status: Only rows in this status
            limit: Keep only the most recent N rows
        """
        filters = {"account_id": account_id}
        if transaction_type:
            filters["transaction_type"] = transaction_type.value
        if status:
            filters["status"] = status.value
        rows = self._sorted(self.storage.find(self.table_name, filters))
        if since:
            rows = [r for r in rows if r.created_at >= since]
        if until:
            rows = [r for r in rows if r.created_at < until]
        if limit:
            rows = rows[-limit:]
        return rows

    def reconstruct_balance(self, account_id: str, currency: Currency) -> Money:
        """Signed sum of the account's completed rows"""
        total = sum(
            (t.signed_amount for t in self.for_account(account_id, status=TransactionStatus.COMPLETED)),
            Decimal('0')
        )
        return Money(total, currency)

    def _sorted(self, rows: List[Dict]) -> List[LedgerTransaction]:
        transactions = [self._from_dict(r) for r in rows]
        transactions.sort(key=lambda t: (t.created_at, t.id))
        return transactions

    def _from_dict(self, data: Dict) -> LedgerTransaction:
        currency = Currency[data['currency']]
        return LedgerTransaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            direction=TransactionDirection(data['direction']),
            amount=Money(Decimal(data['amount']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            correlation_id=data['correlation_id'],
            idempotency_key=data['idempotency_key'],
            status=TransactionStatus(data['status']),
            exchange_rate=Decimal(data['exchange_rate']) if data.get('exchange_rate') else None,
            linked_transaction_id=data.get('linked_transaction_id'),
            counterparty_account_id=data.get('counterparty_account_id'),
            description=data.get('description', "")
        )
