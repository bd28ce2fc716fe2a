"""
Account Management Module

Single-currency accounts owned by a user. The stored balance is a cache of
the signed sum of the account's completed ledger transactions; only
AccountLedger changes it. Each user has at most one priority account per
currency, used as the default disbursement target for loans, exchanges and
investment payouts.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
import secrets
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import AccountNotFoundError, ValidationError
from .locks import AccountLockManager
from .logging_config import get_logger, log_action


@dataclass
class Account(StorageRecord):
    """Balance-holding account in a single currency"""
    account_number: str
    user_id: str
    currency: Currency
    balance: Money
    name: str = ""
    is_priority: bool = False
    is_active: bool = True

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise ValidationError("Balance currency must match account currency")


class AuthorizationPolicy(ABC):
    """Answers whether a user may act on an account"""

    @abstractmethod
    def owns_account(self, user_id: str, account_id: str) -> bool:
        pass


class OwnershipPolicy(AuthorizationPolicy):
    """Default policy: a user may act only on accounts they own"""

    def __init__(self, account_manager: 'AccountManager'):
        self.account_manager = account_manager

    def owns_account(self, user_id: str, account_id: str) -> bool:
        account = self.account_manager.get_account(account_id)
        return account is not None and account.user_id == user_id


class AccountManager:
    """
    Manages account records: creation, lookup, activation and priority flags

    Flag updates rewrite the whole row, balance included, so they re-read the
    account inside its section of the shared AccountLockManager.
    """

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 locks: Optional[AccountLockManager] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks or AccountLockManager()
        self.accounts_table = "accounts"
        self.logger = get_logger("ledger.accounts")

    def create_account(
        self,
        user_id: str,
        currency: Currency,
        name: str = "",
        account_number: Optional[str] = None,
        is_priority: Optional[bool] = None
    ) -> Account:
        """
        Create a new zero-balance account

        Args:
            user_id: Owner of the account
            currency: Account currency
            name: Display name
            account_number: Human-facing number (generated if not provided)
            is_priority: Force the priority flag; by default the user's first
                account in a currency becomes the priority account

        Returns:
            Created Account object
        """
        currency = Currency.from_code(currency)
        if account_number and self.get_account_by_number(account_number):
            raise ValidationError(f"Account number {account_number} already exists")

        if is_priority is None:
            is_priority = self.get_priority_account(user_id, currency) is None

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=account_number or self._generate_account_number(),
            user_id=user_id,
            currency=currency,
            balance=Money.zero(currency),
            name=name or f"{currency.code} account",
            is_priority=False
        )
        self.save_account(account)
        if is_priority:
            account = self.set_priority_account(user_id, account.id)

        log_action(
            self.logger, "info", "Account created",
            user_id=user_id, action="create_account", account_id=account.id,
            extra={"account_number": account.account_number, "currency": currency.code}
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_CREATED, "account", account.id,
                metadata={"account_number": account.account_number,
                          "currency": currency.code, "is_priority": account.is_priority},
                user_id=user_id
            )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found", {"account_id": account_id})
        return account

    def resolve(self, identifier: str) -> Account:
        """Find an account by id or by account number"""
        account = self.get_account(identifier) or self.get_account_by_number(identifier)
        if not account:
            raise AccountNotFoundError(f"Account {identifier} not found", {"account": identifier})
        return account

    def get_user_accounts(self, user_id: str) -> List[Account]:
        """Get all accounts for a user"""
        return [self._account_from_dict(d) for d in
                self.storage.find(self.accounts_table, {"user_id": user_id})]

    def get_priority_account(self, user_id: str, currency: Currency) -> Optional[Account]:
        """The user's default account for a currency"""
        currency = Currency.from_code(currency)
        for data in self.storage.find(self.accounts_table, {
            "user_id": user_id, "currency": currency.code, "is_priority": True
        }):
            return self._account_from_dict(data)
        return None

    def set_priority_account(self, user_id: str, account_id: str) -> Account:
        """Make an account the user's priority account for its currency"""
        account = self.require_account(account_id)
        if account.user_id != user_id:
            raise ValidationError("Account does not belong to user")

        while True:
            current = self.get_priority_account(user_id, account.currency)
            keys = [account.id] + ([current.id] if current else [])
            with self.locks.acquire(*keys):
                latest = self.get_priority_account(user_id, account.currency)
                if (latest.id if latest else None) != (current.id if current else None):
                    # Priority moved while waiting; lock the new holder instead
                    continue
                with self.storage.atomic():
                    if current and current.id != account.id:
                        current = self.require_account(current.id)
                        current.is_priority = False
                        current.updated_at = datetime.now(timezone.utc)
                        self.save_account(current)
                    account = self.require_account(account.id)
                    account.is_priority = True
                    account.updated_at = datetime.now(timezone.utc)
                    self.save_account(account)
            break

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.PRIORITY_ACCOUNT_CHANGED, "account", account.id,
                metadata={"currency": account.currency.code,
                          "previous": current.id if current else None},
                user_id=user_id
            )
        return account

    def activate_account(self, account_id: str) -> Account:
        return self._set_active(account_id, True)

    def deactivate_account(self, account_id: str) -> Account:
        return self._set_active(account_id, False)

    def _set_active(self, account_id: str, active: bool) -> Account:
        with self.locks.acquire(account_id):
            account = self.require_account(account_id)
            account.is_active = active
            account.updated_at = datetime.now(timezone.utc)
            self.save_account(account)

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_ACTIVATED if active else AuditEventType.ACCOUNT_DEACTIVATED,
                "account", account.id, metadata={"is_active": active}
            )
        return account

    def _generate_account_number(self) -> str:
        """Generate a unique 10-digit account number"""
        while True:
            number = "".join(secrets.choice("0123456789") for _ in range(10))
            if not self.get_account_by_number(number):
                return number

    def save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        return {
            'id': account.id,
            'created_at': account.created_at.isoformat(),
            'updated_at': account.updated_at.isoformat(),
            'account_number': account.account_number,
            'user_id': account.user_id,
            'currency': account.currency.code,
            'balance': str(account.balance.amount),
            'name': account.name,
            'is_priority': account.is_priority,
            'is_active': account.is_active
        }

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        currency = Currency[data['currency']]
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            user_id=data['user_id'],
            currency=currency,
            balance=Money(Decimal(data['balance']), currency),
            name=data.get('name', ""),
            is_priority=data.get('is_priority', False),
            is_active=data.get('is_active', True)
        )
