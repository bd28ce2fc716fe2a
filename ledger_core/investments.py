"""
Investment Module

Fixed-term investment plans paying simple interest on a schedule.

Rates come from the plan's amount tiers, adjusted by interval override
records resolved through ``RateResolver``:

  * scopes, most specific first: investment, user+plan, user, plan
  * CUSTOM overrides replace the tier rate, BONUS overrides add to it
  * ties within a scope go to the latest ``effective_from``

Periodic payout = principal x rate / payments per year; the final payout
takes the remainder so the schedule sums to the projected interest exactly.
Payouts move SCHEDULED -> PROCESSING -> COMPLETED | FAILED, a FAILED payout is
retried through PROCESSING, and withdrawal cancels the SCHEDULED ones.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from enum import Enum
import uuid

from .accounts import Account, AccountManager, AuthorizationPolicy
from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency, to_decimal
from .errors import (
    CurrencyMismatchError, InvalidStateError, LedgerError, UnauthorizedError, ValidationError
)
from .events import DomainEvent, EventDispatcher
from .ledger import AccountLedger
from .loans import add_months
from .locks import AccountLockManager, investment_key
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord
from .transaction_log import TransactionType
from .unit_of_work import UnitOfWork


class PayoutFrequency(Enum):
    """Payout frequency with the number of months per period"""
    MONTHLY = ("monthly", 1)
    QUARTERLY = ("quarterly", 3)
    SEMI_ANNUALLY = ("semi_annually", 6)
    ANNUALLY = ("annually", 12)
    AT_MATURITY = ("at_maturity", 0)

    def __init__(self, label: str, months: int):
        self.label = label
        self.months = months

    @classmethod
    def from_label(cls, label: str) -> 'PayoutFrequency':
        for freq in cls:
            if freq.label == label:
                return freq
        raise ValidationError(f"Unknown payout frequency: {label}")


class InvestmentStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    MATURED = "matured"
    WITHDRAWN = "withdrawn"


class PayoutStatus(Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RateType(Enum):
    CUSTOM = "custom"  # replaces the tier rate
    BONUS = "bonus"    # added to the tier rate


class RateScope(Enum):
    """Override scopes; lower rank is more specific"""
    INVESTMENT = ("investment", 0)
    USER_PLAN = ("user_plan", 1)
    USER = ("user", 2)
    PLAN = ("plan", 3)

    def __init__(self, label: str, rank: int):
        self.label = label
        self.rank = rank

    @classmethod
    def from_label(cls, label: str) -> 'RateScope':
        for scope in cls:
            if scope.label == label:
                return scope
        raise ValidationError(f"Unknown rate scope: {label}")


@dataclass(frozen=True)
class RateTier:
    """Annual rate for principals in [min_amount, max_amount]"""
    min_amount: Decimal
    max_amount: Optional[Decimal]
    rate: Decimal

    def contains(self, amount: Decimal) -> bool:
        if amount < self.min_amount:
            return False
        return self.max_amount is None or amount <= self.max_amount


@dataclass
class InvestmentPlan(StorageRecord):
    name: str
    currency: Currency
    base_rate: Decimal
    tiers: List[RateTier] = field(default_factory=list)
    min_amount: Decimal = Decimal('100')
    max_amount: Optional[Decimal] = None
    min_term_months: int = 1
    max_term_months: int = 120
    payout_frequency: PayoutFrequency = PayoutFrequency.MONTHLY
    early_withdrawal_penalty: Decimal = Decimal('0')  # percent of principal
    requires_approval: bool = True
    is_active: bool = True

    def rate_for_amount(self, amount: Decimal) -> Decimal:
        for tier in self.tiers:
            if tier.contains(amount):
                return tier.rate
        return self.base_rate


@dataclass
class RateOverride(StorageRecord):
    scope: RateScope
    rate_type: RateType
    rate: Decimal
    effective_from: datetime
    effective_to: Optional[datetime] = None
    plan_id: Optional[str] = None
    user_id: Optional[str] = None
    investment_id: Optional[str] = None
    is_admin: bool = False
    created_by: Optional[str] = None

    def is_effective(self, at: datetime) -> bool:
        if at < self.effective_from:
            return False
        return self.effective_to is None or at < self.effective_to

    def applies_to(self, plan_id: str, user_id: str, investment_id: Optional[str]) -> bool:
        if self.scope == RateScope.INVESTMENT:
            return investment_id is not None and self.investment_id == investment_id
        if self.scope == RateScope.USER_PLAN:
            return self.user_id == user_id and self.plan_id == plan_id
        if self.scope == RateScope.USER:
            return self.user_id == user_id
        return self.plan_id == plan_id


@dataclass
class Investment(StorageRecord):
    user_id: str
    plan_id: str
    principal: Money
    rate: Decimal                       # annual percent
    term_months: int
    payout_frequency: PayoutFrequency
    projected_return: Money             # principal plus simple interest
    total_paid_out: Money
    status: InvestmentStatus = InvestmentStatus.PENDING
    source_account_id: Optional[str] = None
    payout_account_id: Optional[str] = None
    start_date: Optional[date] = None
    maturity_date: Optional[date] = None
    last_payout_date: Optional[date] = None
    penalty: Optional[Money] = None
    rejection_reason: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def projected_interest(self) -> Money:
        return self.projected_return - self.principal


@dataclass
class Payout(StorageRecord):
    investment_id: str
    period: int
    due_date: date
    amount: Money
    status: PayoutStatus = PayoutStatus.SCHEDULED
    attempts: int = 0
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None


@dataclass(frozen=True)
class PayoutResult:
    payout_id: str
    investment_id: str
    period: int
    amount: Money
    status: PayoutStatus
    account_id: Optional[str] = None
    transaction_id: Optional[str] = None
    account_balance: Optional[Money] = None
    replayed: bool = field(default=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payout_id": self.payout_id,
            "investment_id": self.investment_id,
            "period": self.period,
            "amount": self.amount.to_dict(),
            "status": self.status.value,
            "account_id": self.account_id,
            "transaction_id": self.transaction_id,
            "account_balance": self.account_balance.to_dict() if self.account_balance else None
        }


def projected_return(principal: Money, rate: Decimal, term_months: int) -> Money:
    """Principal plus simple interest over the term"""
    years = Decimal(term_months) / Decimal('12')
    return Money(principal.amount * (Decimal('1') + rate / Decimal('100') * years), principal.currency)


def periodic_payout(principal: Money, rate: Decimal, frequency: PayoutFrequency,
                    term_months: int) -> Money:
    """Amount paid each period (the whole interest for AT_MATURITY)"""
    if frequency == PayoutFrequency.AT_MATURITY:
        return projected_return(principal, rate, term_months) - principal
    payments_per_year = Decimal(12 // frequency.months)
    return Money(principal.amount * rate / Decimal('100') / payments_per_year, principal.currency)


def payout_plan(principal: Money, rate: Decimal, frequency: PayoutFrequency, term_months: int,
                start_date: date, first_period: int = 1, paid_so_far: Optional[Money] = None
                ) -> List[Tuple[int, date, Money]]:
    """
    (period, due date, amount) for every payout from ``first_period`` on

    A trailing partial period is paid pro rata; the last amount absorbs
    rounding so the total equals the projected interest. Amounts never go
    below zero: once ``paid_so_far`` reaches the total the rest are zero.
    """
    total_interest = projected_return(principal, rate, term_months) - principal
    if frequency == PayoutFrequency.AT_MATURITY:
        return [(1, add_months(start_date, term_months), total_interest)]

    step = frequency.months
    periods = -(-term_months // step)
    monthly = principal.amount * rate / Decimal('1200')

    def regular(period: int) -> Money:
        months = min(step, term_months - (period - 1) * step)
        return Money(monthly * months, principal.currency)

    if paid_so_far is None:
        paid = sum((regular(p) for p in range(1, first_period)), Money.zero(principal.currency))
    else:
        paid = paid_so_far

    entries = []
    for period in range(first_period, periods + 1):
        due = add_months(start_date, min(period * step, term_months))
        remaining = total_interest - paid
        if remaining.is_negative():
            remaining = Money.zero(principal.currency)
        amount = remaining if period == periods else min(regular(period), remaining)
        paid = paid + amount
        entries.append((period, due, amount))
    return entries


class RateResolver:
    """Tier plus override rate resolution"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "rate_overrides"

    def add_override(self, override: RateOverride) -> RateOverride:
        self.storage.save(self.table_name, override.id, self._override_to_dict(override))
        return override

    def get_overrides(self) -> List[RateOverride]:
        return [self._override_from_dict(d) for d in self.storage.load_all(self.table_name)]

    def find_override(self, plan_id: str, user_id: str, investment_id: Optional[str] = None,
                      at: Optional[datetime] = None) -> Optional[RateOverride]:
        """Most specific override in force at ``at``"""
        at = at or datetime.now(timezone.utc)
        candidates = [
            o for o in self.get_overrides()
            if o.is_effective(at) and o.applies_to(plan_id, user_id, investment_id)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda o: (o.scope.rank, -o.effective_from.timestamp()))
        return candidates[0]

    def resolve(self, plan: InvestmentPlan, user_id: str, amount: Decimal,
                investment_id: Optional[str] = None,
                at: Optional[datetime] = None) -> Tuple[Decimal, Optional[RateOverride]]:
        """Effective annual rate and the override that produced it, if any"""
        rate = plan.rate_for_amount(amount)
        override = self.find_override(plan.id, user_id, investment_id, at)
        if override is None:
            return rate, None
        if override.rate_type == RateType.CUSTOM:
            return override.rate, override
        return rate + override.rate, override

    def _override_to_dict(self, override: RateOverride) -> Dict:
        return {
            'id': override.id,
            'created_at': override.created_at.isoformat(),
            'updated_at': override.updated_at.isoformat(),
            'scope': override.scope.label,
            'rate_type': override.rate_type.value,
            'rate': str(override.rate),
            'effective_from': override.effective_from.isoformat(),
            'effective_to': override.effective_to.isoformat() if override.effective_to else None,
            'plan_id': override.plan_id,
            'user_id': override.user_id,
            'investment_id': override.investment_id,
            'is_admin': override.is_admin,
            'created_by': override.created_by
        }

    def _override_from_dict(self, data: Dict) -> RateOverride:
        return RateOverride(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            scope=RateScope.from_label(data['scope']),
            rate_type=RateType(data['rate_type']),
            rate=Decimal(data['rate']),
            effective_from=datetime.fromisoformat(data['effective_from']),
            effective_to=datetime.fromisoformat(data['effective_to']) if data.get('effective_to') else None,
            plan_id=data.get('plan_id'),
            user_id=data.get('user_id'),
            investment_id=data.get('investment_id'),
            is_admin=bool(data.get('is_admin', False)),
            created_by=data.get('created_by')
        )


class InvestmentAccrual:
    """
    Investment lifecycle and payouts; balances change only through AccountLedger
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        ledger: AccountLedger,
        locks: AccountLockManager,
        resolver: Optional[RateResolver] = None,
        policy: Optional[AuthorizationPolicy] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.locks = locks
        self.resolver = resolver or RateResolver(storage)
        self.policy = policy
        self.event_dispatcher = event_dispatcher
        self.audit_trail = audit_trail
        self.plans_table = "investment_plans"
        self.investments_table = "investments"
        self.payouts_table = "investment_payouts"
        self.logger = get_logger("ledger.investments")

    # -- plans ---------------------------------------------------------------

    def create_plan(
        self,
        name: str,
        currency: Currency,
        base_rate: Union[Decimal, str],
        tiers: Optional[List[RateTier]] = None,
        min_amount: Union[Decimal, str] = Decimal('100'),
        max_amount: Optional[Union[Decimal, str]] = None,
        min_term_months: int = 1,
        max_term_months: int = 120,
        payout_frequency: PayoutFrequency = PayoutFrequency.MONTHLY,
        early_withdrawal_penalty: Union[Decimal, str] = Decimal('0'),
        requires_approval: bool = True
    ) -> InvestmentPlan:
        now = datetime.now(timezone.utc)
        plan = InvestmentPlan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            currency=currency,
            base_rate=to_decimal(base_rate),
            tiers=sorted(tiers or [], key=lambda t: t.min_amount),
            min_amount=to_decimal(min_amount),
            max_amount=to_decimal(max_amount) if max_amount is not None else None,
            min_term_months=min_term_months,
            max_term_months=max_term_months,
            payout_frequency=payout_frequency,
            early_withdrawal_penalty=to_decimal(early_withdrawal_penalty),
            requires_approval=requires_approval
        )
        if plan.base_rate < 0 or plan.early_withdrawal_penalty < 0:
            raise ValidationError("Rates cannot be negative")
        self._save_plan(plan)
        return plan

    def get_plan(self, plan_id: str) -> Optional[InvestmentPlan]:
        data = self.storage.load(self.plans_table, plan_id)
        return self._plan_from_dict(data) if data else None

    def list_plans(self, active_only: bool = True) -> List[InvestmentPlan]:
        plans = [self._plan_from_dict(d) for d in self.storage.load_all(self.plans_table)]
        return [p for p in plans if p.is_active or not active_only]

    def deactivate_plan(self, plan_id: str) -> InvestmentPlan:
        plan = self._require_plan(plan_id)
        plan.is_active = False
        plan.updated_at = datetime.now(timezone.utc)
        self._save_plan(plan)
        return plan

    # -- projections ---------------------------------------------------------

    def calculate_returns(self, amount: Money, rate: Union[Decimal, str], term_months: int,
                          frequency: PayoutFrequency = PayoutFrequency.MONTHLY) -> Dict[str, Any]:
        """Projection for an amount/rate/term without creating anything"""
        rate = to_decimal(rate)
        total = projected_return(amount, rate, term_months)
        schedule = payout_plan(amount, rate, frequency, term_months, datetime.now(timezone.utc).date())
        return {
            "principal": amount,
            "rate": rate,
            "term_months": term_months,
            "projected_return": total,
            "total_interest": total - amount,
            "periodic_payout": periodic_payout(amount, rate, frequency, term_months),
            "number_of_payouts": len(schedule)
        }

    # -- lifecycle -----------------------------------------------------------

    def apply(
        self,
        user_id: str,
        plan_id: str,
        amount: Union[Money, Decimal, str],
        term_months: int,
        source_account_id: str,
        payout_frequency: Optional[PayoutFrequency] = None,
        payout_account_id: Optional[str] = None
    ) -> Investment:
        """
        Create an investment application

        Plans that do not require approval are funded immediately.

        Raises:
            ValidationError: plan inactive, amount or term outside plan bounds
            UnauthorizedError: source account not owned by the user
        """
        plan = self._require_plan(plan_id)
        if not plan.is_active:
            raise ValidationError(f"Plan {plan.name} is not available")
        principal = amount if isinstance(amount, Money) else Money(to_decimal(amount), plan.currency)
        if principal.currency != plan.currency:
            raise CurrencyMismatchError(f"Plan {plan.name} invests in {plan.currency.code}")
        if principal.amount < plan.min_amount or (plan.max_amount is not None and principal.amount > plan.max_amount):
            raise ValidationError("Amount outside plan limits", {"amount": principal.amount})
        if not plan.min_term_months <= term_months <= plan.max_term_months:
            raise ValidationError("Term outside plan limits", {"term_months": term_months})

        source = self._owned_account(user_id, source_account_id, plan.currency)
        if payout_account_id:
            self._owned_account(user_id, payout_account_id, plan.currency)

        rate, _ = self.resolver.resolve(plan, user_id, principal.amount)
        frequency = payout_frequency or plan.payout_frequency
        now = datetime.now(timezone.utc)
        investment = Investment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            plan_id=plan.id,
            principal=principal,
            rate=rate,
            term_months=term_months,
            payout_frequency=frequency,
            projected_return=projected_return(principal, rate, term_months),
            total_paid_out=Money.zero(principal.currency),
            source_account_id=source.id,
            payout_account_id=payout_account_id
        )
        self._save_investment(investment)

        log_action(self.logger, "info", "Investment application created", user_id=user_id,
                   action="apply_investment", resource=f"investment:{investment.id}",
                   extra={"amount": principal.to_string(), "rate": str(rate), "plan": plan.name})
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.INVESTMENT_CREATED, "investment", investment.id,
                metadata={"plan_id": plan.id, "amount": principal.amount, "rate": rate,
                          "term_months": term_months}, user_id=user_id
            )

        if not plan.requires_approval:
            return self.approve(investment.id)
        return investment

    def approve(self, investment_id: str, approved_by: Optional[str] = None,
                start_date: Optional[date] = None) -> Investment:
        """Debit the principal from the source account and schedule payouts"""
        investment = self.require_investment(investment_id)
        with self.locks.acquire(investment_key(investment.id), investment.source_account_id):
            investment = self.require_investment(investment_id)
            if investment.status != InvestmentStatus.PENDING:
                raise InvalidStateError(f"Investment is {investment.status.value}, not pending")

            start = start_date or datetime.now(timezone.utc).date()
            now = datetime.now(timezone.utc)
            with UnitOfWork(self.storage) as uow:
                self.ledger.debit(
                    investment.source_account_id, investment.principal,
                    f"investment:{investment.id}:principal",
                    transaction_type=TransactionType.INVESTMENT, correlation_id=investment.id,
                    description=f"Investment - {investment.term_months} months @ {investment.rate}%"
                )
                investment.status = InvestmentStatus.ACTIVE
                investment.start_date = start
                investment.maturity_date = add_months(start, investment.term_months)
                investment.updated_at = now
                self._save_investment(investment)
                for period, due, amount in payout_plan(investment.principal, investment.rate,
                                                       investment.payout_frequency,
                                                       investment.term_months, start):
                    self._save_payout(Payout(
                        id=str(uuid.uuid4()), created_at=now, updated_at=now,
                        investment_id=investment.id, period=period, due_date=due, amount=amount
                    ))
                uow.on_commit(lambda: self._lifecycle_event(
                    investment, DomainEvent.INVESTMENT_APPROVED, AuditEventType.INVESTMENT_APPROVED,
                    approved_by, {"maturity_date": investment.maturity_date.isoformat()}))
        return investment

    def reject(self, investment_id: str, reason: str, rejected_by: Optional[str] = None) -> Investment:
        with self.locks.acquire(investment_key(investment_id)):
            investment = self.require_investment(investment_id)
            if investment.status != InvestmentStatus.PENDING:
                raise InvalidStateError(f"Investment is {investment.status.value}, not pending")
            investment.status = InvestmentStatus.REJECTED
            investment.rejection_reason = reason
            investment.updated_at = datetime.now(timezone.utc)
            self._save_investment(investment)
        self._lifecycle_event(investment, DomainEvent.INVESTMENT_REJECTED,
                              AuditEventType.INVESTMENT_REJECTED, rejected_by, {"reason": reason})
        return investment

    def set_rate(
        self,
        scope: RateScope,
        rate: Union[Decimal, str],
        rate_type: RateType = RateType.CUSTOM,
        effective_from: Optional[datetime] = None,
        effective_to: Optional[datetime] = None,
        plan_id: Optional[str] = None,
        user_id: Optional[str] = None,
        investment_id: Optional[str] = None,
        is_admin: bool = False,
        created_by: Optional[str] = None
    ) -> RateOverride:
        """
        Record a rate override

        Non-admin overrides price new applications only. An admin override
        in force now also re-prices the remaining scheduled payouts of the
        active investments it covers.
        """
        now = datetime.now(timezone.utc)
        effective_from = effective_from or now
        if effective_to is not None and effective_to <= effective_from:
            raise ValidationError("effective_to must be after effective_from")
        required = {
            RateScope.INVESTMENT: [investment_id],
            RateScope.USER_PLAN: [user_id, plan_id],
            RateScope.USER: [user_id],
            RateScope.PLAN: [plan_id],
        }[scope]
        if not all(required):
            raise ValidationError(f"Scope {scope.label} needs its ids")
        if investment_id and plan_id is None:
            plan_id = self.require_investment(investment_id).plan_id

        override = self.resolver.add_override(RateOverride(
            id=str(uuid.uuid4()), created_at=now, updated_at=now,
            scope=scope, rate_type=rate_type, rate=to_decimal(rate),
            effective_from=effective_from, effective_to=effective_to,
            plan_id=plan_id, user_id=user_id, investment_id=investment_id,
            is_admin=is_admin, created_by=created_by
        ))
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.RATE_OVERRIDE_SET, "rate_override", override.id,
                metadata=self.resolver._override_to_dict(override), user_id=created_by
            )

        if is_admin and override.is_effective(now):
            for investment in self._investments_with_status(InvestmentStatus.ACTIVE):
                if override.applies_to(investment.plan_id, investment.user_id, investment.id):
                    self._reprice(investment, now)
        return override

    def _reprice(self, investment: Investment, at: datetime) -> None:
        plan = self._require_plan(investment.plan_id)
        with self.locks.acquire(investment_key(investment.id)):
            investment = self.require_investment(investment.id)
            new_rate, _ = self.resolver.resolve(plan, investment.user_id, investment.principal.amount,
                                                investment.id, at)
            if new_rate == investment.rate:
                return
            old_rate = investment.rate
            payouts = self.get_payouts(investment.id)
            pending = [p for p in payouts if p.status in (PayoutStatus.SCHEDULED, PayoutStatus.FAILED)]
            settled = sum((p.amount for p in payouts if p.status == PayoutStatus.COMPLETED),
                          Money.zero(investment.currency))
            with UnitOfWork(self.storage) as uow:
                investment.rate = new_rate
                investment.projected_return = projected_return(investment.principal, new_rate,
                                                                investment.term_months)
                if pending:
                    first = min(p.period for p in pending)
                    amounts = {
                        period: amount for period, _, amount in payout_plan(
                            investment.principal, new_rate, investment.payout_frequency,
                            investment.term_months, investment.start_date,
                            first_period=first, paid_so_far=settled)
                    }
                    for payout in pending:
                        payout.amount = amounts.get(payout.period, payout.amount)
                        if not payout.amount.is_positive():
                            # Nothing left to pay for this period
                            payout.status = PayoutStatus.CANCELLED
                        payout.updated_at = at
                        self._save_payout(payout)
                investment.updated_at = at
                self._save_investment(investment)
                uow.on_commit(lambda: self._lifecycle_event(
                    investment, DomainEvent.INVESTMENT_RATE_CHANGED, AuditEventType.RATE_OVERRIDE_SET,
                    None, {"old_rate": str(old_rate), "new_rate": str(new_rate)}))

    # -- payouts -------------------------------------------------------------

    def process_payout(self, investment_id: str, as_of: Optional[date] = None,
                       payout_id: Optional[str] = None) -> PayoutResult:
        """
        Pay the earliest due payout (or ``payout_id``) to the payout account

        A payout already COMPLETED is returned with ``replayed=True``.

        Raises:
            InvalidStateError: investment not active or nothing due
        """
        as_of = as_of or datetime.now(timezone.utc).date()
        investment = self.require_investment(investment_id)
        account = self._payout_account(investment)

        with self.locks.acquire(investment_key(investment.id), account.id):
            investment = self.require_investment(investment_id)
            payout = self._select_payout(investment, as_of, payout_id)
            if payout.status == PayoutStatus.COMPLETED:
                return self._payout_result(payout, account.id, replayed=True)
            if investment.status != InvestmentStatus.ACTIVE:
                raise InvalidStateError(f"Investment is {investment.status.value}, not active")

            payout.status = PayoutStatus.PROCESSING
            payout.attempts += 1
            payout.updated_at = datetime.now(timezone.utc)
            self._save_payout(payout)
            try:
                result = self._pay(investment, payout, account, as_of)
            except Exception as e:
                code = e.code if isinstance(e, LedgerError) else "internal_error"
                message = e.message if isinstance(e, LedgerError) else str(e)
                payout.status = PayoutStatus.FAILED
                payout.failure_reason = message
                payout.transaction_id = None
                payout.processed_at = None
                payout.updated_at = datetime.now(timezone.utc)
                self._save_payout(payout)
                if self.event_dispatcher:
                    self.event_dispatcher.emit(
                        DomainEvent.INVESTMENT_PAYOUT_FAILED, "investment", investment.id,
                        {"payout_id": payout.id, "period": payout.period, "error": code,
                         "attempts": payout.attempts}
                    )
                log_action(self.logger, "warning", f"Investment payout failed: {message}",
                           action="investment_payout", resource=f"investment:{investment.id}",
                           account_id=account.id, extra={"period": payout.period, "code": code})
                raise

        if result.status == PayoutStatus.COMPLETED:
            log_action(self.logger, "info", "Investment payout completed", user_id=investment.user_id,
                       action="investment_payout", resource=f"investment:{investment.id}",
                       account_id=account.id, extra={"period": payout.period,
                                                     "amount": payout.amount.to_string()})
        return result

    def _pay(self, investment: Investment, payout: Payout, account: Account, as_of: date) -> PayoutResult:
        amount = payout.amount
        if not self._admin_override_in_force(investment):
            headroom = investment.projected_interest - investment.total_paid_out
            if amount > headroom:
                amount = headroom
        now = datetime.now(timezone.utc)
        if not amount.is_positive():
            # Projected interest already paid out: settle the period without a leg
            payout.amount = Money.zero(investment.currency)
            payout.status = PayoutStatus.CANCELLED
            payout.failure_reason = None
            payout.updated_at = now
            self._save_payout(payout)
            log_action(self.logger, "info", "Investment payout cancelled, nothing left to pay",
                       action="investment_payout", resource=f"investment:{investment.id}",
                       account_id=account.id, extra={"period": payout.period})
            return self._payout_result(payout, account.id)

        with UnitOfWork(self.storage) as uow:
            leg = self.ledger.credit(
                account.id, amount, f"investment:{investment.id}:payout:{payout.period}",
                transaction_type=TransactionType.INTEREST, correlation_id=payout.id,
                description=f"Investment payout {payout.period}"
            )
            payout.amount = amount
            payout.status = PayoutStatus.COMPLETED
            payout.transaction_id = leg.transaction_id
            payout.failure_reason = None
            payout.processed_at = now
            payout.updated_at = now
            self._save_payout(payout)

            investment.total_paid_out = investment.total_paid_out + amount
            investment.last_payout_date = as_of
            investment.updated_at = now
            self._save_investment(investment)

            result = self._payout_result(payout, account.id, leg.new_balance)
            uow.on_commit(lambda: self._payout_committed(investment, result))
        return result

    def process_due_payouts(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """Pay every due payout and mature investments whose term has ended"""
        as_of = as_of or datetime.now(timezone.utc).date()
        summary = {"processed": [], "failed": [], "matured": []}
        for investment in self._investments_with_status(InvestmentStatus.ACTIVE):
            failed = False
            for payout in self.get_payouts(investment.id):
                if payout.status not in (PayoutStatus.SCHEDULED, PayoutStatus.FAILED) or payout.due_date > as_of:
                    continue
                try:
                    summary["processed"].append(self.process_payout(investment.id, as_of, payout.id))
                except LedgerError as e:
                    summary["failed"].append({"investment_id": investment.id, "payout_id": payout.id,
                                              "error": e.code, "message": e.message})
                    failed = True
                    break
            if not failed and investment.maturity_date and investment.maturity_date <= as_of:
                try:
                    summary["matured"].append(self.mature(investment.id, as_of))
                except LedgerError as e:
                    summary["failed"].append({"investment_id": investment.id, "error": e.code,
                                              "message": e.message})
        return summary

    def mature(self, investment_id: str, as_of: Optional[date] = None) -> Investment:
        """Return the principal once the term has ended and every payout is settled"""
        as_of = as_of or datetime.now(timezone.utc).date()
        investment = self.require_investment(investment_id)
        account = self._payout_account(investment)
        with self.locks.acquire(investment_key(investment.id), account.id):
            investment = self.require_investment(investment_id)
            if investment.status != InvestmentStatus.ACTIVE:
                raise InvalidStateError(f"Investment is {investment.status.value}, not active")
            if investment.maturity_date is None or investment.maturity_date > as_of:
                raise InvalidStateError("Investment has not reached maturity")
            if any(p.status in (PayoutStatus.SCHEDULED, PayoutStatus.PROCESSING, PayoutStatus.FAILED)
                   for p in self.get_payouts(investment.id)):
                raise InvalidStateError("Investment has unsettled payouts")

            with UnitOfWork(self.storage) as uow:
                self.ledger.credit(
                    account.id, investment.principal, f"investment:{investment.id}:maturity",
                    transaction_type=TransactionType.INVESTMENT, correlation_id=investment.id,
                    description="Investment matured - principal returned"
                )
                investment.status = InvestmentStatus.MATURED
                investment.updated_at = datetime.now(timezone.utc)
                self._save_investment(investment)
                uow.on_commit(lambda: self._lifecycle_event(
                    investment, DomainEvent.INVESTMENT_MATURED, AuditEventType.INVESTMENT_MATURED, None,
                    {"principal": investment.principal.to_dict(),
                     "total_paid_out": investment.total_paid_out.to_dict()}))
        return investment

    def withdraw_early(self, investment_id: str, caller_id: Optional[str] = None,
                       destination_account_id: Optional[str] = None) -> Investment:
        """
        Close an active investment before maturity

        The principal is credited to the destination and the plan's penalty
        percentage of it is debited as a FEE row in the same unit of work.
        Remaining scheduled payouts are cancelled.
        """
        investment = self.require_investment(investment_id)
        if caller_id is not None and investment.user_id != caller_id:
            raise UnauthorizedError("Investment does not belong to caller")
        if destination_account_id:
            account = self._owned_account(investment.user_id, destination_account_id, investment.currency)
        else:
            account = self._payout_account(investment)
        plan = self._require_plan(investment.plan_id)

        with self.locks.acquire(investment_key(investment.id), account.id):
            investment = self.require_investment(investment_id)
            if investment.status != InvestmentStatus.ACTIVE:
                raise InvalidStateError(f"Investment is {investment.status.value}, not active")
            if any(p.status == PayoutStatus.PROCESSING for p in self.get_payouts(investment.id)):
                raise InvalidStateError("A payout is being processed")

            penalty = Money(investment.principal.amount * plan.early_withdrawal_penalty / Decimal('100'),
                            investment.currency)
            now = datetime.now(timezone.utc)
            with UnitOfWork(self.storage) as uow:
                self.ledger.credit(
                    account.id, investment.principal, f"investment:{investment.id}:withdrawal",
                    transaction_type=TransactionType.INVESTMENT, correlation_id=investment.id,
                    description="Investment early withdrawal"
                )
                if penalty.is_positive():
                    self.ledger.debit(
                        account.id, penalty, f"investment:{investment.id}:penalty",
                        transaction_type=TransactionType.FEE, correlation_id=investment.id,
                        description=f"Early withdrawal penalty {plan.early_withdrawal_penalty}%"
                    )
                for payout in self.get_payouts(investment.id):
                    if payout.status in (PayoutStatus.SCHEDULED, PayoutStatus.FAILED):
                        payout.status = PayoutStatus.CANCELLED
                        payout.updated_at = now
                        self._save_payout(payout)
                investment.status = InvestmentStatus.WITHDRAWN
                investment.penalty = penalty
                investment.updated_at = now
                self._save_investment(investment)
                uow.on_commit(lambda: self._lifecycle_event(
                    investment, DomainEvent.INVESTMENT_WITHDRAWN, AuditEventType.INVESTMENT_WITHDRAWN,
                    caller_id, {"penalty": penalty.to_dict(), "account_id": account.id}))
        return investment

    # -- queries -------------------------------------------------------------

    def get_investment(self, investment_id: str) -> Optional[Investment]:
        data = self.storage.load(self.investments_table, investment_id)
        return self._investment_from_dict(data) if data else None

    def require_investment(self, investment_id: str) -> Investment:
        investment = self.get_investment(investment_id)
        if not investment:
            raise ValidationError(f"Investment {investment_id} not found", {"investment_id": investment_id})
        return investment

    def get_user_investments(self, user_id: str) -> List[Investment]:
        return [self._investment_from_dict(d) for d in
                self.storage.find(self.investments_table, {"user_id": user_id})]

    def get_payouts(self, investment_id: str) -> List[Payout]:
        payouts = [self._payout_from_dict(d) for d in
                   self.storage.find(self.payouts_table, {"investment_id": investment_id})]
        payouts.sort(key=lambda p: p.period)
        return payouts

    # -- helpers -------------------------------------------------------------

    def _select_payout(self, investment: Investment, as_of: date, payout_id: Optional[str]) -> Payout:
        payouts = self.get_payouts(investment.id)
        if payout_id:
            for payout in payouts:
                if payout.id == payout_id:
                    if payout.status not in (PayoutStatus.SCHEDULED, PayoutStatus.FAILED, PayoutStatus.COMPLETED):
                        raise InvalidStateError(f"Payout is {payout.status.value}")
                    return payout
            raise ValidationError(f"Payout {payout_id} not found")
        for payout in payouts:
            if payout.status in (PayoutStatus.SCHEDULED, PayoutStatus.FAILED) and payout.due_date <= as_of:
                return payout
        raise InvalidStateError("No payout due", {"as_of": as_of.isoformat()})

    def _admin_override_in_force(self, investment: Investment) -> bool:
        override = self.resolver.find_override(investment.plan_id, investment.user_id, investment.id)
        return override is not None and override.is_admin

    def _payout_account(self, investment: Investment) -> Account:
        if investment.payout_account_id:
            return self.accounts.require_account(investment.payout_account_id)
        account = self.accounts.get_priority_account(investment.user_id, investment.currency)
        return account or self.accounts.require_account(investment.source_account_id)

    def _owned_account(self, user_id: str, account_id: str, currency: Currency) -> Account:
        account = self.accounts.require_account(account_id)
        owned = self.policy.owns_account(user_id, account_id) if self.policy else account.user_id == user_id
        if not owned:
            raise UnauthorizedError("Account does not belong to the investor", {"account_id": account_id})
        if account.currency != currency:
            raise CurrencyMismatchError(f"Account must be in {currency.code}", {"account_id": account_id})
        return account

    def _require_plan(self, plan_id: str) -> InvestmentPlan:
        plan = self.get_plan(plan_id)
        if not plan:
            raise ValidationError(f"Plan {plan_id} not found", {"plan_id": plan_id})
        return plan

    def _investments_with_status(self, status: InvestmentStatus) -> List[Investment]:
        return [self._investment_from_dict(d) for d in
                self.storage.find(self.investments_table, {"status": status.value})]

    def _payout_result(self, payout: Payout, account_id: str, balance: Optional[Money] = None,
                       replayed: bool = False) -> PayoutResult:
        return PayoutResult(
            payout_id=payout.id,
            investment_id=payout.investment_id,
            period=payout.period,
            amount=payout.amount,
            status=payout.status,
            account_id=account_id,
            transaction_id=payout.transaction_id,
            account_balance=balance,
            replayed=replayed
        )

    def _payout_committed(self, investment: Investment, result: PayoutResult) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.INVESTMENT_PAYOUT, "investment", investment.id,
                metadata=result.to_dict(), user_id=investment.user_id, correlation_id=result.payout_id
            )
        if self.event_dispatcher:
            self.event_dispatcher.emit(DomainEvent.INVESTMENT_PAYOUT_COMPLETED, "investment",
                                       investment.id, result.to_dict(), correlation_id=result.payout_id)

    def _lifecycle_event(self, investment: Investment, event: DomainEvent, audit_type: AuditEventType,
                         actor: Optional[str], data: Dict[str, Any]) -> None:
        data = dict(data, user_id=investment.user_id, status=investment.status.value)
        if self.audit_trail:
            self.audit_trail.log_event(audit_type, "investment", investment.id, metadata=data, user_id=actor)
        if self.event_dispatcher:
            self.event_dispatcher.emit(event, "investment", investment.id, data)

    # -- persistence ---------------------------------------------------------

    def _save_plan(self, plan: InvestmentPlan) -> None:
        self.storage.save(self.plans_table, plan.id, {
            'id': plan.id,
            'created_at': plan.created_at.isoformat(),
            'updated_at': plan.updated_at.isoformat(),
            'name': plan.name,
            'currency': plan.currency.code,
            'base_rate': str(plan.base_rate),
            'tiers': [
                {'min_amount': str(t.min_amount),
                 'max_amount': str(t.max_amount) if t.max_amount is not None else None,
                 'rate': str(t.rate)}
                for t in plan.tiers
            ],
            'min_amount': str(plan.min_amount),
            'max_amount': str(plan.max_amount) if plan.max_amount is not None else None,
            'min_term_months': plan.min_term_months,
            'max_term_months': plan.max_term_months,
            'payout_frequency': plan.payout_frequency.label,
            'early_withdrawal_penalty': str(plan.early_withdrawal_penalty),
            'requires_approval': plan.requires_approval,
            'is_active': plan.is_active
        })

    def _plan_from_dict(self, data: Dict) -> InvestmentPlan:
        return InvestmentPlan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            currency=Currency[data['currency']],
            base_rate=Decimal(data['base_rate']),
            tiers=[
                RateTier(Decimal(t['min_amount']),
                         Decimal(t['max_amount']) if t.get('max_amount') is not None else None,
                         Decimal(t['rate']))
                for t in data.get('tiers', [])
            ],
            min_amount=Decimal(data['min_amount']),
            max_amount=Decimal(data['max_amount']) if data.get('max_amount') is not None else None,
            min_term_months=data['min_term_months'],
            max_term_months=data['max_term_months'],
            payout_frequency=PayoutFrequency.from_label(data['payout_frequency']),
            early_withdrawal_penalty=Decimal(data['early_withdrawal_penalty']),
            requires_approval=bool(data['requires_approval']),
            is_active=bool(data['is_active'])
        )

    def _save_investment(self, investment: Investment) -> None:
        self.storage.save(self.investments_table, investment.id, {
            'id': investment.id,
            'created_at': investment.created_at.isoformat(),
            'updated_at': investment.updated_at.isoformat(),
            'user_id': investment.user_id,
            'plan_id': investment.plan_id,
            'currency': investment.currency.code,
            'principal': str(investment.principal.amount),
            'rate': str(investment.rate),
            'term_months': investment.term_months,
            'payout_frequency': investment.payout_frequency.label,
            'projected_return': str(investment.projected_return.amount),
            'total_paid_out': str(investment.total_paid_out.amount),
            'status': investment.status.value,
            'source_account_id': investment.source_account_id,
            'payout_account_id': investment.payout_account_id,
            'start_date': investment.start_date.isoformat() if investment.start_date else None,
            'maturity_date': investment.maturity_date.isoformat() if investment.maturity_date else None,
            'last_payout_date': investment.last_payout_date.isoformat() if investment.last_payout_date else None,
            'penalty': str(investment.penalty.amount) if investment.penalty else None,
            'rejection_reason': investment.rejection_reason
        })

    def _investment_from_dict(self, data: Dict) -> Investment:
        currency = Currency[data['currency']]

        def optional_date(key: str) -> Optional[date]:
            return date.fromisoformat(data[key]) if data.get(key) else None

        return Investment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            plan_id=data['plan_id'],
            principal=Money(Decimal(data['principal']), currency),
            rate=Decimal(data['rate']),
            term_months=data['term_months'],
            payout_frequency=PayoutFrequency.from_label(data['payout_frequency']),
            projected_return=Money(Decimal(data['projected_return']), currency),
            total_paid_out=Money(Decimal(data['total_paid_out']), currency),
            status=InvestmentStatus(data['status']),
            source_account_id=data.get('source_account_id'),
            payout_account_id=data.get('payout_account_id'),
            start_date=optional_date('start_date'),
            maturity_date=optional_date('maturity_date'),
            last_payout_date=optional_date('last_payout_date'),
            penalty=Money(Decimal(data['penalty']), currency) if data.get('penalty') else None,
            rejection_reason=data.get('rejection_reason')
        )

    def _save_payout(self, payout: Payout) -> None:
        self.storage.save(self.payouts_table, payout.id, {
            'id': payout.id,
            'created_at': payout.created_at.isoformat(),
            'updated_at': payout.updated_at.isoformat(),
            'investment_id': payout.investment_id,
            'period': payout.period,
            'due_date': payout.due_date.isoformat(),
            'currency': payout.amount.currency.code,
            'amount': str(payout.amount.amount),
            'status': payout.status.value,
            'attempts': payout.attempts,
            'transaction_id': payout.transaction_id,
            'failure_reason': payout.failure_reason,
            'processed_at': payout.processed_at.isoformat() if payout.processed_at else None
        })

    def _payout_from_dict(self, data: Dict) -> Payout:
        return Payout(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            investment_id=data['investment_id'],
            period=data['period'],
            due_date=date.fromisoformat(data['due_date']),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            status=PayoutStatus(data['status']),
            attempts=data.get('attempts', 0),
            transaction_id=data.get('transaction_id'),
            failure_reason=data.get('failure_reason'),
            processed_at=datetime.fromisoformat(data['processed_at']) if data.get('processed_at') else None
        )
