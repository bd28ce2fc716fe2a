"""
Loan Module

Fixed-payment loans: application, approval with disbursement, amortization
schedules, payments and scheduled autopay.

Amortization uses the standard annuity formula

    payment = P * r / (1 - (1 + r) ** -n),   r = annual_rate / 100 / 12

rounded half-even to the loan currency. Each period's interest is the
outstanding balance times r (rounded the same way); the principal portion is
payment minus interest, and the final period pays the exact remainder so the
schedule always ends at zero. ``apply_payment`` splits real payments with the
same arithmetic, so paying the schedule as generated retires the loan
exactly.

Lifecycle: PENDING -> APPROVED/REJECTED -> ACTIVE -> PAID_OFF/DEFAULTED.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import calendar
import uuid

from .accounts import AccountManager, AuthorizationPolicy
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .currency import Money, Currency, quantize, to_decimal
from .errors import (
    CurrencyMismatchError, InvalidStateError, LedgerError, OverpaymentNotAllowedError,
    UnauthorizedError, ValidationError
)
from .events import DomainEvent, EventDispatcher
from .idempotency import IdempotencyGuard, fingerprint
from .ledger import AccountLedger
from .locks import AccountLockManager, loan_key
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord
from .transaction_log import TransactionType
from .unit_of_work import UnitOfWork


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    PAID_OFF = "paid_off"
    DEFAULTED = "defaulted"


@dataclass(frozen=True)
class ScheduleEntry:
    """Single entry in an amortization schedule"""
    period: int
    due_date: date
    payment: Money
    principal_portion: Money
    interest_portion: Money
    balance_after: Money


@dataclass
class Loan(StorageRecord):
    user_id: str
    principal: Money
    annual_rate: Decimal               # percent, e.g. 12 for 12%
    term_months: int
    monthly_payment: Money
    total_paid: Money
    remaining_balance: Money
    status: LoanStatus = LoanStatus.PENDING
    purpose: str = ""
    approved_at: Optional[datetime] = None
    next_payment_date: Optional[date] = None
    disbursement_account_id: Optional[str] = None
    autopay_account_id: Optional[str] = None
    payments_made: int = 0
    rejection_reason: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def monthly_rate(self) -> Decimal:
        return self.annual_rate / Decimal('100') / Decimal('12')


@dataclass
class LoanPayment(StorageRecord):
    loan_id: str
    transaction_id: str
    account_id: str
    amount: Money
    principal_portion: Money
    interest_portion: Money
    remaining_after: Money
    payment_date: date


@dataclass(frozen=True)
class LoanPaymentResult:
    loan_id: str
    payment_id: str
    transaction_id: str
    amount: Money
    principal_portion: Money
    interest_portion: Money
    remaining_balance: Money
    account_balance: Money
    next_payment_date: Optional[date]
    status: LoanStatus
    replayed: bool = field(default=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "payment_id": self.payment_id,
            "transaction_id": self.transaction_id,
            "amount": self.amount.to_dict(),
            "principal_portion": self.principal_portion.to_dict(),
            "interest_portion": self.interest_portion.to_dict(),
            "remaining_balance": self.remaining_balance.to_dict(),
            "account_balance": self.account_balance.to_dict(),
            "next_payment_date": self.next_payment_date.isoformat() if self.next_payment_date else None,
            "status": self.status.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], replayed: bool = False) -> 'LoanPaymentResult':
        return cls(
            loan_id=data["loan_id"],
            payment_id=data["payment_id"],
            transaction_id=data["transaction_id"],
            amount=Money.from_dict(data["amount"]),
            principal_portion=Money.from_dict(data["principal_portion"]),
            interest_portion=Money.from_dict(data["interest_portion"]),
            remaining_balance=Money.from_dict(data["remaining_balance"]),
            account_balance=Money.from_dict(data["account_balance"]),
            next_payment_date=date.fromisoformat(data["next_payment_date"]) if data.get("next_payment_date") else None,
            status=LoanStatus(data["status"]),
            replayed=replayed
        )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_monthly_payment(principal: Money, annual_rate: Decimal, term_months: int) -> Money:
    """Fixed monthly payment for a fully amortizing loan"""
    if term_months <= 0:
        raise ValidationError("Term must be at least one month")
    r = to_decimal(annual_rate) / Decimal('100') / Decimal('12')
    if r == 0:
        return principal / term_months
    payment = principal.amount * r / (Decimal('1') - (Decimal('1') + r) ** -term_months)
    return Money(payment, principal.currency)


def split_payment(outstanding: Money, amount: Money, monthly_rate: Decimal) -> tuple:
    """(interest, principal) portions of a payment against an outstanding balance"""
    interest = Money(quantize(outstanding.amount * monthly_rate, outstanding.currency), outstanding.currency)
    if amount <= interest:
        return amount, Money.zero(amount.currency)
    return interest, amount - interest


def generate_schedule(principal: Money, annual_rate: Decimal, term_months: int,
                      start_date: date) -> List[ScheduleEntry]:
    """
    Amortization schedule, first payment one month after ``start_date``

    The sum of principal portions equals the principal exactly and the last
    ``balance_after`` is zero.
    """
    payment = calculate_monthly_payment(principal, annual_rate, term_months)
    r = to_decimal(annual_rate) / Decimal('100') / Decimal('12')
    balance = principal
    schedule = []
    for period in range(1, term_months + 1):
        interest = Money(quantize(balance.amount * r, balance.currency), balance.currency)
        if period == term_months:
            principal_portion = balance
        else:
            principal_portion = min(payment - interest, balance)
        balance = balance - principal_portion
        schedule.append(ScheduleEntry(
            period=period,
            due_date=add_months(start_date, period),
            payment=principal_portion + interest,
            principal_portion=principal_portion,
            interest_portion=interest,
            balance_after=balance
        ))
        if balance.is_zero():
            break
    return schedule


class LoanAmortizer:
    """
    Loan lifecycle and payments; every balance change goes through AccountLedger
    """

    OPERATION = "loan_payment"

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        ledger: AccountLedger,
        guard: IdempotencyGuard,
        locks: AccountLockManager,
        policy: Optional[AuthorizationPolicy] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.guard = guard
        self.locks = locks
        self.policy = policy
        self.event_dispatcher = event_dispatcher
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.loans_table = "loans"
        self.payments_table = "loan_payments"
        self.logger = get_logger("ledger.loans")

    # -- pure calculations ---------------------------------------------------

    generate_schedule = staticmethod(generate_schedule)
    calculate_monthly_payment = staticmethod(calculate_monthly_payment)

    def quote_interest_rate(self, amount: Money, term_months: int) -> Decimal:
        """Annual rate offered for an amount/term, clamped to 3%..15%"""
        rate = Decimal(self.config.loan_base_rate)
        if amount.amount >= Decimal('50000'):
            rate += Decimal('0.5')
        elif amount.amount <= Decimal('5000'):
            rate -= Decimal('0.25')
        if term_months >= 48:
            rate += Decimal('0.5')
        elif term_months <= 12:
            rate -= Decimal('0.25')
        return max(Decimal('3.0'), min(Decimal('15.0'), rate))

    # -- lifecycle -----------------------------------------------------------

    def apply_for_loan(
        self,
        user_id: str,
        amount: Union[Money, Decimal, str],
        term_months: int,
        purpose: str = "",
        annual_rate: Optional[Decimal] = None
    ) -> Loan:
        """
        Create a PENDING loan application

        Raises:
            ValidationError: amount or term outside the configured limits
        """
        principal = amount if isinstance(amount, Money) else Money(
            to_decimal(amount), Currency.from_code(self.config.loan_currency))
        min_amount = Decimal(self.config.loan_min_amount)
        max_amount = Decimal(self.config.loan_max_amount)
        if principal.amount < min_amount or principal.amount > max_amount:
            raise ValidationError(
                f"Loan amount must be between {min_amount:,.2f} and {max_amount:,.2f}",
                {"amount": principal.amount}
            )
        if not self.config.loan_min_term_months <= term_months <= self.config.loan_max_term_months:
            raise ValidationError(
                f"Term must be between {self.config.loan_min_term_months} and "
                f"{self.config.loan_max_term_months} months", {"term_months": term_months}
            )

        rate = to_decimal(annual_rate) if annual_rate is not None else self.quote_interest_rate(principal, term_months)
        if rate < 0:
            raise ValidationError("Interest rate cannot be negative")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            principal=principal,
            annual_rate=rate,
            term_months=term_months,
            monthly_payment=calculate_monthly_payment(principal, rate, term_months),
            total_paid=Money.zero(principal.currency),
            remaining_balance=principal,
            purpose=purpose
        )
        self._save_loan(loan)

        log_action(self.logger, "info", "Loan application created", user_id=user_id,
                   action="apply_for_loan", resource=f"loan:{loan.id}",
                   extra={"amount": principal.to_string(), "rate": str(rate), "term": term_months})
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.LOAN_APPLIED, "loan", loan.id,
                metadata={"amount": principal.amount, "currency": principal.currency.code,
                          "rate": rate, "term_months": term_months}, user_id=user_id
            )
        return loan

    def approve_loan(
        self,
        loan_id: str,
        disbursement_account_id: Optional[str] = None,
        override_rate: Optional[Decimal] = None,
        approved_by: Optional[str] = None,
        approval_date: Optional[date] = None
    ) -> Loan:
        """
        Approve a pending loan and disburse the principal

        The principal is credited to ``disbursement_account_id`` or, when
        omitted, the borrower's priority account in the loan currency. The
        loan ends up ACTIVE with the first payment due one month later.
        """
        loan = self.require_loan(loan_id)
        if disbursement_account_id:
            account = self.accounts.require_account(disbursement_account_id)
            if account.user_id != loan.user_id:
                raise UnauthorizedError("Disbursement account does not belong to the borrower")
        else:
            account = self.accounts.get_priority_account(loan.user_id, loan.currency)
            if account is None:
                raise ValidationError(f"Borrower has no {loan.currency.code} account for disbursement")
        if account.currency != loan.currency:
            raise CurrencyMismatchError("Disbursement account currency must match the loan currency")

        with self.locks.acquire(loan_key(loan.id), account.id):
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateError(f"Loan is {loan.status.value}, not pending")

            if override_rate is not None:
                loan.annual_rate = to_decimal(override_rate)
                loan.monthly_payment = calculate_monthly_payment(loan.principal, loan.annual_rate, loan.term_months)

            now = datetime.now(timezone.utc)
            start = approval_date or now.date()
            with UnitOfWork(self.storage) as uow:
                loan.status = LoanStatus.APPROVED
                loan.approved_at = datetime.combine(start, now.time(), tzinfo=timezone.utc)
                loan.next_payment_date = add_months(start, 1)
                loan.disbursement_account_id = account.id
                self._save_loan(loan)

                self.ledger.credit(
                    account.id, loan.principal, f"loan:{loan.id}:disbursement",
                    transaction_type=TransactionType.LOAN_DISBURSEMENT, correlation_id=loan.id,
                    description=f"Loan disbursement - {loan.term_months} months @ {loan.annual_rate}%"
                )
                loan.status = LoanStatus.ACTIVE
                loan.updated_at = now
                self._save_loan(loan)
                uow.on_commit(lambda: self._lifecycle_event(
                    loan, DomainEvent.LOAN_APPROVED, AuditEventType.LOAN_APPROVED, approved_by,
                    {"disbursement_account_id": account.id, "rate": str(loan.annual_rate),
                     "monthly_payment": loan.monthly_payment.to_dict()}))
        return loan

    def reject_loan(self, loan_id: str, reason: str, rejected_by: Optional[str] = None) -> Loan:
        with self.locks.acquire(loan_key(loan_id)):
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateError(f"Loan is {loan.status.value}, not pending")
            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)
        self._lifecycle_event(loan, DomainEvent.LOAN_REJECTED, AuditEventType.LOAN_REJECTED,
                              rejected_by, {"reason": reason})
        return loan

    def mark_defaulted(self, loan_id: str, reason: str = "") -> Loan:
        with self.locks.acquire(loan_key(loan_id)):
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidStateError(f"Loan is {loan.status.value}, not active")
            loan.status = LoanStatus.DEFAULTED
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)
        self._lifecycle_event(loan, DomainEvent.LOAN_DEFAULTED, AuditEventType.LOAN_DEFAULTED,
                              None, {"reason": reason, "remaining": loan.remaining_balance.to_dict()})
        return loan

    def set_autopay(self, loan_id: str, account_id: Optional[str]) -> Loan:
        """Enable autopay from an account (None disables it)"""
        with self.locks.acquire(loan_key(loan_id)):
            loan = self.require_loan(loan_id)
            if account_id:
                account = self.accounts.require_account(account_id)
                if account.user_id != loan.user_id:
                    raise UnauthorizedError("Autopay account does not belong to the borrower")
                if account.currency != loan.currency:
                    raise CurrencyMismatchError("Autopay account currency must match the loan currency")
            loan.autopay_account_id = account_id
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)
        return loan

    # -- payments ------------------------------------------------------------

    def payoff_amount(self, loan: Loan) -> Money:
        """Remaining balance plus the current period's interest"""
        interest = quantize(loan.remaining_balance.amount * loan.monthly_rate, loan.currency)
        return loan.remaining_balance + Money(interest, loan.currency)

    def apply_payment(
        self,
        loan_id: str,
        amount: Union[Money, Decimal, str],
        account_id: str,
        idempotency_key: Optional[str] = None,
        caller_id: Optional[str] = None,
        payment_date: Optional[date] = None
    ) -> LoanPaymentResult:
        """
        Debit the paying account and apply the payment to the loan

        Interest for the period is covered first, the rest reduces the
        remaining balance. Status becomes PAID_OFF when the balance reaches
        zero.

        Raises:
            OverpaymentNotAllowedError: amount exceeds the payoff amount
            InvalidStateError: loan is not ACTIVE
        """
        key = idempotency_key or str(uuid.uuid4())
        loan = self.require_loan(loan_id)
        money = amount if isinstance(amount, Money) else Money(to_decimal(amount), loan.currency)
        if not money.is_positive():
            raise ValidationError("Payment amount must be positive")
        if money.currency != loan.currency:
            raise CurrencyMismatchError("Payment currency must match the loan currency")
        if caller_id is not None:
            if loan.user_id != caller_id:
                raise UnauthorizedError("Loan does not belong to caller")
            if self.policy and not self.policy.owns_account(caller_id, account_id):
                raise UnauthorizedError("Caller does not own the paying account")

        request_fp = fingerprint(loan=loan_id, account=account_id, amount=money.amount)
        prior = self.guard.lookup(self.OPERATION, key, request_fp)
        if prior is not None:
            return LoanPaymentResult.from_dict(prior, replayed=True)

        try:
            with self.locks.acquire(loan_key(loan_id), account_id):
                prior = self.guard.lookup(self.OPERATION, key, request_fp)
                if prior is not None:
                    return LoanPaymentResult.from_dict(prior, replayed=True)
                result = self._apply_locked(loan_id, money, account_id, key, request_fp,
                                            payment_date or datetime.now(timezone.utc).date())
        except LedgerError as e:
            if self.event_dispatcher:
                self.event_dispatcher.emit(
                    DomainEvent.LOAN_PAYMENT_FAILED, "loan", loan_id,
                    {"account_id": account_id, "amount": money.to_dict(), "error": e.code}
                )
            log_action(self.logger, "warning", f"Loan payment failed: {e.message}",
                       action="loan_payment", resource=f"loan:{loan_id}", account_id=account_id,
                       extra={"code": e.code})
            raise

        log_action(self.logger, "info", "Loan payment applied", user_id=caller_id,
                   action="loan_payment", resource=f"loan:{loan_id}", account_id=account_id,
                   extra={"amount": money.to_string(),
                          "remaining": result.remaining_balance.to_string()})
        return result

    def _apply_locked(self, loan_id: str, money: Money, account_id: str, key: str,
                      request_fp: str, payment_date: date) -> LoanPaymentResult:
        loan = self.require_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            raise InvalidStateError(f"Loan is {loan.status.value}, not active")

        payoff = self.payoff_amount(loan)
        if money > payoff:
            raise OverpaymentNotAllowedError(
                f"Payment {money.to_string()} exceeds payoff amount {payoff.to_string()}",
                {"amount": money.amount, "payoff": payoff.amount}
            )

        interest, principal_portion = split_payment(loan.remaining_balance, money, loan.monthly_rate)
        if principal_portion > loan.remaining_balance:
            principal_portion = loan.remaining_balance
        remaining = loan.remaining_balance - principal_portion

        now = datetime.now(timezone.utc)
        payment_id = str(uuid.uuid4())
        with UnitOfWork(self.storage) as uow:
            leg = self.ledger.debit(
                account_id, money, f"{key}:debit",
                transaction_type=TransactionType.LOAN_PAYMENT, correlation_id=payment_id,
                description=f"Loan payment - loan #{loan.id[:8]}"
            )
            payment = LoanPayment(
                id=payment_id,
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                transaction_id=leg.transaction_id,
                account_id=account_id,
                amount=money,
                principal_portion=principal_portion,
                interest_portion=interest,
                remaining_after=remaining,
                payment_date=payment_date
            )
            self._save_payment(payment)

            loan.remaining_balance = remaining
            loan.total_paid = loan.total_paid + money
            loan.payments_made += 1
            loan.updated_at = now
            if remaining.is_zero():
                loan.status = LoanStatus.PAID_OFF
                loan.next_payment_date = None
            else:
                loan.next_payment_date = add_months(loan.next_payment_date or payment_date, 1)
            self._save_loan(loan)

            result = LoanPaymentResult(
                loan_id=loan.id,
                payment_id=payment.id,
                transaction_id=leg.transaction_id,
                amount=money,
                principal_portion=principal_portion,
                interest_portion=interest,
                remaining_balance=remaining,
                account_balance=leg.new_balance,
                next_payment_date=loan.next_payment_date,
                status=loan.status
            )
            self.guard.record(self.OPERATION, key, result.to_dict(), request_fp)
            uow.on_commit(lambda: self._payment_committed(loan, result))
        return result

    def process_scheduled_payment(self, loan_id: str, as_of: Optional[date] = None) -> LoanPaymentResult:
        """Pay the installment due on ``next_payment_date`` from the autopay or priority account"""
        loan = self.require_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE or loan.next_payment_date is None:
            raise InvalidStateError(f"Loan is {loan.status.value}, nothing is due")
        account_id = loan.autopay_account_id
        if not account_id:
            account = self.accounts.get_priority_account(loan.user_id, loan.currency)
            if account is None:
                raise ValidationError(f"Borrower has no {loan.currency.code} account for payment")
            account_id = account.id
        due = min(loan.monthly_payment, self.payoff_amount(loan))
        return self.apply_payment(
            loan.id, due, account_id,
            idempotency_key=f"scheduled:{loan.id}:{loan.next_payment_date.isoformat()}",
            payment_date=as_of or loan.next_payment_date
        )

    def process_due_payments(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """Run autopay for every active loan whose payment is due"""
        as_of = as_of or datetime.now(timezone.utc).date()
        summary = {"processed": [], "failed": []}
        for data in self.storage.find(self.loans_table, {"status": LoanStatus.ACTIVE.value}):
            loan = self._loan_from_dict(data)
            if not loan.autopay_account_id or not loan.next_payment_date or loan.next_payment_date > as_of:
                continue
            try:
                result = self.process_scheduled_payment(loan.id, as_of)
                summary["processed"].append(result)
            except LedgerError as e:
                summary["failed"].append({"loan_id": loan.id, "error": e.code, "message": e.message})
        return summary

    # -- queries -------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return self._loan_from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise ValidationError(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return loan

    def get_user_loans(self, user_id: str) -> List[Loan]:
        return [self._loan_from_dict(d) for d in self.storage.find(self.loans_table, {"user_id": user_id})]

    def get_pending_loans(self) -> List[Loan]:
        return [self._loan_from_dict(d) for d in
                self.storage.find(self.loans_table, {"status": LoanStatus.PENDING.value})]

    def get_payment_history(self, loan_id: str) -> List[LoanPayment]:
        payments = [self._payment_from_dict(d) for d in
                    self.storage.find(self.payments_table, {"loan_id": loan_id})]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def get_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        """Schedule from approval date (or today for pending loans)"""
        loan = self.require_loan(loan_id)
        start = loan.approved_at.date() if loan.approved_at else datetime.now(timezone.utc).date()
        return generate_schedule(loan.principal, loan.annual_rate, loan.term_months, start)

    # -- persistence ---------------------------------------------------------

    def _payment_committed(self, loan: Loan, result: LoanPaymentResult) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.LOAN_PAYMENT_MADE, "loan", loan.id,
                metadata=result.to_dict(), user_id=loan.user_id, correlation_id=result.payment_id
            )
        if self.event_dispatcher:
            self.event_dispatcher.emit(DomainEvent.LOAN_PAYMENT_APPLIED, "loan", loan.id,
                                       result.to_dict(), correlation_id=result.payment_id)
        if result.status == LoanStatus.PAID_OFF:
            self._lifecycle_event(loan, DomainEvent.LOAN_PAID_OFF, AuditEventType.LOAN_PAID_OFF,
                                  None, {"total_paid": loan.total_paid.to_dict()})

    def _lifecycle_event(self, loan: Loan, event: DomainEvent, audit_type: AuditEventType,
                         actor: Optional[str], data: Dict[str, Any]) -> None:
        data = dict(data, user_id=loan.user_id, status=loan.status.value)
        if self.audit_trail:
            self.audit_trail.log_event(audit_type, "loan", loan.id, metadata=data, user_id=actor)
        if self.event_dispatcher:
            self.event_dispatcher.emit(event, "loan", loan.id, data)

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _save_payment(self, payment: LoanPayment) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'user_id': loan.user_id,
            'currency': loan.currency.code,
            'principal': str(loan.principal.amount),
            'annual_rate': str(loan.annual_rate),
            'term_months': loan.term_months,
            'monthly_payment': str(loan.monthly_payment.amount),
            'total_paid': str(loan.total_paid.amount),
            'remaining_balance': str(loan.remaining_balance.amount),
            'status': loan.status.value,
            'purpose': loan.purpose,
            'approved_at': loan.approved_at.isoformat() if loan.approved_at else None,
            'next_payment_date': loan.next_payment_date.isoformat() if loan.next_payment_date else None,
            'disbursement_account_id': loan.disbursement_account_id,
            'autopay_account_id': loan.autopay_account_id,
            'payments_made': loan.payments_made,
            'rejection_reason': loan.rejection_reason
        }

    def _loan_from_dict(self, data: Dict) -> Loan:
        currency = Currency[data['currency']]

        def money(field_name: str) -> Money:
            return Money(Decimal(data[field_name]), currency)

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            principal=money('principal'),
            annual_rate=Decimal(data['annual_rate']),
            term_months=data['term_months'],
            monthly_payment=money('monthly_payment'),
            total_paid=money('total_paid'),
            remaining_balance=money('remaining_balance'),
            status=LoanStatus(data['status']),
            purpose=data.get('purpose', ""),
            approved_at=datetime.fromisoformat(data['approved_at']) if data.get('approved_at') else None,
            next_payment_date=date.fromisoformat(data['next_payment_date']) if data.get('next_payment_date') else None,
            disbursement_account_id=data.get('disbursement_account_id'),
            autopay_account_id=data.get('autopay_account_id'),
            payments_made=data.get('payments_made', 0),
            rejection_reason=data.get('rejection_reason')
        )

    def _payment_to_dict(self, payment: LoanPayment) -> Dict:
        return {
            'id': payment.id,
            'created_at': payment.created_at.isoformat(),
            'updated_at': payment.updated_at.isoformat(),
            'loan_id': payment.loan_id,
            'transaction_id': payment.transaction_id,
            'account_id': payment.account_id,
            'currency': payment.amount.currency.code,
            'amount': str(payment.amount.amount),
            'principal_portion': str(payment.principal_portion.amount),
            'interest_portion': str(payment.interest_portion.amount),
            'remaining_after': str(payment.remaining_after.amount),
            'payment_date': payment.payment_date.isoformat()
        }

    def _payment_from_dict(self, data: Dict) -> LoanPayment:
        currency = Currency[data['currency']]
        return LoanPayment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            transaction_id=data['transaction_id'],
            account_id=data['account_id'],
            amount=Money(Decimal(data['amount']), currency),
            principal_portion=Money(Decimal(data['principal_portion']), currency),
            interest_portion=Money(Decimal(data['interest_portion']), currency),
            remaining_after=Money(Decimal(data['remaining_after']), currency),
            payment_date=date.fromisoformat(data['payment_date'])
        )
