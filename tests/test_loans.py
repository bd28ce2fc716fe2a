"""
Test suite for loans

Tests amortization math, the loan lifecycle, payments (including the final
remainder and overpayment), idempotent retries and scheduled autopay.
"""

import pytest
from datetime import date
from decimal import Decimal

from ledger_core.config import LedgerConfig
from ledger_core.currency import Currency, Money
from ledger_core.errors import (
    InsufficientFundsError, InvalidStateError, OverpaymentNotAllowedError,
    UnauthorizedError, ValidationError
)
from ledger_core.events import DomainEvent, RecordingHandler
from ledger_core.loans import (
    LoanStatus, add_months, calculate_monthly_payment, generate_schedule, split_payment
)
from ledger_core.rates import StaticRateSource
from ledger_core.service import LedgerService
from ledger_core.storage import InMemoryStorage
from ledger_core.transaction_log import TransactionType


def eur(amount):
    return Money(Decimal(amount), Currency.EUR)


class TestAmortization:
    """Pure schedule calculations"""

    def test_monthly_payment(self):
        assert calculate_monthly_payment(eur("12000"), Decimal("12"), 12) == eur("1066.19")

    def test_zero_rate_is_straight_line(self):
        assert calculate_monthly_payment(eur("1200"), Decimal("0"), 12) == eur("100.00")

    def test_invalid_term(self):
        with pytest.raises(ValidationError):
            calculate_monthly_payment(eur("1000"), Decimal("5"), 0)

    def test_schedule_ends_at_zero(self):
        schedule = generate_schedule(eur("12000"), Decimal("12"), 12, date(2024, 1, 15))

        assert len(schedule) == 12
        first = schedule[0]
        assert first.due_date == date(2024, 2, 15)
        assert first.payment == eur("1066.19")
        assert first.interest_portion == eur("120.00")
        assert first.principal_portion == eur("946.19")
        assert first.balance_after == eur("11053.81")

        assert schedule[-1].balance_after.is_zero()
        total_principal = sum((e.principal_portion.amount for e in schedule), Decimal("0"))
        assert total_principal == Decimal("12000.00")
        assert all(e.payment == eur("1066.19") for e in schedule[:-1])

    def test_split_payment(self):
        interest, principal = split_payment(eur("12000"), eur("1066.19"), Decimal("0.01"))
        assert interest == eur("120.00")
        assert principal == eur("946.19")

        interest, principal = split_payment(eur("12000"), eur("50.00"), Decimal("0.01"))
        assert interest == eur("50.00")
        assert principal.is_zero()

    def test_add_months_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 11, 30), 3) == date(2024, 2, 29)
        assert add_months(date(2024, 12, 15), 1) == date(2025, 1, 15)


class TestLoanLifecycle:

    def setup_method(self):
        self.service = LedgerService.create(
            storage=InMemoryStorage(),
            rate_source=StaticRateSource(),
            config=LedgerConfig(loan_min_amount="1000")
        )
        self.loans = self.service.loans
        self.recorder = RecordingHandler()
        self.service.event_dispatcher.subscribe_all(self.recorder)

        self.account = self.service.accounts.create_account("borrower", Currency.EUR)
        self.service.deposit(self.account.id, "1000.00", "EUR")

    def _active_loan(self, amount="12000", term=12, rate=Decimal("12")):
        loan = self.loans.apply_for_loan("borrower", amount, term, purpose="car", annual_rate=rate)
        return self.loans.approve_loan(loan.id, approval_date=date(2024, 1, 15), approved_by="officer")

    def test_rate_quote(self):
        assert self.loans.quote_interest_rate(eur("60000"), 60) == Decimal("6.0")
        assert self.loans.quote_interest_rate(eur("2000"), 12) == Decimal("4.50")
        assert self.loans.quote_interest_rate(eur("20000"), 24) == Decimal("5.0")

    def test_application_limits(self):
        with pytest.raises(ValidationError):
            self.loans.apply_for_loan("borrower", "999.99", 12)
        with pytest.raises(ValidationError):
            self.loans.apply_for_loan("borrower", "5000", 3)
        with pytest.raises(ValidationError):
            self.loans.apply_for_loan("borrower", "5000", 12, annual_rate=Decimal("-1"))

    def test_apply_creates_pending_loan(self):
        loan = self.loans.apply_for_loan("borrower", "12000", 12, annual_rate=Decimal("12"))

        assert loan.status == LoanStatus.PENDING
        assert loan.monthly_payment == eur("1066.19")
        assert loan.remaining_balance == eur("12000")
        assert [l.id for l in self.loans.get_pending_loans()] == [loan.id]

    def test_approval_disburses_to_priority_account(self):
        loan = self._active_loan()

        assert loan.status == LoanStatus.ACTIVE
        assert loan.next_payment_date == date(2024, 2, 15)
        assert loan.disbursement_account_id == self.account.id
        assert self.service.get_balance(self.account.id) == eur("13000.00")

        rows = self.service.transaction_log.for_account(
            self.account.id, transaction_type=TransactionType.LOAN_DISBURSEMENT)
        assert len(rows) == 1
        assert len(self.recorder.of_type(DomainEvent.LOAN_APPROVED)) == 1
        assert self.loans.get_schedule(loan.id)[0].due_date == date(2024, 2, 15)

    def test_cannot_approve_twice_or_after_rejection(self):
        loan = self._active_loan()
        with pytest.raises(InvalidStateError):
            self.loans.approve_loan(loan.id)

        other = self.loans.apply_for_loan("borrower", "5000", 12)
        rejected = self.loans.reject_loan(other.id, "insufficient income")
        assert rejected.status == LoanStatus.REJECTED
        assert rejected.rejection_reason == "insufficient income"
        with pytest.raises(InvalidStateError):
            self.loans.approve_loan(other.id)

    def test_disbursement_account_must_belong_to_borrower(self):
        foreign = self.service.accounts.create_account("someone-else", Currency.EUR)
        loan = self.loans.apply_for_loan("borrower", "5000", 12)
        with pytest.raises(UnauthorizedError):
            self.loans.approve_loan(loan.id, disbursement_account_id=foreign.id)

    def test_paying_the_schedule_retires_the_loan(self):
        loan = self._active_loan()
        schedule = self.loans.get_schedule(loan.id)

        for entry in schedule:
            result = self.loans.apply_payment(loan.id, entry.payment, self.account.id,
                                              payment_date=entry.due_date)
            assert result.interest_portion == entry.interest_portion
            assert result.remaining_balance == entry.balance_after

        loan = self.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.PAID_OFF
        assert loan.remaining_balance.is_zero()
        assert loan.payments_made == 12
        assert loan.next_payment_date is None

        total = sum((e.payment.amount for e in schedule), Decimal("0"))
        assert loan.total_paid == eur(total)
        assert self.service.get_balance(self.account.id) == eur(Decimal("13000.00") - total)
        assert len(self.recorder.of_type(DomainEvent.LOAN_PAID_OFF)) == 1
        assert len(self.loans.get_payment_history(loan.id)) == 12

    def test_payment_advances_due_date(self):
        loan = self._active_loan()
        result = self.loans.apply_payment(loan.id, "1066.19", self.account.id)

        assert result.principal_portion == eur("946.19")
        assert result.interest_portion == eur("120.00")
        assert result.remaining_balance == eur("11053.81")
        assert result.next_payment_date == date(2024, 3, 15)
        assert result.account_balance == eur("11933.81")

    def test_overpayment_rejected_payoff_accepted(self):
        loan = self._active_loan()
        payoff = self.loans.payoff_amount(loan)
        assert payoff == eur("12120.00")

        with pytest.raises(OverpaymentNotAllowedError):
            self.loans.apply_payment(loan.id, payoff + eur("0.01"), self.account.id)
        assert self.service.get_balance(self.account.id) == eur("13000.00")

        result = self.loans.apply_payment(loan.id, payoff, self.account.id)
        assert result.status == LoanStatus.PAID_OFF
        assert result.remaining_balance.is_zero()

    def test_payment_on_inactive_loan(self):
        loan = self.loans.apply_for_loan("borrower", "5000", 12)
        with pytest.raises(InvalidStateError):
            self.loans.apply_payment(loan.id, "100.00", self.account.id)

    def test_retry_with_same_key(self):
        loan = self._active_loan()
        first = self.loans.apply_payment(loan.id, "500.00", self.account.id, idempotency_key="p-1")
        second = self.loans.apply_payment(loan.id, "500.00", self.account.id, idempotency_key="p-1")

        assert second.replayed
        assert second == first
        assert self.service.get_balance(self.account.id) == eur("12500.00")
        assert self.loans.get_loan(loan.id).payments_made == 1

    def test_caller_checks(self):
        loan = self._active_loan()
        with pytest.raises(UnauthorizedError):
            self.service.apply_loan_payment(loan.id, "100.00", self.account.id, caller_id="intruder")

    def test_failed_payment_emits_event(self):
        loan = self._active_loan()
        empty = self.service.accounts.create_account("borrower", Currency.EUR)

        with pytest.raises(InsufficientFundsError):
            self.loans.apply_payment(loan.id, "100.00", empty.id)

        failed = self.recorder.of_type(DomainEvent.LOAN_PAYMENT_FAILED)
        assert failed[-1].data["error"] == "insufficient_funds"
        assert self.loans.get_loan(loan.id).remaining_balance == eur("12000")

    def test_autopay_runs_once_per_due_date(self):
        loan = self._active_loan()
        self.loans.set_autopay(loan.id, self.account.id)

        summary = self.service.run_scheduled_jobs(date(2024, 2, 15))
        assert len(summary["loans"]["processed"]) == 1
        assert summary["loans"]["failed"] == []

        summary = self.service.run_scheduled_jobs(date(2024, 2, 15))
        assert summary["loans"]["processed"] == []

        loan = self.loans.get_loan(loan.id)
        assert loan.payments_made == 1
        assert loan.next_payment_date == date(2024, 3, 15)

    def test_loans_without_autopay_are_skipped(self):
        self._active_loan()
        summary = self.loans.process_due_payments(date(2024, 6, 1))
        assert summary == {"processed": [], "failed": []}

    def test_mark_defaulted(self):
        loan = self._active_loan()
        loan = self.loans.mark_defaulted(loan.id, "missed payments")
        assert loan.status == LoanStatus.DEFAULTED
        assert len(self.recorder.of_type(DomainEvent.LOAN_DEFAULTED)) == 1
        with pytest.raises(InvalidStateError):
            self.loans.apply_payment(loan.id, "100.00", self.account.id)

    def test_user_loans(self):
        self._active_loan()
        self.loans.apply_for_loan("borrower", "2000", 6)
        assert len(self.loans.get_user_loans("borrower")) == 2
