"""
Loan Calculation Engine

Pure functions for interest, fees, penalty, balance and eligibility. Every
function takes the governing LoanSettings explicitly (live settings for new
applications, the loan's snapshot afterwards) and rounds each monetary result
to the cent as it is produced.

Expected business-rule failures come back as ValidationResult values rather
than exceptions.
"""

import math
import secrets
import string
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from typing import List, Optional

from .currency import Amount, round_currency, to_decimal, format_whole_kes
from .dates import DateLike, add_days, days_between, to_date, today as current_date
from .settings import LoanSettings

SHORT_TERM_MAX_DAYS = 15
MAX_LOAN_PERIOD_DAYS = 30

_ZERO = Decimal("0")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    days: Optional[int] = None

    def __bool__(self) -> bool:
        return self.valid


VALID = ValidationResult(True)


# Core arithmetic

def select_interest_rate(term_days: int, settings: LoanSettings) -> Decimal:
    """Short-term rate up to 15 days, long-term rate beyond. No interpolation."""
    if term_days <= SHORT_TERM_MAX_DAYS:
        return settings.interest_rate_short_term
    return settings.interest_rate_long_term


def calculate_interest(principal: Amount, term_days: int, settings: LoanSettings) -> Decimal:
    return round_currency(to_decimal(principal) * select_interest_rate(term_days, settings))


def calculate_processing_fee(principal: Amount, settings: LoanSettings) -> Decimal:
    return round_currency(to_decimal(principal) * settings.processing_fee_rate)


def calculate_disbursement_amount(principal: Amount, settings: LoanSettings) -> Decimal:
    """Principal less the processing fee, which is withheld upfront"""
    return round_currency(to_decimal(principal) - calculate_processing_fee(principal, settings))


def calculate_total_repayment(principal: Amount, term_days: int, settings: LoanSettings) -> Decimal:
    """Principal plus interest. The processing fee is never part of repayment."""
    return round_currency(to_decimal(principal) + calculate_interest(principal, term_days, settings))


def calculate_penalty(total_repayment: Amount, days_overdue: int, settings: LoanSettings) -> Decimal:
    """
    One-time flat penalty on the total repayment.

    Zero for any day count inside the grace window, so it only becomes positive
    from grace_period_days + 1 onwards. Not a per-day accrual.
    """
    if days_overdue <= settings.grace_period_days:
        return round_currency(_ZERO)
    return round_currency(to_decimal(total_repayment) * settings.penalty_rate)


def calculate_balance(total_repayment: Amount, penalty_amount: Amount, amount_paid: Amount) -> Decimal:
    """max(0, total_repayment + penalty - paid)"""
    balance = round_currency(
        to_decimal(total_repayment) + to_decimal(penalty_amount) - to_decimal(amount_paid)
    )
    return balance if balance > _ZERO else round_currency(_ZERO)


def calculate_max_loan_from_salary(net_salary: Amount, settings: LoanSettings) -> Decimal:
    salary_based = (to_decimal(net_salary) * settings.max_loan_percentage).to_integral_value(rounding=ROUND_FLOOR)
    return min(salary_based, settings.max_loan_amount)


# Escalation windows

def is_in_grace_period(days_overdue: int, settings: LoanSettings) -> bool:
    return 0 < days_overdue <= settings.grace_period_days


def is_in_penalty_period(days_overdue: int, settings: LoanSettings) -> bool:
    return settings.grace_period_days < days_overdue <= settings.grace_period_days + settings.penalty_period_days


def should_be_defaulted(days_overdue: int, settings: LoanSettings) -> bool:
    return days_overdue > settings.grace_period_days + settings.penalty_period_days


def calculate_grace_period_end_date(due_date: DateLike, settings: LoanSettings) -> date:
    return add_days(due_date, settings.grace_period_days)


def calculate_default_date(due_date: DateLike, settings: LoanSettings) -> date:
    return add_days(due_date, settings.grace_period_days + settings.penalty_period_days)


# Validation

def _percent_label(rate: Decimal) -> str:
    return f"{(rate * 100).normalize():f}"


def validate_loan_amount(amount: Amount, net_salary: Amount, settings: LoanSettings) -> ValidationResult:
    """Check the minimum, then the salary cap, then the absolute maximum"""
    amount = to_decimal(amount)

    if amount < settings.min_loan_amount:
        return ValidationResult(False, f"Minimum loan amount is {format_whole_kes(settings.min_loan_amount)}")

    max_from_salary = calculate_max_loan_from_salary(net_salary, settings)
    if amount > max_from_salary:
        return ValidationResult(
            False,
            f"Maximum loan amount is {format_whole_kes(max_from_salary)} "
            f"({_percent_label(settings.max_loan_percentage)}% of your salary)"
        )

    if amount > settings.max_loan_amount:
        return ValidationResult(False, f"Maximum loan amount is {format_whole_kes(settings.max_loan_amount)}")

    return VALID


def calculate_loan_period(salary_date: DateLike, today: Optional[date] = None) -> int:
    """Whole days from today until the salary date, never negative"""
    return max(0, days_between(today or current_date(), salary_date))


def validate_term_days(term_days: int) -> ValidationResult:
    if term_days <= 0:
        return ValidationResult(False, "Salary date must be in the future", term_days)
    if term_days > MAX_LOAN_PERIOD_DAYS:
        return ValidationResult(False, f"Loan period cannot exceed {MAX_LOAN_PERIOD_DAYS} days", term_days)
    return ValidationResult(True, days=term_days)


def validate_loan_period(salary_date: DateLike, today: Optional[date] = None) -> ValidationResult:
    return validate_term_days(calculate_loan_period(salary_date, today))


# Full calculation

@dataclass(frozen=True)
class LoanCalculation:
    principal: Decimal
    loan_period_days: int
    interest_rate: Decimal
    interest_amount: Decimal
    processing_fee: Decimal
    disbursement_amount: Decimal
    total_repayment: Decimal
    due_date: date


def calculate_loan_for_term(principal: Amount, term_days: int, due_date: DateLike,
                            settings: LoanSettings) -> LoanCalculation:
    principal = round_currency(principal)
    return LoanCalculation(
        principal=principal,
        loan_period_days=term_days,
        interest_rate=select_interest_rate(term_days, settings),
        interest_amount=calculate_interest(principal, term_days, settings),
        processing_fee=calculate_processing_fee(principal, settings),
        disbursement_amount=calculate_disbursement_amount(principal, settings),
        total_repayment=calculate_total_repayment(principal, term_days, settings),
        due_date=to_date(due_date)
    )


def calculate_loan(principal: Amount, salary_date: DateLike, settings: LoanSettings,
                   today: Optional[date] = None) -> LoanCalculation:
    """Full calculation for a loan that falls due on the borrower's salary date"""
    term_days = calculate_loan_period(salary_date, today)
    return calculate_loan_for_term(principal, term_days, salary_date, settings)


def generate_loan_number(on_date: Optional[date] = None) -> str:
    """Human-readable loan number: LN-YYYYMMDD-XXXXX"""
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(5))
    return f"LN-{(on_date or current_date()).strftime('%Y%m%d')}-{suffix}"


# Extended calculator: schedules, allocation, early repayment, eligibility

class RepaymentFrequency(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    ONE_TIME = "one_time"


_FREQUENCY_DAYS = {
    RepaymentFrequency.DAILY: 1,
    RepaymentFrequency.WEEKLY: 7,
    RepaymentFrequency.BIWEEKLY: 14,
    RepaymentFrequency.MONTHLY: 30,
}


def calculate_installment_count(term_days: int, frequency: RepaymentFrequency) -> int:
    if frequency == RepaymentFrequency.ONE_TIME:
        return 1
    return max(1, math.ceil(term_days / _FREQUENCY_DAYS[frequency]))


@dataclass(frozen=True)
class ScheduleItem:
    installment_number: int
    due_date: date
    principal_portion: Decimal
    interest_portion: Decimal
    total_payment: Decimal
    remaining_balance: Decimal


@dataclass
class RepaymentSchedule:
    items: List[ScheduleItem] = field(default_factory=list)
    total_principal: Decimal = _ZERO
    total_interest: Decimal = _ZERO
    total_payment: Decimal = _ZERO


def generate_repayment_schedule(principal: Amount, interest_amount: Amount, term_days: int,
                                frequency: RepaymentFrequency,
                                start_date: Optional[date] = None) -> RepaymentSchedule:
    """
    Split principal + interest into equal installments.

    The last installment absorbs any rounding difference so the schedule sums
    exactly to the total repayment.
    """
    principal = round_currency(principal)
    interest_amount = round_currency(interest_amount)
    total = round_currency(principal + interest_amount)
    start = start_date or current_date()
    count = calculate_installment_count(term_days, frequency)

    principal_each = round_currency(principal / count)
    interest_each = round_currency(interest_amount / count)
    payment_each = round_currency(total / count)

    schedule = RepaymentSchedule(total_principal=principal, total_interest=interest_amount, total_payment=total)
    remaining = total
    principal_left = principal
    interest_left = interest_amount

    for number in range(1, count + 1):
        is_last = number == count
        if frequency == RepaymentFrequency.ONE_TIME:
            due = add_days(start, term_days)
        else:
            due = add_days(start, _FREQUENCY_DAYS[frequency] * number)

        if is_last:
            principal_part = principal_left
            interest_part = interest_left
            payment = remaining
            remaining = round_currency(_ZERO)
        else:
            principal_part = principal_each
            interest_part = interest_each
            payment = payment_each
            remaining = round_currency(remaining - payment)
            principal_left = round_currency(principal_left - principal_part)
            interest_left = round_currency(interest_left - interest_part)

        schedule.items.append(ScheduleItem(
            installment_number=number,
            due_date=due,
            principal_portion=principal_part,
            interest_portion=interest_part,
            total_payment=payment,
            remaining_balance=remaining
        ))

    return schedule


@dataclass(frozen=True)
class PaymentAllocation:
    penalty_paid: Decimal
    fees_paid: Decimal
    interest_paid: Decimal
    principal_paid: Decimal
    unallocated: Decimal
    remaining_balance: Decimal

    @property
    def is_fully_paid(self) -> bool:
        return self.remaining_balance <= _ZERO


def allocate_payment(payment_amount: Amount, current_balance: Amount,
                     principal_outstanding: Amount, interest_outstanding: Amount,
                     penalty_outstanding: Amount = _ZERO,
                     fees_outstanding: Amount = _ZERO) -> PaymentAllocation:
    """Apply a payment to penalty, then fees, then interest, then principal"""
    remaining = round_currency(payment_amount)
    paid = []
    for outstanding in (penalty_outstanding, fees_outstanding, interest_outstanding, principal_outstanding):
        outstanding = round_currency(outstanding)
        portion = min(remaining, outstanding) if remaining > _ZERO and outstanding > _ZERO else _ZERO
        portion = round_currency(portion)
        remaining = round_currency(remaining - portion)
        paid.append(portion)

    total_paid = round_currency(sum(paid, _ZERO))
    return PaymentAllocation(
        penalty_paid=paid[0],
        fees_paid=paid[1],
        interest_paid=paid[2],
        principal_paid=paid[3],
        unallocated=remaining,
        remaining_balance=round_currency(to_decimal(current_balance) - total_paid)
    )


@dataclass(frozen=True)
class EarlyRepayment:
    earned_interest: Decimal
    interest_rebate: Decimal
    early_repayment_amount: Decimal


def calculate_early_repayment(term_days: int, days_elapsed: int, total_interest: Amount,
                              balance: Amount) -> EarlyRepayment:
    """Pro-rate interest over elapsed days and rebate the unearned part"""
    total_interest = round_currency(total_interest)
    elapsed = min(max(days_elapsed, 0), term_days) if term_days > 0 else 0
    fraction = Decimal(elapsed) / Decimal(term_days) if term_days > 0 else Decimal(1)
    earned = round_currency(total_interest * fraction)
    rebate = round_currency(total_interest - earned)
    amount = round_currency(to_decimal(balance) - rebate)
    return EarlyRepayment(
        earned_interest=earned,
        interest_rebate=rebate,
        early_repayment_amount=amount if amount > _ZERO else round_currency(_ZERO)
    )


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: Optional[str] = None
    max_eligible_amount: Optional[Decimal] = None


def check_loan_eligibility(requested_amount: Amount, max_loan_amount: Amount,
                           existing_loans: int, max_active_loans: int,
                           defaulted_loans: int) -> EligibilityResult:
    """
    Customer-history eligibility.

    A requested amount above the limit is still eligible; the reason then
    carries the maximum the customer can take.
    """
    max_loan_amount = to_decimal(max_loan_amount)
    if defaulted_loans > 0:
        return EligibilityResult(False, "Customer has defaulted loans on record")

    if existing_loans >= max_active_loans:
        return EligibilityResult(False, f"Maximum active loans ({max_active_loans}) reached")

    if to_decimal(requested_amount) > max_loan_amount:
        return EligibilityResult(
            True,
            f"Amount exceeds limit. Maximum eligible: {format_whole_kes(max_loan_amount)}",
            max_loan_amount
        )

    return EligibilityResult(True, max_eligible_amount=max_loan_amount)
