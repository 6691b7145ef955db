"""
Tests for the Loan Calculation Engine

Covers interest tiers, fees, the one-time penalty, escalation windows,
salary-based limits, repayment schedules, payment allocation, early
repayment and eligibility.
"""

from datetime import date
from decimal import Decimal

import pytest

from microloans.calculations import (
    RepaymentFrequency, allocate_payment, calculate_balance, calculate_default_date,
    calculate_early_repayment, calculate_grace_period_end_date, calculate_installment_count,
    calculate_loan, calculate_max_loan_from_salary, calculate_penalty, calculate_processing_fee,
    calculate_total_repayment, check_loan_eligibility, generate_loan_number,
    generate_repayment_schedule, is_in_grace_period, is_in_penalty_period, select_interest_rate,
    should_be_defaulted, validate_loan_amount, validate_loan_period,
)
from microloans.settings import LoanSettings


@pytest.fixture
def settings():
    return LoanSettings()


class TestCoreArithmetic:
    """Test interest, fee and repayment amounts"""

    def test_thirty_day_loan(self, settings):
        calc = calculate_loan(Decimal("10000"), date(2024, 1, 31), settings, today=date(2024, 1, 1))

        assert calc.loan_period_days == 30
        assert calc.interest_rate == Decimal("0.18")
        assert calc.interest_amount == Decimal("1800.00")
        assert calc.processing_fee == Decimal("500.00")
        assert calc.disbursement_amount == Decimal("9500.00")
        assert calc.total_repayment == Decimal("11800.00")
        assert calc.due_date == date(2024, 1, 31)

    def test_rate_tier_boundary(self, settings):
        assert select_interest_rate(15, settings) == Decimal("0.13")
        assert select_interest_rate(16, settings) == Decimal("0.18")

    def test_short_term_total(self, settings):
        assert calculate_total_repayment(Decimal("5000"), 10, settings) == Decimal("5650.00")

    def test_fee_is_not_part_of_repayment(self, settings):
        fee = calculate_processing_fee(Decimal("10000"), settings)
        total = calculate_total_repayment(Decimal("10000"), 30, settings)
        assert fee == Decimal("500.00")
        assert total == Decimal("11800.00")

    def test_rounding_per_step(self, settings):
        calc = calculate_loan(Decimal("1234.57"), date(2024, 1, 11), settings, today=date(2024, 1, 1))
        assert calc.interest_amount == Decimal("160.49")
        assert calc.total_repayment == Decimal("1395.06")

    def test_balance_never_negative(self):
        assert calculate_balance(Decimal("11800"), Decimal("0"), Decimal("12000")) == Decimal("0.00")
        assert calculate_balance(Decimal("11800"), Decimal("590"), Decimal("5000")) == Decimal("7390.00")


class TestPenalty:
    """Test the one-time penalty and escalation windows"""

    def test_no_penalty_inside_grace(self, settings):
        assert calculate_penalty(Decimal("11800"), 2, settings) == Decimal("0.00")
        assert calculate_penalty(Decimal("11800"), 3, settings) == Decimal("0.00")

    def test_flat_penalty_after_grace(self, settings):
        assert calculate_penalty(Decimal("11800"), 4, settings) == Decimal("590.00")
        # not a per-day accrual
        assert calculate_penalty(Decimal("11800"), 20, settings) == Decimal("590.00")

    def test_windows(self, settings):
        assert not is_in_grace_period(0, settings)
        assert is_in_grace_period(3, settings)
        assert is_in_penalty_period(4, settings)
        assert is_in_penalty_period(33, settings)
        assert not should_be_defaulted(33, settings)
        assert should_be_defaulted(34, settings)

    def test_window_dates(self, settings):
        due = date(2024, 1, 31)
        assert calculate_grace_period_end_date(due, settings) == date(2024, 2, 3)
        assert calculate_default_date(due, settings) == date(2024, 3, 4)


class TestValidation:
    """Test amount and period validation"""

    def test_salary_cap(self, settings):
        assert calculate_max_loan_from_salary(Decimal("20000"), settings) == Decimal("12000")
        result = validate_loan_amount(Decimal("15000"), Decimal("20000"), settings)
        assert not result.valid
        assert result.error == "Maximum loan amount is KES 12,000 (60% of your salary)"

    def test_cap_limited_by_absolute_maximum(self, settings):
        assert calculate_max_loan_from_salary(Decimal("1000000"), settings) == Decimal("100000")

    def test_minimum(self, settings):
        result = validate_loan_amount(Decimal("500"), Decimal("50000"), settings)
        assert result.error == "Minimum loan amount is KES 1,000"

    def test_valid_amount(self, settings):
        assert validate_loan_amount(Decimal("12000"), Decimal("20000"), settings)

    def test_period(self):
        today = date(2024, 1, 1)
        assert validate_loan_period(date(2024, 1, 1), today).error == "Salary date must be in the future"
        assert validate_loan_period(date(2024, 2, 1), today).error == "Loan period cannot exceed 30 days"
        result = validate_loan_period(date(2024, 1, 31), today)
        assert result.valid and result.days == 30


class TestSchedules:
    """Test repayment schedule generation"""

    def test_installment_counts(self):
        assert calculate_installment_count(30, RepaymentFrequency.WEEKLY) == 5
        assert calculate_installment_count(30, RepaymentFrequency.ONE_TIME) == 1

    def test_schedule_sums_to_total(self):
        schedule = generate_repayment_schedule(
            Decimal("10000"), Decimal("1800"), 30, RepaymentFrequency.WEEKLY, date(2024, 1, 1)
        )
        assert len(schedule.items) == 5
        assert sum(item.total_payment for item in schedule.items) == Decimal("11800.00")
        assert schedule.items[-1].remaining_balance == Decimal("0.00")
        assert schedule.items[0].due_date == date(2024, 1, 8)

    def test_one_time_schedule(self):
        schedule = generate_repayment_schedule(
            Decimal("10000"), Decimal("1800"), 30, RepaymentFrequency.ONE_TIME, date(2024, 1, 1)
        )
        assert len(schedule.items) == 1
        assert schedule.items[0].due_date == date(2024, 1, 31)
        assert schedule.items[0].total_payment == Decimal("11800.00")


class TestAllocationAndEarlyRepayment:
    def test_penalty_paid_first(self):
        allocation = allocate_payment(
            Decimal("1000"), Decimal("12390"), Decimal("10000"), Decimal("1800"), Decimal("590")
        )
        assert allocation.penalty_paid == Decimal("590.00")
        assert allocation.interest_paid == Decimal("410.00")
        assert allocation.principal_paid == Decimal("0.00")
        assert allocation.remaining_balance == Decimal("11390.00")

    def test_overpayment_unallocated(self):
        allocation = allocate_payment(Decimal("12000"), Decimal("11800"), Decimal("10000"), Decimal("1800"))
        assert allocation.unallocated == Decimal("200.00")
        assert allocation.is_fully_paid

    def test_early_repayment_rebate(self):
        quote = calculate_early_repayment(30, 10, Decimal("1800"), Decimal("11800"))
        assert quote.earned_interest == Decimal("600.00")
        assert quote.interest_rebate == Decimal("1200.00")
        assert quote.early_repayment_amount == Decimal("10600.00")


class TestEligibility:
    def test_defaulted_customer(self):
        result = check_loan_eligibility(Decimal("5000"), Decimal("30000"), 0, 1, 1)
        assert not result.eligible

    def test_active_loan_limit(self):
        result = check_loan_eligibility(Decimal("5000"), Decimal("30000"), 1, 1, 0)
        assert result.reason == "Maximum active loans (1) reached"

    def test_over_limit_still_eligible(self):
        result = check_loan_eligibility(Decimal("40000"), Decimal("30000"), 0, 1, 0)
        assert result.eligible
        assert result.max_eligible_amount == Decimal("30000")


def test_loan_number_format():
    number = generate_loan_number(date(2024, 1, 31))
    assert number.startswith("LN-20240131-")
    assert len(number) == len("LN-20240131-") + 5
