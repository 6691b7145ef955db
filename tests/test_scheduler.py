"""
Tests for the escalation scheduler

Loans from the make_loan fixture are disbursed today and due in 30 days;
each test replays the sweeps for chosen calendar days relative to that due date.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from microloans.dates import utc_now
from microloans.loans import LoanStatus
from microloans.notifications import TemplateKey
from microloans.rbac import ALL_PERMISSIONS
from microloans.scheduler import (
    JobId, JobResult, Scheduler, format_job_result, get_enabled_jobs, get_job_config
)


def _day(loan, offset):
    return loan.due_date + timedelta(days=offset)


class TestOverdueCheck:
    """Test moving past-due loans into the grace period"""

    def test_marks_overdue(self, scheduler, loan_manager, make_loan):
        loan = make_loan("disbursed")

        result = scheduler.run_overdue_check(today=_day(loan, 1))

        assert result.success
        assert result.processed_count == 1
        updated = loan_manager.require_loan(loan.id)
        assert updated.status == LoanStatus.OVERDUE
        assert updated.days_overdue == 1
        assert updated.grace_period_end_date == _day(loan, 3)

    def test_not_due_yet(self, scheduler, make_loan):
        loan = make_loan("disbursed")
        assert scheduler.run_overdue_check(today=loan.due_date).processed_count == 0

    def test_repeat_run_is_a_no_op(self, scheduler, make_loan):
        loan = make_loan("disbursed")
        scheduler.run_overdue_check(today=_day(loan, 1))
        assert scheduler.run_overdue_check(today=_day(loan, 1)).processed_count == 0


class TestPenaltyCalculation:
    """Test the one-time penalty"""

    def test_no_penalty_inside_grace(self, scheduler, loan_manager, make_loan):
        loan = make_loan("disbursed")
        scheduler.run_overdue_check(today=_day(loan, 1))

        result = scheduler.run_penalty_calculation(today=_day(loan, 3))

        assert result.processed_count == 0
        assert loan_manager.require_loan(loan.id).penalty_amount == Decimal("0.00")

    def test_penalty_applied_once(self, scheduler, loan_manager, make_loan, provider):
        loan = make_loan("disbursed")
        scheduler.run_overdue_check(today=_day(loan, 1))

        first = scheduler.run_penalty_calculation(today=_day(loan, 4))
        assert first.processed_count == 1
        penalised = loan_manager.require_loan(loan.id)
        assert penalised.status == LoanStatus.PENALTY_ACCRUING
        assert penalised.penalty_amount == Decimal("590.00")
        assert penalised.balance == Decimal("12390.00")
        assert provider.templates()[-1] == TemplateKey.PENALTY_APPLIED

        second = scheduler.run_penalty_calculation(today=_day(loan, 5))
        assert second.processed_count == 0
        assert second.details["refreshed"] == 1
        again = loan_manager.require_loan(loan.id)
        assert again.penalty_amount == Decimal("590.00")
        assert again.days_overdue == 5

    def test_skipped_overdue_sweep(self, scheduler, loan_manager, make_loan):
        loan = make_loan("disbursed")
        scheduler.run_penalty_calculation(today=_day(loan, 10))

        penalised = loan_manager.require_loan(loan.id)
        assert penalised.penalty_amount == Decimal("590.00")
        assert penalised.grace_period_end_date == _day(loan, 3)


class TestDefaultCheck:
    """Test defaulting loans after the penalty period"""

    def test_defaults_after_window(self, scheduler, loan_manager, customer_manager, make_loan):
        loan = make_loan("disbursed")
        scheduler.run_penalty_calculation(today=_day(loan, 4))

        assert scheduler.run_default_check(today=_day(loan, 33)).processed_count == 0
        result = scheduler.run_default_check(today=_day(loan, 34))

        assert result.processed_count == 1
        assert loan_manager.require_loan(loan.id).status == LoanStatus.DEFAULTED
        customer = customer_manager.require_customer(loan.customer_id)
        assert customer.defaulted_loans == 1
        assert customer.active_loans == 0

    def test_partial_payment_does_not_stop_escalation(self, scheduler, loan_manager, make_loan):
        loan = make_loan("disbursed")
        loan_manager.record_payment(loan.id, Decimal("5000"), "admin-1", ALL_PERMISSIONS)

        scheduler.run_overdue_check(today=_day(loan, 1))
        scheduler.run_penalty_calculation(today=_day(loan, 4))
        scheduler.run_default_check(today=_day(loan, 34))

        defaulted = loan_manager.require_loan(loan.id)
        assert defaulted.status == LoanStatus.DEFAULTED
        assert defaulted.penalty_amount == Decimal("590.00")
        assert defaulted.balance == Decimal("7390.00")


class TestReminders:
    """Test reminder jobs and their once-per-day guarantee"""

    def test_three_day_reminder(self, scheduler, make_loan, provider):
        loan = make_loan("disbursed")

        result = scheduler.run_payment_reminders(today=_day(loan, -3))

        assert result.processed_count == 1
        assert provider.sent_notifications[-1].subject == f"Your loan {loan.loan_number} is due in 3 days"
        assert scheduler.run_payment_reminders(today=_day(loan, -3)).processed_count == 0

    def test_failed_customer_lookup_leaves_slot_free(self, scheduler, customer_manager, make_loan, provider):
        loan = make_loan("disbursed")

        with patch.object(customer_manager, "get_customer", return_value=None):
            failed = scheduler.run_payment_reminders(today=_day(loan, -3))
        assert failed.processed_count == 0
        assert f"customer {loan.customer_id} not found" in failed.errors[0]

        retried = scheduler.run_payment_reminders(today=_day(loan, -3))
        assert retried.processed_count == 1
        assert provider.templates()[-1] == TemplateKey.PAYMENT_REMINDER_3_DAYS

    def test_pre_due_shares_the_daily_slot(self, scheduler, make_loan):
        loan = make_loan("disbursed")
        scheduler.run_payment_reminders(today=_day(loan, -2))
        assert scheduler.run_pre_due_reminders(today=_day(loan, -2)).processed_count == 0
        assert scheduler.run_pre_due_reminders(today=_day(loan, -1)).processed_count == 1

    def test_no_reminder_outside_window(self, scheduler, make_loan):
        loan = make_loan("disbursed")
        assert scheduler.run_payment_reminders(today=_day(loan, -5)).processed_count == 0

    def test_due_today_digest(self, scheduler, notifications, make_loan):
        loan = make_loan("disbursed")

        result = scheduler.run_payment_reminders(today=loan.due_date)

        assert result.processed_count == 1
        assert result.details["due_today"] == 1
        digest_id = result.details["digest_id"]
        assert digest_id is not None
        queued = [n for n in notifications.get_notifications() if n.id == digest_id][0]
        assert queued.recipient_address == "ops@lender.test"
        assert loan.loan_number in queued.body

    def test_repaid_loans_get_no_reminder(self, scheduler, loan_manager, make_loan):
        loan = make_loan("disbursed")
        loan_manager.record_payment(loan.id, Decimal("11800"), "admin-1", ALL_PERMISSIONS)
        assert scheduler.run_payment_reminders(today=_day(loan, -1)).processed_count == 0

    def test_urgent_reminders(self, scheduler, make_loan, provider):
        loan = make_loan("disbursed")
        assert scheduler.run_urgent_payment_reminders(today=loan.due_date).processed_count == 1
        assert provider.templates()[-1] == TemplateKey.PAYMENT_DUE_TODAY

        scheduler.run_overdue_check(today=_day(loan, 2))
        assert scheduler.run_urgent_payment_reminders(today=_day(loan, 2)).processed_count == 1
        assert provider.templates()[-1] == TemplateKey.DAILY_OVERDUE_REMINDER

    def test_grace_period_reminder(self, scheduler, make_loan, provider):
        loan = make_loan("disbursed")
        scheduler.run_overdue_check(today=_day(loan, 1))

        assert scheduler.run_grace_period_reminders(today=_day(loan, 2)).processed_count == 1
        assert provider.templates()[-1] == TemplateKey.OVERDUE_GRACE_PERIOD
        assert scheduler.run_grace_period_reminders(today=_day(loan, 4)).processed_count == 0


class TestSweepFailures:
    """Test per-item errors, listing failures and the deadline"""

    def test_item_failure_does_not_stop_sweep(self, scheduler, loan_manager, make_loan):
        broken = make_loan("disbursed")
        healthy = make_loan("disbursed")
        original = loan_manager.mark_overdue

        def flaky(loan_id, as_of=None):
            if loan_id == broken.id:
                raise RuntimeError("boom")
            return original(loan_id, as_of)

        with patch.object(loan_manager, "mark_overdue", side_effect=flaky):
            result = scheduler.run_overdue_check(today=_day(broken, 1))

        assert not result.success
        assert result.processed_count == 1
        assert result.errors == [f"Failed to process loan {broken.id}: boom"]
        assert loan_manager.require_loan(healthy.id).status == LoanStatus.OVERDUE

    def test_listing_failure(self, scheduler, loan_manager):
        with patch.object(loan_manager, "list_loans", side_effect=RuntimeError("db down")):
            result = scheduler.run_default_check()

        assert not result.success
        assert result.errors == ["Job failed: db down"]

    def test_deadline_returns_partial_result(self, storage, loan_manager, link_manager, notifications,
                                             dispatcher, make_loan):
        first = make_loan("disbursed")
        make_loan("disbursed")
        ticks = iter([0.0, 0.0, 6.0])
        scheduler = Scheduler(storage, loan_manager, link_manager, notifications, dispatcher,
                              deadline_seconds=5, clock=lambda: next(ticks, 6.0))

        result = scheduler.run_overdue_check(today=_day(first, 1))

        assert result.aborted
        assert not result.success
        assert result.processed_count == 1
        assert result.errors == ["Deadline of 5s reached; 1 item(s) not processed"]

    def test_zero_deadline_processes_nothing(self, storage, loan_manager, link_manager, notifications,
                                             dispatcher, make_loan):
        loan = make_loan("disbursed")
        scheduler = Scheduler(storage, loan_manager, link_manager, notifications, dispatcher,
                              deadline_seconds=0)

        result = scheduler.run_overdue_check(today=_day(loan, 1))

        assert result.aborted
        assert result.processed_count == 0
        assert loan_manager.require_loan(loan.id).status == LoanStatus.DISBURSED


class TestHousekeeping:
    """Test link and notification housekeeping jobs"""

    def test_system_cleanup(self, scheduler, link_manager):
        old = link_manager.create_link("admin-1", ALL_PERMISSIONS, hours_valid=1,
                                       now=utc_now() - timedelta(days=40))
        fresh = link_manager.create_link("admin-1", ALL_PERMISSIONS)

        result = scheduler.run_system_cleanup()

        assert result.processed_count == 1
        assert result.details == {"links_expired": 1, "links_deleted": 1}
        assert link_manager.get_link(old.id) is None
        assert link_manager.get_link(fresh.id) is not None

    def test_link_expiry_check(self, scheduler, link_manager):
        link_manager.create_link("admin-1", ALL_PERMISSIONS, hours_valid=1,
                                 now=utc_now() - timedelta(hours=2))
        assert scheduler.run_link_expiry_check().processed_count == 1

    def test_email_queue(self, scheduler, notifications, provider):
        notifications.queue_templated(
            TemplateKey.ADMIN_DUE_TODAY_DIGEST, "ops@lender.test",
            {"count": 1, "loan_list": "- LN-1", "due_date": "2024-03-01"}
        )

        result = scheduler.run_email_queue()

        assert result.success
        assert result.processed_count == 1
        assert provider.call_count == 1
        assert scheduler.run_email_queue().processed_count == 0

    def test_failed_email_retry(self, scheduler, notifications, provider):
        provider.should_succeed = False
        notifications.queue_templated(
            TemplateKey.ADMIN_DUE_TODAY_DIGEST, "ops@lender.test",
            {"count": 1, "loan_list": "- LN-1", "due_date": "2024-03-01"}
        )
        failed = scheduler.run_email_queue()
        assert not failed.success
        assert failed.errors == ["1 queued notification(s) failed to send"]

        provider.should_succeed = True
        retried = scheduler.run_failed_email_retry()
        assert retried.processed_count == 1
        assert retried.details["succeeded"] == 1


class TestJobRegistry:
    """Test job lookup, dispatch and run history"""

    def test_unknown_job(self, scheduler):
        result = scheduler.run_job("nope")
        assert not result.success
        assert result.errors == ["Unknown job ID: nope"]
        assert get_job_config("nope") is None
        assert scheduler.get_job_history("nope") is None

    def test_enabled_jobs(self):
        enabled = {job.id for job in get_enabled_jobs()}
        assert JobId.LINK_EXPIRY_CHECK not in enabled
        assert JobId.OVERDUE_CHECK in enabled
        assert len(enabled) == 10

    def test_trigger_records_history(self, scheduler):
        assert scheduler.get_job_history("overdue_check") is None

        scheduler.trigger_job("overdue_check", triggered_by="admin-1")
        scheduler.trigger_job("overdue_check")

        history = scheduler.get_job_history("overdue_check")
        assert history["job_name"] == "Overdue Check"
        assert history["run_count"] == 2
        assert history["status"] == "active"
        assert history["last_result"]["success"] is True

        statuses = {s["job_id"]: s for s in scheduler.get_all_job_statuses()}
        assert statuses["overdue_check"]["run_count"] == 2
        assert statuses["default_check"]["last_run"] is None
        assert not statuses["link_expiry_check"]["is_enabled"]

    @pytest.mark.parametrize("job_id", [job.value for job in JobId])
    def test_every_job_runs_on_empty_book(self, scheduler, job_id):
        assert scheduler.run_job(job_id).success

    def test_format_job_result(self):
        result = JobResult(success=False, processed_count=3, errors=["x"], duration_ms=12)
        assert format_job_result(result) == "[FAILED] Processed 3 items in 12ms (1 errors)"
        assert format_job_result(JobResult(processed_count=2)) == "[SUCCESS] Processed 2 items in 0ms"
