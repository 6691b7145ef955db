"""
Escalation Scheduler Module

Periodic sweeps that push loans through the calendar: payment reminders,
overdue marking, the one-time penalty, default, plus link housekeeping and
the notification queue. Jobs are triggered externally (a cron caller or the
/cron endpoint) and run as sequential sweeps.

Every job returns a JobResult. A failure on one item is recorded and the
sweep moves on; a failure to list the working set aborts the run. Each sweep
also honours a total deadline and stops early with a partial result.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .audit import ActivityType
from .calculations import is_in_grace_period
from .dates import add_days, calculate_days_overdue, days_until, to_datetime, today as current_date, utc_now
from .effects import ActivityEffect, EffectDispatcher, NotifyEffect
from .links import LinkManager
from .loans import Loan, LoanManager, LoanStatus
from .logging_config import get_logger, log_action
from .notifications import NotificationEngine, TemplateKey
from .storage import StorageInterface

logger = get_logger("scheduler")

REMINDER_OFFSETS = {
    3: TemplateKey.PAYMENT_REMINDER_3_DAYS,
    2: TemplateKey.PAYMENT_REMINDER_2_DAYS,
    1: TemplateKey.PAYMENT_REMINDER_1_DAY,
    0: TemplateKey.PAYMENT_DUE_TODAY,
}

_REMINDER_STATUSES = (LoanStatus.DISBURSED, LoanStatus.PARTIALLY_PAID)


class JobId(Enum):
    PAYMENT_REMINDER = "payment_reminder"
    OVERDUE_CHECK = "overdue_check"
    PENALTY_CALCULATION = "penalty_calculation"
    DEFAULT_CHECK = "default_check"
    LINK_EXPIRY_CHECK = "link_expiry_check"
    SYSTEM_CLEANUP = "system_cleanup"
    PRE_DUE_REMINDER = "pre_due_reminder"
    URGENT_PAYMENT_REMINDER = "urgent_payment_reminder"
    GRACE_PERIOD_REMINDER = "grace_period_reminder"
    EMAIL_QUEUE_PROCESS = "email_queue_process"
    FAILED_EMAIL_RETRY = "failed_email_retry"


@dataclass(frozen=True)
class JobConfig:
    id: JobId
    name: str
    schedule: str  # cron expression
    description: str
    enabled: bool = True


JOBS: Dict[JobId, JobConfig] = {job.id: job for job in [
    JobConfig(JobId.PAYMENT_REMINDER, "Payment Reminder", "0 9 * * *",
              "Send reminders for loans due in 3, 2, 1 and 0 days"),
    JobConfig(JobId.OVERDUE_CHECK, "Overdue Check", "0 8 * * *",
              "Mark past-due loans overdue and fix their grace period end date"),
    JobConfig(JobId.PENALTY_CALCULATION, "Penalty Calculation", "0 0 * * *",
              "Apply the one-time penalty once the grace period has ended"),
    JobConfig(JobId.DEFAULT_CHECK, "Default Check", "0 1 * * *",
              "Mark loans defaulted once the penalty period has ended"),
    JobConfig(JobId.LINK_EXPIRY_CHECK, "Link Expiry Check", "*/10 * * * *",
              "Mark expired application links", enabled=False),
    JobConfig(JobId.SYSTEM_CLEANUP, "System Cleanup", "0 2 * * 0",
              "Delete old expired application links"),
    JobConfig(JobId.PRE_DUE_REMINDER, "Pre-Due Reminder", "0 10 * * *",
              "Send reminders for loans due in 1 to 3 days"),
    JobConfig(JobId.URGENT_PAYMENT_REMINDER, "Urgent Payment Reminder", "0 12 * * *",
              "Remind borrowers whose loan is due today or inside the grace period"),
    JobConfig(JobId.GRACE_PERIOD_REMINDER, "Grace Period Reminder", "0 15 * * *",
              "Warn overdue borrowers of the coming penalty"),
    JobConfig(JobId.EMAIL_QUEUE_PROCESS, "Email Queue Processor", "*/5 * * * *",
              "Send queued notifications"),
    JobConfig(JobId.FAILED_EMAIL_RETRY, "Failed Email Retry", "0 * * * *",
              "Retry recently failed notifications"),
]}


def get_job_config(job_id: str) -> Optional[JobConfig]:
    try:
        return JOBS[JobId(job_id)]
    except ValueError:
        return None


def get_enabled_jobs() -> List[JobConfig]:
    return [job for job in JOBS.values() if job.enabled]


@dataclass
class JobResult:
    success: bool = True
    processed_count: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0
    details: Dict[str, Any] = field(default_factory=dict)
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "processed_count": self.processed_count,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "details": dict(self.details),
            "aborted": self.aborted,
        }


def format_job_result(result: JobResult) -> str:
    status = "SUCCESS" if result.success else "FAILED"
    error_summary = f" ({len(result.errors)} errors)" if result.errors else ""
    return f"[{status}] Processed {result.processed_count} items in {result.duration_ms}ms{error_summary}"


class _Sweep:
    """Bookkeeping for one job run: counts, errors and the deadline"""

    def __init__(self, deadline_seconds: Optional[float], clock: Callable[[], float]):
        self.result = JobResult()
        self.clock = clock
        self.started = clock()
        self.deadline_seconds = deadline_seconds

    def out_of_time(self) -> bool:
        if self.deadline_seconds is None:
            return False
        return self.clock() - self.started >= self.deadline_seconds

    def run(self, items: Iterable[Any], handle: Callable[[Any], bool],
            describe: Callable[[Any], str]) -> None:
        """Handle each item; handle returns True when the item counted as processed"""
        items = list(items)
        for index, item in enumerate(items):
            if self.out_of_time():
                remaining = len(items) - index
                self.result.aborted = True
                self.result.errors.append(
                    f"Deadline of {self.deadline_seconds}s reached; {remaining} item(s) not processed"
                )
                return
            try:
                if handle(item):
                    self.result.processed_count += 1
            except Exception as e:
                self.result.errors.append(f"Failed to process {describe(item)}: {e}")

    def finish(self) -> JobResult:
        self.result.duration_ms = int((self.clock() - self.started) * 1000)
        self.result.success = not self.result.errors and not self.result.aborted
        return self.result


class Scheduler:
    """
    Runs the escalation and housekeeping jobs.

    Handlers take an optional `today` (and `now` for timestamp-based jobs)
    so sweeps can be replayed for a given calendar day.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        link_manager: LinkManager,
        notifications: NotificationEngine,
        dispatcher: EffectDispatcher,
        admin_email: str = "",
        deadline_seconds: Optional[float] = 300.0,
        cleanup_retention_days: int = 30,
        failed_email_retry_hours: int = 24,
        clock: Callable[[], float] = time.monotonic
    ):
        self.storage = storage
        self.loans = loan_manager
        self.links = link_manager
        self.notifications = notifications
        self.dispatcher = dispatcher
        self.admin_email = admin_email
        self.deadline_seconds = deadline_seconds
        self.cleanup_retention_days = cleanup_retention_days
        self.failed_email_retry_hours = failed_email_retry_hours
        self.clock = clock

        self.job_runs_table = "job_runs"
        self.reminder_log_table = "reminder_log"

        self._handlers: Dict[JobId, Callable[..., JobResult]] = {
            JobId.PAYMENT_REMINDER: self.run_payment_reminders,
            JobId.OVERDUE_CHECK: self.run_overdue_check,
            JobId.PENALTY_CALCULATION: self.run_penalty_calculation,
            JobId.DEFAULT_CHECK: self.run_default_check,
            JobId.LINK_EXPIRY_CHECK: self.run_link_expiry_check,
            JobId.SYSTEM_CLEANUP: self.run_system_cleanup,
            JobId.PRE_DUE_REMINDER: self.run_pre_due_reminders,
            JobId.URGENT_PAYMENT_REMINDER: self.run_urgent_payment_reminders,
            JobId.GRACE_PERIOD_REMINDER: self.run_grace_period_reminders,
            JobId.EMAIL_QUEUE_PROCESS: self.run_email_queue,
            JobId.FAILED_EMAIL_RETRY: self.run_failed_email_retry,
        }

    # Dispatch

    def run_job(self, job_id: str, today: Optional[date] = None,
                now: Optional[datetime] = None) -> JobResult:
        """Run one job by its string id"""
        try:
            key = JobId(job_id)
        except ValueError:
            return JobResult(success=False, errors=[f"Unknown job ID: {job_id}"])

        handler = self._handlers[key]
        result = handler(today=today, now=now)
        log_action(
            logger, "info" if result.success else "warning",
            f"{JOBS[key].name}: {format_job_result(result)}",
            user_id="system", action="run_job", resource=key.value, job_id=key.value,
            extra={"aborted": result.aborted}
        )
        return result

    def trigger_job(self, job_id: str, triggered_by: Optional[str] = None,
                    today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        """Run a job and record the outcome in its run history"""
        result = self.run_job(job_id, today=today, now=now)
        if get_job_config(job_id) is None:
            return result

        existing = self.storage.load(self.job_runs_table, job_id) or {}
        ran_at = (now or utc_now()).isoformat()
        self.storage.save(self.job_runs_table, job_id, {
            "id": job_id,
            "job_name": JOBS[JobId(job_id)].name,
            "last_run": ran_at,
            "run_count": existing.get("run_count", 0) + 1,
            "status": "active" if result.success else "failed",
            "error_message": "; ".join(result.errors) if result.errors else None,
            "last_result": result.to_dict(),
            "triggered_by": triggered_by or "system",
            "updated_at": ran_at,
        })
        return result

    def get_job_history(self, job_id: str) -> Optional[Dict[str, Any]]:
        if get_job_config(job_id) is None:
            return None
        record = self.storage.load(self.job_runs_table, job_id)
        if record is None:
            return None
        return {
            "job_name": record["job_name"],
            "last_run": record["last_run"],
            "run_count": record.get("run_count", 0),
            "status": record["status"],
            "error_message": record.get("error_message"),
            "last_result": record.get("last_result"),
        }

    def get_all_job_statuses(self) -> List[Dict[str, Any]]:
        statuses = []
        for job in JOBS.values():
            history = self.get_job_history(job.id.value) or {}
            statuses.append({
                "job_id": job.id.value,
                "name": job.name,
                "schedule": job.schedule,
                "description": job.description,
                "is_enabled": job.enabled,
                "last_run": history.get("last_run"),
                "run_count": history.get("run_count", 0),
                "status": history.get("status"),
                "last_result": history.get("last_result"),
            })
        return statuses

    # Escalation jobs

    def run_overdue_check(self, today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        today = today or current_date()
        sweep = self._start()
        try:
            loans = self.loans.list_loans(statuses=_REMINDER_STATUSES,
                                          due_on_or_before=add_days(today, -1))
        except Exception as e:
            return self._failed(sweep, e)

        def handle(loan: Loan) -> bool:
            return self.loans.mark_overdue(loan.id, today).changed

        sweep.run(loans, handle, self._describe_loan)
        sweep.result.details["candidates"] = len(loans)
        self._log_summary(f"Overdue check: {sweep.result.processed_count} loan(s) processed")
        return sweep.finish()

    def run_penalty_calculation(self, today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        """
        Charge the one-time penalty on loans past their grace period.

        Loans already accruing only get their days overdue refreshed, so
        repeated runs never charge twice.
        """
        today = today or current_date()
        sweep = self._start()
        try:
            loans = self.loans.list_loans(
                statuses=(LoanStatus.DISBURSED, LoanStatus.PARTIALLY_PAID,
                          LoanStatus.OVERDUE, LoanStatus.PENALTY_ACCRUING),
                due_on_or_before=add_days(today, -1)
            )
        except Exception as e:
            return self._failed(sweep, e)

        refreshed = []

        def handle(loan: Loan) -> bool:
            if loan.status == LoanStatus.PENALTY_ACCRUING:
                if self.loans.refresh_days_overdue(loan.id, today).changed:
                    refreshed.append(loan.id)
                return False
            result = self.loans.apply_penalty(loan.id, today)
            return result.changed and result.loan.penalty_start_date == today

        sweep.run(loans, handle, self._describe_loan)
        sweep.result.details["refreshed"] = len(refreshed)
        self._log_summary(f"Penalty calculation: {sweep.result.processed_count} penalty(ies) applied")
        return sweep.finish()

    def run_default_check(self, today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        today = today or current_date()
        sweep = self._start()
        try:
            loans = self.loans.list_loans(statuses=(LoanStatus.PENALTY_ACCRUING,))
        except Exception as e:
            return self._failed(sweep, e)

        def handle(loan: Loan) -> bool:
            return self.loans.default_for_nonpayment(loan.id, today).changed

        sweep.run(loans, handle, self._describe_loan)
        self._log_summary(f"Default check: {sweep.result.processed_count} loan(s) marked as defaulted")
        return sweep.finish()

    # Reminder jobs

    def run_payment_reminders(self, today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        """Reminders 3, 2, 1 and 0 days before due, then an admin digest of loans due today"""
        today = today or current_date()
        sweep = self._start()
        try:
            loans = self.loans.list_loans(statuses=_REMINDER_STATUSES)
        except Exception as e:
            return self._failed(sweep, e)

        due_today: List[Loan] = []

        def handle(loan: Loan) -> bool:
            offset = days_until(loan.due_date, today)
            if offset == 0:
                due_today.append(loan)
            template_key = REMINDER_OFFSETS.get(offset)
            if template_key is None:
                return False
            return self._send_reminder(loan, template_key, today, f"{offset} day(s) until due")

        sweep.run(loans, handle, self._describe_loan)
        sweep.result.details["due_today"] = len(due_today)

        if due_today and self.admin_email and not sweep.result.aborted:
            sweep.result.details["digest_id"] = self._queue_due_today_digest(due_today, today)

        self._log_summary(f"Payment reminder job: {sweep.result.processed_count} reminder(s) sent")
        return sweep.finish()

    def run_pre_due_reminders(self, today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        today = today or current_date()
        sweep = self._start()
        try:
            loans = self.loans.list_loans(statuses=_REMINDER_STATUSES)
        except Exception as e:
            return self._failed(sweep, e)

        def handle(loan: Loan) -> bool:
            offset = days_until(loan.due_date, today)
            if not 1 <= offset <= 3:
                return False
            return self._send_reminder(loan, REMINDER_OFFSETS[offset], today, f"{offset} day(s) until due")

        sweep.run(loans, handle, self._describe_loan)
        self._log_summary(f"Pre-due reminders: {sweep.result.processed_count} reminder(s) sent")
        return sweep.finish()

    def run_urgent_payment_reminders(self, today: Optional[date] = None,
                                     now: Optional[datetime] = None) -> JobResult:
        """Loans due today, or overdue but still inside their grace period"""
        today = today or current_date()
        sweep = self._start()
        try:
            loans = self.loans.list_loans(statuses=_REMINDER_STATUSES + (LoanStatus.OVERDUE,),
                                          due_on_or_before=today)
        except Exception as e:
            return self._failed(sweep, e)

        def handle(loan: Loan) -> bool:
            days = calculate_days_overdue(loan.due_date, today)
            if days == 0:
                return self._send_reminder(loan, TemplateKey.PAYMENT_DUE_TODAY, today, "due today")
            if is_in_grace_period(days, self.loans.settings_for(loan)):
                return self._send_reminder(loan, TemplateKey.DAILY_OVERDUE_REMINDER, today,
                                           f"{days} day(s) overdue", days_overdue=days)
            return False

        sweep.run(loans, handle, self._describe_loan)
        self._log_summary(f"Urgent reminders: {sweep.result.processed_count} reminder(s) sent")
        return sweep.finish()

    def run_grace_period_reminders(self, today: Optional[date] = None,
                                   now: Optional[datetime] = None) -> JobResult:
        today = today or current_date()
        sweep = self._start()
        try:
            loans = self.loans.list_loans(statuses=(LoanStatus.OVERDUE,))
        except Exception as e:
            return self._failed(sweep, e)

        def handle(loan: Loan) -> bool:
            days = calculate_days_overdue(loan.due_date, today)
            settings = self.loans.settings_for(loan)
            if not is_in_grace_period(days, settings):
                return False
            remaining = settings.grace_period_days - days
            return self._send_reminder(loan, TemplateKey.OVERDUE_GRACE_PERIOD, today,
                                       f"{remaining} grace day(s) remaining", days_overdue=days)

        sweep.run(loans, handle, self._describe_loan)
        self._log_summary(f"Grace period reminders: {sweep.result.processed_count} reminder(s) sent")
        return sweep.finish()

    # Housekeeping jobs

    def run_link_expiry_check(self, today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        sweep = self._start()
        try:
            expired = self.links.expire_links(now)
        except Exception as e:
            return self._failed(sweep, e)
        sweep.result.processed_count = len(expired)
        if expired:
            self._log_summary(f"Link expiry check: {len(expired)} link(s) expired")
        return sweep.finish()

    def run_system_cleanup(self, today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        """Expire stale links first so the cleanup sees them, then purge old ones"""
        sweep = self._start()
        try:
            expired = self.links.expire_links(now)
            deleted = self.links.cleanup_expired_links(self.cleanup_retention_days, now)
        except Exception as e:
            return self._failed(sweep, e)
        sweep.result.processed_count = deleted
        sweep.result.details.update({"links_expired": len(expired), "links_deleted": deleted})
        self._log_summary(f"System cleanup completed: {deleted} item(s) cleaned")
        return sweep.finish()

    def run_email_queue(self, today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        sweep = self._start()
        try:
            stats = asyncio.run(self.notifications.process_queue())
        except Exception as e:
            return self._failed(sweep, e)
        sweep.result.processed_count = stats["sent"]
        sweep.result.details.update(stats)
        if stats["failed"]:
            sweep.result.errors.append(f"{stats['failed']} queued notification(s) failed to send")
        if stats["sent"]:
            self._log_summary(f"Email queue processed: {stats['sent']} notification(s) sent")
        return sweep.finish()

    def run_failed_email_retry(self, today: Optional[date] = None, now: Optional[datetime] = None) -> JobResult:
        """Retry failed notifications from the last failed_email_retry_hours only"""
        sweep = self._start()
        since = (to_datetime(now) if now else utc_now()) - timedelta(hours=self.failed_email_retry_hours)
        try:
            stats = asyncio.run(self.notifications.retry_failed(since=since))
        except Exception as e:
            return self._failed(sweep, e)
        sweep.result.processed_count = stats["succeeded"]
        sweep.result.details.update(stats)
        if stats["succeeded"]:
            self._log_summary(f"Failed email retry completed: {stats['succeeded']} notification(s) re-sent")
        return sweep.finish()

    # Helpers

    def _start(self) -> _Sweep:
        return _Sweep(self.deadline_seconds, self.clock)

    def _failed(self, sweep: _Sweep, error: Exception) -> JobResult:
        logger.error(f"Job failed: {error}")
        sweep.result.errors.append(f"Job failed: {error}")
        return sweep.finish()

    def _describe_loan(self, loan: Loan) -> str:
        return f"loan {loan.id}"

    def _send_reminder(self, loan: Loan, template_key: TemplateKey, on_date: date,
                       description: str, **extra: Any) -> bool:
        """
        Send one reminder for a loan, at most once per template per calendar day.

        The insert-only reminder log claims the (loan, template, day) slot
        before sending, so a second run on the same day finds it taken.
        """
        customer = self.loans.customers.get_customer(loan.customer_id)
        if customer is None:
            raise LookupError(f"customer {loan.customer_id} not found")

        slot_id = f"{loan.id}:{template_key.value}:{on_date.isoformat()}"
        claimed = self.storage.save_if_version(self.reminder_log_table, slot_id, {
            "id": slot_id,
            "loan_id": loan.id,
            "template_key": template_key.value,
            "reminder_date": on_date.isoformat(),
            "created_at": utc_now().isoformat(),
        }, None)
        if not claimed:
            return False

        variables = self.loans.notification_variables(loan, customer, **extra)
        warnings = self.dispatcher.dispatch([
            NotifyEffect(template_key, customer.email, variables, loan_id=loan.id),
            ActivityEffect(
                ActivityType.SYSTEM_ACTION,
                f"Reminder ({template_key.value}) sent for loan {loan.loan_number}: {description}",
                "loan", loan.id,
                {"template_key": template_key.value, "due_date": loan.due_date},
                is_system=True
            ),
        ])
        return not warnings

    def _queue_due_today_digest(self, loans: List[Loan], on_date: date) -> Optional[str]:
        lines = []
        for loan in loans:
            customer = self.loans.customers.get_customer(loan.customer_id)
            name = customer.name if customer else loan.customer_id
            lines.append(f"- {loan.loan_number}: {name}, KES {loan.balance:,.2f}")
        return self.notifications.queue_templated(
            TemplateKey.ADMIN_DUE_TODAY_DIGEST,
            self.admin_email,
            {"count": len(loans), "loan_list": "\n".join(lines), "due_date": on_date.isoformat()}
        )

    def _log_summary(self, description: str) -> None:
        self.dispatcher.dispatch([
            ActivityEffect(ActivityType.SYSTEM_ACTION, description, "system", "scheduler", is_system=True)
        ])
