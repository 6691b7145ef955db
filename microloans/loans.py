"""
Loan Module

The loan lifecycle: application, approval or rejection, disbursement,
repayment, penalty waiver, escalation (overdue, penalty, default) and
write-off.

Every transition on a loan goes through one compare-and-save loop: load the
loan, check the guard, mutate, then write conditionally on the version that
was read. A concurrent writer makes the write fail and the whole step is
retried against fresh data, so two payments (or a payment and a scheduler
sweep) can never overwrite each other. Payment records and customer counter
updates commit in the same storage transaction as the loan. Notifications and
activity entries are returned as effects and performed only after commit.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any, Iterable
from enum import Enum
import uuid

from .audit import ActivityType
from .calculations import (
    RepaymentFrequency, RepaymentSchedule, EarlyRepayment,
    calculate_balance, calculate_early_repayment, calculate_grace_period_end_date,
    calculate_loan, calculate_loan_for_term, calculate_max_loan_from_salary,
    calculate_penalty, check_loan_eligibility, generate_loan_number,
    generate_repayment_schedule, is_in_grace_period, should_be_defaulted,
    validate_loan_amount, validate_loan_period,
)
from .currency import Amount, format_amount, format_kes, round_currency, to_decimal
from .customers import Customer, CustomerManager, LifecycleEvent
from .dates import calculate_days_overdue, days_between, to_date, to_datetime, today as current_date, utc_now
from .effects import ActivityEffect, Effect, EffectDispatcher, NotifyEffect
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .links import LinkManager
from .logging_config import get_logger, log_action
from .notifications import TemplateKey
from .payments import Payment, PaymentLedger, PaymentMethod
from .rbac import Permission, assert_permission
from .settings import LoanSettings, SettingsManager, resolve_loan_settings
from .storage import StorageInterface, StorageRecord

logger = get_logger("loans")

MIN_REASON_LENGTH = 5
WRITTEN_OFF = "written_off"
_ZERO = Decimal("0.00")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"                    # Application awaiting review
    APPROVED = "approved"                  # Terms fixed, awaiting disbursement
    REJECTED = "rejected"                  # Terminal
    DISBURSED = "disbursed"                # Funds released, nothing paid yet
    PARTIALLY_PAID = "partially_paid"      # Funds released, some payment landed
    OVERDUE = "overdue"                    # Past due, inside the grace period
    PENALTY_ACCRUING = "penalty_accruing"  # Past grace, one-time penalty applied
    DEFAULTED = "defaulted"                # Past the penalty window, or marked manually
    REPAID = "repaid"                      # Terminal
    CLOSED = "closed"                      # Terminal, written off


class DisbursementMethod(Enum):
    MPESA = "mpesa"
    BANK = "bank"


# Funds are out and the loan still counts towards customer.active_loans
ACTIVE_STATUSES = frozenset({
    LoanStatus.DISBURSED, LoanStatus.PARTIALLY_PAID, LoanStatus.OVERDUE, LoanStatus.PENALTY_ACCRUING,
})

# Applications and loans that block a new application
OPEN_STATUSES = ACTIVE_STATUSES | {LoanStatus.PENDING, LoanStatus.APPROVED}

TERMINAL_STATUSES = frozenset({LoanStatus.REJECTED, LoanStatus.REPAID, LoanStatus.CLOSED})


@dataclass(frozen=True)
class LoanCapabilities:
    """What a loan in a given status allows, plus its position in the workflow"""
    step: int
    step_name: str
    can_approve: bool = False
    can_reject: bool = False
    can_disburse: bool = False
    can_record_payment: bool = False
    can_waive_penalty: bool = False
    can_mark_defaulted: bool = False
    can_write_off: bool = False
    is_complete: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


def capabilities_for(status: LoanStatus, has_penalty: bool = False) -> LoanCapabilities:
    """The single authority on which actions each status permits"""
    if status == LoanStatus.PENDING:
        return LoanCapabilities(1, "Review & Approval", can_approve=True, can_reject=True)
    if status == LoanStatus.APPROVED:
        return LoanCapabilities(2, "Disburse Funds", can_disburse=True)
    if status in (LoanStatus.DISBURSED, LoanStatus.PARTIALLY_PAID):
        return LoanCapabilities(3, "Active Loan", can_record_payment=True,
                                can_waive_penalty=has_penalty, can_mark_defaulted=True)
    if status in (LoanStatus.OVERDUE, LoanStatus.PENALTY_ACCRUING):
        return LoanCapabilities(3, "Overdue", can_record_payment=True, can_waive_penalty=has_penalty)
    if status == LoanStatus.REPAID:
        return LoanCapabilities(4, "Completed", is_complete=True)
    if status == LoanStatus.DEFAULTED:
        # recovery payments are still accepted
        return LoanCapabilities(5, "Defaulted", can_record_payment=True,
                                can_waive_penalty=has_penalty, can_write_off=True, is_complete=True)
    if status == LoanStatus.REJECTED:
        return LoanCapabilities(0, "Rejected", is_complete=True)
    if status == LoanStatus.CLOSED:
        return LoanCapabilities(6, "Closed", is_complete=True)
    return LoanCapabilities(0, "Unknown")


@dataclass
class Loan(StorageRecord):
    """
    A salary-advance loan. balance always equals
    max(0, total_repayment + penalty_amount - amount_paid).
    """
    loan_number: str
    customer_id: str
    loan_amount: Decimal
    loan_period_days: int
    interest_rate: Decimal
    interest_amount: Decimal
    processing_fee: Decimal
    disbursement_amount: Decimal
    total_repayment: Decimal
    due_date: date
    status: LoanStatus = LoanStatus.PENDING
    amount_paid: Decimal = _ZERO
    balance: Decimal = _ZERO
    penalty_amount: Decimal = _ZERO
    penalty_waived: Decimal = _ZERO
    days_overdue: int = 0

    # Application details
    purpose: Optional[str] = None
    disbursement_method: DisbursementMethod = DisbursementMethod.MPESA
    mpesa_number: Optional[str] = None
    bank_name: Optional[str] = None
    bank_account_number: Optional[str] = None
    application_link_id: Optional[str] = None
    signature: Optional[str] = None
    notes: str = ""

    # Lifecycle dates and actors
    application_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejection_date: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    disbursement_date: Optional[datetime] = None
    disbursed_by: Optional[str] = None
    grace_period_end_date: Optional[date] = None
    penalty_start_date: Optional[date] = None
    default_date: Optional[datetime] = None
    repayment_date: Optional[datetime] = None
    closure_date: Optional[datetime] = None
    closure_reason: Optional[str] = None
    closed_by: Optional[str] = None
    written_off_amount: Optional[Decimal] = None

    # Policy captured at approval; governs the loan for its whole life
    settings_snapshot: Optional[Dict[str, Any]] = None
    version: int = 0

    @property
    def has_penalty(self) -> bool:
        return self.penalty_amount > 0

    @property
    def capabilities(self) -> LoanCapabilities:
        return capabilities_for(self.status, self.has_penalty)

    def recalculate_balance(self) -> None:
        self.balance = calculate_balance(self.total_repayment, self.penalty_amount, self.amount_paid)

    def add_note(self, text: str, when: Optional[datetime] = None) -> None:
        stamp = (when or utc_now()).strftime("%Y-%m-%d %H:%M")
        entry = f"[{stamp}] {text}"
        self.notes = f"{self.notes}\n\n{entry}" if self.notes else entry


@dataclass
class LoanApplication:
    """A borrower's submission, from a staff user or through an application link"""
    customer_id: str
    loan_amount: Decimal
    salary_date: date
    purpose: Optional[str] = None
    disbursement_method: DisbursementMethod = DisbursementMethod.MPESA
    mpesa_number: Optional[str] = None
    bank_name: Optional[str] = None
    bank_account_number: Optional[str] = None
    link_token: Optional[str] = None
    signature: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class TransitionPlan:
    """What one transition step wants committed alongside the loan, and after it"""
    effects: List[Effect] = field(default_factory=list)
    lifecycle_event: Optional[LifecycleEvent] = None
    lifecycle_amount: Decimal = _ZERO
    payment: Optional[Payment] = None
    skip: bool = False  # guard no longer applies; write nothing


@dataclass
class TransitionResult:
    loan: Loan
    payment: Optional[Payment] = None
    warnings: List[str] = field(default_factory=list)
    changed: bool = True


class LoanManager:
    """
    Loan state machine.

    User-facing transitions take (loan id, inputs, actor id, actor permissions),
    check the permission first, then the status guard, and return a
    TransitionResult. Scheduler-facing transitions take the sweep date and act
    as the system actor.
    """

    def __init__(
        self,
        storage: StorageInterface,
        settings_manager: SettingsManager,
        customer_manager: CustomerManager,
        payment_ledger: PaymentLedger,
        link_manager: LinkManager,
        dispatcher: EffectDispatcher,
        max_active_loans: int = 1,
        max_conflict_retries: int = 5,
        admin_email: str = ""
    ):
        self.storage = storage
        self.settings_manager = settings_manager
        self.customers = customer_manager
        self.payments = payment_ledger
        self.links = link_manager
        self.dispatcher = dispatcher
        self.max_active_loans = max_active_loans
        self.max_conflict_retries = max_conflict_retries
        self.admin_email = admin_email

        self.loans_table = "loans"

    # Application

    def create_loan(
        self,
        application: LoanApplication,
        actor_id: Optional[str],
        actor_permissions: Optional[Iterable[Permission]],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        today: Optional[date] = None
    ) -> TransitionResult:
        """
        Submit a loan application.

        A valid application link authorises the submission on its own;
        without one the actor needs loans.create.

        Raises:
            ForbiddenError: no link and no loans.create
            NotFoundError: unknown customer or link
            ValidationError: ineligible customer, bad salary date or amount
        """
        link = None
        if application.link_token:
            link = self.links.validate_token(application.link_token)
            if link.customer_id and link.customer_id != application.customer_id:
                raise ValidationError("This application link was issued to a different customer")
        else:
            assert_permission(actor_permissions, Permission.LOANS_CREATE)

        customer = self.customers.require_customer(application.customer_id)
        if not customer.is_active:
            raise ValidationError("Customer account is blocked")

        settings = self.settings_manager.get_current_settings()
        today = today or current_date()

        period = validate_loan_period(application.salary_date, today)
        if not period.valid:
            raise ValidationError(period.error, field="salary_date")

        amount = round_currency(application.loan_amount)
        amount_check = validate_loan_amount(amount, customer.net_salary, settings)
        if not amount_check.valid:
            raise ValidationError(amount_check.error, field="loan_amount")

        eligibility = check_loan_eligibility(
            amount,
            calculate_max_loan_from_salary(customer.net_salary, settings),
            len(self.list_loans(statuses=OPEN_STATUSES, customer_id=customer.id)),
            self.max_active_loans,
            customer.defaulted_loans
        )
        if not eligibility.eligible:
            raise ValidationError(eligibility.reason)

        self._validate_disbursement_details(application)

        calculation = calculate_loan(amount, application.salary_date, settings, today)
        now = utc_now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=self._unique_loan_number(today),
            customer_id=customer.id,
            loan_amount=calculation.principal,
            loan_period_days=calculation.loan_period_days,
            interest_rate=calculation.interest_rate,
            interest_amount=calculation.interest_amount,
            processing_fee=calculation.processing_fee,
            disbursement_amount=calculation.disbursement_amount,
            total_repayment=calculation.total_repayment,
            due_date=calculation.due_date,
            purpose=application.purpose,
            disbursement_method=application.disbursement_method,
            mpesa_number=application.mpesa_number,
            bank_name=application.bank_name,
            bank_account_number=application.bank_account_number,
            application_link_id=link.id if link else None,
            signature=application.signature,
            application_date=now
        )
        loan.recalculate_balance()
        if application.notes:
            loan.add_note(f"Application: {application.notes}", now)

        with self.storage.atomic():
            if link:
                self.links.mark_link_used(link.id, loan.id, ip_address, user_agent, now)
            if not self.storage.save_if_version(self.loans_table, loan.id, self._loan_to_dict(loan), None):
                raise ConflictError(f"Loan {loan.id} already exists")

        log_action(logger, "info", f"Loan {loan.loan_number} created", user_id=actor_id,
                   action="create_loan", resource=loan.id, loan_id=loan.id,
                   extra={"amount": str(loan.loan_amount), "via_link": bool(link)})

        effects: List[Effect] = [
            ActivityEffect(
                ActivityType.LOAN_CREATED,
                f"Loan application {loan.loan_number} for {format_kes(loan.loan_amount)}",
                "loan", loan.id,
                {"loan_number": loan.loan_number, "amount": loan.loan_amount,
                 "term_days": loan.loan_period_days, "via_link": bool(link)},
                user_id=actor_id, is_system=actor_id is None
            ),
            self._notify(TemplateKey.APPLICATION_RECEIVED, loan, customer),
        ]
        return TransitionResult(loan, warnings=self.dispatcher.dispatch(effects))

    # Staff transitions

    def approve_loan(self, loan_id: str, actor_id: str,
                     actor_permissions: Optional[Iterable[Permission]],
                     approved_amount: Optional[Amount] = None,
                     notes: Optional[str] = None) -> TransitionResult:
        """
        Approve a pending loan and snapshot the live settings onto it.

        When approved_amount differs from the requested amount the money
        fields are recomputed under the snapshot; term and due date stay.
        """
        assert_permission(actor_permissions, Permission.LOANS_APPROVE)
        settings = self.settings_manager.get_current_settings()

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if not loan.capabilities.can_approve:
                raise ForbiddenError(f"Cannot approve loan with status '{loan.status.value}'")

            now = utc_now()
            previous_amount = loan.loan_amount
            if approved_amount is not None and round_currency(approved_amount) != loan.loan_amount:
                customer = self.customers.require_customer(loan.customer_id)
                check = validate_loan_amount(approved_amount, customer.net_salary, settings)
                if not check.valid:
                    raise ValidationError(check.error, field="approved_amount")
                self._apply_calculation(
                    loan, calculate_loan_for_term(approved_amount, loan.loan_period_days, loan.due_date, settings)
                )

            loan.status = LoanStatus.APPROVED
            loan.settings_snapshot = settings.to_snapshot()
            loan.approval_date = now
            loan.approved_by = actor_id
            if notes:
                loan.add_note(f"Approved: {notes}", now)

            plan.effects.append(ActivityEffect(
                ActivityType.LOAN_APPROVED,
                f"Loan {loan.loan_number} approved for {format_kes(loan.loan_amount)}",
                "loan", loan.id,
                {"requested_amount": previous_amount, "approved_amount": loan.loan_amount,
                 "total_repayment": loan.total_repayment},
                user_id=actor_id
            ))
            plan.effects.append(self._notify(TemplateKey.LOAN_APPROVED, loan))

        return self._transition(loan_id, apply, "approve_loan", actor_id)

    def reject_loan(self, loan_id: str, reason: str, actor_id: str,
                    actor_permissions: Optional[Iterable[Permission]]) -> TransitionResult:
        assert_permission(actor_permissions, Permission.LOANS_REJECT)

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if not loan.capabilities.can_reject:
                raise ForbiddenError(f"Cannot reject loan with status '{loan.status.value}'")
            cleaned = self._require_reason(reason, "Rejection reason")

            now = utc_now()
            loan.status = LoanStatus.REJECTED
            loan.rejection_date = now
            loan.rejected_by = actor_id
            loan.rejection_reason = cleaned
            loan.add_note(f"Rejected: {cleaned}", now)

            plan.effects.append(ActivityEffect(
                ActivityType.LOAN_REJECTED,
                f"Loan {loan.loan_number} rejected",
                "loan", loan.id,
                {"reason": cleaned},
                user_id=actor_id
            ))
            plan.effects.append(self._notify(TemplateKey.APPLICATION_REJECTED, loan, reason=cleaned))

        return self._transition(loan_id, apply, "reject_loan", actor_id)

    def disburse_loan(self, loan_id: str, actor_id: str,
                      actor_permissions: Optional[Iterable[Permission]],
                      notes: Optional[str] = None) -> TransitionResult:
        assert_permission(actor_permissions, Permission.LOANS_DISBURSE)

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if not loan.capabilities.can_disburse:
                raise ForbiddenError(f"Cannot disburse loan with status '{loan.status.value}'")

            now = utc_now()
            loan.status = LoanStatus.DISBURSED
            loan.disbursement_date = now
            loan.disbursed_by = actor_id
            if notes:
                loan.add_note(f"Disbursed: {notes}", now)

            plan.lifecycle_event = LifecycleEvent.DISBURSED
            plan.lifecycle_amount = loan.loan_amount
            plan.effects.append(ActivityEffect(
                ActivityType.LOAN_DISBURSED,
                f"Loan {loan.loan_number} disbursed: {format_kes(loan.disbursement_amount)}",
                "loan", loan.id,
                {"disbursement_amount": loan.disbursement_amount,
                 "method": loan.disbursement_method.value},
                user_id=actor_id
            ))
            plan.effects.append(self._notify(TemplateKey.LOAN_DISBURSED, loan))
            if self.admin_email:
                plan.effects.append(self._notify(TemplateKey.ADMIN_LOAN_DISBURSED, loan,
                                                 recipient=self.admin_email))

        return self._transition(loan_id, apply, "disburse_loan", actor_id)

    def record_payment(self, loan_id: str, amount: Amount, actor_id: str,
                       actor_permissions: Optional[Iterable[Permission]],
                       payment_method: PaymentMethod = PaymentMethod.MPESA,
                       transaction_reference: Optional[str] = None,
                       notes: Optional[str] = None,
                       payment_date: Optional[date] = None) -> TransitionResult:
        """
        Record a repayment.

        The loan becomes repaid once the balance reaches zero. Otherwise
        disbursed/partially_paid loans become partially_paid, and overdue,
        penalty_accruing and defaulted loans keep their status.
        """
        assert_permission(actor_permissions, Permission.PAYMENTS_CREATE)
        amount = round_currency(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than 0", field="amount")

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if not loan.capabilities.can_record_payment:
                raise ForbiddenError(f"Cannot record payment for loan with status '{loan.status.value}'")
            if self.payments.reference_exists(transaction_reference):
                raise ConflictError(
                    f"Payment with reference {transaction_reference} has already been recorded"
                )

            now = utc_now()
            previous_status = loan.status
            previous_balance = loan.balance

            loan.amount_paid = round_currency(loan.amount_paid + amount)
            loan.recalculate_balance()

            note = f"Payment of {format_kes(amount)} via {payment_method.value}"
            if transaction_reference:
                note += f" (Ref: {transaction_reference})"
            loan.add_note(note, now)

            plan.payment = self.payments.build_payment(
                loan.id, loan.customer_id, amount, payment_method, payment_date,
                transaction_reference, actor_id, notes
            )
            plan.effects.append(ActivityEffect(
                ActivityType.PAYMENT_RECEIVED,
                f"Payment of {format_kes(amount)} received for loan {loan.loan_number}",
                "loan", loan.id,
                {"payment_id": plan.payment.id, "amount": amount,
                 "payment_method": payment_method.value,
                 "transaction_reference": transaction_reference,
                 "previous_balance": previous_balance, "new_balance": loan.balance},
                user_id=actor_id
            ))

            if previous_status == LoanStatus.DEFAULTED:
                # counted as defaulted already; only the money recovered moves
                plan.lifecycle_event = LifecycleEvent.RECOVERED
                plan.lifecycle_amount = amount

            if loan.balance <= 0:
                self._settle(loan, plan, previous_status, actor_id, now)
                plan.effects.append(self._notify(TemplateKey.LOAN_FULLY_PAID, loan, amount=amount))
            else:
                if previous_status in (LoanStatus.DISBURSED, LoanStatus.PARTIALLY_PAID):
                    loan.status = LoanStatus.PARTIALLY_PAID
                plan.effects.append(self._notify(TemplateKey.PAYMENT_RECEIVED, loan, amount=amount))

        return self._transition(loan_id, apply, "record_payment", actor_id)

    def waive_penalty(self, loan_id: str, waive_amount: Amount, reason: str, actor_id: str,
                      actor_permissions: Optional[Iterable[Permission]]) -> TransitionResult:
        assert_permission(actor_permissions, Permission.LOANS_UPDATE)
        waive_amount = round_currency(waive_amount)

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            # status guard before the penalty check
            if not capabilities_for(loan.status, has_penalty=True).can_waive_penalty:
                raise ForbiddenError(f"Cannot waive penalty for loan with status '{loan.status.value}'")
            if not loan.has_penalty:
                raise ValidationError("Loan has no penalty to waive")
            if waive_amount <= 0:
                raise ValidationError("Waive amount must be greater than 0", field="waive_amount")
            if waive_amount > loan.penalty_amount:
                raise ValidationError("Waive amount cannot exceed current penalty", field="waive_amount")
            cleaned = self._require_reason(reason, "Waiver reason")

            now = utc_now()
            previous_status = loan.status
            previous_penalty = loan.penalty_amount
            previous_balance = loan.balance

            loan.penalty_amount = round_currency(loan.penalty_amount - waive_amount)
            loan.penalty_waived = round_currency(loan.penalty_waived + waive_amount)
            loan.recalculate_balance()
            loan.add_note(f"Penalty of {format_kes(waive_amount)} waived: {cleaned}", now)

            plan.effects.append(ActivityEffect(
                ActivityType.PENALTY_WAIVED,
                f"Penalty of {format_kes(waive_amount)} waived on loan {loan.loan_number}",
                "loan", loan.id,
                {"waive_amount": waive_amount, "reason": cleaned,
                 "previous_penalty": previous_penalty, "new_penalty": loan.penalty_amount,
                 "previous_balance": previous_balance, "new_balance": loan.balance},
                user_id=actor_id
            ))
            plan.effects.append(self._notify(TemplateKey.PENALTY_WAIVER, loan, amount=waive_amount,
                                             reason=cleaned))
            if loan.balance <= 0:
                self._settle(loan, plan, previous_status, actor_id, now)

        return self._transition(loan_id, apply, "waive_penalty", actor_id)

    def mark_defaulted(self, loan_id: str, actor_id: str,
                       actor_permissions: Optional[Iterable[Permission]],
                       reason: Optional[str] = None) -> TransitionResult:
        assert_permission(actor_permissions, Permission.LOANS_UPDATE)

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if not loan.capabilities.can_mark_defaulted:
                raise ForbiddenError(f"Cannot mark loan with status '{loan.status.value}' as defaulted")

            now = utc_now()
            self._default(loan, plan, now, actor_id, reason or "Marked as defaulted manually")

        return self._transition(loan_id, apply, "mark_defaulted", actor_id)

    def write_off_loan(self, loan_id: str, reason: str, actor_id: str,
                       actor_permissions: Optional[Iterable[Permission]]) -> TransitionResult:
        """Close a defaulted loan, recognising the outstanding balance as a loss"""
        assert_permission(actor_permissions, Permission.LOANS_UPDATE)

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if not loan.capabilities.can_write_off:
                raise ForbiddenError(
                    f"Cannot write off loan with status '{loan.status.value}'. "
                    f"Only defaulted loans can be written off."
                )
            cleaned = self._require_reason(reason, "Write-off reason")

            now = utc_now()
            loan.status = LoanStatus.CLOSED
            loan.closure_date = now
            loan.closure_reason = WRITTEN_OFF
            loan.closed_by = actor_id
            loan.written_off_amount = loan.balance
            loan.add_note(f"Written off ({format_kes(loan.balance)}): {cleaned}", now)

            plan.effects.append(ActivityEffect(
                ActivityType.LOAN_WRITTEN_OFF,
                f"Loan {loan.loan_number} written off: {format_kes(loan.balance)}",
                "loan", loan.id,
                {"reason": cleaned, "written_off_amount": loan.balance},
                user_id=actor_id
            ))
            plan.effects.append(self._notify(TemplateKey.LOAN_CLOSED, loan, reason=cleaned))

        return self._transition(loan_id, apply, "write_off_loan", actor_id)

    # Scheduler transitions

    def mark_overdue(self, loan_id: str, as_of: Optional[date] = None) -> TransitionResult:
        """
        Refresh days overdue on an active past-due loan, fix its grace period
        end date once, and move it to overdue while it is inside the grace period.
        """
        as_of = as_of or current_date()

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if loan.status not in (LoanStatus.DISBURSED, LoanStatus.PARTIALLY_PAID):
                plan.skip = True
                return
            days = calculate_days_overdue(loan.due_date, as_of)
            if days <= 0:
                plan.skip = True
                return

            settings = self.settings_for(loan)
            changed = self._refresh_overdue_fields(loan, days, settings)

            if is_in_grace_period(days, settings):
                loan.status = LoanStatus.OVERDUE
                plan.effects.append(ActivityEffect(
                    ActivityType.LOAN_OVERDUE,
                    f"Loan {loan.loan_number} is {days} day(s) overdue",
                    "loan", loan.id,
                    {"days_overdue": days, "grace_period_end_date": loan.grace_period_end_date},
                    is_system=True
                ))
                plan.effects.append(self._notify(TemplateKey.OVERDUE_GRACE_PERIOD, loan))
            elif not changed:
                plan.skip = True

        return self._transition(loan_id, apply, "mark_overdue", None)

    def apply_penalty(self, loan_id: str, as_of: Optional[date] = None) -> TransitionResult:
        """
        Apply the one-time penalty to a loan past its grace period.

        penalty_start_date is the guard: once it is set the penalty is never
        computed or charged again, however often the sweep runs.
        """
        as_of = as_of or current_date()

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if loan.status not in (LoanStatus.DISBURSED, LoanStatus.PARTIALLY_PAID, LoanStatus.OVERDUE):
                plan.skip = True
                return
            settings = self.settings_for(loan)
            days = calculate_days_overdue(loan.due_date, as_of)
            if days <= settings.grace_period_days:
                plan.skip = True
                return

            self._refresh_overdue_fields(loan, days, settings)
            loan.status = LoanStatus.PENALTY_ACCRUING
            if loan.penalty_start_date is not None:
                return

            penalty = calculate_penalty(loan.total_repayment, days, settings)
            previous_balance = loan.balance
            loan.penalty_amount = round_currency(loan.penalty_amount + penalty)
            loan.penalty_start_date = as_of
            loan.recalculate_balance()

            plan.effects.append(ActivityEffect(
                ActivityType.PENALTY_APPLIED,
                f"Penalty of {format_kes(penalty)} applied to loan {loan.loan_number}",
                "loan", loan.id,
                {"penalty_amount": penalty, "days_overdue": days,
                 "previous_balance": previous_balance, "new_balance": loan.balance},
                is_system=True
            ))
            plan.effects.append(self._notify(TemplateKey.PENALTY_APPLIED, loan))

        return self._transition(loan_id, apply, "apply_penalty", None)

    def refresh_days_overdue(self, loan_id: str, as_of: Optional[date] = None) -> TransitionResult:
        """Update days_overdue only; the penalty amount is never recomputed here"""
        as_of = as_of or current_date()

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if loan.status not in ACTIVE_STATUSES:
                plan.skip = True
                return
            days = max(0, calculate_days_overdue(loan.due_date, as_of))
            if days == loan.days_overdue:
                plan.skip = True
                return
            loan.days_overdue = days

        return self._transition(loan_id, apply, "refresh_days_overdue", None)

    def default_for_nonpayment(self, loan_id: str, as_of: Optional[date] = None) -> TransitionResult:
        as_of = as_of or current_date()

        def apply(loan: Loan, plan: TransitionPlan) -> None:
            if loan.status != LoanStatus.PENALTY_ACCRUING:
                plan.skip = True
                return
            settings = self.settings_for(loan)
            days = calculate_days_overdue(loan.due_date, as_of)
            if not should_be_defaulted(days, settings):
                plan.skip = True
                return
            loan.days_overdue = days
            self._default(loan, plan, utc_now(), None,
                          f"No payment {days} days after the due date")

        return self._transition(loan_id, apply, "default_for_nonpayment", None)

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return self._loan_from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("Loan", loan_id)
        return loan

    def get_loan_by_number(self, loan_number: str) -> Optional[Loan]:
        found = self.storage.find(self.loans_table, {"loan_number": loan_number})
        return self._loan_from_dict(found[0]) if found else None

    def list_loans(self, statuses: Optional[Iterable[LoanStatus]] = None,
                   customer_id: Optional[str] = None,
                   due_on_or_before: Optional[date] = None) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if statuses is not None:
            filters["status__in"] = [s.value for s in statuses]
        if customer_id:
            filters["customer_id"] = customer_id
        if due_on_or_before:
            filters["due_date__lte"] = to_date(due_on_or_before)
        loans = [self._loan_from_dict(d) for d in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: (loan.due_date, loan.created_at))
        return loans

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        return self.list_loans(customer_id=customer_id)

    def get_workflow_status(self, loan_id: str) -> LoanCapabilities:
        return self.require_loan(loan_id).capabilities

    def get_repayment_schedule(self, loan_id: str,
                               frequency: RepaymentFrequency = RepaymentFrequency.ONE_TIME) -> RepaymentSchedule:
        loan = self.require_loan(loan_id)
        start = to_date(loan.disbursement_date or loan.application_date or loan.created_at)
        term = max(loan.loan_period_days, days_between(start, loan.due_date))
        return generate_repayment_schedule(loan.loan_amount, loan.interest_amount, term, frequency, start)

    def get_early_repayment_quote(self, loan_id: str, as_of: Optional[date] = None) -> EarlyRepayment:
        loan = self.require_loan(loan_id)
        if loan.status not in (LoanStatus.DISBURSED, LoanStatus.PARTIALLY_PAID):
            raise ValidationError(f"Early repayment is not available for loan with status '{loan.status.value}'")
        start = to_date(loan.disbursement_date)
        elapsed = days_between(start, as_of or current_date())
        return calculate_early_repayment(loan.loan_period_days, elapsed, loan.interest_amount, loan.balance)

    def loan_stats(self) -> Dict[str, Any]:
        """Portfolio counts by status and headline totals"""
        loans = self.list_loans()
        by_status = {status.value: 0 for status in LoanStatus}
        totals = {"disbursed": _ZERO, "collected": _ZERO, "outstanding": _ZERO,
                  "penalties": _ZERO, "written_off": _ZERO}

        for loan in loans:
            by_status[loan.status.value] += 1
            if loan.disbursement_date:
                totals["disbursed"] = round_currency(totals["disbursed"] + loan.disbursement_amount)
            totals["collected"] = round_currency(totals["collected"] + loan.amount_paid)
            totals["penalties"] = round_currency(totals["penalties"] + loan.penalty_amount)
            if loan.status in ACTIVE_STATUSES or loan.status == LoanStatus.DEFAULTED:
                totals["outstanding"] = round_currency(totals["outstanding"] + loan.balance)
            if loan.written_off_amount:
                totals["written_off"] = round_currency(totals["written_off"] + loan.written_off_amount)

        return {"total_loans": len(loans), "by_status": by_status, "totals": totals}

    # Notification payloads

    def notification_variables(self, loan: Loan, customer: Optional[Customer] = None,
                               **extra: Any) -> Dict[str, Any]:
        """Every placeholder the loan templates use, formatted for display"""
        settings = self.settings_for(loan)
        grace_end = loan.grace_period_end_date or calculate_grace_period_end_date(loan.due_date, settings)
        variables = {
            "customer_name": customer.name if customer else "",
            "loan_number": loan.loan_number,
            "loan_amount": format_amount(loan.loan_amount),
            "disbursement_amount": format_amount(loan.disbursement_amount),
            "total_repayment": format_amount(loan.total_repayment),
            "balance": format_amount(loan.balance),
            "amount_paid": format_amount(loan.amount_paid),
            "penalty_amount": format_amount(loan.penalty_amount),
            "potential_penalty": format_amount(calculate_penalty(
                loan.total_repayment, settings.grace_period_days + 1, settings)),
            "due_date": loan.due_date.isoformat(),
            "days_overdue": loan.days_overdue,
            "grace_period_end_date": grace_end.isoformat(),
            "amount": "",
            "reason": "",
        }
        for key, value in extra.items():
            variables[key] = format_amount(value) if isinstance(value, Decimal) else value
        return variables

    def _notify(self, template_key: TemplateKey, loan: Loan, customer: Optional[Customer] = None,
                recipient: Optional[str] = None, **extra: Any) -> NotifyEffect:
        customer = customer or self.customers.get_customer(loan.customer_id)
        return NotifyEffect(
            template_key,
            recipient or (customer.email if customer else ""),
            self.notification_variables(loan, customer, **extra),
            loan_id=loan.id
        )

    # Internal helpers

    def _transition(self, loan_id: str, apply: Callable[[Loan, TransitionPlan], None],
                    action: str, actor_id: Optional[str]) -> TransitionResult:
        """Load, guard, mutate and conditionally save, retrying on version conflicts"""
        for attempt in range(self.max_conflict_retries + 1):
            loan = self.require_loan(loan_id)
            expected_version = loan.version
            previous_status = loan.status

            plan = TransitionPlan()
            apply(loan, plan)
            if plan.skip:
                return TransitionResult(self.require_loan(loan_id), changed=False)

            loan.version = expected_version + 1
            loan.updated_at = utc_now()

            with self.storage.atomic():
                saved = self.storage.save_if_version(
                    self.loans_table, loan.id, self._loan_to_dict(loan), expected_version
                )
                if saved:
                    if plan.payment is not None:
                        self.payments.record_payment(plan.payment)
                    if plan.lifecycle_event is not None:
                        self.customers.apply_lifecycle_event(
                            loan.customer_id, plan.lifecycle_event, plan.lifecycle_amount
                        )

            if saved:
                break
            logger.debug(f"Version conflict on loan {loan_id} during {action} (attempt {attempt + 1})")
        else:
            logger.warning(f"Giving up {action} on loan {loan_id} after {self.max_conflict_retries + 1} attempts")
            raise ConflictError(f"Loan {loan_id} was modified concurrently; please retry")

        log_action(
            logger, "info",
            f"Loan {loan.loan_number} {previous_status.value} -> {loan.status.value}",
            user_id=actor_id or "system", action=action, resource=loan.id, loan_id=loan.id
        )
        warnings = self.dispatcher.dispatch(plan.effects)
        return TransitionResult(loan, plan.payment, warnings)

    def _settle(self, loan: Loan, plan: TransitionPlan, previous_status: LoanStatus,
                actor_id: Optional[str], now: datetime) -> None:
        """Mark a loan repaid once nothing is owed"""
        loan.status = LoanStatus.REPAID
        loan.repayment_date = now
        if previous_status != LoanStatus.DEFAULTED:
            plan.lifecycle_event = LifecycleEvent.REPAID
            plan.lifecycle_amount = loan.amount_paid
        plan.effects.append(ActivityEffect(
            ActivityType.LOAN_REPAID,
            f"Loan {loan.loan_number} fully repaid",
            "loan", loan.id,
            {"amount_paid": loan.amount_paid, "recovered_from_default": previous_status == LoanStatus.DEFAULTED},
            user_id=actor_id
        ))

    def _default(self, loan: Loan, plan: TransitionPlan, now: datetime,
                 actor_id: Optional[str], reason: str) -> None:
        loan.status = LoanStatus.DEFAULTED
        loan.default_date = now
        loan.add_note(f"Defaulted: {reason}", now)

        plan.lifecycle_event = LifecycleEvent.DEFAULTED
        plan.lifecycle_amount = loan.amount_paid
        plan.effects.append(ActivityEffect(
            ActivityType.LOAN_DEFAULTED,
            f"Loan {loan.loan_number} defaulted with {format_kes(loan.balance)} outstanding",
            "loan", loan.id,
            {"reason": reason, "balance": loan.balance, "days_overdue": loan.days_overdue},
            user_id=actor_id, is_system=actor_id is None
        ))
        plan.effects.append(self._notify(TemplateKey.LOAN_DEFAULTED, loan))

    def _refresh_overdue_fields(self, loan: Loan, days: int, settings: LoanSettings) -> bool:
        changed = False
        if loan.days_overdue != days:
            loan.days_overdue = days
            changed = True
        if loan.grace_period_end_date is None:
            loan.grace_period_end_date = calculate_grace_period_end_date(loan.due_date, settings)
            changed = True
        return changed

    def settings_for(self, loan: Loan) -> LoanSettings:
        """The loan's snapshot; live settings only before approval"""
        return resolve_loan_settings(loan.settings_snapshot, self.settings_manager.get_current_settings())

    def _apply_calculation(self, loan: Loan, calculation) -> None:
        loan.loan_amount = calculation.principal
        loan.interest_rate = calculation.interest_rate
        loan.interest_amount = calculation.interest_amount
        loan.processing_fee = calculation.processing_fee
        loan.disbursement_amount = calculation.disbursement_amount
        loan.total_repayment = calculation.total_repayment
        loan.recalculate_balance()

    def _require_reason(self, reason: Optional[str], label: str) -> str:
        cleaned = (reason or "").strip()
        if len(cleaned) < MIN_REASON_LENGTH:
            raise ValidationError(f"{label} must be at least {MIN_REASON_LENGTH} characters", field="reason")
        return cleaned

    def _validate_disbursement_details(self, application: LoanApplication) -> None:
        if application.disbursement_method == DisbursementMethod.MPESA:
            if not (application.mpesa_number or "").strip():
                raise ValidationError("M-Pesa number is required for M-Pesa disbursement",
                                      field="mpesa_number")
        elif not (application.bank_name or "").strip() or not (application.bank_account_number or "").strip():
            raise ValidationError("Bank name and account number are required for bank disbursement",
                                  field="bank_account_number")

    def _unique_loan_number(self, on_date: date) -> str:
        for _ in range(10):
            number = generate_loan_number(on_date)
            if not self.storage.find(self.loans_table, {"loan_number": number}):
                return number
        raise ConflictError("Could not allocate a unique loan number")

    def _loan_to_dict(self, loan: Loan) -> Dict[str, Any]:
        return loan.to_dict()

    def _loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        def get_decimal(key: str, default: str = "0.00") -> Decimal:
            value = data.get(key)
            return to_decimal(value if value not in (None, "") else default)

        def get_date(key: str) -> Optional[date]:
            return to_date(data[key]) if data.get(key) else None

        def get_datetime(key: str) -> Optional[datetime]:
            return to_datetime(data[key]) if data.get(key) else None

        return Loan(
            id=data["id"],
            created_at=to_datetime(data["created_at"]),
            updated_at=to_datetime(data["updated_at"]),
            loan_number=data["loan_number"],
            customer_id=data["customer_id"],
            loan_amount=get_decimal("loan_amount"),
            loan_period_days=data["loan_period_days"],
            interest_rate=get_decimal("interest_rate", "0"),
            interest_amount=get_decimal("interest_amount"),
            processing_fee=get_decimal("processing_fee"),
            disbursement_amount=get_decimal("disbursement_amount"),
            total_repayment=get_decimal("total_repayment"),
            due_date=to_date(data["due_date"]),
            status=LoanStatus(data["status"]),
            amount_paid=get_decimal("amount_paid"),
            balance=get_decimal("balance"),
            penalty_amount=get_decimal("penalty_amount"),
            penalty_waived=get_decimal("penalty_waived"),
            days_overdue=data.get("days_overdue", 0),
            purpose=data.get("purpose"),
            disbursement_method=DisbursementMethod(data.get("disbursement_method", DisbursementMethod.MPESA.value)),
            mpesa_number=data.get("mpesa_number"),
            bank_name=data.get("bank_name"),
            bank_account_number=data.get("bank_account_number"),
            application_link_id=data.get("application_link_id"),
            signature=data.get("signature"),
            notes=data.get("notes") or "",
            application_date=get_datetime("application_date"),
            approval_date=get_datetime("approval_date"),
            approved_by=data.get("approved_by"),
            rejection_date=get_datetime("rejection_date"),
            rejected_by=data.get("rejected_by"),
            rejection_reason=data.get("rejection_reason"),
            disbursement_date=get_datetime("disbursement_date"),
            disbursed_by=data.get("disbursed_by"),
            grace_period_end_date=get_date("grace_period_end_date"),
            penalty_start_date=get_date("penalty_start_date"),
            default_date=get_datetime("default_date"),
            repayment_date=get_datetime("repayment_date"),
            closure_date=get_datetime("closure_date"),
            closure_reason=data.get("closure_reason"),
            closed_by=data.get("closed_by"),
            written_off_amount=to_decimal(data["written_off_amount"]) if data.get("written_off_amount") else None,
            settings_snapshot=data.get("settings_snapshot"),
            version=data.get("version", 0)
        )
