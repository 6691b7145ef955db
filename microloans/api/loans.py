"""
Loan endpoints
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request, status

from .auth import Actor, BackOffice, get_current_actor, get_system
from .schemas import (
    ApproveLoanRequest, DisburseLoanRequest, LoanApplicationRequest, MarkDefaultedRequest,
    ReasonRequest, RecordPaymentRequest, WaivePenaltyRequest, loan_response, transition_response,
)
from ..calculations import RepaymentFrequency
from ..loans import LoanStatus
from ..rbac import Permission, assert_permission


router = APIRouter()


@router.get("")
def list_loans(
    status_filter: Optional[List[LoanStatus]] = Query(None, alias="status"),
    customer_id: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    """List loans, optionally filtered by status and customer"""
    assert_permission(actor.permissions, Permission.LOANS_VIEW)
    loans = system.loan_manager.list_loans(statuses=status_filter, customer_id=customer_id)
    return {"loans": [loan_response(loan) for loan in loans], "count": len(loans)}


@router.get("/stats")
def get_loan_stats(
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.LOANS_VIEW)
    return system.loan_manager.loan_stats()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: LoanApplicationRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    """Submit an application on a customer's behalf"""
    result = system.loan_manager.create_loan(
        request.to_application(), actor.user_id, actor.permissions
    )
    return transition_response(result, "Loan application submitted")


@router.post("/apply", status_code=status.HTTP_201_CREATED)
def apply_with_link(
    request: LoanApplicationRequest,
    http_request: Request,
    system: BackOffice = Depends(get_system)
):
    """Public submission through an application link; the link token authorises it"""
    result = system.loan_manager.create_loan(
        request.to_application(),
        None,
        None,
        ip_address=http_request.client.host if http_request.client else None,
        user_agent=http_request.headers.get("user-agent")
    )
    return {
        "loan_id": result.loan.id,
        "loan_number": result.loan.loan_number,
        "status": result.loan.status.value,
        "message": "Loan application submitted"
    }


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.LOANS_VIEW)
    return loan_response(system.loan_manager.require_loan(loan_id))


@router.get("/{loan_id}/workflow")
def get_workflow_status(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    """Step, label and allowed actions for the loan's current status"""
    assert_permission(actor.permissions, Permission.LOANS_VIEW)
    return system.loan_manager.get_workflow_status(loan_id).to_dict()


@router.get("/{loan_id}/schedule")
def get_repayment_schedule(
    loan_id: str,
    frequency: RepaymentFrequency = RepaymentFrequency.ONE_TIME,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.LOANS_VIEW)
    schedule = system.loan_manager.get_repayment_schedule(loan_id, frequency)
    return {
        "frequency": frequency.value,
        "total_principal": str(schedule.total_principal),
        "total_interest": str(schedule.total_interest),
        "total_payment": str(schedule.total_payment),
        "schedule": [
            {
                "installment_number": item.installment_number,
                "due_date": item.due_date.isoformat(),
                "principal_portion": str(item.principal_portion),
                "interest_portion": str(item.interest_portion),
                "total_payment": str(item.total_payment),
                "remaining_balance": str(item.remaining_balance)
            }
            for item in schedule.items
        ]
    }


@router.get("/{loan_id}/early-repayment")
def get_early_repayment_quote(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.LOANS_VIEW)
    quote = system.loan_manager.get_early_repayment_quote(loan_id)
    return {
        "earned_interest": str(quote.earned_interest),
        "interest_rebate": str(quote.interest_rebate),
        "early_repayment_amount": str(quote.early_repayment_amount)
    }


@router.get("/{loan_id}/payments")
def get_loan_payments(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.PAYMENTS_VIEW)
    system.loan_manager.require_loan(loan_id)
    payments = system.payment_ledger.get_loan_payments(loan_id)
    return {"payments": [p.to_dict() for p in payments], "count": len(payments)}


@router.get("/{loan_id}/activities")
def get_loan_activities(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.ACTIVITIES_VIEW)
    activities = system.activity_log.get_entity_activities("loan", loan_id)
    return {"activities": [a.to_dict() for a in activities]}


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    result = system.loan_manager.approve_loan(
        loan_id, actor.user_id, actor.permissions,
        approved_amount=request.approved_amount, notes=request.notes
    )
    return transition_response(result, "Loan approved")


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: ReasonRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    result = system.loan_manager.reject_loan(loan_id, request.reason, actor.user_id, actor.permissions)
    return transition_response(result, "Loan rejected")


@router.post("/{loan_id}/disburse")
def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    result = system.loan_manager.disburse_loan(loan_id, actor.user_id, actor.permissions, notes=request.notes)
    return transition_response(result, "Loan disbursed")


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def record_payment(
    loan_id: str,
    request: RecordPaymentRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    result = system.loan_manager.record_payment(
        loan_id,
        request.amount,
        actor.user_id,
        actor.permissions,
        payment_method=request.payment_method,
        transaction_reference=request.transaction_reference,
        notes=request.notes,
        payment_date=request.payment_date
    )
    return transition_response(result, "Payment recorded")


@router.post("/{loan_id}/waive-penalty")
def waive_penalty(
    loan_id: str,
    request: WaivePenaltyRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    result = system.loan_manager.waive_penalty(
        loan_id, request.waive_amount, request.reason, actor.user_id, actor.permissions
    )
    return transition_response(result, "Penalty waived")


@router.post("/{loan_id}/default")
def mark_defaulted(
    loan_id: str,
    request: MarkDefaultedRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    result = system.loan_manager.mark_defaulted(
        loan_id, actor.user_id, actor.permissions, reason=request.reason
    )
    return transition_response(result, "Loan marked as defaulted")


@router.post("/{loan_id}/write-off")
def write_off_loan(
    loan_id: str,
    request: ReasonRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    result = system.loan_manager.write_off_loan(loan_id, request.reason, actor.user_id, actor.permissions)
    return transition_response(result, "Loan written off")
