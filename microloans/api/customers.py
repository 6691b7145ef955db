"""
Customer endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .auth import Actor, BackOffice, get_current_actor, get_system
from .schemas import CreateCustomerRequest, loan_response
from ..customers import CustomerStatus
from ..rbac import Permission, assert_permission


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_customer(
    request: CreateCustomerRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    """Register a borrower"""
    customer = system.customer_manager.create_customer(
        name=request.name,
        email=request.email,
        phone=request.phone,
        national_id=request.national_id,
        net_salary=request.net_salary,
        actor_id=actor.user_id,
        actor_permissions=actor.permissions,
        employer_name=request.employer_name
    )
    return {"customer": customer.to_dict(), "message": "Customer created successfully"}


@router.get("")
def list_customers(
    status_filter: Optional[CustomerStatus] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.CUSTOMERS_VIEW)
    customers = system.customer_manager.list_customers(status_filter)
    return {"customers": [c.to_dict() for c in customers], "count": len(customers)}


@router.get("/{customer_id}")
def get_customer(
    customer_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.CUSTOMERS_VIEW)
    return system.customer_manager.require_customer(customer_id).to_dict()


@router.get("/{customer_id}/loans")
def get_customer_loans(
    customer_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.LOANS_VIEW)
    system.customer_manager.require_customer(customer_id)
    loans = system.loan_manager.get_customer_loans(customer_id)
    return {"loans": [loan_response(loan) for loan in loans], "count": len(loans)}


@router.post("/{customer_id}/block")
def block_customer(
    customer_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    customer = system.customer_manager.block_customer(customer_id, actor.user_id, actor.permissions)
    return {"customer": customer.to_dict(), "message": "Customer blocked"}


@router.post("/{customer_id}/activate")
def activate_customer(
    customer_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    customer = system.customer_manager.activate_customer(customer_id, actor.user_id, actor.permissions)
    return {"customer": customer.to_dict(), "message": "Customer activated"}
