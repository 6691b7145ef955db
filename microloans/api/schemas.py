"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..loans import DisbursementMethod, Loan, LoanApplication, TransitionResult
from ..payments import PaymentMethod


# Customer schemas
class CreateCustomerRequest(BaseModel):
    name: str
    email: str
    phone: str
    national_id: str
    net_salary: Decimal = Field(..., description="Monthly net salary in KES")
    employer_name: Optional[str] = None


# Loan schemas
class LoanApplicationRequest(BaseModel):
    customer_id: str
    loan_amount: Decimal
    salary_date: date = Field(..., description="Next salary date; the loan falls due on it")
    purpose: Optional[str] = None
    disbursement_method: DisbursementMethod = DisbursementMethod.MPESA
    mpesa_number: Optional[str] = None
    bank_name: Optional[str] = None
    bank_account_number: Optional[str] = None
    signature: Optional[str] = None
    notes: Optional[str] = None
    link_token: Optional[str] = None

    def to_application(self) -> LoanApplication:
        return LoanApplication(**self.model_dump())


class ApproveLoanRequest(BaseModel):
    approved_amount: Optional[Decimal] = None
    notes: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: str


class DisburseLoanRequest(BaseModel):
    notes: Optional[str] = None


class RecordPaymentRequest(BaseModel):
    amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.MPESA
    transaction_reference: Optional[str] = None
    payment_date: Optional[date] = None
    notes: Optional[str] = None


class WaivePenaltyRequest(BaseModel):
    waive_amount: Decimal
    reason: str


class MarkDefaultedRequest(BaseModel):
    reason: Optional[str] = None


# Link schemas
class CreateLinkRequest(BaseModel):
    customer_id: Optional[str] = None
    hours_valid: Optional[float] = Field(None, gt=0)


# Settings schemas
class UpdateSettingsRequest(BaseModel):
    interest_rate_short_term: Optional[Decimal] = None
    interest_rate_long_term: Optional[Decimal] = None
    processing_fee_rate: Optional[Decimal] = None
    penalty_rate: Optional[Decimal] = None
    grace_period_days: Optional[int] = None
    penalty_period_days: Optional[int] = None
    max_loan_percentage: Optional[Decimal] = None
    min_loan_amount: Optional[Decimal] = None
    max_loan_amount: Optional[Decimal] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


def loan_response(loan: Loan) -> Dict[str, Any]:
    data = loan.to_dict()
    data["capabilities"] = loan.capabilities.to_dict()
    return data


def transition_response(result: TransitionResult, message: str) -> Dict[str, Any]:
    response = {
        "loan": loan_response(result.loan),
        "warnings": result.warnings,
        "message": message,
    }
    if result.payment is not None:
        response["payment"] = result.payment.to_dict()
    return response
