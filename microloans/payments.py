"""
Payment Ledger Module

Append-only record of repayments received against loans. The loan's own
amount_paid is maintained by the loan state machine; the ledger is the audit
trail behind it.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Amount, round_currency, to_decimal
from .dates import utc_now, to_date, to_datetime
from .errors import ConflictError, ValidationError
from .storage import StorageInterface, StorageRecord


class PaymentMethod(Enum):
    MPESA = "mpesa"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    OTHER = "other"


@dataclass
class Payment(StorageRecord):
    """Immutable payment record"""
    loan_id: str
    customer_id: str
    amount: Decimal
    payment_method: PaymentMethod
    payment_date: date
    transaction_reference: Optional[str] = None
    recorded_by: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise ValidationError("Payment amount must be greater than 0", field="amount")


class PaymentLedger:
    """Stores payments; never updates or deletes them"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.payments_table = "payments"

    def build_payment(
        self,
        loan_id: str,
        customer_id: str,
        amount: Amount,
        payment_method: PaymentMethod = PaymentMethod.MPESA,
        payment_date: Optional[date] = None,
        transaction_reference: Optional[str] = None,
        recorded_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Payment:
        now = utc_now()
        return Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            customer_id=customer_id,
            amount=round_currency(amount),
            payment_method=payment_method,
            payment_date=payment_date or now.date(),
            transaction_reference=(transaction_reference or "").strip() or None,
            recorded_by=recorded_by,
            notes=notes
        )

    def reference_exists(self, transaction_reference: Optional[str]) -> bool:
        if not transaction_reference:
            return False
        return bool(self.storage.find(self.payments_table, {"transaction_reference": transaction_reference}))

    def record_payment(self, payment: Payment) -> Payment:
        """
        Append a payment.

        Raises:
            ConflictError: the transaction reference was already recorded, or the
                payment id already exists
        """
        if self.reference_exists(payment.transaction_reference):
            raise ConflictError(
                f"Payment with reference {payment.transaction_reference} has already been recorded"
            )
        if not self.storage.save_if_version(self.payments_table, payment.id, payment.to_dict(), None):
            raise ConflictError(f"Payment {payment.id} already exists")
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        return self._payment_from_dict(data) if data else None

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        return self._find({"loan_id": loan_id})

    def get_customer_payments(self, customer_id: str) -> List[Payment]:
        return self._find({"customer_id": customer_id})

    def total_for_loan(self, loan_id: str) -> Decimal:
        return round_currency(sum((p.amount for p in self.get_loan_payments(loan_id)), Decimal("0")))

    def payment_stats(self, start_date: Optional[date] = None,
                      end_date: Optional[date] = None) -> Dict[str, Any]:
        """Count and sum payments, optionally within an inclusive date range"""
        filters: Dict[str, Any] = {}
        if start_date:
            filters["payment_date__gte"] = to_date(start_date)
        if end_date:
            filters["payment_date__lte"] = to_date(end_date)
        payments = self._find(filters)

        by_method: Dict[str, Decimal] = {}
        for payment in payments:
            key = payment.payment_method.value
            by_method[key] = round_currency(by_method.get(key, Decimal("0")) + payment.amount)

        total = round_currency(sum((p.amount for p in payments), Decimal("0")))
        return {
            "count": len(payments),
            "total_amount": total,
            "average_amount": round_currency(total / len(payments)) if payments else Decimal("0.00"),
            "by_method": by_method
        }

    def _find(self, filters: Dict[str, Any]) -> List[Payment]:
        payments = [self._payment_from_dict(d) for d in self.storage.find(self.payments_table, filters)]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def _payment_from_dict(self, data: Dict[str, Any]) -> Payment:
        return Payment(
            id=data["id"],
            created_at=to_datetime(data["created_at"]),
            updated_at=to_datetime(data["updated_at"]),
            loan_id=data["loan_id"],
            customer_id=data["customer_id"],
            amount=to_decimal(data["amount"]),
            payment_method=PaymentMethod(data["payment_method"]),
            payment_date=to_date(data["payment_date"]),
            transaction_reference=data.get("transaction_reference"),
            recorded_by=data.get("recorded_by"),
            notes=data.get("notes")
        )
