"""
Customer Management Module

Borrower profiles and their loan counters. The counters (total, active and
defaulted loans, amounts borrowed and repaid) are derived from loan lifecycle
events and change only through apply_lifecycle_event, which loan transitions
call exactly once per status change that affects them.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum
import re
import uuid

from .audit import ActivityLog, ActivityType
from .currency import Amount, round_currency, to_decimal
from .dates import utc_now, to_datetime
from .errors import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .rbac import Permission, assert_permission
from .storage import StorageInterface, StorageRecord

logger = get_logger("customers")

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


class CustomerStatus(Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"


class LifecycleEvent(Enum):
    """Loan status changes that move customer counters"""
    DISBURSED = "disbursed"    # +total_loans, +active_loans, +total_borrowed
    REPAID = "repaid"          # -active_loans, +total_repaid
    DEFAULTED = "defaulted"    # -active_loans, +defaulted_loans, +total_repaid paid before default
    RECOVERED = "recovered"    # +total_repaid for a payment on a defaulted loan


@dataclass
class Customer(StorageRecord):
    """
    Borrower profile with aggregate loan counters
    """
    name: str
    email: str
    phone: str
    national_id: str
    net_salary: Decimal
    employer_name: Optional[str] = None
    status: CustomerStatus = CustomerStatus.ACTIVE
    total_loans: int = 0
    active_loans: int = 0
    defaulted_loans: int = 0
    total_borrowed: Decimal = Decimal("0.00")
    total_repaid: Decimal = Decimal("0.00")
    version: int = 0

    def __post_init__(self):
        if not re.match(EMAIL_PATTERN, self.email):
            raise ValidationError("Invalid email format", field="email")
        if self.net_salary < 0:
            raise ValidationError("Net salary cannot be negative", field="net_salary")

    @property
    def is_active(self) -> bool:
        return self.status == CustomerStatus.ACTIVE


def apply_lifecycle_counters(customer: Customer, event: LifecycleEvent, amount: Amount) -> None:
    """Mutate the counters for one lifecycle event; active_loans never drops below 0"""
    amount = round_currency(amount)
    if event == LifecycleEvent.DISBURSED:
        customer.total_loans += 1
        customer.active_loans += 1
        customer.total_borrowed = round_currency(customer.total_borrowed + amount)
    elif event == LifecycleEvent.REPAID:
        customer.active_loans = max(0, customer.active_loans - 1)
        customer.total_repaid = round_currency(customer.total_repaid + amount)
    elif event == LifecycleEvent.DEFAULTED:
        customer.active_loans = max(0, customer.active_loans - 1)
        customer.defaulted_loans += 1
        customer.total_repaid = round_currency(customer.total_repaid + amount)
    elif event == LifecycleEvent.RECOVERED:
        customer.total_repaid = round_currency(customer.total_repaid + amount)


class CustomerManager:
    """Creates customers and owns their counters"""

    def __init__(self, storage: StorageInterface, activity_log: ActivityLog,
                 max_conflict_retries: int = 5):
        self.storage = storage
        self.activity_log = activity_log
        self.max_conflict_retries = max_conflict_retries
        self.customers_table = "customers"

    def create_customer(
        self,
        name: str,
        email: str,
        phone: str,
        national_id: str,
        net_salary: Amount,
        actor_id: str,
        actor_permissions: Optional[Iterable[Permission]],
        employer_name: Optional[str] = None
    ) -> Customer:
        """
        Register a borrower.

        Raises:
            ForbiddenError: actor lacks customers.create
            ValidationError: malformed fields
            ConflictError: email or national ID already registered
        """
        assert_permission(actor_permissions, Permission.CUSTOMERS_CREATE)

        if not name or not name.strip():
            raise ValidationError("Customer name is required", field="name")
        if not national_id or not national_id.strip():
            raise ValidationError("National ID is required", field="national_id")

        email = email.strip().lower()
        if self.storage.find(self.customers_table, {"email": email}):
            raise ConflictError(f"A customer with email {email} already exists")
        if self.storage.find(self.customers_table, {"national_id": national_id.strip()}):
            raise ConflictError(f"A customer with national ID {national_id} already exists")

        now = utc_now()
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            email=email,
            phone=phone.strip(),
            national_id=national_id.strip(),
            net_salary=round_currency(net_salary),
            employer_name=employer_name
        )
        self.storage.save(self.customers_table, customer.id, self._customer_to_dict(customer))

        self.activity_log.log_activity(
            ActivityType.CUSTOMER_CREATED,
            f"Customer {customer.name} created",
            "customer",
            customer.id,
            {"email": customer.email},
            user_id=actor_id
        )
        log_action(logger, "info", "Customer created", user_id=actor_id,
                   action="create_customer", resource=customer.id)
        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.customers_table, customer_id)
        return self._customer_from_dict(data) if data else None

    def require_customer(self, customer_id: str) -> Customer:
        customer = self.get_customer(customer_id)
        if customer is None:
            raise NotFoundError("Customer", customer_id)
        return customer

    def list_customers(self, status: Optional[CustomerStatus] = None) -> List[Customer]:
        filters = {"status": status.value} if status else {}
        customers = [self._customer_from_dict(d) for d in self.storage.find(self.customers_table, filters)]
        customers.sort(key=lambda c: c.created_at)
        return customers

    def block_customer(self, customer_id: str, actor_id: str,
                       actor_permissions: Optional[Iterable[Permission]]) -> Customer:
        assert_permission(actor_permissions, Permission.CUSTOMERS_CREATE)
        return self._update(customer_id, lambda c: setattr(c, "status", CustomerStatus.BLOCKED))

    def activate_customer(self, customer_id: str, actor_id: str,
                          actor_permissions: Optional[Iterable[Permission]]) -> Customer:
        assert_permission(actor_permissions, Permission.CUSTOMERS_CREATE)
        return self._update(customer_id, lambda c: setattr(c, "status", CustomerStatus.ACTIVE))

    def apply_lifecycle_event(self, customer_id: str, event: LifecycleEvent,
                              amount: Amount = Decimal("0")) -> Customer:
        """
        Move the customer's counters for one loan lifecycle event.

        Versioned like loans: concurrent updates to the same customer reload
        and re-apply instead of overwriting each other.
        """
        customer = self._update(customer_id, lambda c: apply_lifecycle_counters(c, event, amount))
        logger.debug(f"Customer {customer_id} counters updated for {event.value}")
        return customer

    def _update(self, customer_id: str, mutate) -> Customer:
        for _ in range(self.max_conflict_retries + 1):
            customer = self.require_customer(customer_id)
            expected = customer.version
            mutate(customer)
            customer.version = expected + 1
            customer.updated_at = utc_now()
            if self.storage.save_if_version(self.customers_table, customer.id,
                                            self._customer_to_dict(customer), expected):
                return customer
        raise ConflictError(f"Customer {customer_id} was modified concurrently; please retry")

    def _customer_to_dict(self, customer: Customer) -> Dict[str, Any]:
        return customer.to_dict()

    def _customer_from_dict(self, data: Dict[str, Any]) -> Customer:
        return Customer(
            id=data["id"],
            created_at=to_datetime(data["created_at"]),
            updated_at=to_datetime(data["updated_at"]),
            name=data["name"],
            email=data["email"],
            phone=data.get("phone", ""),
            national_id=data.get("national_id", ""),
            net_salary=to_decimal(data.get("net_salary", "0")),
            employer_name=data.get("employer_name"),
            status=CustomerStatus(data.get("status", CustomerStatus.ACTIVE.value)),
            total_loans=data.get("total_loans", 0),
            active_loans=data.get("active_loans", 0),
            defaulted_loans=data.get("defaulted_loans", 0),
            total_borrowed=to_decimal(data.get("total_borrowed", "0.00")),
            total_repaid=to_decimal(data.get("total_repaid", "0.00")),
            version=data.get("version", 0)
        )
