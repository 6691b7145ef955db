"""
Shared fixtures: an in-memory back office wired the way the API wires it,
with a recording email provider in place of the HTTP email API.
"""

from datetime import timedelta
from decimal import Decimal
from itertools import count

import pytest

from microloans.audit import ActivityLog
from microloans.customers import CustomerManager
from microloans.dates import today
from microloans.effects import EffectDispatcher
from microloans.links import LinkManager
from microloans.loans import LoanApplication, LoanManager
from microloans.notifications import ChannelProvider, Notification, NotificationChannel, NotificationEngine
from microloans.payments import PaymentLedger
from microloans.rbac import ALL_PERMISSIONS
from microloans.scheduler import Scheduler
from microloans.settings import SettingsManager
from microloans.storage import InMemoryStorage

ADMIN_ID = "admin-1"
ADMIN_EMAIL = "ops@lender.test"


class MockChannelProvider(ChannelProvider):
    """Mock channel provider for testing"""

    def __init__(self, should_succeed: bool = True):
        self.should_succeed = should_succeed
        self.sent_notifications = []
        self.call_count = 0

    async def send(self, notification: Notification) -> bool:
        self.call_count += 1
        self.sent_notifications.append(notification)
        return self.should_succeed

    def sent_to(self, recipient):
        return [n for n in self.sent_notifications if n.recipient_address == recipient]

    def templates(self):
        return [n.template_key for n in self.sent_notifications]


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def activity_log(storage):
    return ActivityLog(storage)


@pytest.fixture
def provider():
    return MockChannelProvider()


@pytest.fixture
def failing_provider():
    return MockChannelProvider(should_succeed=False)


@pytest.fixture
def notifications(storage, activity_log, provider):
    engine = NotificationEngine(storage, activity_log, company_name="Test Lender", mpesa_paybill="555777")
    engine.register_provider(NotificationChannel.EMAIL, provider)
    return engine


@pytest.fixture
def dispatcher(notifications, activity_log):
    return EffectDispatcher(notifications, activity_log)


@pytest.fixture
def settings_manager(storage, activity_log):
    return SettingsManager(storage, activity_log)


@pytest.fixture
def customer_manager(storage, activity_log):
    return CustomerManager(storage, activity_log)


@pytest.fixture
def payment_ledger(storage):
    return PaymentLedger(storage)


@pytest.fixture
def link_manager(storage, activity_log):
    return LinkManager(storage, activity_log, validity_hours=24)


@pytest.fixture
def loan_manager(storage, settings_manager, customer_manager, payment_ledger, link_manager, dispatcher):
    return LoanManager(
        storage, settings_manager, customer_manager, payment_ledger, link_manager, dispatcher,
        admin_email=ADMIN_EMAIL
    )


@pytest.fixture
def scheduler(storage, loan_manager, link_manager, notifications, dispatcher):
    return Scheduler(storage, loan_manager, link_manager, notifications, dispatcher, admin_email=ADMIN_EMAIL)


@pytest.fixture
def admin_permissions():
    return ALL_PERMISSIONS


@pytest.fixture
def make_customer(customer_manager):
    """Factory for distinct customers earning KES 50,000 a month"""
    sequence = count(1)

    def _make(net_salary=Decimal("50000"), name=None):
        n = next(sequence)
        return customer_manager.create_customer(
            name=name or f"Borrower {n}",
            email=f"borrower{n}@example.com",
            phone=f"+2547000000{n:02d}",
            national_id=f"ID{n:06d}",
            net_salary=net_salary,
            actor_id=ADMIN_ID,
            actor_permissions=ALL_PERMISSIONS
        )

    return _make


@pytest.fixture
def customer(make_customer):
    return make_customer()


@pytest.fixture
def make_loan(loan_manager, make_customer):
    """
    Factory for a loan of KES 10,000 due in 30 days, moved on to the
    requested status ("pending", "approved" or "disbursed").
    """

    def _make(status="disbursed", amount=Decimal("10000"), term_days=30, customer=None):
        customer = customer or make_customer()
        application = LoanApplication(
            customer_id=customer.id,
            loan_amount=amount,
            salary_date=today() + timedelta(days=term_days),
            mpesa_number="+254700000000"
        )
        loan = loan_manager.create_loan(application, ADMIN_ID, ALL_PERMISSIONS).loan
        if status in ("approved", "disbursed"):
            loan = loan_manager.approve_loan(loan.id, ADMIN_ID, ALL_PERMISSIONS).loan
        if status == "disbursed":
            loan = loan_manager.disburse_loan(loan.id, ADMIN_ID, ALL_PERMISSIONS).loan
        return loan

    return _make
