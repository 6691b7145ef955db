"""
Notification Engine Module

Templated customer and admin notifications for the loan lifecycle: application
receipt, disbursement, payment reminders, overdue and penalty notices, default
and closure. Sending is fire-and-forget; the engine records every attempt and
never raises into the caller.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

import httpx
import requests
from abc import ABC, abstractmethod

from .audit import ActivityLog, ActivityType
from .dates import utc_now, to_datetime
from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord

logger = get_logger("notifications")


class NotificationChannel(Enum):
    """Available notification channels"""
    EMAIL = "email"
    WEBHOOK = "webhook"
    LOG = "log"


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class TemplateKey(Enum):
    """Template keys for the loan lifecycle"""
    # Application stage
    APPLICATION_RECEIVED = "application_received"
    APPLICATION_REJECTED = "application_rejected"
    LOAN_APPROVED = "loan_approved"

    # Disbursement stage
    LOAN_DISBURSED = "loan_disbursed"

    # Payment reminders
    PAYMENT_REMINDER_3_DAYS = "payment_reminder_3_days"
    PAYMENT_REMINDER_2_DAYS = "payment_reminder_2_days"
    PAYMENT_REMINDER_1_DAY = "payment_reminder_1_day"
    PAYMENT_DUE_TODAY = "payment_due_today"

    # Overdue, penalty and default
    OVERDUE_GRACE_PERIOD = "overdue_grace_period"
    DAILY_OVERDUE_REMINDER = "daily_overdue_reminder"
    PENALTY_APPLIED = "penalty_applied"
    LOAN_DEFAULTED = "loan_defaulted"

    # Payments and closure
    PAYMENT_RECEIVED = "payment_received"
    LOAN_FULLY_PAID = "loan_fully_paid"
    PENALTY_WAIVER = "penalty_waiver"
    LOAN_CLOSED = "loan_closed"

    # Admin
    ADMIN_LOAN_DISBURSED = "admin_loan_disbursed"
    ADMIN_DUE_TODAY_DIGEST = "admin_due_today_digest"


DEFAULT_TEMPLATES: Dict[TemplateKey, Dict[str, str]] = {
    TemplateKey.APPLICATION_RECEIVED: {
        "subject": "Loan application {loan_number} received",
        "body": "Dear {customer_name}, we have received your application for KES {loan_amount}. "
                "We will notify you once it has been reviewed.",
    },
    TemplateKey.APPLICATION_REJECTED: {
        "subject": "Loan application {loan_number} update",
        "body": "Dear {customer_name}, we are unable to approve your application for KES {loan_amount}. "
                "Reason: {reason}",
    },
    TemplateKey.LOAN_APPROVED: {
        "subject": "Loan {loan_number} approved",
        "body": "Dear {customer_name}, your loan of KES {loan_amount} has been approved. "
                "Funds will be sent to you shortly.",
    },
    TemplateKey.LOAN_DISBURSED: {
        "subject": "Loan {loan_number} disbursed",
        "body": "Dear {customer_name}, KES {disbursement_amount} has been sent to you. "
                "Please repay KES {total_repayment} by {due_date} via M-Pesa Paybill {mpesa_paybill}, "
                "account {loan_number}.",
    },
    TemplateKey.PAYMENT_REMINDER_3_DAYS: {
        "subject": "Your loan {loan_number} is due in 3 days",
        "body": "Dear {customer_name}, KES {balance} is due on {due_date}. "
                "Pay via M-Pesa Paybill {mpesa_paybill}, account {loan_number}.",
    },
    TemplateKey.PAYMENT_REMINDER_2_DAYS: {
        "subject": "Your loan {loan_number} is due in 2 days",
        "body": "Dear {customer_name}, KES {balance} is due on {due_date}. "
                "Pay via M-Pesa Paybill {mpesa_paybill}, account {loan_number}.",
    },
    TemplateKey.PAYMENT_REMINDER_1_DAY: {
        "subject": "Your loan {loan_number} is due tomorrow",
        "body": "Dear {customer_name}, KES {balance} is due tomorrow ({due_date}). "
                "Pay via M-Pesa Paybill {mpesa_paybill}, account {loan_number}.",
    },
    TemplateKey.PAYMENT_DUE_TODAY: {
        "subject": "Your loan {loan_number} is due today",
        "body": "Dear {customer_name}, KES {balance} is due today. "
                "Pay via M-Pesa Paybill {mpesa_paybill}, account {loan_number}.",
    },
    TemplateKey.OVERDUE_GRACE_PERIOD: {
        "subject": "Loan {loan_number} is overdue",
        "body": "Dear {customer_name}, your payment of KES {balance} is {days_overdue} day(s) overdue. "
                "Pay by {grace_period_end_date} to avoid a penalty of KES {potential_penalty}.",
    },
    TemplateKey.DAILY_OVERDUE_REMINDER: {
        "subject": "Loan {loan_number} remains overdue",
        "body": "Dear {customer_name}, KES {balance} is still outstanding, {days_overdue} day(s) past due. "
                "Pay via M-Pesa Paybill {mpesa_paybill}, account {loan_number}.",
    },
    TemplateKey.PENALTY_APPLIED: {
        "subject": "Penalty applied to loan {loan_number}",
        "body": "Dear {customer_name}, a one-time penalty of KES {penalty_amount} has been applied. "
                "Your new balance is KES {balance}.",
    },
    TemplateKey.LOAN_DEFAULTED: {
        "subject": "Loan {loan_number} in default",
        "body": "Dear {customer_name}, your loan is in default with KES {balance} outstanding. "
                "Please contact {company_name} immediately.",
    },
    TemplateKey.PAYMENT_RECEIVED: {
        "subject": "Payment received for loan {loan_number}",
        "body": "Dear {customer_name}, we received KES {amount}. Your remaining balance is KES {balance}.",
    },
    TemplateKey.LOAN_FULLY_PAID: {
        "subject": "Loan {loan_number} fully repaid",
        "body": "Dear {customer_name}, we received KES {amount} and your loan is now fully repaid. Thank you.",
    },
    TemplateKey.PENALTY_WAIVER: {
        "subject": "Penalty waived on loan {loan_number}",
        "body": "Dear {customer_name}, KES {amount} of your penalty has been waived. "
                "Your new balance is KES {balance}.",
    },
    TemplateKey.LOAN_CLOSED: {
        "subject": "Loan {loan_number} closed",
        "body": "Dear {customer_name}, your loan account {loan_number} has been closed. Reason: {reason}",
    },
    TemplateKey.ADMIN_LOAN_DISBURSED: {
        "subject": "Disbursed: {loan_number}",
        "body": "Loan {loan_number} for {customer_name} was disbursed. Amount sent: KES {disbursement_amount}.",
    },
    TemplateKey.ADMIN_DUE_TODAY_DIGEST: {
        "subject": "{count} loan(s) due today",
        "body": "The following loans are due today:\n{loan_list}",
    },
}


@dataclass
class NotificationTemplate(StorageRecord):
    template_key: TemplateKey
    subject_template: str  # Template with {placeholders}
    body_template: str
    is_active: bool = True


@dataclass
class Notification(StorageRecord):
    """Individual notification instance"""
    template_key: TemplateKey
    channel: NotificationChannel
    recipient_address: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    loan_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    metadata: Dict[str, Any] = field(default_factory=dict)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Logs notifications instead of delivering them (development)"""

    def __init__(self, log=None):
        self.log = log or logger

    async def send(self, notification: Notification) -> bool:
        self.log.info(
            f"{notification.channel.value.upper()} to {notification.recipient_address}: "
            f"{notification.subject} | {notification.body[:100]}"
        )
        return True


class EmailChannelProvider(ChannelProvider):
    """Sends email through an HTTP email API with a bounded timeout"""

    def __init__(self, api_url: str = "", api_key: str = "", sender: str = "",
                 timeout: float = 5.0):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    async def send(self, notification: Notification) -> bool:
        if not self.api_url:
            logger.info(f"Email API not configured; email to {notification.recipient_address} "
                        f"logged only: {notification.subject}")
            return True

        payload = {
            "from": self.sender,
            "to": notification.recipient_address,
            "subject": notification.subject,
            "text": notification.body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
            if response.status_code >= 400:
                logger.warning(f"Email API returned {response.status_code} for {notification.id}")
                return False
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Email send failed for {notification.id}: {e}")
            return False


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "template_key": notification.template_key.value,
            "loan_id": notification.loan_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
        }
        try:
            response = requests.post(
                notification.recipient_address,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
            return response.status_code == 200
        except requests.RequestException as e:
            logger.warning(f"Webhook send failed: {e}")
            return False


class NotificationEngine:
    """Manages templates and sends, queues and retries notifications"""

    def __init__(self, storage: StorageInterface, activity_log: Optional[ActivityLog] = None,
                 company_name: str = "Microloans", mpesa_paybill: str = "",
                 max_retries: int = 3):
        self.storage = storage
        self.activity_log = activity_log
        self.company_name = company_name
        self.mpesa_paybill = mpesa_paybill
        self.max_retries = max_retries

        self.templates_table = "notification_templates"
        self.notifications_table = "notifications"

        self.providers: Dict[NotificationChannel, ChannelProvider] = {
            NotificationChannel.EMAIL: EmailChannelProvider(),
            NotificationChannel.WEBHOOK: WebhookChannelProvider(),
            NotificationChannel.LOG: LogChannelProvider(),
        }
        self._initialize_default_templates()

    def _initialize_default_templates(self) -> None:
        for key, content in DEFAULT_TEMPLATES.items():
            if self.storage.exists(self.templates_table, key.value):
                continue
            now = utc_now()
            template = NotificationTemplate(
                id=key.value,
                created_at=now,
                updated_at=now,
                template_key=key,
                subject_template=content["subject"],
                body_template=content["body"]
            )
            self.storage.save(self.templates_table, template.id, template.to_dict())

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider) -> None:
        self.providers[channel] = provider

    # Template Management

    def get_template(self, template_key: TemplateKey) -> Optional[NotificationTemplate]:
        data = self.storage.load(self.templates_table, template_key.value)
        return self._template_from_dict(data) if data else None

    def list_templates(self) -> List[NotificationTemplate]:
        templates = [self._template_from_dict(d) for d in self.storage.load_all(self.templates_table)]
        return sorted(templates, key=lambda t: t.template_key.value)

    def update_template(self, template_key: TemplateKey, subject_template: str,
                        body_template: str) -> NotificationTemplate:
        template = self.get_template(template_key)
        if template is None:
            raise ValueError(f"Template {template_key.value} not found")
        template.subject_template = subject_template
        template.body_template = body_template
        template.updated_at = utc_now()
        self.storage.save(self.templates_table, template.id, template.to_dict())
        return template

    # Notification Sending

    def _render(self, template_key: TemplateKey, variables: Dict[str, Any]) -> tuple:
        template = self.get_template(template_key)
        if template is None or not template.is_active:
            raise LookupError(f"No active template for {template_key.value}")
        data = {"company_name": self.company_name, "mpesa_paybill": self.mpesa_paybill}
        data.update(variables)
        return template.subject_template.format(**data), template.body_template.format(**data)

    def _build(self, template_key: TemplateKey, recipient: str, variables: Dict[str, Any],
               channel: NotificationChannel, loan_id: Optional[str]) -> Notification:
        now = utc_now()
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            template_key=template_key,
            channel=channel,
            recipient_address=recipient,
            subject="",
            body="",
            loan_id=loan_id,
            max_retries=self.max_retries,
            metadata={k: str(v) for k, v in variables.items()}
        )
        try:
            notification.subject, notification.body = self._render(template_key, variables)
        except (KeyError, IndexError, LookupError) as e:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = f"Template rendering failed: {e}"
        return notification

    async def send_templated(
        self,
        template_key: TemplateKey,
        recipient: str,
        variables: Dict[str, Any],
        channel: NotificationChannel = NotificationChannel.EMAIL,
        loan_id: Optional[str] = None
    ) -> bool:
        """
        Render and send one notification. Returns True on delivery.

        Never raises: rendering, provider and storage failures are logged and
        reported as False.
        """
        try:
            if not recipient:
                logger.warning(f"No recipient for {template_key.value}; notification skipped")
                return False

            notification = self._build(template_key, recipient, variables, channel, loan_id)
            if notification.status != NotificationStatus.FAILED:
                await self._deliver(notification)
            else:
                logger.warning(f"{notification.failed_reason} ({template_key.value})")

            self._save_notification(notification)
            return notification.status == NotificationStatus.SENT
        except Exception as e:
            logger.warning(f"Notification {template_key.value} to {recipient} failed: {e}")
            return False

    def queue_templated(
        self,
        template_key: TemplateKey,
        recipient: str,
        variables: Dict[str, Any],
        channel: NotificationChannel = NotificationChannel.EMAIL,
        loan_id: Optional[str] = None
    ) -> Optional[str]:
        """Render and store a pending notification for process_queue to send"""
        notification = self._build(template_key, recipient, variables, channel, loan_id)
        self._save_notification(notification)
        if notification.status == NotificationStatus.FAILED:
            logger.warning(f"{notification.failed_reason} ({template_key.value})")
            return None
        return notification.id

    async def _deliver(self, notification: Notification) -> None:
        provider = self.providers.get(notification.channel)
        if provider is None:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = f"No provider registered for channel: {notification.channel.value}"
            return

        try:
            success = await provider.send(notification)
        except Exception as e:
            success = False
            notification.failed_reason = str(e)

        notification.updated_at = utc_now()
        if success:
            notification.status = NotificationStatus.SENT
            notification.sent_at = notification.updated_at
            notification.failed_reason = None
            if self.activity_log:
                self.activity_log.log_activity(
                    ActivityType.EMAIL_SENT,
                    f"Sent {notification.template_key.value} to {notification.recipient_address}",
                    "loan" if notification.loan_id else "notification",
                    notification.loan_id or notification.id,
                    {"notification_id": notification.id, "channel": notification.channel.value},
                    is_system=True
                )
        else:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = notification.failed_reason or "Provider send failed"

    async def process_queue(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Send pending notifications, oldest first"""
        results = {"processed": 0, "sent": 0, "failed": 0}
        pending = sorted(
            self.storage.find(self.notifications_table, {"status": NotificationStatus.PENDING.value}),
            key=lambda d: d.get("created_at", "")
        )
        if limit:
            pending = pending[:limit]

        for data in pending:
            notification = self._notification_from_dict(data)
            await self._deliver(notification)
            self._save_notification(notification)
            results["processed"] += 1
            results["sent" if notification.status == NotificationStatus.SENT else "failed"] += 1

        return results

    async def retry_failed(self, since: Optional[datetime] = None,
                           max_retries: Optional[int] = None) -> Dict[str, int]:
        """Resend failed notifications created after `since`, up to max_retries attempts each"""
        max_retries = self.max_retries if max_retries is None else max_retries
        results = {"attempted": 0, "succeeded": 0, "failed": 0}

        filters: Dict[str, Any] = {"status": NotificationStatus.FAILED.value}
        if since is not None:
            filters["created_at__gte"] = to_datetime(since)

        for data in self.storage.find(self.notifications_table, filters):
            notification = self._notification_from_dict(data)
            if notification.retry_count >= max_retries or not notification.subject:
                continue

            results["attempted"] += 1
            notification.retry_count += 1
            await self._deliver(notification)
            self._save_notification(notification)

            if notification.status == NotificationStatus.SENT:
                results["succeeded"] += 1
            elif notification.retry_count >= max_retries:
                results["failed"] += 1

        return results

    # Notification Management

    def get_notifications(self, status: Optional[NotificationStatus] = None,
                          loan_id: Optional[str] = None) -> List[Notification]:
        filters: Dict[str, Any] = {}
        if status:
            filters["status"] = status.value
        if loan_id:
            filters["loan_id"] = loan_id
        notifications = [self._notification_from_dict(d) for d in self.storage.find(self.notifications_table, filters)]
        notifications.sort(key=lambda n: n.created_at)
        return notifications

    def get_delivery_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"total": 0, "by_status": {}, "by_template": {}}
        for data in self.storage.load_all(self.notifications_table):
            stats["total"] += 1
            stats["by_status"][data["status"]] = stats["by_status"].get(data["status"], 0) + 1
            stats["by_template"][data["template_key"]] = stats["by_template"].get(data["template_key"], 0) + 1
        return stats

    def _save_notification(self, notification: Notification) -> None:
        self.storage.save(self.notifications_table, notification.id, notification.to_dict())

    def _template_from_dict(self, data: Dict) -> NotificationTemplate:
        return NotificationTemplate(
            id=data["id"],
            created_at=to_datetime(data["created_at"]),
            updated_at=to_datetime(data["updated_at"]),
            template_key=TemplateKey(data["template_key"]),
            subject_template=data["subject_template"],
            body_template=data["body_template"],
            is_active=data.get("is_active", True)
        )

    def _notification_from_dict(self, data: Dict) -> Notification:
        return Notification(
            id=data["id"],
            created_at=to_datetime(data["created_at"]),
            updated_at=to_datetime(data["updated_at"]),
            template_key=TemplateKey(data["template_key"]),
            channel=NotificationChannel(data["channel"]),
            recipient_address=data["recipient_address"],
            subject=data["subject"],
            body=data["body"],
            status=NotificationStatus(data["status"]),
            loan_id=data.get("loan_id"),
            sent_at=to_datetime(data["sent_at"]) if data.get("sent_at") else None,
            failed_reason=data.get("failed_reason"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            metadata=data.get("metadata", {})
        )
