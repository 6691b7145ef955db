"""
Back office wiring and authentication dependencies
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..audit import ActivityLog
from ..config import MicroloansConfig, get_config
from ..customers import CustomerManager
from ..effects import EffectDispatcher
from ..errors import UnauthorizedError
from ..links import LinkManager
from ..loans import LoanManager
from ..logging_config import get_logger
from ..notifications import (
    EmailChannelProvider, LogChannelProvider, NotificationChannel, NotificationEngine, WebhookChannelProvider
)
from ..payments import PaymentLedger
from ..rbac import PermissionSet, permissions_for_role
from ..scheduler import Scheduler
from ..settings import SettingsManager
from ..storage import StorageInterface, create_storage

logger = get_logger("api.auth")

security = HTTPBearer(auto_error=False)


class BackOffice:
    """All back office components built over one storage backend"""

    def __init__(self, config: Optional[MicroloansConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.activity_log = ActivityLog(self.storage)
        self.settings_manager = SettingsManager(self.storage, self.activity_log)
        self.customer_manager = CustomerManager(
            self.storage, self.activity_log, self.config.max_conflict_retries
        )
        self.payment_ledger = PaymentLedger(self.storage)
        self.link_manager = LinkManager(self.storage, self.activity_log, self.config.link_validity_hours)

        self.notifications = NotificationEngine(
            self.storage,
            self.activity_log,
            company_name=self.config.company_name,
            mpesa_paybill=self.config.mpesa_paybill,
            max_retries=self.config.max_notification_retries
        )
        self.notifications.register_provider(NotificationChannel.EMAIL, EmailChannelProvider(
            api_url=self.config.email_api_url,
            api_key=self.config.email_api_key,
            sender=self.config.email_sender,
            timeout=self.config.notification_timeout_seconds
        ))
        self.notifications.register_provider(
            NotificationChannel.WEBHOOK, WebhookChannelProvider(self.config.notification_timeout_seconds)
        )
        self.notifications.register_provider(NotificationChannel.LOG, LogChannelProvider())
        self.dispatcher = EffectDispatcher(self.notifications, self.activity_log)

        self.loan_manager = LoanManager(
            self.storage,
            self.settings_manager,
            self.customer_manager,
            self.payment_ledger,
            self.link_manager,
            self.dispatcher,
            max_active_loans=self.config.max_active_loans,
            max_conflict_retries=self.config.max_conflict_retries,
            admin_email=self.config.admin_notification_email
        )
        self.scheduler = Scheduler(
            self.storage,
            self.loan_manager,
            self.link_manager,
            self.notifications,
            self.dispatcher,
            admin_email=self.config.admin_notification_email,
            deadline_seconds=self.config.scheduler_deadline_seconds,
            cleanup_retention_days=self.config.cleanup_retention_days,
            failed_email_retry_hours=self.config.failed_email_retry_hours
        )


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str
    permissions: PermissionSet


def get_system(request: Request) -> BackOffice:
    return request.app.state.system


def create_access_token(user_id: str, role: str, config: MicroloansConfig,
                        expires_hours: int = 24) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=expires_hours),
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def get_current_actor(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                      system: BackOffice = Depends(get_system)) -> Actor:
    """Resolve the bearer token into an actor and its role permissions"""
    config = system.config
    if not config.auth_enabled:
        return Actor("admin", "admin", permissions_for_role("admin"))

    if not credentials:
        raise UnauthorizedError("Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    role = payload.get("role", "viewer")
    return Actor(user_id, role, permissions_for_role(role))
