"""
Application Link Module

Single-use, time-limited tokens that let a borrower submit a loan application
without a staff login. Links expire after a configurable number of hours and
are purged by the scheduler once they have been expired long enough.
"""

import secrets
import uuid
from datetime import datetime, timedelta
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Any, Iterable

from .audit import ActivityLog, ActivityType
from .dates import calculate_link_expiry, is_expired, utc_now, to_datetime
from .errors import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger
from .rbac import Permission, assert_permission
from .storage import StorageInterface, StorageRecord

logger = get_logger("links")


class LinkStatus(Enum):
    UNUSED = "unused"
    USED = "used"
    EXPIRED = "expired"


@dataclass
class ApplicationLink(StorageRecord):
    token: str
    expires_at: datetime
    status: LinkStatus = LinkStatus.UNUSED
    customer_id: Optional[str] = None
    loan_id: Optional[str] = None
    created_by: Optional[str] = None
    used_at: Optional[datetime] = None
    used_from_ip: Optional[str] = None
    user_agent: Optional[str] = None
    version: int = 0


class LinkManager:
    """Issues, validates and expires application links"""

    def __init__(self, storage: StorageInterface, activity_log: ActivityLog,
                 validity_hours: float = 24):
        self.storage = storage
        self.activity_log = activity_log
        self.validity_hours = validity_hours
        self.links_table = "application_links"

    def create_link(self, actor_id: str, actor_permissions: Optional[Iterable[Permission]],
                    customer_id: Optional[str] = None, hours_valid: Optional[float] = None,
                    now: Optional[datetime] = None) -> ApplicationLink:
        assert_permission(actor_permissions, Permission.LINKS_CREATE)

        hours = self.validity_hours if hours_valid is None else hours_valid
        if hours <= 0:
            raise ValidationError("Link validity must be greater than 0 hours", field="hours_valid")

        now = now or utc_now()
        link = ApplicationLink(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            token=secrets.token_urlsafe(24),
            expires_at=calculate_link_expiry(hours, now),
            customer_id=customer_id,
            created_by=actor_id
        )
        self.storage.save(self.links_table, link.id, link.to_dict())

        self.activity_log.log_activity(
            ActivityType.LINK_CREATED,
            "Application link created",
            "link",
            link.id,
            {"expires_at": link.expires_at, "customer_id": customer_id},
            user_id=actor_id
        )
        return link

    def get_link(self, link_id: str) -> Optional[ApplicationLink]:
        data = self.storage.load(self.links_table, link_id)
        return self._link_from_dict(data) if data else None

    def get_link_by_token(self, token: str) -> Optional[ApplicationLink]:
        if not token:
            return None
        found = self.storage.find(self.links_table, {"token": token})
        return self._link_from_dict(found[0]) if found else None

    def list_links(self, status: Optional[LinkStatus] = None) -> List[ApplicationLink]:
        filters = {"status": status.value} if status else {}
        links = [self._link_from_dict(d) for d in self.storage.find(self.links_table, filters)]
        links.sort(key=lambda link: link.created_at, reverse=True)
        return links

    def validate_token(self, token: str, now: Optional[datetime] = None) -> ApplicationLink:
        """
        Resolve a token that can still be used.

        Raises:
            NotFoundError: unknown token
            ValidationError: already used or expired
        """
        link = self.get_link_by_token(token)
        if link is None:
            raise NotFoundError("Application link")
        if link.status == LinkStatus.USED:
            raise ValidationError("This application link has already been used")
        if link.status == LinkStatus.EXPIRED or is_expired(link.expires_at, now):
            raise ValidationError("This application link has expired")
        return link

    def mark_link_used(self, link_id: str, loan_id: str, ip_address: Optional[str] = None,
                       user_agent: Optional[str] = None,
                       now: Optional[datetime] = None) -> ApplicationLink:
        """Consume a link. Only one submission can win a given link."""
        link = self.get_link(link_id)
        if link is None:
            raise NotFoundError("Application link", link_id)
        if link.status != LinkStatus.UNUSED:
            raise ValidationError("This application link has already been used")

        expected = link.version
        link.status = LinkStatus.USED
        link.loan_id = loan_id
        link.used_at = now or utc_now()
        link.used_from_ip = ip_address
        link.user_agent = user_agent
        link.updated_at = link.used_at
        link.version = expected + 1

        if not self.storage.save_if_version(self.links_table, link.id, link.to_dict(), expected):
            raise ConflictError("This application link has already been used")

        self.activity_log.log_activity(
            ActivityType.LINK_USED,
            "Application link used",
            "link",
            link.id,
            {"loan_id": loan_id, "ip_address": ip_address},
            is_system=True
        )
        return link

    def expire_links(self, now: Optional[datetime] = None) -> List[ApplicationLink]:
        """Mark every unused link past its expiry as expired"""
        now = now or utc_now()
        expired = []
        for data in self.storage.find(self.links_table, {"status": LinkStatus.UNUSED.value}):
            link = self._link_from_dict(data)
            if not is_expired(link.expires_at, now):
                continue

            expected = link.version
            link.status = LinkStatus.EXPIRED
            link.updated_at = now
            link.version = expected + 1
            if not self.storage.save_if_version(self.links_table, link.id, link.to_dict(), expected):
                # used concurrently; it is no longer a candidate
                continue

            self.activity_log.log_activity(
                ActivityType.LINK_EXPIRED,
                "Application link expired",
                "link",
                link.id,
                {"expires_at": link.expires_at},
                is_system=True
            )
            expired.append(link)
        return expired

    def cleanup_expired_links(self, older_than_days: int = 30, now: Optional[datetime] = None) -> int:
        """Delete expired links that never produced a loan and expired before the cutoff"""
        cutoff = (now or utc_now()) - timedelta(days=older_than_days)
        deleted = 0
        for data in self.storage.find(self.links_table, {"status": LinkStatus.EXPIRED.value}):
            link = self._link_from_dict(data)
            if link.loan_id or not is_expired(link.expires_at, cutoff):
                continue
            if self.storage.delete(self.links_table, link.id):
                deleted += 1
        if deleted:
            logger.info(f"Deleted {deleted} expired application link(s)")
        return deleted

    def _link_from_dict(self, data: Dict[str, Any]) -> ApplicationLink:
        return ApplicationLink(
            id=data["id"],
            created_at=to_datetime(data["created_at"]),
            updated_at=to_datetime(data["updated_at"]),
            token=data["token"],
            expires_at=to_datetime(data["expires_at"]),
            status=LinkStatus(data.get("status", LinkStatus.UNUSED.value)),
            customer_id=data.get("customer_id"),
            loan_id=data.get("loan_id"),
            created_by=data.get("created_by"),
            used_at=to_datetime(data["used_at"]) if data.get("used_at") else None,
            used_from_ip=data.get("used_from_ip"),
            user_agent=data.get("user_agent"),
            version=data.get("version", 0)
        )
