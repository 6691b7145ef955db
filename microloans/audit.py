"""
Activity Log Module

Hash-chained append-only activity log with SHA-256 for tamper detection.
Every committed loan transition, settings change and scheduler action is
recorded here.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .dates import utc_now, to_datetime
from .storage import StorageInterface, StorageRecord, to_storage_value

SYSTEM_ACTOR = "system"


class ActivityType(Enum):
    """Types of activity entries"""
    # Loan lifecycle
    LOAN_CREATED = "loan_created"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    PAYMENT_RECEIVED = "payment_received"
    LOAN_REPAID = "loan_repaid"
    PENALTY_WAIVED = "penalty_waived"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_WRITTEN_OFF = "loan_written_off"

    # Escalation
    LOAN_OVERDUE = "loan_overdue"
    PENALTY_APPLIED = "penalty_applied"

    # Other entities
    CUSTOMER_CREATED = "customer_created"
    LINK_CREATED = "link_created"
    LINK_USED = "link_used"
    LINK_EXPIRED = "link_expired"
    SETTINGS_UPDATED = "settings_updated"
    EMAIL_SENT = "email_sent"
    SYSTEM_ACTION = "system_action"


@dataclass
class Activity(StorageRecord):
    """
    Immutable activity entry with hash chaining for tamper detection
    """
    activity_type: ActivityType
    description: str
    entity_type: str  # loan, customer, link, settings, job
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    is_system: bool = False

    def __post_init__(self):
        self.metadata = to_storage_value(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'activity_type': self.activity_type.value,
            'description': self.description,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'is_system': self.is_system,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Activity':
        data = dict(data)
        data['created_at'] = to_datetime(data['created_at'])
        data['updated_at'] = to_datetime(data['updated_at'])
        data['activity_type'] = ActivityType(data['activity_type'])
        return cls(**data)


class ActivityLog:
    """
    Hash-chained activity log
    """

    def __init__(self, storage: StorageInterface, table_name: str = "activities"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _sorted_entries(self) -> List[Dict[str, Any]]:
        entries = self.storage.load_all(self.table_name)
        return sorted(entries, key=lambda x: (x.get('created_at', ''), x.get('sequence', 0)))

    def _load_last_hash(self) -> None:
        """Load the hash and sequence of the most recent entry"""
        entries = self._sorted_entries()
        if entries:
            self._last_hash = entries[-1].get('current_hash')
            self._sequence = entries[-1].get('sequence', len(entries))

    def log_activity(
        self,
        activity_type: ActivityType,
        description: str,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        is_system: bool = False
    ) -> Activity:
        """
        Append an activity with hash chaining

        Args:
            activity_type: Type of activity
            description: Human-readable summary
            entity_type: Type of the entity acted upon
            entity_id: ID of the entity
            metadata: Amounts, reasons and before/after values
            user_id: Acting user; None for scheduler actions
            is_system: True when performed by the scheduler

        Returns:
            Created Activity
        """
        with self._lock:
            self._load_last_hash()

            now = utc_now()
            activity = Activity(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                activity_type=activity_type,
                description=description,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                metadata=metadata or {},
                user_id=user_id or (SYSTEM_ACTOR if is_system else None),
                is_system=is_system
            )
            activity.current_hash = activity.calculate_hash()

            record = activity.to_dict()
            # entries created in the same microsecond still sort in append order
            self._sequence += 1
            record['sequence'] = self._sequence
            self.storage.save(self.table_name, activity.id, record)

            self._last_hash = activity.current_hash
            return activity

    def _load(self, filters: Dict[str, Any]) -> List[Activity]:
        data = self.storage.find(self.table_name, filters)
        data.sort(key=lambda x: (x.get('created_at', ''), x.get('sequence', 0)))
        return [Activity.from_dict({k: v for k, v in d.items() if k != 'sequence'}) for d in data]

    def get_entity_activities(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[Activity]:
        """Activities for one entity, oldest first"""
        activities = self._load({'entity_type': entity_type, 'entity_id': entity_id})
        if limit:
            activities = activities[-limit:]
        return activities

    def get_recent_activities(self, limit: int = 50,
                              activity_type: Optional[ActivityType] = None) -> List[Activity]:
        """Most recent activities, newest first"""
        filters = {'activity_type': activity_type.value} if activity_type else {}
        activities = self._load(filters)
        return list(reversed(activities[-limit:])) if limit else list(reversed(activities))

    def get_user_activities(self, user_id: str, since: Optional[datetime] = None) -> List[Activity]:
        filters: Dict[str, Any] = {'user_id': user_id}
        if since:
            filters['created_at__gte'] = to_datetime(since)
        return self._load(filters)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_activities': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        activities = self._load({})
        result['total_activities'] = len(activities)

        previous_hash = ""
        for activity in activities:
            if not activity.verify_hash():
                result['valid'] = False
                result['hash_errors'].append(activity.id)
            if activity.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append(activity.id)
            previous_hash = activity.current_hash

        return result
