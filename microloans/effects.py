"""
Post-Commit Effects Module

Loan transitions do not send notifications or write activity entries inline.
They return a list of effect records, and once the loan write has committed,
EffectDispatcher performs them. A failed effect is logged and turned into a
warning string; it never undoes or fails the transition.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from .audit import ActivityLog, ActivityType
from .logging_config import get_logger
from .notifications import NotificationChannel, NotificationEngine, TemplateKey

logger = get_logger("effects")


@dataclass(frozen=True)
class NotifyEffect:
    """Send a templated notification"""
    template_key: TemplateKey
    recipient: str
    variables: Dict[str, Any] = field(default_factory=dict)
    loan_id: Optional[str] = None
    channel: NotificationChannel = NotificationChannel.EMAIL


@dataclass(frozen=True)
class ActivityEffect:
    """Append an activity-log entry"""
    activity_type: ActivityType
    description: str
    entity_type: str
    entity_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    is_system: bool = False


Effect = Union[NotifyEffect, ActivityEffect]


class EffectDispatcher:
    """Runs post-commit effects, swallowing and recording their failures"""

    def __init__(self, notifications: Optional[NotificationEngine] = None,
                 activity_log: Optional[ActivityLog] = None):
        self.notifications = notifications
        self.activity_log = activity_log

    def dispatch(self, effects: Iterable[Effect]) -> List[str]:
        """Perform every effect in order; return warnings for the ones that failed"""
        warnings: List[str] = []
        for effect in effects:
            warning = self._perform(effect)
            if warning:
                logger.warning(warning)
                warnings.append(warning)
        return warnings

    def _perform(self, effect: Effect) -> Optional[str]:
        if isinstance(effect, ActivityEffect):
            return self._log_activity(effect)
        if isinstance(effect, NotifyEffect):
            return self._notify(effect)
        return f"Unknown effect type: {type(effect).__name__}"

    def _log_activity(self, effect: ActivityEffect) -> Optional[str]:
        if self.activity_log is None:
            return None
        try:
            self.activity_log.log_activity(
                effect.activity_type,
                effect.description,
                effect.entity_type,
                effect.entity_id,
                effect.metadata,
                user_id=effect.user_id,
                is_system=effect.is_system
            )
        except Exception as e:
            return f"Activity log failed for {effect.activity_type.value} on {effect.entity_id}: {e}"
        return None

    def _notify(self, effect: NotifyEffect) -> Optional[str]:
        if self.notifications is None:
            return None
        try:
            delivered = asyncio.run(self.notifications.send_templated(
                effect.template_key,
                effect.recipient,
                effect.variables,
                channel=effect.channel,
                loan_id=effect.loan_id
            ))
        except Exception as e:
            return f"Notification {effect.template_key.value} failed: {e}"
        if not delivered:
            return f"Notification {effect.template_key.value} to {effect.recipient or 'unknown recipient'} was not delivered"
        return None
