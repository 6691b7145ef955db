"""
Loan Settings Module

The organisation's loan policy (rates, limits, grace and penalty windows).
A live, editable record exists organisation-wide; at approval time its values
are copied onto the loan as an immutable snapshot, and every later computation
for that loan uses the snapshot.
"""

from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Dict, List, Optional, Any, Iterable

from .audit import ActivityLog, ActivityType
from .currency import to_decimal
from .dates import utc_now
from .errors import ValidationError
from .rbac import Permission, assert_permission
from .storage import StorageInterface

_INT_FIELDS = ("grace_period_days", "penalty_period_days")


@dataclass(frozen=True)
class LoanSettings:
    """Loan policy values. Rates are fractions (0.05 = 5%)."""
    interest_rate_short_term: Decimal = Decimal("0.13")  # term <= 15 days
    interest_rate_long_term: Decimal = Decimal("0.18")
    processing_fee_rate: Decimal = Decimal("0.05")
    penalty_rate: Decimal = Decimal("0.05")
    grace_period_days: int = 3
    penalty_period_days: int = 30
    max_loan_percentage: Decimal = Decimal("0.6")
    min_loan_amount: Decimal = Decimal("1000")
    max_loan_amount: Decimal = Decimal("100000")

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the settings are usable"""
        errors = []
        for name in ("interest_rate_short_term", "interest_rate_long_term",
                     "processing_fee_rate", "penalty_rate"):
            if getattr(self, name) < 0:
                errors.append("Interest rate cannot be negative" if name.startswith("interest")
                              else f"{name.replace('_', ' ').capitalize()} cannot be negative")
        if self.min_loan_amount < 0:
            errors.append("Minimum loan amount cannot be negative")
        if self.min_loan_amount > self.max_loan_amount:
            errors.append("Minimum loan amount cannot exceed maximum")
        if not (Decimal("0") < self.max_loan_percentage <= Decimal("1")):
            errors.append("Max loan percentage must be between 0 and 1")
        if self.grace_period_days < 0:
            errors.append("Grace period cannot be negative")
        if self.penalty_period_days < 0:
            errors.append("Penalty period cannot be negative")
        return errors

    def to_snapshot(self) -> Dict[str, Any]:
        """Serialise for embedding on a loan record"""
        return {
            f.name: getattr(self, f.name) if f.name in _INT_FIELDS else str(getattr(self, f.name))
            for f in fields(self)
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> 'LoanSettings':
        """Rebuild from an embedded snapshot; unknown keys are ignored"""
        values = {}
        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            if f.name in _INT_FIELDS:
                values[f.name] = int(data[f.name])
            else:
                values[f.name] = to_decimal(data[f.name])
        return cls(**values)

    def with_changes(self, changes: Dict[str, Any]) -> 'LoanSettings':
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValidationError(f"Unknown setting: {sorted(unknown)[0]}", field=sorted(unknown)[0])
        merged = self.to_snapshot()
        merged.update(changes)
        return LoanSettings.from_snapshot(merged)


DEFAULT_LOAN_SETTINGS = LoanSettings()


def resolve_loan_settings(snapshot: Optional[Dict[str, Any]], live: LoanSettings) -> LoanSettings:
    """The loan's own snapshot when it has one, otherwise the live policy"""
    if snapshot:
        return LoanSettings.from_snapshot(snapshot)
    return live


class SettingsManager:
    """Stores and updates the organisation's live loan settings"""

    SETTINGS_ID = "current"

    def __init__(self, storage: StorageInterface, activity_log: ActivityLog):
        self.storage = storage
        self.activity_log = activity_log
        self.settings_table = "loan_settings"

    def get_current_settings(self) -> LoanSettings:
        """Live settings, created from the defaults on first access"""
        data = self.storage.load(self.settings_table, self.SETTINGS_ID)
        if data is None:
            self._save(DEFAULT_LOAN_SETTINGS)
            return DEFAULT_LOAN_SETTINGS
        return LoanSettings.from_snapshot(data)

    def update_settings(self, changes: Dict[str, Any], actor_id: str,
                        actor_permissions: Optional[Iterable[Permission]]) -> LoanSettings:
        """
        Apply a partial update to the live settings.

        Loans approved earlier keep their snapshot and are unaffected.

        Raises:
            ForbiddenError: actor lacks settings.update
            ValidationError: the resulting settings are invalid
        """
        assert_permission(actor_permissions, Permission.SETTINGS_UPDATE)

        current = self.get_current_settings()
        try:
            updated = current.with_changes(changes)
        except ValidationError:
            raise
        except (ArithmeticError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid settings value: {e}")

        errors = updated.validate()
        if errors:
            raise ValidationError(errors[0])

        self._save(updated)

        before = current.to_snapshot()
        after = updated.to_snapshot()
        self.activity_log.log_activity(
            ActivityType.SETTINGS_UPDATED,
            "Loan settings updated",
            "settings",
            self.SETTINGS_ID,
            {"changes": {k: {"from": before[k], "to": after[k]} for k in after if before[k] != after[k]}},
            user_id=actor_id
        )
        return updated

    def _save(self, settings: LoanSettings) -> None:
        data = settings.to_snapshot()
        now = utc_now().isoformat()
        data.update({"id": self.SETTINGS_ID, "updated_at": now})
        self.storage.save(self.settings_table, self.SETTINGS_ID, data)
