"""
Role-Based Access Control Module

Permission values, the built-in staff roles and the permission gate every
mutating operation calls before checking any business guard.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Set, Union

from .errors import ForbiddenError, UnauthorizedError


class Permission(Enum):
    """System permissions, named category.action"""
    # Loan permissions
    LOANS_VIEW = "loans.view"
    LOANS_CREATE = "loans.create"
    LOANS_APPROVE = "loans.approve"
    LOANS_REJECT = "loans.reject"
    LOANS_DISBURSE = "loans.disburse"
    LOANS_UPDATE = "loans.update"  # waive, mark defaulted, write off

    # Payment permissions
    PAYMENTS_CREATE = "payments.create"
    PAYMENTS_VIEW = "payments.view"

    # Customer permissions
    CUSTOMERS_VIEW = "customers.view"
    CUSTOMERS_CREATE = "customers.create"

    # Application link permissions
    LINKS_VIEW = "links.view"
    LINKS_CREATE = "links.create"

    # Admin permissions
    SETTINGS_VIEW = "settings.view"
    SETTINGS_UPDATE = "settings.update"
    ACTIVITIES_VIEW = "activities.view"
    CRON_RUN = "cron.run"


PermissionSet = FrozenSet[Permission]

ALL_PERMISSIONS: PermissionSet = frozenset(Permission)

SYSTEM_ROLES: Dict[str, PermissionSet] = {
    "admin": ALL_PERMISSIONS,
    "loan_officer": frozenset({
        Permission.LOANS_VIEW,
        Permission.LOANS_CREATE,
        Permission.LOANS_APPROVE,
        Permission.LOANS_REJECT,
        Permission.LOANS_DISBURSE,
        Permission.LOANS_UPDATE,
        Permission.PAYMENTS_CREATE,
        Permission.PAYMENTS_VIEW,
        Permission.CUSTOMERS_VIEW,
        Permission.CUSTOMERS_CREATE,
        Permission.LINKS_VIEW,
        Permission.LINKS_CREATE,
        Permission.SETTINGS_VIEW,
        Permission.ACTIVITIES_VIEW,
    }),
    "cashier": frozenset({
        Permission.LOANS_VIEW,
        Permission.PAYMENTS_CREATE,
        Permission.PAYMENTS_VIEW,
        Permission.CUSTOMERS_VIEW,
    }),
    "viewer": frozenset({
        Permission.LOANS_VIEW,
        Permission.PAYMENTS_VIEW,
        Permission.CUSTOMERS_VIEW,
        Permission.LINKS_VIEW,
        Permission.SETTINGS_VIEW,
        Permission.ACTIVITIES_VIEW,
    }),
}

PermissionLike = Union[Permission, str]


def to_permission(value: PermissionLike) -> Permission:
    if isinstance(value, Permission):
        return value
    try:
        return Permission(value)
    except ValueError:
        raise ValueError(f"Unknown permission: {value}")


def permissions_for_role(role_name: str) -> PermissionSet:
    """Permissions granted by a system role; unknown roles grant nothing"""
    return SYSTEM_ROLES.get(role_name, frozenset())


def has_permission(permissions: Optional[Iterable[Permission]], permission: PermissionLike) -> bool:
    if permissions is None:
        return False
    return to_permission(permission) in set(permissions)


def assert_permission(permissions: Optional[Iterable[Permission]], permission: PermissionLike) -> None:
    """
    Raise unless the actor holds the permission.

    Raises:
        UnauthorizedError: permissions were never loaded for the actor
        ForbiddenError: the permission is missing
    """
    if permissions is None:
        raise UnauthorizedError("User permissions not loaded")

    required = to_permission(permission)
    if required not in set(permissions):
        raise ForbiddenError(
            "You do not have permission to perform this action",
            required_permission=required.value
        )


def assert_all_permissions(permissions: Optional[Iterable[Permission]],
                           required: Iterable[PermissionLike]) -> None:
    for permission in required:
        assert_permission(permissions, permission)


def assert_any_permission(permissions: Optional[Iterable[Permission]],
                          required: Iterable[PermissionLike]) -> None:
    if permissions is None:
        raise UnauthorizedError("User permissions not loaded")

    wanted: Set[Permission] = {to_permission(p) for p in required}
    if not wanted & set(permissions):
        raise ForbiddenError(
            "You do not have permission to perform this action",
            required_permission=", ".join(sorted(p.value for p in wanted))
        )
