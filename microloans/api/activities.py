"""
Activity log endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query

from .auth import Actor, BackOffice, get_current_actor, get_system
from ..audit import ActivityType
from ..rbac import Permission, assert_permission


router = APIRouter()


@router.get("")
def get_recent_activities(
    limit: int = Query(50, ge=1, le=500),
    activity_type: Optional[ActivityType] = None,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.ACTIVITIES_VIEW)
    activities = system.activity_log.get_recent_activities(limit, activity_type)
    return {"activities": [a.to_dict() for a in activities]}


@router.get("/verify")
def verify_activity_chain(
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    """Recompute every hash and check the chain links"""
    assert_permission(actor.permissions, Permission.ACTIVITIES_VIEW)
    return system.activity_log.verify_integrity()
