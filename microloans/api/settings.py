"""
Loan settings endpoints
"""

from fastapi import APIRouter, Depends

from .auth import Actor, BackOffice, get_current_actor, get_system
from .schemas import UpdateSettingsRequest
from ..rbac import Permission, assert_permission


router = APIRouter()


@router.get("")
def get_settings(
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.SETTINGS_VIEW)
    return system.settings_manager.get_current_settings().to_snapshot()


@router.patch("")
def update_settings(
    request: UpdateSettingsRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    """Change the live policy; loans approved earlier keep their snapshot"""
    updated = system.settings_manager.update_settings(request.changes(), actor.user_id, actor.permissions)
    return {"settings": updated.to_snapshot(), "message": "Settings updated"}
