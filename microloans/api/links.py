"""
Application link endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .auth import Actor, BackOffice, get_current_actor, get_system
from .schemas import CreateLinkRequest
from ..links import LinkStatus
from ..rbac import Permission, assert_permission


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_link(
    request: CreateLinkRequest,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    """Issue a single-use application link"""
    if request.customer_id:
        system.customer_manager.require_customer(request.customer_id)
    link = system.link_manager.create_link(
        actor.user_id, actor.permissions,
        customer_id=request.customer_id, hours_valid=request.hours_valid
    )
    return {
        "id": link.id,
        "token": link.token,
        "expires_at": link.expires_at.isoformat(),
        "customer_id": link.customer_id
    }


@router.get("")
def list_links(
    status_filter: Optional[LinkStatus] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.LINKS_VIEW)
    links = system.link_manager.list_links(status_filter)
    return {"links": [link.to_dict() for link in links], "count": len(links)}


@router.get("/validate/{token}")
def validate_link(
    token: str,
    system: BackOffice = Depends(get_system)
):
    """Public check the application form makes before it renders"""
    link = system.link_manager.validate_token(token)
    return {
        "valid": True,
        "expires_at": link.expires_at.isoformat(),
        "customer_id": link.customer_id
    }
