"""
Scheduler endpoints

Called by an external cron runner. When a cron secret is configured, the
caller must send it in the X-Cron-Secret header.
"""

import hmac
from typing import Optional
from fastapi import APIRouter, Depends, Header

from .auth import Actor, BackOffice, get_current_actor, get_system
from ..errors import NotFoundError, UnauthorizedError
from ..rbac import Permission, assert_permission
from ..scheduler import format_job_result, get_job_config


router = APIRouter()


def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(None),
    system: BackOffice = Depends(get_system)
) -> None:
    expected = system.config.cron_secret
    if expected and not hmac.compare_digest(x_cron_secret or "", expected):
        raise UnauthorizedError("Invalid cron secret")


@router.get("")
def list_jobs(
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    """Every job with its schedule and last run"""
    assert_permission(actor.permissions, Permission.CRON_RUN)
    return {"jobs": system.scheduler.get_all_job_statuses()}


@router.get("/{job_id}/history")
def get_job_history(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BackOffice = Depends(get_system)
):
    assert_permission(actor.permissions, Permission.CRON_RUN)
    if get_job_config(job_id) is None:
        raise NotFoundError("Job", job_id)
    return {"job_id": job_id, "history": system.scheduler.get_job_history(job_id)}


@router.post("/{job_id}", dependencies=[Depends(verify_cron_secret)])
def run_job(
    job_id: str,
    system: BackOffice = Depends(get_system)
):
    """Run one job now and record it in the job history"""
    if get_job_config(job_id) is None:
        raise NotFoundError("Job", job_id)
    result = system.scheduler.trigger_job(job_id, triggered_by="cron")
    response = result.to_dict()
    response["message"] = format_job_result(result)
    return response
