"""Operator view of the inbound-message queue."""

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from agendabot import runtime
from agendabot.routers.auth import require_admin_token
from agendabot.schemas.job import FailedJobItem, QueueHealth

router = APIRouter(prefix="/queue")


@router.get("/health", response_model=QueueHealth)
def queue_health(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")):
    require_admin_token(x_admin_token)
    return runtime.get_queue_health()


@router.get("/failed", response_model=list[FailedJobItem])
def failed_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    return runtime.get_runtime().dispatcher.failed_jobs(limit)


@router.delete("/jobs/{job_id}")
def remove_job(job_id: str, x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")):
    require_admin_token(x_admin_token)
    if not runtime.get_runtime().dispatcher.remove(job_id):
        raise HTTPException(status_code=404, detail="Job not found or already started")
    return {"removed": job_id}
