"""Manual follow-up sweeps for operators."""

from typing import Optional

from fastapi import APIRouter, Header

from agendabot import runtime
from agendabot.routers.auth import require_admin_token

router = APIRouter(prefix="/follow-up")


@router.post("/check-now")
async def check_now(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")):
    require_admin_token(x_admin_token)
    return await runtime.run_follow_up_sweep()


@router.post("/check/{company_id}")
async def check_company(company_id: str, x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")):
    require_admin_token(x_admin_token)
    return await runtime.run_follow_up_sweep(company_id)
