"""Operator check that alert delivery (Telegram) is wired up."""

from typing import Optional

from fastapi import APIRouter, Header, Query
from pydantic import BaseModel

from agendabot.routers.auth import require_admin_token
from agendabot.services import alert_service

router = APIRouter(prefix="/alerts")


class AlertCheck(BaseModel):
    sent: bool
    level: str
    detail: str


@router.post("/test", response_model=AlertCheck)
def send_test_alert(
    level: str = Query(default="INFO", pattern="^(INFO|WARNING|ERROR|CRITICAL)$"),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    sent = alert_service.send_alert(level, "Test alert from the operator endpoint", {"source": "alerts.test"})
    detail = "delivered" if sent else "not delivered, check ALERT_BOT_TOKEN and ALERT_CHAT_ID"
    return AlertCheck(sent=sent, level=level, detail=detail)
