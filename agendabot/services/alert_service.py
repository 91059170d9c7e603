"""Operator alerts.

Used for conditions nobody would otherwise notice: an inbound job that exhausted
its attempts (the customer got no reply) or a company whose follow-up check
crashed. Alerts go to a Telegram chat through the Bot API; without a bot token
and chat id they are only logged.
"""

from typing import Optional

import httpx

from agendabot.config import settings
from agendabot.logging_config import get_logger

logger = get_logger("alert_service")

TELEGRAM_SEND_URL = "https://api.telegram.org/bot{token}/sendMessage"

LEVEL_EMOJI = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_EMOJI.get(level, '📢')} *{level}* agendabot\n\n{message}"
    if context:
        lines = "\n".join(f"  {key}: {value}" for key, value in context.items())
        text += f"\n\n```\n{lines}\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Returns True only when Telegram accepted the message."""
    log_context = {"level": level, "alert": message, **(context or {})}
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning("Alert not configured", extra={"context": log_context})
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                TELEGRAM_SEND_URL.format(token=settings.alert_bot_token),
                json={
                    "chat_id": settings.alert_chat_id,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
    except httpx.HTTPError as exc:
        logger.error("Alert delivery failed", extra={"context": {**log_context, "error": str(exc)}})
        return False

    if response.status_code != 200:
        logger.error("Alert rejected", extra={"context": {**log_context, "status": response.status_code}})
        return False
    return True


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)
