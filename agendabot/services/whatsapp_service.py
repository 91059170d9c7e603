"""Outbound WhatsApp text delivery through an Evolution API gateway."""

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from agendabot.logging_config import get_logger
from agendabot.services.result import ErrorCode, Result

logger = get_logger("whatsapp_service")

SEND_DELAY_MS = 1200


def digits_only(address: str) -> str:
    local = (address or "").split("@", 1)[0]
    return "".join(ch for ch in local if ch.isdigit())


class MessagingTransport(ABC):
    """``send_text`` is at-least-once and not idempotent on the provider side."""

    @abstractmethod
    async def send_text(self, company_id: str, address: str, text: str) -> Result[str]: ...


class EvolutionAPITransport(MessagingTransport):
    """One Evolution instance per company, named after the company id."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def send_text(self, company_id: str, address: str, text: str) -> Result[str]:
        if not self.api_key:
            return Result.failure("Evolution API key not configured", ErrorCode.NOT_CONFIGURED)

        number = digits_only(address)
        if not number:
            return Result.failure(f"Invalid address: {address!r}", ErrorCode.INVALID_ADDRESS)

        url = f"{self.base_url}/message/sendText/{company_id}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers={"apikey": self.api_key, "Content-Type": "application/json"},
                    json={"number": number, "text": text, "delay": SEND_DELAY_MS},
                )
        except httpx.TimeoutException as exc:
            logger.warning(
                "Evolution send timed out",
                extra={"context": {"company_id": company_id, "number": number, "error": str(exc)}},
            )
            return Result.failure(f"timeout: {exc}", ErrorCode.TIMEOUT)
        except httpx.HTTPError as exc:
            logger.warning(
                "Evolution send failed",
                extra={"context": {"company_id": company_id, "number": number, "error": str(exc)}},
            )
            return Result.failure(str(exc), ErrorCode.TRANSPORT_ERROR)

        if response.status_code >= 300:
            logger.warning(
                "Evolution send rejected",
                extra={
                    "context": {
                        "company_id": company_id,
                        "number": number,
                        "status_code": response.status_code,
                        "body": response.text[:500],
                    }
                },
            )
            return Result.failure(f"HTTP {response.status_code}: {response.text[:200]}", ErrorCode.TRANSPORT_ERROR)

        try:
            data = response.json()
        except ValueError:
            data = {}
        key = data.get("key") if isinstance(data, dict) else None
        message_id = (key or {}).get("id") or ""
        logger.info(
            "Evolution message sent",
            extra={"context": {"company_id": company_id, "number": number, "message_id": message_id}},
        )
        return Result.success(message_id)
