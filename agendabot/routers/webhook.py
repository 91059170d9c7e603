"""Evolution API webhook receiver.

Answers 200 for every event so the gateway never redelivers; inbound text
messages are only enqueued here, processing happens in the dispatcher.
Messages the business sends itself (``fromMe``) pause the assistant for that
client, and client messages arriving during the pause are logged, not enqueued.
"""

from fastapi import APIRouter, Request

from agendabot import runtime
from agendabot.logging_config import get_logger
from agendabot.schemas.webhook import TEXT_EVENT, EvolutionWebhook, WebhookAck

logger = get_logger("webhook")

router = APIRouter()


@router.post("/webhooks/evolution/{company_id}", response_model=WebhookAck)
async def evolution_webhook(company_id: str, request: Request) -> WebhookAck:
    try:
        payload = EvolutionWebhook.model_validate(await request.json())
    except ValueError as exc:
        logger.warning("Unreadable webhook body", extra={"context": {"company_id": company_id, "error": str(exc)}})
        return WebhookAck(success=False, message="invalid payload")

    if payload.event != TEXT_EVENT:
        logger.debug("Webhook event ignored", extra={"context": {"company_id": company_id, "event": payload.event}})
        return WebhookAck(success=True, message=f"ignored event {payload.event}")

    enqueued = held = 0
    try:
        for message in payload.messages():
            if message.is_group:
                continue
            text = message.text()
            sender = message.sender
            if not text or not sender:
                continue
            if message.key.fromMe:
                runtime.pause_for_owner(company_id, sender, text)
                continue
            if runtime.hold_if_paused(company_id, sender, text):
                held += 1
                continue
            runtime.enqueue_inbound_message(
                company_id,
                sender,
                text,
                {
                    "message_id": message.key.id,
                    "remote_jid": message.key.remoteJid,
                    "push_name": message.pushName,
                    "instance": payload.instance,
                },
            )
            enqueued += 1
    except Exception as exc:
        logger.exception("Webhook enqueue failed", extra={"context": {"company_id": company_id, "error": str(exc)}})
        return WebhookAck(success=False, enqueued=enqueued, held=held, message="enqueue failed")

    return WebhookAck(success=True, enqueued=enqueued, held=held)
