"""Builds the per-job ConversationContext from persisted state."""

from datetime import datetime

from agendabot.logging_config import get_logger
from agendabot.schemas.conversation import (
    ClientSnapshot,
    ConversationContext,
    ExtractedFields,
    ProfessionalInfo,
    ServiceInfo,
)
from agendabot.services.intent_service import classify_conversation_type
from agendabot.services.store import BookingStore

logger = get_logger("context_service")


def phone_from_address(address: str) -> str:
    """``5511999999999@s.whatsapp.net`` -> ``5511999999999``."""
    local = (address or "").split("@", 1)[0].split(":", 1)[0]
    return "".join(ch for ch in local if ch.isdigit())


def assemble_context(
    store: BookingStore,
    *,
    company_id: str,
    subject_address: str,
    raw_text: str,
    now: datetime,
    timezone: str,
    pending: ExtractedFields | None = None,
) -> ConversationContext:
    """Snapshot of the conversation; ``now`` is business-timezone wall clock.

    Unknown senders get an anonymous client shape; the client record itself is
    only created when a booking is confirmed.
    """
    phone = phone_from_address(subject_address)
    conversation_type = classify_conversation_type(raw_text)

    client = store.find_client_by_phone(company_id, phone)
    if client is not None:
        snapshot = ClientSnapshot(id=str(client.id), name=client.name, phone=phone, exists=True)
        appointments = store.list_client_appointments(company_id, client.id, now.date())
    else:
        snapshot = ClientSnapshot(phone=phone)
        appointments = []

    business = store.get_business_settings(company_id)
    services = [
        ServiceInfo(
            id=str(s.id),
            name=s.name,
            duration_minutes=s.duration_minutes or 30,
            price=float(s.price or 0),
        )
        for s in store.list_services(company_id)
    ]
    professionals = [
        ProfessionalInfo(id=str(p.id), name=p.name, specialty=p.specialty or "")
        for p in store.list_professionals(company_id)
    ]

    context = ConversationContext(
        company_id=str(company_id),
        subject_address=subject_address,
        conversation_type=conversation_type,
        client=snapshot,
        upcoming_appointments=appointments,
        pending_extraction=pending or ExtractedFields(),
        raw_text=raw_text,
        services=services,
        professionals=professionals,
        today=now.date(),
        current_time=now.time().replace(second=0, microsecond=0),
        timezone=timezone,
    )
    if business is not None:
        context.store_name = business.store_name or context.store_name
        context.agent_name = business.agent_name or context.agent_name
        context.base_prompt = business.base_prompt or context.base_prompt

    logger.info(
        "Context assembled",
        extra={
            "context": {
                "company_id": str(company_id),
                "phone": phone,
                "conversation_type": conversation_type.value,
                "client_exists": snapshot.exists,
                "appointments": len(appointments),
            }
        },
    )
    return context
