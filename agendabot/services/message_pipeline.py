"""One inbound message: context, extraction, memory merge, validation, reply, send.

Any exception aborts the attempt and is retried by the dispatcher, so the
incoming message may be logged more than once for a retried job.
"""

import asyncio
from contextlib import AbstractContextManager
from datetime import date, datetime, timezone
from typing import Callable, Optional

from agendabot.logging_config import get_logger
from agendabot.schemas.conversation import ConversationContext, ConversationType, ends_booking_attempt
from agendabot.schemas.job import Job
from agendabot.services.context_service import assemble_context
from agendabot.services.errors import DeliveryError
from agendabot.services.extraction_memory import ExtractionMemory, memory_key
from agendabot.services.extraction_service import extract_fields
from agendabot.services.intent_service import is_opening_hours_question
from agendabot.services.reply_service import ReplyGenerator
from agendabot.services.scheduling_service import business_now, format_hhmm
from agendabot.services.store import BookingStore
from agendabot.services.validation_pipeline import ValidationRules, validate_and_enrich
from agendabot.services.whatsapp_service import MessagingTransport

logger = get_logger("message_pipeline")

BLOCKED_SUFFIX = "\n\nQuer agendar para outro dia?"
CONSULT_LISTING_LIMIT = 10


class Outcome:
    BLOCKED = "blocked"
    CONSULT = "consult"
    REPLIED = "replied"
    NO_REPLY = "no_reply"


def blocked_message(reason: Optional[str]) -> str:
    return f"{reason or 'Estamos fechados neste dia.'}{BLOCKED_SUFFIX}"


def consult_listing(context: ConversationContext, only_date: Optional[date] = None) -> Optional[str]:
    appointments = [a for a in context.upcoming_appointments if a.date >= context.today]
    if only_date is not None:
        appointments = [a for a in appointments if a.date == only_date]
    if not appointments:
        return None

    lines = [
        f"- {a.service} — {a.date.strftime('%d/%m/%Y')} às {format_hhmm(a.time)}"
        for a in appointments[:CONSULT_LISTING_LIMIT]
    ]
    greeting = f"Oi {context.client.name}! 😊" if context.client.name else "Oi! 😊"
    return f"{greeting}\nPara os próximos dias, você tem:\n" + "\n".join(lines)


class MessagePipeline:
    def __init__(
        self,
        *,
        store_factory: Callable[[], AbstractContextManager[BookingStore]],
        memory: ExtractionMemory,
        transport: MessagingTransport,
        reply_generator: ReplyGenerator,
        rules: ValidationRules = ValidationRules(),
        timezone_name: str = "America/Sao_Paulo",
        reply_timeout_seconds: float = 30.0,
        send_timeout_seconds: float = 15.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store_factory = store_factory
        self.memory = memory
        self.transport = transport
        self.reply_generator = reply_generator
        self.rules = rules
        self.timezone_name = timezone_name
        self.reply_timeout_seconds = reply_timeout_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def __call__(self, job: Job) -> str:
        return await self.process(job)

    async def process(self, job: Job) -> str:
        payload = job.payload
        key = memory_key(payload.company_id, payload.subject_address)
        now = business_now(self.timezone_name, self._clock())

        with self.store_factory() as store:
            context = assemble_context(
                store,
                company_id=payload.company_id,
                subject_address=payload.subject_address,
                raw_text=payload.raw_text,
                now=now,
                timezone=self.timezone_name,
                pending=await self.memory.get(key),
            )
            extracted = extract_fields(payload.raw_text, context)
            merged = await self.memory.merge(key, extracted)
            validation = validate_and_enrich(store, merged, context, self.rules)

            store.save_message(
                company_id=payload.company_id,
                phone=context.client.phone,
                text=payload.raw_text,
                direction="incoming",
                client_name=context.client.name,
                extracted_data=validation.model_dump(mode="json", exclude={"enriched_context"}),
                conversation_type=context.conversation_type.value,
            )

            outcome = await self._respond(store, context, validation, extracted.date)

        if ends_booking_attempt(context.conversation_type, extracted, merged):
            await self.memory.reset(key)

        logger.info(
            "Message processed",
            extra={
                "context": {
                    "job_id": job.id,
                    "company_id": payload.company_id,
                    "conversation_type": context.conversation_type.value,
                    "outcome": outcome,
                    "blocked_status": validation.status,
                }
            },
        )
        return outcome

    async def _respond(self, store: BookingStore, context: ConversationContext, validation, requested_date) -> str:
        if validation.blocked:
            text = blocked_message(validation.reason)
            await self._send_and_log(store, context, text)
            return Outcome.BLOCKED

        if context.conversation_type == ConversationType.CONSULT and not is_opening_hours_question(context.raw_text):
            listing = consult_listing(context, requested_date)
            if listing:
                await self._send_and_log(store, context, listing)
                return Outcome.CONSULT

        reply = await asyncio.wait_for(
            self.reply_generator.generate_reply(validation.enriched_context or context, validation),
            timeout=self.reply_timeout_seconds,
        )
        if not reply:
            return Outcome.NO_REPLY
        await self._send_and_log(store, context, reply, ai_response=reply)
        return Outcome.REPLIED

    async def _send_and_log(
        self,
        store: BookingStore,
        context: ConversationContext,
        text: str,
        ai_response: Optional[str] = None,
    ) -> None:
        result = await asyncio.wait_for(
            self.transport.send_text(context.company_id, context.client.phone, text),
            timeout=self.send_timeout_seconds,
        )
        if not result.ok:
            raise DeliveryError(context.client.phone, result.error, result.error_code)

        store.save_message(
            company_id=context.company_id,
            phone=context.client.phone,
            text=text,
            direction="outgoing",
            conversation_type=context.conversation_type.value,
            ai_response=ai_response,
        )
