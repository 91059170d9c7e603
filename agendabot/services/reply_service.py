"""Reply generation for conversations that pass validation."""

from abc import ABC, abstractmethod
from typing import Optional

from agendabot.logging_config import get_logger
from agendabot.schemas.conversation import ConversationContext
from agendabot.schemas.validation import ValidationResult
from agendabot.services.llm import LLMProvider, chat_messages
from agendabot.services.scheduling_service import format_hhmm

logger = get_logger("reply_service")

WEEKDAYS_PT = ("segunda-feira", "terça-feira", "quarta-feira", "quinta-feira", "sexta-feira", "sábado", "domingo")


class ReplyGenerator(ABC):
    @abstractmethod
    async def generate_reply(self, context: ConversationContext, validation: ValidationResult) -> Optional[str]:
        """Reply text, or None when nothing should be sent."""


def _format_slots(slots) -> str:
    return ", ".join(format_hhmm(slot) for slot in slots)


def build_system_prompt(context: ConversationContext, validation: ValidationResult) -> str:
    lines = [
        f"Você é {context.agent_name}, atendente virtual de {context.store_name} no WhatsApp.",
        context.base_prompt,
        "",
        f"Hoje é {WEEKDAYS_PT[context.today.weekday()]}, {context.today.strftime('%d/%m/%Y')}, "
        f"agora são {format_hhmm(context.current_time)} ({context.timezone}).",
        f"Tipo de conversa: {context.conversation_type.value}.",
    ]

    if context.services:
        lines.append("")
        lines.append("Serviços:")
        for service in context.services:
            lines.append(f"- {service.name} ({service.duration_minutes} min, R$ {service.price:.2f})")

    if context.professionals:
        names = ", ".join(p.name for p in context.professionals)
        lines.append("")
        if context.is_solo:
            lines.append(f"Você atende com um único profissional: {names}. Nunca sugira outros.")
        else:
            lines.append(f"Você atende com uma equipe: {names}. Ofereça todos os profissionais disponíveis.")

    lines.append("")
    if context.client.exists:
        lines.append(f"Cliente cadastrado: {context.client.name or 'sem nome'} ({context.client.phone}).")
    else:
        lines.append(f"Cliente novo ({context.client.phone}); peça nome e sobrenome antes de confirmar.")
    for appointment in context.upcoming_appointments[:5]:
        lines.append(
            f"- Agendamento: {appointment.service} com {appointment.professional} em "
            f"{appointment.date.strftime('%d/%m/%Y')} às {format_hhmm(appointment.time)}"
        )

    fields = validation.extracted
    if not fields.is_empty():
        lines.append("")
        lines.append("Dados já informados pelo cliente (não pergunte de novo):")
        if fields.service:
            lines.append(f"- Serviço: {fields.service}")
        if fields.date:
            lines.append(f"- Data: {fields.date.strftime('%d/%m/%Y')}")
        if fields.period:
            lines.append(f"- Período: {fields.period}")
        if fields.time:
            lines.append(f"- Horário: {format_hhmm(fields.time)}")
        if fields.professional:
            lines.append(f"- Profissional: {fields.professional}")
        if fields.name:
            lines.append(f"- Nome: {fields.name}")

    if validation.slot_available is False:
        lines.append("")
        lines.append("O horário pedido está ocupado.")
    if validation.suggested_slots:
        lines.append(f"Horários livres sugeridos: {_format_slots(validation.suggested_slots)}")
    for suggestion in validation.professional_suggestions:
        lines.append(f"Livres com {suggestion.professional}: {_format_slots(suggestion.slots)}")
    if validation.available_periods:
        lines.append(f"Períodos com vaga: {', '.join(validation.available_periods)}")
    for note in validation.notes:
        lines.append(f"Observação: {note}")

    lines.append("")
    lines.append("Responda em português, de forma curta e cordial. Nunca invente horários fora dos listados.")
    return "\n".join(lines)


class LLMReplyGenerator(ReplyGenerator):
    def __init__(self, provider: LLMProvider, model: Optional[str] = None, max_tokens: int = 600):
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens

    async def generate_reply(self, context: ConversationContext, validation: ValidationResult) -> Optional[str]:
        messages = chat_messages(build_system_prompt(context, validation), context.raw_text)
        response = await self.provider.generate(messages, model=self.model, max_tokens=self.max_tokens)
        reply = response.text
        if not reply:
            logger.warning(
                "Empty reply from model",
                extra={"context": {"company_id": context.company_id, "model": response.model}},
            )
            return None
        return reply
