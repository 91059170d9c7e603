"""Sequential business-rule gate between extraction and reply generation.

Stages run in a fixed order and the first failing one short-circuits:
day open, date window, time of day already passed, slot availability
(suggests, never blocks) and professional specialty.
"""

from dataclasses import dataclass
from datetime import date, time
from typing import Optional

from agendabot.logging_config import get_logger
from agendabot.schemas.conversation import ConversationContext, ConversationType, ExtractedFields, ProfessionalInfo
from agendabot.schemas.validation import BlockStatus, ProfessionalSuggestion, ValidationResult
from agendabot.services.intent_service import normalize_for_matching
from agendabot.services.scheduling_service import (
    OpeningHours,
    available_periods,
    available_slots,
    check_day_open,
    filter_by_period,
    format_hhmm,
    hours_for,
    nearest_slots,
)
from agendabot.services.store import BookingStore

logger = get_logger("validation_pipeline")

PERIOD_SUGGESTIONS = 6
PERIOD_SUGGESTIONS_PER_PROFESSIONAL = 4
ALTERNATIVES_PER_PROFESSIONAL = 3


@dataclass(frozen=True)
class ValidationRules:
    step_minutes: int = 30
    default_service_minutes: int = 30
    max_days_ahead: int = 30
    max_suggestions: int = 4


class _SlotFinder:
    def __init__(self, store: BookingStore, context: ConversationContext, day: date, hours, duration, rules):
        self.store = store
        self.context = context
        self.day = day
        self.hours: Optional[OpeningHours] = hours
        self.duration = duration
        self.rules = rules

    def free(self, professional: ProfessionalInfo) -> list[time]:
        booked = self.store.list_booked_times(self.context.company_id, professional.id, self.day)
        not_before = self.context.current_time if self.day == self.context.today else None
        return available_slots(self.hours, booked, self.duration, self.rules.step_minutes, not_before)

    def alternatives_by_professional(self, requested: time) -> list[ProfessionalSuggestion]:
        suggestions = []
        for professional in self.context.professionals:
            slots = self.free(professional)
            if requested in slots:
                suggestions.append(ProfessionalSuggestion(professional=professional.name, slots=[requested]))
                continue
            closest = nearest_slots(slots, requested, ALTERNATIVES_PER_PROFESSIONAL)
            if closest:
                suggestions.append(ProfessionalSuggestion(professional=professional.name, slots=closest))
        return suggestions

    def period_by_professional(self, period: str) -> list[ProfessionalSuggestion]:
        suggestions = []
        for professional in self.context.professionals:
            slots = filter_by_period(self.free(professional), period)
            if slots:
                suggestions.append(
                    ProfessionalSuggestion(
                        professional=professional.name,
                        slots=slots[:PERIOD_SUGGESTIONS_PER_PROFESSIONAL],
                    )
                )
        return suggestions


def _check_date_window(day: date, today: date, max_days_ahead: int) -> Optional[str]:
    if day < today:
        return "Essa data já passou. Escolha uma data a partir de hoje."
    if (day - today).days > max_days_ahead:
        return f"Só consigo agendar com até {max_days_ahead} dias de antecedência."
    return None


def _offers_service(professional: ProfessionalInfo, service: str) -> bool:
    if not professional.specialty:
        return True
    return normalize_for_matching(service) in normalize_for_matching(professional.specialty)


def validate_and_enrich(
    store: BookingStore,
    fields: ExtractedFields,
    context: ConversationContext,
    rules: ValidationRules = ValidationRules(),
) -> ValidationResult:
    enriched = context.model_copy(update={"pending_extraction": fields})
    result = ValidationResult(extracted=fields, enriched_context=enriched)
    log_context = {"company_id": context.company_id, "subject": context.subject_address}

    if context.conversation_type == ConversationType.CONSULT:
        return result
    if fields.date is None:
        return result

    business = store.get_business_settings(context.company_id)

    # 1. day open (and requested time inside opening hours)
    day_check = check_day_open(business, fields.date, fields.time)
    if not day_check.open:
        logger.info("Validation blocked: closed", extra={"context": {**log_context, "date": fields.date}})
        return ValidationResult.block(BlockStatus.CLOSED, day_check.reason, fields)

    # 2. date window
    reason = _check_date_window(fields.date, context.today, rules.max_days_ahead)
    if reason:
        logger.info("Validation blocked: invalid date", extra={"context": {**log_context, "date": fields.date}})
        return ValidationResult.block(BlockStatus.INVALID_DATE, reason, fields)

    service = context.find_service(fields.service)
    duration = service.duration_minutes if service else rules.default_service_minutes
    professional = context.find_professional(fields.professional)
    if fields.professional and professional is None:
        result.notes.append(f"Profissional {fields.professional} não encontrado")

    finder = _SlotFinder(store, context, fields.date, hours_for(business, fields.date), duration, rules)

    # 3. time of day already passed
    if fields.time is not None and fields.date == context.today and fields.time < context.current_time:
        blocked = ValidationResult.block(
            BlockStatus.PAST_TIME,
            f"O horário {format_hhmm(fields.time)} de hoje já passou. Escolha um horário mais tarde.",
            fields,
        )
        if professional is not None:
            blocked.suggested_slots = finder.free(professional)[: rules.max_suggestions]
        logger.info("Validation blocked: past time", extra={"context": {**log_context, "time": fields.time}})
        return blocked

    # 4. slot availability
    if fields.time is not None and professional is not None:
        slots = finder.free(professional)
        result.slot_available = fields.time in slots
        if not result.slot_available:
            result.suggested_slots = nearest_slots(slots, fields.time, rules.max_suggestions)
            if not context.is_solo:
                result.professional_suggestions = finder.alternatives_by_professional(fields.time)
    elif fields.time is not None:
        result.professional_suggestions = finder.alternatives_by_professional(fields.time)
    elif fields.period:
        if professional is not None:
            result.suggested_slots = filter_by_period(finder.free(professional), fields.period)[:PERIOD_SUGGESTIONS]
        else:
            result.professional_suggestions = finder.period_by_professional(fields.period)
    else:
        result.available_periods = available_periods(
            finder.hours, fields.date, context.today, context.current_time
        )

    # 5. specialty
    if professional is not None and fields.service and not _offers_service(professional, fields.service):
        logger.info(
            "Validation blocked: specialty",
            extra={"context": {**log_context, "professional": professional.name, "service": fields.service}},
        )
        return ValidationResult.block(
            BlockStatus.SPECIALTY, f"{professional.name} não faz {fields.service}.", fields
        )

    return result
