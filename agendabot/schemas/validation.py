from datetime import time
from typing import Optional

from pydantic import BaseModel, Field

from agendabot.schemas.conversation import ConversationContext, ExtractedFields


class BlockStatus:
    CLOSED = "fechado"
    INVALID_DATE = "data_invalida"
    PAST_TIME = "horario_passado"
    SPECIALTY = "especialidade"


class ProfessionalSuggestion(BaseModel):
    professional: str
    slots: list[time] = Field(default_factory=list)


class ValidationResult(BaseModel):
    blocked: bool = False
    status: Optional[str] = None
    reason: Optional[str] = None
    extracted: ExtractedFields = Field(default_factory=ExtractedFields)
    enriched_context: Optional[ConversationContext] = None
    slot_available: Optional[bool] = None
    suggested_slots: list[time] = Field(default_factory=list)
    professional_suggestions: list[ProfessionalSuggestion] = Field(default_factory=list)
    available_periods: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    @classmethod
    def block(cls, status: str, reason: str, extracted: ExtractedFields) -> "ValidationResult":
        return cls(blocked=True, status=status, reason=reason, extracted=extracted)
