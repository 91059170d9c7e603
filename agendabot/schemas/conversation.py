import datetime as dt
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ConversationType(str, Enum):
    BOOK = "agendar"
    CONSULT = "consultar"
    CANCEL = "cancelar"
    RESCHEDULE = "remarcar"
    DELAY = "atrasar"
    COMMENT = "comentario"
    CONFIRMATION = "confirmacao"


class ExtractedFields(BaseModel):
    service: Optional[str] = None
    date: Optional[dt.date] = None
    time: Optional[dt.time] = None
    professional: Optional[str] = None
    name: Optional[str] = None
    period: Optional[str] = None  # manhã, tarde, noite

    def merged_with(self, newer: "ExtractedFields") -> "ExtractedFields":
        """Field-wise union: present values in ``newer`` win, absent ones keep ours."""
        values = self.model_dump()
        for field, value in newer.model_dump().items():
            if value is not None:
                values[field] = value
        return ExtractedFields(**values)

    def is_empty(self) -> bool:
        return all(value is None for value in self.model_dump().values())

    def is_complete(self) -> bool:
        """Enough to book: service, date and time are all known."""
        return self.service is not None and self.date is not None and self.time is not None


def ends_booking_attempt(
    conversation_type: ConversationType, extracted: ExtractedFields, merged: ExtractedFields
) -> bool:
    """Whether the accumulated booking fields should be discarded after this turn.

    A cancel always ends the attempt. A confirmation ends it only when the turn
    adds nothing new ("sim", "pode confirmar") and a complete booking is pending;
    "pode ser amanhã" or "ok, de manhã" are answers that keep accumulating.
    """
    if conversation_type == ConversationType.CANCEL:
        return True
    if conversation_type == ConversationType.CONFIRMATION:
        return extracted.is_empty() and merged.is_complete()
    return False


class ClientSnapshot(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    phone: str
    exists: bool = False


class AppointmentSnapshot(BaseModel):
    id: str
    service: str
    professional: str
    date: dt.date
    time: dt.time
    status: str
    note: Optional[str] = None


class ServiceInfo(BaseModel):
    id: str
    name: str
    duration_minutes: int = 30
    price: float = 0


class ProfessionalInfo(BaseModel):
    id: str
    name: str
    specialty: str = ""


class ConversationContext(BaseModel):
    """Transient per-job view of a conversation; rebuilt for every job, never persisted."""

    company_id: str
    subject_address: str
    conversation_type: ConversationType
    client: ClientSnapshot
    upcoming_appointments: list[AppointmentSnapshot] = Field(default_factory=list)
    pending_extraction: ExtractedFields = Field(default_factory=ExtractedFields)

    raw_text: str = ""
    store_name: str = "Nossa Loja"
    agent_name: str = "Atendente"
    base_prompt: str = "Seja prestativo e cordial."
    services: list[ServiceInfo] = Field(default_factory=list)
    professionals: list[ProfessionalInfo] = Field(default_factory=list)
    today: dt.date
    current_time: dt.time
    timezone: str

    @property
    def is_solo(self) -> bool:
        return len(self.professionals) == 1

    def find_service(self, name: Optional[str]) -> Optional[ServiceInfo]:
        if not name:
            return None
        wanted = name.casefold()
        return next((s for s in self.services if s.name.casefold() == wanted), None)

    def find_professional(self, name: Optional[str]) -> Optional[ProfessionalInfo]:
        if not name:
            return None
        wanted = name.casefold()
        return next((p for p in self.professionals if p.name.casefold() == wanted), None)
