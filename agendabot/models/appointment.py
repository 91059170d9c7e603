import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, Date, ForeignKey, Text, Time
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from agendabot.database import Base


class AppointmentStatus(str, Enum):
    SCHEDULED = "agendado"
    FINISHED = "finalizado"
    CANCELLED = "cancelado"
    NO_SHOW = "ausente"


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False)
    professional_id = Column(UUID(as_uuid=True), ForeignKey("professionals.id"))
    service_id = Column(UUID(as_uuid=True), ForeignKey("services.id"))
    date = Column(Date, nullable=False)  # business-timezone calendar date
    time = Column(Time, nullable=False)  # business-timezone wall clock
    status = Column(Text, nullable=False, default=AppointmentStatus.SCHEDULED.value)
    warned = Column(Boolean, nullable=False, default=False)
    note = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True))
