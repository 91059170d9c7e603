import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID

from agendabot.database import Base


class Professional(Base):
    __tablename__ = "professionals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    name = Column(Text, nullable=False)
    specialty = Column(Text)  # free text, e.g. "corte, barba"; empty means every service
    phone = Column(Text)
    active = Column(Boolean, nullable=False, default=True)
