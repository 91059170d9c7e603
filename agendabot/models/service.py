import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import UUID

from agendabot.database import Base


class Service(Base):
    __tablename__ = "services"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    name = Column(Text, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)
    price = Column(Numeric(10, 2), default=0)
    active = Column(Boolean, nullable=False, default=True)
