import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from agendabot.database import Base


class Client(Base):
    __tablename__ = "clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    name = Column(Text)
    phone = Column(Text, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    followup_mode = Column(Text)  # comma-separated follow-up mode ids
    created_at = Column(TIMESTAMP(timezone=True))

    company = relationship("Company", back_populates="clients")


def parse_mode_ids(raw) -> set[str]:
    if raw is None:
        return set()
    if isinstance(raw, str):
        return {part.strip() for part in raw.split(",") if part.strip()}
    return {str(part).strip() for part in raw if str(part).strip()}
