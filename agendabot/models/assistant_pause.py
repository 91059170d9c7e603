from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from agendabot.database import Base


class AssistantPause(Base):
    """The owner answered a client from the business phone; the assistant stays quiet until ``paused_until``."""

    __tablename__ = "assistant_pauses"

    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), primary_key=True)
    subject_address = Column(Text, primary_key=True)
    paused_until = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
