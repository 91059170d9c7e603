import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from agendabot.database import Base


class InboundJob(Base):
    __tablename__ = "inbound_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), nullable=False)
    subject_address = Column(Text, nullable=False)
    payload_json = Column(JSONB, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, FAILED
    priority = Column(Integer, nullable=False, default=1)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(TIMESTAMP(timezone=True))
    last_error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
