import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, Text, Time, text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from agendabot.database import Base


class FollowUpSettings(Base):
    __tablename__ = "followup_settings"

    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), primary_key=True)
    is_active = Column(Boolean, nullable=False, default=False)
    warning_time = Column(Time)
    template_warning = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True))


class FollowUpModeRecord(Base):
    __tablename__ = "followup_modes"

    id = Column(Text, primary_key=True)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), primary_key=True)
    name = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    trigger_type = Column(Text, nullable=False)  # time_fixed, antecedencia, dias_apos
    warning_time = Column(Time)
    reminder_minutes = Column(Integer)
    trigger_days = Column(Integer)
    template_warning = Column(Text)
    template_reminder = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True))


class FollowUpMessage(Base):
    """Append-only dedupe/audit log of follow-up send attempts."""

    __tablename__ = "followup_messages"
    __table_args__ = (
        Index(
            "uq_followup_messages_sent",
            "appointment_id",
            "dedupe_key",
            unique=True,
            postgresql_where=text("status = 'sent'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), nullable=False)
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=False)
    dedupe_key = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # sent, failed
    error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
