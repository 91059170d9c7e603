import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from agendabot.database import Base


class WhatsAppMessage(Base):
    __tablename__ = "whatsapp_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), nullable=False)
    client_phone = Column(Text, nullable=False)
    client_name = Column(Text)
    message_text = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False, default="text")
    direction = Column(Text, nullable=False)  # incoming, outgoing
    extracted_data = Column(JSONB, nullable=False, default=dict)
    conversation_type = Column(Text)
    ai_response = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
