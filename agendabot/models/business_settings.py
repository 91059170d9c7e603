from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from agendabot.database import Base


class BusinessSettings(Base):
    __tablename__ = "business_settings"

    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), primary_key=True)
    store_name = Column(Text, nullable=False, default="Nossa Loja")
    agent_name = Column(Text, nullable=False, default="Atendente")
    base_prompt = Column(Text)
    # {"segunda": "09:00-18:00", "domingo": "FECHADO", ...}
    weekly_hours = Column(JSONB, nullable=False, default=dict)
    # {"segunda": true, "sabado": false, ...}; a false entry closes the day
    open_days = Column(JSONB)
    updated_at = Column(TIMESTAMP(timezone=True))

    company = relationship("Company", back_populates="business_settings")
