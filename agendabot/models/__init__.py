from agendabot.models.appointment import Appointment, AppointmentStatus
from agendabot.models.assistant_pause import AssistantPause
from agendabot.models.business_settings import BusinessSettings
from agendabot.models.client import Client
from agendabot.models.company import Company
from agendabot.models.followup import FollowUpMessage, FollowUpModeRecord, FollowUpSettings
from agendabot.models.inbound_job import InboundJob
from agendabot.models.message import WhatsAppMessage
from agendabot.models.professional import Professional
from agendabot.models.service import Service

__all__ = [
    "Company",
    "BusinessSettings",
    "Service",
    "Professional",
    "Client",
    "Appointment",
    "AppointmentStatus",
    "FollowUpSettings",
    "FollowUpModeRecord",
    "FollowUpMessage",
    "WhatsAppMessage",
    "InboundJob",
    "AssistantPause",
]
