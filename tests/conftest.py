import uuid
from contextlib import nullcontext
from datetime import date, datetime, time
from types import SimpleNamespace
from typing import Optional
from unittest.mock import Mock
from zoneinfo import ZoneInfo

import pytest

from agendabot.schemas.conversation import AppointmentSnapshot
from agendabot.services.reply_service import ReplyGenerator
from agendabot.services.result import ErrorCode, Result
from agendabot.services.store import BookingStore
from agendabot.services.whatsapp_service import MessagingTransport

TZ = "America/Sao_Paulo"
SAO_PAULO = ZoneInfo(TZ)

# Monday
TODAY = date(2025, 6, 2)

WEEKLY_HOURS = {
    "segunda": "09:00-18:00",
    "terca": "09:00-18:00",
    "quarta": "09:00-18:00",
    "quinta": "09:00-18:00",
    "sexta": "09:00-18:00",
    "sabado": "09:00-13:00",
    "domingo": "FECHADO",
}


def local_clock(hour: int, minute: int = 0, day: date = TODAY, second: int = 0):
    """Clock returning an aware business-timezone datetime."""
    moment = datetime.combine(day, time(hour, minute, second), tzinfo=SAO_PAULO)
    return lambda: moment


class FakeStore(BookingStore):
    def __init__(self):
        self.companies: list = []
        self.business: dict = {}
        self.services: dict = {}
        self.professionals: dict = {}
        self.clients: dict = {}
        self.appointments: list = []
        self.followup_settings: dict = {}
        self.followup_modes: dict = {}
        self.notifications: list[dict] = []
        self.messages: list[dict] = []
        self.rollbacks = 0

    # fixtures helpers

    def add_company(self, company_id="c1", weekly_hours=None, open_days=None, **business):
        self.companies.append(SimpleNamespace(id=company_id, name=f"Empresa {company_id}", active=True))
        self.business[company_id] = SimpleNamespace(
            store_name=business.get("store_name", "Barbearia Teste"),
            agent_name=business.get("agent_name", "Bia"),
            base_prompt=business.get("base_prompt"),
            weekly_hours=dict(WEEKLY_HOURS if weekly_hours is None else weekly_hours),
            open_days=open_days,
        )
        self.services[company_id] = []
        self.professionals[company_id] = []
        self.clients[company_id] = []
        self.followup_modes[company_id] = []
        return company_id

    def add_service(self, company_id, name, duration_minutes=30, price=50):
        service = SimpleNamespace(id=str(uuid.uuid4()), name=name, duration_minutes=duration_minutes, price=price)
        self.services[company_id].append(service)
        return service

    def add_professional(self, company_id, name, specialty=""):
        professional = SimpleNamespace(id=str(uuid.uuid4()), name=name, specialty=specialty)
        self.professionals[company_id].append(professional)
        return professional

    def add_client(self, company_id, name, phone, followup_mode=None):
        client = SimpleNamespace(
            id=str(uuid.uuid4()), name=name, phone=phone, active=True, followup_mode=followup_mode
        )
        self.clients[company_id].append(client)
        return client

    def add_appointment(
        self,
        company_id,
        client,
        day,
        at,
        professional=None,
        service=None,
        status="agendado",
        warned=False,
    ):
        appointment = SimpleNamespace(
            id=str(uuid.uuid4()),
            company_id=company_id,
            client_id=client.id,
            professional_id=professional.id if professional else None,
            service_id=service.id if service else None,
            date=day,
            time=at,
            status=status,
            warned=warned,
            note=None,
        )
        self.appointments.append(appointment)
        return appointment

    def sent(self, dedupe_key: Optional[str] = None) -> list[dict]:
        return [
            n
            for n in self.notifications
            if n["status"] == "sent" and (dedupe_key is None or n["dedupe_key"] == dedupe_key)
        ]

    # BookingStore

    def list_companies(self):
        return list(self.companies)

    def get_business_settings(self, company_id):
        return self.business.get(company_id)

    def list_services(self, company_id):
        return list(self.services.get(company_id, []))

    def list_professionals(self, company_id):
        return list(self.professionals.get(company_id, []))

    def find_client_by_phone(self, company_id, phone):
        return next((c for c in self.clients.get(company_id, []) if c.phone == phone), None)

    def list_clients(self, company_id):
        return [c for c in self.clients.get(company_id, []) if c.active]

    def _name(self, rows, row_id, default):
        row = next((r for r in rows if r.id == row_id), None)
        return row.name if row else default

    def list_client_appointments(self, company_id, client_id, from_date):
        rows = sorted(
            (
                a
                for a in self.appointments
                if a.company_id == company_id
                and a.client_id == client_id
                and a.status == "agendado"
                and a.date >= from_date
            ),
            key=lambda a: (a.date, a.time),
        )
        return [
            AppointmentSnapshot(
                id=a.id,
                service=self._name(self.services[company_id], a.service_id, "Serviço"),
                professional=self._name(self.professionals[company_id], a.professional_id, "Profissional"),
                date=a.date,
                time=a.time,
                status=a.status,
            )
            for a in rows
        ]

    def list_appointments_on(self, company_id, day):
        return sorted(
            (a for a in self.appointments if a.company_id == company_id and a.date == day and a.status == "agendado"),
            key=lambda a: a.time,
        )

    def list_booked_times(self, company_id, professional_id, day):
        return [
            a.time
            for a in self.appointments
            if a.company_id == company_id
            and a.professional_id == professional_id
            and a.date == day
            and a.status != "cancelado"
        ]

    def last_finished_appointment(self, company_id, client_id):
        finished = [
            a
            for a in self.appointments
            if a.company_id == company_id and a.client_id == client_id and a.status == "finalizado"
        ]
        if not finished:
            return None
        return max(finished, key=lambda a: (a.date, a.time))

    def get_professional(self, company_id, professional_id):
        return next((p for p in self.professionals.get(company_id, []) if p.id == professional_id), None)

    def get_service(self, company_id, service_id):
        return next((s for s in self.services.get(company_id, []) if s.id == service_id), None)

    def get_followup_settings(self, company_id):
        return self.followup_settings.get(company_id)

    def list_followup_modes(self, company_id):
        return list(self.followup_modes.get(company_id, []))

    def was_notification_sent(self, appointment_id, dedupe_key):
        return any(
            n["appointment_id"] == appointment_id and n["dedupe_key"] == dedupe_key and n["status"] == "sent"
            for n in self.notifications
        )

    def record_notification(self, *, company_id, appointment_id, dedupe_key, status, error=None):
        if status == "sent" and self.was_notification_sent(appointment_id, dedupe_key):
            return False
        self.notifications.append(
            {
                "company_id": company_id,
                "appointment_id": appointment_id,
                "dedupe_key": dedupe_key,
                "status": status,
                "error": error,
            }
        )
        return True

    def mark_appointment_warned(self, appointment_id):
        appointment = next(a for a in self.appointments if a.id == appointment_id)
        if appointment.warned:
            return False
        appointment.warned = True
        return True

    def rollback(self):
        self.rollbacks += 1

    def save_message(
        self,
        *,
        company_id,
        phone,
        text,
        direction,
        client_name=None,
        extracted_data=None,
        conversation_type=None,
        ai_response=None,
    ):
        self.messages.append(
            {
                "company_id": company_id,
                "phone": phone,
                "text": text,
                "direction": direction,
                "client_name": client_name,
                "extracted_data": extracted_data,
                "conversation_type": conversation_type,
                "ai_response": ai_response,
            }
        )


class FakeTransport(MessagingTransport):
    def __init__(self, failures: int = 0, error: str = "gateway down"):
        self.failures = failures
        self.error = error
        self.calls: list[tuple[str, str, str]] = []
        self.sent: list[tuple[str, str, str]] = []

    async def send_text(self, company_id, address, text):
        self.calls.append((company_id, address, text))
        if self.failures > 0:
            self.failures -= 1
            return Result.failure(self.error, ErrorCode.TRANSPORT_ERROR)
        self.sent.append((company_id, address, text))
        return Result.success(f"msg-{len(self.sent)}")


class FakeReplyGenerator(ReplyGenerator):
    def __init__(self, reply: Optional[str] = "Claro! Vamos agendar."):
        self.reply = reply
        self.calls: list = []

    async def generate_reply(self, context, validation):
        self.calls.append((context, validation))
        return self.reply


def store_factory(store: FakeStore):
    return lambda: nullcontext(store)


@pytest.fixture
def store():
    """Barbershop with two professionals and two services, open Mon-Sat."""
    fake = FakeStore()
    fake.add_company("c1")
    fake.add_service("c1", "Corte de cabelo", duration_minutes=30, price=40)
    fake.add_service("c1", "Barba", duration_minutes=30, price=30)
    fake.add_professional("c1", "Ana")
    fake.add_professional("c1", "Bruno", specialty="barba")
    return fake


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def reply_generator():
    return FakeReplyGenerator()


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()
