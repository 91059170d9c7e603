"""Persistence surface used by the booking pipeline and the follow-up engine."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from agendabot.database import SessionLocal
from agendabot.logging_config import get_logger
from agendabot.models import (
    Appointment,
    AppointmentStatus,
    BusinessSettings,
    Client,
    Company,
    FollowUpMessage,
    FollowUpModeRecord,
    FollowUpSettings,
    Professional,
    Service,
    WhatsAppMessage,
)
from agendabot.schemas.conversation import AppointmentSnapshot

logger = get_logger("store")


class BookingStore(ABC):
    """Read-mostly view over company, client and appointment state.

    The only writes the engine performs are the message log, the follow-up
    dedupe log and the appointment "warned" flag.
    """

    @abstractmethod
    def list_companies(self) -> list[Any]: ...

    @abstractmethod
    def get_business_settings(self, company_id) -> Optional[Any]: ...

    @abstractmethod
    def list_services(self, company_id) -> list[Any]: ...

    @abstractmethod
    def list_professionals(self, company_id) -> list[Any]: ...

    @abstractmethod
    def find_client_by_phone(self, company_id, phone: str) -> Optional[Any]: ...

    @abstractmethod
    def list_clients(self, company_id) -> list[Any]: ...

    @abstractmethod
    def list_client_appointments(self, company_id, client_id, from_date: date) -> list[AppointmentSnapshot]:
        """Scheduled appointments of one client on or after ``from_date``, soonest first."""

    @abstractmethod
    def list_appointments_on(self, company_id, day: date) -> list[Any]:
        """Scheduled appointments of a company on ``day``."""

    @abstractmethod
    def list_booked_times(self, company_id, professional_id, day: date) -> list[time]:
        """Start times of every non-cancelled appointment of a professional on ``day``."""

    @abstractmethod
    def last_finished_appointment(self, company_id, client_id) -> Optional[Any]: ...

    @abstractmethod
    def get_professional(self, company_id, professional_id) -> Optional[Any]: ...

    @abstractmethod
    def get_service(self, company_id, service_id) -> Optional[Any]: ...

    @abstractmethod
    def get_followup_settings(self, company_id) -> Optional[Any]: ...

    @abstractmethod
    def list_followup_modes(self, company_id) -> list[Any]: ...

    @abstractmethod
    def was_notification_sent(self, appointment_id, dedupe_key: str) -> bool: ...

    @abstractmethod
    def record_notification(
        self,
        *,
        company_id,
        appointment_id,
        dedupe_key: str,
        status: str,
        error: Optional[str] = None,
    ) -> bool:
        """Append a dedupe/audit row.

        Idempotent for ``sent``: returns False when a ``sent`` row for the
        pair already exists.
        """

    @abstractmethod
    def mark_appointment_warned(self, appointment_id) -> bool:
        """Flip ``warned`` to true; False when it was already set."""

    @abstractmethod
    def save_message(
        self,
        *,
        company_id,
        phone: str,
        text: str,
        direction: str,
        client_name: Optional[str] = None,
        extracted_data: Optional[dict] = None,
        conversation_type: Optional[str] = None,
        ai_response: Optional[str] = None,
    ) -> None: ...

    @abstractmethod
    def rollback(self) -> None:
        """Discard a failed unit of work so later calls in the same scope can run."""


class SqlBookingStore(BookingStore):
    def __init__(self, db: Session):
        self.db = db

    def list_companies(self) -> list[Company]:
        return self.db.query(Company).filter(Company.active.is_(True)).order_by(Company.created_at).all()

    def get_business_settings(self, company_id) -> Optional[BusinessSettings]:
        return self.db.query(BusinessSettings).filter(BusinessSettings.company_id == company_id).first()

    def list_services(self, company_id) -> list[Service]:
        return (
            self.db.query(Service)
            .filter(Service.company_id == company_id, Service.active.is_(True))
            .order_by(Service.name)
            .all()
        )

    def list_professionals(self, company_id) -> list[Professional]:
        return (
            self.db.query(Professional)
            .filter(Professional.company_id == company_id, Professional.active.is_(True))
            .order_by(Professional.name)
            .all()
        )

    def find_client_by_phone(self, company_id, phone: str) -> Optional[Client]:
        return self.db.query(Client).filter(Client.company_id == company_id, Client.phone == phone).first()

    def list_clients(self, company_id) -> list[Client]:
        return self.db.query(Client).filter(Client.company_id == company_id, Client.active.is_(True)).all()

    def list_client_appointments(self, company_id, client_id, from_date: date) -> list[AppointmentSnapshot]:
        rows = (
            self.db.query(Appointment, Service.name, Professional.name)
            .outerjoin(Service, Service.id == Appointment.service_id)
            .outerjoin(Professional, Professional.id == Appointment.professional_id)
            .filter(
                Appointment.company_id == company_id,
                Appointment.client_id == client_id,
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.date >= from_date,
            )
            .order_by(Appointment.date, Appointment.time)
            .all()
        )
        return [
            AppointmentSnapshot(
                id=str(appointment.id),
                service=service_name or "Serviço",
                professional=professional_name or "Profissional",
                date=appointment.date,
                time=appointment.time,
                status=appointment.status,
                note=appointment.note,
            )
            for appointment, service_name, professional_name in rows
        ]

    def list_appointments_on(self, company_id, day: date) -> list[Appointment]:
        return (
            self.db.query(Appointment)
            .filter(
                Appointment.company_id == company_id,
                Appointment.date == day,
                Appointment.status == AppointmentStatus.SCHEDULED.value,
            )
            .order_by(Appointment.time)
            .all()
        )

    def list_booked_times(self, company_id, professional_id, day: date) -> list[time]:
        rows = (
            self.db.query(Appointment.time)
            .filter(
                Appointment.company_id == company_id,
                Appointment.professional_id == professional_id,
                Appointment.date == day,
                Appointment.status != AppointmentStatus.CANCELLED.value,
            )
            .all()
        )
        return [row[0] for row in rows]

    def last_finished_appointment(self, company_id, client_id) -> Optional[Appointment]:
        return (
            self.db.query(Appointment)
            .filter(
                Appointment.company_id == company_id,
                Appointment.client_id == client_id,
                Appointment.status == AppointmentStatus.FINISHED.value,
            )
            .order_by(Appointment.date.desc(), Appointment.time.desc())
            .first()
        )

    def get_professional(self, company_id, professional_id) -> Optional[Professional]:
        if professional_id is None:
            return None
        return (
            self.db.query(Professional)
            .filter(Professional.company_id == company_id, Professional.id == professional_id)
            .first()
        )

    def get_service(self, company_id, service_id) -> Optional[Service]:
        if service_id is None:
            return None
        return self.db.query(Service).filter(Service.company_id == company_id, Service.id == service_id).first()

    def get_followup_settings(self, company_id) -> Optional[FollowUpSettings]:
        return self.db.query(FollowUpSettings).filter(FollowUpSettings.company_id == company_id).first()

    def list_followup_modes(self, company_id) -> list[FollowUpModeRecord]:
        return (
            self.db.query(FollowUpModeRecord)
            .filter(FollowUpModeRecord.company_id == company_id)
            .order_by(FollowUpModeRecord.id)
            .all()
        )

    def was_notification_sent(self, appointment_id, dedupe_key: str) -> bool:
        row = (
            self.db.query(FollowUpMessage.id)
            .filter(
                FollowUpMessage.appointment_id == appointment_id,
                FollowUpMessage.dedupe_key == dedupe_key,
                FollowUpMessage.status == "sent",
            )
            .first()
        )
        return row is not None

    def record_notification(
        self,
        *,
        company_id,
        appointment_id,
        dedupe_key: str,
        status: str,
        error: Optional[str] = None,
    ) -> bool:
        stmt = insert(FollowUpMessage).values(
            id=uuid.uuid4(),
            company_id=company_id,
            appointment_id=appointment_id,
            dedupe_key=dedupe_key,
            status=status,
            error=error,
            created_at=datetime.now(timezone.utc),
        )
        if status == "sent":
            stmt = stmt.on_conflict_do_nothing(
                index_elements=["appointment_id", "dedupe_key"],
                index_where=text("status = 'sent'"),
            )
        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount > 0

    def mark_appointment_warned(self, appointment_id) -> bool:
        result = self.db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.warned.is_(False))
            .values(warned=True)
        )
        self.db.commit()
        return result.rowcount > 0

    def rollback(self) -> None:
        self.db.rollback()

    def save_message(
        self,
        *,
        company_id,
        phone: str,
        text: str,
        direction: str,
        client_name: Optional[str] = None,
        extracted_data: Optional[dict] = None,
        conversation_type: Optional[str] = None,
        ai_response: Optional[str] = None,
    ) -> None:
        self.db.add(
            WhatsAppMessage(
                company_id=company_id,
                client_phone=phone,
                client_name=client_name,
                message_text=text,
                direction=direction,
                extracted_data=extracted_data or {},
                conversation_type=conversation_type,
                ai_response=ai_response,
                created_at=datetime.now(timezone.utc),
            )
        )
        self.db.commit()


@contextmanager
def store_scope() -> Iterator[SqlBookingStore]:
    db = SessionLocal()
    try:
        yield SqlBookingStore(db)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
