"""Owner takeover of a conversation.

When the business answers a client from its own WhatsApp number the gateway
reports the message with ``fromMe``. The assistant then stays silent for that
client for ``pause_minutes`` so it does not talk over the human; client
messages that arrive meanwhile are only logged.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from agendabot.database import SessionLocal
from agendabot.logging_config import get_logger
from agendabot.models import AssistantPause

logger = get_logger("handover_service")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PauseStore(ABC):
    @abstractmethod
    def pause(self, company_id: str, subject_address: str, until: datetime) -> None:
        """Set (or move) the pause end for one conversation."""

    @abstractmethod
    def paused_until(self, company_id: str, subject_address: str) -> Optional[datetime]: ...

    @abstractmethod
    def purge_expired(self, now: datetime) -> int: ...


class InMemoryPauseStore(PauseStore):
    def __init__(self):
        self._pauses: dict[tuple[str, str], datetime] = {}

    def pause(self, company_id, subject_address, until):
        self._pauses[(str(company_id), subject_address)] = until

    def paused_until(self, company_id, subject_address):
        return self._pauses.get((str(company_id), subject_address))

    def purge_expired(self, now):
        expired = [key for key, until in self._pauses.items() if until <= now]
        for key in expired:
            del self._pauses[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._pauses)


class SqlPauseStore(PauseStore):
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def pause(self, company_id, subject_address, until):
        stmt = insert(AssistantPause).values(
            company_id=company_id, subject_address=subject_address, paused_until=until, updated_at=_utcnow()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[AssistantPause.company_id, AssistantPause.subject_address],
            set_={"paused_until": stmt.excluded.paused_until, "updated_at": stmt.excluded.updated_at},
        )
        db = self.session_factory()
        try:
            db.execute(stmt)
            db.commit()
        finally:
            db.close()

    def paused_until(self, company_id, subject_address):
        db = self.session_factory()
        try:
            return db.execute(
                select(AssistantPause.paused_until).where(
                    AssistantPause.company_id == company_id,
                    AssistantPause.subject_address == subject_address,
                )
            ).scalar_one_or_none()
        finally:
            db.close()

    def purge_expired(self, now):
        db = self.session_factory()
        try:
            result = db.execute(delete(AssistantPause).where(AssistantPause.paused_until <= now))
            db.commit()
            return result.rowcount
        finally:
            db.close()


class HandoverGate:
    def __init__(
        self,
        store: PauseStore,
        pause_minutes: float = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.pause_minutes = pause_minutes
        self._clock = clock or _utcnow

    def owner_replied(self, company_id: str, subject_address: str) -> Optional[datetime]:
        """Start or extend the pause; None when pausing is disabled."""
        if self.pause_minutes <= 0:
            return None
        now = self._clock()
        self.store.purge_expired(now)
        until = now + timedelta(minutes=self.pause_minutes)
        self.store.pause(company_id, subject_address, until)
        logger.info(
            "Assistant paused for owner takeover",
            extra={"context": {"company_id": company_id, "subject": subject_address, "until": until.isoformat()}},
        )
        return until

    def is_paused(self, company_id: str, subject_address: str) -> bool:
        until = self.store.paused_until(company_id, subject_address)
        return until is not None and until > self._clock()
