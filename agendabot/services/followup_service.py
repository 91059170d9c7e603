"""Follow-up trigger engine: same-day warnings, reminders and reactivation nudges.

Every send is gated on the (appointment, dedupe key) pair so a sweep can be
rerun any number of times without duplicate messages. Transport failures are
recorded as ``failed`` and picked up again by the next tick.
"""

import asyncio
import re
from contextlib import AbstractContextManager
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from agendabot.logging_config import get_logger
from agendabot.models.client import parse_mode_ids
from agendabot.schemas.followup import (
    DEFAULT_MODE_ID,
    AntecedenciaMode,
    DiasAposMode,
    TimeFixedMode,
    UnknownTriggerTypeError,
    ValidationError,
    parse_mode,
)
from agendabot.services.alert_service import alert_warning
from agendabot.services.result import ErrorCode, Result
from agendabot.services.scheduling_service import business_now, format_hhmm
from agendabot.services.store import BookingStore
from agendabot.services.whatsapp_service import MessagingTransport

logger = get_logger("followup_service")

TEMPLATE_VARIABLES = ("cliente_nome", "profissional", "servico", "horario", "minutos")
_PLACEHOLDER = re.compile(r"\{(" + "|".join(TEMPLATE_VARIABLES) + r")\}")

UNKNOWN_PROFESSIONAL = "Profissional"
UNKNOWN_SERVICE = "Serviço"


def render_template(template: Optional[str], variables: dict) -> str:
    """Replace the known placeholders; missing values render as an empty string."""

    def _sub(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template or "")


def minutes_until(start: datetime, now: datetime) -> int:
    """Whole minutes from ``now`` to ``start``, truncated toward zero."""
    return int((start - now).total_seconds() / 60)


def reminder_due(minutes_left: int, reminder_minutes: Optional[int]) -> bool:
    return 0 < minutes_left <= (reminder_minutes or 0)


def reactivation_due(elapsed_days: int, trigger_days: Optional[int]) -> bool:
    if not trigger_days or trigger_days <= 0 or elapsed_days <= 0:
        return False
    return elapsed_days >= trigger_days


def _new_summary(company_id) -> dict:
    return {"company_id": str(company_id), "sent": 0, "failed": 0, "skipped": 0, "errors": 0}


class FollowUpEngine:
    def __init__(
        self,
        *,
        store_factory: Callable[[], AbstractContextManager[BookingStore]],
        transport: MessagingTransport,
        timezone_name: str = "America/Sao_Paulo",
        send_timeout_seconds: float = 15.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store_factory = store_factory
        self.transport = transport
        self.timezone_name = timezone_name
        self.send_timeout_seconds = send_timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sweeping = False
        self._running_companies: set[str] = set()
        self._sent_cache: set[tuple[str, str]] = set()
        self._cache_day: Optional[date] = None

    async def process_all_companies(self) -> dict:
        if self._sweeping:
            logger.info("Follow-up sweep already running, tick skipped")
            return {"status": "already_running"}

        self._sweeping = True
        try:
            with self.store_factory() as store:
                company_ids = [company.id for company in store.list_companies()]

            totals = {"status": "ok", "companies": len(company_ids), "sent": 0, "failed": 0, "skipped": 0, "errors": 0}
            results = []
            for company_id in company_ids:
                try:
                    summary = await self.check_and_send_follow_ups(company_id)
                except Exception as exc:
                    logger.exception(
                        "Follow-up check failed for company",
                        extra={"context": {"company_id": str(company_id), "error": str(exc)}},
                    )
                    summary = _new_summary(company_id)
                    summary["errors"] = 1
                    summary["error"] = str(exc)
                    await asyncio.to_thread(
                        alert_warning, "Follow-up check failed", {"company_id": str(company_id), "error": str(exc)}
                    )
                results.append(summary)
                for field in ("sent", "failed", "skipped", "errors"):
                    totals[field] += summary.get(field, 0)

            totals["results"] = results
            logger.info(
                "Follow-up sweep finished",
                extra={"context": {k: v for k, v in totals.items() if k != "results"}},
            )
            return totals
        finally:
            self._sweeping = False

    async def check_and_send_follow_ups(self, company_id) -> dict:
        key = str(company_id)
        if key in self._running_companies:
            logger.info("Follow-up check already running for company", extra={"context": {"company_id": key}})
            summary = _new_summary(company_id)
            summary["status"] = "already_running"
            return summary

        self._running_companies.add(key)
        try:
            with self.store_factory() as store:
                return await self._check_company(store, company_id)
        finally:
            self._running_companies.discard(key)

    def load_modes(self, store: BookingStore, company_id, settings: Any) -> list:
        """Default mode first, then every valid persisted mode."""
        modes: list = [TimeFixedMode.default_from_settings(settings)]
        for record in store.list_followup_modes(company_id):
            if str(getattr(record, "id", "")) == DEFAULT_MODE_ID:
                logger.warning(
                    "Persisted follow-up mode uses the reserved default id, ignoring it",
                    extra={"context": {"company_id": str(company_id)}},
                )
                continue
            try:
                modes.append(parse_mode(record))
            except UnknownTriggerTypeError as exc:
                logger.warning(
                    "Follow-up mode rejected",
                    extra={
                        "context": {
                            "company_id": str(company_id),
                            "mode_id": str(exc.mode_id),
                            "trigger_type": str(exc.trigger_type),
                        }
                    },
                )
            except ValidationError as exc:
                logger.warning(
                    "Malformed follow-up mode",
                    extra={
                        "context": {
                            "company_id": str(company_id),
                            "mode_id": str(getattr(record, "id", None)),
                            "error": str(exc),
                        }
                    },
                )
        return modes

    @staticmethod
    def subscribed_modes(client: Any, modes: list) -> list:
        """Modes the client opted into; clients with no explicit choice get the default mode."""
        wanted = parse_mode_ids(getattr(client, "followup_mode", None)) or {DEFAULT_MODE_ID}
        return [mode for mode in modes if mode.id in wanted]

    async def _check_company(self, store: BookingStore, company_id) -> dict:
        summary = _new_summary(company_id)
        settings = store.get_followup_settings(company_id)
        if settings is None or not settings.is_active:
            summary["status"] = "disabled"
            return summary

        modes = [mode for mode in self.load_modes(store, company_id, settings) if mode.is_active]
        if not modes:
            summary["status"] = "no_active_modes"
            return summary

        now = business_now(self.timezone_name, self._clock())
        today = now.date()
        if self._cache_day != today:
            self._sent_cache.clear()
            self._cache_day = today

        clients = {str(client.id): client for client in store.list_clients(company_id)}
        names = _NameLookup(store, company_id)

        for appointment in store.list_appointments_on(company_id, today):
            try:
                await self._evaluate_appointment(store, company_id, appointment, clients, modes, names, now, summary)
            except Exception as exc:
                summary["errors"] += 1
                store.rollback()
                logger.exception(
                    "Follow-up evaluation failed for appointment",
                    extra={
                        "context": {
                            "company_id": str(company_id),
                            "appointment_id": str(appointment.id),
                            "error": str(exc),
                        }
                    },
                )

        reactivation_modes = [m for m in modes if isinstance(m, DiasAposMode) and (m.trigger_days or 0) > 0]
        if reactivation_modes:
            for client in clients.values():
                try:
                    await self._evaluate_reactivation(store, company_id, client, reactivation_modes, names, today, summary)
                except Exception as exc:
                    summary["errors"] += 1
                    store.rollback()
                    logger.exception(
                        "Follow-up reactivation failed for client",
                        extra={"context": {"company_id": str(company_id), "client_id": str(client.id), "error": str(exc)}},
                    )

        summary["status"] = "ok"
        logger.info("Follow-up check finished", extra={"context": summary})
        return summary

    async def _evaluate_appointment(self, store, company_id, appointment, clients, modes, names, now, summary) -> None:
        client = clients.get(str(appointment.client_id))
        if client is None:
            logger.info(
                "Appointment without active client, skipping",
                extra={"context": {"appointment_id": str(appointment.id)}},
            )
            summary["skipped"] += 1
            return

        subscribed = [m for m in self.subscribed_modes(client, modes) if not isinstance(m, DiasAposMode)]
        if not subscribed:
            return
        if not client.phone:
            logger.warning(
                "Client without phone, skipping follow-up",
                extra={"context": {"client_id": str(client.id), "appointment_id": str(appointment.id)}},
            )
            summary["skipped"] += 1
            return

        start = datetime.combine(now.date(), appointment.time)
        variables = {
            "cliente_nome": client.name,
            "profissional": names.professional(appointment.professional_id),
            "servico": names.service(appointment.service_id),
            "horario": format_hhmm(appointment.time),
        }
        already_warned = bool(appointment.warned)

        for mode in subscribed:
            if isinstance(mode, TimeFixedMode):
                if already_warned or now.time() < mode.effective_warning_time() or now > start:
                    continue
                text = render_template(mode.template(), {**variables, "minutos": 0})
                if await self._deliver(store, company_id, client.phone, appointment.id, mode.dedupe_key(), text, summary):
                    store.mark_appointment_warned(appointment.id)
            elif isinstance(mode, AntecedenciaMode):
                if not reminder_due(minutes_until(start, now), mode.reminder_minutes):
                    continue
                text = render_template(mode.template(), {**variables, "minutos": mode.reminder_minutes})
                await self._deliver(store, company_id, client.phone, appointment.id, mode.dedupe_key(), text, summary)

    async def _evaluate_reactivation(self, store, company_id, client, reactivation_modes, names, today, summary) -> None:
        subscribed = self.subscribed_modes(client, reactivation_modes)
        if not subscribed:
            return

        last = store.last_finished_appointment(company_id, client.id)
        if last is None or last.date is None:
            return
        elapsed = (today - last.date).days
        due = [mode for mode in subscribed if reactivation_due(elapsed, mode.trigger_days)]
        if not due:
            return
        if not client.phone:
            logger.warning("Client without phone, skipping reactivation", extra={"context": {"client_id": str(client.id)}})
            summary["skipped"] += 1
            return

        variables = {
            "cliente_nome": client.name,
            "profissional": names.professional(last.professional_id),
            "servico": names.service(last.service_id),
            "horario": format_hhmm(last.time) if last.time else "",
            "minutos": 0,
        }
        for mode in due:
            text = render_template(mode.template(), variables)
            await self._deliver(store, company_id, client.phone, last.id, mode.dedupe_key(), text, summary)

    async def _deliver(self, store, company_id, phone, appointment_id, dedupe_key, text, summary) -> bool:
        cache_key = (str(appointment_id), dedupe_key)
        if cache_key in self._sent_cache:
            summary["skipped"] += 1
            return False
        if store.was_notification_sent(appointment_id, dedupe_key):
            self._sent_cache.add(cache_key)
            summary["skipped"] += 1
            return False

        try:
            result = await asyncio.wait_for(
                self.transport.send_text(str(company_id), phone, text),
                timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            result = Result.failure("send timed out", ErrorCode.TIMEOUT)

        log_context = {
            "company_id": str(company_id),
            "appointment_id": str(appointment_id),
            "dedupe_key": dedupe_key,
        }
        if not result.ok:
            store.record_notification(
                company_id=company_id,
                appointment_id=appointment_id,
                dedupe_key=dedupe_key,
                status="failed",
                error=result.error,
            )
            summary["failed"] += 1
            logger.warning("Follow-up send failed", extra={"context": {**log_context, **result.log_context()}})
            return False

        self._sent_cache.add(cache_key)
        store.record_notification(
            company_id=company_id,
            appointment_id=appointment_id,
            dedupe_key=dedupe_key,
            status="sent",
        )
        summary["sent"] += 1
        logger.info("Follow-up sent", extra={"context": {**log_context, **result.log_context()}})
        return True


class _NameLookup:
    """Per-sweep cache of professional and service names."""

    def __init__(self, store: BookingStore, company_id):
        self.store = store
        self.company_id = company_id
        self._professionals: dict = {}
        self._services: dict = {}

    def professional(self, professional_id) -> str:
        if professional_id not in self._professionals:
            row = self.store.get_professional(self.company_id, professional_id)
            self._professionals[professional_id] = row.name if row else UNKNOWN_PROFESSIONAL
        return self._professionals[professional_id]

    def service(self, service_id) -> str:
        if service_id not in self._services:
            row = self.store.get_service(self.company_id, service_id)
            self._services[service_id] = row.name if row else UNKNOWN_SERVICE
        return self._services[service_id]
