import asyncio
from datetime import date, datetime, time, timedelta, timezone

import pytest
from conftest import FakeReplyGenerator, FakeTransport, local_clock, store_factory

from agendabot.schemas.conversation import ConversationType, ExtractedFields
from agendabot.schemas.job import Job, JobPayload
from agendabot.services.errors import DeliveryError
from agendabot.services.extraction_memory import InMemoryExtractionMemory, memory_key
from agendabot.services.job_queue import InMemoryJobStore, JobDispatcher
from agendabot.services.message_pipeline import MessagePipeline, Outcome, blocked_message

ADDRESS = "5511999990000@s.whatsapp.net"
PHONE = "5511999990000"


def _job(text, company_id="c1", address=ADDRESS):
    return Job(id="job-1", payload=JobPayload(company_id=company_id, subject_address=address, raw_text=text))


def _pipeline(store, transport, reply_generator, memory=None, hour=10, **kwargs):
    return MessagePipeline(
        store_factory=store_factory(store),
        memory=memory if memory is not None else InMemoryExtractionMemory(),
        transport=transport,
        reply_generator=reply_generator,
        clock=local_clock(hour),
        **kwargs,
    )


class TestBlockedMessages:
    def test_closed_day_skips_reply_generation(self, store, transport, reply_generator):
        pipeline = _pipeline(store, transport, reply_generator)

        outcome = asyncio.run(pipeline(_job("quero cortar o cabelo domingo")))

        assert outcome == Outcome.BLOCKED
        assert reply_generator.calls == []
        assert transport.sent == [
            ("c1", PHONE, "Desculpa, estamos fechados às domingos.\n\nQuer agendar para outro dia?")
        ]

    def test_past_time_today(self, store, transport, reply_generator):
        pipeline = _pipeline(store, transport, reply_generator, hour=10)

        outcome = asyncio.run(pipeline(_job("quero cortar o cabelo hoje às 9")))

        assert outcome == Outcome.BLOCKED
        text = transport.sent[0][2]
        assert text.startswith("O horário 09:00 de hoje já passou")
        assert text.endswith("Quer agendar para outro dia?")

    def test_incoming_and_outgoing_are_logged(self, store, transport, reply_generator):
        pipeline = _pipeline(store, transport, reply_generator)

        asyncio.run(pipeline(_job("quero cortar o cabelo domingo")))

        incoming, outgoing = store.messages
        assert incoming["direction"] == "incoming"
        assert incoming["text"] == "quero cortar o cabelo domingo"
        assert incoming["extracted_data"]["status"] == "fechado"
        assert incoming["extracted_data"]["extracted"]["service"] == "Corte de cabelo"
        assert outgoing["direction"] == "outgoing"
        assert outgoing["ai_response"] is None

    def test_blocked_message_without_reason(self):
        assert blocked_message(None).startswith("Estamos fechados neste dia.")


class TestReplies:
    def test_multi_turn_accumulation(self, store, transport, reply_generator):
        memory = InMemoryExtractionMemory()
        pipeline = _pipeline(store, transport, reply_generator, memory=memory)

        async def scenario():
            for text in ("quero cortar o cabelo", "amanhã", "de manhã"):
                await pipeline(_job(text))

        asyncio.run(scenario())

        assert len(reply_generator.calls) == 3
        context, validation = reply_generator.calls[-1]
        assert validation.extracted == ExtractedFields(
            service="Corte de cabelo", date=date(2025, 6, 3), period="manhã"
        )
        assert context.pending_extraction == validation.extracted
        assert {s.professional for s in validation.professional_suggestions} == {"Ana", "Bruno"}
        assert len(transport.sent) == 3

    def test_llm_reply_is_sent_and_logged(self, store, transport, reply_generator):
        pipeline = _pipeline(store, transport, reply_generator)

        outcome = asyncio.run(pipeline(_job("quero cortar o cabelo")))

        assert outcome == Outcome.REPLIED
        assert transport.sent == [("c1", PHONE, "Claro! Vamos agendar.")]
        assert store.messages[-1]["ai_response"] == "Claro! Vamos agendar."

    def test_no_reply_sends_nothing(self, store, transport):
        pipeline = _pipeline(store, transport, FakeReplyGenerator(reply=None))

        assert asyncio.run(pipeline(_job("quero cortar o cabelo"))) == Outcome.NO_REPLY
        assert transport.calls == []

    def test_failed_send_raises(self, store, reply_generator):
        pipeline = _pipeline(store, FakeTransport(failures=1), reply_generator)

        with pytest.raises(DeliveryError) as exc_info:
            asyncio.run(pipeline(_job("quero cortar o cabelo")))

        assert exc_info.value.address == PHONE
        assert exc_info.value.error == "gateway down"
        assert [m["direction"] for m in store.messages] == ["incoming"]

    def test_reply_timeout_raises(self, store, transport):
        class SlowReplyGenerator(FakeReplyGenerator):
            async def generate_reply(self, context, validation):
                await asyncio.sleep(1)
                return "tarde demais"

        pipeline = _pipeline(store, transport, SlowReplyGenerator(), reply_timeout_seconds=0.01)

        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(pipeline(_job("quero cortar o cabelo")))
        assert transport.calls == []

    def test_confirmation_resets_memory(self, store, transport, reply_generator):
        memory = InMemoryExtractionMemory()
        pipeline = _pipeline(store, transport, reply_generator, memory=memory)

        async def scenario():
            await pipeline(_job("quero cortar o cabelo amanhã às 14"))
            before = await memory.get(memory_key("c1", ADDRESS))
            await pipeline(_job("sim"))
            return before, await memory.get(memory_key("c1", ADDRESS))

        before, after = asyncio.run(scenario())
        assert before.is_complete()
        assert after.is_empty()

    def test_answer_starting_with_pode_keeps_memory(self, store, transport, reply_generator):
        memory = InMemoryExtractionMemory()
        pipeline = _pipeline(store, transport, reply_generator, memory=memory)

        async def scenario():
            for text in ("quero cortar o cabelo", "pode ser amanhã", "de manhã"):
                await pipeline(_job(text))

        asyncio.run(scenario())

        assert reply_generator.calls[1][0].conversation_type == ConversationType.CONFIRMATION
        _, validation = reply_generator.calls[-1]
        assert validation.extracted == ExtractedFields(
            service="Corte de cabelo", date=date(2025, 6, 3), period="manhã"
        )

    def test_bare_confirmation_of_incomplete_booking_keeps_memory(self, store, transport, reply_generator):
        memory = InMemoryExtractionMemory()
        pipeline = _pipeline(store, transport, reply_generator, memory=memory)

        async def scenario():
            await pipeline(_job("quero cortar o cabelo amanhã"))
            await pipeline(_job("ok"))
            return await memory.get(memory_key("c1", ADDRESS))

        pending = asyncio.run(scenario())
        assert pending == ExtractedFields(service="Corte de cabelo", date=date(2025, 6, 3))


class TestConsult:
    def test_lists_upcoming_appointments(self, store, transport, reply_generator):
        client = store.add_client("c1", "Maria Silva", PHONE)
        services = {s.name: s for s in store.services["c1"]}
        store.add_appointment("c1", client, date(2025, 6, 5), time(10, 0), service=services["Barba"])
        store.add_appointment("c1", client, date(2025, 6, 3), time(14, 0), service=services["Corte de cabelo"])
        store.add_appointment("c1", client, date(2025, 6, 4), time(9, 0), status="cancelado")
        pipeline = _pipeline(store, transport, reply_generator)

        outcome = asyncio.run(pipeline(_job("quais meus agendamentos?")))

        assert outcome == Outcome.CONSULT
        assert reply_generator.calls == []
        assert transport.sent[0][2] == (
            "Oi Maria Silva! 😊\n"
            "Para os próximos dias, você tem:\n"
            "- Corte de cabelo — 03/06/2025 às 14:00\n"
            "- Barba — 05/06/2025 às 10:00"
        )

    def test_without_appointments_falls_through_to_reply(self, store, transport, reply_generator):
        store.add_client("c1", "Maria Silva", PHONE)
        pipeline = _pipeline(store, transport, reply_generator)

        outcome = asyncio.run(pipeline(_job("quais meus agendamentos?")))

        assert outcome == Outcome.REPLIED
        assert len(reply_generator.calls) == 1


class TestWithDispatcher:
    def test_send_failures_are_retried_until_delivered(self, store, reply_generator):
        transport = FakeTransport(failures=2)
        pipeline = _pipeline(store, transport, reply_generator)
        now = [datetime(2025, 6, 2, 13, 0, tzinfo=timezone.utc)]
        clock = lambda: now[0]  # noqa: E731
        dispatcher = JobDispatcher(InMemoryJobStore(clock), pipeline, clock=clock)
        job = dispatcher.enqueue("c1", ADDRESS, "quero cortar o cabelo domingo")

        async def scenario():
            for delay in (0, 2, 4):
                now[0] += timedelta(seconds=delay)
                await dispatcher.run_once()
                await dispatcher.wait_idle()

        asyncio.run(scenario())

        assert len(transport.calls) == 3
        assert len(transport.sent) == 1
        assert dispatcher.store.get(job.id) is None
        assert [m["direction"] for m in store.messages].count("incoming") == 3
