"""Long-lived collaborators of the service and the operations exposed to callers.

The webhook receiver calls ``enqueue_inbound_message`` (after the owner
takeover checks), the ticker and the admin endpoints call
``run_follow_up_sweep``, operators read ``get_queue_health``.
"""

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis

from agendabot.config import Settings, settings
from agendabot.logging_config import get_logger
from agendabot.schemas.job import Job, QueueHealth
from agendabot.services.extraction_memory import ExtractionMemory, InMemoryExtractionMemory, RedisExtractionMemory
from agendabot.services.followup_service import FollowUpEngine
from agendabot.services.handover_service import HandoverGate, InMemoryPauseStore, PauseStore, SqlPauseStore
from agendabot.services.job_queue import InMemoryJobStore, JobDispatcher, JobStore, SqlJobStore
from agendabot.services.llm import OpenAIProvider
from agendabot.services.message_pipeline import MessagePipeline
from agendabot.services.reply_service import LLMReplyGenerator
from agendabot.services.store import store_scope
from agendabot.services.validation_pipeline import ValidationRules
from agendabot.services.whatsapp_service import EvolutionAPITransport

logger = get_logger("runtime")


@dataclass
class Runtime:
    dispatcher: JobDispatcher
    follow_ups: FollowUpEngine
    pipeline: MessagePipeline
    memory: ExtractionMemory
    handover: HandoverGate


def _build_job_store(cfg: Settings) -> JobStore:
    if cfg.queue_backend == "memory":
        return InMemoryJobStore()
    if cfg.queue_backend != "postgres":
        raise ValueError(f"Unknown queue backend: {cfg.queue_backend!r}")
    return SqlJobStore()


def _build_pauses(cfg: Settings) -> PauseStore:
    # pauses live next to the queue
    if cfg.queue_backend == "memory":
        return InMemoryPauseStore()
    return SqlPauseStore()


def _build_memory(cfg: Settings) -> ExtractionMemory:
    ttl_seconds = cfg.extraction_memory_ttl_minutes * 60
    if cfg.extraction_memory_backend == "redis":
        client = aioredis.from_url(cfg.redis_url, decode_responses=True)
        return RedisExtractionMemory(client, ttl_seconds=ttl_seconds)
    if cfg.extraction_memory_backend != "memory":
        raise ValueError(f"Unknown extraction memory backend: {cfg.extraction_memory_backend!r}")
    return InMemoryExtractionMemory(ttl_seconds=ttl_seconds)


def build_runtime(cfg: Settings = settings) -> Runtime:
    transport = EvolutionAPITransport(
        cfg.evolution_api_url,
        cfg.evolution_api_key,
        timeout_seconds=cfg.send_timeout_seconds,
    )
    memory = _build_memory(cfg)
    pipeline = MessagePipeline(
        store_factory=store_scope,
        memory=memory,
        transport=transport,
        reply_generator=LLMReplyGenerator(
            OpenAIProvider(
                api_key=cfg.openai_api_key or "", default_model=cfg.openai_model, base_url=cfg.openai_base_url
            ),
        ),
        rules=ValidationRules(
            step_minutes=cfg.slot_step_minutes,
            default_service_minutes=cfg.default_service_minutes,
            max_days_ahead=cfg.max_days_ahead,
            max_suggestions=cfg.max_slot_suggestions,
        ),
        timezone_name=cfg.business_timezone,
        reply_timeout_seconds=cfg.reply_timeout_seconds,
        send_timeout_seconds=cfg.send_timeout_seconds,
    )
    dispatcher = JobDispatcher(
        _build_job_store(cfg),
        pipeline,
        concurrency=cfg.queue_concurrency,
        max_attempts=cfg.queue_max_attempts,
        backoff_seconds=cfg.queue_backoff_seconds,
        poll_interval_seconds=cfg.queue_poll_interval_seconds,
        per_subject_ordering=cfg.queue_per_subject_ordering,
    )
    follow_ups = FollowUpEngine(
        store_factory=store_scope,
        transport=transport,
        timezone_name=cfg.business_timezone,
        send_timeout_seconds=cfg.send_timeout_seconds,
    )
    logger.info(
        "Runtime built",
        extra={
            "context": {
                "queue_backend": cfg.queue_backend,
                "memory_backend": cfg.extraction_memory_backend,
                "concurrency": cfg.queue_concurrency,
            }
        },
    )
    return Runtime(
        dispatcher=dispatcher,
        follow_ups=follow_ups,
        pipeline=pipeline,
        memory=memory,
        handover=HandoverGate(_build_pauses(cfg), pause_minutes=cfg.owner_pause_minutes),
    )


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime


def enqueue_inbound_message(
    company_id: str,
    subject_address: str,
    raw_text: str,
    provider_metadata: Optional[dict] = None,
) -> Job:
    return get_runtime().dispatcher.enqueue(company_id, subject_address, raw_text, provider_metadata)


async def run_follow_up_sweep(company_id: Optional[str] = None) -> dict:
    engine = get_runtime().follow_ups
    if company_id is None:
        return await engine.process_all_companies()
    return await engine.check_and_send_follow_ups(company_id)


def get_queue_health() -> QueueHealth:
    return get_runtime().dispatcher.health()


def _log_message(company_id: str, subject_address: str, text: str, direction: str) -> None:
    with store_scope() as store:
        store.save_message(company_id=company_id, phone=subject_address, text=text, direction=direction)


def pause_for_owner(company_id: str, subject_address: str, text: str) -> None:
    """The owner wrote to the client: log it as ours and silence the assistant for a while."""
    get_runtime().handover.owner_replied(company_id, subject_address)
    _log_message(company_id, subject_address, text, "outgoing")


def hold_if_paused(company_id: str, subject_address: str, text: str) -> bool:
    """Log and withhold a client message while the owner is handling the chat."""
    if not get_runtime().handover.is_paused(company_id, subject_address):
        return False
    _log_message(company_id, subject_address, text, "incoming")
    logger.info(
        "Message held during owner takeover",
        extra={"context": {"company_id": company_id, "subject": subject_address}},
    )
    return True
