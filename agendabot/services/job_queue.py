"""Durable inbound-message queue and its concurrency-bounded dispatcher.

Attempts are counted at claim time. A failed attempt ``n`` below the cap is
rescheduled ``backoff * 2**(n-1)`` seconds later; at the cap the job is marked
FAILED and kept for operators. Completed jobs are deleted.
"""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.orm import Session

from agendabot.database import SessionLocal
from agendabot.logging_config import LoggerAdapter, bind_logger, get_logger
from agendabot.models import InboundJob
from agendabot.schemas.job import FailedJobItem, Job, JobPayload, JobStatus, QueueHealth
from agendabot.services.alert_service import alert_error
from agendabot.services.keyed_locks import KeyedLocks

logger = get_logger("job_queue")

JobHandler = Callable[[Job], Awaitable[Any]]

DEFAULT_LEASE_SECONDS = 600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore(ABC):
    @abstractmethod
    def enqueue(self, payload: JobPayload, priority: int = 1) -> Job: ...

    @abstractmethod
    def claim(self, limit: int, now: datetime) -> list[Job]:
        """Flip up to ``limit`` due jobs to PROCESSING, incrementing their attempt counter."""

    @abstractmethod
    def complete(self, job_id: str) -> None: ...

    @abstractmethod
    def retry(self, job_id: str, next_attempt_at: datetime, error: str) -> None: ...

    @abstractmethod
    def fail(self, job_id: str, error: str) -> None: ...

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        """Delete a job that has not started; False when missing or already running."""

    @abstractmethod
    def counts(self) -> dict[str, int]: ...

    @abstractmethod
    def list_failed(self, limit: int = 50) -> list[Job]: ...


class InMemoryJobStore(JobStore):
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow
        self._jobs: dict[str, Job] = {}
        self._sequence = itertools.count()

    def enqueue(self, payload: JobPayload, priority: int = 1) -> Job:
        now = self._clock()
        job = Job(
            id=str(uuid.uuid4()),
            payload=payload,
            priority=priority,
            created_at=now,
            updated_at=now,
            extra={"seq": next(self._sequence)},
        )
        self._jobs[job.id] = job
        return job

    def claim(self, limit: int, now: datetime) -> list[Job]:
        due = [
            job
            for job in self._jobs.values()
            if job.status == JobStatus.PENDING and (job.next_attempt_at is None or job.next_attempt_at <= now)
        ]
        due.sort(key=lambda job: (job.priority, job.extra["seq"]))
        claimed = due[:limit]
        for job in claimed:
            job.status = JobStatus.PROCESSING
            job.attempt += 1
            job.updated_at = now
        return claimed

    def complete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def retry(self, job_id: str, next_attempt_at: datetime, error: str) -> None:
        job = self._jobs[job_id]
        job.status = JobStatus.PENDING
        job.next_attempt_at = next_attempt_at
        job.last_error = error
        job.updated_at = self._clock()

    def fail(self, job_id: str, error: str) -> None:
        job = self._jobs[job_id]
        job.status = JobStatus.FAILED
        job.last_error = error
        job.updated_at = self._clock()

    def remove(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False
        del self._jobs[job_id]
        return True

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    def list_failed(self, limit: int = 50) -> list[Job]:
        failed = [job for job in self._jobs.values() if job.status == JobStatus.FAILED]
        return failed[:limit]

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)


def _job_from_row(row: Any) -> Job:
    return Job(
        id=str(row["id"]),
        payload=JobPayload(**row["payload_json"]),
        attempt=row["attempts"],
        priority=row["priority"],
        status=JobStatus(row["status"]),
        next_attempt_at=row.get("next_attempt_at"),
        last_error=row.get("last_error"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


class SqlJobStore(JobStore):
    """``inbound_jobs`` table; claims use SKIP LOCKED so several workers can share it.

    PROCESSING rows untouched for longer than the lease are claimed again, so a
    crashed worker does not strand its jobs.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ):
        self.session_factory = session_factory
        self.lease_seconds = lease_seconds

    def enqueue(self, payload: JobPayload, priority: int = 1) -> Job:
        now = _utcnow()
        row = InboundJob(
            id=uuid.uuid4(),
            company_id=payload.company_id,
            subject_address=payload.subject_address,
            payload_json=payload.model_dump(),
            status=JobStatus.PENDING.value,
            priority=priority,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
        finally:
            db.close()
        return Job(id=str(row.id), payload=payload, priority=priority, created_at=now, updated_at=now)

    def claim(self, limit: int, now: datetime) -> list[Job]:
        db = self.session_factory()
        try:
            rows = (
                db.execute(
                    text(
                        """
                        WITH cte AS (
                            SELECT id
                            FROM inbound_jobs
                            WHERE (status = 'PENDING'
                                   AND (next_attempt_at IS NULL OR next_attempt_at <= :now))
                               OR (status = 'PROCESSING' AND updated_at < :lease_cutoff)
                            ORDER BY priority, created_at
                            LIMIT :limit
                            FOR UPDATE SKIP LOCKED
                        )
                        UPDATE inbound_jobs
                        SET status = 'PROCESSING',
                            attempts = inbound_jobs.attempts + 1,
                            updated_at = :now
                        FROM cte
                        WHERE inbound_jobs.id = cte.id
                        RETURNING inbound_jobs.id,
                                  inbound_jobs.payload_json,
                                  inbound_jobs.status,
                                  inbound_jobs.priority,
                                  inbound_jobs.attempts,
                                  inbound_jobs.created_at,
                                  inbound_jobs.updated_at
                        """
                    ),
                    {
                        "now": now,
                        "lease_cutoff": now - timedelta(seconds=self.lease_seconds),
                        "limit": limit,
                    },
                )
                .mappings()
                .all()
            )
            db.commit()
        finally:
            db.close()
        return [_job_from_row(row) for row in rows]

    def _update(self, job_id: str, **values) -> None:
        db = self.session_factory()
        try:
            db.execute(update(InboundJob).where(InboundJob.id == uuid.UUID(job_id)).values(**values))
            db.commit()
        finally:
            db.close()

    def complete(self, job_id: str) -> None:
        db = self.session_factory()
        try:
            db.execute(delete(InboundJob).where(InboundJob.id == uuid.UUID(job_id)))
            db.commit()
        finally:
            db.close()

    def retry(self, job_id: str, next_attempt_at: datetime, error: str) -> None:
        self._update(
            job_id,
            status=JobStatus.PENDING.value,
            next_attempt_at=next_attempt_at,
            last_error=error,
            updated_at=_utcnow(),
        )

    def fail(self, job_id: str, error: str) -> None:
        self._update(job_id, status=JobStatus.FAILED.value, last_error=error, updated_at=_utcnow())

    def remove(self, job_id: str) -> bool:
        try:
            key = uuid.UUID(job_id)
        except ValueError:
            return False
        db = self.session_factory()
        try:
            result = db.execute(
                delete(InboundJob).where(
                    InboundJob.id == key,
                    InboundJob.status == JobStatus.PENDING.value,
                )
            )
            db.commit()
            return result.rowcount > 0
        finally:
            db.close()

    def counts(self) -> dict[str, int]:
        db = self.session_factory()
        try:
            rows = db.execute(select(InboundJob.status, func.count()).group_by(InboundJob.status)).all()
        finally:
            db.close()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def list_failed(self, limit: int = 50) -> list[Job]:
        db = self.session_factory()
        try:
            rows = (
                db.execute(
                    select(InboundJob)
                    .where(InboundJob.status == JobStatus.FAILED.value)
                    .order_by(InboundJob.updated_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
        finally:
            db.close()
        return [
            _job_from_row(
                {
                    "id": row.id,
                    "payload_json": row.payload_json,
                    "attempts": row.attempts,
                    "priority": row.priority,
                    "status": row.status,
                    "next_attempt_at": row.next_attempt_at,
                    "last_error": row.last_error,
                    "created_at": row.created_at,
                    "updated_at": row.updated_at,
                }
            )
            for row in rows
        ]


class JobDispatcher:
    def __init__(
        self,
        store: JobStore,
        handler: JobHandler,
        *,
        concurrency: int = 50,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        poll_interval_seconds: float = 0.5,
        per_subject_ordering: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.handler = handler
        self.concurrency = max(concurrency, 1)
        self.max_attempts = max(max_attempts, 1)
        self.backoff_seconds = backoff_seconds
        self.poll_interval_seconds = max(poll_interval_seconds, 0.05)
        self.per_subject_ordering = per_subject_ordering
        self._clock = clock or _utcnow
        self._tasks: set[asyncio.Task] = set()
        self._lanes = KeyedLocks()
        self._running = False

    def enqueue(
        self,
        company_id: str,
        subject_address: str,
        raw_text: str,
        provider_metadata: Optional[dict] = None,
        priority: int = 1,
    ) -> Job:
        payload = JobPayload(
            company_id=str(company_id),
            subject_address=subject_address,
            raw_text=raw_text,
            provider_metadata=provider_metadata or {},
        )
        job = self.store.enqueue(payload, priority=priority)
        logger.info(
            "Job enqueued",
            extra={"context": {"job_id": job.id, "company_id": payload.company_id, "subject": subject_address}},
        )
        return job

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** max(attempt - 1, 0))

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def run_once(self) -> int:
        """Claim as many due jobs as there are free slots and start them."""
        free = self.concurrency - len(self._tasks)
        if free <= 0:
            return 0
        jobs = self.store.claim(free, self._clock())
        for job in jobs:
            task = asyncio.create_task(self._execute(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(jobs)

    async def run_forever(self) -> None:
        self._running = True
        logger.info(
            "Dispatcher started",
            extra={"context": {"concurrency": self.concurrency, "max_attempts": self.max_attempts}},
        )
        try:
            while True:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("Dispatcher poll failed", extra={"context": {"error": str(exc)}})
                await asyncio.sleep(self.poll_interval_seconds)
        finally:
            self._running = False

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def remove(self, job_id: str) -> bool:
        removed = self.store.remove(job_id)
        logger.info("Job remove requested", extra={"context": {"job_id": job_id, "removed": removed}})
        return removed

    def health(self) -> QueueHealth:
        counts = self.store.counts()
        return QueueHealth(
            pending=counts.get(JobStatus.PENDING.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
            active=len(self._tasks),
            concurrency=self.concurrency,
            running=self._running,
        )

    def failed_jobs(self, limit: int = 50) -> list[FailedJobItem]:
        return [
            FailedJobItem(
                id=job.id,
                company_id=job.payload.company_id,
                subject_address=job.payload.subject_address,
                attempts=job.attempt,
                last_error=job.last_error,
                updated_at=job.updated_at,
            )
            for job in self.store.list_failed(limit)
        ]

    async def _execute(self, job: Job) -> None:
        log = bind_logger(
            logger,
            job_id=job.id,
            company_id=job.payload.company_id,
            subject=job.payload.subject_address,
            attempt=job.attempt,
        )
        try:
            if self.per_subject_ordering:
                async with self._lanes.hold(job.subject_key):
                    await self._attempt(job, log)
            else:
                await self._attempt(job, log)
        except Exception as exc:
            # Store unavailable while recording the outcome; a stale lease brings the job back.
            log.error("Job bookkeeping failed", context={"error": str(exc)})

    async def _attempt(self, job: Job, log: LoggerAdapter) -> None:
        if job.attempt > self.max_attempts:
            await self._give_up(job, "attempts exhausted before execution", log)
            return

        started = time.monotonic()
        try:
            await self.handler(job)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            if job.attempt >= self.max_attempts:
                await self._give_up(job, error, log)
                return
            delay = self.backoff_delay(job.attempt)
            self.store.retry(job.id, self._clock() + timedelta(seconds=delay), error)
            log.warning("Job attempt failed, retry scheduled", context={"error": error, "retry_in_seconds": delay})
            return

        self.store.complete(job.id)
        log.info("Job completed", context={"duration_ms": int((time.monotonic() - started) * 1000)})

    async def _give_up(self, job: Job, error: str, log: LoggerAdapter) -> None:
        self.store.fail(job.id, error)
        log.error("Job failed permanently", context={"error": error})
        # Telegram alert uses a blocking client
        await asyncio.to_thread(
            alert_error,
            "Inbound message job failed permanently",
            {
                "job_id": job.id,
                "company_id": job.payload.company_id,
                "subject": job.payload.subject_address,
                "attempts": job.attempt,
                "error": error,
            },
        )
