import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from agendabot.schemas.job import JobStatus
from agendabot.services.job_queue import InMemoryJobStore, JobDispatcher


class MutableClock:
    def __init__(self):
        self.now = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


def _dispatcher(handler, clock=None, **kwargs):
    clock = clock or MutableClock()
    store = InMemoryJobStore(clock)
    return JobDispatcher(store, handler, clock=clock, **kwargs), store, clock


async def _tick(dispatcher) -> int:
    claimed = await dispatcher.run_once()
    await dispatcher.wait_idle()
    return claimed


class TestEnqueue:
    def test_enqueue_only_writes_to_store(self):
        calls = []

        async def handler(job):
            calls.append(job)

        dispatcher, store, _ = _dispatcher(handler)
        job = dispatcher.enqueue("c1", "5511999990000", "oi", {"message_id": "m1"})

        assert calls == []
        assert store.get(job.id).status == JobStatus.PENDING
        assert store.get(job.id).payload.provider_metadata == {"message_id": "m1"}
        assert dispatcher.health().pending == 1

    def test_successful_job_is_removed(self):
        async def handler(job):
            return None

        dispatcher, store, _ = _dispatcher(handler)
        job = dispatcher.enqueue("c1", "5511", "oi")

        assert asyncio.run(_tick(dispatcher)) == 1
        assert store.get(job.id) is None
        assert dispatcher.health().pending == 0


class TestRetryPolicy:
    def test_backoff_doubles(self):
        dispatcher, _, _ = _dispatcher(None)
        assert [dispatcher.backoff_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_fails_twice_then_succeeds_in_three_attempts(self):
        attempts = []

        async def handler(job):
            attempts.append(job.attempt)
            if len(attempts) < 3:
                raise RuntimeError("reply generation timed out")

        dispatcher, store, clock = _dispatcher(handler)
        job = dispatcher.enqueue("c1", "5511", "oi")

        async def scenario():
            await _tick(dispatcher)
            assert store.get(job.id).status == JobStatus.PENDING
            assert "RuntimeError" in store.get(job.id).last_error

            clock.advance(1.9)
            assert await _tick(dispatcher) == 0
            clock.advance(0.1)
            assert await _tick(dispatcher) == 1

            clock.advance(3.9)
            assert await _tick(dispatcher) == 0
            clock.advance(0.1)
            assert await _tick(dispatcher) == 1

            clock.advance(3600)
            assert await _tick(dispatcher) == 0

        asyncio.run(scenario())
        assert attempts == [1, 2, 3]
        assert store.get(job.id) is None

    @patch("agendabot.services.job_queue.alert_error")
    def test_three_failures_mark_job_failed(self, mock_alert):
        attempts = []

        async def handler(job):
            attempts.append(job.attempt)
            raise ValueError("boom")

        dispatcher, store, clock = _dispatcher(handler)
        job = dispatcher.enqueue("c1", "5511", "oi")

        async def scenario():
            for _ in range(3):
                await _tick(dispatcher)
                clock.advance(60)
            # never re-enqueued
            clock.advance(3600)
            assert await _tick(dispatcher) == 0

        asyncio.run(scenario())

        assert attempts == [1, 2, 3]
        failed = store.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.last_error == "ValueError: boom"
        mock_alert.assert_called_once()
        assert mock_alert.call_args[0][1]["attempts"] == 3

        health = dispatcher.health()
        assert health.failed == 1
        assert health.pending == 0
        items = dispatcher.failed_jobs()
        assert [item.id for item in items] == [job.id]
        assert items[0].attempts == 3

    def test_custom_max_attempts(self):
        attempts = []

        async def handler(job):
            attempts.append(job.attempt)
            raise RuntimeError("down")

        with patch("agendabot.services.job_queue.alert_error"):
            dispatcher, store, clock = _dispatcher(handler, max_attempts=1)
            job = dispatcher.enqueue("c1", "5511", "oi")
            asyncio.run(_tick(dispatcher))

        assert attempts == [1]
        assert store.get(job.id).status == JobStatus.FAILED

    def test_failure_alert_runs_off_the_event_loop(self):
        threads = []

        async def handler(job):
            raise RuntimeError("down")

        async def scenario():
            loop_thread = threading.get_ident()
            await _tick(dispatcher)
            return loop_thread

        with patch(
            "agendabot.services.job_queue.alert_error",
            side_effect=lambda *args: threads.append(threading.get_ident()),
        ):
            dispatcher, store, clock = _dispatcher(handler, max_attempts=1)
            dispatcher.enqueue("c1", "5511", "oi")
            loop_thread = asyncio.run(scenario())

        assert len(threads) == 1
        assert threads[0] != loop_thread


class TestConcurrency:
    def test_claims_at_most_free_slots(self):
        release = None
        started = []

        async def handler(job):
            started.append(job.id)
            await release.wait()

        dispatcher, store, _ = _dispatcher(handler, concurrency=2)
        for i in range(5):
            dispatcher.enqueue("c1", f"55110000{i}", "oi")

        async def scenario():
            nonlocal release
            release = asyncio.Event()
            assert await dispatcher.run_once() == 2
            await asyncio.sleep(0)
            assert dispatcher.active == 2
            assert await dispatcher.run_once() == 0
            health = dispatcher.health()
            assert (health.pending, health.processing, health.active) == (3, 2, 2)
            release.set()
            await dispatcher.wait_idle()
            assert await dispatcher.run_once() == 2

            await dispatcher.wait_idle()

        asyncio.run(scenario())
        assert len(started) == 4

    def test_per_subject_lane_runs_jobs_one_at_a_time(self):
        events = []

        async def handler(job):
            events.append(("start", job.payload.raw_text))
            await asyncio.sleep(0.01)
            events.append(("end", job.payload.raw_text))

        dispatcher, _, _ = _dispatcher(handler, per_subject_ordering=True)
        dispatcher.enqueue("c1", "5511", "first")
        dispatcher.enqueue("c1", "5511", "second")

        asyncio.run(_tick(dispatcher))
        assert events == [("start", "first"), ("end", "first"), ("start", "second"), ("end", "second")]
        assert len(dispatcher._lanes) == 0

    def test_without_lane_jobs_interleave(self):
        events = []

        async def handler(job):
            events.append(("start", job.payload.raw_text))
            await asyncio.sleep(0.01)
            events.append(("end", job.payload.raw_text))

        dispatcher, _, _ = _dispatcher(handler)
        dispatcher.enqueue("c1", "5511", "first")
        dispatcher.enqueue("c1", "5511", "second")

        asyncio.run(_tick(dispatcher))
        assert events[:2] == [("start", "first"), ("start", "second")]


class TestRemove:
    def test_removes_pending_job(self):
        dispatcher, store, _ = _dispatcher(None)
        job = dispatcher.enqueue("c1", "5511", "oi")
        assert dispatcher.remove(job.id) is True
        assert store.get(job.id) is None

    def test_does_not_remove_started_or_unknown_job(self):
        dispatcher, store, clock = _dispatcher(None)
        job = dispatcher.enqueue("c1", "5511", "oi")
        store.claim(1, clock())
        assert dispatcher.remove(job.id) is False
        assert dispatcher.remove("missing") is False
