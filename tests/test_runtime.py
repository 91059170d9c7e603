import pytest

from agendabot.config import Settings
from agendabot.main import _is_env_enabled, _is_worker_enabled
from agendabot.runtime import _build_job_store, _build_memory, build_runtime
from agendabot.services.extraction_memory import InMemoryExtractionMemory, RedisExtractionMemory
from agendabot.services.handover_service import InMemoryPauseStore
from agendabot.services.job_queue import InMemoryJobStore, SqlJobStore


class TestBuilders:
    def test_job_store_backends(self):
        assert isinstance(_build_job_store(Settings(queue_backend="memory")), InMemoryJobStore)
        assert isinstance(_build_job_store(Settings(queue_backend="postgres")), SqlJobStore)
        with pytest.raises(ValueError):
            _build_job_store(Settings(queue_backend="kafka"))

    def test_memory_backends(self):
        assert isinstance(_build_memory(Settings(extraction_memory_backend="memory")), InMemoryExtractionMemory)
        assert isinstance(
            _build_memory(Settings(extraction_memory_backend="redis", redis_url="redis://localhost:6379/1")),
            RedisExtractionMemory,
        )
        with pytest.raises(ValueError):
            _build_memory(Settings(extraction_memory_backend="memcached"))

    def test_runtime_uses_configured_queue_policy(self):
        cfg = Settings(queue_backend="memory", queue_concurrency=5, queue_max_attempts=4, queue_backoff_seconds=1.5)

        built = build_runtime(cfg)

        assert built.dispatcher.concurrency == 5
        assert built.dispatcher.max_attempts == 4
        assert built.dispatcher.backoff_delay(2) == 3.0
        assert built.dispatcher.handler is built.pipeline
        assert built.pipeline.memory is built.memory
        assert isinstance(built.handover.store, InMemoryPauseStore)
        assert built.handover.pause_minutes == 3.0


class TestWorkerToggles:
    def test_env_parsing(self):
        assert _is_env_enabled(None) is True
        assert _is_env_enabled(None, default=False) is False
        assert _is_env_enabled(" Off ") is False
        assert _is_env_enabled("0") is False
        assert _is_env_enabled("yes") is True

    def test_workers_stay_off_under_pytest(self):
        assert _is_worker_enabled("QUEUE_WORKER_ENABLED", True) is False
