"""Per-conversation accumulator of partially extracted booking fields."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from agendabot.logging_config import get_logger
from agendabot.schemas.conversation import ExtractedFields
from agendabot.services.keyed_locks import KeyedLocks

logger = get_logger("extraction_memory")


def memory_key(company_id, subject_address: str) -> str:
    return f"{company_id}:{subject_address}"


class ExtractionMemory(ABC):
    @abstractmethod
    async def get(self, key: str) -> ExtractedFields: ...

    @abstractmethod
    async def merge(self, key: str, newer: ExtractedFields) -> ExtractedFields:
        """Overwrite only the fields present in ``newer`` and return the merged set."""

    @abstractmethod
    async def reset(self, key: str) -> None: ...


@dataclass
class _Entry:
    fields: ExtractedFields
    touched_at: float


class InMemoryExtractionMemory(ExtractionMemory):
    """Process-local memory serialised per subject key.

    Entries idle for longer than ``ttl_seconds`` are dropped on next access, and
    abandoned ones are swept at most every ``sweep_interval_seconds`` while
    merges happen; a ttl of 0 keeps them until reset.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        clock: Optional[Callable[[], float]] = None,
        sweep_interval_seconds: float = 60,
    ):
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock or time.monotonic
        self._entries: dict[str, _Entry] = {}
        self._locks = KeyedLocks()
        self._last_sweep = self._clock()

    def _expired(self, entry: _Entry, now: float) -> bool:
        return bool(self.ttl_seconds) and now - entry.touched_at > self.ttl_seconds

    def _current(self, key: str) -> ExtractedFields:
        entry = self._entries.get(key)
        if entry is None:
            return ExtractedFields()
        if self._expired(entry, self._clock()):
            logger.info("Extraction memory expired", extra={"context": {"key": key}})
            del self._entries[key]
            return ExtractedFields()
        return entry.fields

    def _sweep(self, now: float) -> None:
        if not self.ttl_seconds or now - self._last_sweep < self.sweep_interval_seconds:
            return
        self._last_sweep = now
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info("Extraction memory swept", extra={"context": {"expired": len(stale)}})

    async def get(self, key: str) -> ExtractedFields:
        async with self._locks.hold(key):
            return self._current(key)

    async def merge(self, key: str, newer: ExtractedFields) -> ExtractedFields:
        async with self._locks.hold(key):
            merged = self._current(key).merged_with(newer)
            now = self._clock()
            self._entries[key] = _Entry(fields=merged, touched_at=now)
            self._sweep(now)
            return merged

    async def reset(self, key: str) -> None:
        async with self._locks.hold(key):
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisExtractionMemory(ExtractionMemory):
    """Shared memory for multi-instance deployments; Redis expiry enforces the TTL."""

    def __init__(self, client, ttl_seconds: float = 3600, prefix: str = "agendabot:extraction:"):
        self.client = client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix
        self._locks = KeyedLocks()

    async def _load(self, key: str) -> ExtractedFields:
        raw = await self.client.get(self.prefix + key)
        if not raw:
            return ExtractedFields()
        return ExtractedFields.model_validate_json(raw)

    async def get(self, key: str) -> ExtractedFields:
        return await self._load(key)

    async def merge(self, key: str, newer: ExtractedFields) -> ExtractedFields:
        async with self._locks.hold(key):
            merged = (await self._load(key)).merged_with(newer)
            await self.client.set(self.prefix + key, merged.model_dump_json(), ex=self.ttl_seconds or None)
            return merged

    async def reset(self, key: str) -> None:
        async with self._locks.hold(key):
            await self.client.delete(self.prefix + key)
