from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    FAILED = "FAILED"


class JobPayload(BaseModel):
    company_id: str
    subject_address: str
    raw_text: str
    provider_metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass
class Job:
    id: str
    payload: JobPayload
    attempt: int = 0
    priority: int = 1
    status: JobStatus = JobStatus.PENDING
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def subject_key(self) -> str:
        return f"{self.payload.company_id}:{self.payload.subject_address}"


class QueueHealth(BaseModel):
    pending: int
    processing: int
    failed: int
    active: int
    concurrency: int
    running: bool


class FailedJobItem(BaseModel):
    id: str
    company_id: str
    subject_address: str
    attempts: int
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None
