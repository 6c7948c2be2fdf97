import random
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Primitive = Union[str, int, float, bool, None]


class JobStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_PERMANENT = "failed_permanent"


class Job(BaseModel):
    """What to run: a kind plus its positional arguments."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(min_length=1)
    args: List[Primitive] = Field(default_factory=list)
    scheduled_at: Optional[float] = None  # epoch seconds

    @field_validator("args", mode="before")
    @classmethod
    def _primitive_args(cls, value):
        if value is None:
            return []
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
            raise ValueError("args must be a list of primitive values")
        for item in value:
            if item is not None and not isinstance(item, (str, int, float, bool)):
                raise ValueError(f"job argument {item!r} is not a primitive value")
        return list(value)


class JobRecord(BaseModel):
    """Persisted envelope around a Job. Updated by copy, never in place."""

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    job: Job
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 5
    created_at: float = Field(default_factory=time.time)
    enqueued_at: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.job.kind

    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def with_status(self, status: JobStatus, **changes) -> "JobRecord":
        return self.model_copy(update={"status": status, **changes})

    def dumps(self) -> str:
        return self.model_dump_json()

    @classmethod
    def loads(cls, raw: str) -> "JobRecord":
        return cls.model_validate_json(raw)


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY = "retry"
    FAILED = "failed"


@dataclass(frozen=True)
class JobResult:
    outcome: Outcome
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "JobResult":
        return cls(Outcome.SUCCEEDED)

    @classmethod
    def retry(cls, error: str) -> "JobResult":
        return cls(Outcome.RETRY, error)

    @classmethod
    def failed(cls, error: str) -> "JobResult":
        return cls(Outcome.FAILED, error)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff: str = "exponential"
    base_delay: float = 15.0
    max_delay: float = 3600.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.job_max_attempts,
            backoff=settings.retry_backoff,
            base_delay=settings.retry_base_seconds,
            max_delay=settings.retry_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before running attempt number ``attempt + 1``."""
        if self.backoff == "fixed":
            delay = self.base_delay
        else:
            delay = self.base_delay * (2 ** max(attempt - 1, 0))
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay
