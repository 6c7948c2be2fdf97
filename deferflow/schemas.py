from pydantic import BaseModel, Field
from typing import List, Optional

from .models import JobRecord, Primitive


class JobCreate(BaseModel):
    kind: str = Field(min_length=1)
    args: List[Primitive] = Field(default_factory=list)
    delay: float = Field(default=0, ge=0)
    at: Optional[float] = None  # epoch seconds; if set, job will be scheduled


class BulkJobCreate(BaseModel):
    kind: str = Field(min_length=1)
    args_list: List[List[Primitive]]
    at: Optional[float] = None


class JobResponse(BaseModel):
    job_id: str
    kind: str
    args: List[Primitive]
    status: str
    attempts: int = 0
    scheduled_at: Optional[float] = None
    last_error: Optional[str] = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobResponse":
        return cls(
            job_id=record.job_id,
            kind=record.kind,
            args=record.job.args,
            status=record.status.value,
            attempts=record.attempts,
            scheduled_at=record.job.scheduled_at,
            last_error=record.last_error,
        )


class JobListResponse(BaseModel):
    jobs: List[JobResponse]


class BulkJobResponse(BaseModel):
    job_ids: List[str]


class TriggerResponse(BaseModel):
    kind: str
    job_id: str
