import time
from typing import Callable, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from . import metrics
from .exceptions import InvalidJobArguments, QueueError
from .logging_config import get_logger
from .models import Job, JobRecord, JobStatus, Primitive
from .redis_helper import JobStore

logger = get_logger(__name__)


class QueueClient:
    """Durably submits jobs for the worker runtime to pick up.

    Store failures are raised as ``QueueError``; a job that could not be
    written must never look like it was accepted.
    """

    def __init__(self, store: JobStore, max_attempts: int = 5, clock: Optional[Callable[[], float]] = None):
        self.store = store
        self.max_attempts = max_attempts
        self.clock = clock or store.clock

    def _build(self, kind: str, args: Sequence[Primitive], run_at: Optional[float], now: float) -> JobRecord:
        try:
            job = Job(kind=kind, args=args, scheduled_at=run_at)
        except ValidationError as exc:
            raise InvalidJobArguments(f"invalid job {kind!r}: {exc.errors()[0]['msg']}") from exc
        status = JobStatus.SCHEDULED if run_at is not None and run_at > now else JobStatus.PENDING
        return JobRecord(
            job=job,
            status=status,
            max_attempts=self.max_attempts,
            created_at=now,
            enqueued_at=now if status is JobStatus.PENDING else None,
        )

    def _run_at(self, delay: float, at: Optional[float], now: float) -> Optional[float]:
        if delay and at is not None:
            raise ValueError("pass either delay or at, not both")
        if at is not None:
            return at
        if delay and delay > 0:
            return now + delay
        return None

    async def _write(self, kind: str, records: List[JobRecord]) -> None:
        start = time.time()
        try:
            await self.store.add(records)
        except Exception as exc:
            metrics.error_count.inc()
            logger.error("queue_write_failed", kind=kind, jobs=len(records), error=str(exc))
            raise QueueError(kind, str(exc)) from exc
        finally:
            metrics.enqueue_latency_seconds.observe(time.time() - start)
        metrics.jobs_submitted_total.labels(kind=kind).inc(len(records))

    async def submit(
        self,
        kind: str,
        args: Sequence[Primitive] = (),
        delay: float = 0,
        at: Optional[float] = None,
    ) -> str:
        """Persist one job. Returns its job id."""
        record = await self.submit_record(kind, args, delay=delay, at=at)
        return record.job_id

    async def submit_record(
        self,
        kind: str,
        args: Sequence[Primitive] = (),
        delay: float = 0,
        at: Optional[float] = None,
    ) -> JobRecord:
        """Like ``submit`` but returns the record as written."""
        now = self.clock()
        record = self._build(kind, args, self._run_at(delay, at, now), now)
        await self._write(kind, [record])
        logger.info("job_submitted", job_id=record.job_id, kind=kind, status=record.status.value)
        return record

    async def submit_bulk(
        self,
        kind: str,
        args_list: Iterable[Sequence[Primitive]],
        at: Optional[float] = None,
    ) -> List[str]:
        """Persist many jobs of one kind in a single round trip."""
        now = self.clock()
        run_at = self._run_at(0, at, now)
        records = [self._build(kind, args, run_at, now) for args in args_list]
        if not records:
            return []
        await self._write(kind, records)
        logger.info("jobs_submitted_bulk", kind=kind, count=len(records))
        return [record.job_id for record in records]
