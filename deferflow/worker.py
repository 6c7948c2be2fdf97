"""Worker runtime: pops job ids from the ready queue and runs them under a time budget.

Claiming a job and leasing it happen in one transaction. Every attempt then
ends in exactly one of: the record is deleted (success), the record is
rescheduled with backoff, or the record is moved to the dead set.
"""
import asyncio
import time
from typing import Optional, Set

from . import metrics
from .logging_config import get_logger
from .models import JobRecord, JobResult, JobStatus, Outcome, RetryPolicy
from .redis_helper import JobStore
from .registry import Dispatcher

logger = get_logger(__name__)

# Extra time on top of the job budget before the scheduler treats a lease as stalled.
LEASE_GRACE_SECONDS = 5.0


class Worker:
    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        retry_policy: RetryPolicy,
        job_timeout: float = 25.0,
        poll_interval: float = 0.5,
        concurrency: int = 1,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.retry_policy = retry_policy
        self.job_timeout = job_timeout
        self.poll_interval = poll_interval
        self.concurrency = concurrency
        self.running = False
        self.active_jobs: Set[str] = set()

    async def run(self) -> None:
        self.running = True
        logger.info("worker_started", concurrency=self.concurrency, job_timeout=self.job_timeout)
        try:
            await asyncio.gather(*(self._loop() for _ in range(self.concurrency)))
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            logger.info("worker_stopped")

    async def stop(self, grace: float = 30.0) -> None:
        """Stop claiming jobs and wait up to ``grace`` seconds for in-flight ones."""
        self.running = False
        deadline = time.monotonic() + grace
        while self.active_jobs and time.monotonic() < deadline:
            await asyncio.sleep(0.1)
        if self.active_jobs:
            logger.warning("worker_stopped_with_active_jobs", active_jobs=sorted(self.active_jobs))

    async def _loop(self) -> None:
        while self.running:
            try:
                found = await self.run_once()
            except Exception:
                logger.exception("worker_loop_error")
                found = False
            if not found:
                await asyncio.sleep(self.poll_interval)

    async def run_once(self) -> bool:
        claimed = await self.store.claim_ready(self.job_timeout + LEASE_GRACE_SECONDS)
        if claimed is None:
            return False
        job_id, record = claimed
        if record is None:
            logger.warning("job_record_missing", job_id=job_id)
            return True
        await self.handle_job(record)
        return True

    async def handle_job(self, record: JobRecord) -> JobResult:
        """Run a record already claimed by ``JobStore.claim_ready`` and settle it."""
        self.active_jobs.add(record.job_id)
        metrics.jobs_in_progress.inc()
        start = time.time()
        try:
            result = await asyncio.wait_for(
                self.dispatcher.dispatch(record.kind, record.job.args),
                timeout=self.job_timeout,
            )
        except asyncio.TimeoutError:
            result = JobResult.retry(f"timed out after {self.job_timeout}s")
        finally:
            self.active_jobs.discard(record.job_id)
            metrics.jobs_in_progress.dec()
            metrics.execution_latency_seconds.labels(kind=record.kind).observe(time.time() - start)

        await self.settle(record, result)
        return result

    async def settle(self, record: JobRecord, result: JobResult) -> Optional[JobRecord]:
        metrics.jobs_executed_total.labels(kind=record.kind, outcome=result.outcome.value).inc()
        if result.outcome is Outcome.SUCCEEDED:
            await self.store.complete(record.job_id)
            logger.info("job_succeeded", job_id=record.job_id, kind=record.kind, attempt=record.attempts)
            return None

        if result.outcome is Outcome.FAILED:
            record = record.with_status(JobStatus.FAILED_PERMANENT, last_error=result.error)
            await self.store.bury(record)
            metrics.jobs_dead_total.labels(kind=record.kind).inc()
            logger.error(
                "job_failed_permanently",
                job_id=record.job_id,
                kind=record.kind,
                attempts=record.attempts,
                error=result.error,
            )
            return record

        updated = await self.store.record_failure(record, result.error or "unknown error", self.retry_policy)
        if updated.status is JobStatus.FAILED_PERMANENT:
            metrics.jobs_dead_total.labels(kind=record.kind).inc()
        else:
            metrics.jobs_retried_total.labels(kind=record.kind).inc()
        return updated
