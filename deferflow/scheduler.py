import asyncio
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from . import metrics
from .exceptions import QueueError
from .logging_config import get_logger
from .models import JobStatus, RetryPolicy
from .queue import QueueClient
from .redis_helper import JobStore

logger = get_logger(__name__)

TRIGGER_KEY = "trigger:{kind}:{slot}"


@dataclass(frozen=True)
class PeriodicTrigger:
    """Runs ``kind`` in enqueue mode once every ``every`` seconds."""

    kind: str
    every: float

    def slot(self, now: float) -> int:
        return math.floor(now / self.every)


class Scheduler:
    """Moves due jobs onto the ready queue, recovers stalled jobs and fires periodic triggers."""

    def __init__(
        self,
        store: JobStore,
        queue: QueueClient,
        retry_policy: RetryPolicy,
        triggers: Sequence[PeriodicTrigger] = (),
        poll_interval: float = 0.5,
        batch: int = 100,
    ):
        self.store = store
        self.queue = queue
        self.retry_policy = retry_policy
        self.triggers = list(triggers)
        self.poll_interval = poll_interval
        self.batch = batch
        self.running = False

    async def promote_due(self, now: Optional[float] = None) -> List[str]:
        now = self.store.clock() if now is None else now
        promoted = []
        for job_id in await self.store.due_scheduled(now, count=self.batch):
            record = await self.store.promote(job_id, now)
            if record is None:
                continue
            metrics.jobs_promoted_total.inc()
            promoted.append(job_id)
            logger.debug("job_promoted", job_id=job_id, kind=record.kind)
        return promoted

    async def recover_stalled(self, now: Optional[float] = None) -> List[str]:
        """Treat expired leases as failed attempts (the worker died or was killed)."""
        now = self.store.clock() if now is None else now
        recovered = []
        for job_id in await self.store.due_leases(now, count=self.batch):
            updated = await self.store.expire_lease(
                job_id, now, "lease expired before the job finished", self.retry_policy
            )
            if updated is None:
                continue
            if updated.status is JobStatus.FAILED_PERMANENT:
                metrics.jobs_dead_total.labels(kind=updated.kind).inc()
            metrics.jobs_recovered_total.inc()
            recovered.append(job_id)
        if recovered:
            logger.warning("stalled_jobs_recovered", count=len(recovered))
        return recovered

    async def fire_triggers(self, now: Optional[float] = None) -> List[str]:
        now = self.store.clock() if now is None else now
        fired = []
        for trigger in self.triggers:
            key = TRIGGER_KEY.format(kind=trigger.kind, slot=trigger.slot(now))
            # Only the first scheduler to claim the slot submits the job.
            claimed = await self.store.redis.set(key, "1", ex=max(int(math.ceil(trigger.every)) * 2, 1), nx=True)
            if not claimed:
                continue
            try:
                job_id = await self.queue.submit(trigger.kind)
            except QueueError:
                # Give the slot back so the next tick can fire it.
                await self.store.redis.delete(key)
                raise
            metrics.triggers_fired_total.labels(kind=trigger.kind).inc()
            fired.append(job_id)
        return fired

    async def tick(self, now: Optional[float] = None) -> None:
        now = self.store.clock() if now is None else now
        for step in (self.fire_triggers, self.recover_stalled, self.promote_due):
            try:
                await step(now)
            except Exception:
                logger.exception("scheduler_step_error", step=step.__name__)

    async def run(self) -> None:
        self.running = True
        logger.info("scheduler_started", triggers=[t.kind for t in self.triggers])
        try:
            while self.running:
                await self.tick()
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            logger.info("scheduler_stopped")

    def stop(self) -> None:
        self.running = False
