import os
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from redis.exceptions import WatchError

from .logging_config import get_logger
from .models import JobRecord, JobStatus

logger = get_logger(__name__)

TESTING = os.getenv("TESTING") == "1"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Key names
READY_QUEUE = "ready_queue"
JOBS_HASH = "jobs"
SCHEDULED_ZSET = "scheduled_zset"
INFLIGHT_ZSET = "inflight_zset"
DEAD_HASH = "dead_jobs"


class AsyncInMemoryRedis:
    """The subset of redis.asyncio.Redis this project uses, kept in process memory.

    ``decode_responses`` mirrors the real client flag: with it set, string
    reads decode stored bytes as utf-8 and fail the same way on binary data.
    WATCH is emulated with a version counter per key.
    """

    def __init__(self, clock: Callable[[], float] = time.time, decode_responses: bool = True):
        self._clock = clock
        self.decode_responses = decode_responses
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._lists: Dict[str, List[str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._strings: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._versions: Dict[str, int] = {}
        self.pipelines_executed = 0

    def _touch(self, name: str) -> None:
        self._versions[name] = self._versions.get(name, 0) + 1

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None

    def pipeline(self, transaction: bool = True) -> "_InMemoryPipeline":
        return _InMemoryPipeline(self)

    async def transaction(self, func, *watches: str, value_from_callable: bool = False):
        while True:
            pipe = self.pipeline()
            await pipe.watch(*watches)
            func_value = await func(pipe)
            try:
                exec_value = await pipe.execute()
            except WatchError:
                continue
            return func_value if value_from_callable else exec_value

    # hash methods
    async def hset(self, name: str, key: str, value: str):
        h = self._hashes.setdefault(name, {})
        added = 0 if key in h else 1
        h[key] = value
        self._touch(name)
        return added

    async def hget(self, name: str, key: str) -> Optional[str]:
        return self._hashes.get(name, {}).get(key)

    async def hgetall(self, name: str) -> Dict[str, str]:
        return dict(self._hashes.get(name, {}))

    async def hdel(self, name: str, *keys: str) -> int:
        h = self._hashes.get(name, {})
        removed = 0
        for k in keys:
            if k in h:
                del h[k]
                removed += 1
        if removed:
            self._touch(name)
        return removed

    # list methods
    async def rpush(self, name: str, *values: str):
        lst = self._lists.setdefault(name, [])
        lst.extend(values)
        self._touch(name)
        return len(lst)

    async def lpop(self, name: str) -> Optional[str]:
        lst = self._lists.get(name, [])
        if not lst:
            return None
        self._touch(name)
        return lst.pop(0)

    async def lindex(self, name: str, index: int) -> Optional[str]:
        lst = self._lists.get(name, [])
        try:
            return lst[index]
        except IndexError:
            return None

    async def llen(self, name: str) -> int:
        return len(self._lists.get(name, []))

    # zset methods
    async def zadd(self, name: str, mapping: Dict[str, float]):
        z = self._zsets.setdefault(name, {})
        added = 0
        for member, score in mapping.items():
            if member not in z:
                added += 1
            z[member] = score
        self._touch(name)
        return added

    async def zrangebyscore(
        self,
        name: str,
        min: float,
        max: float,
        start: Optional[int] = None,
        num: Optional[int] = None,
    ) -> List[str]:
        z = self._zsets.get(name, {})
        members = [m for m, s in sorted(z.items(), key=lambda kv: kv[1]) if min <= s <= max]
        if start is not None and num is not None:
            members = members[start:start + num]
        return members

    async def zscore(self, name: str, member: str) -> Optional[float]:
        return self._zsets.get(name, {}).get(member)

    async def zrem(self, name: str, *members: str) -> int:
        z = self._zsets.get(name, {})
        removed = 0
        for m in members:
            if m in z:
                del z[m]
                removed += 1
        if removed:
            self._touch(name)
        return removed

    # string methods
    async def get(self, name: str):
        entry = self._strings.get(name)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._strings[name]
            return None
        if isinstance(value, str) and not self.decode_responses:
            return value.encode("utf-8")
        if isinstance(value, bytes) and self.decode_responses:
            return value.decode("utf-8")
        return value

    async def set(self, name: str, value, ex: Optional[int] = None, nx: bool = False):
        if nx and await self.get(name) is not None:
            return None
        expires_at = self._clock() + ex if ex else None
        self._strings[name] = (value, expires_at)
        self._touch(name)
        return True

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self._strings.pop(name, None) is not None:
                removed += 1
                self._touch(name)
        return removed


class _InMemoryPipeline:
    """Buffers commands and applies them in order on execute(), like a MULTI/EXEC block.

    After watch() commands run immediately until multi() is called, and
    execute() raises WatchError without applying anything if a watched key
    changed in between.
    """

    def __init__(self, client: AsyncInMemoryRedis):
        self._client = client
        self._commands: List[Tuple[str, tuple, dict]] = []
        self._watched: Dict[str, int] = {}
        self._buffering = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self._commands.clear()
        self._watched = {}

    async def watch(self, *names: str) -> None:
        self._watched = {name: self._client._versions.get(name, 0) for name in names}
        self._buffering = False

    def multi(self) -> None:
        self._buffering = True

    def __getattr__(self, command: str):
        if command.startswith("_") or not hasattr(self._client, command):
            raise AttributeError(command)

        def queue(*args, **kwargs):
            if not self._buffering:
                return getattr(self._client, command)(*args, **kwargs)
            self._commands.append((command, args, kwargs))
            return self

        return queue

    async def execute(self) -> List[Any]:
        commands, self._commands = self._commands, []
        watched, self._watched = self._watched, {}
        self._buffering = True
        versions = self._client._versions
        if any(versions.get(name, 0) != seen for name, seen in watched.items()):
            raise WatchError("Watched variable changed.")
        self._client.pipelines_executed += 1
        return [await getattr(self._client, name)(*args, **kwargs) for name, args, kwargs in commands]


# In-memory clients for testing, one per decode_responses setting
_inmemory_clients: Dict[bool, AsyncInMemoryRedis] = {}


def get_redis(url: Optional[str] = None, testing: Optional[bool] = None, decode_responses: bool = True):
    use_memory = TESTING if testing is None else testing
    if use_memory:
        if decode_responses not in _inmemory_clients:
            _inmemory_clients[decode_responses] = AsyncInMemoryRedis(decode_responses=decode_responses)
        return _inmemory_clients[decode_responses]

    import redis.asyncio as redis  # type: ignore

    return redis.Redis.from_url(url or REDIS_URL, decode_responses=decode_responses)


class JobStore:
    """Durable job storage on top of a Redis client.

    Records live in the ``jobs`` hash. Their ids move between the ready list,
    the scheduled set (score = run time) and the in-flight set
    (score = lease deadline). Permanently failed records move to ``dead_jobs``.
    Every move of an id between those keys is a single MULTI/EXEC, so a crash
    or a lost connection leaves the id where it was.
    """

    def __init__(self, redis_client, clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self.clock = clock

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    # writes

    async def add(self, records: List[JobRecord]) -> None:
        """Persist new records and queue them, all in one round trip."""
        if not records:
            return
        now = self.clock()
        pipe = self.redis.pipeline(transaction=True)
        for record in records:
            pipe.hset(JOBS_HASH, record.job_id, record.dumps())
            run_at = record.job.scheduled_at
            if run_at is not None and run_at > now:
                pipe.zadd(SCHEDULED_ZSET, {record.job_id: run_at})
            else:
                pipe.rpush(READY_QUEUE, record.job_id)
        await pipe.execute()

    async def save(self, record: JobRecord) -> None:
        await self.redis.hset(JOBS_HASH, record.job_id, record.dumps())

    async def complete(self, job_id: str) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.hdel(JOBS_HASH, job_id)
        pipe.zrem(INFLIGHT_ZSET, job_id)
        await pipe.execute()

    async def bury(self, record: JobRecord) -> None:
        """Move a permanently failed record to the dead set."""
        pipe = self.redis.pipeline(transaction=True)
        self._stage_bury(pipe, record)
        await pipe.execute()

    async def resurrect(self, job_id: str) -> Optional[JobRecord]:
        async def revive(pipe):
            raw = await pipe.hget(DEAD_HASH, job_id)
            if raw is None:
                return None
            record = JobRecord.loads(raw).with_status(
                JobStatus.PENDING, attempts=0, last_error=None, enqueued_at=self.clock()
            )
            pipe.multi()
            pipe.hdel(DEAD_HASH, job_id)
            pipe.hset(JOBS_HASH, job_id, record.dumps())
            pipe.rpush(READY_QUEUE, job_id)
            return record

        return await self.redis.transaction(revive, DEAD_HASH, value_from_callable=True)

    async def lease(self, job_id: str, deadline: float) -> None:
        await self.redis.zadd(INFLIGHT_ZSET, {job_id: deadline})

    # reads

    async def get(self, job_id: str) -> Optional[JobRecord]:
        raw = await self.redis.hget(JOBS_HASH, job_id)
        if raw is None:
            return None
        return JobRecord.loads(raw)

    async def list(self) -> List[JobRecord]:
        all_items = await self.redis.hgetall(JOBS_HASH)
        return [JobRecord.loads(v) for v in all_items.values()]

    async def list_dead(self) -> List[JobRecord]:
        all_items = await self.redis.hgetall(DEAD_HASH)
        return [JobRecord.loads(v) for v in all_items.values()]

    async def due_scheduled(self, now: float, count: int = 100) -> List[str]:
        return await self.redis.zrangebyscore(SCHEDULED_ZSET, 0, now, start=0, num=count)

    async def due_leases(self, now: float, count: int = 100) -> List[str]:
        return await self.redis.zrangebyscore(INFLIGHT_ZSET, 0, now, start=0, num=count)

    # claims

    async def claim_ready(self, lease_for: float) -> Optional[Tuple[str, Optional[JobRecord]]]:
        """Pop the head of the ready list and lease it in one transaction.

        Returns None on an empty list and ``(job_id, None)`` when the id had
        no record left. Otherwise the record comes back in progress, with its
        attempt counted and its lease deadline ``lease_for`` seconds away.
        """

        async def claim(pipe):
            job_id = await pipe.lindex(READY_QUEUE, 0)
            if job_id is None:
                return None
            raw = await pipe.hget(JOBS_HASH, job_id)
            pipe.multi()
            pipe.lpop(READY_QUEUE)
            if raw is None:
                return job_id, None
            previous = JobRecord.loads(raw)
            record = previous.with_status(JobStatus.IN_PROGRESS, attempts=previous.attempts + 1)
            pipe.hset(JOBS_HASH, job_id, record.dumps())
            pipe.zadd(INFLIGHT_ZSET, {job_id: self.clock() + lease_for})
            return job_id, record

        return await self.redis.transaction(claim, READY_QUEUE, value_from_callable=True)

    async def promote(self, job_id: str, now: float) -> Optional[JobRecord]:
        """Move one due id from the scheduled set to the ready list.

        Returns None when another scheduler got there first or the id is not
        due yet.
        """

        async def move(pipe):
            run_at = await pipe.zscore(SCHEDULED_ZSET, job_id)
            if run_at is None or run_at > now:
                return None
            raw = await pipe.hget(JOBS_HASH, job_id)
            pipe.multi()
            pipe.zrem(SCHEDULED_ZSET, job_id)
            if raw is None:
                return None
            record = JobRecord.loads(raw).with_status(JobStatus.PENDING, enqueued_at=now)
            pipe.hset(JOBS_HASH, job_id, record.dumps())
            pipe.rpush(READY_QUEUE, job_id)
            return record

        return await self.redis.transaction(move, SCHEDULED_ZSET, value_from_callable=True)

    async def expire_lease(self, job_id: str, now: float, error: str, policy) -> Optional[JobRecord]:
        """Count an expired lease as a failed attempt; None when it is no longer expired."""

        async def expire(pipe):
            deadline = await pipe.zscore(INFLIGHT_ZSET, job_id)
            if deadline is None or deadline > now:
                return None
            raw = await pipe.hget(JOBS_HASH, job_id)
            pipe.multi()
            record = JobRecord.loads(raw) if raw is not None else None
            if record is None or record.status is not JobStatus.IN_PROGRESS:
                pipe.zrem(INFLIGHT_ZSET, job_id)
                return None
            return self._stage_failure(pipe, record, error, policy)

        staged = await self.redis.transaction(expire, INFLIGHT_ZSET, value_from_callable=True)
        if staged is None:
            return None
        return self._log_failure(*staged)

    async def record_failure(self, record: JobRecord, error: str, policy) -> JobRecord:
        """Reschedule a failed attempt with backoff, or bury it once attempts run out."""
        pipe = self.redis.pipeline(transaction=True)
        staged = self._stage_failure(pipe, record, error, policy)
        await pipe.execute()
        return self._log_failure(*staged)

    def _stage_failure(self, pipe, record: JobRecord, error: str, policy) -> Tuple[JobRecord, Optional[float]]:
        if record.can_retry():
            delay = policy.delay_for(record.attempts)
            retrying = record.with_status(JobStatus.FAILED_RETRYABLE, last_error=error)
            pipe.hset(JOBS_HASH, record.job_id, retrying.dumps())
            pipe.zadd(SCHEDULED_ZSET, {record.job_id: self.clock() + delay})
            pipe.zrem(INFLIGHT_ZSET, record.job_id)
            return retrying, delay
        dead = record.with_status(JobStatus.FAILED_PERMANENT, last_error=error)
        self._stage_bury(pipe, dead)
        return dead, None

    def _stage_bury(self, pipe, record: JobRecord) -> None:
        pipe.hset(DEAD_HASH, record.job_id, record.dumps())
        pipe.hdel(JOBS_HASH, record.job_id)
        pipe.zrem(INFLIGHT_ZSET, record.job_id)

    def _log_failure(self, record: JobRecord, delay: Optional[float]) -> JobRecord:
        if delay is not None:
            logger.warning(
                "job_retry_scheduled",
                job_id=record.job_id,
                kind=record.kind,
                attempt=record.attempts,
                delay=round(delay, 3),
                error=record.last_error,
            )
        else:
            logger.error(
                "job_failed_permanently",
                job_id=record.job_id,
                kind=record.kind,
                attempts=record.attempts,
                error=record.last_error,
            )
        return record
