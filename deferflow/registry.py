"""
Job registry and dispatch.

A job kind maps to one handler with two modes:

- enqueue mode (no arguments): find pending work and submit one unit job per item
- process mode (one argument, the item id): do one idempotent unit of work

The mode is decided once, by ``request_for``, when a job is picked up.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .exceptions import InvalidJobArguments, PermanentJobError, UnknownJobKind
from .logging_config import get_logger
from .models import JobResult, Primitive
from .queue import QueueClient

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 1000


@dataclass(frozen=True)
class EnqueueRequest:
    pass


@dataclass(frozen=True)
class ProcessRequest:
    item_id: Primitive


Request = Union[EnqueueRequest, ProcessRequest]


def request_for(args: Sequence[Primitive]) -> Request:
    if not args:
        return EnqueueRequest()
    if len(args) == 1:
        return ProcessRequest(args[0])
    raise InvalidJobArguments(f"expected at most one item id, got {len(args)} arguments")


class JobHandler:
    """Base class for job handlers.

    Subclasses implement ``find_pending`` (or override ``enqueue`` entirely)
    and ``process``. ``process`` must be safe to run more than once for the
    same item: a retry after a timeout can follow a partial run.
    """

    batch_size: int = DEFAULT_BATCH_SIZE

    async def find_pending(self) -> Iterable[Primitive]:
        return []

    async def enqueue(self, kind: str, queue: QueueClient) -> int:
        item_ids = list(await self.find_pending())
        return await self.submit_in_batches(queue, kind, item_ids)

    async def process(self, item_id: Primitive) -> Optional[JobResult]:
        raise NotImplementedError

    async def submit_in_batches(self, queue: QueueClient, kind: str, item_ids: Sequence[Primitive]) -> int:
        """Submit one unit job per item id, at most ``batch_size`` per bulk call.

        A failed batch raises; later batches are not attempted.
        """
        submitted = 0
        for start in range(0, len(item_ids), self.batch_size):
            batch = item_ids[start:start + self.batch_size]
            await queue.submit_bulk(kind, [[item_id] for item_id in batch])
            submitted += len(batch)
        logger.info("work_enqueued", kind=kind, count=submitted)
        return submitted


class JobRegistry:
    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, kind: str, handler: JobHandler) -> JobHandler:
        if not kind:
            raise ValueError("job kind must be a non-empty string")
        if kind in self._handlers:
            raise ValueError(f"job kind {kind!r} is already registered")
        self._handlers[kind] = handler
        return handler

    def get(self, kind: str) -> JobHandler:
        try:
            return self._handlers[kind]
        except KeyError:
            raise UnknownJobKind(kind) from None

    def __contains__(self, kind: str) -> bool:
        return kind in self._handlers

    def kinds(self) -> List[str]:
        return sorted(self._handlers)


class Dispatcher:
    """Runs one job against its handler and reports the outcome as a JobResult."""

    def __init__(self, registry: JobRegistry, queue: QueueClient):
        self.registry = registry
        self.queue = queue

    async def invoke(self, kind: str, request: Request) -> Optional[JobResult]:
        handler = self.registry.get(kind)
        if isinstance(request, EnqueueRequest):
            await handler.enqueue(kind, self.queue)
            return None
        return await handler.process(request.item_id)

    async def dispatch(self, kind: str, args: Sequence[Primitive]) -> JobResult:
        try:
            result = await self.invoke(kind, request_for(args))
        except (UnknownJobKind, InvalidJobArguments, PermanentJobError) as exc:
            return JobResult.failed(f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            return JobResult.retry(f"{type(exc).__name__}: {exc}")
        return result or JobResult.success()
