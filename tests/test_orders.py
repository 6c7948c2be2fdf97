import pytest

from deferflow.exceptions import PermanentJobError
from deferflow.orders import KIND, InMemoryOrderRepository, Notifier, Order, OrderNotificationJob
from deferflow.redis_helper import READY_QUEUE
from deferflow.registry import Dispatcher, JobRegistry


@pytest.fixture
def repository(clock):
    return InMemoryOrderRepository(
        [
            Order(id=6, email="six@example.com", updated_at=1.0, notified_at=2.0),
            Order(id=7, email="seven@example.com", updated_at=1.0),
            Order(id=8, email="eight@example.com", updated_at=1.0),
            Order(id=9, email="nine@example.com", updated_at=1.0),
        ],
        clock=clock,
    )


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def dispatcher(repository, notifier, queue):
    registry = JobRegistry()
    registry.register(KIND, OrderNotificationJob(repository, notifier))
    return Dispatcher(registry, queue)


@pytest.mark.asyncio
async def test_enqueue_submits_one_job_per_pending_order(dispatcher, store, redis_client):
    before = redis_client.pipelines_executed

    result = await dispatcher.dispatch(KIND, [])

    assert result.ok
    assert redis_client.pipelines_executed == before + 1
    job_ids = [await redis_client.lpop(READY_QUEUE) for _ in range(3)]
    assert [(await store.get(j)).job.args for j in job_ids] == [[7], [8], [9]]
    assert await redis_client.llen(READY_QUEUE) == 0


@pytest.mark.asyncio
async def test_process_is_idempotent(dispatcher, repository, notifier, clock):
    for order_id in (7, 8, 9):
        assert (await dispatcher.dispatch(KIND, [order_id])).ok
    first = {o.id: o.notified_at for o in repository.list()}

    clock.advance(60)
    for order_id in (7, 8, 9):
        assert (await dispatcher.dispatch(KIND, [order_id])).ok

    assert {o.id: o.notified_at for o in repository.list()} == first
    assert repository.writes == 3
    assert sorted(notifier.sent) == [7, 8, 9]


@pytest.mark.asyncio
async def test_retry_after_partial_run_does_not_notify_twice(repository, notifier):
    job = OrderNotificationJob(repository, notifier)
    order = repository.get(7)

    # First attempt delivered but died before marking the order.
    await job.notify(order)
    await job.process(7)

    assert list(notifier.sent) == [7]
    assert repository.get(7).notified_at is not None


@pytest.mark.asyncio
async def test_process_missing_order_is_permanent(repository, notifier):
    job = OrderNotificationJob(repository, notifier)
    with pytest.raises(PermanentJobError):
        await job.process(404)
    with pytest.raises(PermanentJobError):
        await job.process("not-a-number")
