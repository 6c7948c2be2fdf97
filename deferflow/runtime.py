"""Builds the shared objects used by the API, the worker and the scheduler."""
from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .models import RetryPolicy
from .orders import KIND as NOTIFY_ORDER, InMemoryOrderRepository, Notifier, OrderNotificationJob
from .queue import QueueClient
from .redis_helper import JobStore, get_redis
from .registry import Dispatcher, JobRegistry
from .render_cache import RedisCacheBackend, RenderCache
from .scheduler import PeriodicTrigger


@dataclass
class Runtime:
    settings: Settings
    redis: object
    cache_redis: object
    store: JobStore
    queue: QueueClient
    registry: JobRegistry
    dispatcher: Dispatcher
    retry_policy: RetryPolicy
    render_cache: RenderCache
    orders: InMemoryOrderRepository
    notifier: Notifier

    def triggers(self):
        return [PeriodicTrigger(NOTIFY_ORDER, self.settings.order_notify_every_seconds)]


def build_runtime(settings: Optional[Settings] = None, redis_client=None, cache_redis_client=None) -> Runtime:
    """Wire the shared objects.

    Job records are JSON text, so the job client decodes responses. Rendered
    bodies may be binary, so the render cache gets a client that returns bytes.
    """
    settings = settings or Settings.from_env()
    if redis_client is None:
        redis_client = get_redis(settings.redis_url, testing=settings.testing)
    if cache_redis_client is None:
        cache_redis_client = get_redis(settings.redis_url, testing=settings.testing, decode_responses=False)

    store = JobStore(redis_client)
    retry_policy = RetryPolicy.from_settings(settings)
    queue = QueueClient(store, max_attempts=retry_policy.max_attempts)

    orders = InMemoryOrderRepository()
    notifier = Notifier()
    registry = JobRegistry()
    registry.register(
        NOTIFY_ORDER,
        OrderNotificationJob(orders, notifier, batch_size=settings.bulk_batch_size),
    )

    return Runtime(
        settings=settings,
        redis=redis_client,
        cache_redis=cache_redis_client,
        store=store,
        queue=queue,
        registry=registry,
        dispatcher=Dispatcher(registry, queue),
        retry_policy=retry_policy,
        render_cache=RenderCache(RedisCacheBackend(cache_redis_client), default_ttl=settings.render_cache_ttl),
        orders=orders,
        notifier=notifier,
    )
