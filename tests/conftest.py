import os

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

os.environ["TESTING"] = "1"

from deferflow.config import Settings
from deferflow.main import create_app
from deferflow.models import RetryPolicy
from deferflow.queue import QueueClient
from deferflow.redis_helper import AsyncInMemoryRedis, JobStore
from deferflow.runtime import build_runtime


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client(clock):
    return AsyncInMemoryRedis(clock=clock)


@pytest.fixture
def store(redis_client, clock):
    return JobStore(redis_client, clock=clock)


@pytest.fixture
def queue(store):
    return QueueClient(store, max_attempts=3)


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, backoff="fixed", base_delay=10, jitter=0)


@pytest.fixture
def settings():
    return Settings(testing=True, log_json=False, job_timeout_seconds=1.0, shutdown_grace_seconds=2.0)


@pytest.fixture
def runtime(settings):
    return build_runtime(
        settings,
        redis_client=AsyncInMemoryRedis(),
        cache_redis_client=AsyncInMemoryRedis(decode_responses=False),
    )


@pytest_asyncio.fixture
async def client(runtime):
    app = create_app(runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


class DroppingRedis(AsyncInMemoryRedis):
    """Loses the connection on the EXEC of a chosen pipeline, before anything is applied."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._countdown = None

    def drop_pipeline(self, after: int = 0) -> None:
        self._countdown = after

    def pipeline(self, transaction: bool = True):
        pipe = super().pipeline(transaction)
        if self._countdown is not None:
            if self._countdown == 0:
                self._countdown = None

                async def lost():
                    raise ConnectionError("connection reset during EXEC")

                pipe.execute = lost
            else:
                self._countdown -= 1
        return pipe


@pytest.fixture
def dropping_redis(clock):
    return DroppingRedis(clock=clock)
