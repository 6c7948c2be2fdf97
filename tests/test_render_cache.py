import json
from datetime import datetime, timezone

import pytest

from deferflow.orders import Order
from deferflow.redis_helper import AsyncInMemoryRedis
from deferflow.runtime import build_runtime
from deferflow.render_cache import (
    HIT,
    MISS,
    RedisCacheBackend,
    RenderCache,
    collection_cache_key,
    record_cache_key,
    template_digest,
)


class DownRedis:
    async def get(self, key):
        raise ConnectionError("redis unavailable")

    async def set(self, key, value, ex=None):
        raise ConnectionError("redis unavailable")


class RaisingBackend:
    async def read(self, key):
        raise TimeoutError("read timed out")

    async def write(self, key, value, ttl=None):
        raise TimeoutError("write timed out")


class Producer:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.value


@pytest.fixture
def cache(clock):
    return RenderCache(RedisCacheBackend(AsyncInMemoryRedis(clock=clock, decode_responses=False)), default_ttl=60)


@pytest.mark.asyncio
async def test_binary_body_is_a_hit_on_second_lookup(cache):
    png = Producer(b"\x89PNG\r\n\x1a\n\xff\xfe\x00")

    first = await cache.lookup("chart-1", png, view="charts")
    second = await cache.lookup("chart-1", png, view="charts")

    assert first.outcome == MISS
    assert second.outcome == HIT
    assert second.body == b"\x89PNG\r\n\x1a\n\xff\xfe\x00"
    assert png.calls == 1


@pytest.mark.asyncio
async def test_text_client_cannot_return_binary_bodies(clock):
    text_client = AsyncInMemoryRedis(clock=clock, decode_responses=True)
    await text_client.set("k", b"\xff\xfe")

    with pytest.raises(UnicodeDecodeError):
        await text_client.get("k")


@pytest.mark.asyncio
async def test_second_lookup_is_a_hit(cache):
    produce = Producer({"orders": [7]})

    first = await cache.lookup("1-100.0", produce, view="orders")
    second = await cache.lookup("1-100.0", produce, view="orders")

    assert first.outcome == MISS
    assert second.outcome == HIT
    assert json.loads(second.body) == {"orders": [7]}
    assert produce.calls == 1


@pytest.mark.asyncio
async def test_async_producer_and_str_body(cache):
    async def render():
        return "<p>hello</p>"

    assert await cache.fetch_or_render("k", render, view="page") == b"<p>hello</p>"
    assert await cache.fetch_or_render("k", render, view="page") == b"<p>hello</p>"


@pytest.mark.asyncio
async def test_changed_timestamp_is_a_miss(cache):
    order = Order(id=7, email="seven@example.com", updated_at=100.0)
    await cache.lookup(record_cache_key(order), Producer("v1"), view="order")

    touched = Order(id=7, email="seven@example.com", updated_at=101.0)
    rendered = await cache.lookup(record_cache_key(touched), Producer("v2"), view="order")

    assert rendered.outcome == MISS
    assert rendered.body == b"v2"


@pytest.mark.asyncio
async def test_template_change_is_a_miss(cache):
    await cache.lookup("k", Producer("old"), view="order", template="v1")
    rendered = await cache.lookup("k", Producer("new"), view="order", template="v2")
    assert rendered.outcome == MISS


@pytest.mark.asyncio
async def test_views_do_not_share_entries(cache):
    await cache.lookup("k", Producer("a"), view="one")
    assert (await cache.lookup("k", Producer("b"), view="two")).outcome == MISS


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", [RedisCacheBackend(DownRedis()), RaisingBackend()])
async def test_backend_failures_fall_through_to_producer(backend):
    cache = RenderCache(backend)
    produce = Producer({"ok": True})

    for _ in range(2):
        body = await cache.fetch_or_render("k", produce, view="orders")
        assert json.loads(body) == {"ok": True}
    assert produce.calls == 2


@pytest.mark.asyncio
async def test_producer_errors_propagate(cache):
    def broken():
        raise KeyError("order")

    with pytest.raises(KeyError):
        await cache.fetch_or_render("k", broken, view="orders")


@pytest.mark.asyncio
async def test_entries_expire_with_ttl(cache, clock):
    await cache.lookup("k", Producer("v"), view="orders", ttl=10)
    clock.advance(11)
    assert (await cache.lookup("k", Producer("v"), view="orders")).outcome == MISS


def test_collection_key_tracks_newest_record_and_count():
    orders = [Order(id=1, email="a", updated_at=5.0), Order(id=2, email="b", updated_at=9.0)]
    assert collection_cache_key(orders) == "2-9.0"
    assert collection_cache_key(orders[:1]) == "1-5.0"
    assert collection_cache_key([]) == "empty"


def test_key_material_accepts_datetimes_and_sequences(cache):
    stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert cache.effective_key("v", ["orders", stamp]) == cache.effective_key("v", ("orders", stamp))
    assert cache.effective_key("v", ["orders", stamp]) != cache.effective_key("v", ["orders", stamp.replace(year=2025)])


def test_template_digest_reads_paths(tmp_path):
    template = tmp_path / "order.html"
    template.write_text("<li>{{ order.id }}</li>")
    assert template_digest(template) == template_digest("<li>{{ order.id }}</li>")
    assert template_digest(None) == "-"


@pytest.mark.asyncio
async def test_runtime_render_cache_keeps_binary_bodies(settings):
    runtime = build_runtime(settings, redis_client=AsyncInMemoryRedis())
    png = Producer(b"\x89PNG\xff\xfe")

    await runtime.render_cache.lookup("runtime-png", png, view="thumbnails")
    second = await runtime.render_cache.lookup("runtime-png", png, view="thumbnails")

    assert runtime.cache_redis is not runtime.redis
    assert second.outcome == HIT
    assert second.body == b"\x89PNG\xff\xfe"
    assert png.calls == 1
