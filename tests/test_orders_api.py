import pytest

from deferflow.orders import Order


@pytest.fixture
def orders(runtime):
    runtime.orders.add(Order(id=7, email="seven@example.com", updated_at=100.0))
    runtime.orders.add(Order(id=8, email="eight@example.com", updated_at=200.0))
    return runtime.orders


@pytest.mark.asyncio
async def test_order_list_is_cached_until_an_order_changes(client, orders):
    first = await client.get("/orders")
    second = await client.get("/orders")

    assert first.status_code == 200
    assert first.headers["x-cache"] == "miss"
    assert second.headers["x-cache"] == "hit"
    assert second.json() == first.json()
    assert [o["id"] for o in first.json()["orders"]] == [7, 8]

    orders.mark_notified(7, at=300.0)
    third = await client.get("/orders")
    assert third.headers["x-cache"] == "miss"
    assert third.json()["orders"][0]["notified_at"] == 300.0


@pytest.mark.asyncio
async def test_single_order_is_cached_by_its_timestamp(client, orders):
    assert (await client.get("/orders/7")).headers["x-cache"] == "miss"
    assert (await client.get("/orders/7")).headers["x-cache"] == "hit"
    assert (await client.get("/orders/8")).headers["x-cache"] == "miss"

    orders.mark_notified(7, at=300.0)
    res = await client.get("/orders/7")
    assert res.headers["x-cache"] == "miss"
    assert res.json()["notified_at"] == 300.0


@pytest.mark.asyncio
async def test_missing_order_is_404(client, orders):
    assert (await client.get("/orders/404")).status_code == 404


@pytest.mark.asyncio
async def test_orders_render_when_cache_is_down(client, orders, runtime):
    class Down:
        async def get(self, key):
            raise ConnectionError("redis unavailable")

        async def set(self, key, value, ex=None):
            raise ConnectionError("redis unavailable")

    runtime.render_cache.backend.redis = Down()
    for _ in range(2):
        res = await client.get("/orders")
        assert res.status_code == 200
        assert res.headers["x-cache"] == "miss"
