from fastapi import APIRouter, HTTPException, Request

from ..render_cache import cached_response, collection_cache_key, record_cache_key

router = APIRouter()

# Bump when the serialized shape of an order changes; it is part of every cache key.
ORDER_TEMPLATE = "order:v1:id,email,updated_at,notified_at"


@router.get("/orders")
async def list_orders(request: Request):
    state = request.app.state
    orders = state.orders.list()

    def render():
        return {"orders": [o.to_dict() for o in orders]}

    return await cached_response(state.render_cache, request, collection_cache_key(orders), render, template=ORDER_TEMPLATE)


@router.get("/orders/{order_id}")
async def get_order(order_id: int, request: Request):
    state = request.app.state
    order = state.orders.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="order not found")
    return await cached_response(state.render_cache, request, record_cache_key(order), order.to_dict, template=ORDER_TEMPLATE)
