"""
Order notifications: the worked example for the enqueue/process split.

Enqueue mode finds every order that has not been notified yet and submits one
``notify_order`` job per order. Process mode notifies one order, then marks
it notified. Both steps check their own state first, so running a job twice
sends one email and writes ``notified_at`` once.
"""

import time
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional

from .exceptions import PermanentJobError
from .logging_config import get_logger
from .registry import JobHandler

logger = get_logger(__name__)

KIND = "notify_order"


@dataclass(frozen=True)
class Order:
    id: int
    email: str
    updated_at: float
    notified_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "updated_at": self.updated_at,
            "notified_at": self.notified_at,
        }


class InMemoryOrderRepository:
    def __init__(self, orders: Iterable[Order] = (), clock=time.time):
        self.clock = clock
        self._orders: Dict[int, Order] = {o.id: o for o in orders}
        self.writes = 0

    def add(self, order: Order) -> Order:
        self._orders[order.id] = order
        return order

    def get(self, order_id: int) -> Optional[Order]:
        return self._orders.get(order_id)

    def list(self) -> List[Order]:
        return [self._orders[k] for k in sorted(self._orders)]

    def pending_notification(self) -> List[int]:
        return [o.id for o in self.list() if o.notified_at is None]

    def mark_notified(self, order_id: int, at: Optional[float] = None) -> Order:
        order = self._orders[order_id]
        if order.notified_at is not None:
            return order
        at = self.clock() if at is None else at
        order = replace(order, notified_at=at, updated_at=at)
        self._orders[order_id] = order
        self.writes += 1
        return order


class Notifier:
    """Records order emails as delivered, at most once per order id."""

    def __init__(self):
        self.sent: Dict[int, str] = {}

    async def deliver(self, order: Order) -> bool:
        if order.id in self.sent:
            return False
        self.sent[order.id] = order.email
        logger.info("order_notification_sent", order_id=order.id)
        return True


class OrderNotificationJob(JobHandler):
    def __init__(self, repository: InMemoryOrderRepository, notifier: Notifier, batch_size: Optional[int] = None):
        self.repository = repository
        self.notifier = notifier
        if batch_size is not None:
            self.batch_size = batch_size

    async def find_pending(self) -> List[int]:
        return self.repository.pending_notification()

    async def process(self, item_id) -> None:
        try:
            order_id = int(item_id)
        except (TypeError, ValueError):
            raise PermanentJobError(f"order id {item_id!r} is not an integer") from None
        order = self.repository.get(order_id)
        if order is None:
            raise PermanentJobError(f"order {order_id} does not exist")
        if order.notified_at is not None:
            return None
        await self.notify(order)
        self.mark_notified(order)
        return None

    async def notify(self, order: Order) -> None:
        await self.notifier.deliver(order)

    def mark_notified(self, order: Order) -> None:
        self.repository.mark_notified(order.id)
