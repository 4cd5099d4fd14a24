"""
In-process order store with the same contract as PostgresOrderStore. Used by tests and by
STORE_BACKEND=memory local runs. Documents are copied in and out so callers never share state.
"""
import asyncio
from datetime import datetime

from order_lifecycle.exceptions import ConcurrentModification, PersistenceFailure
from order_lifecycle.models import Order
from order_lifecycle.order_state import OrderStatus


class InMemoryOrderStore:
    def __init__(self):
        self._docs: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Order | None:
        doc = self._docs.get(order_id)
        return Order.from_document(doc) if doc is not None else None

    async def create(self, order: Order) -> Order:
        async with self._lock:
            if order.order_id in self._docs:
                raise PersistenceFailure(f"order {order.order_id} already exists")
            self._docs[order.order_id] = order.to_document()
        return order

    async def replace(self, order: Order, expected_version: int) -> Order:
        async with self._lock:
            current = self._docs.get(order.order_id)
            if current is None or current["version"] != expected_version:
                raise ConcurrentModification(order.order_id, expected_version)
            self._docs[order.order_id] = order.to_document()
        return order

    async def list_orders(
        self,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        statuses: set[OrderStatus] | None = None,
    ) -> list[Order]:
        orders = [Order.from_document(d) for d in self._docs.values()]
        if buyer_id is not None:
            orders = [o for o in orders if o.buyer_id == buyer_id]
        if seller_id is not None:
            orders = [o for o in orders if o.seller_id == seller_id]
        if statuses:
            orders = [o for o in orders if o.status in statuses]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def list_due_completions(self, now: datetime) -> list[Order]:
        due = [
            o for o in (Order.from_document(d) for d in self._docs.values())
            if o.status == OrderStatus.ACCEPTED and o.completion_due_at is not None and o.completion_due_at <= now
        ]
        return sorted(due, key=lambda o: o.completion_due_at)
