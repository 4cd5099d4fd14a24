"""
Process-wide lifecycle service, built once from settings. Shared by the API (FastAPI dependency) and the worker.
"""
from order_lifecycle.config import settings
from order_lifecycle.db import PostgresOrderStore, close_pool, get_pool, init_schema
from order_lifecycle.memory_store import InMemoryOrderStore
from order_lifecycle.service import OrderLifecycleService

_service: OrderLifecycleService | None = None


async def get_service() -> OrderLifecycleService:
    global _service
    if _service is None:
        if settings.store_backend == "memory":
            store = InMemoryOrderStore()
        else:
            pool = await get_pool()
            await init_schema(pool)
            store = PostgresOrderStore(pool)
        _service = OrderLifecycleService(store)
    return _service


async def close_service() -> None:
    global _service
    if _service is not None:
        await _service.scheduler.shutdown()
        _service = None
    await close_pool()
