"""
Async Postgres order store. Each order is one JSONB document plus indexed columns for the list queries.
Writes are compare-and-swap on `version`: a stale writer gets ConcurrentModification instead of
silently overwriting another transition's history entry.
"""
import json
from datetime import datetime

import asyncpg
from asyncpg.exceptions import PostgresError, UniqueViolationError

from order_lifecycle.config import settings
from order_lifecycle.exceptions import ConcurrentModification, PersistenceFailure
from order_lifecycle.models import Order
from order_lifecycle.order_state import OrderStatus

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(64) PRIMARY KEY,
                buyer_id VARCHAR(255) NOT NULL,
                seller_id VARCHAR(255) NOT NULL,
                status VARCHAR(32) NOT NULL,
                completion_due_at TIMESTAMPTZ,
                version INT NOT NULL,
                document JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_buyer_created
            ON orders(buyer_id, created_at DESC);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_seller_created
            ON orders(seller_id, created_at DESC);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_completion_due
            ON orders(completion_due_at) WHERE completion_due_at IS NOT NULL;
        """)


def _row_to_order(row) -> Order:
    doc = row["document"]
    if isinstance(doc, str):
        doc = json.loads(doc)
    return Order.from_document(doc)


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def get(self, order_id: str) -> Order | None:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow("SELECT document FROM orders WHERE order_id = $1;", order_id)
        except (PostgresError, OSError) as e:
            raise PersistenceFailure(f"get {order_id}: {e}") from e
        return _row_to_order(row) if row else None

    async def create(self, order: Order) -> Order:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO orders (order_id, buyer_id, seller_id, status, completion_due_at,
                                        version, document, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9);
                    """,
                    order.order_id,
                    order.buyer_id,
                    order.seller_id,
                    order.status.value,
                    order.completion_due_at,
                    order.version,
                    json.dumps(order.to_document()),
                    order.created_at,
                    order.updated_at,
                )
        except UniqueViolationError as e:
            raise PersistenceFailure(f"order {order.order_id} already exists") from e
        except (PostgresError, OSError) as e:
            raise PersistenceFailure(f"create {order.order_id}: {e}") from e
        return order

    async def replace(self, order: Order, expected_version: int) -> Order:
        """
        Atomically write the whole document if the stored version still equals expected_version.
        Status, timestamps and the history append land together or not at all.
        """
        try:
            async with self._pool.acquire() as conn:
                result = await conn.execute(
                    """
                    UPDATE orders
                    SET status = $3, completion_due_at = $4, version = $5, document = $6::jsonb, updated_at = $7
                    WHERE order_id = $1 AND version = $2;
                    """,
                    order.order_id,
                    expected_version,
                    order.status.value,
                    order.completion_due_at,
                    order.version,
                    json.dumps(order.to_document()),
                    order.updated_at,
                )
        except (PostgresError, OSError) as e:
            raise PersistenceFailure(f"update {order.order_id}: {e}") from e
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        if result.split()[-1] == "0":
            raise ConcurrentModification(order.order_id, expected_version)
        return order

    async def list_orders(
        self,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        statuses: set[OrderStatus] | None = None,
    ) -> list[Order]:
        clauses = []
        args: list = []
        if buyer_id is not None:
            args.append(buyer_id)
            clauses.append(f"buyer_id = ${len(args)}")
        if seller_id is not None:
            args.append(seller_id)
            clauses.append(f"seller_id = ${len(args)}")
        if statuses:
            args.append([s.value for s in statuses])
            clauses.append(f"status = ANY(${len(args)}::varchar[])")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT document FROM orders {where} ORDER BY created_at DESC;",
                    *args,
                )
        except (PostgresError, OSError) as e:
            raise PersistenceFailure(f"list orders: {e}") from e
        return [_row_to_order(r) for r in rows]

    async def list_due_completions(self, now: datetime) -> list[Order]:
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT document FROM orders
                    WHERE status = $1 AND completion_due_at IS NOT NULL AND completion_due_at <= $2
                    ORDER BY completion_due_at ASC;
                    """,
                    OrderStatus.ACCEPTED.value,
                    now,
                )
        except (PostgresError, OSError) as e:
            raise PersistenceFailure(f"list due completions: {e}") from e
        return [_row_to_order(r) for r in rows]
