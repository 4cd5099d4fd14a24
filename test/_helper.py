"""
Shared helpers for tests.
Live-stack helpers use API_URL from env (e.g. http://localhost:8000 with docker compose up).
"""
import asyncio
import json
import os
import urllib.error
import urllib.request

from order_lifecycle.models import Caller
from order_lifecycle.order_state import Actor

API_BASE = os.environ.get("API_URL", "http://localhost:8000")

COMPLETION_DELAY = 0.05

BUYER = Caller(user_id="buyer-1", role=Actor.BUYER)
SELLER = Caller(user_id="seller-1", role=Actor.SELLER)
ADMIN = Caller(user_id="admin-1", role=Actor.ADMIN)
STRANGER = Caller(user_id="someone-else", role=Actor.BUYER)


def identity_headers(caller: Caller) -> dict[str, str]:
    return {"X-User-Id": caller.user_id, "X-User-Role": caller.role.value}


async def wait_for_status(service, order_id, status, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        order = await service.get_order(order_id)
        if order.status == status:
            return order
        if loop.time() > deadline:
            raise AssertionError(f"order {order_id} stuck in {order.status.value}, expected {status.value}")
        await asyncio.sleep(0.01)


def call_api(
    method: str,
    path: str,
    caller: Caller | None = None,
    body: dict | None = None,
    api_base: str | None = None,
) -> tuple[int, dict]:
    """One request against a running API. Returns (status_code, response_body). Never raises on HTTP error."""
    base = api_base or API_BASE
    headers = {"Content-Type": "application/json"}
    if caller is not None:
        headers.update(identity_headers(caller))
    req = urllib.request.Request(
        f"{base}{path}",
        data=json.dumps(body).encode() if body is not None else None,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(req) as resp:
            return resp.status, json.loads(resp.read().decode())
    except urllib.error.HTTPError as e:
        raw = e.read()
        return e.code, json.loads(raw.decode()) if raw else {}
