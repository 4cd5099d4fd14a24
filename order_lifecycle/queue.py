"""
Push payment-collaborator events to the worker queue. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
"""
import json

from order_lifecycle.config import settings
from order_lifecycle.redis_client import get_redis
from order_lifecycle.sqs_client import send_message

PAYMENT_QUEUE_KEY = "queue:payment_events"
PAYMENT_DLQ_KEY = "queue:payment_events:dlq"

PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"


def make_body(
    event_id: str,
    order_id: str,
    outcome: str,
    payment_id: str | None = None,
    error: str | None = None,
    attempts: int = 0,
) -> dict:
    return {
        "event_id": event_id,
        "order_id": order_id,
        "outcome": outcome,
        "payment_id": payment_id,
        "error": error,
        "attempts": attempts,
    }


async def push_payment_event(
    event_id: str,
    order_id: str,
    outcome: str,
    payment_id: str | None = None,
    error: str | None = None,
    attempts: int = 0,
) -> None:
    body = make_body(event_id, order_id, outcome, payment_id, error, attempts)
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(PAYMENT_QUEUE_KEY, json.dumps(body))
