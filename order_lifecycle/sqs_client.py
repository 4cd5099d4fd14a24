"""
AWS SQS helpers for the payment-event queue. Used when SQS_QUEUE_URL is set.
boto3 is synchronous: async callers run it in a thread.
"""
import asyncio
import json
from typing import Any

import boto3

from order_lifecycle.config import settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def send_message(body: dict, queue_url: str | None = None) -> None:
    """Send message to the main queue, or to queue_url when given."""
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=queue_url or settings.sqs_queue_url,
        MessageBody=json.dumps(body),
    )


def _receive(queue_url: str, max_number: int, wait_seconds: int) -> list[dict]:
    resp = _get_client().receive_message(
        QueueUrl=queue_url,
        MaxNumberOfMessages=max_number,
        WaitTimeSeconds=wait_seconds,
        MessageAttributeNames=["All"],
        AttributeNames=["ApproximateReceiveCount"],
    )
    return resp.get("Messages") or []


def receive_messages(max_number: int = 10, wait_seconds: int = 5) -> list[dict]:
    """Sync receive (used by worker in thread). Returns list of {ReceiptHandle, Body, Attributes}."""
    return _receive(settings.sqs_queue_url, max_number, wait_seconds)


def delete_message(receipt_handle: str, queue_url: str | None = None) -> None:
    """Sync delete after successful (or permanently failed) processing."""
    _get_client().delete_message(
        QueueUrl=queue_url or settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
    )


def change_message_visibility(receipt_handle: str, visibility_timeout: int) -> None:
    """Delay next visibility for backoff."""
    _get_client().change_message_visibility(
        QueueUrl=settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
        VisibilityTimeout=visibility_timeout,
    )


async def get_queue_depth() -> tuple[int, int]:
    """Return (ApproximateNumberOfMessages, ApproximateNumberOfMessagesNotVisible) for metrics."""
    if not settings.sqs_queue_url:
        return 0, 0
    client = _get_client()

    def _get():
        r = client.get_queue_attributes(
            QueueUrl=settings.sqs_queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attrs = r.get("Attributes") or {}
        return (
            int(attrs.get("ApproximateNumberOfMessages", 0)),
            int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )

    return await asyncio.to_thread(_get)


async def replay_dlq_to_main(limit: int = 100) -> int:
    """
    Move payment events from the DLQ back to the main queue with attempts reset.
    Unparseable or incomplete messages are deleted and counted. Returns number of messages handled.
    """
    if not settings.sqs_dlq_url or not settings.sqs_queue_url:
        return 0
    dlq = settings.sqs_dlq_url
    replayed = 0
    while replayed < limit:
        messages = await asyncio.to_thread(_receive, dlq, 10, 0)
        if not messages:
            break
        for msg in messages[: limit - replayed]:
            receipt = msg.get("ReceiptHandle") or ""
            try:
                data = json.loads(msg.get("Body") or "{}")
            except json.JSONDecodeError:
                data = {}
            if data.get("event_id") and data.get("order_id") and data.get("outcome"):
                data["attempts"] = 0
                data.pop("last_error", None)
                await send_message(data)
            await asyncio.to_thread(delete_message, receipt, dlq)
            replayed += 1
    return replayed
