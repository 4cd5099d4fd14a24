"""
Worker: pull payment events from Redis or AWS SQS and apply them to orders; sweep overdue deferred completions.
- completed -> mark_paid (pending -> in_progress), failed -> record_payment_failure.
- Unknown order / rejected transition: permanent, logged and dropped. Other failures are retried.
- Redis: exponential backoff + manual DLQ. SQS: don't delete on failure; SQS redrive to DLQ after max receives.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m order_lifecycle.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import redis.asyncio as redis

from order_lifecycle.config import settings
from order_lifecycle.dependencies import close_service, get_service
from order_lifecycle.exceptions import InvalidStateTransition, NotFound
from order_lifecycle.metrics import (
    messages_dlq_total,
    messages_dropped_total,
    messages_failed_total,
    messages_processed_total,
)
from order_lifecycle.queue import PAYMENT_COMPLETED, PAYMENT_DLQ_KEY, PAYMENT_FAILED, PAYMENT_QUEUE_KEY
from order_lifecycle.service import OrderLifecycleService
from order_lifecycle.sqs_client import change_message_visibility, delete_message, receive_messages

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


async def apply_payment_event(service: OrderLifecycleService, data: dict) -> bool:
    """
    Apply one payment event. Returns True when handled (applied, or permanently unprocessable and dropped).
    Raises on transient failures so the caller retries.
    """
    event_id = data.get("event_id")
    order_id = data.get("order_id")
    outcome = data.get("outcome")
    try:
        if outcome == PAYMENT_COMPLETED:
            await service.mark_paid(order_id, payment_id=data.get("payment_id"))
        elif outcome == PAYMENT_FAILED:
            await service.record_payment_failure(order_id, data.get("error"))
        else:
            logger.warning("Unknown payment outcome %r for event_id=%s, dropping", outcome, event_id)
            messages_dropped_total.labels(reason="unknown_outcome").inc()
            return True
    except NotFound:
        logger.warning("Payment event_id=%s references unknown order_id=%s, dropping", event_id, order_id)
        messages_dropped_total.labels(reason="not_found").inc()
        return True
    except InvalidStateTransition as e:
        logger.warning("Payment event_id=%s rejected: %s, dropping", event_id, e)
        messages_dropped_total.labels(reason="invalid_transition").inc()
        return True
    logger.info("Processed payment event_id=%s (%s) for order_id=%s", event_id, outcome, order_id)
    messages_processed_total.inc()
    return True


def _parse(raw: str) -> dict | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON from queue: %s", e)
        return None
    if not data.get("event_id") or not data.get("order_id"):
        logger.warning("Message missing event_id/order_id, skipping")
        return None
    return data


async def process_one_redis(
    r: redis.Redis,
    service: OrderLifecycleService,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    data = _parse(raw)
    if data is None:
        return
    event_id = data["event_id"]
    attempts = data.get("attempts", 0)

    async with sem:
        try:
            await apply_payment_event(service, data)
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed to process event_id=%s (attempt %d): %s", event_id, attempts + 1, e)
            next_attempts = attempts + 1
            if next_attempts >= settings.worker_max_retries:
                dlq_message = json.dumps({
                    **data,
                    "attempts": next_attempts,
                    "last_error": str(e),
                    "failed_at": time.time(),
                })
                await r.lpush(PAYMENT_DLQ_KEY, dlq_message)
                messages_dlq_total.inc()
                logger.warning("Moved event_id=%s to DLQ after %d attempts", event_id, settings.worker_max_retries)
            else:
                backoff_sec = 2 ** attempts
                logger.info(
                    "Re-queuing event_id=%s in %ds (attempt %d/%d)",
                    event_id, backoff_sec, next_attempts, settings.worker_max_retries,
                )
                await asyncio.sleep(backoff_sec)
                await r.lpush(PAYMENT_QUEUE_KEY, json.dumps({**data, "attempts": next_attempts}))


async def process_one_sqs(
    service: OrderLifecycleService,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
) -> None:
    data = _parse(body)
    if data is None:
        await asyncio.to_thread(delete_message, receipt_handle)
        return

    async with sem:
        try:
            await apply_payment_event(service, data)
            await asyncio.to_thread(delete_message, receipt_handle)
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed to process event_id=%s (receive #%d): %s", data["event_id"], receive_count, e)
            # Don't delete: message will reappear after visibility timeout; after max receives SQS moves to DLQ
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)


async def run_completion_sweeper(service: OrderLifecycleService, shutdown_event: asyncio.Event) -> None:
    """Recurring sweep for accepted orders whose completion timer was lost (restart, crash)."""
    interval = settings.completion_sweep_interval_seconds
    while not shutdown_event.is_set():
        try:
            await service.sweep_due_completions()
        except Exception as e:
            logger.exception("Completion sweep failed: %s", e)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(service: OrderLifecycleService, shutdown_event: asyncio.Event) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        PAYMENT_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(PAYMENT_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(r, service, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await r.aclose()


async def run_worker_sqs(service: OrderLifecycleService, shutdown_event: asyncio.Event) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=SQS. Queue=%s (concurrency=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(service, body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    service = await get_service()
    sweeper = asyncio.create_task(run_completion_sweeper(service, shutdown_event))
    try:
        if settings.sqs_queue_url:
            await run_worker_sqs(service, shutdown_event)
        else:
            await run_worker_redis(service, shutdown_event)
    finally:
        shutdown_event.set()
        await sweeper
        await close_service()
        logger.info("Worker stopped.")


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
