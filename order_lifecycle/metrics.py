"""
Prometheus metrics: order transitions (service), payment events (API), messages processed/failed (worker),
deferred completions, queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

# Service: lifecycle transitions
orders_created_total = Counter(
    "orders_created_total",
    "Total orders created in pending state",
)
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order state transitions persisted",
    ["from_status", "to_status", "role"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transitions rejected by the rule engine",
    ["from_status", "to_status", "role"],
)
order_write_conflicts_total = Counter(
    "order_write_conflicts_total",
    "Total versioned writes that lost a race and were retried",
)
deferred_completions_total = Counter(
    "deferred_completions_total",
    "Deferred completion outcomes (completed, skipped, failed)",
    ["outcome"],
)
scheduled_completions = Gauge(
    "scheduled_completions",
    "Deferred completion timers currently pending in this process",
)

# API: payment events accepted for processing
payment_events_ingested_total = Counter(
    "payment_events_ingested_total",
    "Total payment events accepted (202) for processing",
    ["outcome"],
)

# Worker: processing outcomes
messages_processed_total = Counter(
    "messages_processed_total",
    "Total payment messages successfully processed",
)
messages_failed_total = Counter(
    "messages_failed_total",
    "Total payment messages that failed processing (retried or sent to DLQ)",
)
messages_dlq_total = Counter(
    "messages_dlq_total",
    "Total payment messages moved to DLQ after max retries",
)
messages_dropped_total = Counter(
    "messages_dropped_total",
    "Total payment messages dropped as permanently unprocessable (unknown order, invalid transition)",
    ["reason"],
)

# SQS queue depth (when using SQS) - backpressure / consumer lag
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
