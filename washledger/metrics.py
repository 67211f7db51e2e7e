"""
Prometheus metrics: change messages ingested (API), lifecycle outcomes and queue handling (worker),
notification delivery, queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

# API: change messages accepted for processing (by change kind)
changes_ingested_total = Counter(
    "changes_ingested_total",
    "Total order change messages accepted (202) for processing",
    ["kind"],
)

# Worker: processing outcomes
messages_processed_total = Counter(
    "messages_processed_total",
    "Total messages successfully processed",
)
messages_failed_total = Counter(
    "messages_failed_total",
    "Total messages that failed processing (retried or sent to DLQ)",
)
messages_dlq_total = Counter(
    "messages_dlq_total",
    "Total messages moved to DLQ after max retries",
)
events_rejected_invalid_transition_total = Counter(
    "events_rejected_invalid_transition_total",
    "Total observed order changes whose status move the lifecycle does not allow",
    ["current_state", "attempted_state"],
)

# Lifecycle
transitions_handled_total = Counter(
    "transitions_handled_total",
    "Lifecycle transition handlers run, by transition",
    ["transition"],
)
transition_errors_total = Counter(
    "transition_errors_total",
    "Transition handlers that recorded a processing error on the order",
    ["transition"],
)
orders_force_cancelled_total = Counter(
    "orders_force_cancelled_total",
    "Orders cancelled by the system at creation time",
    ["reason"],
)
free_washes_earned_total = Counter(
    "free_washes_earned_total",
    "Free-wash credits granted on completion",
)
free_washes_redeemed_total = Counter(
    "free_washes_redeemed_total",
    "Free-wash credits deducted for redemption orders",
)
free_washes_restored_total = Counter(
    "free_washes_restored_total",
    "Free-wash credits restored by cancelling a redemption order",
)
post_commit_failures_total = Counter(
    "post_commit_failures_total",
    "Best-effort actions after a ledger commit that failed",
    ["action"],
)

# Notifications
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Push notification attempts by outcome",
    ["outcome"],
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
