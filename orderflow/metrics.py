"""
Prometheus metrics: ingestion outcomes (API), job outcomes (worker), order
transitions and reservation failures (both), queue depth (refreshed on scrape).
"""
from prometheus_client import Counter, Gauge, generate_latest

# API: webhook intake
events_ingested_total = Counter(
    "events_ingested_total",
    "Total external events accepted (202) and enqueued for processing",
    ["source", "event_type"],
)
events_duplicate_total = Counter(
    "events_duplicate_total",
    "Total external events answered as already processed",
    ["source"],
)
events_rejected_signature_total = Counter(
    "events_rejected_signature_total",
    "Total external events rejected because the HMAC signature did not verify",
    ["source"],
)

# Worker: job outcomes
jobs_processed_total = Counter(
    "jobs_processed_total",
    "Total jobs whose handler completed",
    ["queue", "job_type"],
)
jobs_already_processed_total = Counter(
    "jobs_already_processed_total",
    "Total job deliveries short-circuited by an existing processed-job record",
    ["queue"],
)
jobs_failed_total = Counter(
    "jobs_failed_total",
    "Total failed job attempts (retried or dead-lettered)",
    ["queue", "job_type"],
)
jobs_dead_lettered_total = Counter(
    "jobs_dead_lettered_total",
    "Total jobs moved to the dead-letter list",
    ["queue"],
)

# State machine / ledger
order_transitions_total = Counter(
    "order_transitions_total",
    "Total committed order status transitions",
    ["from_status", "to_status"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total order transitions rejected by the lifecycle table",
    ["current_status", "target_status"],
)
inventory_reservations_failed_total = Counter(
    "inventory_reservations_failed_total",
    "Total reservation attempts that failed for insufficient stock",
)

# Queue depth (backpressure / consumer lag)
queue_jobs = Gauge(
    "queue_jobs",
    "Jobs per queue and state",
    ["queue", "state"],
)


async def refresh_queue_gauges(job_queue) -> None:
    for name in job_queue.queue_names:
        for state, count in (await job_queue.stats(name)).items():
            queue_jobs.labels(queue=name, state=state).set(count)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
