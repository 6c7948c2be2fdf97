from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
jobs_submitted_total = Counter("jobs_submitted_total", "Jobs durably written to the queue", ["kind"])
error_count = Counter("error_count", "Total errors encountered by the control plane")
enqueue_latency_seconds = Histogram("enqueue_latency_seconds", "Time to write jobs to the store")
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")

# Worker / execution metrics
jobs_executed_total = Counter("jobs_executed_total", "Job attempts finished by workers", ["kind", "outcome"])
jobs_retried_total = Counter("jobs_retried_total", "Failed attempts rescheduled for retry", ["kind"])
jobs_dead_total = Counter("jobs_dead_total", "Jobs moved to the dead set", ["kind"])
jobs_in_progress = Gauge("jobs_in_progress", "Jobs currently being processed by this process")
execution_latency_seconds = Histogram("execution_latency_seconds", "Job execution latency seconds", ["kind"])

# Scheduler metrics
jobs_promoted_total = Counter("jobs_promoted_total", "Scheduled jobs moved to the ready queue")
jobs_recovered_total = Counter("jobs_recovered_total", "Stalled in-flight jobs recovered by the scheduler")
triggers_fired_total = Counter("triggers_fired_total", "Periodic enqueue triggers fired", ["kind"])

# Render cache metrics
render_cache_requests_total = Counter(
    "render_cache_requests_total", "Render cache lookups", ["view", "outcome"]
)
render_cache_errors_total = Counter("render_cache_errors_total", "Render cache backend errors", ["op"])


def metrics_response():
    # Return prometheus metrics as a Response
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
