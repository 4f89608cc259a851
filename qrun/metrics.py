import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# Metrics Definitions
JOBS_PROCESSED = Counter(
    "qrun_jobs_total",
    "Jobs processed by this worker",
    ["queue", "outcome"]  # succeeded | failed | refused
)

EMPTY_RECEIVES = Counter(
    "qrun_empty_receives_total",
    "Receive calls that returned no messages",
    ["queue"]
)

VISIBILITY_EXTENSIONS = Counter(
    "qrun_visibility_extensions_total",
    "Messages whose visibility timeout was extended",
    ["queue", "result"]  # ok | failed
)

MESSAGES_DELETED = Counter(
    "qrun_messages_deleted_total",
    "Messages deleted after successful processing",
    ["queue", "result"]
)

SQS_CALLS = Counter(
    "qrun_sqs_calls_total",
    "Calls issued to the SQS API",
    ["operation"]
)

JOBS_INFLIGHT = Gauge(
    "qrun_jobs_inflight",
    "Jobs currently tracked by the lease manager"
)

QUEUES_ICED = Gauge(
    "qrun_queues_iced",
    "Queues currently skipped because they recently came back empty"
)

JOB_DURATION = Histogram(
    "qrun_job_duration_seconds",
    "Wall time of a single job",
    ["queue"],
    buckets=[0.1, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 1800.0, 3600.0],
)

def start_metrics_server(port: int):
    start_http_server(port)
    logger.info("Serving Prometheus metrics on port %s", port)
