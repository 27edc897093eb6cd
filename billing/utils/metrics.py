"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
refunds_total = Counter(
    "refunds_total",
    "Refund attempts by final outcome",
    ["outcome"],  # processed, failed, pending, rejected
)

refund_rejections_total = Counter(
    "refund_rejections_total",
    "Refund requests rejected before reaching the provider",
    ["kind"],
)

subscription_transitions_total = Counter(
    "subscription_transitions_total",
    "Subscription status transitions",
    ["transition"],  # active_to_grace, grace_to_expired, cancelled
)

notifications_sent_total = Counter(
    "notifications_sent_total",
    "Subscription notifications dispatched",
    ["template", "status"],
)

scheduled_task_runs_total = Counter(
    "scheduled_task_runs_total",
    "Reconciliation task ticks",
    ["task", "outcome"],  # success, error, skipped
)

provider_requests_total = Counter(
    "provider_requests_total",
    "Payment provider API requests",
    ["method", "status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
scheduled_task_duration_seconds = Histogram(
    "scheduled_task_duration_seconds",
    "Reconciliation task tick duration",
    ["task"],
    buckets=[0.1, 0.5, 1, 5, 15, 60, 300],
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Payment provider request duration",
    ["method"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
