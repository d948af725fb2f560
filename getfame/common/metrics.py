"""Prometheus metric definitions shared across processes."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


checkout_requests_total = Counter(
    "checkout_requests_total",
    "Checkout sessions requested",
    ["service", "provider"],
)
checkout_rejected_total = Counter(
    "checkout_rejected_total",
    "Checkout requests rejected before payment",
    ["service", "reason"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound provider webhooks by outcome",
    ["service", "provider", "outcome"],
)
dispatch_attempts_total = Counter("dispatch_attempts_total", "Provisioning add calls", ["service"])
dispatch_outcomes_total = Counter(
    "dispatch_outcomes_total",
    "Recorded dispatch results",
    ["service", "outcome"],
)
duplicate_dispatch_skipped_total = Counter(
    "duplicate_dispatch_skipped_total",
    "Dispatch attempts that lost the claim to another worker",
    ["service"],
)
catalog_fallback_served_total = Counter(
    "catalog_fallback_served_total",
    "Catalog reads served from a stale snapshot or the static list",
    ["service", "source"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
order_e2e_seconds = Histogram(
    "order_e2e_seconds",
    "Order duration seconds from pending to a dispatch result",
    ["service", "terminal_state"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
