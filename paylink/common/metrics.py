"""Prometheus metric definitions shared across PayLink components."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


transactions_opened_total = Counter(
    "transactions_opened_total",
    "Checkout transactions opened",
    ["service", "provider", "result"],
)
transaction_terminal_total = Counter(
    "transaction_terminal_total",
    "Terminal transitions applied by the ledger",
    ["service", "provider", "status", "source"],
)
outcome_conflicts_total = Counter(
    "outcome_conflicts_total",
    "Contradictory terminal outcomes flagged for review",
    ["service", "source"],
)
transaction_e2e_seconds = Histogram(
    "transaction_e2e_seconds",
    "Transaction duration seconds from creation to terminal state",
    ["service", "terminal_state"],
)
provider_request_seconds = Histogram(
    "provider_request_seconds",
    "Outbound provider call latency seconds",
    ["service", "provider", "operation"],
)
provider_errors_total = Counter(
    "provider_errors_total",
    "Outbound provider call failures",
    ["service", "provider", "operation", "error_type"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Inbound provider callbacks",
    ["service", "provider", "result"],
)
duplicate_webhooks_skipped_total = Counter(
    "duplicate_webhooks_skipped_total",
    "Callbacks skipped because a processed receipt already exists",
    ["service", "provider"],
)
reconciliation_runs_total = Counter(
    "reconciliation_runs_total",
    "Reconciliation sweep runs",
    ["service", "kind"],
)
reconciliation_results_total = Counter(
    "reconciliation_results_total",
    "Per-transaction reconciliation results",
    ["service", "result"],
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
