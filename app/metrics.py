"""
Prometheus metrics for the dashboard API.

This module provides:
- HTTP request counter (method, path, status)
- Report failure counter (report)
- Consultation transition counter (action, result)
- Request latency histogram (method, path)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# report: analytics, user_analytics, overview, threads, conversation, ...
report_failures_total = Counter(
    "report_failures_total",
    "Reports that failed because the store was unreachable or a query errored",
    labelnames=["report"]
)

# result: ok, invalid_action, invalid_transition, not_found, error
consultation_transitions_total = Counter(
    "consultation_transitions_total",
    "Consultation status transition attempts",
    labelnames=["action", "result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template (e.g. /api/dashboard/messages/{user_id})
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(
        method=method,
        path=path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=path
    ).observe(latency_seconds)


def record_report_failure(report: str) -> None:
    report_failures_total.labels(report=report).inc()


def record_consultation_transition(action: str, result: str) -> None:
    consultation_transitions_total.labels(action=action, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
