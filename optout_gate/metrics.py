"""
Prometheus metrics for the opt-out service.

Counters and histograms live in the default prometheus-client registry and
are exposed at /metrics:
- http_requests_total (method, path, status)
- request_latency_seconds (method, path)
- inbound_events_total (result)
- send_outcomes_total (surface, outcome)
- sms_api_latency_seconds
- persistence_write_failures_total (key)
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Path prefixes whose last segment is a caller-supplied number or id
TEMPLATED_PREFIXES = {
    "/api/check/": "/api/check/{number}",
    "/api/configs/": "/api/configs/{id}",
    "/api/config/": "/api/config/{id}",
    "/api/senders/": "/api/senders/{id}",
}

# Fixed paths that share a templated prefix
FIXED_PATHS = ("/api/config/add", "/api/senders/bulk")


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: optout, optin, no_match, unmatched, ignored, error
inbound_events_total = Counter(
    "inbound_events_total",
    "Inbound SMS webhook outcomes",
    labelnames=["result"]
)

# surface: single, bulk, shim; outcome: sent, blocked, failed
send_outcomes_total = Counter(
    "send_outcomes_total",
    "Outbound send outcomes by surface",
    labelnames=["surface", "outcome"]
)

sms_api_latency_seconds = Histogram(
    "sms_api_latency_seconds",
    "Round trip time of calls to the SMS API",
)

persistence_write_failures_total = Counter(
    "persistence_write_failures_total",
    "Record writes that no backend accepted",
    labelnames=["key"]
)


def path_label(path: str) -> str:
    """Collapse per-number and per-id paths into one label value."""
    path = path.split("?")[0]
    if path in FIXED_PATHS:
        return path
    for prefix, template in TEMPLATED_PREFIXES.items():
        if path.startswith(prefix):
            return template
    return path


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    label = path_label(path)
    http_requests_total.labels(method=method, path=label, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=label).observe(latency_seconds)


def record_inbound_outcome(result: str) -> None:
    inbound_events_total.labels(result=result).inc()


def record_send_outcome(surface: str, outcome: str) -> None:
    send_outcomes_total.labels(surface=surface, outcome=outcome).inc()


def record_write_failure(key: str) -> None:
    persistence_write_failures_total.labels(key=key).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
