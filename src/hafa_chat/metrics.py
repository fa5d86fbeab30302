"""Prometheus counters for chat traffic."""

from prometheus_client import CollectorRegistry, Counter, generate_latest

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("chat_requests_total", "Total chat turns sent", registry=CUSTOM_REGISTRY)
ERRORS = Counter("chat_errors_total", "Total chat turns that failed", registry=CUSTOM_REGISTRY)
CANCELLATIONS = Counter(
    "chat_cancellations_total", "Total chat turns cancelled locally or by the server", registry=CUSTOM_REGISTRY
)
REMOTE_CANCEL_FAILURES = Counter(
    "chat_remote_cancel_failures_total", "Cancel notifications the server did not accept", registry=CUSTOM_REGISTRY
)
PROCESSING_TIME = Counter(
    "chat_processing_time_seconds", "Total wall time spent on chat turns", registry=CUSTOM_REGISTRY
)


def render_metrics() -> bytes:
    """Prometheus exposition text for the chat registry."""
    return generate_latest(CUSTOM_REGISTRY)
