"""
Prometheus metrics for the Telegram relay service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Relay attempt counter (outcome) and relay send counter (result)
- Webhook update counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# One increment per Bot API call made by the relay
# outcome: delivered, rejected, transport_error, request_error
relay_attempts_total = Counter(
    "relay_attempts_total",
    "Bot API sendMessage attempts made by the outbound relay",
    labelnames=["outcome"]
)

# One increment per relay send() call
# result: sent, validation_error, config_error, rejected, request_error, exhausted, internal_error
relay_sends_total = Counter(
    "relay_sends_total",
    "Outbound relay results",
    labelnames=["result"]
)

# result: ignored, processed, store_error, invalid_payload, config_error, internal_error
webhook_updates_total = Counter(
    "webhook_updates_total",
    "Inbound Telegram updates by processing result",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/telegram-users/"):
        normalized_path = "/telegram-users/{chat_id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_relay_attempt(outcome: str) -> None:
    relay_attempts_total.labels(outcome=outcome).inc()


def record_relay_send(result: str) -> None:
    relay_sends_total.labels(result=result).inc()


def record_webhook_outcome(result: str) -> None:
    """
    Record a webhook processing outcome.

    Args:
        result: Processing result - one of:
            - "ignored": update carried no message
            - "processed": identity upserted, notifications attempted
            - "store_error": identity upsert failed (logged and swallowed)
            - "invalid_payload": body was not a usable Update
            - "config_error": bot token missing
            - "internal_error": unexpected failure, still acknowledged
    """
    webhook_updates_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
