"""
Prometheus metrics endpoint.

Exposes HTTP and negotiation metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Negotiation Metrics
# ============================================

state_transitions = Counter(
    'scheduling_state_transitions_total',
    'Scheduling request state transitions',
    ['from_status', 'to_status']
)

inbound_signals = Counter(
    'scheduling_inbound_signals_total',
    'Inbound replies processed, by outcome',
    ['outcome']
)

availability_fallbacks = Counter(
    'scheduling_availability_fallbacks_total',
    'Availability lookups that degraded to fallback slots',
    ['reason']
)

# ============================================
# Channel Metrics
# ============================================

channel_sends = Counter(
    'channel_sends_total',
    'Outbound messages by channel and result',
    ['channel', 'status']
)

channel_fallbacks = Counter(
    'channel_fallbacks_total',
    'Sends moved to an alternate channel',
    ['from_channel', 'to_channel']
)

# ============================================
# Driver Metrics
# ============================================

driver_batch_size = Gauge(
    'scheduling_driver_batch_size',
    'Due requests picked up by the last driver run'
)

# ============================================
# Webhook Metrics
# ============================================

webhook_deliveries = Counter(
    'webhook_deliveries_total',
    'Webhook deliveries by final status',
    ['status']
)

webhook_auto_disabled = Counter(
    'webhook_auto_disabled_total',
    'Webhooks disabled after consecutive failed deliveries'
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_state_transition(from_status: str, to_status: str):
    """Record a committed state transition."""
    state_transitions.labels(from_status=from_status, to_status=to_status).inc()


def track_inbound_signal(outcome: str):
    inbound_signals.labels(outcome=outcome).inc()


def track_availability_fallback(reason: str):
    availability_fallbacks.labels(reason=reason).inc()


def track_channel_send(channel: str, status: str):
    """Record a send attempt on a channel (sent or failed)."""
    channel_sends.labels(channel=channel, status=status).inc()


def track_channel_fallback(from_channel: str, to_channel: str):
    channel_fallbacks.labels(from_channel=from_channel, to_channel=to_channel).inc()


def update_driver_batch_size(size: int):
    driver_batch_size.set(size)


def track_webhook_delivery(status: str):
    """Record a webhook delivery reaching a final status."""
    webhook_deliveries.labels(status=status).inc()


def track_webhook_auto_disabled():
    webhook_auto_disabled.inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
