"""
Prometheus metrics for pod booking monitoring.

Tracks:
- Booking outcomes (created, conflict, unavailable, completed, cancelled)
- Pod state transitions
- Payment intents and gateway callbacks by channel and RspCode
- Resource lock acquisitions
- Outbox queue depth, publishing and dead letters
- HTTP requests by route template
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Booking metrics
booking_requests_total = Counter(
    "booking_requests_total",
    "Total booking operations by outcome",
    ["operation", "outcome"],
)

booking_duration_minutes = Histogram(
    "booking_duration_minutes",
    "Requested booking durations in minutes",
    buckets=(30, 60, 120, 180, 240, 360, 480, 720),
)

# Pod metrics
pod_transitions_total = Counter(
    "pod_transitions_total",
    "Total pod status transitions",
    ["action", "from_status", "to_status"],
)

pod_transition_rejections_total = Counter(
    "pod_transition_rejections_total",
    "Pod transitions rejected by the state machine",
    ["action", "from_status"],
)

# Payment metrics
payment_intents_total = Counter(
    "payment_intents_total",
    "Total payment intents created",
)

payment_amount_vnd = Histogram(
    "payment_amount_vnd",
    "Payment amounts in VND",
    buckets=(10000, 50000, 100000, 200000, 500000, 1000000, 5000000),
)

payment_callbacks_total = Counter(
    "payment_callbacks_total",
    "Total gateway callbacks processed",
    ["channel", "rsp_code"],  # channel: ipn, return
)

payment_callback_duration_seconds = Histogram(
    "payment_callback_duration_seconds",
    "Gateway callback processing duration in seconds",
    ["channel"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

payments_expired_total = Counter(
    "payments_expired_total",
    "Total stale payment intents cancelled",
)

# Incident metrics
incidents_reported_total = Counter(
    "incidents_reported_total",
    "Total incidents reported",
    ["severity"],
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_events_dead_lettered_total = Counter(
    "outbox_events_dead_lettered_total",
    "Outbox events parked after exhausting delivery attempts",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

outbox_last_run_timestamp = Gauge(
    "outbox_last_run_timestamp",
    "Timestamp of last outbox batch",
)

# HTTP metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "route"],
    buckets=(0.005, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# Lock metrics
resource_lock_acquisitions_total = Counter(
    "resource_lock_acquisitions_total",
    "Total resource lock acquisitions",
    ["resource", "status"],  # status: acquired, timeout
)

resource_lock_wait_seconds = Histogram(
    "resource_lock_wait_seconds",
    "Time spent waiting for a resource lock in seconds",
    ["resource"],
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_booking(operation: str, outcome: str) -> None:
        """Record a booking operation outcome."""
        booking_requests_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_booking_duration(minutes: float) -> None:
        booking_duration_minutes.observe(minutes)

    @staticmethod
    def record_pod_transition(action: str, from_status: str, to_status: str) -> None:
        """Record an applied pod transition."""
        pod_transitions_total.labels(
            action=action, from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_pod_transition_rejected(action: str, from_status: str) -> None:
        pod_transition_rejections_total.labels(action=action, from_status=from_status).inc()

    @staticmethod
    def record_payment_intent(amount: int) -> None:
        """Record a created payment intent."""
        payment_intents_total.inc()
        payment_amount_vnd.observe(amount)

    @staticmethod
    def record_callback(channel: str, rsp_code: str, duration_seconds: float) -> None:
        """Record gateway callback processing."""
        payment_callbacks_total.labels(channel=channel, rsp_code=rsp_code).inc()
        payment_callback_duration_seconds.labels(channel=channel).observe(duration_seconds)

    @staticmethod
    def record_payments_expired(count: int) -> None:
        if count > 0:
            payments_expired_total.inc(count)

    @staticmethod
    def record_incident(severity: str) -> None:
        incidents_reported_total.labels(severity=severity).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_dead_letter(event_type: str) -> None:
        outbox_events_dead_lettered_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_batch(duration_seconds: float) -> None:
        """Record an outbox batch run."""
        outbox_processing_duration_seconds.observe(duration_seconds)
        outbox_last_run_timestamp.set(time.time())

    @staticmethod
    def record_http_request(
        method: str, route: str, status_code: int, duration_seconds: float
    ) -> None:
        http_requests_total.labels(
            method=method, route=route, status_code=str(status_code)
        ).inc()
        http_request_duration_seconds.labels(method=method, route=route).observe(
            duration_seconds
        )

    @staticmethod
    def record_lock(resource: str, status: str, wait_seconds: float = 0) -> None:
        """Record a resource lock acquisition attempt."""
        resource_lock_acquisitions_total.labels(resource=resource, status=status).inc()
        if wait_seconds > 0:
            resource_lock_wait_seconds.labels(resource=resource).observe(wait_seconds)


# Export singleton instance
metrics = MetricsCollector()
