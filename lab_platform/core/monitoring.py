"""Prometheus Metrics Configuration"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST

# Create a custom registry for our metrics
registry = CollectorRegistry()

# ============================================================================
# Admission Metrics
# ============================================================================

admissions_total = Counter(
    'lab_admissions_total',
    'Total admission decisions',
    ['outcome'],  # granted, rejected, lock_timeout
    registry=registry
)

lock_wait_seconds = Histogram(
    'lab_reservation_lock_wait_seconds',
    'Time spent waiting for a reservation lock',
    registry=registry,
    buckets=(0.001, 0.01, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0)
)

# ============================================================================
# Lifecycle Metrics
# ============================================================================

container_transitions_total = Counter(
    'lab_container_transitions_total',
    'Container status transitions',
    ['old_status', 'new_status', 'result'],  # result: applied, rejected
    registry=registry
)

# ============================================================================
# Operation Queue Metrics
# ============================================================================

queue_operations_total = Counter(
    'lab_queue_operations_total',
    'Operation queue entries processed',
    ['operation', 'outcome'],  # completed, retry, failed
    registry=registry
)

queue_operation_duration_seconds = Histogram(
    'lab_queue_operation_duration_seconds',
    'Duration of a single operation attempt',
    ['operation'],
    registry=registry,
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)
)

queue_workers_busy = Gauge(
    'lab_queue_workers_busy',
    'Number of workers currently executing an operation',
    registry=registry
)

# ============================================================================
# Provisioning Metrics
# ============================================================================

provisioning_total = Counter(
    'lab_provisioning_total',
    'Provisioning attempts by outcome',
    ['outcome'],  # ready, launch_failure, timeout, cancelled
    registry=registry
)

readiness_wait_seconds = Histogram(
    'lab_readiness_wait_seconds',
    'Time from launch until a global address was observed',
    registry=registry,
    buckets=(1.0, 5.0, 10.0, 20.0, 30.0, 60.0, 90.0, 120.0, 180.0)
)

event_delivery_failures_total = Counter(
    'lab_event_delivery_failures_total',
    'Notification/audit events that could not be delivered',
    ['sink'],
    registry=registry
)


def get_metrics() -> bytes:
    """Render all metrics in Prometheus text format"""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
