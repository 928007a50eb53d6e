"""
Prometheus metrics for the reminder pipeline.

Provides instrumentation for:
- Reminder publication and broker connection health
- Delivery outcomes and processing time on the consumer side
- Scan cycles and overdue task counts
- Dedup cache size and evictions
- Publish pool backpressure
"""

from prometheus_client import Counter, Gauge, Histogram

# Production metrics
messages_produced_total = Counter(
    "reminder_messages_produced_total",
    "Total number of reminder messages published",
    ["topic", "status"],  # status: success, error, dropped
)

messages_produced_bytes = Counter(
    "reminder_messages_produced_bytes_total",
    "Total bytes of reminder messages published",
    ["topic"],
)

producer_errors_total = Counter(
    "reminder_producer_errors_total",
    "Total number of producer errors",
    ["topic", "error_type"],
)

# Consumption metrics
deliveries_total = Counter(
    "reminder_deliveries_total",
    "Deliveries settled by the consumer",
    ["topic", "consumer_group", "outcome"],  # outcome: ack, requeue, discard
)

processing_errors_total = Counter(
    "reminder_processing_errors_total",
    "Reminder processing errors by category",
    ["topic", "consumer_group", "error_category"],
)

message_processing_duration_seconds = Histogram(
    "reminder_message_processing_duration_seconds",
    "Time spent handling a single delivery",
    ["topic", "consumer_group"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

consumer_assigned_partitions = Gauge(
    "reminder_consumer_assigned_partitions",
    "Number of partitions assigned to this consumer",
    ["consumer_group"],
)

# Scanner metrics
scan_cycles_total = Counter(
    "reminder_scan_cycles_total",
    "Completed scan cycles",
    ["status"],  # status: success, partial, store_error
)

overdue_tasks_found = Gauge(
    "reminder_overdue_tasks_found",
    "Overdue incomplete tasks found by the most recent scan",
)

scan_duration_seconds = Histogram(
    "reminder_scan_duration_seconds",
    "Time spent on a scan cycle",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# Dedup cache metrics
dedup_cache_size = Gauge(
    "reminder_dedup_cache_entries",
    "Entries currently held in the dedup cache",
)

dedup_evictions_total = Counter(
    "reminder_dedup_evictions_total",
    "Entries removed from the dedup cache by the sweep",
)

# Connection and circuit metrics
broker_connection_status = Gauge(
    "reminder_broker_connection_status",
    "Broker connection status (0=unconnected, 1=connected, 2=permanently failed)",
    ["component"],  # component: producer, consumer
)

circuit_breaker_state = Gauge(
    "reminder_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["component"],
)

# Publish pool metrics
publish_pool_queue_depth = Gauge(
    "reminder_publish_pool_queue_depth",
    "Messages waiting in the publish pool queue",
)

publish_pool_rejected_total = Counter(
    "reminder_publish_pool_rejected_total",
    "Messages rejected because the publish pool queue was full or stopped",
)


def record_message_produced(topic: str, message_bytes: int, status: str = "success") -> None:
    """
    Record a publish attempt.

    Args:
        topic: Kafka topic name
        message_bytes: Size of the message in bytes
        status: success, error or dropped
    """
    messages_produced_total.labels(topic=topic, status=status).inc()
    if status == "success":
        messages_produced_bytes.labels(topic=topic).inc(message_bytes)


def record_producer_error(topic: str, error_type: str) -> None:
    producer_errors_total.labels(topic=topic, error_type=error_type).inc()


def record_delivery_outcome(topic: str, consumer_group: str, outcome: str) -> None:
    """
    Record how a delivery was settled.

    Args:
        topic: Kafka topic name
        consumer_group: Consumer group ID
        outcome: ack, requeue or discard
    """
    deliveries_total.labels(
        topic=topic, consumer_group=consumer_group, outcome=outcome
    ).inc()


def record_processing_error(topic: str, consumer_group: str, error_category: str) -> None:
    processing_errors_total.labels(
        topic=topic, consumer_group=consumer_group, error_category=error_category
    ).inc()


def record_scan_cycle(status: str, overdue_count: int, duration_seconds: float) -> None:
    """
    Record a finished scan cycle.

    Args:
        status: success, partial or store_error
        overdue_count: Overdue tasks returned by the store
        duration_seconds: Wall time of the cycle
    """
    scan_cycles_total.labels(status=status).inc()
    scan_duration_seconds.observe(duration_seconds)
    if status == "success":
        overdue_tasks_found.set(overdue_count)


def update_dedup_cache(size: int, evicted: int = 0) -> None:
    dedup_cache_size.set(size)
    if evicted:
        dedup_evictions_total.inc(evicted)


def update_connection_status(component: str, status_code: int) -> None:
    """
    Update broker connection status gauge.

    Args:
        component: producer or consumer
        status_code: 0=unconnected, 1=connected, 2=permanently failed
    """
    broker_connection_status.labels(component=component).set(status_code)


def update_circuit_breaker_state(component: str, state: int) -> None:
    """
    Update circuit breaker state gauge.

    Args:
        component: Component name
        state: Circuit state (0=closed, 1=open, 2=half-open)
    """
    circuit_breaker_state.labels(component=component).set(state)


def update_assigned_partitions(consumer_group: str, count: int) -> None:
    consumer_assigned_partitions.labels(consumer_group=consumer_group).set(count)


def update_publish_pool_depth(depth: int) -> None:
    publish_pool_queue_depth.set(depth)


def record_publish_pool_rejection() -> None:
    publish_pool_rejected_total.inc()
