"""
Metrics for the retry layer.

Provides:
- RetryMetrics: the sink interface the orchestrator reports to
- PrometheusRetryMetrics: sink backed by prometheus_client
- InMemoryRetryMetrics: thread-safe in-process sink (tests, embedding)
- SafeMetrics: wrapper that keeps a misbehaving sink from failing dispatch
- Prometheus instrumentation for the consumer/producer plumbing
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Histogram

from kafka_retry.logging import get_logger, log_exception

logger = get_logger(__name__)

# Retry transition metrics
retry_messages_total = Counter(
    "kafka_retry_messages_total",
    "Total number of messages routed to a retry topic",
    ["topic"],
)

dlq_messages_total = Counter(
    "kafka_retry_dlq_messages_total",
    "Total number of messages routed to the dead-letter topic",
    ["topic"],
)

retry_latency_seconds = Histogram(
    "kafka_retry_latency_seconds",
    "Delay between a retry record becoming due and being dispatched",
    ["topic"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)

processing_duration_seconds = Histogram(
    "kafka_retry_processing_duration_seconds",
    "Time spent in the message handler per attempt",
    ["topic"],
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,
        60.0,
    ),  # From 5ms to 60s
)

# Plumbing metrics
messages_produced_total = Counter(
    "kafka_retry_messages_produced_total",
    "Total number of retry/DLQ records produced",
    ["topic", "status"],  # status: success, error
)

dispatch_outcomes_total = Counter(
    "kafka_retry_dispatch_outcomes_total",
    "Total number of dispatched records by outcome",
    ["topic", "outcome"],
)

kafka_connection_status = Gauge(
    "kafka_retry_connection_status",
    "Kafka connection status (1=connected, 0=disconnected)",
    ["component"],  # component: producer, consumer, admin
)

held_partitions = Gauge(
    "kafka_retry_held_partitions",
    "Number of partitions paused until a retry record is due",
    ["consumer_group"],
)


class RetryMetrics(ABC):
    """Sink for retry layer metrics. Latencies and durations are in milliseconds."""

    @abstractmethod
    def increment_retry_count(self, topic: str) -> None:
        ...

    @abstractmethod
    def increment_dlq_count(self, topic: str) -> None:
        ...

    @abstractmethod
    def record_retry_latency(self, topic: str, latency_ms: float) -> None:
        ...

    @abstractmethod
    def record_processing_time(self, topic: str, duration_ms: float) -> None:
        ...


class PrometheusRetryMetrics(RetryMetrics):
    """RetryMetrics backed by the module's prometheus_client collectors."""

    def increment_retry_count(self, topic: str) -> None:
        retry_messages_total.labels(topic=topic).inc()

    def increment_dlq_count(self, topic: str) -> None:
        dlq_messages_total.labels(topic=topic).inc()

    def record_retry_latency(self, topic: str, latency_ms: float) -> None:
        retry_latency_seconds.labels(topic=topic).observe(max(latency_ms, 0) / 1000)

    def record_processing_time(self, topic: str, duration_ms: float) -> None:
        processing_duration_seconds.labels(topic=topic).observe(max(duration_ms, 0) / 1000)


class InMemoryRetryMetrics(RetryMetrics):
    """
    In-process sink keyed by ``{prefix}_{metric}_{topic}``.

    Counters are totals; latencies and processing times keep a simple moving
    average. Safe for concurrent use from several threads.
    """

    def __init__(self, enabled: bool = True, prefix: str = "kafka_retry"):
        self.enabled = enabled
        self.prefix = prefix
        self._metrics: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _key(self, name: str, topic: str) -> str:
        return f"{self.prefix}_{name}_{topic}"

    def _increment(self, name: str, topic: str) -> None:
        if not self.enabled:
            return
        key = self._key(name, topic)
        with self._lock:
            self._metrics[key] = self._metrics.get(key, 0) + 1

    def _average(self, name: str, topic: str, value: float) -> None:
        if not self.enabled:
            return
        key = self._key(name, topic)
        with self._lock:
            current = self._metrics.get(key)
            self._metrics[key] = value if current is None else (current + value) / 2

    def increment_retry_count(self, topic: str) -> None:
        self._increment("retry_count", topic)

    def increment_dlq_count(self, topic: str) -> None:
        self._increment("dlq_count", topic)

    def record_retry_latency(self, topic: str, latency_ms: float) -> None:
        self._average("retry_latency", topic, latency_ms)

    def record_processing_time(self, topic: str, duration_ms: float) -> None:
        self._average("processing_time", topic, duration_ms)

    def get_metrics(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._metrics)

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


class SafeMetrics(RetryMetrics):
    """
    Best-effort wrapper around a RetryMetrics sink.

    Exceptions raised by the wrapped sink are logged and swallowed so that
    metrics can never fail message processing.
    """

    def __init__(self, sink: Optional[RetryMetrics]):
        self.sink = sink

    def _call(self, method: str, *args) -> None:
        if self.sink is None:
            return
        try:
            getattr(self.sink, method)(*args)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Metrics sink failed, continuing",
                level=logging.WARNING,
                include_traceback=False,
                stage=method,
            )

    def increment_retry_count(self, topic: str) -> None:
        self._call("increment_retry_count", topic)

    def increment_dlq_count(self, topic: str) -> None:
        self._call("increment_dlq_count", topic)

    def record_retry_latency(self, topic: str, latency_ms: float) -> None:
        self._call("record_retry_latency", topic, latency_ms)

    def record_processing_time(self, topic: str, duration_ms: float) -> None:
        self._call("record_processing_time", topic, duration_ms)


def record_message_produced(topic: str, success: bool = True) -> None:
    """
    Record a retry/DLQ production event.

    Args:
        topic: Kafka topic name
        success: Whether the production was successful
    """
    status = "success" if success else "error"
    messages_produced_total.labels(topic=topic, status=status).inc()


def record_dispatch_outcome(topic: str, outcome: str) -> None:
    """
    Record the outcome of dispatching one record.

    Args:
        topic: Topic the record arrived on
        outcome: done, rescheduled, routed_to_dlq, deferred or failed
    """
    dispatch_outcomes_total.labels(topic=topic, outcome=outcome).inc()


def update_connection_status(component: str, connected: bool) -> None:
    """
    Update Kafka connection status.

    Args:
        component: Component name (producer, consumer, admin)
        connected: Whether the component is connected
    """
    kafka_connection_status.labels(component=component).set(1 if connected else 0)


def update_held_partitions(consumer_group: str, count: int) -> None:
    held_partitions.labels(consumer_group=consumer_group).set(count)


__all__ = [
    "RetryMetrics",
    "PrometheusRetryMetrics",
    "InMemoryRetryMetrics",
    "SafeMetrics",
    "record_message_produced",
    "record_dispatch_outcome",
    "update_connection_status",
    "update_held_partitions",
]
