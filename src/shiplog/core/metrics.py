"""
Prometheus metrics collection.

In-memory counters, let Prometheus handle storage.
"""

import time
from typing import Optional

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for the log shipper.

    Pass a private CollectorRegistry to keep several shippers (or tests)
    from colliding on the global registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else REGISTRY

        self.service_info = Info(
            "shiplog",
            "Log shipper information",
            registry=self.registry
        )
        self.service_info.info({"version": "0.1.0"})

        self.logs_sent_total = Counter(
            "shiplog_logs_sent_total",
            "Total logs accepted by send()",
            registry=self.registry
        )

        self.logs_delivered_total = Counter(
            "shiplog_logs_delivered_total",
            "Total logs delivered to the output",
            registry=self.registry
        )

        self.batches_delivered_total = Counter(
            "shiplog_batches_delivered_total",
            "Total batches delivered to the output",
            registry=self.registry
        )

        self.batches_exhausted_total = Counter(
            "shiplog_batches_exhausted_total",
            "Total batches abandoned after exhausting retries",
            registry=self.registry
        )

        self.delivery_attempts_total = Counter(
            "shiplog_delivery_attempts_total",
            "Total delivery attempts",
            registry=self.registry
        )

        self.delivery_retries_total = Counter(
            "shiplog_delivery_retries_total",
            "Total delivery retries after a failed attempt",
            registry=self.registry
        )

        self.flush_ticks_skipped_total = Counter(
            "shiplog_flush_ticks_skipped_total",
            "Flush ticks that arrived while a cycle was in flight",
            ["policy"],
            registry=self.registry
        )

        self.buffer_size = Gauge(
            "shiplog_buffer_size",
            "Items currently held in the in-memory buffer",
            registry=self.registry
        )

        self.abandoned_size = Gauge(
            "shiplog_abandoned_size",
            "Items abandoned after exhausted retries in this process",
            registry=self.registry
        )

        self.batch_size_entries = Histogram(
            "shiplog_batch_size_entries",
            "Number of logs per flushed batch",
            buckets=[1, 2, 5, 10],
            registry=self.registry
        )

        self.flush_duration = Histogram(
            "shiplog_flush_duration_seconds",
            "Flush cycle duration in seconds",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry
        )

        self._start_time = time.time()

    def record_send(self) -> None:
        self.logs_sent_total.inc()

    def record_attempt(self) -> None:
        self.delivery_attempts_total.inc()

    def record_retry(self) -> None:
        self.delivery_retries_total.inc()

    def record_delivery(self, batch_size: int, duration_seconds: float) -> None:
        """Record a successfully delivered batch."""
        self.batches_delivered_total.inc()
        self.logs_delivered_total.inc(batch_size)
        self.batch_size_entries.observe(batch_size)
        self.flush_duration.observe(duration_seconds)

    def record_exhausted(self, batch_size: int, duration_seconds: float) -> None:
        """Record a batch abandoned after exhausted retries."""
        self.batches_exhausted_total.inc()
        self.batch_size_entries.observe(batch_size)
        self.flush_duration.observe(duration_seconds)

    def record_skipped_tick(self, policy: str) -> None:
        self.flush_ticks_skipped_total.labels(policy=policy).inc()

    def update_buffer_metrics(self, buffer_size: int, abandoned_size: int) -> None:
        self.buffer_size.set(buffer_size)
        self.abandoned_size.set(abandoned_size)
