"""Metrics collection for store RAG services.

Provides a thin convenience wrapper around ``prometheus_client`` so the
coordinator, indexer and router record lifecycle, indexing and query metrics
with consistent label sets.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- Store ids are never used as labels
- A single registry is kept per collector (inject one in tests)
"""

from typing import Optional
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        self.lifecycle_operations = Counter(
            'store_lifecycle_operations_total',
            'Lifecycle operations partitioned by outcome',
            ['operation', 'status'],
            registry=self.registry
        )

        self.lifecycle_duration = Histogram(
            'store_lifecycle_operation_duration_seconds',
            'Lifecycle operation duration',
            ['operation'],
            registry=self.registry
        )

        self.lock_conflicts = Counter(
            'store_lock_conflicts_total',
            'Lock acquisitions rejected because another operation holds the lock',
            ['operation'],
            registry=self.registry
        )

        self.indexed_entities = Counter(
            'store_indexed_entities_total',
            'Entities processed by the document indexer',
            ['category', 'status'],
            registry=self.registry
        )

        self.index_duration = Histogram(
            'store_index_pass_duration_seconds',
            'Full index pass duration',
            ['outcome'],
            buckets=(1, 5, 10, 20, 30, 45, 60, 120),
            registry=self.registry
        )

        self.query_requests = Counter(
            'store_query_requests_total',
            'Routed queries by selected agent and confidence band',
            ['agent_type', 'confidence'],
            registry=self.registry
        )

        self.query_duration = Histogram(
            'store_query_duration_seconds',
            'End-to-end query duration',
            ['agent_type'],
            registry=self.registry
        )

        self.vector_store_operations = Counter(
            'store_vector_store_operations_total',
            'Total vector store operations',
            ['operation'],
            registry=self.registry
        )

        self.background_jobs = Gauge(
            'store_background_jobs_in_flight',
            'Background jobs queued or running',
            registry=self.registry
        )

    def record_http_request(self, method: str, endpoint: str, status: int, duration: float) -> None:
        """Record HTTP request metrics (duration in seconds)."""
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_lifecycle_operation(self, operation: str, status: str, duration: Optional[float] = None) -> None:
        self.lifecycle_operations.labels(operation=operation, status=status).inc()
        if duration is not None:
            self.lifecycle_duration.labels(operation=operation).observe(duration)

    def record_lock_conflict(self, operation: str) -> None:
        self.lock_conflicts.labels(operation=operation).inc()

    def record_indexed_entity(self, category: str, status: str, count: int = 1) -> None:
        if count:
            self.indexed_entities.labels(category=category, status=status).inc(count)

    def record_index_pass(self, outcome: str, duration: float) -> None:
        self.index_duration.labels(outcome=outcome).observe(duration)

    def record_query(self, agent_type: str, low_confidence: bool, duration: float) -> None:
        """Record a routed query; confidence is bucketed into ``low``/``ok``."""
        band = "low" if low_confidence else "ok"
        self.query_requests.labels(agent_type=agent_type, confidence=band).inc()
        self.query_duration.labels(agent_type=agent_type).observe(duration)

    def record_vector_store_operation(self, operation: str) -> None:
        self.vector_store_operations.labels(operation=operation).inc()

    def set_background_jobs(self, count: int) -> None:
        self.background_jobs.set(count)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str = "store-rag") -> MetricsCollector:
    """Get or create the process-wide metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector
