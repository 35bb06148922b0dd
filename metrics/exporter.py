"""
Prometheus exporter for Poolkeeper.
Counts routing, health-check and scaling events, and reads pool load and
endpoint health at scrape time.
"""

import logging
import time
from typing import Dict, Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest
from prometheus_client.core import GaugeMetricFamily

logger = logging.getLogger(__name__)

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class PoolStateCollector:
    """Builds gauges from the backend registry and metrics collector on every scrape."""

    def __init__(self, backend_registry, metrics_collector=None):
        self.backend_registry = backend_registry
        self.metrics_collector = metrics_collector

    def collect(self) -> Iterable[GaugeMetricFamily]:
        endpoints = GaugeMetricFamily(
            "poolkeeper_pool_endpoints", "Endpoints per pool by health state", labels=["pool", "health"]
        )
        eligible = GaugeMetricFamily("poolkeeper_pool_eligible_endpoints", "Endpoints eligible for routing", labels=["pool"])
        cpu = GaugeMetricFamily("poolkeeper_pool_cpu_percent", "Smoothed average CPU of the pool", labels=["pool"])
        mem = GaugeMetricFamily("poolkeeper_pool_memory_percent", "Smoothed average memory of the pool", labels=["pool"])
        latency = GaugeMetricFamily("poolkeeper_pool_latency_p95_ms", "Smoothed p95 latency of the pool", labels=["pool"])
        conns = GaugeMetricFamily("poolkeeper_pool_active_connections", "Active proxied connections", labels=["pool"])
        backend_cpu = GaugeMetricFamily("poolkeeper_backend_cpu_percent", "Smoothed CPU per backend", labels=["pool", "backend"])
        backend_mem = GaugeMetricFamily("poolkeeper_backend_memory_percent", "Smoothed memory per backend", labels=["pool", "backend"])
        backend_latency = GaugeMetricFamily("poolkeeper_backend_latency_p95_ms", "Smoothed p95 latency per backend", labels=["pool", "backend"])
        backend_conns = GaugeMetricFamily("poolkeeper_backend_active_connections", "Active connections per backend", labels=["pool", "backend"])

        for pool_id in self.backend_registry.pool_ids():
            counts: Dict[str, int] = {"unknown": 0, "healthy": 0, "unhealthy": 0, "draining": 0}
            for ep in self.backend_registry.endpoints(pool_id):
                counts[ep.health.value] += 1
            for health, count in counts.items():
                endpoints.add_metric([pool_id, health], count)
            eligible.add_metric([pool_id], len(self.backend_registry.snapshot(pool_id)))

            if self.metrics_collector is None:
                continue
            # unknown readings are left out rather than exported as 0
            aggregate = self.metrics_collector.aggregate(pool_id)
            for family, value in ((cpu, aggregate.avg_cpu), (mem, aggregate.avg_mem),
                                  (latency, aggregate.avg_latency), (conns, aggregate.total_connections)):
                if value is not None:
                    family.add_metric([pool_id], value)
            for backend_id, values in self.metrics_collector.backend_summary(pool_id).items():
                for family, key in ((backend_cpu, "cpu_pct"), (backend_mem, "mem_pct"),
                                    (backend_latency, "latency_p95"), (backend_conns, "active_connections")):
                    if values[key] is not None:
                        family.add_metric([pool_id, backend_id], values[key])

        yield from (endpoints, eligible, cpu, mem, latency, conns,
                    backend_cpu, backend_mem, backend_latency, backend_conns)


class MetricsExporter:
    """
    Collects and exports metrics from Poolkeeper components.
    Uses its own CollectorRegistry so several instances can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.started_at = time.time()
        self._pool_collector: Optional[PoolStateCollector] = None
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self):
        """Initialize Prometheus metric objects."""
        # Routing
        self.requests = Counter('poolkeeper_requests_total', 'Proxied request attempts',
                                ['pool', 'backend', 'outcome'], registry=self.registry)
        self.unavailable = Counter('poolkeeper_upstream_unavailable_total', 'Requests that exhausted every backend',
                                   ['pool'], registry=self.registry)

        # Health checks
        self.health_checks = Counter('poolkeeper_health_checks_total', 'Number of health checks',
                                     ['pool', 'status'], registry=self.registry)
        self.health_check_duration = Histogram('poolkeeper_health_check_duration_seconds', 'Health check duration',
                                               ['pool'], registry=self.registry)

        # Scaling
        self.scaling_decisions = Counter('poolkeeper_scaling_decisions_total', 'Number of scaling decisions',
                                         ['pool', 'action'], registry=self.registry)

        # Collection and config
        self.collections = Counter('poolkeeper_metric_collections_total', 'Metric collection ticks',
                                   ['pool'], registry=self.registry)
        self.config_reloads = Counter('poolkeeper_config_reloads_total', 'Configuration reloads',
                                      ['status'], registry=self.registry)
        self.upstream_writes = Counter('poolkeeper_upstream_config_writes_total', 'Upstream config file writes',
                                       ['status'], registry=self.registry)

    def bind(self, backend_registry, metrics_collector=None):
        """Expose pool state gauges read from the given registry and collector."""
        if self._pool_collector is not None:
            self.registry.unregister(self._pool_collector)
        self._pool_collector = PoolStateCollector(backend_registry, metrics_collector)
        self.registry.register(self._pool_collector)

    def record_request(self, pool_id: str, backend_id: str, outcome: str):
        self.requests.labels(pool=pool_id, backend=backend_id, outcome=outcome).inc()

    def record_unavailable(self, pool_id: str):
        self.unavailable.labels(pool=pool_id).inc()

    def record_health_check(self, pool_id: str, success: bool, duration_seconds: float):
        status = "success" if success else "failure"
        self.health_checks.labels(pool=pool_id, status=status).inc()
        self.health_check_duration.labels(pool=pool_id).observe(max(duration_seconds, 0.0))

    def record_scaling_decision(self, pool_id: str, action: str):
        self.scaling_decisions.labels(pool=pool_id, action=action).inc()

    def record_collection(self, pool_id: str, aggregate=None):
        self.collections.labels(pool=pool_id).inc()

    def record_reload(self, success: bool):
        self.config_reloads.labels(status="success" if success else "failure").inc()

    def record_upstream_write(self, success: bool):
        self.upstream_writes.labels(status="success" if success else "failure").inc()

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        try:
            return generate_latest(self.registry).decode('utf-8')
        except Exception as e:
            logger.error(f"Failed to generate Prometheus metrics: {e}")
            return ""
