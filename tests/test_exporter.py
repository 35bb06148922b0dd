# tests/test_exporter.py
from metrics import MetricsExporter
from metrics.collector import PoolAggregate
from state import HealthState


class StubCollector:
    def __init__(self, aggregate, backends=None):
        self._aggregate = aggregate
        self._backends = backends or {}

    def aggregate(self, pool_id):
        return self._aggregate

    def backend_summary(self, pool_id):
        return self._backends


def sample(exporter, name, **labels):
    return exporter.registry.get_sample_value(name, labels)


def test_pool_gauges_read_at_scrape_time(registry, add_endpoint):
    add_endpoint("a", 9001)
    add_endpoint("b", 9002, health=HealthState.UNHEALTHY)
    exporter = MetricsExporter()
    exporter.bind(registry)

    assert sample(exporter, "poolkeeper_pool_endpoints", pool="web", health="healthy") == 1.0
    assert sample(exporter, "poolkeeper_pool_endpoints", pool="web", health="unhealthy") == 1.0
    assert sample(exporter, "poolkeeper_pool_endpoints", pool="web", health="draining") == 0.0
    assert sample(exporter, "poolkeeper_pool_eligible_endpoints", pool="web") == 1.0

    add_endpoint("c", 9003)
    assert sample(exporter, "poolkeeper_pool_eligible_endpoints", pool="web") == 2.0


def test_unknown_load_is_not_exported_as_zero(registry, add_endpoint):
    add_endpoint("a", 9001)
    collector = StubCollector(
        PoolAggregate(pool_id="web", timestamp=0.0, avg_cpu=55.0),
        {"a": {"cpu_pct": 55.0, "mem_pct": None, "latency_p95": None, "active_connections": 2}},
    )
    exporter = MetricsExporter()
    exporter.bind(registry, collector)

    assert sample(exporter, "poolkeeper_pool_cpu_percent", pool="web") == 55.0
    assert sample(exporter, "poolkeeper_pool_memory_percent", pool="web") is None
    assert sample(exporter, "poolkeeper_backend_active_connections", pool="web", backend="a") == 2.0
    assert sample(exporter, "poolkeeper_backend_memory_percent", pool="web", backend="a") is None


def test_rebinding_replaces_the_pool_collector(registry):
    exporter = MetricsExporter()
    exporter.bind(registry)
    exporter.bind(registry)
    assert exporter.get_prometheus_metrics().count("# TYPE poolkeeper_pool_endpoints gauge") == 1


def test_counters():
    exporter = MetricsExporter()
    exporter.record_unavailable("web")
    exporter.record_health_check("web", True, 0.01)
    exporter.record_health_check("web", False, 0.02)
    exporter.record_reload(False)
    exporter.record_upstream_write(True)
    assert sample(exporter, "poolkeeper_upstream_unavailable_total", pool="web") == 1.0
    assert sample(exporter, "poolkeeper_health_checks_total", pool="web", status="success") == 1.0
    assert sample(exporter, "poolkeeper_health_checks_total", pool="web", status="failure") == 1.0
    assert sample(exporter, "poolkeeper_health_check_duration_seconds_count", pool="web") == 2.0
    assert sample(exporter, "poolkeeper_config_reloads_total", status="failure") == 1.0
    assert sample(exporter, "poolkeeper_upstream_config_writes_total", status="success") == 1.0


def test_exporters_are_independent():
    first, second = MetricsExporter(), MetricsExporter()
    first.record_unavailable("web")
    assert sample(second, "poolkeeper_upstream_unavailable_total", pool="web") is None
