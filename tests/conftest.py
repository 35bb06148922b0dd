# tests/conftest.py
import asyncio
from dataclasses import replace

import pytest

from controller.provisioner import Instance, Provisioner
from controller.utils.clock import ManualClock
from metrics.collector import PoolAggregate
from state import BackendRegistry, HealthState, RoutingAlgorithm


class FakeProvisioner(Provisioner):
    """Records scale calls; can be told to fail or hang."""

    def __init__(self):
        super().__init__()
        self.scale_calls = []
        self.instances = {}
        self.fail_with = None
        self.hang = False

    async def list_instances(self, pool_id):
        return list(self.instances.get(pool_id, []))

    async def scale(self, pool_id, target_count):
        self.scale_calls.append((pool_id, target_count))
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail_with is not None:
            raise self.fail_with
        return True


class FakeCollector:
    """Serves a fixed pool aggregate per pool to the autoscaler."""

    def __init__(self):
        self.values = {}

    def set(self, pool_id, cpu=None, memory=None, latency=None, connections=None):
        self.values[pool_id] = PoolAggregate(
            pool_id=pool_id, timestamp=0.0, avg_cpu=cpu, avg_mem=memory,
            avg_latency=latency, total_connections=connections,
        )

    def aggregate(self, pool_id):
        return self.values.get(pool_id, PoolAggregate(pool_id=pool_id, timestamp=0.0))


@pytest.fixture
def clock():
    """Manual clock starting at t=0"""
    return ManualClock(0.0)


@pytest.fixture
def registry():
    """Registry with an empty round robin pool named 'web'"""
    reg = BackendRegistry()
    reg.ensure_pool("web", RoutingAlgorithm.ROUND_ROBIN, min_replicas=1, max_replicas=5)
    return reg


@pytest.fixture
def add_endpoint(registry):
    """Add an endpoint to a pool and force its health state."""

    def _add(endpoint_id, port=9000, pool_id="web", weight=1, health=HealthState.HEALTHY):
        generation = registry.add_endpoint(pool_id, endpoint_id, "127.0.0.1", port, weight)
        if health not in (HealthState.UNKNOWN, HealthState.DRAINING):
            registry.apply_probe_result(pool_id, endpoint_id, generation, lambda ep: replace(ep, health=health))
        elif health == HealthState.DRAINING:
            registry.mark_draining(pool_id, endpoint_id, 0.0)
        return registry.get_endpoint(pool_id, endpoint_id)

    return _add


@pytest.fixture
def fake_provisioner():
    return FakeProvisioner()


@pytest.fixture
def fake_collector():
    return FakeCollector()


@pytest.fixture
def instance():
    def _instance(instance_id, port, weight=1):
        return Instance(instance_id, "127.0.0.1", port, weight)
    return _instance
