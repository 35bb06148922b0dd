# tests/test_health.py
import asyncio

import pytest

from controller.errors import ProbeConnectError, ProbeTimeoutError, UnhealthyStatusError
from controller.health import HealthChecker, HealthCheckSpec, next_health
from state import BackendEndpoint, HealthState

SPEC = HealthCheckSpec(healthy_threshold=2, unhealthy_threshold=3)


def run(endpoint, outcomes):
    for success in outcomes:
        endpoint = next_health(endpoint, success, SPEC, now=1.0)
    return endpoint


def endpoint(health=HealthState.UNKNOWN):
    return BackendEndpoint(id="a", address="127.0.0.1", port=9001, health=health)


def test_unknown_becomes_healthy_after_threshold():
    assert run(endpoint(), [True]).health == HealthState.UNKNOWN
    assert run(endpoint(), [True, True]).health == HealthState.HEALTHY


def test_unknown_becomes_unhealthy_after_threshold():
    assert run(endpoint(), [False, False]).health == HealthState.UNKNOWN
    assert run(endpoint(), [False, False, False]).health == HealthState.UNHEALTHY


def test_healthy_needs_consecutive_failures():
    healthy = endpoint(HealthState.HEALTHY)
    # a success in between resets the failure streak
    assert run(healthy, [False, False, True, False, False]).health == HealthState.HEALTHY
    assert run(healthy, [False, False, False]).health == HealthState.UNHEALTHY


def test_unhealthy_recovers_after_successes():
    unhealthy = endpoint(HealthState.UNHEALTHY)
    assert run(unhealthy, [True]).health == HealthState.UNHEALTHY
    assert run(unhealthy, [True, True]).health == HealthState.HEALTHY


def test_counters_and_timestamp():
    updated = run(endpoint(), [False, False])
    assert updated.consecutive_failure_count == 2
    assert updated.consecutive_success_count == 0
    assert updated.last_checked_at == 1.0


def test_draining_is_untouched():
    draining = endpoint(HealthState.DRAINING)
    assert run(draining, [True, True, True]) is draining


def test_invalid_spec():
    with pytest.raises(ValueError):
        HealthCheckSpec(healthy_threshold=0)


class ScriptedProbe:
    """Probe that raises or succeeds per endpoint id."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    async def __call__(self, endpoint, spec):
        self.calls.append(endpoint.id)
        error = self.failures.get(endpoint.id)
        if error is not None:
            raise error


@pytest.mark.asyncio
async def test_check_endpoint_applies_results(registry, clock):
    registry.add_endpoint("web", "a", "127.0.0.1", 9001)
    probe = ScriptedProbe()
    checker = HealthChecker(registry, SPEC, probe=probe, clock=clock)
    changes = []
    checker.set_health_change_callback(lambda pool_id, ep: changes.append((pool_id, ep.id, ep.health)))

    for _ in range(2):
        await checker.check_endpoint("web", registry.get_endpoint("web", "a"))

    assert registry.get_endpoint("web", "a").health == HealthState.HEALTHY
    assert registry.snapshot("web").ids() == ("a",)
    assert changes == [("web", "a", HealthState.HEALTHY)]


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    ProbeTimeoutError("timeout"),
    ProbeConnectError("refused"),
    UnhealthyStatusError(503, "http://127.0.0.1:9001/healthz"),
])
async def test_probe_failures_count_as_failures(registry, add_endpoint, clock, error):
    add_endpoint("a", 9001)
    checker = HealthChecker(registry, SPEC, probe=ScriptedProbe({"a": error}), clock=clock)
    for _ in range(3):
        await checker.check_endpoint("web", registry.get_endpoint("web", "a"))
    assert registry.get_endpoint("web", "a").health == HealthState.UNHEALTHY
    assert registry.snapshot("web").ids() == ()


@pytest.mark.asyncio
async def test_stale_probe_result_is_discarded(registry, clock):
    registry.add_endpoint("web", "a", "127.0.0.1", 9001)
    stale = registry.get_endpoint("web", "a")
    registry.add_endpoint("web", "a", "127.0.0.1", 9001)
    checker = HealthChecker(registry, SPEC, probe=ScriptedProbe(), clock=clock)
    assert await checker.check_endpoint("web", stale) is None
    assert registry.get_endpoint("web", "a").consecutive_success_count == 0


@pytest.mark.asyncio
async def test_run_once_respects_interval_and_skips_draining(registry, add_endpoint, clock):
    add_endpoint("a", 9001, health=HealthState.UNKNOWN)
    add_endpoint("b", 9002, health=HealthState.DRAINING)
    probe = ScriptedProbe()
    checker = HealthChecker(registry, HealthCheckSpec(interval=5.0), probe=probe, clock=clock)

    await checker.run_once()
    await checker.run_once()
    assert probe.calls == ["a"]

    clock.advance(5.0)
    await checker.run_once()
    assert probe.calls == ["a", "a"]


@pytest.mark.asyncio
async def test_run_once_never_overlaps_probes_of_one_endpoint(registry, add_endpoint, clock):
    add_endpoint("a", 9001)
    release = asyncio.Event()
    calls = []

    async def slow_probe(endpoint, spec):
        calls.append(endpoint.id)
        await release.wait()

    checker = HealthChecker(registry, HealthCheckSpec(interval=1.0), probe=slow_probe, clock=clock)
    first = asyncio.create_task(checker.run_once())
    for _ in range(3):
        await asyncio.sleep(0)
    assert calls == ["a"]
    clock.advance(10.0)
    await checker.run_once()
    assert calls == ["a"]
    release.set()
    await first


@pytest.mark.asyncio
async def test_per_pool_spec(registry, add_endpoint, clock):
    add_endpoint("a", 9001)
    checker = HealthChecker(registry, SPEC, probe=ScriptedProbe({"a": ProbeConnectError("x")}), clock=clock)
    checker.set_spec("web", HealthCheckSpec(unhealthy_threshold=1))
    await checker.check_endpoint("web", registry.get_endpoint("web", "a"))
    assert registry.get_endpoint("web", "a").health == HealthState.UNHEALTHY


def test_health_summary(registry, add_endpoint, clock):
    add_endpoint("a", 9001)
    add_endpoint("b", 9002, health=HealthState.UNHEALTHY)
    summary = HealthChecker(registry, SPEC, probe=ScriptedProbe(), clock=clock).get_health_summary()
    assert summary["total_targets"] == 2
    assert summary["healthy_targets"] == 1
    assert summary["unhealthy_targets"] == 1
    assert summary["targets"]["web/b"]["health"] == "unhealthy"
