"""
Health checking for pool backends.
Performs HTTP health checks and drives the per-endpoint health state machine.
"""

import aiohttp
import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple

from state.models import BackendEndpoint, HealthState
from state.registry import BackendRegistry
from .errors import ProbeConnectError, ProbeTimeoutError, UnhealthyStatusError
from .utils.clock import SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthCheckSpec:
    path: str = "/healthz"
    interval: float = 5.0
    timeout: float = 2.0
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3
    concurrency: int = 16

    def __post_init__(self):
        if self.healthy_threshold < 1 or self.unhealthy_threshold < 1:
            raise ValueError("health thresholds must be >= 1")
        if self.interval <= 0 or self.timeout <= 0:
            raise ValueError("health interval and timeout must be > 0")
        if self.concurrency < 1:
            raise ValueError("health concurrency must be >= 1")


def next_health(endpoint: BackendEndpoint, success: bool, spec: HealthCheckSpec, now: float) -> BackendEndpoint:
    """Apply one probe outcome to an endpoint.

    A state only changes after ``healthy_threshold`` consecutive successes or
    ``unhealthy_threshold`` consecutive failures; an opposite result resets the
    streak. Draining endpoints are returned untouched.
    """
    if endpoint.health == HealthState.DRAINING:
        return endpoint

    if success:
        successes = endpoint.consecutive_success_count + 1
        failures = 0
    else:
        successes = 0
        failures = endpoint.consecutive_failure_count + 1

    health = endpoint.health
    if health != HealthState.HEALTHY and successes >= spec.healthy_threshold:
        health = HealthState.HEALTHY
    elif health != HealthState.UNHEALTHY and failures >= spec.unhealthy_threshold:
        health = HealthState.UNHEALTHY

    return replace(
        endpoint,
        health=health,
        consecutive_success_count=successes,
        consecutive_failure_count=failures,
        last_checked_at=now,
    )


ProbeFunc = Callable[[BackendEndpoint, HealthCheckSpec], Awaitable[None]]


class HealthChecker:
    def __init__(self, registry: BackendRegistry, default_spec: Optional[HealthCheckSpec] = None,
                 probe: Optional[ProbeFunc] = None, clock=None, exporter=None):
        self.registry = registry
        self.default_spec = default_spec or HealthCheckSpec()
        self.pool_specs: Dict[str, HealthCheckSpec] = {}
        self.clock = clock or SystemClock()
        self.exporter = exporter
        self.session: Optional[aiohttp.ClientSession] = None
        self._probe = probe or self.probe
        self._semaphore = asyncio.Semaphore(self.default_spec.concurrency)
        self._next_due: Dict[Tuple[str, str, int], float] = {}
        self._in_flight: Set[Tuple[str, str, int]] = set()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._health_change_callback = None

    def set_health_change_callback(self, callback):
        """Set callback function to be called when an endpoint changes health state."""
        self._health_change_callback = callback

    def set_spec(self, pool_id: str, spec: HealthCheckSpec):
        self.pool_specs[pool_id] = spec

    def spec_for(self, pool_id: str) -> HealthCheckSpec:
        return self.pool_specs.get(pool_id, self.default_spec)

    async def start(self):
        """Start the health checker background task."""
        if not self._running:
            if self.session is None:
                self.session = aiohttp.ClientSession()
            self._running = True
            self._task = asyncio.create_task(self._health_check_loop())
            logger.info("Health checker started")

    async def stop(self):
        """Stop the health checker and clean up resources."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.session:
            await self.session.close()
            self.session = None
        logger.info("Health checker stopped")

    async def probe(self, endpoint: BackendEndpoint, spec: HealthCheckSpec):
        """Perform an HTTP health check; returns on success, raises on failure."""
        if self.session is None:
            self.session = aiohttp.ClientSession()
        url = f"{endpoint.url}{spec.path}"
        try:
            async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=spec.timeout)) as response:
                # 2xx and 3xx are healthy
                if not 200 <= response.status < 400:
                    raise UnhealthyStatusError(response.status, url)
        except asyncio.TimeoutError as e:
            raise ProbeTimeoutError(f"Health check timeout for {url}") from e
        except aiohttp.ClientError as e:
            raise ProbeConnectError(f"Health check connection error for {url}: {e}") from e

    async def check_endpoint(self, pool_id: str, endpoint: BackendEndpoint) -> Optional[BackendEndpoint]:
        """Probe one endpoint and apply the result. Returns None if the result was discarded."""
        spec = self.spec_for(pool_id)
        start = self.clock.now()
        try:
            await self._probe(endpoint, spec)
            success = True
        except (ProbeTimeoutError, ProbeConnectError, UnhealthyStatusError) as e:
            logger.debug(f"Probe failed for {pool_id}/{endpoint.id}: {e}")
            success = False
        duration = self.clock.now() - start

        now = self.clock.now()
        before = {}

        def transition(current: BackendEndpoint) -> BackendEndpoint:
            before["health"] = current.health
            return next_health(current, success, spec, now)

        updated = self.registry.apply_probe_result(pool_id, endpoint.id, endpoint.generation, transition)
        if self.exporter:
            self.exporter.record_health_check(pool_id, success, duration)
        if updated is None:
            return None

        if updated.health != before["health"]:
            if updated.health == HealthState.HEALTHY:
                logger.info(f"Endpoint {pool_id}/{endpoint.id} is now healthy")
            else:
                logger.warning(f"Endpoint {pool_id}/{endpoint.id} is now {updated.health.value}")
            if self._health_change_callback:
                self._health_change_callback(pool_id, updated)
        return updated

    async def run_once(self):
        """Probe every endpoint that is due. Never overlaps probes of one endpoint."""
        now = self.clock.now()
        tasks = []
        live = set()
        for pool_id in self.registry.pool_ids():
            spec = self.spec_for(pool_id)
            for endpoint in self.registry.endpoints(pool_id):
                if endpoint.health == HealthState.DRAINING:
                    continue
                key = (pool_id, endpoint.id, endpoint.generation)
                live.add(key)
                if key in self._in_flight or now < self._next_due.get(key, 0.0):
                    continue
                self._next_due[key] = now + spec.interval
                self._in_flight.add(key)
                tasks.append(asyncio.create_task(self._guarded_check(key, pool_id, endpoint)))

        # forget schedules of endpoints that left the registry
        for key in list(self._next_due):
            if key not in live:
                self._next_due.pop(key, None)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _guarded_check(self, key, pool_id: str, endpoint: BackendEndpoint):
        try:
            async with self._semaphore:
                await self.check_endpoint(pool_id, endpoint)
        finally:
            self._in_flight.discard(key)

    async def _health_check_loop(self):
        """Main health checking loop."""
        while self._running:
            try:
                await self.run_once()
                # wake often, each endpoint keeps its own interval
                await self.clock.sleep(min(1.0, self._shortest_interval()))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in health check loop: {e}")
                await self.clock.sleep(5)

    def _shortest_interval(self) -> float:
        intervals = [spec.interval for spec in self.pool_specs.values()] + [self.default_spec.interval]
        return min(intervals)

    def get_health_summary(self) -> Dict:
        """Get a summary of all health checks."""
        summary = {"total_targets": 0, "healthy_targets": 0, "unhealthy_targets": 0, "targets": {}}
        for pool_id in self.registry.pool_ids():
            for ep in self.registry.endpoints(pool_id):
                summary["total_targets"] += 1
                if ep.health == HealthState.HEALTHY:
                    summary["healthy_targets"] += 1
                elif ep.health == HealthState.UNHEALTHY:
                    summary["unhealthy_targets"] += 1
                summary["targets"][f"{pool_id}/{ep.id}"] = {
                    "health": ep.health.value,
                    "consecutive_failures": ep.consecutive_failure_count,
                    "consecutive_successes": ep.consecutive_success_count,
                    "last_checked_at": ep.last_checked_at,
                }
        return summary
