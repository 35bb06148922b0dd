"""
Load sampling for backend pools.
Keeps a bounded rolling window of samples per backend and computes smoothed
pool aggregates for the autoscaler. Missing readings stay unknown (None) and
never count as zero.
"""

import aiohttp
import asyncio
import logging
import statistics
import threading
from collections import deque
from dataclasses import dataclass, asdict
from typing import Deque, Dict, List, Optional, Tuple

from state.models import BackendEndpoint, HealthState
from state.registry import BackendRegistry
from controller.utils.clock import SystemClock

logger = logging.getLogger(__name__)

METRIC_FIELDS = ("cpu_pct", "mem_pct", "active_connections", "latency_p95")


@dataclass(frozen=True)
class MetricSample:
    """One collection tick for a backend (backend_id None for the pool aggregate)."""
    timestamp: float
    backend_id: Optional[str]
    cpu_pct: Optional[float] = None
    mem_pct: Optional[float] = None
    active_connections: Optional[int] = None
    latency_p95: Optional[float] = None

    @property
    def is_unknown(self) -> bool:
        return all(getattr(self, name) is None for name in METRIC_FIELDS)


@dataclass(frozen=True)
class PoolAggregate:
    pool_id: str
    timestamp: float
    avg_cpu: Optional[float] = None
    avg_mem: Optional[float] = None
    avg_latency: Optional[float] = None
    total_connections: Optional[int] = None
    reporting_backends: int = 0

    def value(self, metric: str) -> Optional[float]:
        """Metric the autoscaler compares against its thresholds."""
        if metric == "cpu":
            return self.avg_cpu
        if metric == "memory":
            return self.avg_mem
        if metric == "latency":
            return self.avg_latency
        if metric == "connections":
            return None if self.total_connections is None else float(self.total_connections)
        raise ValueError(f"Unknown scaling metric: {metric}")

    def to_dict(self) -> Dict:
        return asdict(self)


class RollingWindow:
    """Bounded sample history for one backend. Writes are serialized per window."""

    def __init__(self, size: int):
        self._samples: Deque[MetricSample] = deque(maxlen=size)
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._samples)

    def add(self, sample: MetricSample):
        with self._lock:
            self._samples.append(sample)

    def samples(self) -> List[MetricSample]:
        with self._lock:
            return list(self._samples)

    def latest(self) -> Optional[MetricSample]:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def moving_average(self, name: str) -> Optional[float]:
        """Mean of the known values of one field, or None when all are unknown."""
        with self._lock:
            values = [getattr(s, name) for s in self._samples if getattr(s, name) is not None]
        if not values:
            return None
        return statistics.mean(values)

    def latest_known(self, name: str):
        with self._lock:
            for sample in reversed(self._samples):
                value = getattr(sample, name)
                if value is not None:
                    return value
        return None


def p95(values: List[float]) -> Optional[float]:
    if not values:
        return None
    if len(values) >= 2:
        return statistics.quantiles(values, n=20)[18]
    return max(values)


class HttpStatsSource:
    """Reads cpu/memory utilisation from a JSON stats endpoint on each backend.

    The endpoint is expected to return ``{"cpu_pct": float, "mem_pct": float}``.
    """

    def __init__(self, path: str = "/stats", timeout: float = 2.0):
        self.path = path
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def fetch(self, endpoint: BackendEndpoint) -> Dict[str, Optional[float]]:
        if self.session is None:
            self.session = aiohttp.ClientSession()
        url = f"{endpoint.url}{self.path}"
        async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
            response.raise_for_status()
            payload = await response.json(content_type=None)
        return {
            "cpu_pct": _optional_float(payload.get("cpu_pct")),
            "mem_pct": _optional_float(payload.get("mem_pct")),
        }

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None


def _optional_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class MetricsCollector:
    def __init__(self, registry: BackendRegistry, router=None, stats_source=None,
                 window_size: int = 30, interval: float = 10.0, concurrency: int = 16,
                 clock=None, exporter=None):
        self.registry = registry
        self.router = router
        self.stats_source = stats_source
        self.window_size = window_size
        self.interval = interval
        self.clock = clock or SystemClock()
        self.exporter = exporter
        self._windows: Dict[Tuple[str, str], RollingWindow] = {}
        self._pool_windows: Dict[str, RollingWindow] = {}
        self._windows_lock = threading.Lock()
        self._semaphore = asyncio.Semaphore(concurrency)
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def configure(self, window_size: int, interval: float):
        self.window_size = window_size
        self.interval = interval

    def window(self, pool_id: str, backend_id: str) -> RollingWindow:
        key = (pool_id, backend_id)
        with self._windows_lock:
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = RollingWindow(self.window_size)
            return window

    def pool_window(self, pool_id: str) -> RollingWindow:
        with self._windows_lock:
            window = self._pool_windows.get(pool_id)
            if window is None:
                window = self._pool_windows[pool_id] = RollingWindow(self.window_size)
            return window

    async def sample_endpoint(self, pool_id: str, endpoint: BackendEndpoint,
                              connections: Dict[str, int]) -> MetricSample:
        cpu = mem = None
        if self.stats_source is not None:
            try:
                async with self._semaphore:
                    stats = await self.stats_source.fetch(endpoint)
                cpu, mem = stats.get("cpu_pct"), stats.get("mem_pct")
            except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
                logger.debug(f"Stats unavailable for {pool_id}/{endpoint.id}: {e}")

        latency = None
        if self.router is not None:
            latency = p95(self.router.drain_latencies(pool_id, endpoint.id))

        sample = MetricSample(
            timestamp=self.clock.now(),
            backend_id=endpoint.id,
            cpu_pct=cpu,
            mem_pct=mem,
            active_connections=connections.get(endpoint.id, 0) if self.router is not None else None,
            latency_p95=latency,
        )
        self.window(pool_id, endpoint.id).add(sample)
        return sample

    async def collect(self, pool_id: str) -> List[MetricSample]:
        """Sample every member of a pool in parallel, then record the pool aggregate."""
        members = [ep for ep in self.registry.endpoints(pool_id) if ep.health != HealthState.DRAINING]
        connections: Dict[str, int] = {}
        if self.router is not None:
            # the router has seen every request, so an endpoint it has no entry for is idle
            tracked = self.router.active_connections(pool_id)
            connections = {ep.id: tracked.get(ep.id, 0) for ep in members}
        samples = await asyncio.gather(*(self.sample_endpoint(pool_id, ep, connections) for ep in members))

        self._drop_stale_windows(pool_id, {ep.id for ep in members})
        if connections:
            self.registry.publish_load(pool_id, connections)

        aggregate = self.aggregate(pool_id)
        self.pool_window(pool_id).add(MetricSample(
            timestamp=aggregate.timestamp,
            backend_id=None,
            cpu_pct=aggregate.avg_cpu,
            mem_pct=aggregate.avg_mem,
            active_connections=aggregate.total_connections,
            latency_p95=aggregate.avg_latency,
        ))
        if self.exporter:
            self.exporter.record_collection(pool_id, aggregate)
        return list(samples)

    def aggregate(self, pool_id: str) -> PoolAggregate:
        """Smoothed pool load built from each backend's moving average."""
        members = [ep.id for ep in self.registry.endpoints(pool_id) if ep.health != HealthState.DRAINING]
        cpu, mem, latency, connections = [], [], [], []
        reporting = 0
        for backend_id in members:
            with self._windows_lock:
                window = self._windows.get((pool_id, backend_id))
            if window is None:
                continue
            values = {name: window.moving_average(name) for name in ("cpu_pct", "mem_pct", "latency_p95")}
            active = window.latest_known("active_connections")
            if all(v is None for v in values.values()) and active is None:
                continue
            reporting += 1
            if values["cpu_pct"] is not None:
                cpu.append(values["cpu_pct"])
            if values["mem_pct"] is not None:
                mem.append(values["mem_pct"])
            if values["latency_p95"] is not None:
                latency.append(values["latency_p95"])
            if active is not None:
                connections.append(active)

        return PoolAggregate(
            pool_id=pool_id,
            timestamp=self.clock.now(),
            avg_cpu=statistics.mean(cpu) if cpu else None,
            avg_mem=statistics.mean(mem) if mem else None,
            avg_latency=statistics.mean(latency) if latency else None,
            total_connections=sum(connections) if connections else None,
            reporting_backends=reporting,
        )

    def backend_summary(self, pool_id: str) -> Dict[str, Dict]:
        summary = {}
        with self._windows_lock:
            keys = [k for k in self._windows if k[0] == pool_id]
        for _, backend_id in keys:
            window = self.window(pool_id, backend_id)
            summary[backend_id] = {
                "cpu_pct": window.moving_average("cpu_pct"),
                "mem_pct": window.moving_average("mem_pct"),
                "latency_p95": window.moving_average("latency_p95"),
                "active_connections": window.latest_known("active_connections"),
                "samples": len(window),
            }
        return summary

    def _drop_stale_windows(self, pool_id: str, live: set):
        with self._windows_lock:
            for key in [k for k in self._windows if k[0] == pool_id and k[1] not in live]:
                del self._windows[key]

    async def start(self):
        if not self._running:
            self._running = True
            self._task = asyncio.create_task(self._collect_loop())
            logger.info(f"Metrics collector started with {self.interval}s interval")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.stats_source is not None and hasattr(self.stats_source, "close"):
            await self.stats_source.close()
        logger.info("Metrics collector stopped")

    async def _collect_loop(self):
        while self._running:
            try:
                for pool_id in self.registry.pool_ids():
                    await self.collect(pool_id)
                await self.clock.sleep(self.interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in metrics collection loop: {e}")
                await self.clock.sleep(5)
