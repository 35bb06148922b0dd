"""
Request routing for backend pools.
Selects an eligible backend per request and retries on other backends when
a connection fails or times out.
"""

import aiohttp
import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from state.models import BackendEndpoint, PoolSnapshot
from state.registry import BackendRegistry
from .balancers import Balancer, ConnectionTable, build_balancers
from .errors import (
    NoHealthyBackendError,
    TransientNetworkError,
    UpstreamConnectError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)

LATENCY_BUFFER_SIZE = 1000

HOP_BY_HOP_HEADERS = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade", "host", "content-length",
}


@dataclass
class ProxyRequest:
    method: str
    path: str
    query: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    client_key: Optional[str] = None


@dataclass
class ProxyResponse:
    status: int
    headers: Dict[str, str]
    body: bytes
    endpoint_id: str


def strip_hop_by_hop(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


class Router:
    def __init__(self, registry: BackendRegistry, max_retries: int = 2, request_timeout: float = 10.0,
                 health_path: str = "/health", exporter=None):
        self.registry = registry
        self.max_retries = max_retries
        self.request_timeout = request_timeout
        self.health_path = health_path
        self.exporter = exporter
        self.session: Optional[aiohttp.ClientSession] = None
        self.connection_tables: Dict[str, ConnectionTable] = {}
        self.balancers: Dict[Any, Balancer] = build_balancers(self.connection_tables)
        # soft counters: per-request failures never change registry health
        self.soft_failures: Dict[Tuple[str, str], int] = defaultdict(int)
        self._latencies: Dict[Tuple[str, str], Deque[float]] = defaultdict(
            lambda: deque(maxlen=LATENCY_BUFFER_SIZE)
        )

    def configure(self, max_retries: int, request_timeout: float, health_path: str):
        self.max_retries = max_retries
        self.request_timeout = request_timeout
        self.health_path = health_path
        logger.info(f"Router configured: max_retries={max_retries}, timeout={request_timeout}s")

    def is_reserved_path(self, path: str) -> bool:
        return path.rstrip("/") == self.health_path.rstrip("/")

    async def start(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(auto_decompress=False)

    async def stop(self):
        if self.session:
            await self.session.close()
            self.session = None

    def table(self, pool_id: str) -> ConnectionTable:
        return self.connection_tables.setdefault(pool_id, ConnectionTable())

    def forget_pool(self, pool_id: str):
        for balancer in self.balancers.values():
            balancer.forget(pool_id)
        self.connection_tables.pop(pool_id, None)

    # ------------------------- Selection -------------------------

    def select(self, snapshot: PoolSnapshot, client_key: Optional[str] = None,
               exclude: Iterable[str] = ()) -> BackendEndpoint:
        """Pick an endpoint from the snapshot using the pool's algorithm."""
        if not snapshot.endpoints:
            raise NoHealthyBackendError(snapshot.pool_id)
        endpoint = self.balancers[snapshot.algorithm].pick(snapshot, client_key, exclude)
        if endpoint is None:
            raise NoHealthyBackendError(snapshot.pool_id)
        return endpoint

    # ------------------------- Retry / failover -------------------------

    async def route(self, pool_id: str, client_key: Optional[str],
                    send: Callable[[BackendEndpoint], Awaitable[Any]]) -> Tuple[Any, BackendEndpoint]:
        """Run ``send`` against selected endpoints until one succeeds.

        A TransientNetworkError excludes that endpoint for this request only.
        Raises NoHealthyBackendError when the pool has nothing eligible and
        UpstreamUnavailableError once attempts or candidates run out.
        """
        snapshot = self.registry.snapshot(pool_id)
        if not snapshot.endpoints:
            raise NoHealthyBackendError(pool_id)

        table = self.table(pool_id)
        tried: List[str] = []
        attempts = 0
        while attempts < 1 + self.max_retries:
            try:
                endpoint = self.select(snapshot, client_key, exclude=tried)
            except NoHealthyBackendError:
                if not tried:
                    raise
                break
            attempts += 1

            table.acquire(endpoint.id)
            start = time.perf_counter()
            try:
                result = await send(endpoint)
            except TransientNetworkError as e:
                tried.append(endpoint.id)
                self._record_soft_failure(pool_id, endpoint)
                logger.warning(
                    f"[{pool_id}] Attempt {attempts} to {endpoint.id} failed: {e}; "
                    f"{'retrying' if attempts < 1 + self.max_retries else 'giving up'}"
                )
                if self.exporter:
                    self.exporter.record_request(pool_id, endpoint.id, "failure")
                continue
            finally:
                table.release(endpoint.id)

            elapsed_ms = (time.perf_counter() - start) * 1000
            if self.registry.is_current(pool_id, endpoint.id, endpoint.generation):
                self._latencies[(pool_id, endpoint.id)].append(elapsed_ms)
            if self.exporter:
                self.exporter.record_request(pool_id, endpoint.id, "success")
            return result, endpoint

        logger.error(f"[{pool_id}] Upstream unavailable after {attempts} attempt(s), tried={tried}")
        raise UpstreamUnavailableError(pool_id, attempts, tried)

    def _record_soft_failure(self, pool_id: str, endpoint: BackendEndpoint):
        # results for a removed or re-added endpoint are discarded
        if self.registry.is_current(pool_id, endpoint.id, endpoint.generation):
            self.soft_failures[(pool_id, endpoint.id)] += 1

    # ------------------------- Proxying -------------------------

    async def forward(self, pool_id: str, request: ProxyRequest) -> ProxyResponse:
        """Proxy an HTTP request to the pool, with failover."""

        async def send(endpoint: BackendEndpoint) -> ProxyResponse:
            return await self._send(endpoint, request)

        response, _ = await self.route(pool_id, request.client_key, send)
        return response

    async def _send(self, endpoint: BackendEndpoint, request: ProxyRequest) -> ProxyResponse:
        await self.start()
        url = f"{endpoint.url}{request.path}"
        if request.query:
            url = f"{url}?{request.query}"
        try:
            async with self.session.request(
                request.method,
                url,
                headers=strip_hop_by_hop(request.headers),
                data=request.body or None,
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as response:
                body = await response.read()
                return ProxyResponse(
                    status=response.status,
                    headers=strip_hop_by_hop(response.headers),
                    body=body,
                    endpoint_id=endpoint.id,
                )
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(f"Timeout after {self.request_timeout}s calling {url}") from e
        except aiohttp.ClientError as e:
            raise UpstreamConnectError(f"Connection error calling {url}: {e}") from e

    # ------------------------- Load readings -------------------------

    def active_connections(self, pool_id: str) -> Dict[str, int]:
        table = self.connection_tables.get(pool_id)
        return table.counts() if table else {}

    def drain_latencies(self, pool_id: str, endpoint_id: str) -> List[float]:
        """Return and clear the latencies observed for one endpoint since the last call."""
        buffer = self._latencies.get((pool_id, endpoint_id))
        if not buffer:
            return []
        values = list(buffer)
        buffer.clear()
        return values
