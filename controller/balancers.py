"""
Backend selection algorithms.

Every balancer picks from an immutable PoolSnapshot and keeps its own
per-pool state. An endpoint with weight 0 is never picked by any algorithm.
``pick`` returns None when no endpoint is left once zero-weight and the
request's excluded endpoints are skipped.
"""

import bisect
import hashlib
import heapq
import logging
import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

from state.models import BackendEndpoint, PoolSnapshot, RoutingAlgorithm

logger = logging.getLogger(__name__)

AFFINITY_VIRTUAL_NODES = 64


class Balancer:
    algorithm: RoutingAlgorithm

    def pick(self, snapshot: PoolSnapshot, client_key: Optional[str] = None,
             exclude: Iterable[str] = ()) -> Optional[BackendEndpoint]:
        raise NotImplementedError

    def forget(self, pool_id: str):
        pass


class RoundRobinBalancer(Balancer):
    """Cyclic counter over the snapshot order."""
    algorithm = RoutingAlgorithm.ROUND_ROBIN

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)

    def pick(self, snapshot, client_key=None, exclude=()):
        endpoints = [ep for ep in snapshot.endpoints if ep.weight > 0]
        if not endpoints:
            return None
        excluded = set(exclude)
        with self._lock:
            start = self._counters[snapshot.pool_id]
            self._counters[snapshot.pool_id] = start + 1
        n = len(endpoints)
        for offset in range(n):
            endpoint = endpoints[(start + offset) % n]
            if endpoint.id not in excluded:
                return endpoint
        return None

    def forget(self, pool_id):
        with self._lock:
            self._counters.pop(pool_id, None)


class WeightedRoundRobinBalancer(Balancer):
    """Smooth weighted round robin, the scheme nginx upstreams use.

    Over a cycle of sum(weights) picks each endpoint is chosen exactly
    ``weight`` times, interleaved rather than in bursts. Weight 0 is never picked.
    """
    algorithm = RoutingAlgorithm.WEIGHTED_ROUND_ROBIN

    def __init__(self):
        self._lock = threading.Lock()
        # pool_id -> (snapshot version, endpoint_id -> current weight)
        self._state: Dict[str, Tuple[int, Dict[str, int]]] = {}

    def pick(self, snapshot, client_key=None, exclude=()):
        excluded = set(exclude)
        candidates = [ep for ep in snapshot.endpoints if ep.weight > 0 and ep.id not in excluded]
        if not candidates:
            return None
        with self._lock:
            version, current = self._state.get(snapshot.pool_id, (None, None))
            if version != snapshot.version:
                current = {ep.id: 0 for ep in snapshot.endpoints}
                self._state[snapshot.pool_id] = (snapshot.version, current)

            total = 0
            best = None
            for ep in candidates:
                current[ep.id] += ep.weight
                total += ep.weight
                if best is None or current[ep.id] > current[best.id]:
                    best = ep
            current[best.id] -= total
            return best

    def forget(self, pool_id):
        with self._lock:
            self._state.pop(pool_id, None)


class ConnectionTable:
    """Indexed binary min-heap of active connection counts for one pool.

    Heap entries are ordered by (count, endpoint_id) so ties go to the lowest
    id. ``acquire``/``release`` are O(log n); ``lowest`` is O(k log k) where
    k is the number of entries skipped because they are ineligible.
    """

    def __init__(self):
        self._heap: List[List] = []  # [count, endpoint_id]
        self._index: Dict[str, int] = {}
        self._lock = threading.RLock()

    def __len__(self):
        return len(self._heap)

    def count(self, endpoint_id: str) -> int:
        with self._lock:
            pos = self._index.get(endpoint_id)
            return self._heap[pos][0] if pos is not None else 0

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {endpoint_id: count for count, endpoint_id in self._heap}

    def track(self, endpoint_ids: Iterable[str]):
        """Make sure every given endpoint has an entry; drop idle entries for others."""
        wanted = set(endpoint_ids)
        with self._lock:
            for endpoint_id in wanted:
                if endpoint_id not in self._index:
                    self._push(endpoint_id, 0)
            for count, endpoint_id in list(self._heap):
                if endpoint_id not in wanted and count == 0:
                    self._remove(endpoint_id)

    def acquire(self, endpoint_id: str) -> int:
        with self._lock:
            if endpoint_id not in self._index:
                self._push(endpoint_id, 0)
            pos = self._index[endpoint_id]
            self._heap[pos][0] += 1
            self._sift_down(pos)
            return self._heap[self._index[endpoint_id]][0]

    def release(self, endpoint_id: str) -> int:
        with self._lock:
            pos = self._index.get(endpoint_id)
            if pos is None:
                return 0
            if self._heap[pos][0] > 0:
                self._heap[pos][0] -= 1
                self._sift_up(pos)
            return self._heap[self._index[endpoint_id]][0]

    def lowest(self, eligible: Set[str]) -> Optional[str]:
        """Return the eligible endpoint id with the fewest connections."""
        with self._lock:
            if not self._heap:
                return None
            frontier = [(self._key(0), 0)]
            while frontier:
                key, pos = heapq.heappop(frontier)
                if key[1] in eligible:
                    return key[1]
                for child in (2 * pos + 1, 2 * pos + 2):
                    if child < len(self._heap):
                        heapq.heappush(frontier, (self._key(child), child))
            return None

    def _key(self, pos: int) -> Tuple[int, str]:
        count, endpoint_id = self._heap[pos]
        return count, endpoint_id

    def _push(self, endpoint_id: str, count: int):
        self._heap.append([count, endpoint_id])
        self._index[endpoint_id] = len(self._heap) - 1
        self._sift_up(len(self._heap) - 1)

    def _remove(self, endpoint_id: str):
        pos = self._index.pop(endpoint_id)
        last = self._heap.pop()
        if pos < len(self._heap):
            self._heap[pos] = last
            self._index[last[1]] = pos
            self._sift_up(pos)
            self._sift_down(self._index[last[1]])

    def _swap(self, a: int, b: int):
        self._heap[a], self._heap[b] = self._heap[b], self._heap[a]
        self._index[self._heap[a][1]] = a
        self._index[self._heap[b][1]] = b

    def _sift_up(self, pos: int):
        while pos > 0:
            parent = (pos - 1) // 2
            if self._key(pos) < self._key(parent):
                self._swap(pos, parent)
                pos = parent
            else:
                break

    def _sift_down(self, pos: int):
        size = len(self._heap)
        while True:
            smallest = pos
            for child in (2 * pos + 1, 2 * pos + 2):
                if child < size and self._key(child) < self._key(smallest):
                    smallest = child
            if smallest == pos:
                break
            self._swap(pos, smallest)
            pos = smallest


class LeastConnectionsBalancer(Balancer):
    """Endpoint with the fewest active connections; ties go to the lowest id."""
    algorithm = RoutingAlgorithm.LEAST_CONNECTIONS

    def __init__(self, tables: Dict[str, ConnectionTable]):
        self._tables = tables
        self._versions: Dict[str, int] = {}

    def pick(self, snapshot, client_key=None, exclude=()):
        if not snapshot.endpoints:
            return None
        table = self._tables.setdefault(snapshot.pool_id, ConnectionTable())
        if self._versions.get(snapshot.pool_id) != snapshot.version:
            table.track(snapshot.ids())
            self._versions[snapshot.pool_id] = snapshot.version
        excluded = set(exclude)
        eligible = {ep.id for ep in snapshot.endpoints if ep.weight > 0 and ep.id not in excluded}
        chosen = table.lowest(eligible)
        if chosen is None:
            return None
        return next(ep for ep in snapshot.endpoints if ep.id == chosen)

    def forget(self, pool_id):
        self._versions.pop(pool_id, None)


def _ring_hash(key: str) -> int:
    return int.from_bytes(hashlib.sha256(key.encode("utf-8")).digest()[:8], "big")


class ClientAffinityBalancer(Balancer):
    """Consistent-hash ring over the snapshot.

    The same client key lands on the same endpoint while it stays eligible;
    adding or removing one endpoint only remaps the keys that hashed to it.
    Requests without a client key fall back to round robin over the
    endpoints with a non-zero weight.
    """
    algorithm = RoutingAlgorithm.CLIENT_AFFINITY

    def __init__(self, virtual_nodes: int = AFFINITY_VIRTUAL_NODES):
        self.virtual_nodes = virtual_nodes
        self._lock = threading.Lock()
        # pool_id -> (snapshot version, sorted hashes, endpoint per hash)
        self._rings: Dict[str, Tuple[int, List[int], List[BackendEndpoint]]] = {}
        self._fallback = RoundRobinBalancer()

    def _ring(self, snapshot: PoolSnapshot):
        with self._lock:
            cached = self._rings.get(snapshot.pool_id)
            if cached and cached[0] == snapshot.version:
                return cached
            points = []
            for ep in snapshot.endpoints:
                if ep.weight == 0:
                    continue
                for replica in range(self.virtual_nodes):
                    points.append((_ring_hash(f"{ep.id}#{replica}"), ep.id))
            points.sort()
            by_id = {ep.id: ep for ep in snapshot.endpoints}
            ring = (snapshot.version, [h for h, _ in points], [by_id[i] for _, i in points])
            self._rings[snapshot.pool_id] = ring
            logger.debug(f"Rebuilt affinity ring for pool {snapshot.pool_id} with {len(points)} points")
            return ring

    def pick(self, snapshot, client_key=None, exclude=()):
        if not snapshot.endpoints:
            return None
        if not client_key:
            return self._fallback.pick(snapshot, None, exclude)
        _, hashes, owners = self._ring(snapshot)
        if not hashes:
            return None
        excluded = set(exclude)
        members = sum(1 for ep in snapshot.endpoints if ep.weight > 0)
        start = bisect.bisect(hashes, _ring_hash(client_key)) % len(hashes)
        seen = set()
        for offset in range(len(hashes)):
            endpoint = owners[(start + offset) % len(hashes)]
            if endpoint.id in excluded:
                seen.add(endpoint.id)
                if len(seen) >= members:
                    break
                continue
            return endpoint
        return None

    def forget(self, pool_id):
        with self._lock:
            self._rings.pop(pool_id, None)
        self._fallback.forget(pool_id)


def build_balancers(tables: Dict[str, ConnectionTable]) -> Dict[RoutingAlgorithm, Balancer]:
    return {
        RoutingAlgorithm.ROUND_ROBIN: RoundRobinBalancer(),
        RoutingAlgorithm.WEIGHTED_ROUND_ROBIN: WeightedRoundRobinBalancer(),
        RoutingAlgorithm.LEAST_CONNECTIONS: LeastConnectionsBalancer(tables),
        RoutingAlgorithm.CLIENT_AFFINITY: ClientAffinityBalancer(),
    }
