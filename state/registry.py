"""
Backend registry: the single source of truth for pool membership and health.

Writers (provisioner events, the health prober) are serialized on one lock.
Each write builds a new BackendPool and a new PoolSnapshot and publishes them
by reference assignment, so readers never take the lock and a snapshot that
was handed out never changes.
"""

import logging
import threading
import itertools
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from .models import BackendEndpoint, BackendPool, HealthState, PoolSnapshot, RoutingAlgorithm

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[PoolSnapshot], None]


class UnknownPoolError(KeyError):
    pass


def _membership_key(endpoint: BackendEndpoint):
    return endpoint.id, endpoint.address, endpoint.port, endpoint.weight, endpoint.generation


class BackendRegistry:
    def __init__(self):
        self._write_lock = threading.RLock()
        self._pools: Dict[str, BackendPool] = {}
        self._snapshots: Dict[str, PoolSnapshot] = {}
        self._generations = itertools.count(1)
        self._listeners: List[SnapshotListener] = []

    # ------------------------- Pools -------------------------

    def ensure_pool(self, pool_id: str, algorithm: RoutingAlgorithm = RoutingAlgorithm.ROUND_ROBIN,
                    min_replicas: int = 1, max_replicas: int = 5) -> BackendPool:
        """Create a pool or update its routing settings, keeping its endpoints."""
        with self._write_lock:
            pool = self._pools.get(pool_id)
            if pool is None:
                pool = BackendPool(id=pool_id, algorithm=RoutingAlgorithm(algorithm),
                                   min_replicas=min_replicas, max_replicas=max_replicas)
                logger.info(f"Registered pool {pool_id} (algorithm={pool.algorithm.value})")
            else:
                pool = replace(pool, algorithm=RoutingAlgorithm(algorithm), min_replicas=min_replicas,
                               max_replicas=max_replicas, version=pool.version + 1)
            self._publish(pool)
            return pool

    def remove_pool(self, pool_id: str):
        with self._write_lock:
            self._pools.pop(pool_id, None)
            self._snapshots.pop(pool_id, None)
            logger.info(f"Removed pool {pool_id}")

    def pool_ids(self) -> List[str]:
        return sorted(self._pools)

    def get_pool(self, pool_id: str) -> BackendPool:
        pool = self._pools.get(pool_id)
        if pool is None:
            raise UnknownPoolError(pool_id)
        return pool

    # ------------------------- Membership (provisioner events) -------------------------

    def add_endpoint(self, pool_id: str, endpoint_id: str, address: str, port: int, weight: int = 1) -> int:
        """Add an endpoint in the unknown state. Returns its generation tag.

        Re-adding an id that is already present replaces it with a fresh
        generation, which invalidates probes still in flight for the old one.
        """
        with self._write_lock:
            pool = self.get_pool(pool_id)
            generation = next(self._generations)
            endpoint = BackendEndpoint(id=endpoint_id, address=address, port=int(port),
                                       weight=weight, generation=generation)
            others = tuple(ep for ep in pool.endpoints if ep.id != endpoint_id)
            self._publish(replace(pool, endpoints=others + (endpoint,), version=pool.version + 1))
            logger.info(f"Added endpoint {endpoint_id} ({address}:{port}) to pool {pool_id}, generation {generation}")
            return generation

    def update_weight(self, pool_id: str, endpoint_id: str, weight: int) -> bool:
        """Change an endpoint's weight in place, keeping health, counters and generation.

        Returns False when the endpoint is absent or draining.
        """
        with self._write_lock:
            pool = self.get_pool(pool_id)
            endpoint = pool.get(endpoint_id)
            if endpoint is None or endpoint.health == HealthState.DRAINING:
                return False
            if endpoint.weight != weight:
                self._replace_endpoint(pool, replace(endpoint, weight=weight))
                logger.info(f"Endpoint {endpoint_id} in pool {pool_id} now has weight {weight}")
            return True

    def mark_draining(self, pool_id: str, endpoint_id: str, now: float) -> bool:
        """Stop routing to an endpoint. Draining is terminal until removal."""
        with self._write_lock:
            pool = self.get_pool(pool_id)
            endpoint = pool.get(endpoint_id)
            if endpoint is None:
                logger.debug(f"mark_draining: {endpoint_id} not in pool {pool_id}")
                return False
            if endpoint.health == HealthState.DRAINING:
                return True
            drained = replace(endpoint, health=HealthState.DRAINING, drain_started_at=now)
            self._replace_endpoint(pool, drained)
            logger.info(f"Endpoint {endpoint_id} in pool {pool_id} is draining")
            return True

    def remove_endpoint(self, pool_id: str, endpoint_id: str) -> bool:
        with self._write_lock:
            pool = self._pools.get(pool_id)
            if pool is None or pool.get(endpoint_id) is None:
                return False
            remaining = tuple(ep for ep in pool.endpoints if ep.id != endpoint_id)
            self._publish(replace(pool, endpoints=remaining, version=pool.version + 1))
            logger.info(f"Removed endpoint {endpoint_id} from pool {pool_id}")
            return True

    def purge_drained(self, now: float, grace_seconds: float) -> List[Tuple[str, str]]:
        """Remove endpoints that have been draining for longer than the grace period."""
        removed = []
        with self._write_lock:
            for pool_id in list(self._pools):
                for ep in self._pools[pool_id].endpoints:
                    if ep.health == HealthState.DRAINING and ep.drain_started_at is not None \
                            and now - ep.drain_started_at >= grace_seconds:
                        removed.append((pool_id, ep.id))
            for pool_id, endpoint_id in removed:
                self.remove_endpoint(pool_id, endpoint_id)
        return removed

    # ------------------------- Health (prober only) -------------------------

    def apply_probe_result(self, pool_id: str, endpoint_id: str, generation: int,
                           transition: Callable[[BackendEndpoint], BackendEndpoint]) -> Optional[BackendEndpoint]:
        """Atomically apply a probe outcome computed by ``transition``.

        Returns the updated endpoint, or None when the result was discarded
        because the endpoint is gone, was re-added under a new generation, or
        is draining.
        """
        with self._write_lock:
            pool = self._pools.get(pool_id)
            endpoint = pool.get(endpoint_id) if pool else None
            if endpoint is None or endpoint.generation != generation:
                logger.debug(f"Discarding probe result for stale endpoint {pool_id}/{endpoint_id}@{generation}")
                return None
            if endpoint.health == HealthState.DRAINING:
                return None
            updated = transition(endpoint)
            if updated.health == HealthState.DRAINING:
                raise ValueError("health prober may not set the draining state")
            self._replace_endpoint(pool, updated)
            return updated

    def publish_load(self, pool_id: str, active_connections: Dict[str, int]):
        """Record the latest sampled connection counts on the endpoint records."""
        with self._write_lock:
            pool = self._pools.get(pool_id)
            if pool is None:
                return
            changed = False
            endpoints = []
            for ep in pool.endpoints:
                count = active_connections.get(ep.id, ep.active_connection_count)
                if count != ep.active_connection_count:
                    ep = replace(ep, active_connection_count=count)
                    changed = True
                endpoints.append(ep)
            if changed:
                self._publish(replace(pool, endpoints=tuple(endpoints), version=pool.version + 1))

    # ------------------------- Reads (lock-free) -------------------------

    def snapshot(self, pool_id: str) -> PoolSnapshot:
        """Return the current immutable view of healthy endpoints."""
        snap = self._snapshots.get(pool_id)
        if snap is None:
            raise UnknownPoolError(pool_id)
        return snap

    def endpoints(self, pool_id: str) -> Tuple[BackendEndpoint, ...]:
        return self.get_pool(pool_id).endpoints

    def get_endpoint(self, pool_id: str, endpoint_id: str) -> Optional[BackendEndpoint]:
        pool = self._pools.get(pool_id)
        return pool.get(endpoint_id) if pool else None

    def member_count(self, pool_id: str) -> int:
        """Pool size as seen by the autoscaler: every endpoint that is not draining."""
        return sum(1 for ep in self.get_pool(pool_id).endpoints if ep.health != HealthState.DRAINING)

    def is_current(self, pool_id: str, endpoint_id: str, generation: int) -> bool:
        endpoint = self.get_endpoint(pool_id, endpoint_id)
        return endpoint is not None and endpoint.generation == generation

    def add_listener(self, listener: SnapshotListener):
        """Call ``listener`` with each new snapshot. It runs under the write lock and must not block."""
        self._listeners.append(listener)

    def summary(self) -> Dict[str, Dict]:
        summary = {}
        for pool_id in self.pool_ids():
            pool = self._pools[pool_id]
            summary[pool_id] = {
                "algorithm": pool.algorithm.value,
                "version": pool.version,
                "min_replicas": pool.min_replicas,
                "max_replicas": pool.max_replicas,
                "eligible": len(self._snapshots[pool_id]),
                "endpoints": [
                    {
                        "id": ep.id,
                        "address": ep.address,
                        "port": ep.port,
                        "weight": ep.weight,
                        "health": ep.health.value,
                        "consecutive_successes": ep.consecutive_success_count,
                        "consecutive_failures": ep.consecutive_failure_count,
                        "active_connections": ep.active_connection_count,
                        "last_checked_at": ep.last_checked_at,
                    }
                    for ep in pool.endpoints
                ],
            }
        return summary

    # ------------------------- Internals -------------------------

    def _replace_endpoint(self, pool: BackendPool, endpoint: BackendEndpoint):
        endpoints = tuple(endpoint if ep.id == endpoint.id else ep for ep in pool.endpoints)
        self._publish(replace(pool, endpoints=endpoints, version=pool.version + 1))

    def _publish(self, pool: BackendPool):
        """Swap in the new pool and its snapshot (must be called with lock held)."""
        healthy = tuple(ep for ep in pool.endpoints if ep.health == HealthState.HEALTHY)
        previous = self._snapshots.get(pool.id)
        # snapshot version only moves when the eligible membership changes
        unchanged = (previous is not None and previous.algorithm == pool.algorithm
                     and previous.membership() == tuple(_membership_key(ep) for ep in healthy))
        version = previous.version if unchanged else (previous.version + 1 if previous else 1)
        snapshot = PoolSnapshot(pool_id=pool.id, version=version, algorithm=pool.algorithm, endpoints=healthy)
        self._pools[pool.id] = pool
        self._snapshots[pool.id] = snapshot
        if unchanged:
            return
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener failed for pool {pool.id}: {e}")
