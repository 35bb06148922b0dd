"""
Immutable records held by the backend registry.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DRAINING = "draining"


class RoutingAlgorithm(str, Enum):
    ROUND_ROBIN = "round_robin"
    WEIGHTED_ROUND_ROBIN = "weighted_round_robin"
    LEAST_CONNECTIONS = "least_connections"
    CLIENT_AFFINITY = "client_affinity"


@dataclass(frozen=True)
class BackendEndpoint:
    """One addressable backend instance. Never mutated in place."""
    id: str
    address: str
    port: int
    weight: int = 1
    health: HealthState = HealthState.UNKNOWN
    consecutive_success_count: int = 0
    consecutive_failure_count: int = 0
    active_connection_count: int = 0
    last_checked_at: Optional[float] = None
    generation: int = 0
    drain_started_at: Optional[float] = None

    def __post_init__(self):
        if self.weight < 0:
            raise ValueError(f"weight must be >= 0, got {self.weight} for {self.id}")

    @property
    def url(self) -> str:
        return f"http://{self.address}:{self.port}"


@dataclass(frozen=True)
class PoolSnapshot:
    """Point-in-time view of the endpoints eligible for routing."""
    pool_id: str
    version: int
    algorithm: RoutingAlgorithm
    endpoints: Tuple[BackendEndpoint, ...] = ()

    def __len__(self) -> int:
        return len(self.endpoints)

    def __iter__(self):
        return iter(self.endpoints)

    def __bool__(self) -> bool:
        return bool(self.endpoints)

    def ids(self) -> Tuple[str, ...]:
        return tuple(ep.id for ep in self.endpoints)

    def membership(self) -> Tuple[tuple, ...]:
        return tuple((ep.id, ep.address, ep.port, ep.weight, ep.generation) for ep in self.endpoints)


@dataclass(frozen=True)
class BackendPool:
    id: str
    algorithm: RoutingAlgorithm = RoutingAlgorithm.ROUND_ROBIN
    min_replicas: int = 1
    max_replicas: int = 5
    endpoints: Tuple[BackendEndpoint, ...] = field(default_factory=tuple)
    version: int = 0

    def get(self, endpoint_id: str) -> Optional[BackendEndpoint]:
        for ep in self.endpoints:
            if ep.id == endpoint_id:
                return ep
        return None
