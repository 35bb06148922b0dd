"""
Pool state for Poolkeeper.
"""

from .models import BackendEndpoint, BackendPool, HealthState, PoolSnapshot, RoutingAlgorithm
from .registry import BackendRegistry, UnknownPoolError

__all__ = [
    'BackendEndpoint', 'BackendPool', 'HealthState', 'PoolSnapshot', 'RoutingAlgorithm',
    'BackendRegistry', 'UnknownPoolError',
]
