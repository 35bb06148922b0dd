"""
Poolkeeper Controller Package

This package contains the core controller components of Poolkeeper, a
health-aware load balancer with an autoscaling control loop.

Components:
- Router: Per-request backend selection with retry and failover
- HealthChecker: Active endpoint probing with hysteresis
- AutoScaler: Threshold-based pool sizing with debounce and cooldown
- Provisioner: Collaborator that creates and removes backend instances
- UpstreamConfigWriter: Nginx upstream export of pool snapshots

The FastAPI app lives in ``controller.api`` and is not imported here.
"""

from .errors import (
    PoolkeeperError, TransientNetworkError, ConfigurationError, CapacityError,
    NoHealthyBackendError, UpstreamUnavailableError, ProvisionerError, ScalingConflictError
)
from .router import Router, ProxyRequest, ProxyResponse
from .balancers import ConnectionTable
from .health import HealthChecker, HealthCheckSpec
from .scaler import AutoScaler, ScalingPolicy, ScalingDecision, ScalingAction
from .provisioner import Provisioner, StaticProvisioner, CommandProvisioner, Instance
from .nginx import UpstreamConfigWriter

__version__ = "1.0.0"

__all__ = [
    "PoolkeeperError",
    "TransientNetworkError",
    "ConfigurationError",
    "CapacityError",
    "NoHealthyBackendError",
    "UpstreamUnavailableError",
    "ProvisionerError",
    "ScalingConflictError",
    "Router",
    "ProxyRequest",
    "ProxyResponse",
    "ConnectionTable",
    "HealthChecker",
    "HealthCheckSpec",
    "AutoScaler",
    "ScalingPolicy",
    "ScalingDecision",
    "ScalingAction",
    "Provisioner",
    "StaticProvisioner",
    "CommandProvisioner",
    "Instance",
    "UpstreamConfigWriter"
]
