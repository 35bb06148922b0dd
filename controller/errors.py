"""
Error taxonomy for Poolkeeper.
Single-endpoint failures are absorbed by the component that sees them;
only pool exhaustion and startup configuration errors reach callers.
"""

from typing import List, Optional


class PoolkeeperError(Exception):
    """Base class for all Poolkeeper errors."""


class TransientNetworkError(PoolkeeperError):
    """A probe or proxied request timed out or could not connect."""


class ProbeTimeoutError(TransientNetworkError):
    pass


class ProbeConnectError(TransientNetworkError):
    pass


class UpstreamTimeoutError(TransientNetworkError):
    pass


class UpstreamConnectError(TransientNetworkError):
    pass


class UnhealthyStatusError(PoolkeeperError):
    """Health endpoint answered with a status outside 200-399."""

    def __init__(self, status: int, url: str = ""):
        super().__init__(f"Unhealthy status {status} from {url}")
        self.status = status
        self.url = url


class ConfigurationError(PoolkeeperError):
    """Missing template variables or an invalid configuration document."""

    def __init__(self, message: str, missing: Optional[List[str]] = None, errors: Optional[List[str]] = None):
        self.missing = list(missing or [])
        self.errors = list(errors or [])
        details = []
        if self.missing:
            details.append(f"missing variables: {', '.join(self.missing)}")
        if self.errors:
            details.append("; ".join(self.errors))
        super().__init__(f"{message} ({' | '.join(details)})" if details else message)


class CapacityError(PoolkeeperError):
    """Requested pool size outside [min_replicas, max_replicas]."""

    def __init__(self, pool_id: str, requested: int, clamped: int):
        super().__init__(f"Requested size {requested} for pool {pool_id} is out of range, clamped to {clamped}")
        self.pool_id = pool_id
        self.requested = requested
        self.clamped = clamped


class NoHealthyBackendError(PoolkeeperError):
    """The pool snapshot has no eligible endpoint."""

    def __init__(self, pool_id: str = ""):
        super().__init__(f"No healthy backend in pool {pool_id}" if pool_id else "No healthy backend")
        self.pool_id = pool_id


class UpstreamUnavailableError(PoolkeeperError):
    """Every routing attempt for a request failed."""

    def __init__(self, pool_id: str, attempts: int, tried: Optional[List[str]] = None):
        super().__init__(f"Upstream unavailable for pool {pool_id} after {attempts} attempt(s)")
        self.pool_id = pool_id
        self.attempts = attempts
        self.tried = list(tried or [])


class ProvisionerError(PoolkeeperError):
    """The external provisioner rejected or failed a call."""


class ScalingConflictError(PoolkeeperError):
    """A scaling action for the pool is in flight or still inside its cooldown."""

    def __init__(self, pool_id: str, reason: str):
        super().__init__(f"Cannot scale pool {pool_id}: {reason}")
        self.pool_id = pool_id
        self.reason = reason
