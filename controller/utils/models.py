from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Any

class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0, le=100)

class ReloadRequest(BaseModel):
    env: Optional[Dict[str, str]] = None  # Overrides merged over the process environment

class ReloadResponse(BaseModel):
    status: str
    pools: List[str] = []
    missing: List[str] = []
    errors: List[str] = []

class EndpointStatus(BaseModel):
    id: str
    address: str
    port: int
    weight: int
    health: str
    consecutive_successes: int
    consecutive_failures: int
    active_connections: int
    last_checked_at: Optional[float] = None

class PoolStatusResponse(BaseModel):
    pool: str
    algorithm: str
    version: int
    min_replicas: int
    max_replicas: int
    eligible: int
    endpoints: List[EndpointStatus]
    load: Dict[str, Any] = {}
    autoscaler: Optional[Dict[str, Any]] = None

class ScalingDecisionResponse(BaseModel):
    timestamp: float
    action: str
    target_size: int
    current_size: int
    reason: str
    metric_value: Optional[float] = None
