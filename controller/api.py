import asyncio
import logging
import os
import time
from typing import Optional
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from functools import wraps

from metrics import CONTENT_TYPE
from state import UnknownPoolError
from .errors import (
    ConfigurationError, NoHealthyBackendError, ProvisionerError, ScalingConflictError, UpstreamUnavailableError
)
from .router import ProxyRequest
from controller.utils.models import (
    ScaleRequest,
    ReloadRequest,
    ReloadResponse,
    EndpointStatus,
    PoolStatusResponse,
    ScalingDecisionResponse
)
from controller.utils import lifecycle

logger = logging.getLogger(__name__)

ADMIN_PREFIX = "/_poolkeeper"
CLIENT_KEY_HEADER = "x-client-key"
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

def leader_required(f):
    """Decorator to ensure only the leader can execute certain operations"""
    @wraps(f)
    async def decorated_function(*args, **kwargs):
        leader = lifecycle.get_leader()
        if leader is not None and not leader.is_leader():
            # 503 lets a load balancer in front of the controllers try the next one
            raise HTTPException(status_code=503, detail="Not the leader")
        return await f(*args, **kwargs)
    return decorated_function

# FastAPI app
app = FastAPI(
    title="Poolkeeper",
    description="Health-aware load balancer and autoscaling controller",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_event():
    """Initialize all components when the API starts."""
    await lifecycle.startup_event()

@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources when shutting down."""
    await lifecycle.shutdown_event()

def get_registry():
    registry = lifecycle.get_registry()
    if registry is None:
        raise HTTPException(status_code=503, detail="Controller not initialized")
    return registry

def get_auto_scaler():
    return lifecycle.get_auto_scaler()

def get_router():
    return lifecycle.get_router()

def get_exporter():
    return lifecycle.get_exporter()

def health_payload():
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0"
    }

# Local endpoints

@app.get("/health")
async def health_check():
    """Health check endpoint. Never proxied."""
    return health_payload()

@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus exposition of pool and controller metrics."""
    exporter = get_exporter()
    body = exporter.get_prometheus_metrics() if exporter else ""
    return Response(content=body, media_type=CONTENT_TYPE)

# Admin endpoints

@app.get(f"{ADMIN_PREFIX}/pools")
async def list_pools():
    """List every pool with its endpoints."""
    return {"pools": get_registry().summary()}

@app.get(f"{ADMIN_PREFIX}/pools/{{name}}", response_model=PoolStatusResponse)
async def pool_status(name: str):
    """Get the status of a pool."""
    summary = get_registry().summary().get(name)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"Pool {name} not found")

    collector = lifecycle.get_metrics_collector()
    scaler = get_auto_scaler()
    return PoolStatusResponse(
        pool=name,
        algorithm=summary["algorithm"],
        version=summary["version"],
        min_replicas=summary["min_replicas"],
        max_replicas=summary["max_replicas"],
        eligible=summary["eligible"],
        endpoints=[EndpointStatus(**ep) for ep in summary["endpoints"]],
        load=collector.aggregate(name).to_dict() if collector else {},
        autoscaler=scaler.get_state(name) if scaler and scaler.get_policy(name) else None
    )

@app.get(f"{ADMIN_PREFIX}/pools/{{name}}/history")
async def scaling_history(name: str, limit: int = 20):
    """Get the scaling audit log of a pool, oldest first."""
    get_registry()
    decisions = get_auto_scaler().get_scaling_history(name, limit)
    return {
        "pool": name,
        "decisions": [
            ScalingDecisionResponse(
                timestamp=d.timestamp,
                action=d.action.value,
                target_size=d.target_size,
                current_size=d.current_size,
                reason=d.reason,
                metric_value=d.metric_value
            )
            for d in decisions
        ]
    }

@app.post(f"{ADMIN_PREFIX}/pools/{{name}}/scale", response_model=ScalingDecisionResponse)
@leader_required
async def scale_pool(name: str, scale_request: ScaleRequest):
    """Manually scale a pool. Sizes outside the policy bounds are clamped."""
    try:
        decision = await get_auto_scaler().request_scale(name, scale_request.replicas)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Pool {name} has no scaling policy")
    except ScalingConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="Provisioner did not answer in time")
    except ProvisionerError as e:
        logger.error(f"Manual scale of {name} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return ScalingDecisionResponse(
        timestamp=decision.timestamp,
        action=decision.action.value,
        target_size=decision.target_size,
        current_size=decision.current_size,
        reason=decision.reason,
        metric_value=decision.metric_value
    )

@app.post(f"{ADMIN_PREFIX}/reload", response_model=ReloadResponse)
async def reload_config(reload_request: Optional[ReloadRequest] = None):
    """Re-render the configuration template. On failure the current settings stay in effect."""
    env = dict(os.environ)
    if reload_request and reload_request.env:
        env.update(reload_request.env)
    try:
        new_settings = await lifecycle.reload(env)
    except ConfigurationError as e:
        rejected = ReloadResponse(status="rejected", missing=e.missing, errors=e.errors or [str(e)])
        return JSONResponse(status_code=422, content=rejected.model_dump())
    return ReloadResponse(status="reloaded", pools=sorted(new_settings.pools))

@app.get(f"{ADMIN_PREFIX}/health-checks")
async def health_checks():
    """Get the prober's view of every endpoint."""
    checker = lifecycle.get_health_checker()
    if checker is None:
        raise HTTPException(status_code=503, detail="Controller not initialized")
    return checker.get_health_summary()

# Proxy: registered last so the routes above take precedence

@app.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy(request: Request, path: str):
    """Forward a request to a backend of the pool serving its path."""
    router = get_router()
    if router is None:
        raise HTTPException(status_code=503, detail="Controller not initialized")

    request_path = request.url.path
    if router.is_reserved_path(request_path):
        return health_payload()
    if request_path.startswith(ADMIN_PREFIX):
        raise HTTPException(status_code=404, detail="Not found")

    pool_id = lifecycle.resolve_pool(request_path)
    if pool_id is None:
        raise HTTPException(status_code=404, detail="No pool serves this path")

    client_key = request.headers.get(CLIENT_KEY_HEADER)
    if not client_key and request.client:
        client_key = request.client.host

    proxy_request = ProxyRequest(
        method=request.method,
        path=request_path,
        query=request.url.query,
        headers=dict(request.headers),
        body=await request.body(),
        client_key=client_key
    )
    try:
        upstream = await router.forward(pool_id, proxy_request)
    except (NoHealthyBackendError, UpstreamUnavailableError, UnknownPoolError) as e:
        logger.warning(f"[{pool_id}] {request.method} {request_path}: {e}")
        exporter = get_exporter()
        if exporter:
            exporter.record_unavailable(pool_id)
        return JSONResponse(status_code=503, content={"detail": "upstream unavailable"})

    return Response(content=upstream.body, status_code=upstream.status, headers=upstream.headers)
