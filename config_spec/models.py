"""
Pydantic models for the Poolkeeper configuration document.

A rendered template is a ``key=value`` document; dotted keys build nested
sections (``health.interval=5``, ``pool.web.min_replicas=2``).
"""

import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from controller.errors import ConfigurationError
from state.models import RoutingAlgorithm
from .renderer import RenderedConfig, coerce, render

KEY_PATTERN = r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+)*$"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ServerSettings(_Section):
    host: str = "0.0.0.0"
    port: int = Field(8080, ge=1, le=65535)
    health_path: str = "/health"
    default_pool: Optional[str] = None
    log_level: str = "INFO"


class RouterSettings(_Section):
    max_retries: int = Field(2, ge=0, le=10)
    request_timeout: float = Field(10.0, gt=0)


class HealthSettings(_Section):
    path: str = "/healthz"
    interval: float = Field(5.0, gt=0)
    timeout: float = Field(2.0, gt=0)
    healthy_threshold: int = Field(2, ge=1)
    unhealthy_threshold: int = Field(3, ge=1)
    concurrency: int = Field(16, ge=1)


class MetricsSettings(_Section):
    interval: float = Field(10.0, gt=0)
    window_size: int = Field(30, ge=1)
    stats_path: Optional[str] = "/stats"
    stats_timeout: float = Field(2.0, gt=0)
    concurrency: int = Field(16, ge=1)


class AutoscalerSettings(_Section):
    tick_interval: float = Field(10.0, gt=0)
    provisioner_timeout: float = Field(5.0, gt=0)
    max_backoff: float = Field(300.0, gt=0)
    history_size: int = Field(100, ge=1)
    leader_lease_file: Optional[str] = None


class ProvisionerSettings(_Section):
    kind: str = "static"
    scale_command: Optional[str] = None
    list_command: Optional[str] = None
    timeout: float = Field(30.0, gt=0)
    sync_interval: float = Field(15.0, gt=0)
    drain_grace: float = Field(30.0, ge=0)

    @model_validator(mode="after")
    def commands_for_command_kind(self):
        if self.kind not in ("static", "command"):
            raise ValueError("kind must be 'static' or 'command'")
        if self.kind == "command" and not (self.scale_command and self.list_command):
            raise ValueError("command provisioner needs scale_command and list_command")
        return self


class UpstreamSettings(_Section):
    conf_dir: Optional[str] = None
    template_path: Optional[str] = None
    reload_command: Optional[str] = None


class BackendSpec(BaseModel):
    id: str
    address: str
    port: int = Field(..., ge=1, le=65535)
    weight: int = Field(1, ge=0)


def parse_backend(entry: str) -> BackendSpec:
    """``[id=]host:port[@weight]``; the id defaults to ``host:port``."""
    entry = entry.strip()
    endpoint_id = None
    if "=" in entry:
        endpoint_id, entry = (part.strip() for part in entry.split("=", 1))
    weight = 1
    if "@" in entry:
        entry, weight_text = entry.rsplit("@", 1)
        weight = int(weight_text)
    host, port = entry.rsplit(":", 1)
    return BackendSpec(id=endpoint_id or f"{host}:{port}", address=host, port=int(port), weight=weight)


class PoolSettings(_Section):
    algorithm: RoutingAlgorithm = RoutingAlgorithm.ROUND_ROBIN
    path_prefix: str = "/"
    backends: List[BackendSpec] = Field(default_factory=list)
    min_replicas: int = Field(1, ge=0)
    max_replicas: int = Field(5, ge=0)
    scale_up_threshold: float = 70.0
    scale_down_threshold: float = 30.0
    debounce_ticks: int = Field(3, ge=1)
    cooldown: float = Field(60.0, ge=0)
    step_size: int = Field(1, ge=1)
    metric: str = "cpu"
    autoscale: bool = True
    health: Optional[HealthSettings] = None

    @field_validator("backends", mode="before")
    @classmethod
    def split_backends(cls, v):
        if v is None or v == "":
            return []
        if isinstance(v, (str, int)):
            return [parse_backend(item) for item in str(v).split(",") if item.strip()]
        return v

    @model_validator(mode="after")
    def check_bounds(self):
        if self.max_replicas < self.min_replicas:
            raise ValueError(f"max_replicas ({self.max_replicas}) must be >= min_replicas ({self.min_replicas})")
        if self.scale_down_threshold >= self.scale_up_threshold:
            raise ValueError("scale_down_threshold must be < scale_up_threshold")
        if self.metric not in ("cpu", "memory", "latency", "connections"):
            raise ValueError("metric must be one of cpu, memory, latency, connections")
        ids = [b.id for b in self.backends]
        if len(ids) != len(set(ids)):
            raise ValueError("backend ids must be unique within a pool")
        return self


class ControllerSettings(_Section):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    server: ServerSettings = Field(default_factory=ServerSettings)
    router: RouterSettings = Field(default_factory=RouterSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    autoscaler: AutoscalerSettings = Field(default_factory=AutoscalerSettings)
    provisioner: ProvisionerSettings = Field(default_factory=ProvisionerSettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    pools: Dict[str, PoolSettings] = Field(default_factory=dict, alias="pool")

    @model_validator(mode="before")
    @classmethod
    def inherit_pool_health(cls, data):
        """Per-pool ``health.*`` keys override the global health section field by field."""
        if not isinstance(data, dict):
            return data
        base = data.get("health") if isinstance(data.get("health"), dict) else {}
        pools = data.get("pool", data.get("pools"))
        if isinstance(pools, dict):
            for pool in pools.values():
                if isinstance(pool, dict) and isinstance(pool.get("health"), dict):
                    pool["health"] = {**base, **pool["health"]}
        return data

    @model_validator(mode="after")
    def check_pools(self):
        if not self.pools:
            raise ValueError("at least one pool must be configured")
        if self.server.default_pool and self.server.default_pool not in self.pools:
            raise ValueError(f"default_pool '{self.server.default_pool}' is not a configured pool")
        return self

    def health_for(self, pool_id: str) -> HealthSettings:
        return self.pools[pool_id].health or self.health


def parse_document(text: str) -> Tuple[Dict[str, Any], List[str]]:
    """Parse ``key=value`` lines into nested dicts, collecting every error."""
    key_re = re.compile(KEY_PATTERN)
    document: Dict[str, Any] = {}
    errors: List[str] = []
    for line_no, raw_line in enumerate(text.splitlines(), 1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            errors.append(f"line {line_no}: expected key=value, got {line!r}")
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        if not key_re.match(key):
            errors.append(f"line {line_no}: invalid key {key!r}")
            continue
        node = document
        parts = key.split(".")
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                errors.append(f"line {line_no}: {key!r} conflicts with a value set earlier")
                break
            node = child
        else:
            leaf = parts[-1]
            if leaf in node:
                errors.append(f"line {line_no}: duplicate key {key!r}")
                continue
            node[leaf] = coerce(value)
    return document, errors


def settings_from_rendered(rendered: RenderedConfig) -> ControllerSettings:
    document, errors = parse_document(rendered.text)
    if errors:
        raise ConfigurationError("Invalid configuration document", errors=errors)
    try:
        return ControllerSettings.model_validate(document)
    except ValidationError as e:
        messages = [f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()]
        raise ConfigurationError("Invalid configuration values", errors=messages) from e


def load_settings(template: str, env) -> Tuple[ControllerSettings, RenderedConfig]:
    """Render and validate in one step; raises ConfigurationError with every problem found."""
    rendered, missing = render(template, env)
    if rendered is None:
        raise ConfigurationError("Unresolved template variables", missing=missing)
    return settings_from_rendered(rendered), rendered
