"""
Lifecycle management for the Poolkeeper controller.
Builds the components from settings, applies reloads and runs the
provisioner sync and drain janitor loops.
"""
import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from config_spec import ControllerSettings, HealthSettings, load_settings
from controller.cluster import FileLeaseLeader, StaticLeader
from controller.errors import ConfigurationError
from controller.health import HealthChecker, HealthCheckSpec
from controller.nginx import UpstreamConfigWriter
from controller.provisioner import CommandProvisioner, Instance, Provisioner, RegistryEventSink, StaticProvisioner
from controller.router import Router
from controller.scaler import AutoScaler, ScalingPolicy
from controller.utils.clock import SystemClock
from metrics import HttpStatsSource, MetricsCollector, MetricsExporter
from state import BackendRegistry

logger = logging.getLogger(__name__)

DRAIN_CHECK_INTERVAL = 1.0

# Global components - initialized before the API starts serving
settings: Optional[ControllerSettings] = None
template_text: Optional[str] = None
# file the template was read from; reload reads it again
template_path: Optional[str] = None
clock = SystemClock()
backend_registry: Optional[BackendRegistry] = None
router: Optional[Router] = None
health_checker: Optional[HealthChecker] = None
metrics_collector: Optional[MetricsCollector] = None
auto_scaler: Optional[AutoScaler] = None
static_provisioner: Optional[StaticProvisioner] = None
provisioner: Optional[Provisioner] = None
exporter: Optional[MetricsExporter] = None
leader = None
upstream_writer: Optional[UpstreamConfigWriter] = None

# Background tasks
background_tasks: List[asyncio.Task] = []
monitoring_active = False
_reload_lock: Optional[asyncio.Lock] = None


def get_settings() -> Optional[ControllerSettings]:
    """Get the settings currently in effect."""
    return settings


def get_registry() -> Optional[BackendRegistry]:
    return backend_registry


def get_router() -> Optional[Router]:
    return router


def get_health_checker() -> Optional[HealthChecker]:
    return health_checker


def get_metrics_collector() -> Optional[MetricsCollector]:
    return metrics_collector


def get_auto_scaler() -> Optional[AutoScaler]:
    return auto_scaler


def get_provisioner() -> Optional[Provisioner]:
    return provisioner


def get_exporter() -> Optional[MetricsExporter]:
    return exporter


def get_leader():
    return leader


def is_initialized() -> bool:
    return settings is not None and backend_registry is not None


def health_spec_from(health: HealthSettings) -> HealthCheckSpec:
    return HealthCheckSpec(
        path=health.path,
        interval=health.interval,
        timeout=health.timeout,
        healthy_threshold=health.healthy_threshold,
        unhealthy_threshold=health.unhealthy_threshold,
        concurrency=health.concurrency,
    )


def read_template(path: Optional[str] = None) -> str:
    """Read the configuration template named by ``path`` or POOLKEEPER_CONFIG_TEMPLATE."""
    path = path or os.getenv("POOLKEEPER_CONFIG_TEMPLATE")
    if not path:
        raise ConfigurationError("POOLKEEPER_CONFIG_TEMPLATE is not set")
    try:
        return Path(path).read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration template {path}: {e}") from e


def initialize(new_settings: ControllerSettings, template: Optional[str] = None,
               provisioner_override: Optional[Provisioner] = None, clock_override=None,
               source_path: Optional[str] = None):
    """Build every component for the given settings. Background loops are started by startup_event.

    ``source_path`` names the template file; a reload without an explicit
    template reads it again.
    """
    global settings, template_text, template_path, clock, backend_registry, router, health_checker, metrics_collector
    global auto_scaler, static_provisioner, provisioner, exporter, leader, upstream_writer, _reload_lock

    clock = clock_override or SystemClock()
    _reload_lock = None
    exporter = MetricsExporter()
    backend_registry = BackendRegistry()
    router = Router(
        backend_registry,
        max_retries=new_settings.router.max_retries,
        request_timeout=new_settings.router.request_timeout,
        health_path=new_settings.server.health_path,
        exporter=exporter,
    )
    health_checker = HealthChecker(backend_registry, health_spec_from(new_settings.health), clock=clock,
                                   exporter=exporter)
    health_checker.set_health_change_callback(on_health_change)

    stats_source = None
    if new_settings.metrics.stats_path:
        stats_source = HttpStatsSource(new_settings.metrics.stats_path, new_settings.metrics.stats_timeout)
    metrics_collector = MetricsCollector(
        backend_registry,
        router=router,
        stats_source=stats_source,
        window_size=new_settings.metrics.window_size,
        interval=new_settings.metrics.interval,
        concurrency=new_settings.metrics.concurrency,
        clock=clock,
        exporter=exporter,
    )
    exporter.bind(backend_registry, metrics_collector)

    # Configured backends always flow through provisioner events, like discovered ones
    sink = RegistryEventSink(backend_registry, clock)
    static_provisioner = StaticProvisioner()
    static_provisioner.subscribe(sink)
    if provisioner_override is not None:
        provisioner = provisioner_override
    elif new_settings.provisioner.kind == "command":
        provisioner = CommandProvisioner(
            new_settings.provisioner.scale_command,
            new_settings.provisioner.list_command,
            timeout=new_settings.provisioner.timeout,
        )
    else:
        provisioner = static_provisioner
    if provisioner is not static_provisioner:
        provisioner.subscribe(sink)

    if new_settings.autoscaler.leader_lease_file:
        leader = FileLeaseLeader(new_settings.autoscaler.leader_lease_file)
    else:
        leader = StaticLeader(True)

    auto_scaler = AutoScaler(
        backend_registry,
        metrics_collector,
        provisioner,
        is_leader=leader.is_leader,
        tick_interval=new_settings.autoscaler.tick_interval,
        provisioner_timeout=new_settings.autoscaler.provisioner_timeout,
        max_backoff=new_settings.autoscaler.max_backoff,
        history_size=new_settings.autoscaler.history_size,
        clock=clock,
        exporter=exporter,
    )

    upstream_writer = None
    if new_settings.upstream.conf_dir:
        upstream_writer = UpstreamConfigWriter(
            new_settings.upstream.conf_dir,
            template_path=new_settings.upstream.template_path,
            reload_command=new_settings.upstream.reload_command,
            exporter=exporter,
        )
        backend_registry.add_listener(upstream_writer.on_snapshot)

    template_text = template
    template_path = source_path
    _apply_pool_settings(None, new_settings)
    settings = new_settings
    logger.info(f"Controller initialized with pools: {', '.join(sorted(new_settings.pools))}")


def _apply_pool_settings(old: Optional[ControllerSettings], new: ControllerSettings):
    """Bring registry, prober and autoscaler in line with ``new``. Backends arrive on the next sync."""
    router.configure(new.router.max_retries, new.router.request_timeout, new.server.health_path)
    health_checker.default_spec = health_spec_from(new.health)
    metrics_collector.configure(new.metrics.window_size, new.metrics.interval)

    if old is not None:
        for pool_id in set(old.pools) - set(new.pools):
            remove_pool(pool_id)
        if old.upstream != new.upstream or old.provisioner.kind != new.provisioner.kind:
            logger.warning("Changes to the upstream and provisioner.kind sections take effect after a restart")

    for pool_id, pool in new.pools.items():
        backend_registry.ensure_pool(pool_id, pool.algorithm, pool.min_replicas, pool.max_replicas)
        health_checker.set_spec(pool_id, health_spec_from(new.health_for(pool_id)))
        static_provisioner.set_instances(
            pool_id, [Instance(b.id, b.address, b.port, b.weight) for b in pool.backends]
        )
        if pool.autoscale:
            auto_scaler.set_policy(pool_id, ScalingPolicy(
                scale_up_threshold=pool.scale_up_threshold,
                scale_down_threshold=pool.scale_down_threshold,
                debounce_ticks=pool.debounce_ticks,
                cooldown=pool.cooldown,
                step_size=pool.step_size,
                min_replicas=pool.min_replicas,
                max_replicas=pool.max_replicas,
                metric=pool.metric,
            ))
        else:
            auto_scaler.remove_policy(pool_id)


def remove_pool(pool_id: str):
    """Forget a pool everywhere. Its in-flight requests finish on the snapshot they hold."""
    auto_scaler.remove_policy(pool_id)
    static_provisioner.forget_pool(pool_id)
    if provisioner is not static_provisioner:
        provisioner.forget_pool(pool_id)
    router.forget_pool(pool_id)
    backend_registry.remove_pool(pool_id)
    if upstream_writer:
        upstream_writer.forget_pool(pool_id)
    logger.info(f"Pool {pool_id} removed by configuration reload")


async def sync_pools() -> Dict[str, Dict[str, int]]:
    """Reconcile configured and provisioned instances for every pool."""
    results = {}
    for pool_id in backend_registry.pool_ids():
        results[pool_id] = await static_provisioner.sync(pool_id)
        if provisioner is not static_provisioner:
            try:
                discovered = await provisioner.sync(pool_id)
            except Exception as e:
                logger.error(f"[{pool_id}] Provisioner sync failed: {e}")
                continue
            results[pool_id] = {k: results[pool_id][k] + discovered[k] for k in discovered}
    return results


async def reload(env: Optional[Mapping[str, str]] = None, template: Optional[str] = None) -> ControllerSettings:
    """Re-render the template and swap in the new settings.

    On any error the settings in effect are kept and the ConfigurationError
    is re-raised with every problem found.
    """
    global settings, template_text, _reload_lock
    if not is_initialized():
        raise ConfigurationError("Controller is not initialized")
    if _reload_lock is None:
        _reload_lock = asyncio.Lock()

    async with _reload_lock:
        try:
            source = template
            if source is None:
                source = read_template(template_path) if template_path else template_text
            if source is None:
                source = read_template()
            new_settings, _ = load_settings(source, os.environ if env is None else env)
        except ConfigurationError as e:
            exporter.record_reload(False)
            logger.error(f"Configuration reload rejected, keeping current settings: {e}")
            raise

        old = settings
        _apply_pool_settings(old, new_settings)
        settings = new_settings
        template_text = source
        await sync_pools()
        exporter.record_reload(True)
        logger.info(f"Configuration reloaded: pools={', '.join(sorted(new_settings.pools))}")
        return new_settings


def resolve_pool(path: str) -> Optional[str]:
    """Pick the pool whose path_prefix is the longest match for ``path``, else the default pool."""
    current = settings
    if current is None:
        return None
    best, best_len = None, -1
    for pool_id in sorted(current.pools):
        prefix = current.pools[pool_id].path_prefix.rstrip("/")
        if prefix and path != prefix and not path.startswith(prefix + "/"):
            continue
        if len(prefix) > best_len:
            best, best_len = pool_id, len(prefix)
    return best or current.server.default_pool


def on_health_change(pool_id: str, endpoint):
    """Called when an endpoint changes health state."""
    # soft failure counts start over once the prober has a verdict
    if router and router.soft_failures.pop((pool_id, endpoint.id), None):
        logger.debug(f"[{pool_id}] Cleared soft failures for {endpoint.id} ({endpoint.health.value})")


async def provisioner_sync_loop():
    """Background task that keeps the registry in line with the provisioner."""
    logger.info("Started provisioner sync loop")
    while monitoring_active:
        try:
            await sync_pools()
            await clock.sleep(settings.provisioner.sync_interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in provisioner sync loop: {e}")
            await clock.sleep(30)  # Back off on errors


async def drain_janitor_loop():
    """Background task that removes endpoints once their drain grace period is over."""
    while monitoring_active:
        try:
            purged = backend_registry.purge_drained(clock.now(), settings.provisioner.drain_grace)
            for pool_id, endpoint_id in purged:
                logger.info(f"[{pool_id}] Drained endpoint {endpoint_id} removed")
            await clock.sleep(DRAIN_CHECK_INTERVAL)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in drain janitor loop: {e}")
            await clock.sleep(5)


async def startup_event():
    """Start every component and background loop when the API starts."""
    global monitoring_active

    try:
        if not is_initialized():
            template = read_template()
            new_settings, _ = load_settings(template, os.environ)
            initialize(new_settings, template, source_path=os.getenv("POOLKEEPER_CONFIG_TEMPLATE"))

        await router.start()
        if upstream_writer:
            await upstream_writer.start()
        await sync_pools()
        await health_checker.start()
        await metrics_collector.start()
        await auto_scaler.start()

        monitoring_active = True
        background_tasks.append(asyncio.create_task(provisioner_sync_loop()))
        background_tasks.append(asyncio.create_task(drain_janitor_loop()))

        logger.info("Poolkeeper controller started successfully")

    except Exception as e:
        logger.error(f"Failed to start controller: {e}")
        raise


async def shutdown_event():
    """Clean up resources when shutting down."""
    global monitoring_active

    monitoring_active = False
    for task in background_tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    background_tasks.clear()

    if auto_scaler:
        await auto_scaler.stop()
    if metrics_collector:
        await metrics_collector.stop()
    if health_checker:
        await health_checker.stop()
    if router:
        await router.stop()
    if upstream_writer:
        await upstream_writer.stop()

    logger.info("Poolkeeper controller shut down")
