"""
Provisioner collaborators.
A provisioner creates and destroys backend instances; Poolkeeper only asks it
for a pool size and listens for the instances it reports.
"""

import asyncio
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from state.registry import BackendRegistry
from .errors import ProvisionerError
from .utils.clock import SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Instance:
    id: str
    address: str
    port: int
    weight: int = 1


class ProvisionerListener(ABC):
    @abstractmethod
    def instance_ready(self, pool_id: str, instance: Instance):
        ...

    def instance_updated(self, pool_id: str, instance: Instance):
        """Same id, address and port with a new weight. Defaults to a re-add."""
        self.instance_ready(pool_id, instance)

    @abstractmethod
    def instance_removed(self, pool_id: str, endpoint_id: str):
        ...


class RegistryEventSink(ProvisionerListener):
    """Applies provisioner events to the registry.

    New instances enter as unknown and must pass health checks before they
    are routed to. Removed instances drain first and are purged after the
    grace period.
    """

    def __init__(self, registry: BackendRegistry, clock=None):
        self.registry = registry
        self.clock = clock or SystemClock()

    def instance_ready(self, pool_id: str, instance: Instance):
        self.registry.add_endpoint(pool_id, instance.id, instance.address, instance.port, instance.weight)

    def instance_updated(self, pool_id: str, instance: Instance):
        # weight edits keep health and generation
        if not self.registry.update_weight(pool_id, instance.id, instance.weight):
            self.instance_ready(pool_id, instance)

    def instance_removed(self, pool_id: str, endpoint_id: str):
        self.registry.mark_draining(pool_id, endpoint_id, self.clock.now())


class Provisioner(ABC):
    def __init__(self):
        self._listeners: List[ProvisionerListener] = []
        self._known: Dict[str, Dict[str, Instance]] = {}

    def subscribe(self, listener: ProvisionerListener):
        self._listeners.append(listener)

    @abstractmethod
    async def list_instances(self, pool_id: str) -> List[Instance]:
        ...

    @abstractmethod
    async def scale(self, pool_id: str, target_count: int) -> bool:
        """Request a pool size. Returns once accepted; instances arrive as events."""
        ...

    async def sync(self, pool_id: str) -> Dict[str, int]:
        """Reconcile listed instances against what was reported before, emitting events."""
        listed = {inst.id: inst for inst in await self.list_instances(pool_id)}
        known = self._known.setdefault(pool_id, {})
        added = updated = removed = 0
        for instance_id, instance in listed.items():
            previous = known.get(instance_id)
            if previous == instance:
                continue
            known[instance_id] = instance
            if previous is not None and (previous.address, previous.port) == (instance.address, instance.port):
                self._emit(pool_id, "instance_updated", instance.id, instance)
                updated += 1
            else:
                self._emit(pool_id, "instance_ready", instance.id, instance)
                added += 1
        for instance_id in [i for i in known if i not in listed]:
            del known[instance_id]
            self._emit(pool_id, "instance_removed", instance_id, instance_id)
            removed += 1
        if added or updated or removed:
            logger.info(f"[{pool_id}] Provisioner sync: {added} ready, {updated} updated, {removed} removed")
        return {"ready": added, "updated": updated, "removed": removed}

    def forget_pool(self, pool_id: str):
        """Drop what was reported for a pool without emitting removals."""
        self._known.pop(pool_id, None)

    def _emit(self, pool_id: str, event: str, instance_id: str, payload):
        for listener in self._listeners:
            try:
                getattr(listener, event)(pool_id, payload)
            except Exception as e:
                logger.error(f"[{pool_id}] {event} handler failed for {instance_id}: {e}")


class StaticProvisioner(Provisioner):
    """Fixed backends taken from configuration. Cannot change pool sizes."""

    def __init__(self, instances: Optional[Dict[str, Iterable[Instance]]] = None):
        super().__init__()
        self.instances: Dict[str, List[Instance]] = {k: list(v) for k, v in (instances or {}).items()}

    def set_instances(self, pool_id: str, instances: Iterable[Instance]):
        self.instances[pool_id] = list(instances)

    def forget_pool(self, pool_id: str):
        super().forget_pool(pool_id)
        self.instances.pop(pool_id, None)

    async def list_instances(self, pool_id: str) -> List[Instance]:
        return list(self.instances.get(pool_id, []))

    async def scale(self, pool_id: str, target_count: int) -> bool:
        current = len(self.instances.get(pool_id, []))
        if target_count == current:
            return True
        raise ProvisionerError(
            f"Pool {pool_id} uses static backends ({current}); cannot scale to {target_count}"
        )


class CommandProvisioner(Provisioner):
    """Drives an external tool through shell commands.

    ``scale_command`` is formatted with ``pool`` and ``target``, e.g.
    ``docker compose up -d --no-recreate --scale {pool}={target}``.
    ``list_command`` is formatted with ``pool`` and must print one instance
    per line as ``<id> <host>:<port> [weight]``.
    """

    def __init__(self, scale_command: str, list_command: str, timeout: float = 30.0):
        super().__init__()
        self.scale_command = scale_command
        self.list_command = list_command
        self.timeout = timeout

    async def _run(self, command: str) -> str:
        args = shlex.split(command)
        try:
            process = await asyncio.create_subprocess_exec(
                *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ProvisionerError(f"Cannot run '{command}': {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ProvisionerError(f"'{command}' timed out after {self.timeout}s") from e
        if process.returncode != 0:
            raise ProvisionerError(
                f"'{command}' exited with {process.returncode}: {stderr.decode('utf-8', 'replace').strip()}"
            )
        return stdout.decode("utf-8", "replace")

    async def scale(self, pool_id: str, target_count: int) -> bool:
        await self._run(self.scale_command.format(pool=pool_id, target=target_count))
        logger.info(f"[{pool_id}] Provisioner accepted scale to {target_count}")
        return True

    async def list_instances(self, pool_id: str) -> List[Instance]:
        output = await self._run(self.list_command.format(pool=pool_id))
        return parse_instance_listing(output)


def parse_instance_listing(output: str) -> List[Instance]:
    instances = []
    for line_no, line in enumerate(output.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        try:
            host, port = parts[1].rsplit(":", 1)
            weight = int(parts[2]) if len(parts) > 2 else 1
            instances.append(Instance(id=parts[0], address=host, port=int(port), weight=weight))
        except (IndexError, ValueError):
            logger.warning(f"Ignoring malformed instance line {line_no}: {line!r}")
    return instances
