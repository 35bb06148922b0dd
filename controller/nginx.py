"""
Nginx upstream export for Poolkeeper.
Writes an ``upstream`` block per pool from the registry snapshot, so an
external nginx or HAProxy can follow the same health-checked membership.
File writes and proxy reloads run in a writer task off the event loop; the
registry listener only queues the latest snapshot of each pool.
"""

import asyncio
import logging
import shlex
import shutil
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from jinja2 import Template

from state.models import PoolSnapshot

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = """\
# Generated by poolkeeper for pool {{ pool }} (snapshot v{{ version }}). Do not edit.
{%- if algorithm == "client_affinity" %}
map $http_x_client_key $poolkeeper_{{ pool | replace("-", "_") }}_key {
    ""      $remote_addr;
    default $http_x_client_key;
}
{%- endif %}
upstream {{ pool }} {
{%- if algorithm == "least_connections" %}
    least_conn;
{%- elif algorithm == "client_affinity" %}
    hash $poolkeeper_{{ pool | replace("-", "_") }}_key consistent;
{%- endif %}
{%- for server in servers %}
    server {{ server.address }}:{{ server.port }}{% if server.weight != 1 %} weight={{ server.weight }}{% endif %} max_fails=0;
{%- else %}
    server 127.0.0.1:1 down;
{%- endfor %}
    keepalive 32;
}
"""


class UpstreamConfigWriter:
    def __init__(self, conf_dir: str, template_path: Optional[str] = None, reload_command: Optional[str] = None,
                 exporter=None):
        self.conf_dir = Path(conf_dir)
        self.template_path = template_path
        self.reload_command = reload_command
        self.exporter = exporter
        self._load_template()

        # latest snapshot per pool waiting for the writer task; None queues a removal
        self._pending: Dict[str, Optional[PoolSnapshot]] = {}
        self._pending_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

        # Ensure config directory exists
        self.conf_dir.mkdir(parents=True, exist_ok=True)

    def _load_template(self):
        """Load the upstream template, falling back to the built-in one."""
        if not self.template_path:
            self.template = Template(DEFAULT_TEMPLATE)
            return
        template_path = Path(self.template_path)
        if not template_path.exists():
            logger.error(f"Template file {self.template_path} not found")
            raise FileNotFoundError(f"Template file not found: {self.template_path}")
        self.template = Template(template_path.read_text())
        logger.info(f"Loaded upstream template from {self.template_path}")

    def _validate_pool_name(self, pool_id: str) -> bool:
        """Validate the pool name to prevent directory traversal."""
        if not pool_id or not pool_id.replace('_', '').replace('-', '').isalnum():
            logger.error(f"Invalid pool name for upstream config: {pool_id}")
            return False
        return True

    def render(self, snapshot: PoolSnapshot) -> str:
        servers = [{"address": ep.address, "port": ep.port, "weight": ep.weight}
                   for ep in snapshot.endpoints if ep.weight > 0]
        return self.template.render(pool=snapshot.pool_id, version=snapshot.version,
                                    algorithm=snapshot.algorithm.value, servers=servers)

    def on_snapshot(self, snapshot: PoolSnapshot):
        """Registry listener. Runs under the registry write lock, so it only queues the snapshot."""
        self._enqueue(snapshot.pool_id, snapshot)

    def forget_pool(self, pool_id: str):
        """Queue removal of a pool's upstream file."""
        self._enqueue(pool_id, None)

    def _enqueue(self, pool_id: str, snapshot: Optional[PoolSnapshot]):
        with self._pending_lock:
            self._pending[pool_id] = snapshot
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._wakeup.set)

    async def start(self):
        if self._task is None:
            self._loop = asyncio.get_running_loop()
            self._wakeup = asyncio.Event()
            self._wakeup.set()
            self._stopping = False
            self._task = asyncio.create_task(self._run())
            logger.info(f"Upstream config writer started for {self.conf_dir}")

    async def stop(self):
        """Finish queued writes, then stop the writer task."""
        if self._task:
            self._stopping = True
            self._wakeup.set()
            await self._task
        self._task = None
        self._loop = None
        await self.flush()

    async def _run(self):
        while not self._stopping:
            await self._wakeup.wait()
            self._wakeup.clear()
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Upstream config writer failed: {e}")

    async def flush(self) -> int:
        """Write every queued pool in a worker thread. Returns the number of pools handled."""
        handled = 0
        while True:
            with self._pending_lock:
                if not self._pending:
                    return handled
                pool_id, snapshot = self._pending.popitem()
            if snapshot is None:
                await asyncio.to_thread(self.remove_pool_config, pool_id)
            else:
                await asyncio.to_thread(self.update_upstreams, snapshot)
            handled += 1

    def update_upstreams(self, snapshot: PoolSnapshot) -> bool:
        """Write the upstream file for a pool and reload the proxy, restoring the old file on failure."""
        pool_id = snapshot.pool_id
        if not self._validate_pool_name(pool_id):
            return False

        config = self.render(snapshot)
        conf_path = self.conf_dir / f"{pool_id}.conf"
        backup_path = self.conf_dir / f"{pool_id}.conf.backup"
        try:
            if conf_path.exists():
                if conf_path.read_text() == config:
                    return True
                shutil.copy2(conf_path, backup_path)

            with tempfile.NamedTemporaryFile(mode='w', delete=False, dir=self.conf_dir, suffix='.tmp') as tmp_file:
                tmp_file.write(config)
                tmp_path = tmp_file.name
            shutil.move(tmp_path, conf_path)
        except OSError as e:
            logger.error(f"Failed to write upstream config for {pool_id}: {e}")
            self._record(False)
            return False

        if self.reload_command and not self._reload():
            if backup_path.exists():
                shutil.move(backup_path, conf_path)
                logger.info(f"Restored previous upstream config for {pool_id}")
                self._reload()
            self._record(False)
            return False

        if backup_path.exists():
            backup_path.unlink()
        logger.info(f"Updated upstream config for {pool_id} with {len(snapshot.endpoints)} servers")
        self._record(True)
        return True

    def remove_pool_config(self, pool_id: str) -> bool:
        if not self._validate_pool_name(pool_id):
            return False
        conf_path = self.conf_dir / f"{pool_id}.conf"
        if not conf_path.exists():
            return True
        conf_path.unlink()
        if self.reload_command:
            return self._reload()
        return True

    def list_pool_configs(self) -> List[str]:
        return sorted(p.stem for p in self.conf_dir.glob("*.conf"))

    def _reload(self) -> bool:
        try:
            result = subprocess.run(shlex.split(self.reload_command), capture_output=True, text=True, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Proxy reload command failed to run: {e}")
            return False
        if result.returncode != 0:
            logger.error(f"Proxy reload failed ({result.returncode}): {result.stderr.strip()}")
            return False
        return True

    def _record(self, success: bool):
        if self.exporter:
            self.exporter.record_upstream_write(success)
