"""
Leader gate for the autoscaler.

Leader election itself happens outside Poolkeeper (a lease in Kubernetes,
Consul, a database row). The controller only asks ``is_leader`` before it
issues a scale call.
"""

import logging
import os
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class StaticLeader:
    """Single-controller deployments: always (or never) the leader."""

    def __init__(self, leader: bool = True):
        self.leader = leader

    def is_leader(self) -> bool:
        return self.leader


class FileLeaseLeader:
    """Reads the current leader id from a lease file written by an external elector.

    The file holds ``<leader_id> <expires_at_epoch>``. This node is leader
    while the id matches ``node_id`` and the lease has not expired.
    """

    def __init__(self, path: str, node_id: Optional[str] = None):
        self.path = Path(path)
        self.node_id = node_id or os.getenv("POOLKEEPER_NODE_ID") or os.uname().nodename
        self._was_leader = False

    def is_leader(self) -> bool:
        try:
            leader_id, expires_at = self.path.read_text().split()[:2]
            leader = leader_id == self.node_id and float(expires_at) > time.time()
        except (OSError, ValueError) as e:
            logger.debug(f"Lease file {self.path} unreadable: {e}")
            leader = False
        if leader != self._was_leader:
            if leader:
                logger.info(f"Node {self.node_id} has become the leader")
            else:
                logger.warning(f"Node {self.node_id} is no longer the leader")
            self._was_leader = leader
        return leader
