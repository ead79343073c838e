"""Cluster membership: node registration, service discovery and the master flag."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from .errors import SERVICE_NAME
from .watcher import Watcher

DEFAULT_WATCHER_POLLING_INTERVAL = 10 * 1000

APP_SERVICE_TTL = 30
APP_DEREGISTER_CRITICAL_TTL = 60

_log = logging.getLogger(__name__)


@dataclass
class ClusterInfo:
    """What the cluster store knows about this node."""

    node_id: str = ""
    master: bool = False
    updated_at: int = 0


class Cluster:
    """Registers this node and keeps its cluster record alive.

    ``store.create_or_update(node_id)`` and
    ``store.update_cluster_info(node_id, started)`` return ``ClusterInfo``
    and raise on failure. ``discovery.register_service(name, host, port,
    ttl, deregister_ttl)`` announces the node; ``discovery.shutdown()``
    withdraws it.
    """

    def __init__(
        self,
        node_id: str,
        store: Any,
        discovery: Any,
        logger: logging.Logger | None = None,
        polling_interval: int = DEFAULT_WATCHER_POLLING_INTERVAL,
    ) -> None:
        self.node_id = node_id
        self.store = store
        self.discovery = discovery
        self.polling_interval = polling_interval
        self.info: ClusterInfo | None = None
        self.watcher: Watcher | None = None
        self.log = logger or _log
        self._start_lock = threading.Lock()
        self._started = False

    @property
    def service_discovery(self) -> Any:
        return self.discovery

    def setup(self) -> None:
        """Create or refresh this node's record and mark it started."""
        self.info = self.store.create_or_update(self.node_id)
        self.info = self.store.update_cluster_info(self.node_id, True)
        self.log.debug("master = %s", self.info.master)

    def start(self, host: str, port: int) -> None:
        """Announce the node and begin the heartbeat."""
        self.log.info("starting cluster")
        self.discovery.register_service(
            SERVICE_NAME, host, port, APP_SERVICE_TTL, APP_DEREGISTER_CRITICAL_TTL
        )
        with self._start_lock:
            if self._started:
                return
            self._started = True
            self.watcher = Watcher("Cluster", self.polling_interval, self.heartbeat)
            self.watcher.start()

    def stop(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
        if self.discovery is not None:
            self.discovery.shutdown()

    def heartbeat(self) -> None:
        """Refresh the node record; store errors are logged, not raised."""
        try:
            info = self.store.update_cluster_info(self.node_id, False)
        except Exception as err:
            self.log.error("%s", err)
            return
        if self.info is not None and self.info.master != info.master:
            self.log.debug("change to master = %s", info.master)
        self.info = info

    def master(self) -> bool:
        return self.info.master if self.info is not None else False