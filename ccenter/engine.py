"""Periodic reservation of queue members for this node."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

from .watcher import Watcher

MEMBER_CAUSE_SYSTEM_SHUTDOWN = "SYSTEM_SHUTDOWN"

_SLOW_DISTRIBUTE_SECONDS = 2.0

_log = logging.getLogger(__name__)


class Engine:
    """Reserves members for distribution while the application is ready.

    ``app.is_ready()`` tells whether calls can be made. ``member_store``
    provides ``reserve_members_by_node(node_id, enable_omnichannel)``,
    ``unreserve_members_by_node(node_id, cause)`` (both return a count)
    and ``clean_attempts(node_id)``; each raises on failure.
    """

    def __init__(
        self,
        app: Any,
        node_id: str,
        member_store: Any,
        enable_omnichannel: bool,
        polling_interval: float,
        logger: logging.Logger | None = None,
        error_pause: float = 5.0,
    ) -> None:
        self.app = app
        self.node_id = node_id
        self.member_store = member_store
        self.enable_omnichannel = enable_omnichannel
        self.polling_interval = polling_interval
        self.error_pause = error_pause
        self.watcher: Watcher | None = None
        self.log = logger or _log
        self._start_lock = threading.Lock()
        self._started = False

    def start(self) -> None:
        self.log.info("starting engine service")
        self.watcher = Watcher("Engine", int(self.polling_interval * 1000), self.reserve_members)
        self.unreserve_members()
        with self._start_lock:
            if self._started:
                return
            self._started = True
            self.watcher.start()

    def stop(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
        self.unreserve_members()

    def reserve_members(self) -> int:
        """Reserve members for this node; return how many were reserved."""
        if not self.app.is_ready():
            self.log.error("app not ready to reserve members")
            time.sleep(self.error_pause)
            return 0
        started = time.monotonic()
        try:
            count = self.member_store.reserve_members_by_node(self.node_id, self.enable_omnichannel)
        except Exception as err:
            self.log.error("%s", err)
            time.sleep(self.error_pause)
            return 0
        if count > 0:
            self.log.debug("reserve %s members", count)
        elapsed = time.monotonic() - started
        if elapsed > _SLOW_DISTRIBUTE_SECONDS:
            self.log.debug("distribute time: %.3fs", elapsed)
        return count

    def unreserve_members(self) -> int:
        """Release this node's reserved members; return how many were released."""
        try:
            count = self.member_store.unreserve_members_by_node(
                self.node_id, MEMBER_CAUSE_SYSTEM_SHUTDOWN
            )
        except Exception as err:
            self.log.error("%s", err)
            return 0
        if count > 0:
            self.log.debug("unreserve %s members", count)
        return count

    def clean_all_attempts(self) -> bool:
        """Remove this node's attempts; return whether it succeeded."""
        try:
            self.member_store.clean_attempts(self.node_id)
        except Exception as err:
            self.log.error("%s", err)
            return False
        return True