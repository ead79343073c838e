"""A background timer that calls a function at a fixed interval."""

from __future__ import annotations

import logging
import threading
from typing import Callable

_log = logging.getLogger(__name__)


class Watcher:
    """Runs ``callback`` every ``interval_ms`` milliseconds in a daemon thread."""

    def __init__(self, name: str, interval_ms: int, callback: Callable[[], None]) -> None:
        self.name = name
        self.interval = interval_ms / 1000.0
        self.callback = callback
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        """Start calling the callback; a second call while running does nothing."""
        with self._lock:
            if self._thread is not None:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name=f"watcher-{self.name}", daemon=True
            )
            self._thread.start()
        _log.debug("watcher [%s] started", self.name)

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.callback()
            except Exception:
                _log.exception("watcher [%s] callback failed", self.name)

    def stop(self) -> None:
        """Stop the watcher and wait for its thread to finish."""
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        _log.debug("watcher [%s] stopped", self.name)