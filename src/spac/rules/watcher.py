"""Background polling of rule files for live reload."""

import logging
import os
import threading
from pathlib import Path

from .store import RuleStore

logger = logging.getLogger(__name__)

# Seconds between modification-time checks
POLL_INTERVAL = 5.0


class ReloadWatcher:
    """Polls rule files and reloads the store when one is modified.

    One modification-time slot is kept per file. The first observation of a
    file only records its mtime; a later, newer mtime triggers a reload of
    the full file set. A stat error leaves the slot untouched for that tick.
    """

    def __init__(
        self,
        store: RuleStore,
        paths: list[str | Path],
        interval: float = POLL_INTERVAL,
    ):
        self.store = store
        self.paths = [Path(p) for p in paths]
        self.interval = interval
        self._mtimes: list[float | None] = [None] * len(self.paths)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def poll_once(self) -> bool:
        """Run one tick. Returns True if a reload was triggered."""
        modified = False
        for i, path in enumerate(self.paths):
            try:
                mtime = os.stat(path).st_mtime
            except OSError:
                continue
            last = self._mtimes[i]
            if last is not None and mtime > last:
                modified = True
            self._mtimes[i] = mtime

        if modified:
            logger.info("Rule file change detected, reloading")
            self.store.reload(self.paths)
        return modified

    def run(self) -> None:
        """Poll until stop() is called."""
        while not self._stop.wait(self.interval):
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Rule reload poll failed: {e}")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="spac-reload", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
