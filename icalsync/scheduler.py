from __future__ import annotations

import logging
import threading
from typing import Optional

from icalsync.config_manager import ConfigManager
from icalsync.models import DEFAULT_WATCH_INTERVAL_SECONDS, TRIGGER_STARTUP, TRIGGER_WATCH
from icalsync.source_registry import watched_sources
from icalsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class WatchScheduler:
    """Re-runs the sync engine at the shortest watch interval of the watched file sources.

    The loop stops on its own once no watched source remains configured.
    """

    def __init__(
        self,
        sync_engine: SyncEngine,
        config_manager: ConfigManager,
        run_initial_sync: bool = True,
        retry_interval_seconds: int = DEFAULT_WATCH_INTERVAL_SECONDS,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.run_initial_sync = run_initial_sync
        self.retry_interval_seconds = retry_interval_seconds
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="icalsync-watch-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def watch_interval(self) -> Optional[int]:
        watched = watched_sources(self.config_manager.sources())
        if not watched:
            return None
        return min(source.watch_interval for source in watched)

    def run_cycle(self) -> Optional[float]:
        """Run one watch cycle and return the delay before the next one, or None to stop."""
        try:
            interval = self.watch_interval()
            if interval is None:
                return None
            self.sync_engine.run_once(trigger=TRIGGER_WATCH)
            return float(interval)
        except Exception:
            logger.exception("Watch cycle failed, retrying in %ss", self.retry_interval_seconds)
            return float(self.retry_interval_seconds)

    def _loop(self) -> None:
        if self.run_initial_sync:
            # Run one sync at startup so the index is populated quickly.
            self.sync_engine.run_once(trigger=TRIGGER_STARTUP)

        try:
            delay: Optional[float] = self.watch_interval()
        except Exception:
            logger.exception("Could not read watched sources")
            delay = float(self.retry_interval_seconds)

        while delay is not None and not self._stop_event.wait(timeout=delay):
            delay = self.run_cycle()
        if delay is None:
            logger.info("No watched calendar sources configured, watcher stopped")
