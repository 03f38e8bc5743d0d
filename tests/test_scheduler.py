import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from icalsync.config_manager import ConfigManager
from icalsync.models import TRIGGER_STARTUP, TRIGGER_WATCH
from icalsync.scheduler import WatchScheduler
from icalsync.sync_engine import SyncEngine


class WatchSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_manager = ConfigManager(Path(self.temp_dir.name) / "config.yaml")
        self.sync_engine = mock.Mock(spec=SyncEngine)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _scheduler(self, **kwargs) -> WatchScheduler:
        return WatchScheduler(self.sync_engine, self.config_manager, **kwargs)

    def test_watch_interval_is_shortest_watched_interval(self) -> None:
        self.config_manager.update(
            {
                "sources": [
                    {"url": "https://example.com/work.ics", "watch": True, "watch_interval": 1},
                    {"url": "file:///tmp/a.ics", "watch": True, "watch_interval": 45},
                    {"url": "file:///tmp/b.ics", "watch": True, "watch_interval": 20},
                    {"url": "file:///tmp/c.ics", "watch_interval": 5},
                ]
            }
        )
        # Only watched file sources count; the HTTP watch flag is dropped.
        with self.assertLogs("icalsync.source_registry", level="WARNING"):
            self.assertEqual(self._scheduler().watch_interval(), 20)

    def test_run_cycle_runs_watch_pass(self) -> None:
        self.config_manager.update({"sources": [{"url": "file:///tmp/a.ics", "watch": True, "watch_interval": 15}]})
        delay = self._scheduler().run_cycle()
        self.assertEqual(delay, 15.0)
        self.sync_engine.run_once.assert_called_once_with(trigger=TRIGGER_WATCH)

    def test_run_cycle_without_watched_sources_stops(self) -> None:
        self.config_manager.update({"sources": [{"url": "https://example.com/work.ics"}]})
        self.assertIsNone(self._scheduler().run_cycle())
        self.sync_engine.run_once.assert_not_called()

    def test_run_cycle_failure_backs_off(self) -> None:
        self.config_manager.update({"sources": [{"url": "file:///tmp/a.ics", "watch": True}]})
        self.sync_engine.run_once.side_effect = RuntimeError("boom")
        scheduler = self._scheduler(retry_interval_seconds=7)
        with self.assertLogs("icalsync.scheduler", level="ERROR"):
            self.assertEqual(scheduler.run_cycle(), 7.0)

    def test_loop_without_watched_sources_ends_after_startup_pass(self) -> None:
        scheduler = self._scheduler()
        scheduler.start()
        scheduler._thread.join(timeout=5)

        self.assertFalse(scheduler.is_running())
        self.sync_engine.run_once.assert_called_once_with(trigger=TRIGGER_STARTUP)

    def test_stop_interrupts_wait(self) -> None:
        self.config_manager.update({"sources": [{"url": "file:///tmp/a.ics", "watch": True, "watch_interval": 3600}]})
        scheduler = self._scheduler(run_initial_sync=False)
        scheduler.start()
        self.assertTrue(scheduler.is_running())

        started = time.monotonic()
        scheduler.stop()

        self.assertFalse(scheduler.is_running())
        self.assertLess(time.monotonic() - started, 5)
        self.sync_engine.run_once.assert_not_called()

    def test_start_is_idempotent_while_running(self) -> None:
        self.config_manager.update({"sources": [{"url": "file:///tmp/a.ics", "watch": True, "watch_interval": 3600}]})
        scheduler = self._scheduler(run_initial_sync=False)
        scheduler.start()
        thread = scheduler._thread
        scheduler.start()
        self.assertIs(scheduler._thread, thread)
        scheduler.stop()


if __name__ == "__main__":
    unittest.main()
