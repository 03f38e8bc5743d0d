from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable

from icalsync.cache_gate import CacheGate, now_ms
from icalsync.config_manager import ConfigManager
from icalsync.fetcher import CalendarFetcher, FetchError
from icalsync.ics_parser import CalendarParseError
from icalsync.models import (
    APP_VERSION,
    CACHE_KEY,
    INDEX_NAMESPACE,
    TRIGGER_FORCED,
    TRIGGER_MANUAL,
    TRIGGER_WATCH,
    Source,
    SyncReport,
)
from icalsync.normalizer import normalize_calendar, resolve_timezone
from icalsync.notifier import Notifier
from icalsync.source_registry import validate_sources
from icalsync.state_store import SourceSnapshot, StateStore

logger = logging.getLogger(__name__)

CLEAR_CONFIRM_PROMPT = (
    "Are you sure you want to clear all calendar events and cache? "
    "This will remove all indexed calendar data."
)
EXPECTED_SOURCE_ERRORS = (FetchError, CalendarParseError)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        notifier: Notifier | None = None,
        fetcher_factory: Callable[[int], CalendarFetcher] = CalendarFetcher,
        max_workers: int = 4,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.notifier = notifier or Notifier()
        self.fetcher_factory = fetcher_factory
        self.max_workers = max(1, max_workers)
        self.cache_gate = CacheGate(state_store)
        self._run_lock = threading.Lock()

    def run_once(self, trigger: str = TRIGGER_MANUAL) -> SyncReport:
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sync already in progress, ignoring %s trigger", trigger)
            return SyncReport(status="busy", message="A sync pass is already running.", trigger=trigger)
        try:
            return self._run_locked(trigger)
        finally:
            self._run_lock.release()

    def _fetch_source(self, fetcher: CalendarFetcher, source: Source, tz: Any) -> list[dict[str, Any]]:
        raw_ical = fetcher.fetch(source)
        return [event.to_dict() for event in normalize_calendar(raw_ical, source, tz)]

    def _fetch_due(
        self, due: dict[int, Source], timeout_seconds: int, tz: Any
    ) -> dict[int, list[dict[str, Any]] | Exception]:
        fetcher = self.fetcher_factory(timeout_seconds)
        results: dict[int, list[dict[str, Any]] | Exception] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(due)), thread_name_prefix="icalsync-fetch") as pool:
            futures: dict[int, Future] = {
                index: pool.submit(self._fetch_source, fetcher, source, tz) for index, source in due.items()
            }
            for index, future in futures.items():
                try:
                    results[index] = future.result()
                except Exception as exc:
                    results[index] = exc
        return results

    def _run_locked(self, trigger: str) -> SyncReport:
        started_at = datetime.now(timezone.utc)
        total_sources = 0
        try:
            config = self.config_manager.load()
            sources = validate_sources(config.sources)
            total_sources = len(sources)
            if not sources:
                logger.debug("No calendar sources configured")
                return SyncReport(status="skipped", message="No calendar sources configured.", trigger=trigger)

            now = now_ms()
            global_last_sync = self.cache_gate.global_last_sync()
            global_due = self.cache_gate.global_due(global_last_sync, config.cache_duration_ms, now)
            snapshots = {source.cache_key: self.state_store.get_source_snapshot(source.cache_key) for source in sources}
            due = {
                index: source
                for index, source in enumerate(sources)
                # Sources never fetched before (e.g. newly configured) are always due.
                if snapshots[source.cache_key] is None
                or self.cache_gate.should_sync(source, global_last_sync, config.cache_duration_ms, now)
            }
            if not due:
                age_seconds = round((now - global_last_sync) / 1000) if global_last_sync is not None else 0
                logger.info("Using cached data (%ss old)", age_seconds)
                return SyncReport(
                    status="skipped",
                    message=f"Calendar cache is fresh ({age_seconds}s old).",
                    trigger=trigger,
                    total_sources=total_sources,
                    duration_ms=_elapsed_ms(started_at),
                )

            # Only background watch ticks refreshing watched files alone stay quiet.
            silent = (
                trigger == TRIGGER_WATCH
                and total_sources > 1
                and all(source.is_watched for source in due.values())
            )
            logger.info("Syncing %s of %s calendar source(s) (trigger=%s)", len(due), total_sources, trigger)
            if not silent:
                self.notifier.flash("Syncing calendars...", "info")

            results = self._fetch_due(due, config.http_timeout_seconds, resolve_timezone(config.timezone))

            fetched_at = datetime.now(timezone.utc).isoformat()
            all_events: list[dict[str, Any]] = []
            new_snapshots: list[SourceSnapshot] = []
            timestamps: dict[str, int] = {}
            fetched_sources: list[str] = []
            failed_sources: list[str] = []
            success_count = 0
            for index, source in enumerate(sources):
                if index not in results:
                    snapshot = snapshots[source.cache_key]
                    all_events.extend(snapshot.events)
                    if snapshot.status == "ok":
                        success_count += 1
                    continue

                outcome = results[index]
                if isinstance(outcome, Exception):
                    logger.error(
                        "Failed to sync %r: %s",
                        source.identifier,
                        outcome,
                        exc_info=None if isinstance(outcome, EXPECTED_SOURCE_ERRORS) else outcome,
                    )
                    failed_sources.append(source.identifier)
                    new_snapshots.append(
                        SourceSnapshot(
                            source_key=source.cache_key,
                            url=source.url,
                            status="error",
                            error=f"{type(outcome).__name__}: {outcome}",
                            fetched_at=fetched_at,
                        )
                    )
                    if not silent:
                        self.notifier.flash(f'Failed to sync "{source.identifier}"', "error")
                    continue

                all_events.extend(outcome)
                success_count += 1
                fetched_sources.append(source.identifier)
                new_snapshots.append(
                    SourceSnapshot(
                        source_key=source.cache_key,
                        url=source.url,
                        status="ok",
                        events=outcome,
                        fetched_at=fetched_at,
                    )
                )
                timestamps.update(self.cache_gate.mark_synced(source, now))

            if global_due:
                timestamps[CACHE_KEY] = now

            total_events = self.state_store.commit_sync_pass(
                namespace=INDEX_NAMESPACE,
                records=all_events,
                snapshots=new_snapshots,
                timestamps=timestamps,
                keep_source_keys=[source.cache_key for source in sources],
            )

            message = f"Synced {total_events} events from {success_count}/{total_sources} source(s)"
            duration_ms = _elapsed_ms(started_at)
            self.state_store.record_sync_run(
                trigger=trigger,
                status="success",
                message=message,
                duration_ms=duration_ms,
                total_events=total_events,
                success_count=success_count,
                total_sources=total_sources,
            )
            logger.info(message)
            if not silent:
                self.notifier.flash(message, "info")
            return SyncReport(
                status="success",
                message=message,
                trigger=trigger,
                total_events=total_events,
                success_count=success_count,
                total_sources=total_sources,
                fetched_sources=fetched_sources,
                failed_sources=failed_sources,
                duration_ms=duration_ms,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync failed")
            try:
                self.state_store.record_sync_run(
                    trigger=trigger,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    total_events=0,
                    success_count=0,
                    total_sources=total_sources,
                )
            except Exception:
                logger.exception("Could not record failed sync run")
            self.notifier.flash("Failed to sync calendars", "error")
            return SyncReport(
                status="error",
                message=error_message,
                trigger=trigger,
                total_sources=total_sources,
                duration_ms=duration_ms,
            )

    def force_sync(self) -> SyncReport:
        try:
            self.cache_gate.clear_global()
        except Exception as exc:
            logger.exception("Could not clear sync timestamp")
            self.notifier.flash("Failed to sync calendars", "error")
            return SyncReport(status="error", message=f"{type(exc).__name__}: {exc}", trigger=TRIGGER_FORCED)
        logger.info("Cache cleared, forcing fresh sync")
        self.notifier.flash("Forcing fresh calendar sync...", "info")
        return self.run_once(trigger=TRIGGER_FORCED)

    def clear_cache(self, confirm: Callable[[str], bool] | None = None) -> bool:
        """Delete every indexed event and all cache state after confirmation.

        Returns False without side effects when the confirmation is declined.
        """
        confirm = confirm or self.notifier.confirm
        if not confirm(CLEAR_CONFIRM_PROMPT):
            logger.info("Clear cache cancelled")
            return False

        with self._run_lock:
            try:
                logger.info("Clearing index for %s", INDEX_NAMESPACE)
                keys = [item["key"] for item in self.state_store.query_objects((INDEX_NAMESPACE,))]
                deleted = self.state_store.batch_delete(keys)
                if deleted:
                    logger.info("Deleted %s events", deleted)
                self.state_store.delete_meta_prefix(CACHE_KEY)
                self.state_store.clear_source_snapshots()
            except Exception as exc:
                logger.exception("Failed to clear cache")
                self.notifier.flash(f"Failed to clear cache: {exc}", "error")
                return False

        logger.info("Calendar index and cache cleared")
        self.notifier.flash("Calendar index and cache cleared", "info")
        return True

    def show_version(self) -> str:
        message = f"iCalendar Sync {APP_VERSION}"
        self.notifier.flash(message, "info")
        return message
