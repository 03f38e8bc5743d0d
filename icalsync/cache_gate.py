from __future__ import annotations

import time
from typing import Protocol

from icalsync.models import CACHE_KEY, Source


class TimestampStore(Protocol):
    def get_meta(self, key: str) -> str | None: ...

    def set_meta(self, key: str, value: str) -> None: ...

    def delete_meta(self, key: str) -> None: ...


def now_ms() -> int:
    return int(time.time() * 1000)


def is_due(last_sync_ms: int | None, interval_ms: int, now: int) -> bool:
    return last_sync_ms is None or now - last_sync_ms >= interval_ms


class CacheGate:
    """Freshness policy deciding which sources need a refetch.

    Watched ``file://`` sources are gated by their own timestamp and watch
    interval; every other source shares the global timestamp and cache
    duration.
    """

    def __init__(self, store: TimestampStore) -> None:
        self.store = store

    def _read(self, key: str) -> int | None:
        value = self.store.get_meta(key)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    def global_last_sync(self) -> int | None:
        return self._read(CACHE_KEY)

    def source_last_sync(self, source: Source) -> int | None:
        return self._read(source.cache_key)

    def global_due(self, global_last_sync: int | None, cache_duration_ms: int, now: int) -> bool:
        return is_due(global_last_sync, cache_duration_ms, now)

    def mark_synced(self, source: Source, now: int) -> dict[str, int]:
        """Timestamp entries to commit after ``source`` was fetched successfully."""
        if source.is_watched:
            return {source.cache_key: now}
        return {}

    def should_sync(
        self,
        source: Source,
        global_last_sync: int | None,
        cache_duration_ms: int,
        now: int,
    ) -> bool:
        if source.is_watched:
            return is_due(self.source_last_sync(source), source.watch_interval * 1000, now)
        return self.global_due(global_last_sync, cache_duration_ms, now)

    def clear_global(self) -> None:
        self.store.delete_meta(CACHE_KEY)
