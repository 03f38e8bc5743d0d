from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

INDEX_KEY_COLUMNS = ("namespace", "tag", "ref")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SourceSnapshot:
    source_key: str
    url: str
    status: str
    events: list[dict[str, Any]] = field(default_factory=list)
    error: str = ""
    fetched_at: str = ""


class StateStore:
    """SQLite-backed cache state, object index and sync history."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            total_events INTEGER NOT NULL,
            success_count INTEGER NOT NULL,
            total_sources INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS indexed_objects (
            namespace TEXT NOT NULL,
            tag TEXT NOT NULL,
            ref TEXT NOT NULL,
            position INTEGER NOT NULL,
            value_json TEXT NOT NULL,
            PRIMARY KEY (namespace, tag, ref)
        );

        CREATE TABLE IF NOT EXISTS source_snapshots (
            source_key TEXT PRIMARY KEY,
            url TEXT NOT NULL,
            status TEXT NOT NULL,
            events_json TEXT NOT NULL,
            error TEXT,
            fetched_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Cache state

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                self._upsert_meta(conn, key, value)
                conn.commit()

    @staticmethod
    def _upsert_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            """
            INSERT INTO app_meta(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (str(key), str(value), _utc_now()),
        )

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def delete_meta(self, key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM app_meta WHERE key = ?", (str(key),))
                conn.commit()

    def delete_meta_prefix(self, prefix: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM app_meta WHERE substr(key, 1, ?) = ?",
                    (len(prefix), prefix),
                )
                conn.commit()
                return int(cursor.rowcount)

    # Object index

    @staticmethod
    def _replace_namespace(conn: sqlite3.Connection, namespace: str, records: Sequence[dict[str, Any]]) -> int:
        conn.execute("DELETE FROM indexed_objects WHERE namespace = ?", (namespace,))
        # Duplicate (tag, ref) pairs keep the last record written.
        conn.executemany(
            """
            INSERT OR REPLACE INTO indexed_objects(namespace, tag, ref, position, value_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    namespace,
                    str(record["tag"]),
                    str(record["ref"]),
                    position,
                    json.dumps(record, ensure_ascii=False),
                )
                for position, record in enumerate(records)
            ],
        )
        row = conn.execute("SELECT COUNT(*) FROM indexed_objects WHERE namespace = ?", (namespace,)).fetchone()
        return int(row[0])

    def index_objects(self, namespace: str, records: Sequence[dict[str, Any]]) -> int:
        """Replace every object stored under ``namespace`` with ``records``; returns the stored count."""
        with self._lock:
            with self._connect() as conn:
                count = self._replace_namespace(conn, namespace, records)
                conn.commit()
        return count

    def query_objects(self, prefix: Sequence[str]) -> list[dict[str, Any]]:
        """Return ``{"key": (namespace, tag, ref), "value": record}`` items whose key starts with ``prefix``."""
        prefix = tuple(prefix)
        if len(prefix) > len(INDEX_KEY_COLUMNS):
            raise ValueError(f"index key prefix too long: {prefix!r}")
        where = " AND ".join(f"{column} = ?" for column in INDEX_KEY_COLUMNS[: len(prefix)]) or "1 = 1"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT namespace, tag, ref, value_json
                    FROM indexed_objects
                    WHERE {where}
                    ORDER BY namespace, position
                    """,
                    prefix,
                ).fetchall()
        return [
            {
                "key": (row["namespace"], row["tag"], row["ref"]),
                "value": json.loads(row["value_json"]),
            }
            for row in rows
        ]

    def batch_delete(self, keys: Iterable[Sequence[str]]) -> int:
        params = [tuple(key) for key in keys]
        for key in params:
            if len(key) != len(INDEX_KEY_COLUMNS):
                raise ValueError(f"invalid index key: {key!r}")
        if not params:
            return 0
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    "DELETE FROM indexed_objects WHERE namespace = ? AND tag = ? AND ref = ?",
                    params,
                )
                conn.commit()
        return len(params)

    # Source snapshots

    def get_source_snapshot(self, source_key: str) -> SourceSnapshot | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT source_key, url, status, events_json, error, fetched_at
                    FROM source_snapshots
                    WHERE source_key = ?
                    """,
                    (source_key,),
                ).fetchone()
        if row is None:
            return None
        return SourceSnapshot(
            source_key=row["source_key"],
            url=row["url"],
            status=row["status"],
            events=json.loads(row["events_json"] or "[]"),
            error=str(row["error"] or ""),
            fetched_at=row["fetched_at"],
        )

    def clear_source_snapshots(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM source_snapshots")
                conn.commit()

    def commit_sync_pass(
        self,
        *,
        namespace: str,
        records: Sequence[dict[str, Any]],
        snapshots: Sequence[SourceSnapshot],
        timestamps: dict[str, int],
        keep_source_keys: Sequence[str] | None = None,
    ) -> int:
        """Write one pass atomically: index contents, fetched snapshots and cache timestamps.

        Returns the number of records stored in the index; duplicate keys count once.

        When ``keep_source_keys`` is given, snapshots of sources no longer
        configured are dropped in the same transaction.
        """
        with self._lock:
            with self._connect() as conn:
                indexed = self._replace_namespace(conn, namespace, records)
                if keep_source_keys is not None:
                    keys = list(keep_source_keys)
                    placeholders = ", ".join("?" for _ in keys) or "NULL"
                    conn.execute(
                        f"DELETE FROM source_snapshots WHERE source_key NOT IN ({placeholders})",
                        keys,
                    )
                conn.executemany(
                    """
                    INSERT INTO source_snapshots(source_key, url, status, events_json, error, fetched_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(source_key) DO UPDATE SET
                        url = excluded.url,
                        status = excluded.status,
                        events_json = excluded.events_json,
                        error = excluded.error,
                        fetched_at = excluded.fetched_at
                    """,
                    [
                        (
                            snapshot.source_key,
                            snapshot.url,
                            snapshot.status,
                            json.dumps(snapshot.events, ensure_ascii=False),
                            snapshot.error,
                            snapshot.fetched_at or _utc_now(),
                        )
                        for snapshot in snapshots
                    ],
                )
                for key, value in timestamps.items():
                    self._upsert_meta(conn, key, str(int(value)))
                conn.commit()
        return indexed

    # Sync history

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        total_events: int,
        success_count: int,
        total_sources: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, trigger, status, message, duration_ms,
                        total_events, success_count, total_sources
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        trigger,
                        status,
                        message,
                        int(duration_ms),
                        int(total_events),
                        int(success_count),
                        int(total_sources),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms,
                           total_events, success_count, total_sources
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]
