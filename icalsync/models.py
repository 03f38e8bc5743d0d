from __future__ import annotations

import hashlib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


APP_VERSION = "0.2.0"

EVENT_TAG = "ical-event"
INDEX_NAMESPACE = "$icalendar"
CACHE_KEY = "icalendar:lastSync"

DEFAULT_CACHE_DURATION_SECONDS = 21600
DEFAULT_WATCH_INTERVAL_SECONDS = 30
DEFAULT_HTTP_TIMEOUT_SECONDS = 30

TRIGGER_STARTUP = "startup"
TRIGGER_MANUAL = "manual"
TRIGGER_FORCED = "forced"
TRIGGER_WATCH = "watch"


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _coerce_seconds(key: str, raw: Any, default: int, minimum: int) -> int:
    if raw is None:
        return default
    try:
        # bool is an int subclass; "cache_duration: true" is not a duration.
        if isinstance(raw, bool):
            raise ValueError(raw)
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using %ss", key, raw, default)
        return default
    return max(minimum, value)


def source_cache_key(url: str) -> str:
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
    return f"{CACHE_KEY}:{digest}"


@dataclass
class Source:
    url: str
    name: str | None = None
    username: str | None = None
    password: str | None = None
    watch: bool = False
    watch_interval: int = DEFAULT_WATCH_INTERVAL_SECONDS

    @property
    def scheme(self) -> str:
        return urlparse(self.url).scheme.lower()

    @property
    def is_watched(self) -> bool:
        return self.watch and self.scheme == "file"

    @property
    def identifier(self) -> str:
        return self.name or self.url

    @property
    def cache_key(self) -> str:
        return source_cache_key(self.url)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and bool(self.password)


@dataclass
class AppConfig:
    sources: list[Any] = field(default_factory=list)
    cache_duration: int = DEFAULT_CACHE_DURATION_SECONDS
    timezone: str = ""
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_sources = data.get("sources")
        return cls(
            # Entries are validated by the source registry on every pass.
            sources=list(raw_sources) if isinstance(raw_sources, list) else [],
            cache_duration=_coerce_seconds(
                "cache_duration",
                data.get("cache_duration", data.get("cacheDuration")),
                DEFAULT_CACHE_DURATION_SECONDS,
                minimum=0,
            ),
            timezone=str(data.get("timezone", "") or "").strip(),
            http_timeout_seconds=_coerce_seconds(
                "http_timeout_seconds",
                data.get("http_timeout_seconds"),
                DEFAULT_HTTP_TIMEOUT_SECONDS,
                minimum=1,
            ),
        )

    @property
    def cache_duration_ms(self) -> int:
        return self.cache_duration * 1000

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarEvent:
    ref: str
    tag: str = EVENT_TAG
    uid: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: str | None = None
    end: str | None = None
    created: str | None = None
    last_modified: str | None = None
    source_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "ref": self.ref,
                "tag": self.tag,
                "uid": self.uid,
                "summary": self.summary,
                "description": self.description,
                "location": self.location,
                "start": self.start,
                "end": self.end,
                "created": self.created,
                "last_modified": self.last_modified,
                "source_name": self.source_name,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CalendarEvent":
        known = {
            "ref",
            "tag",
            "uid",
            "summary",
            "description",
            "location",
            "start",
            "end",
            "created",
            "last_modified",
            "source_name",
        }
        return cls(
            ref=str(payload.get("ref", "")),
            tag=str(payload.get("tag", EVENT_TAG)),
            uid=payload.get("uid"),
            summary=payload.get("summary"),
            description=payload.get("description"),
            location=payload.get("location"),
            start=payload.get("start"),
            end=payload.get("end"),
            created=payload.get("created"),
            last_modified=payload.get("last_modified"),
            source_name=payload.get("source_name"),
            extra={key: value for key, value in payload.items() if key not in known},
        )


@dataclass
class SyncReport:
    status: str
    message: str
    trigger: str
    total_events: int = 0
    success_count: int = 0
    total_sources: int = 0
    fetched_sources: list[str] = field(default_factory=list)
    failed_sources: list[str] = field(default_factory=list)
    duration_ms: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "trigger": self.trigger,
            "total_events": self.total_events,
            "success_count": self.success_count,
            "total_sources": self.total_sources,
            "fetched_sources": list(self.fetched_sources),
            "failed_sources": list(self.failed_sources),
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
