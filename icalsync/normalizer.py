from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Mapping
from datetime import date, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalsync.ics_parser import parse_calendar
from icalsync.models import EVENT_TAG, CalendarEvent, Source, parse_iso_datetime

logger = logging.getLogger(__name__)

LOCAL_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
ISO_DATETIME_PATTERN = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?(Z|[+-]\d{2}:?\d{2})?$"
)
CORE_FIELDS = ("uid", "summary", "description", "location", "start", "end", "created", "last_modified")


def resolve_timezone(name: str | None) -> tzinfo | None:
    """Return the zone used for rendering; ``None`` means the system local zone."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to system local time", name)
        return None


def _hash_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _raw_value(value: Any) -> str:
    if value is None:
        return ""
    to_ical = getattr(value, "to_ical", None)
    if callable(to_ical):
        raw = to_ical()
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def compute_ref(parsed_event: Mapping[str, Any]) -> str:
    """Stable identity: start value plus UID, or summary when the feed has no UID.

    Including the start keeps recurring instances that share one UID apart.
    """
    identity = parsed_event.get("uid") or parsed_event.get("summary") or ""
    return _hash_text(f"{_raw_value(parsed_event.get('start'))}{identity}")


def to_local_date_string(value: date, tz: tzinfo | None = None) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(tz)
        return value.strftime(LOCAL_DATE_FORMAT)
    return f"{value.isoformat()}T00:00:00"


def _wrapped_date(value: Any) -> date | None:
    if isinstance(value, Mapping):
        inner = value.get("date")
    else:
        inner = getattr(value, "dt", None)
    return inner if isinstance(inner, date) else None


def normalize_dates(value: Any, tz: tzinfo | None = None) -> Any:
    if isinstance(value, date):
        return to_local_date_string(value, tz)
    wrapped = _wrapped_date(value)
    if wrapped is not None:
        return to_local_date_string(wrapped, tz)
    if isinstance(value, str):
        if ISO_DATETIME_PATTERN.match(value):
            try:
                return to_local_date_string(parse_iso_datetime(value), tz)
            except ValueError:
                return value
        return value
    if isinstance(value, (list, tuple)):
        return [normalize_dates(item, tz) for item in value]
    if isinstance(value, Mapping):
        return {key: normalize_dates(item, tz) for key, item in value.items()}
    return value


def normalize_event(parsed_event: Mapping[str, Any], source: Source, tz: tzinfo | None = None) -> CalendarEvent:
    fields = normalize_dates(dict(parsed_event), tz)
    extra = {key: item for key, item in fields.items() if key not in CORE_FIELDS}
    return CalendarEvent(
        ref=compute_ref(parsed_event),
        tag=EVENT_TAG,
        uid=fields.get("uid"),
        summary=fields.get("summary"),
        description=fields.get("description"),
        location=fields.get("location"),
        start=fields.get("start"),
        end=fields.get("end"),
        created=fields.get("created"),
        last_modified=fields.get("last_modified"),
        source_name=source.name,
        extra=extra,
    )


def normalize_calendar(raw_ical: str, source: Source, tz: tzinfo | None = None) -> list[CalendarEvent]:
    return [normalize_event(parsed, source, tz) for parsed in parse_calendar(raw_ical)]
