from __future__ import annotations

from datetime import date
from typing import Any

from icalendar import Calendar as ICalendar

PROPERTY_ALIASES = {
    "dtstart": "start",
    "dtend": "end",
    "last-modified": "last_modified",
}


class CalendarParseError(ValueError):
    pass


def _decode(raw: Any) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


def property_key(name: str) -> str:
    lowered = str(name).lower()
    return PROPERTY_ALIASES.get(lowered, lowered).replace("-", "_")


def _plain_value(value: Any) -> Any:
    if isinstance(value, list):
        return [_plain_value(item) for item in value]
    if isinstance(value, date):
        return value
    if hasattr(value, "dt"):
        # Date wrappers stay intact so the normalizer sees their metadata.
        if isinstance(value.dt, date):
            return value
        return _decode(value.to_ical())
    if hasattr(value, "dts"):
        return [_plain_value(item) for item in value.dts]
    if hasattr(value, "cats"):
        return [str(item) for item in value.cats]
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return float(value)
    if isinstance(value, str):
        return str(value)
    if isinstance(value, dict):
        return {property_key(key): _plain_value(item) for key, item in value.items()}
    if hasattr(value, "to_ical"):
        return _decode(value.to_ical())
    return str(value)


def parse_calendar(raw_ical: str) -> list[dict[str, Any]]:
    """Parse iCalendar text into one property dict per VEVENT.

    Keys are lower-case with ``-`` replaced by ``_``; DTSTART, DTEND and
    LAST-MODIFIED become ``start``, ``end`` and ``last_modified``.
    """
    try:
        calendars = ICalendar.from_ical(raw_ical, multiple=True)
    except (ValueError, IndexError, KeyError) as exc:
        raise CalendarParseError(f"invalid iCalendar data: {exc}") from exc

    events: list[dict[str, Any]] = []
    for calendar_obj in calendars:
        for component in calendar_obj.walk("VEVENT"):
            events.append({property_key(name): _plain_value(value) for name, value in component.items()})
    return events
