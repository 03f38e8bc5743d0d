from __future__ import annotations

import logging
from typing import Any

from icalsync.models import DEFAULT_WATCH_INTERVAL_SECONDS, Source

logger = logging.getLogger(__name__)


def _optional_text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _watch_interval(entry: dict[str, Any]) -> int:
    raw = entry.get("watch_interval", entry.get("watchInterval"))
    if raw is None:
        return DEFAULT_WATCH_INTERVAL_SECONDS
    # bool is an int subclass; "watch_interval: true" is not an interval.
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        logger.warning(
            "Invalid watch interval %r for %s, using %ss",
            raw,
            entry.get("url"),
            DEFAULT_WATCH_INTERVAL_SECONDS,
        )
        return DEFAULT_WATCH_INTERVAL_SECONDS
    return raw


def validate_sources(raw_sources: Any) -> list[Source]:
    """Return the well-formed calendar sources from raw configuration input.

    Never raises: a missing or malformed list yields an empty result, and
    entries without a string ``url`` are dropped with a warning.
    """
    if raw_sources is None:
        return []
    if not isinstance(raw_sources, list):
        logger.error("Invalid sources configuration (expected a list): %r", raw_sources)
        return []

    validated: list[Source] = []
    for entry in raw_sources:
        if not isinstance(entry, dict) or not isinstance(entry.get("url"), str):
            logger.error("Invalid source (missing url): %r", entry)
            continue
        url = entry["url"].strip()
        if not url:
            logger.error("Invalid source (empty url): %r", entry)
            continue
        source = Source(
            url=url,
            name=_optional_text(entry.get("name")),
            username=_optional_text(entry.get("username")),
            password=_optional_text(entry.get("password")),
            watch=bool(entry.get("watch", False)),
            watch_interval=_watch_interval(entry),
        )
        if source.watch and source.scheme != "file":
            logger.warning("Ignoring watch flag for non-file source %s", source.identifier)
            source.watch = False
        validated.append(source)
    return validated


def watched_sources(sources: list[Source]) -> list[Source]:
    return [source for source in sources if source.is_watched]
