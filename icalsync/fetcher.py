from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests
from requests.auth import HTTPBasicAuth

from icalsync.models import DEFAULT_HTTP_TIMEOUT_SECONDS, Source

logger = logging.getLogger(__name__)


class FetchErrorKind(str, Enum):
    NETWORK = "network"
    HTTP = "http"
    FILE = "file"
    UNSUPPORTED = "unsupported"


class FetchError(RuntimeError):
    def __init__(self, kind: FetchErrorKind, detail: str, status_code: int | None = None) -> None:
        super().__init__(f"{kind.value}: {detail}")
        self.kind = kind
        self.detail = detail
        self.status_code = status_code


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def file_url_to_path(url: str) -> Path:
    parsed = urlparse(url)
    path = url2pathname(parsed.path)
    if parsed.netloc and parsed.netloc != "localhost":
        # file://server/share/cal.ics
        path = f"//{parsed.netloc}{path}"
    return Path(path)


class CalendarFetcher:
    """Retrieves raw iCalendar text for a source. Performs no retries."""

    def __init__(self, timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds

    def fetch(self, source: Source) -> str:
        scheme = source.scheme
        if scheme in {"http", "https"}:
            return self._fetch_http(source)
        if scheme == "file":
            return self._read_file(source)
        raise FetchError(FetchErrorKind.UNSUPPORTED, f"unsupported URL scheme {scheme!r} for {source.url}")

    def _fetch_http(self, source: Source) -> str:
        auth = HTTPBasicAuth(source.username, source.password) if source.has_credentials else None
        try:
            response = requests.get(
                source.url,
                auth=auth,
                headers={"Accept": "text/calendar, */*;q=0.8"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise FetchError(FetchErrorKind.NETWORK, f"{type(exc).__name__}: {exc}") from exc

        if not response.ok:
            logger.error(
                "HTTP error fetching %s: status=%s reason=%s",
                source.identifier,
                response.status_code,
                response.reason,
            )
            raise FetchError(
                FetchErrorKind.HTTP,
                f"HTTP {response.status_code}: {response.reason}",
                status_code=response.status_code,
            )
        return _decode_raw_ical(response.content)

    def _read_file(self, source: Source) -> str:
        path = file_url_to_path(source.url)
        try:
            return _decode_raw_ical(path.read_bytes())
        except OSError as exc:
            raise FetchError(FetchErrorKind.FILE, f"cannot read {path}: {exc.strerror or exc}") from exc
