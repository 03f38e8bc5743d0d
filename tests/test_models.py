import hashlib
import unittest

from icalsync.models import (
    CACHE_KEY,
    DEFAULT_CACHE_DURATION_SECONDS,
    AppConfig,
    CalendarEvent,
    Source,
    source_cache_key,
)


class ModelsTests(unittest.TestCase):
    def test_app_config_defaults(self) -> None:
        cfg = AppConfig.from_dict({})
        self.assertEqual(cfg.sources, [])
        self.assertEqual(cfg.cache_duration, DEFAULT_CACHE_DURATION_SECONDS)
        self.assertEqual(cfg.cache_duration_ms, DEFAULT_CACHE_DURATION_SECONDS * 1000)
        self.assertEqual(cfg.timezone, "")

    def test_app_config_accepts_camel_case_cache_duration(self) -> None:
        cfg = AppConfig.from_dict({"cacheDuration": 60, "sources": "not-a-list"})
        self.assertEqual(cfg.cache_duration, 60)
        self.assertEqual(cfg.sources, [])

    def test_app_config_invalid_numbers_use_defaults(self) -> None:
        with self.assertLogs("icalsync.models", level="WARNING") as logs:
            cfg = AppConfig.from_dict({"cache_duration": "6h", "http_timeout_seconds": True})
        self.assertEqual(cfg.cache_duration, DEFAULT_CACHE_DURATION_SECONDS)
        self.assertEqual(cfg.http_timeout_seconds, 30)
        self.assertEqual(len(logs.output), 2)

    def test_app_config_numeric_strings_and_bounds(self) -> None:
        cfg = AppConfig.from_dict({"cache_duration": "600", "http_timeout_seconds": 0})
        self.assertEqual(cfg.cache_duration, 600)
        self.assertEqual(cfg.http_timeout_seconds, 1)
        self.assertEqual(AppConfig.from_dict({"cache_duration": -5}).cache_duration, 0)

    def test_source_cache_key_hashes_url(self) -> None:
        url = "file:///home/me/personal.ics"
        expected = f"{CACHE_KEY}:{hashlib.sha256(url.encode('utf-8')).hexdigest()}"
        self.assertEqual(source_cache_key(url), expected)
        self.assertEqual(Source(url=url).cache_key, expected)

    def test_source_scheme_and_watch(self) -> None:
        self.assertEqual(Source(url="HTTPS://example.com/a.ics").scheme, "https")
        self.assertTrue(Source(url="file:///tmp/a.ics", watch=True).is_watched)
        self.assertFalse(Source(url="https://example.com/a.ics", watch=True).is_watched)

    def test_calendar_event_round_trips_extra_fields(self) -> None:
        event = CalendarEvent(
            ref="abc",
            summary="Standup",
            start="2025-03-01T09:00:00",
            source_name="Work",
            extra={"status": "CONFIRMED"},
        )
        payload = event.to_dict()
        self.assertEqual(payload["tag"], "ical-event")
        self.assertEqual(payload["status"], "CONFIRMED")
        self.assertEqual(CalendarEvent.from_dict(payload), event)


if __name__ == "__main__":
    unittest.main()
