import unittest

from icalsync.models import DEFAULT_WATCH_INTERVAL_SECONDS
from icalsync.source_registry import validate_sources, watched_sources


class SourceRegistryTests(unittest.TestCase):
    def test_missing_or_malformed_config_yields_no_sources(self) -> None:
        self.assertEqual(validate_sources(None), [])
        self.assertEqual(validate_sources([]), [])
        with self.assertLogs("icalsync.source_registry", level="ERROR"):
            self.assertEqual(validate_sources({"url": "https://example.com/a.ics"}), [])

    def test_entries_without_string_url_are_dropped(self) -> None:
        raw = [
            {"url": "https://example.com/work.ics", "name": "Work"},
            {"name": "No URL"},
            {"url": 42},
            "https://example.com/plain-string.ics",
            {"url": "   "},
        ]
        with self.assertLogs("icalsync.source_registry", level="ERROR") as logs:
            sources = validate_sources(raw)
        self.assertEqual([source.url for source in sources], ["https://example.com/work.ics"])
        self.assertEqual(sources[0].name, "Work")
        self.assertEqual(len(logs.records), 4)

    def test_optional_fields_are_kept_only_when_strings(self) -> None:
        sources = validate_sources(
            [
                {
                    "url": "https://example.com/private.ics",
                    "name": 7,
                    "username": "alice",
                    "password": "secret",
                }
            ]
        )
        self.assertIsNone(sources[0].name)
        self.assertEqual(sources[0].username, "alice")
        self.assertTrue(sources[0].has_credentials)
        self.assertEqual(sources[0].identifier, "https://example.com/private.ics")

    def test_watch_only_applies_to_file_sources(self) -> None:
        with self.assertLogs("icalsync.source_registry", level="WARNING"):
            sources = validate_sources(
                [
                    {"url": "file:///home/me/personal.ics", "watch": True, "watchInterval": 10},
                    {"url": "https://example.com/work.ics", "watch": True},
                ]
            )
        self.assertTrue(sources[0].is_watched)
        self.assertEqual(sources[0].watch_interval, 10)
        self.assertFalse(sources[1].watch)
        self.assertEqual(watched_sources(sources), [sources[0]])

    def test_invalid_watch_interval_falls_back_to_default(self) -> None:
        for raw_interval in (0, -5, "15", True, 2.5):
            with self.subTest(raw_interval=raw_interval):
                with self.assertLogs("icalsync.source_registry", level="WARNING"):
                    sources = validate_sources(
                        [{"url": "file:///tmp/cal.ics", "watch": True, "watch_interval": raw_interval}]
                    )
                self.assertEqual(sources[0].watch_interval, DEFAULT_WATCH_INTERVAL_SECONDS)


if __name__ == "__main__":
    unittest.main()
