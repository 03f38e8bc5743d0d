from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class Notifier:
    """User-facing notifications. The base implementation only logs."""

    def flash(self, message: str, level: str = "info") -> None:
        logger.log(_LEVELS.get(level, logging.INFO), "notification: %s", message)

    def confirm(self, prompt: str) -> bool:
        # Without an interactive surface destructive actions are refused.
        logger.info("confirmation declined (non-interactive): %s", prompt)
        return False


class RecordingNotifier(Notifier):
    """Keeps the most recent notifications for the admin API."""

    def __init__(self, max_entries: int = 50) -> None:
        self._entries: deque[dict[str, Any]] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def flash(self, message: str, level: str = "info") -> None:
        super().flash(message, level)
        with self._lock:
            self._entries.append(
                {
                    "message": message,
                    "level": level,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                }
            )

    def recent(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            entries = list(self._entries)
        return list(reversed(entries))[: max(1, limit)]
