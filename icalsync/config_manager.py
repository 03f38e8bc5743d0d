from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from icalsync.models import AppConfig, Source, default_app_config
from icalsync.source_registry import validate_sources

MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def preserve_masked_passwords(incoming: Any, stored: list[Any]) -> Any:
    """Keep the stored password of a source sent back with ``***`` or an empty password.

    Sources are matched by URL; a blank password for an unknown URL is dropped.
    """
    if not isinstance(incoming, list):
        return incoming
    known = {
        entry.get("url"): entry.get("password")
        for entry in stored
        if isinstance(entry, dict) and entry.get("password")
    }
    result: list[Any] = []
    for entry in incoming:
        if isinstance(entry, dict) and "password" in entry:
            entry = dict(entry)
            if str(entry["password"] or "").strip() in {"", MASK}:
                if known.get(entry.get("url")):
                    entry["password"] = known[entry.get("url")]
                else:
                    del entry["password"]
        result.append(entry)
    return result


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed settings: the calendar source list plus cache and timezone options."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        return AppConfig.from_dict(data if isinstance(data, dict) else {})

    def sources(self) -> list[Source]:
        return validate_sources(self.load().sources)

    def save(self, config: AppConfig) -> None:
        data = config.to_dict()
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
            _write_yaml(tmp_path, data)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                _write_yaml(self.config_path, data)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge ``payload`` into the stored settings; a ``sources`` list replaces the old one."""
        with self._lock:
            current = self.load().to_dict()
            if "sources" in payload:
                payload = {**payload, "sources": preserve_masked_passwords(payload["sources"], current["sources"])}
            config = AppConfig.from_dict(_deep_merge(current, payload))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for entry in config["sources"]:
            if isinstance(entry, dict) and entry.get("password"):
                entry["password"] = MASK
        return config
