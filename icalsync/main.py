from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

from icalsync.config_manager import ConfigManager
from icalsync.notifier import Notifier
from icalsync.state_store import StateStore
from icalsync.sync_engine import SyncEngine


class ConsoleNotifier(Notifier):
    def flash(self, message: str, level: str = "info") -> None:
        super().flash(message, level)
        print(message, file=sys.stderr if level == "error" else sys.stdout)

    def confirm(self, prompt: str) -> bool:
        try:
            answer = input(f"{prompt} [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in {"y", "yes"}


def configure_logging() -> None:
    level = os.getenv("ICALSYNC_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="icalsync", description="Sync iCalendar sources into a local event index.")
    parser.add_argument("--config", default=os.getenv("ICALSYNC_CONFIG_PATH", "config.yaml"), help="YAML config path")
    parser.add_argument("--state", default=os.getenv("ICALSYNC_STATE_PATH", "data/state.db"), help="SQLite state path")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run the admin API and the file watcher (default)")
    subparsers.add_parser("sync", help="Sync calendars, respecting the cache")
    subparsers.add_parser("force-sync", help="Sync calendars, bypassing the cache")
    clear_parser = subparsers.add_parser("clear-cache", help="Remove all indexed events and cache state")
    clear_parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    subparsers.add_parser("version", help="Show the version")
    return parser


def _serve(args: argparse.Namespace) -> int:
    os.environ["ICALSYNC_CONFIG_PATH"] = args.config
    os.environ["ICALSYNC_STATE_PATH"] = args.state
    host = os.getenv("ICALSYNC_HOST", "127.0.0.1")
    port = int(os.getenv("ICALSYNC_PORT", "8080"))
    uvicorn.run("icalsync.web_admin:create_app", factory=True, host=host, port=port, reload=False)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = create_parser().parse_args(argv)
    configure_logging()
    command = args.command or "serve"
    if command == "serve":
        return _serve(args)

    engine = SyncEngine(ConfigManager(args.config), StateStore(args.state), notifier=ConsoleNotifier())
    if command == "sync":
        report = engine.run_once()
        return 1 if report.status == "error" else 0
    if command == "force-sync":
        report = engine.force_sync()
        return 1 if report.status == "error" else 0
    if command == "clear-cache":
        confirm = (lambda _prompt: True) if args.yes else None
        return 0 if engine.clear_cache(confirm=confirm) else 1
    engine.show_version()
    return 0


if __name__ == "__main__":
    sys.exit(main())
