"""Command-line interface for mailmirror.

This module provides headless helpers around the cache: a one-shot sync
pass, label listing, search, stats and a raw message inspector.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from mailmirror import __version__
from mailmirror.config import Settings, get_settings
from mailmirror.exceptions import MailMirrorError
from mailmirror.gmail import GmailGateway
from mailmirror.store import CacheStore
from mailmirror.sync import Reconciler, SyncStatus

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> TextIO | None:
    """Configure structlog at the configured level.

    Logs go to ``settings.log_file`` when set, otherwise to stderr so command
    output on stdout stays clean.

    Returns:
        The opened log file, which the caller closes with
        :func:`close_log_file`, or None when logging to stderr.
    """

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    if settings.debug:
        level = logging.DEBUG

    log_file: TextIO | None = None
    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        log_file = settings.log_file.open("a", encoding="utf-8")

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(file=log_file or sys.stderr),
    )
    return log_file


def close_log_file(log_file: TextIO | None) -> None:
    """Point structlog back at stderr and close ``log_file``."""

    if log_file is None:
        return
    structlog.configure(logger_factory=structlog.WriteLoggerFactory(file=sys.stderr))
    log_file.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailmirror", description="Local-first Gmail cache")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite cache (default: settings db_path)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Run one reconciliation pass against Gmail")
    sync_parser.add_argument(
        "--label",
        action="append",
        dest="labels",
        default=None,
        help="Label id to sync (repeatable; default: settings sync_label_ids or all labels)",
    )

    subparsers.add_parser("labels", help="List cached labels")

    search_parser = subparsers.add_parser("search", help="Full-text search of the cache")
    search_parser.add_argument("term", help="Words to look for")
    search_parser.add_argument("--limit", type=int, default=25, help="Max results")

    subparsers.add_parser("stats", help="Show cache stats")

    inspect_parser = subparsers.add_parser(
        "inspect",
        help="Show the raw bodies of the newest message whose sender or subject matches",
    )
    inspect_parser.add_argument("query", help="Substring of the sender or subject")

    return parser


def _open_store(settings: Settings, db_path: Path | None) -> CacheStore:
    store = CacheStore(db_path or settings.db_path, busy_timeout=settings.db_busy_timeout_seconds)
    store.initialize()
    return store


async def _cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    store = _open_store(settings, args.db)

    gateway = GmailGateway(settings)
    await gateway.authenticate()

    reconciler = Reconciler(
        gateway,
        store,
        SyncStatus(),
        page_size=settings.sync_page_size,
        label_ids=args.labels or settings.sync_label_ids,
        storage_retries=settings.sync_storage_retries,
    )
    report = await reconciler.run_pass()

    print(
        f"Synced {report.labels} labels: {report.fetched} fetched, {report.linked} linked, "
        f"{report.unlinked} unlinked, {report.read_updates} read-state updates"
    )
    for failure in report.failures:
        print(f"  failed: {failure}", file=sys.stderr)
    return 0 if report.ok else 1


def _cmd_labels(args: argparse.Namespace, settings: Settings) -> int:
    store = _open_store(settings, args.db)
    for label in store.list_labels():
        print(f"{label.id}\t{label.label_type.value}\t{label.display_name}")
    return 0


def _cmd_search(args: argparse.Namespace, settings: Settings) -> int:
    store = _open_store(settings, args.db)
    for m in store.search(args.term, limit=args.limit):
        state = "READ" if m.is_read else "UNREAD"
        sender = m.from_address or "(unknown sender)"
        print(f"{state}\t{m.received_at.isoformat()}\t{sender}\t{m.subject or ''}")
    return 0


def _cmd_stats(args: argparse.Namespace, settings: Settings) -> int:
    store = _open_store(settings, args.db)
    stats = store.stats()
    print(f"Total messages: {stats.total_messages}")
    print(f"Unread messages: {stats.unread_messages}")
    print(f"Labels: {stats.label_count}")
    if stats.oldest and stats.newest:
        print(f"Date range: {stats.oldest.date().isoformat()} -> {stats.newest.date().isoformat()}")
    return 0


def _cmd_inspect(args: argparse.Namespace, settings: Settings) -> int:
    store = _open_store(settings, args.db)
    matches = store.find_messages(args.query, limit=1)
    if not matches:
        print(f"No message matches '{args.query}'", file=sys.stderr)
        return 1

    m = matches[0]
    print(f"ID: {m.id}")
    print(f"Thread: {m.thread_id}")
    print(f"From: {m.from_address}")
    print(f"To: {m.to_address}")
    print(f"Subject: {m.subject}")
    print(f"Date: {m.received_at.isoformat()}")
    print(f"Labels: {', '.join(m.label_ids)}")
    print("\n--- Plain body ---")
    print(m.body_plain or "(none)")
    print("\n--- HTML body ---")
    print(m.body_html or "(none)")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the mailmirror CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()
    parser = _build_parser()
    parsed = parser.parse_args(args)

    log_file = configure_logging(settings)
    logger.info("mailmirror_started", version=__version__, command=parsed.command, debug=settings.debug)

    try:
        return _run_command(parsed, settings)
    except MailMirrorError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        close_log_file(log_file)


def _run_command(parsed: argparse.Namespace, settings: Settings) -> int:
    if parsed.command == "sync":
        return asyncio.run(_cmd_sync(parsed, settings))
    if parsed.command == "labels":
        return _cmd_labels(parsed, settings)
    if parsed.command == "search":
        return _cmd_search(parsed, settings)
    if parsed.command == "stats":
        return _cmd_stats(parsed, settings)
    if parsed.command == "inspect":
        return _cmd_inspect(parsed, settings)

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
