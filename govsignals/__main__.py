"""CLI entrypoint: python -m govsignals {aggregate|enrich|init-db|sync-feeds|fetch|stats|view}."""

from __future__ import annotations

import asyncio
import hmac
import inspect
import json
import logging
import logging.handlers
import os
import sys
from pathlib import Path

from govsignals.config import (
    get_db_path,
    get_scheduler_secret,
    load_config,
    load_feed_sources,
)
from govsignals.db import (
    get_connection,
    get_public_signals,
    get_recent_runs,
    get_signal_statistics,
    get_stale_feeds,
    init_db,
    sync_feed_sources,
)
from govsignals.errors import ConfigurationError, UnauthorizedTrigger


def setup_logging(config: dict) -> None:
    """Configure logging with console + rotating file output."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console handler (stderr, so JSON summaries on stdout stay parseable)
    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    # File handler (rotate at 5MB, keep 3 backups)
    db_path = get_db_path(config)
    log_dir = Path(db_path).parent
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "govsignals.log"

    file_handler = logging.handlers.RotatingFileHandler(
        str(log_file), maxBytes=5 * 1024 * 1024, backupCount=3,
    )
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("trafilatura").setLevel(logging.WARNING)
    logging.getLogger("feedparser").setLevel(logging.WARNING)


logger = logging.getLogger("govsignals")


def get_option(args: list[str], name: str, default: str | None = None) -> str | None:
    """Read ``--name value`` or ``--name=value`` from ``args``."""
    flag = f"--{name}"
    for i, arg in enumerate(args):
        if arg == flag and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith(flag + "="):
            return arg.split("=", 1)[1]
    return default


def check_trigger(config: dict, token: str | None) -> None:
    """Reject scheduled-run triggers that do not carry the scheduler secret."""
    secret = get_scheduler_secret(config)
    if not secret:
        raise UnauthorizedTrigger("scheduler.secret is not configured")
    if not token or not hmac.compare_digest(token.encode(), secret.encode()):
        raise UnauthorizedTrigger("Invalid scheduler token")


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def cmd_init_db(config: dict, args: list[str]) -> None:
    """Initialize the SQLite database."""
    db_path = get_db_path(config)
    init_db(db_path)
    print(f"Database initialized at {db_path}")


def cmd_sync_feeds(config: dict, args: list[str]) -> None:
    """Write configured feeds into the feed registry."""
    db_path = get_db_path(config)
    init_db(db_path)
    sources = load_feed_sources(config)
    conn = get_connection(db_path)
    try:
        sync_feed_sources(conn, sources)
    finally:
        conn.close()
    print(f"Synced {len(sources)} feeds")


async def cmd_aggregate(config: dict, args: list[str]) -> None:
    """Run one aggregation pass."""
    from govsignals.pipeline import run_aggregation

    check_trigger(config, get_option(args, "token", os.environ.get("SCHEDULER_TOKEN")))
    summary = await run_aggregation(config)
    _print_json(summary.to_dict())


async def cmd_enrich(config: dict, args: list[str]) -> None:
    """Run one enrichment pass over pending signals."""
    from govsignals.pipeline import run_enrichment

    check_trigger(config, get_option(args, "token", os.environ.get("SCHEDULER_TOKEN")))
    summary = await run_enrichment(config)
    _print_json(summary.to_dict())


async def cmd_fetch(config: dict, args: list[str]) -> None:
    """Fetch every configured feed without storing anything (for testing feeds)."""
    from govsignals.ingest.fetcher import FeedFetcher

    fetcher = FeedFetcher(config)
    total = 0
    for source in load_feed_sources(config):
        for language in sorted(source.language_urls):
            result = await fetcher.fetch(source, language)
            if result.error:
                print(f"  {source.id}/{language}: ERROR {result.error.kind} {result.error.message}")
                continue
            print(f"  {source.id}/{language}: {len(result.items)} items")
            total += len(result.items)

    print(f"\nTotal: {total} items fetched")


def cmd_stats(config: dict, args: list[str]) -> None:
    """Show signal totals, stale feeds and recent runs."""
    db_path = get_db_path(config)
    conn = get_connection(db_path)
    try:
        stats = get_signal_statistics(conn)
        stale = get_stale_feeds(conn, float(get_option(args, "stale-hours", "24")))
        runs = get_recent_runs(conn, limit=10)
    finally:
        conn.close()

    print(f"Signals: {stats['total_signals']}")
    for status, count in sorted(stats["by_status"].items()):
        print(f"  {status:<10} {count}")
    completeness = stats["content_completeness"]
    print(
        f"Content: {completeness['multilingual']} multilingual, "
        f"{completeness['english_only']} english-only, {completeness['partial']} partial"
    )
    if stale:
        print(f"\nStale feeds ({len(stale)}):")
        for feed in stale:
            print(f"  {feed['feed']}/{feed['language']} last fetch {feed['last_fetch'] or 'never'}")

    if not runs:
        print("\nNo pipeline runs yet.")
        return

    print()
    header = (
        f"{'Run':>4} {'Kind':<10} {'Status':<10} {'Items':<8} "
        f"{'Stored':<8} {'Errors':<7} {'Cost':>8} {'Started'}"
    )
    print(header)
    print("-" * 80)
    for r in runs:
        print(
            f"{r['id']:>4} {r['kind']:<10} {r['status']:<10} "
            f"{r['items_processed']:<8} {r['signals_stored']:<8} "
            f"{r['error_count']:<7} ${r['cost_usd']:>7.4f} {r['started_at']}"
        )


def cmd_view(config: dict, args: list[str]) -> None:
    """Print the public read view as JSON."""
    conn = get_connection(get_db_path(config))
    try:
        rows = get_public_signals(
            conn,
            limit=int(get_option(args, "limit", "20")),
            category=get_option(args, "category"),
        )
    finally:
        conn.close()
    _print_json(rows)


COMMANDS = {
    "aggregate": cmd_aggregate,
    "enrich": cmd_enrich,
    "init-db": cmd_init_db,
    "sync-feeds": cmd_sync_feeds,
    "fetch": cmd_fetch,
    "stats": cmd_stats,
    "view": cmd_view,
}


def main(argv: list[str] | None = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] not in COMMANDS:
        available = ", ".join(COMMANDS)
        print(f"Usage: python -m govsignals {{{available}}} [--token TOKEN]")
        sys.exit(1)

    command, args = argv[0], argv[1:]
    config = load_config(os.environ.get("CONFIG_PATH", "config.yaml"))
    setup_logging(config)
    handler = COMMANDS[command]

    try:
        if inspect.iscoroutinefunction(handler):
            asyncio.run(handler(config, args))
        else:
            handler(config, args)
    except UnauthorizedTrigger as exc:
        logger.error("Refusing to run '%s': %s", command, exc)
        sys.exit(2)
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
