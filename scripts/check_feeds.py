#!/usr/bin/env python3
"""Live check of configured government feeds.

Run from a machine with internet access (not sandboxed):

    python scripts/check_feeds.py
    python scripts/check_feeds.py --feed td_notices
    python scripts/check_feeds.py --feed hko_warnings --language zh-TW
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from govsignals.config import load_config, load_feed_sources
from govsignals.ingest.fetcher import FeedFetcher
from govsignals.models import FetchResult


def _print_result(result: FetchResult) -> None:
    print(f"\n{'=' * 60}")
    if result.error:
        print(f"  {result.source_id}/{result.language}: {result.error.kind.upper()}")
        print(f"  {result.error.message}")
        print(f"{'=' * 60}")
        return
    print(f"  {result.source_id}/{result.language}: {len(result.items)} items")
    print(f"{'=' * 60}")
    for i, item in enumerate(result.items[:10], 1):
        print(f"\n  {i}. {item.title[:80]}")
        print(f"     Link:  {item.link[:80]}")
        print(f"     Date:  {item.source_published_at or 'N/A'}")
        body_preview = (item.body or "")[:120].replace("\n", " ")
        print(f"     Body:  {body_preview}...")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Fetch configured feeds and print parsed items")
    parser.add_argument("--feed", default=None, help="Only check this feed slug")
    parser.add_argument("--language", default=None, help="Only check this language")
    parser.add_argument(
        "--config", default=None,
        help="Config file path (default: config.yaml or CONFIG_PATH env)",
    )
    args = parser.parse_args()

    config_path = args.config or os.environ.get("CONFIG_PATH", "config.yaml")
    config = load_config(config_path)
    fetcher = FeedFetcher(config)

    failures = 0
    for source in load_feed_sources(config):
        if args.feed and source.base_slug != args.feed:
            continue
        for language in sorted(source.language_urls):
            if args.language and language != args.language:
                continue
            result = await fetcher.fetch(source, language)
            _print_result(result)
            failures += 0 if result.ok else 1

    print(f"\nDone ({failures} failures).")


if __name__ == "__main__":
    asyncio.run(main())
