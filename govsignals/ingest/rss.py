"""RSS/Atom feed dialect."""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone

import feedparser

from govsignals.errors import FeedFetchError
from govsignals.ingest import register_dialect
from govsignals.ingest.base import BaseDialect, build_item
from govsignals.ingest.text import parse_datetime
from govsignals.models import FeedSource, RawItem

logger = logging.getLogger(__name__)


@register_dialect("rss")
class RSSDialect(BaseDialect):
    """Parse RSS 2.0 / Atom documents with feedparser."""

    @property
    def name(self) -> str:
        return "rss"

    def parse(self, raw: bytes, source: FeedSource, language: str) -> list[RawItem]:
        feed = feedparser.parse(raw)

        # feedparser is lenient; only give up when nothing usable came back
        if getattr(feed, "bozo", False) and not feed.entries:
            exc = getattr(feed, "bozo_exception", None)
            raise FeedFetchError(f"Unparseable feed: {exc}", kind="parse")

        items = []
        for entry in feed.entries:
            body = entry.get("summary", "") or entry.get("description", "")
            if not body and entry.get("content"):
                body = entry["content"][0].get("value", "")
            item = build_item(
                source,
                language,
                title=entry.get("title", ""),
                body=body,
                link=entry.get("link", ""),
                guid=entry.get("id", ""),
                published_at=_entry_published(entry),
            )
            if item is not None:
                items.append(item)

        dropped = len(feed.entries) - len(items)
        if dropped:
            logger.debug("%s/%s: dropped %d untitled entries", source.id, language, dropped)
        return items


def _entry_published(entry) -> datetime | None:
    for key in ("published_parsed", "updated_parsed"):
        value = entry.get(key)
        if value:
            try:
                return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                continue
    return parse_datetime(entry.get("published") or entry.get("updated"))
