"""Fetch one feed URL in one language and parse it into raw items."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from email.utils import format_datetime

import httpx

from govsignals.config import get_fetch_config
from govsignals.errors import FeedFetchError
from govsignals.ingest import DIALECTS
from govsignals.ingest.scraper import extract_content
from govsignals.models import FeedSource, FetchError, FetchResult, RawItem, utcnow

logger = logging.getLogger(__name__)


class FeedFetcher:
    """Retrieve and parse feeds, isolating failures per feed and language.

    No retries happen here: a failed fetch is retried by the next scheduled
    run, which keeps the duration of a single run bounded.
    """

    def __init__(self, config: dict):
        self.config = config
        self.settings = get_fetch_config(config)

    def is_fresh(self, source: FeedSource, language: str, now: datetime | None = None) -> bool:
        """True when the cursor is recent enough to skip this language for the run."""
        if source.refresh_minutes <= 0:
            return False
        cursor = source.last_fetch_cursor.get(language)
        if cursor is None:
            return False
        now = now or utcnow()
        return now - cursor < timedelta(minutes=source.refresh_minutes)

    async def fetch(self, source: FeedSource, language: str) -> FetchResult:
        """Fetch and parse ``source`` for ``language``. Never raises."""
        result = FetchResult(source_id=source.id, language=language)
        url = source.language_urls.get(language)
        if not url:
            result.error = FetchError(source.id, language, "config", "No URL configured")
            return result

        dialect_cls = DIALECTS.get(source.dialect)
        if dialect_cls is None:
            result.error = FetchError(
                source.id, language, "config", f"Unknown dialect '{source.dialect}'",
            )
            return result

        headers = {"User-Agent": self.settings["user_agent"]}
        cursor = source.last_fetch_cursor.get(language)
        if cursor is not None:
            headers["If-Modified-Since"] = format_datetime(cursor, usegmt=True)

        try:
            raw = await self._download(url, headers)
            if raw is None:
                result.not_modified = True
                logger.debug("%s/%s not modified since %s", source.id, language, cursor)
                return result
            result.items = dialect_cls().parse(raw, source, language)
        except FeedFetchError as exc:
            result.error = FetchError(source.id, language, exc.kind, str(exc))
        except httpx.TimeoutException as exc:
            result.error = FetchError(
                source.id, language, "timeout", f"Timed out fetching {url}: {exc}",
            )
        except httpx.HTTPStatusError as exc:
            result.error = FetchError(
                source.id, language, "http",
                f"HTTP {exc.response.status_code} from {url}",
            )
        except httpx.HTTPError as exc:
            result.error = FetchError(
                source.id, language, "network", f"{type(exc).__name__}: {exc}",
            )
        except Exception as exc:
            # Parser bugs on unexpected shapes must not take down sibling fetches
            logger.exception("Unexpected failure parsing %s/%s", source.id, language)
            result.error = FetchError(
                source.id, language, "parse", f"{type(exc).__name__}: {exc}",
            )

        if result.error:
            logger.warning(
                "Feed %s/%s failed (%s): %s",
                source.id, language, result.error.kind, result.error.message,
            )
            result.items = []
            return result

        if self.settings["backfill_body"]:
            await self._backfill(result)

        logger.info("Fetched %d items from %s/%s", len(result.items), source.id, language)
        return result

    async def _download(self, url: str, headers: dict) -> bytes | None:
        """GET the feed. Returns None on 304 Not Modified."""
        async with httpx.AsyncClient(
            timeout=self.settings["timeout_seconds"], follow_redirects=True,
        ) as client:
            resp = await client.get(url, headers=headers)
            if resp.status_code == 304:
                return None
            resp.raise_for_status()
            return resp.content

    async def _backfill(self, result: FetchResult) -> None:
        """Fill short bodies from the linked pages within one shared time budget."""
        min_chars = self.settings["backfill_min_chars"]
        short = [item for item in result.items if len(item.body) < min_chars and item.link]
        short = short[: self.settings["backfill_max_items"]]
        if not short:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*(self._backfill_item(item) for item in short)),
                timeout=self.settings["backfill_budget_seconds"],
            )
        except asyncio.TimeoutError:
            logger.info(
                "Body backfill for %s/%s ran out of time", result.source_id, result.language,
            )

    async def _backfill_item(self, item: RawItem) -> None:
        extracted = await extract_content(
            item.link,
            timeout=min(self.settings["timeout_seconds"], self.settings["backfill_budget_seconds"]),
            user_agent=self.settings["user_agent"],
        )
        if extracted and len(extracted) > len(item.body):
            item.body = extracted
