"""Body backfill: extract the page behind a feed link using trafilatura."""

from __future__ import annotations

import asyncio
import logging

import httpx
import trafilatura

logger = logging.getLogger(__name__)


async def extract_content(url: str, timeout: float = 15, user_agent: str | None = None) -> str | None:
    """Extract main text from a URL. Returns None on any failure."""
    if not url.startswith(("http://", "https://")):
        return None
    try:
        html = await _fetch_html(url, timeout, user_agent)
        if not html:
            return None
        return await asyncio.to_thread(
            trafilatura.extract, html, include_comments=False, include_tables=False,
        )
    except Exception:
        logger.debug("Extraction failed for %s", url)
        return None


async def _fetch_html(url: str, timeout: float, user_agent: str | None) -> str | None:
    headers = {"User-Agent": user_agent} if user_agent else {}
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, headers=headers) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.text
