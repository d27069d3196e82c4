"""Abstract base class for feed dialect parsers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from govsignals.ingest.text import clean_text
from govsignals.models import FeedSource, RawItem


class BaseDialect(ABC):
    """Turns one fetched document into raw items for one language."""

    @abstractmethod
    def parse(self, raw: bytes, source: FeedSource, language: str) -> list[RawItem]:
        """Parse a feed document. Raises FeedFetchError(kind="parse") if unreadable."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Dialect name as used in feed configuration."""
        ...


def build_item(
    source: FeedSource,
    language: str,
    title: str | None,
    body: str | None = None,
    link: str | None = None,
    guid: str | None = None,
    published_at: datetime | None = None,
) -> RawItem | None:
    """Validate loosely-typed entry fields into a RawItem, or None if unusable."""
    title = clean_text(title)
    if not title:
        return None
    link = (link or "").strip()
    return RawItem(
        source_id=source.id,
        language=language,
        title=title,
        body=clean_text(body),
        link=link,
        guid=(guid or link).strip(),
        source_published_at=published_at,
    )
