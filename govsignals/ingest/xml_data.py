"""Multilingual XML data feeds (one document carries every language).

Items look like::

    <item>
      <Title_EN>...</Title_EN><Title_TC>...</Title_TC><Title_SC>...</Title_SC>
      <Detail_EN>...</Detail_EN>...
      <Link>...</Link>
      <PublicationDate>2025-08-03T10:00:00+08:00</PublicationDate>
    </item>

These documents are often not well-formed (bare ampersands, unquoted
attributes), so they go through lxml's recovering parser.
"""

from __future__ import annotations

import logging

from lxml import etree

from govsignals.errors import FeedFetchError
from govsignals.ingest import register_dialect
from govsignals.ingest.base import BaseDialect, build_item
from govsignals.ingest.text import parse_datetime
from govsignals.models import FeedSource, RawItem

logger = logging.getLogger(__name__)

LANGUAGE_SUFFIX = {"en": "EN", "zh-TW": "TC", "zh-CN": "SC"}

DATE_FIELDS = ("PublicationDate", "IssueDate", "pubDate", "UpdateDate")


def parse_xml(raw: bytes):
    """Parse possibly-malformed XML; raises FeedFetchError if nothing survives."""
    parser = etree.XMLParser(recover=True, resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(raw, parser=parser)
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise FeedFetchError(f"Unparseable XML: {exc}", kind="parse") from exc
    if root is None:
        raise FeedFetchError("Empty or unparseable XML document", kind="parse")
    return root


def local_name(element) -> str:
    tag = element.tag
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname


def child_text(element, *names: str) -> str:
    """Text of the first direct child whose local name matches (case-insensitive)."""
    wanted = {n.lower() for n in names}
    for child in element:
        if local_name(child).lower() in wanted:
            text = "".join(child.itertext()).strip()
            if text:
                return text
            href = child.get("href")
            if href:
                return href.strip()
    return ""


@register_dialect("multilingual_xml")
class MultilingualXMLDialect(BaseDialect):
    """Extract one language's fields from a multilingual XML data feed."""

    @property
    def name(self) -> str:
        return "multilingual_xml"

    def parse(self, raw: bytes, source: FeedSource, language: str) -> list[RawItem]:
        suffix = LANGUAGE_SUFFIX.get(language)
        if suffix is None:
            logger.warning("%s: no multilingual field suffix for '%s'", source.id, language)
            return []

        root = parse_xml(raw)
        items = []
        for element in root.iter():
            if local_name(element).lower() not in ("item", "message"):
                continue
            item = build_item(
                source,
                language,
                title=child_text(element, f"Title_{suffix}", f"Heading_{suffix}"),
                body=child_text(element, f"Detail_{suffix}", f"Content_{suffix}"),
                link=child_text(element, "Link", "URL"),
                guid=child_text(element, "msgID", "ID", "Guid"),
                published_at=parse_datetime(child_text(element, *DATE_FIELDS)),
            )
            if item is not None:
                items.append(item)
        return items
