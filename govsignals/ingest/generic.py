"""Best-effort parser for XML shapes no other dialect understands."""

from __future__ import annotations

from govsignals.ingest import register_dialect
from govsignals.ingest.base import BaseDialect, build_item
from govsignals.ingest.text import parse_datetime
from govsignals.ingest.xml_data import child_text, local_name, parse_xml
from govsignals.models import FeedSource, RawItem

TITLE_TAGS = ("title", "heading", "headline", "subject", "name")
BODY_TAGS = ("description", "summary", "content", "detail", "body", "text")
LINK_TAGS = ("link", "url", "href")
DATE_TAGS = (
    "pubdate", "published", "date", "updated", "issuedate",
    "publicationdate", "issue_date", "datetime",
)
ID_TAGS = ("guid", "id", "msgid", "identifier")


@register_dialect("generic_xml")
class GenericXMLDialect(BaseDialect):
    """Treat every innermost element with a title-like child as an item."""

    @property
    def name(self) -> str:
        return "generic_xml"

    def parse(self, raw: bytes, source: FeedSource, language: str) -> list[RawItem]:
        root = parse_xml(raw)
        title_tags = set(TITLE_TAGS)

        candidates = [
            el for el in root.iter()
            if any(local_name(child).lower() in title_tags for child in el)
        ]
        # Drop containers (e.g. <channel> with its own <title>) that hold other candidates
        candidate_ids = {id(el) for el in candidates}
        leaves = [
            el for el in candidates
            if not any(
                id(desc) in candidate_ids for desc in el.iterdescendants()
            )
        ]

        items = []
        for element in leaves:
            item = build_item(
                source,
                language,
                title=child_text(element, *TITLE_TAGS),
                body=child_text(element, *BODY_TAGS),
                link=child_text(element, *LINK_TAGS),
                guid=child_text(element, *ID_TAGS),
                published_at=parse_datetime(child_text(element, *DATE_TAGS)),
            )
            if item is not None:
                items.append(item)
        return items
