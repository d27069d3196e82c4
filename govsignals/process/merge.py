"""Fold per-language raw item content into a signal's content map."""

from __future__ import annotations

from datetime import datetime

from govsignals.models import LanguageContent, RawItem


def completeness(content: LanguageContent) -> tuple:
    """Ordering key among new items: longer body, then longer title, then lexical."""
    return (len(content.body), len(content.title), content.title, content.body, content.link)


def _from_item(item: RawItem) -> LanguageContent:
    return LanguageContent(title=item.title, body=item.body, link=item.link)


def merge_content(
    existing: dict[str, LanguageContent] | None,
    items: list[RawItem],
) -> dict[str, LanguageContent]:
    """Return the updated content map for one signal.

    A language is added when absent. A stored language is replaced only by
    content with a strictly longer body; ties keep the stored entry.
    Languages are never removed. Among several new items for one language
    the most complete one (``completeness``) is offered, so the result does
    not depend on item order.
    """
    best: dict[str, LanguageContent] = {}
    for item in items:
        if not item.title:
            continue
        candidate = _from_item(item)
        current = best.get(item.language)
        if current is None or completeness(candidate) > completeness(current):
            best[item.language] = candidate
    return merge_content_maps(dict(existing or {}), best)


def merge_content_maps(
    base: dict[str, LanguageContent],
    incoming: dict[str, LanguageContent],
) -> dict[str, LanguageContent]:
    """Map-to-map form of ``merge_content`` used by the store on write."""
    merged = dict(base)
    for lang, content in incoming.items():
        current = merged.get(lang)
        if current is None or len(content.body) > len(current.body):
            merged[lang] = content
    return merged


def earliest_published_at(*values: datetime | None) -> datetime | None:
    known = [v for v in values if v is not None]
    return min(known) if known else None
