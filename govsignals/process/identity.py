"""Identity keys and grouping of raw items into canonical signals.

Items from one feed family that share a publish-time bucket describe the
same event unless the bucket is ambiguous (one language announcing several
distinct events in the same bucket). Cross-language variants carry
different titles, so the time bucket is what joins them; title
fingerprints only collapse same-language re-announcements and split
ambiguous buckets. Once an event is stored its key sticks: later runs route
matching items back to the stored signal whatever else shares the bucket.
"""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from govsignals.models import FeedSource, LanguageContent, RawItem

logger = logging.getLogger(__name__)

UNDATED = "undated"

# Looks up the stored content map of a signal by id, None when unknown
StoredContent = Callable[[str], dict[str, LanguageContent] | None]

_CJK_RE = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]")


@dataclass(frozen=True)
class IdentityKey:
    feed_source_id: str
    bucket: str
    discriminator: str = ""

    def parts(self) -> tuple[str, ...]:
        if self.discriminator:
            return (self.feed_source_id, self.bucket, self.discriminator)
        return (self.feed_source_id, self.bucket)

    def __str__(self) -> str:
        return "|".join(self.parts())


@dataclass
class SignalGroup:
    """Raw items (possibly several languages) belonging to one signal."""

    key: IdentityKey
    items: list[RawItem] = field(default_factory=list)

    @property
    def signal_id(self) -> str:
        return signal_id(self.key)

    @property
    def languages(self) -> list[str]:
        return sorted({item.language for item in self.items})


def normalize_title(title: str | None) -> str:
    """Case-fold, drop punctuation/symbols and collapse whitespace."""
    if not title:
        return ""
    text = unicodedata.normalize("NFKC", title).casefold()
    kept = []
    for ch in text:
        cat = unicodedata.category(ch)
        if cat[0] in ("P", "S"):
            kept.append(" ")
        else:
            kept.append(ch)
    return " ".join("".join(kept).split())


def _fingerprint_weight(normalized: str) -> int:
    """Length used for the too-short check; CJK characters carry a word each."""
    cjk = len(_CJK_RE.findall(normalized))
    latin = len(_CJK_RE.sub("", normalized).replace(" ", ""))
    return cjk * 2 + latin


def title_fingerprint(title: str | None, min_chars: int = 4) -> str | None:
    """Stable fingerprint of a title, or None when too short to trust."""
    normalized = normalize_title(title)
    if not normalized or _fingerprint_weight(normalized) < min_chars:
        return None
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:12]


def time_bucket(published_at: datetime | None, minutes: int = 1) -> str:
    """Floor a publish time to the source's granularity (UTC)."""
    if published_at is None:
        return UNDATED
    if published_at.tzinfo is None:
        published_at = published_at.replace(tzinfo=timezone.utc)
    minutes = max(1, minutes)
    epoch_minutes = int(published_at.timestamp() // 60)
    floored = epoch_minutes - (epoch_minutes % minutes)
    return datetime.fromtimestamp(floored * 60, tz=timezone.utc).strftime("%Y%m%dT%H%M")


def extract_notice_id(link: str, pattern: str | None) -> str | None:
    if not pattern or not link:
        return None
    try:
        match = re.search(pattern, link)
    except re.error:
        logger.error("Invalid notice_id_regex: %s", pattern)
        return None
    if match and match.groups() and match.group(1):
        return match.group(1)
    return None


def identity_key(item: RawItem, source: FeedSource, min_title_chars: int = 4) -> IdentityKey:
    """Item-level identity key.

    ``(feed, bucket, fingerprint)``; ``(feed, bucket, lang:<code>)`` when the
    title cannot be fingerprinted; ``(feed, notice, <id>)`` when the feed
    exposes notice ids in its links.
    """
    notice_id = extract_notice_id(item.link, source.notice_id_regex)
    if notice_id:
        return IdentityKey(source.id, "notice", notice_id)

    bucket = time_bucket(item.source_published_at, source.time_bucket_minutes)
    fingerprint = title_fingerprint(item.title, min_title_chars)
    if fingerprint is None:
        return IdentityKey(source.id, bucket, f"lang:{item.language}")
    return IdentityKey(source.id, bucket, fingerprint)


def signal_id(key: IdentityKey) -> str:
    """Deterministic signal id derived from the identity key."""
    return hashlib.sha256(str(key).encode("utf-8")).hexdigest()[:16]


def _item_sort_key(item: RawItem) -> tuple:
    return (item.language, item.title, item.body, item.link, item.guid)


def group_items(
    items: list[RawItem],
    source: FeedSource,
    min_title_chars: int = 4,
    stored: StoredContent | None = None,
) -> list[SignalGroup]:
    """Collapse one feed's raw items into signal groups. Order-independent.

    ``stored`` looks up the content of an already stored signal by id. With
    it, items keep the identity their event was first stored under even when
    the bucket they fall in has since become ambiguous (or stopped being so).
    """
    notice_groups: dict[IdentityKey, SignalGroup] = {}
    buckets: dict[str, list[tuple[IdentityKey, RawItem]]] = {}

    for item in sorted(items, key=_item_sort_key):
        if item.source_id != source.id:
            logger.warning(
                "Item from %s passed to grouping for %s; skipped", item.source_id, source.id,
            )
            continue
        key = identity_key(item, source, min_title_chars)
        if key.bucket == "notice":
            notice_groups.setdefault(key, SignalGroup(key)).items.append(item)
        else:
            buckets.setdefault(key.bucket, []).append((key, item))

    groups = list(notice_groups.values())

    for bucket, keyed in buckets.items():
        if bucket == UNDATED:
            # Without a time anchor only identical item keys may merge
            groups.extend(_groups_by_item_key(keyed))
        elif stored is None:
            groups.extend(_group_bucket(IdentityKey(source.id, bucket), keyed))
        else:
            groups.extend(
                _group_known_bucket(IdentityKey(source.id, bucket), keyed, stored, min_title_chars),
            )

    for group in groups:
        for item in group.items:
            item.identity_hint = str(group.key)
    groups.sort(key=lambda g: str(g.key))
    return groups


def _is_unambiguous(keyed: list[tuple[IdentityKey, RawItem]]) -> bool:
    events_per_language: dict[str, set[str]] = {}
    for key, item in keyed:
        events_per_language.setdefault(item.language, set()).add(key.discriminator)
    return all(len(events) == 1 for events in events_per_language.values())


def _group_bucket(
    bucket_key: IdentityKey, keyed: list[tuple[IdentityKey, RawItem]],
) -> list[SignalGroup]:
    if _is_unambiguous(keyed):
        return [SignalGroup(bucket_key, [item for _, item in keyed])]
    logger.debug(
        "%s bucket %s holds several events in one language; splitting",
        bucket_key.feed_source_id, bucket_key.bucket,
    )
    return _groups_by_item_key(keyed)


def _group_known_bucket(
    bucket_key: IdentityKey,
    keyed: list[tuple[IdentityKey, RawItem]],
    stored: StoredContent,
    min_title_chars: int,
) -> list[SignalGroup]:
    """Group one bucket, routing items back to signals already stored for it.

    Items whose own key is stored stay there. Items whose title matches the
    stored bucket-level signal join it. A language with no such match joins
    the bucket-level signal only when it announces a single event, which is
    how late languages and re-worded titles attach.
    """
    bucket_content = stored(signal_id(bucket_key))
    anchored: list[tuple[IdentityKey, RawItem]] = []
    joined: list[RawItem] = []
    rest: list[tuple[IdentityKey, RawItem]] = []

    if bucket_content is None:
        for key, item in keyed:
            if stored(signal_id(key)) is not None:
                anchored.append((key, item))
            else:
                rest.append((key, item))
        if not anchored:
            return _group_bucket(bucket_key, keyed)
        # The bucket was split when first stored; keep splitting it
        return _groups_by_item_key(anchored + rest)

    known_fingerprints = {
        title_fingerprint(content.title, min_title_chars) for content in bucket_content.values()
    }
    known_fingerprints.discard(None)
    matched_languages: set[str] = set()
    for key, item in keyed:
        if stored(signal_id(key)) is not None:
            anchored.append((key, item))
        elif key.discriminator in known_fingerprints:
            joined.append(item)
            matched_languages.add(item.language)
        else:
            rest.append((key, item))

    by_language: dict[str, list[tuple[IdentityKey, RawItem]]] = {}
    for key, item in rest:
        by_language.setdefault(item.language, []).append((key, item))
    for language, entries in by_language.items():
        if language not in matched_languages and _is_unambiguous(entries):
            joined.extend(item for _, item in entries)
        else:
            anchored.extend(entries)

    groups = _groups_by_item_key(anchored)
    if joined:
        groups.append(SignalGroup(bucket_key, joined))
    return groups


def _groups_by_item_key(keyed: list[tuple[IdentityKey, RawItem]]) -> list[SignalGroup]:
    by_key: dict[IdentityKey, SignalGroup] = {}
    for key, item in keyed:
        by_key.setdefault(key, SignalGroup(key)).items.append(item)
    return list(by_key.values())
