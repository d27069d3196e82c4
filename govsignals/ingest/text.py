"""Text and date normalization for loosely-structured feed payloads."""

from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

_DATE_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y %H:%M",
    "%Y%m%dT%H%M%SZ",
    "%Y-%m-%d",
)


def clean_text(text: str | None) -> str:
    """Strip HTML tags, unescape entities and collapse whitespace."""
    if not text:
        return ""
    clean = _TAG_RE.sub(" ", text)
    clean = html.unescape(clean).replace("\xa0", " ")
    return _WS_RE.sub(" ", clean).strip()


def parse_datetime(value: str | None) -> datetime | None:
    """Best-effort parse of a feed timestamp into an aware UTC datetime."""
    if not value:
        return None
    value = value.strip()
    if not value:
        return None

    parsed = None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        pass

    if parsed is None:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            parsed = None

    if parsed is None:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        # Undeclared zones are treated as UTC so buckets stay stable
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
