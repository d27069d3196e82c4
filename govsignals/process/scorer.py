"""Heuristic severity and relevance scoring.

Scores are approximate by design but deterministic for a given content
snapshot and reference time. Recency is measured against the signal's
first discovery, so re-running a pass over unchanged data reproduces the
stored scores exactly.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from govsignals.models import LanguageContent

logger = logging.getLogger(__name__)

MIN_SEVERITY = 1
MAX_SEVERITY = 5
DEFAULT_SEVERITY = 2
DEFAULT_RELEVANCE = 0.0

DECAY_HOURS = 168  # 7 days
URGENT_BOOST = 0.3

SEVERITY_RULES = [
    (5, re.compile(
        r"urgent|emergency|severe|critical|immediate|major disruption|suspended"
        r"|black rainstorm|signal no\.? ?(8|9|10)|緊急|嚴重|暫停|黑色暴雨|八號|紧急|严重",
    )),
    (4, re.compile(
        r"disruption|delay|affected|divert|closed|closure|red rainstorm"
        r"|延誤|改道|封閉|受影響|延误|封闭|受影响",
    )),
    (3, re.compile(
        r"temporary|relocation|special traffic|arrangement|amber rainstorm"
        r"|臨時|特別交通|安排|临时|特别交通",
    )),
]

URGENT_RE = re.compile(r"urgent|emergency|severe|緊急|嚴重|紧急|严重")

# Minimum severity for categories that are inherently alerts
CATEGORY_FLOOR = {
    "emergency": 3,
    "weather_warning": 3,
    "weather_earthquake": 3,
    "health_alert": 3,
}

CATEGORY_WEIGHT = {
    "emergency": 1.0,
    "weather_warning": 1.0,
    "weather_earthquake": 0.95,
    "transport_notice": 0.9,
    "health_alert": 0.9,
    "police": 0.85,
    "transport_press": 0.75,
    "monetary_press": 0.7,
    "monetary_circular": 0.6,
    "health_guideline": 0.6,
    "environment": 0.6,
    "education": 0.55,
    "immigration": 0.55,
    "lands": 0.5,
    "administrative": 0.5,
}


def _text(content: dict[str, LanguageContent]) -> str:
    parts = []
    for lang in sorted(content):
        entry = content[lang]
        parts.append(f"{entry.title} {entry.body}")
    return " ".join(parts).lower()


def compute_severity(text: str, category: str) -> int:
    severity = DEFAULT_SEVERITY
    for level, pattern in SEVERITY_RULES:
        if pattern.search(text):
            severity = level
            break
    severity = max(severity, CATEGORY_FLOOR.get(category, MIN_SEVERITY))
    return min(MAX_SEVERITY, max(MIN_SEVERITY, severity))


def compute_relevance(
    text: str,
    category: str,
    published_at: datetime | None,
    reference_time: datetime,
) -> float:
    weight = CATEGORY_WEIGHT.get(category, CATEGORY_WEIGHT["administrative"])
    if published_at is None:
        freshness = 0.5
    else:
        if published_at.tzinfo is None:
            published_at = published_at.replace(tzinfo=timezone.utc)
        if reference_time.tzinfo is None:
            reference_time = reference_time.replace(tzinfo=timezone.utc)
        hours = max(0.0, (reference_time - published_at).total_seconds() / 3600)
        freshness = max(0.0, 1 - hours / DECAY_HOURS)

    score = weight * freshness
    if URGENT_RE.search(text):
        score += URGENT_BOOST
    return round(min(1.0, max(0.0, score)), 2)


def score_signal(
    content: dict[str, LanguageContent] | None,
    category: str,
    published_at: datetime | None,
    reference_time: datetime,
) -> tuple[int, float]:
    """Return ``(severity, relevance)``. Never raises."""
    try:
        text = _text(content or {})
        return (
            compute_severity(text, category or ""),
            compute_relevance(text, category or "", published_at, reference_time),
        )
    except Exception:
        logger.exception("Scoring failed; using defaults")
        return DEFAULT_SEVERITY, DEFAULT_RELEVANCE
