"""Rewrite a merged signal through the configured LLM provider."""

from __future__ import annotations

import json
import logging
import re

from govsignals.errors import INVALID_RESPONSE, EnrichmentError
from govsignals.llm.base import BaseLLMProvider
from govsignals.llm.prompts import ENRICH_SIGNAL, SYSTEM_EDITOR
from govsignals.models import EnrichedFields, Signal

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 3000

_CITATION_LINK_RE = re.compile(r"\[(\d+)\]\((https?://[^)\s]+)\)")
_SECTION_RE = re.compile(r"^##\s*(.+?)\s*$", re.MULTILINE)
_TITLE_RE = re.compile(r"^#\s*(?:ENHANCED\s+)?TITLE:\s*(.+)$", re.IGNORECASE | re.MULTILINE)


def _normalize_quotes(text: str) -> str:
    """Replace smart/curly quotes with straight quotes for JSON parsing."""
    return (
        text
        .replace("\u201c", '"')   # left double quote
        .replace("\u201d", '"')   # right double quote
        .replace("\u2018", "'")   # left single quote
        .replace("\u2019", "'")   # right single quote
    )


def _try_parse(text: str) -> dict | None:
    """Try json.loads with and without quote normalization."""
    for candidate in (text, _normalize_quotes(text)):
        try:
            data = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(data, dict):
            return data
    return None


def _extract_json(text: str) -> dict | None:
    """Extract JSON from LLM output that may contain markdown fences or extra text."""
    result = _try_parse(text)
    if result is not None:
        return result

    fenced = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if fenced:
        result = _try_parse(fenced.group(1))
        if result is not None:
            return result

    brace = re.search(r"\{.*\}", text, re.DOTALL)
    if brace:
        return _try_parse(brace.group(0))
    return None


def _strip_brackets(value: str) -> str:
    return value.strip().removeprefix("[").removesuffix("]").strip()


def _parse_markdown(text: str) -> dict | None:
    """Parse the ``# TITLE:`` / ``## SUMMARY`` / ``## FULL ARTICLE`` layout."""
    title_match = _TITLE_RE.search(text)
    sections: dict[str, str] = {}
    matches = list(_SECTION_RE.finditer(text))
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        sections[match.group(1).upper()] = text[match.end():end].strip()

    body = sections.get("FULL ARTICLE") or sections.get("BODY")
    if not title_match and not body:
        return None
    return {
        "title": _strip_brackets(title_match.group(1)) if title_match else None,
        "summary": _strip_brackets(sections["SUMMARY"]) if sections.get("SUMMARY") else None,
        "body": body,
        "image_prompt": (
            _strip_brackets(sections["IMAGE SEARCH"]) if sections.get("IMAGE SEARCH") else None
        ),
    }


def _dedupe(values: list[str]) -> list[str]:
    seen = set()
    result = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def build_prompt(signal: Signal, department: str = "") -> str:
    lang = signal.primary_language()
    if lang is None:
        raise EnrichmentError(f"Signal {signal.id} has no titled content", INVALID_RESPONSE)
    primary = signal.content[lang]
    others = [
        f"- [{other}] {content.title}"
        for other, content in sorted(signal.content.items())
        if other != lang and content.title
    ]
    published = signal.source_published_at.isoformat() if signal.source_published_at else "unknown"
    return ENRICH_SIGNAL.format(
        category=signal.category,
        department=department or signal.feed_source_id,
        published=published,
        title=primary.title,
        other_titles="\n".join(others) or "(none)",
        body=(primary.body or primary.title)[:MAX_BODY_CHARS],
    )


async def enrich_content(
    provider: BaseLLMProvider, signal: Signal, department: str = "",
) -> EnrichedFields:
    """Produce enriched fields for one signal.

    Raises EnrichmentError (with category) when the provider fails or its
    output cannot be interpreted.
    """
    prompt = build_prompt(signal, department)
    response = await provider.complete(prompt, system=SYSTEM_EDITOR, max_tokens=1500)

    data = _extract_json(response.text)
    if data is None:
        data = _parse_markdown(response.text)
    if not data or not (data.get("title") or data.get("body")):
        logger.warning("Unparseable enrichment output for %s: %.120s", signal.id, response.text)
        raise EnrichmentError("Completion did not contain usable fields", INVALID_RESPONSE)

    raw_citations = data.get("citations") or []
    if not isinstance(raw_citations, list):
        raw_citations = []
    citations = _dedupe(
        [c for c in raw_citations if isinstance(c, str)]
        + list(response.citations)
        + [m.group(2) for m in _CITATION_LINK_RE.finditer(response.text)]
    )

    return EnrichedFields(
        title=(data.get("title") or "").strip() or None,
        summary=(data.get("summary") or "").strip() or None,
        body=(data.get("body") or "").strip() or None,
        image_prompt=(data.get("image_prompt") or "").strip() or None,
        citations=citations,
        cost=response.cost_usd,
    )
