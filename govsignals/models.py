"""Core data models for the signals pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

LANGUAGES = ("en", "zh-TW", "zh-CN")

# Enrichment status values
PENDING = "pending"
ENRICHED = "enriched"
READY = "ready"
FAILED = "failed"

IMAGE_STATUSES = (PENDING, READY, FAILED)

# Allowed predecessors for each enrichment status
ENRICHMENT_TRANSITIONS = {
    ENRICHED: (PENDING,),
    READY: (ENRICHED,),
    FAILED: (PENDING, ENRICHED),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FeedSource:
    """One government feed family, published in up to three languages."""

    id: str
    base_slug: str
    department: str
    category: str
    language_urls: dict[str, str] = field(default_factory=dict)
    active: bool = True
    dialect: str = "rss"  # rss, multilingual_xml, generic_xml
    time_bucket_minutes: int = 1
    notice_id_regex: str | None = None
    refresh_minutes: int = 0
    last_fetch_cursor: dict[str, datetime] = field(default_factory=dict)
    fetch_error_count: int = 0
    last_fetch_attempt: datetime | None = None


@dataclass
class RawItem:
    """One entry parsed out of one feed/language fetch. Never persisted."""

    source_id: str
    language: str
    title: str
    body: str = ""
    link: str = ""
    guid: str = ""
    source_published_at: datetime | None = None
    identity_hint: str = ""


@dataclass
class LanguageContent:
    """Per-language content of a signal."""

    title: str
    body: str = ""
    link: str = ""

    def to_dict(self) -> dict:
        return {"title": self.title, "body": self.body, "link": self.link}

    @classmethod
    def from_dict(cls, data: dict) -> LanguageContent:
        return cls(
            title=data.get("title") or "",
            body=data.get("body") or "",
            link=data.get("link") or "",
        )


@dataclass
class EnrichedFields:
    """Output of the enrichment collaborators."""

    title: str | None = None
    summary: str | None = None
    body: str | None = None
    image_prompt: str | None = None
    image_url: str | None = None
    image_license: str | None = None
    image_attribution: str | None = None
    image_source: str | None = None
    citations: list[str] = field(default_factory=list)
    cost: float = 0.0
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "summary": self.summary,
            "body": self.body,
            "image_prompt": self.image_prompt,
            "image_url": self.image_url,
            "image_license": self.image_license,
            "image_attribution": self.image_attribution,
            "image_source": self.image_source,
            "citations": list(self.citations),
            "cost": self.cost,
            "degraded": self.degraded,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> EnrichedFields:
        data = data or {}
        return cls(
            title=data.get("title"),
            summary=data.get("summary"),
            body=data.get("body"),
            image_prompt=data.get("image_prompt"),
            image_url=data.get("image_url"),
            image_license=data.get("image_license"),
            image_attribution=data.get("image_attribution"),
            image_source=data.get("image_source"),
            citations=list(data.get("citations") or []),
            cost=float(data.get("cost") or 0.0),
            degraded=bool(data.get("degraded", False)),
        )


@dataclass
class Signal:
    """Canonical, deduplicated, multi-language record of one event."""

    id: str
    feed_source_id: str
    category: str
    source_published_at: datetime | None = None
    content: dict[str, LanguageContent] = field(default_factory=dict)
    severity: int = 2
    relevance_score: float = 0.0
    enrichment_status: str = PENDING
    image_status: str = PENDING
    enriched_fields: EnrichedFields = field(default_factory=EnrichedFields)
    enrichment_error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def primary_language(self) -> str | None:
        """First available language in preference order."""
        for lang in LANGUAGES:
            if lang in self.content and self.content[lang].title:
                return lang
        for lang in sorted(self.content):
            if self.content[lang].title:
                return lang
        return None

    def primary_content(self) -> LanguageContent | None:
        lang = self.primary_language()
        return self.content[lang] if lang else None


@dataclass
class FetchError:
    """Structured failure of one feed/language fetch."""

    feed: str
    language: str
    kind: str  # timeout, http, network, parse
    message: str

    def to_dict(self) -> dict:
        return {
            "feed": self.feed,
            "language": self.language,
            "kind": self.kind,
            "message": self.message,
        }


@dataclass
class FetchResult:
    """Outcome of fetching one feed URL in one language."""

    source_id: str
    language: str
    items: list[RawItem] = field(default_factory=list)
    error: FetchError | None = None
    not_modified: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunSummary:
    """Structured result of one aggregation pass."""

    processed: int = 0
    grouped: int = 0
    stored: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)
    duration_ms: int = 0
    skipped_run: bool = False

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "grouped": self.grouped,
            "stored": self.stored,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "skipped_run": self.skipped_run,
        }


@dataclass
class EnrichmentSummary:
    """Structured result of one enrichment pass."""

    processed: int = 0
    enriched: int = 0
    ready: int = 0
    failed: int = 0
    images_ready: int = 0
    images_failed: int = 0
    total_cost: float = 0.0
    errors: list[dict] = field(default_factory=list)
    duration_ms: int = 0
    skipped_run: bool = False

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "enriched": self.enriched,
            "ready": self.ready,
            "failed": self.failed,
            "images_ready": self.images_ready,
            "images_failed": self.images_failed,
            "total_cost": round(self.total_cost, 6),
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "skipped_run": self.skipped_run,
        }


@dataclass
class PipelineRun:
    """Record of a single pipeline execution."""

    kind: str  # aggregate, enrich
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    status: str = "running"  # running, completed, failed, skipped
    items_processed: int = 0
    signals_grouped: int = 0
    signals_stored: int = 0
    error_count: int = 0
    cost_usd: float = 0.0
    id: int | None = None
