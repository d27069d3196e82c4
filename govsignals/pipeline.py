"""Pipeline orchestrators: aggregation (fetch → group → merge → score →
store) and enrichment (drain the pending queue)."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time

from govsignals.config import (
    get_db_path,
    get_enrichment_config,
    get_fetch_config,
    get_grouping_config,
    get_lock_ttl,
    load_feed_sources,
)
from govsignals.db import (
    finish_run,
    get_active_feed_sources,
    get_connection,
    get_feed_sources,
    get_signal,
    init_db,
    insert_run,
    record_fetch_failure,
    record_fetch_success,
    refresh_public_view,
    sync_feed_sources,
    upsert_signal,
)
from govsignals.enrich.images import ImageFinder, build_image_finder
from govsignals.enrich.worker import EnrichmentWorker
from govsignals.errors import ConfigurationError
from govsignals.ingest.fetcher import FeedFetcher
from govsignals.llm import get_provider_for_task
from govsignals.llm.base import BaseLLMProvider
from govsignals.locks import RunLock
from govsignals.models import (
    EnrichmentSummary,
    FeedSource,
    FetchResult,
    LanguageContent,
    PipelineRun,
    RawItem,
    RunSummary,
    Signal,
    utcnow,
)
from govsignals.process.identity import SignalGroup, group_items
from govsignals.process.merge import earliest_published_at, merge_content
from govsignals.process.scorer import score_signal

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _record_skipped(conn: sqlite3.Connection, kind: str) -> None:
    run = PipelineRun(kind=kind, status="skipped")
    run_id = insert_run(conn, run)
    run.finished_at = utcnow()
    finish_run(conn, run_id, run)


class AggregationPipeline:
    """One aggregation pass over every active feed and language."""

    def __init__(
        self,
        config: dict,
        conn: sqlite3.Connection,
        fetcher: FeedFetcher | None = None,
        lock: RunLock | None = None,
    ):
        self.config = config
        self.conn = conn
        self.fetcher = fetcher or FeedFetcher(config)
        self.lock = lock or RunLock(conn, "aggregate", get_lock_ttl(config))
        self.min_title_chars = get_grouping_config(config)["min_title_chars"]
        self.max_concurrency = get_fetch_config(config)["max_concurrency"]

    def load_sources(self) -> list[FeedSource]:
        """Sync configured feeds into the store and return the active ones."""
        if "feeds" in self.config:
            sync_feed_sources(self.conn, load_feed_sources(self.config))
        sources = get_active_feed_sources(self.conn)
        if not sources:
            raise ConfigurationError("No active feed sources configured")
        return sources

    async def run(self) -> RunSummary:
        start = time.monotonic()
        summary = RunSummary()
        sources = self.load_sources()

        if not self.lock.acquire():
            summary.skipped_run = True
            _record_skipped(self.conn, "aggregate")
            summary.duration_ms = _elapsed_ms(start)
            return summary

        run = PipelineRun(kind="aggregate")
        run_id = insert_run(self.conn, run)
        logger.info("Aggregation run #%d started (%d feeds)", run_id, len(sources))

        try:
            items_by_source = await self._fetch_all(sources, summary)
            for source in sources:
                items = items_by_source.get(source.id) or []
                if items:
                    self._store_source(source, items, summary)
            refresh_public_view(self.conn)
            run.status = "completed"
        except Exception:
            run.status = "failed"
            raise
        finally:
            summary.duration_ms = _elapsed_ms(start)
            run.finished_at = utcnow()
            run.items_processed = summary.processed
            run.signals_grouped = summary.grouped
            run.signals_stored = summary.stored
            run.error_count = len(summary.errors)
            finish_run(self.conn, run_id, run)
            self.lock.release()

        logger.info(
            "Aggregation run #%d done: %d fetched, %d grouped, %d stored, %d errors in %dms",
            run_id, summary.processed, summary.grouped, summary.stored,
            len(summary.errors), summary.duration_ms,
        )
        return summary

    async def _fetch_all(
        self, sources: list[FeedSource], summary: RunSummary,
    ) -> dict[str, list[RawItem]]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _fetch(source: FeedSource, language: str) -> FetchResult:
            async with semaphore:
                return await self.fetcher.fetch(source, language)

        jobs = []
        for source in sources:
            for language in sorted(source.language_urls):
                if self.fetcher.is_fresh(source, language):
                    logger.debug("Skipping fresh feed %s/%s", source.id, language)
                    summary.skipped += 1
                    continue
                jobs.append(_fetch(source, language))

        fetched_at = utcnow()
        results = await asyncio.gather(*jobs)

        items_by_source: dict[str, list[RawItem]] = {}
        for result in results:
            if result.error is not None:
                logger.warning(
                    "Fetch failed for %s/%s (%s): %s",
                    result.source_id, result.language, result.error.kind, result.error.message,
                )
                summary.errors.append(result.error.to_dict())
                record_fetch_failure(self.conn, result.source_id, fetched_at)
                continue
            summary.processed += 1
            record_fetch_success(self.conn, result.source_id, result.language, fetched_at)
            items_by_source.setdefault(result.source_id, []).extend(result.items)
        return items_by_source

    def _store_source(self, source: FeedSource, items: list[RawItem], summary: RunSummary) -> None:
        groups = group_items(items, source, self.min_title_chars, stored=self._stored_content)
        summary.grouped += len(groups)
        for group in groups:
            try:
                signal = self.build_signal(source, group)
                if signal is None:
                    continue
                changed = upsert_signal(self.conn, signal)
                summary.stored += 1
                if changed:
                    logger.debug("Stored signal %s (%s)", signal.id, group.key)
            except Exception as exc:
                logger.exception("Failed to store group %s", group.key)
                summary.errors.append({
                    "feed": source.id,
                    "language": ",".join(group.languages),
                    "kind": "integrity",
                    "message": f"{type(exc).__name__}: {exc}",
                })

    def _stored_content(self, signal_id: str) -> dict[str, LanguageContent] | None:
        existing = get_signal(self.conn, signal_id)
        return existing.content if existing else None

    def build_signal(self, source: FeedSource, group: SignalGroup) -> Signal | None:
        """Merge a group into the stored signal (if any) and score it."""
        existing = get_signal(self.conn, group.signal_id)
        content = merge_content(existing.content if existing else None, group.items)
        if not content:
            return None

        published = earliest_published_at(
            existing.source_published_at if existing else None,
            *(item.source_published_at for item in group.items),
        )
        created_at = existing.created_at if existing else utcnow()
        severity, relevance = score_signal(content, source.category, published, created_at)
        return Signal(
            id=group.signal_id,
            feed_source_id=source.id,
            category=source.category,
            source_published_at=published,
            content=content,
            severity=severity,
            relevance_score=relevance,
            created_at=created_at,
        )


class EnrichmentPipeline:
    """Drain pending signals through the enrichment worker."""

    def __init__(
        self,
        config: dict,
        conn: sqlite3.Connection,
        provider: BaseLLMProvider | None = None,
        image_finder: ImageFinder | None = None,
        lock: RunLock | None = None,
    ):
        self.config = config
        self.conn = conn
        self.settings = get_enrichment_config(config)
        self.provider = provider
        self.image_finder = image_finder
        self.lock = lock or RunLock(conn, "enrich", get_lock_ttl(config))

    def _build_worker(self) -> EnrichmentWorker:
        provider = self.provider or get_provider_for_task(self.config, "enrich")
        image_finder = self.image_finder or build_image_finder(
            self.config, timeout=self.settings["image_timeout_seconds"],
        )
        departments = {s.id: s.department for s in get_feed_sources(self.conn)}
        return EnrichmentWorker(self.conn, provider, image_finder, self.settings, departments)

    async def run(self) -> EnrichmentSummary:
        start = time.monotonic()
        worker = self._build_worker()

        if not self.lock.acquire():
            _record_skipped(self.conn, "enrich")
            return EnrichmentSummary(skipped_run=True, duration_ms=_elapsed_ms(start))

        summary = EnrichmentSummary()
        run = PipelineRun(kind="enrich")
        run_id = insert_run(self.conn, run)
        logger.info("Enrichment run #%d started", run_id)

        try:
            for _ in range(self.settings["max_batches"]):
                batch = await worker.run_batch()
                _accumulate(summary, batch)
                if batch.processed < self.settings["batch_size"]:
                    break
            run.status = "completed"
        except Exception:
            run.status = "failed"
            raise
        finally:
            summary.duration_ms = _elapsed_ms(start)
            run.finished_at = utcnow()
            run.items_processed = summary.processed
            run.signals_stored = summary.ready
            run.error_count = len(summary.errors)
            run.cost_usd = summary.total_cost
            finish_run(self.conn, run_id, run)
            self.lock.release()

        logger.info(
            "Enrichment run #%d done: %d processed, %d ready, %d failed, $%.4f in %dms",
            run_id, summary.processed, summary.ready, summary.failed,
            summary.total_cost, summary.duration_ms,
        )
        return summary


def _accumulate(total: EnrichmentSummary, batch: EnrichmentSummary) -> None:
    total.processed += batch.processed
    total.enriched += batch.enriched
    total.ready += batch.ready
    total.failed += batch.failed
    total.images_ready += batch.images_ready
    total.images_failed += batch.images_failed
    total.total_cost += batch.total_cost
    total.errors.extend(batch.errors)


async def run_aggregation(config: dict) -> RunSummary:
    """Open the store, run one aggregation pass and close it."""
    db_path = get_db_path(config)
    init_db(db_path)
    conn = get_connection(db_path)
    try:
        return await AggregationPipeline(config, conn).run()
    finally:
        conn.close()


async def run_enrichment(config: dict) -> EnrichmentSummary:
    """Open the store, drain pending signals and close it."""
    db_path = get_db_path(config)
    init_db(db_path)
    conn = get_connection(db_path)
    try:
        return await EnrichmentPipeline(config, conn).run()
    finally:
        conn.close()
