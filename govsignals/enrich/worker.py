"""Drain the enrichment queue one bounded batch at a time."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time

from govsignals.db import (
    advance_enrichment_status,
    get_pending_signals,
    refresh_public_view,
    set_image_status,
)
from govsignals.enrich.content import enrich_content
from govsignals.enrich.images import ImageFinder
from govsignals.errors import TIMEOUT, UPSTREAM, EnrichmentError, ImageLookupError
from govsignals.llm.base import BaseLLMProvider
from govsignals.models import (
    ENRICHED,
    FAILED,
    PENDING,
    READY,
    EnrichedFields,
    EnrichmentSummary,
    Signal,
)

logger = logging.getLogger(__name__)

FAILURE_NOTICE = "Content processing failed. Please check the original source for details."


def placeholder_fields(signal: Signal) -> EnrichedFields:
    primary = signal.primary_content()
    title = primary.title if primary else ""
    return EnrichedFields(
        title=title or None,
        body=f"{title}\n\n{FAILURE_NOTICE}",
        degraded=True,
    )


class EnrichmentWorker:
    """Enrich pending signals, then attach images, then mark them ready.

    Each signal is isolated: a failure marks that signal failed and the
    batch moves on. Items are processed sequentially with a fixed pause
    between them to stay under provider rate limits.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        provider: BaseLLMProvider | None,
        image_finder: ImageFinder | None,
        settings: dict,
        departments: dict[str, str] | None = None,
    ):
        self.conn = conn
        self.provider = provider
        self.image_finder = image_finder
        self.settings = settings
        self.departments = departments or {}

    async def run_batch(self) -> EnrichmentSummary:
        start = time.monotonic()
        summary = EnrichmentSummary()
        signals = get_pending_signals(self.conn, limit=self.settings["batch_size"])
        logger.info("Enrichment batch: %d signals", len(signals))

        for index, signal in enumerate(signals):
            if index > 0 and self.settings["delay_seconds"] > 0:
                await asyncio.sleep(self.settings["delay_seconds"])
            summary.processed += 1
            try:
                await self._process(signal, summary)
            except Exception as exc:
                logger.exception("Unexpected failure enriching %s", signal.id)
                error = EnrichmentError(f"{type(exc).__name__}: {exc}", UPSTREAM)
                self._fail(signal, error, summary)

        if signals:
            refresh_public_view(self.conn)
        summary.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Enrichment batch done: %d enriched, %d ready, %d failed, $%.4f",
            summary.enriched, summary.ready, summary.failed, summary.total_cost,
        )
        return summary

    async def _process(self, signal: Signal, summary: EnrichmentSummary) -> None:
        if signal.enrichment_status == PENDING:
            fields = await self._enrich(signal, summary)
            if fields is None:
                return
            signal.enriched_fields = fields
            signal.enrichment_status = ENRICHED

        if signal.image_status == PENDING:
            await self._attach_image(signal, summary)

        if advance_enrichment_status(self.conn, signal.id, READY):
            summary.ready += 1
        else:
            logger.info("Signal %s moved on concurrently, not marking ready", signal.id)

    async def _enrich(self, signal: Signal, summary: EnrichmentSummary) -> EnrichedFields | None:
        if self.provider is None:
            self._fail(signal, EnrichmentError("No LLM provider configured", UPSTREAM), summary)
            return None
        try:
            fields = await asyncio.wait_for(
                enrich_content(
                    self.provider, signal, self.departments.get(signal.feed_source_id, ""),
                ),
                timeout=self.settings["timeout_seconds"],
            )
        except asyncio.TimeoutError:
            error = EnrichmentError(
                f"Enrichment exceeded {self.settings['timeout_seconds']}s", TIMEOUT,
            )
            self._fail(signal, error, summary)
            return None
        except EnrichmentError as exc:
            self._fail(signal, exc, summary)
            return None

        summary.total_cost += fields.cost
        if not advance_enrichment_status(self.conn, signal.id, ENRICHED, fields=fields):
            logger.info("Signal %s already advanced by another run", signal.id)
            return None
        summary.enriched += 1
        return fields

    async def _attach_image(self, signal: Signal, summary: EnrichmentSummary) -> None:
        if self.image_finder is None:
            set_image_status(self.conn, signal.id, FAILED)
            summary.images_failed += 1
            return
        fields = signal.enriched_fields
        try:
            image = await asyncio.wait_for(
                self.image_finder.find(signal, fields.image_prompt if fields else None),
                timeout=self.settings["image_timeout_seconds"],
            )
        except (ImageLookupError, asyncio.TimeoutError) as exc:
            logger.info("No image for %s: %s", signal.id, exc or "timed out")
            set_image_status(self.conn, signal.id, FAILED)
            summary.images_failed += 1
            return
        except Exception:
            logger.exception("Image lookup crashed for %s", signal.id)
            set_image_status(self.conn, signal.id, FAILED)
            summary.images_failed += 1
            return

        set_image_status(
            self.conn, signal.id, READY,
            url=image.url, license=image.license,
            attribution=image.attribution, source=image.source,
        )
        summary.images_ready += 1

    def _fail(self, signal: Signal, error: EnrichmentError, summary: EnrichmentSummary) -> None:
        logger.warning("Enrichment failed for %s (%s)", signal.id, error.describe())
        summary.errors.append({
            "signal": signal.id,
            "category": error.category,
            "message": str(error),
        })
        if advance_enrichment_status(
            self.conn, signal.id, FAILED,
            fields=placeholder_fields(signal), error=error.describe(),
        ):
            summary.failed += 1
