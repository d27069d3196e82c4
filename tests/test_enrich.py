"""Tests for content enrichment, image lookup and the batch worker."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from govsignals.db import get_public_signals, get_signal, upsert_signal, advance_enrichment_status
from govsignals.enrich.content import enrich_content
from govsignals.enrich.images import ImageFinder, ImageResult, UnsplashImageSource, build_image_finder
from govsignals.enrich.worker import FAILURE_NOTICE, EnrichmentWorker
from govsignals.errors import AUTH, INVALID_RESPONSE, TIMEOUT, EnrichmentError, ImageLookupError
from govsignals.llm.base import LLMResponse
from govsignals.models import ENRICHED, FAILED, READY, EnrichedFields, LanguageContent, Signal

JSON_REPLY = """```json
{
  "title": "Nathan Road closed overnight",
  "summary": "Nathan Road shuts from 10pm to 6am.",
  "body": "Nathan Road will close overnight.\\n\\nBuses are diverted.",
  "image_prompt": "Hong Kong road works night",
  "citations": ["https://www.td.gov.hk/notice/101"]
}
```"""

MARKDOWN_REPLY = """# ENHANCED TITLE: [Nathan Road closed overnight]

## SUMMARY
Nathan Road shuts from 10pm to 6am [1](https://www.td.gov.hk/notice/101).

## FULL ARTICLE
Nathan Road will close overnight.

Buses are diverted.

## IMAGE SEARCH
Hong Kong road works night
"""

SETTINGS = {
    "batch_size": 5,
    "delay_seconds": 0,
    "timeout_seconds": 5,
    "image_timeout_seconds": 5,
    "max_batches": 1,
}


def _signal(signal_id="sig-1", title="Road closure on Nathan Road"):
    return Signal(
        id=signal_id,
        feed_source_id="td_notices",
        category="transport_notice",
        source_published_at=datetime(2025, 8, 3, 10, 0, tzinfo=timezone.utc),
        content={
            "en": LanguageContent(title, "Nathan Road closed tonight.", "https://x/1"),
            "zh-TW": LanguageContent("彌敦道封路", "今晚封閉。"),
        },
    )


def _provider(text=JSON_REPLY, side_effect=None):
    provider = MagicMock()
    if side_effect is not None:
        provider.complete = AsyncMock(side_effect=side_effect)
    else:
        provider.complete = AsyncMock(return_value=LLMResponse(
            text=text, input_tokens=100, output_tokens=50, model="sonar", cost_usd=0.0015,
        ))
    return provider


def _image_finder(result=None, side_effect=None):
    finder = MagicMock()
    finder.find = AsyncMock(
        return_value=result or ImageResult("https://img/1.jpg", "Unsplash License",
                                           "Photo by A on Unsplash", "unsplash"),
        side_effect=side_effect,
    )
    return finder


# --- Content ---


@pytest.mark.asyncio
async def test_enrich_content_parses_json():
    provider = _provider()
    fields = await enrich_content(provider, _signal(), department="Transport Department")

    assert fields.title == "Nathan Road closed overnight"
    assert fields.summary == "Nathan Road shuts from 10pm to 6am."
    assert fields.body.startswith("Nathan Road will close overnight.")
    assert fields.image_prompt == "Hong Kong road works night"
    assert fields.citations == ["https://www.td.gov.hk/notice/101"]
    assert fields.cost == 0.0015
    assert fields.degraded is False

    prompt = provider.complete.call_args[0][0]
    assert "Road closure on Nathan Road" in prompt
    assert "[zh-TW] 彌敦道封路" in prompt
    assert "Transport Department" in prompt


@pytest.mark.asyncio
async def test_enrich_content_markdown_fallback():
    fields = await enrich_content(_provider(MARKDOWN_REPLY), _signal())
    assert fields.title == "Nathan Road closed overnight"
    assert fields.summary.startswith("Nathan Road shuts")
    assert fields.body == "Nathan Road will close overnight.\n\nBuses are diverted."
    assert fields.image_prompt == "Hong Kong road works night"
    assert fields.citations == ["https://www.td.gov.hk/notice/101"]


@pytest.mark.asyncio
async def test_enrich_content_unusable_reply():
    with pytest.raises(EnrichmentError) as exc_info:
        await enrich_content(_provider("I cannot help with that."), _signal())
    assert exc_info.value.category == INVALID_RESPONSE


# --- Images ---


@pytest.mark.asyncio
@patch("govsignals.enrich.images.httpx.AsyncClient")
async def test_unsplash_search(mock_client_cls):
    mock_resp = MagicMock()
    mock_resp.raise_for_status = MagicMock()
    mock_resp.json.return_value = {"results": [{
        "urls": {"regular": "https://images.unsplash.com/photo-1"},
        "user": {"name": "Jane Doe"},
    }]}
    mock_client = AsyncMock()
    mock_client.get.return_value = mock_resp
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client_cls.return_value = mock_client

    source = UnsplashImageSource("key", "https://api.unsplash.com")
    result = await source.search("road works")

    assert result.url == "https://images.unsplash.com/photo-1"
    assert result.license == "Unsplash License"
    assert result.attribution == "Photo by Jane Doe on Unsplash"
    headers = mock_client.get.call_args.kwargs["headers"]
    assert headers["Authorization"] == "Client-ID key"


@pytest.mark.asyncio
async def test_image_finder_falls_back_by_category():
    source = MagicMock()
    source.search = AsyncMock(side_effect=httpx.ConnectError("down"))
    finder = ImageFinder(source, {"transport_notice": "https://img/transport.jpg"})

    result = await finder.find(_signal(), "road works")
    assert result.url == "https://img/transport.jpg"
    assert result.source == "fallback"


@pytest.mark.asyncio
async def test_image_finder_without_any_image():
    source = MagicMock()
    source.search = AsyncMock(return_value=None)
    with pytest.raises(ImageLookupError):
        await ImageFinder(source, {}).find(_signal())


def test_build_image_finder_without_key_uses_fallbacks(sample_config):
    finder = build_image_finder(sample_config)
    assert finder.source is None
    assert finder.fallbacks["default"] == "https://images.example.com/default.jpg"


# --- Worker ---


@pytest.mark.asyncio
async def test_worker_enriches_to_ready(db_conn):
    upsert_signal(db_conn, _signal())
    worker = EnrichmentWorker(db_conn, _provider(), _image_finder(), SETTINGS)

    summary = await worker.run_batch()

    assert summary.processed == 1
    assert summary.enriched == 1
    assert summary.ready == 1
    assert summary.images_ready == 1
    assert summary.total_cost == pytest.approx(0.0015)

    stored = get_signal(db_conn, "sig-1")
    assert stored.enrichment_status == READY
    assert stored.image_status == READY
    assert stored.enriched_fields.title == "Nathan Road closed overnight"
    assert stored.enriched_fields.image_url == "https://img/1.jpg"

    row = get_public_signals(db_conn)[0]
    assert row["title"] == "Nathan Road closed overnight"
    assert row["image_url"] == "https://img/1.jpg"


@pytest.mark.asyncio
async def test_worker_auth_failure_marks_failed_and_continues(db_conn):
    upsert_signal(db_conn, _signal("sig-1"))
    upsert_signal(db_conn, _signal("sig-2", title="Bus route 1A diverted"))
    ok = LLMResponse(text=JSON_REPLY, model="sonar", cost_usd=0.001)
    provider = _provider(side_effect=[EnrichmentError("invalid api key", AUTH), ok])
    worker = EnrichmentWorker(db_conn, provider, _image_finder(), SETTINGS)

    summary = await worker.run_batch()

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.ready == 1
    assert summary.errors == [{"signal": "sig-1", "category": AUTH, "message": "invalid api key"}]

    failed = get_signal(db_conn, "sig-1")
    assert failed.enrichment_status == FAILED
    assert failed.enrichment_error == "auth: invalid api key"
    assert failed.enriched_fields.degraded is True
    assert failed.enriched_fields.body == f"Road closure on Nathan Road\n\n{FAILURE_NOTICE}"
    assert get_signal(db_conn, "sig-2").enrichment_status == READY


@pytest.mark.asyncio
async def test_worker_timeout_marks_failed(db_conn):
    upsert_signal(db_conn, _signal())

    async def slow(*args, **kwargs):
        await asyncio.sleep(1)

    provider = MagicMock()
    provider.complete = slow
    worker = EnrichmentWorker(db_conn, provider, _image_finder(), {**SETTINGS, "timeout_seconds": 0.01})

    summary = await worker.run_batch()
    assert summary.failed == 1
    assert summary.errors[0]["category"] == TIMEOUT
    assert get_signal(db_conn, "sig-1").enrichment_status == FAILED


@pytest.mark.asyncio
async def test_worker_image_failure_still_ready(db_conn):
    upsert_signal(db_conn, _signal())
    finder = _image_finder(side_effect=ImageLookupError("nothing"))
    worker = EnrichmentWorker(db_conn, _provider(), finder, SETTINGS)

    summary = await worker.run_batch()
    assert summary.images_failed == 1
    assert summary.ready == 1

    stored = get_signal(db_conn, "sig-1")
    assert stored.enrichment_status == READY
    assert stored.image_status == FAILED


@pytest.mark.asyncio
async def test_worker_resumes_enriched_signal(db_conn):
    upsert_signal(db_conn, _signal())
    advance_enrichment_status(db_conn, "sig-1", ENRICHED, fields=EnrichedFields(
        title="Already enriched", image_prompt="harbour",
    ))
    provider = _provider()
    finder = _image_finder()
    worker = EnrichmentWorker(db_conn, provider, finder, SETTINGS)

    summary = await worker.run_batch()

    provider.complete.assert_not_awaited()
    assert finder.find.call_args[0][1] == "harbour"
    assert summary.enriched == 0
    assert summary.ready == 1
    assert get_signal(db_conn, "sig-1").enriched_fields.title == "Already enriched"


@pytest.mark.asyncio
async def test_worker_unexpected_error_fails_single_item(db_conn):
    upsert_signal(db_conn, _signal("sig-1"))
    upsert_signal(db_conn, _signal("sig-2", title="Bus route 1A diverted"))
    ok = LLMResponse(text=JSON_REPLY, model="sonar")
    worker = EnrichmentWorker(
        db_conn, _provider(side_effect=[RuntimeError("boom"), ok]), _image_finder(), SETTINGS,
    )

    summary = await worker.run_batch()
    assert summary.failed == 1
    assert summary.ready == 1
    assert get_signal(db_conn, "sig-1").enrichment_status == FAILED


@pytest.mark.asyncio
@patch("govsignals.enrich.worker.asyncio.sleep", new_callable=AsyncMock)
async def test_worker_pauses_between_items(mock_sleep, db_conn):
    for i in range(3):
        upsert_signal(db_conn, _signal(f"sig-{i}", title=f"Notice number {i}"))
    worker = EnrichmentWorker(
        db_conn, _provider(), _image_finder(), {**SETTINGS, "delay_seconds": 2.0},
    )

    await worker.run_batch()
    assert mock_sleep.await_count == 2
    mock_sleep.assert_awaited_with(2.0)


@pytest.mark.asyncio
async def test_worker_respects_batch_size(db_conn):
    for i in range(4):
        upsert_signal(db_conn, _signal(f"sig-{i}", title=f"Notice number {i}"))
    worker = EnrichmentWorker(
        db_conn, _provider(), _image_finder(), {**SETTINGS, "batch_size": 3},
    )
    summary = await worker.run_batch()
    assert summary.processed == 3
