"""Tests for the signal store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from govsignals.db import (
    advance_enrichment_status,
    finish_run,
    get_active_feed_sources,
    get_connection,
    get_pending_signals,
    get_public_signals,
    get_recent_runs,
    get_signal,
    get_signal_statistics,
    get_signals,
    get_stale_feeds,
    insert_run,
    record_fetch_failure,
    record_fetch_success,
    refresh_public_view,
    set_image_status,
    sync_feed_sources,
    upsert_signal,
)
from govsignals.models import (
    ENRICHED,
    FAILED,
    PENDING,
    READY,
    EnrichedFields,
    LanguageContent,
    PipelineRun,
    Signal,
)

PUBLISHED = datetime(2025, 8, 3, 10, 0, tzinfo=timezone.utc)


def _signal(signal_id="sig-1", **content):
    content = content or {"en": LanguageContent("Road closure", "Closed tonight.", "https://x/1")}
    return Signal(
        id=signal_id,
        feed_source_id="td_notices",
        category="transport_notice",
        source_published_at=PUBLISHED,
        content=content,
        severity=4,
        relevance_score=0.9,
    )


def test_upsert_inserts_then_reports_unchanged(db_conn):
    assert upsert_signal(db_conn, _signal()) is True
    assert upsert_signal(db_conn, _signal()) is False

    stored = get_signal(db_conn, "sig-1")
    assert stored.content["en"].title == "Road closure"
    assert stored.enrichment_status == PENDING
    assert stored.image_status == PENDING


def test_upsert_content_is_a_superset(db_conn):
    upsert_signal(db_conn, _signal(en=LanguageContent("Road closure", "Nathan Road closed from 10pm.")))
    upsert_signal(db_conn, _signal(**{"zh-TW": LanguageContent("彌敦道封路", "今晚封閉。")}))
    upsert_signal(db_conn, _signal(en=LanguageContent("Road closure", "Closed.")))

    stored = get_signal(db_conn, "sig-1")
    assert set(stored.content) == {"en", "zh-TW"}
    assert stored.content["en"].body == "Nathan Road closed from 10pm."


def test_upsert_keeps_earliest_publish_time_and_created_at(db_conn):
    upsert_signal(db_conn, _signal())
    original = get_signal(db_conn, "sig-1")

    later = _signal(en=LanguageContent("Road closure", "Closed tonight, diversions in place."))
    later.source_published_at = PUBLISHED + timedelta(hours=1)
    upsert_signal(db_conn, later)

    stored = get_signal(db_conn, "sig-1")
    assert stored.source_published_at == PUBLISHED
    assert stored.created_at == original.created_at


def test_upsert_never_lowers_status(db_conn):
    upsert_signal(db_conn, _signal())
    assert advance_enrichment_status(db_conn, "sig-1", ENRICHED, fields=EnrichedFields(title="T"))
    assert advance_enrichment_status(db_conn, "sig-1", READY)

    upsert_signal(db_conn, _signal(**{"zh-TW": LanguageContent("彌敦道封路")}))
    stored = get_signal(db_conn, "sig-1")
    assert stored.enrichment_status == READY
    assert stored.enriched_fields.title == "T"
    assert "zh-TW" in stored.content


def test_status_transitions_are_monotonic(db_conn):
    upsert_signal(db_conn, _signal())

    assert advance_enrichment_status(db_conn, "sig-1", READY) is False
    assert advance_enrichment_status(db_conn, "sig-1", ENRICHED) is True
    assert advance_enrichment_status(db_conn, "sig-1", ENRICHED) is False
    assert advance_enrichment_status(db_conn, "sig-1", PENDING) is False
    assert advance_enrichment_status(db_conn, "sig-1", READY) is True
    assert advance_enrichment_status(db_conn, "sig-1", FAILED) is False
    assert get_signal(db_conn, "sig-1").enrichment_status == READY


def test_failed_is_terminal(db_conn):
    upsert_signal(db_conn, _signal())
    assert advance_enrichment_status(db_conn, "sig-1", FAILED, error="auth: bad key") is True
    assert advance_enrichment_status(db_conn, "sig-1", ENRICHED) is False
    stored = get_signal(db_conn, "sig-1")
    assert stored.enrichment_status == FAILED
    assert stored.enrichment_error == "auth: bad key"


def test_concurrent_writers_both_land(db_conn, sample_config):
    """Two connections writing different languages end with the union."""
    other = get_connection(sample_config["database"]["path"])
    try:
        upsert_signal(db_conn, _signal())
        upsert_signal(other, _signal(**{"zh-TW": LanguageContent("彌敦道封路")}))
        upsert_signal(db_conn, _signal(**{"zh-CN": LanguageContent("弥敦道封路")}))
    finally:
        other.close()
    assert set(get_signal(db_conn, "sig-1").content) == {"en", "zh-TW", "zh-CN"}


def test_set_image_status_only_from_pending(db_conn):
    upsert_signal(db_conn, _signal())
    assert set_image_status(
        db_conn, "sig-1", READY, url="https://img/1.jpg",
        license="Unsplash License", attribution="Photo by A on Unsplash", source="unsplash",
    )
    assert set_image_status(db_conn, "sig-1", FAILED) is False

    stored = get_signal(db_conn, "sig-1")
    assert stored.image_status == READY
    assert stored.enriched_fields.image_url == "https://img/1.jpg"
    assert stored.enriched_fields.image_attribution == "Photo by A on Unsplash"


def test_get_pending_signals(db_conn):
    for i in range(3):
        upsert_signal(db_conn, _signal(f"sig-{i}"))
    advance_enrichment_status(db_conn, "sig-0", FAILED)
    advance_enrichment_status(db_conn, "sig-1", ENRICHED)

    pending = get_pending_signals(db_conn, limit=10)
    assert {s.id for s in pending} == {"sig-1", "sig-2"}
    assert len(get_pending_signals(db_conn, limit=1)) == 1


def test_public_view_uses_enriched_fields_when_available(db_conn):
    upsert_signal(db_conn, _signal("raw"))
    upsert_signal(db_conn, _signal("done"))
    advance_enrichment_status(
        db_conn, "done", ENRICHED,
        fields=EnrichedFields(title="Nathan Road shut overnight", summary="Short", body="Long"),
    )
    advance_enrichment_status(db_conn, "done", READY)

    assert refresh_public_view(db_conn) == 2
    rows = {r["id"]: r for r in get_public_signals(db_conn)}
    assert rows["raw"]["title"] == "Road closure"
    assert rows["raw"]["summary"] is None
    assert rows["done"]["title"] == "Nathan Road shut overnight"
    assert rows["done"]["summary"] == "Short"
    assert rows["done"]["source_label"] == "government"
    assert rows["done"]["languages"] == ["en"]


def test_public_view_failed_signal_shows_raw_content(db_conn):
    upsert_signal(db_conn, _signal())
    placeholder = EnrichedFields(body="Road closure\n\nContent processing failed.", degraded=True)
    advance_enrichment_status(db_conn, "sig-1", FAILED, fields=placeholder, error="quota: out")
    refresh_public_view(db_conn)

    row = get_public_signals(db_conn)[0]
    assert row["title"] == "Road closure"
    assert row["body"] == "Closed tonight."
    assert row["degraded"] is True


def test_public_view_skips_untitled_and_filters_category(db_conn):
    upsert_signal(db_conn, _signal("empty", en=LanguageContent("")))
    upsert_signal(db_conn, _signal("ok"))
    assert refresh_public_view(db_conn) == 1
    assert get_public_signals(db_conn, category="weather_warning") == []
    assert len(get_public_signals(db_conn, category="transport_notice")) == 1


def test_feed_cursor_and_stale_report(db_conn, td_source):
    sync_feed_sources(db_conn, [td_source])
    now = datetime(2025, 8, 3, 12, 0, tzinfo=timezone.utc)
    record_fetch_success(db_conn, "td_notices", "en", at=now - timedelta(hours=1))
    record_fetch_failure(db_conn, "td_notices", at=now)

    source = get_active_feed_sources(db_conn)[0]
    assert source.last_fetch_cursor["en"] == now - timedelta(hours=1)
    assert source.fetch_error_count == 1

    stale = get_stale_feeds(db_conn, max_age_hours=24, now=now)
    assert stale == [{
        "feed": "td_notices", "language": "zh-TW", "last_fetch": None, "error_count": 1,
    }]


def test_sync_feed_sources_deactivates_removed(db_conn, td_source):
    sync_feed_sources(db_conn, [td_source])
    record_fetch_success(db_conn, "td_notices", "en")
    sync_feed_sources(db_conn, [td_source])
    assert "en" in get_active_feed_sources(db_conn)[0].last_fetch_cursor

    sync_feed_sources(db_conn, [])
    assert get_active_feed_sources(db_conn) == []


def test_signal_statistics(db_conn):
    upsert_signal(db_conn, _signal("a"))
    upsert_signal(db_conn, _signal(
        "b",
        en=LanguageContent("Road closure", "Closed."),
        **{"zh-TW": LanguageContent("彌敦道封路")},
    ))
    upsert_signal(db_conn, _signal("c", **{"zh-TW": LanguageContent("彌敦道封路")}))
    advance_enrichment_status(db_conn, "a", ENRICHED)

    stats = get_signal_statistics(db_conn)
    assert stats["total_signals"] == 3
    assert stats["by_status"] == {ENRICHED: 1, PENDING: 2}
    assert stats["by_feed"] == {"td_notices": 3}
    assert stats["content_completeness"] == {"multilingual": 1, "english_only": 1, "partial": 1}


def test_pipeline_run_lifecycle(db_conn):
    """Pipeline runs can be created and finalized."""
    run = PipelineRun(kind="aggregate")
    run_id = insert_run(db_conn, run)
    assert run_id > 0

    run.status = "completed"
    run.finished_at = datetime.now(timezone.utc)
    run.items_processed = 7
    run.signals_stored = 5
    finish_run(db_conn, run_id, run)

    runs = get_recent_runs(db_conn, limit=5)
    assert len(runs) == 1
    assert runs[0]["status"] == "completed"
    assert runs[0]["items_processed"] == 7


def test_upsert_equal_length_body_keeps_stored_content(db_conn):
    upsert_signal(db_conn, _signal(en=LanguageContent("Road closure", "abcd", "l1")))
    assert upsert_signal(db_conn, _signal(en=LanguageContent("Road closure!", "wxyz", "l2"))) is False
    assert get_signal(db_conn, "sig-1").content["en"] == LanguageContent("Road closure", "abcd", "l1")


def test_public_view_reads_signals_inside_write_transaction(db_conn):
    upsert_signal(db_conn, _signal())
    seen = []

    def _reading(conn, *args, **kwargs):
        seen.append(conn.in_transaction)
        return get_signals(conn, *args, **kwargs)

    with patch("govsignals.db.get_signals", side_effect=_reading):
        assert refresh_public_view(db_conn) == 1
    assert seen == [True]
